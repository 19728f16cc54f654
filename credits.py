"""
Credit and entitlement reconciliation.

A paid checkout can reach us three ways: Stripe's webhook, the browser calling
/api/checkout/verify on return, and a guest logging in after paying. Any of them
may arrive first, and each may arrive more than once. Two rules keep the
books straight:

1. One purchase row per Stripe checkout session (UNIQUE stripe_session_id,
   written with INSERT OR IGNORE).
2. A purchase's entitlement is applied once. ``credited_at`` is claimed with a
   guarded UPDATE inside the same transaction that adds the credits, and only a
   purchase that already has an owner can be claimed.

Unlocking an animation always costs one credit unless the buyer is on a
subscription. A purchase made from an animation's checkout page spends one of
the credits it grants on that animation.
"""

from dataclasses import dataclass
from typing import Optional

from billing import credits_for, customer_id_of, is_real_animation, map_subscription_status
from database import transaction, utcnow

SUBSCRIBED_STATUSES = ('active', 'trial')


class CreditError(Exception):
    status_code = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class PaymentRequired(CreditError):
    status_code = 402


class AnimationNotFound(CreditError):
    status_code = 404


class ProfileNotFound(CreditError):
    status_code = 500


class CheckoutNotPaid(CreditError):
    status_code = 400


@dataclass
class GrantResult:
    purchase_id: int
    user_id: str
    product_type: str
    credits_added: int
    animation_id: Optional[str] = None
    subscription_started: bool = False


def get_profile(conn, user_id):
    return conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()


def get_credits(conn, user_id):
    row = conn.execute("SELECT credits FROM profiles WHERE id = ?", (user_id,)).fetchone()
    return row['credits'] if row else 0


def resolve_user(conn, metadata_user_id=None, email=None, customer_id=None):
    """Find the paying user: metadata userId first, then email (case-insensitive), then Stripe customer ID."""
    if metadata_user_id:
        row = conn.execute("SELECT id FROM profiles WHERE id = ?", (metadata_user_id,)).fetchone()
        if row:
            print(f"[Stripe Webhook] Found user by metadata ID: {row['id']}")
            return row['id']
    if email:
        row = conn.execute("SELECT id FROM profiles WHERE email = ? COLLATE NOCASE LIMIT 1", (email,)).fetchone()
        if row:
            print(f"[Stripe Webhook] Found user by email: {row['id']}")
            return row['id']
    if customer_id:
        row = conn.execute("SELECT id FROM profiles WHERE stripe_customer_id = ? LIMIT 1", (customer_id,)).fetchone()
        if row:
            print(f"[Stripe Webhook] Found user by Stripe customer ID: {row['id']}")
            return row['id']
    return None


def remember_customer(conn, user_id, customer_id):
    """Save a Stripe customer ID on a profile that has none yet."""
    if not customer_id:
        return False
    with transaction(conn):
        return conn.execute(
            "UPDATE profiles SET stripe_customer_id = ? WHERE id = ? AND stripe_customer_id IS NULL",
            (customer_id, user_id)
        ).rowcount == 1


def session_email(session):
    details = session.get('customer_details') or {}
    return session.get('customer_email') or details.get('email')


def record_checkout(conn, session, user_id=None):
    """
    Create the purchase row for a checkout session, or attach ``user_id`` to an
    existing one that has no owner yet. The first insert also unlocks the
    animation the checkout was started from.
    """
    metadata = session.get('metadata') or {}
    animation_id = metadata.get('animationId')
    animation_id = animation_id if is_real_animation(animation_id) else None
    product_type = metadata.get('productType') or 'single'
    customer_id = customer_id_of(session)

    with transaction(conn):
        cursor = conn.execute(
            "INSERT OR IGNORE INTO purchases (user_id, animation_id, stripe_session_id, product_type, amount, "
            "customer_email, stripe_customer_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (user_id, animation_id, session['id'], product_type, session.get('amount_total') or 0,
             session_email(session), customer_id, utcnow())
        )
        if cursor.rowcount == 1:
            purchase_id = cursor.lastrowid
            if animation_id:
                unlocked = conn.execute(
                    "UPDATE animations SET is_paid = 1, updated_at = ? WHERE id = ? AND is_paid = 0",
                    (utcnow(), animation_id)
                ).rowcount
                if unlocked:
                    conn.execute("UPDATE purchases SET unlocks_animation = 1 WHERE id = ?", (purchase_id,))
        else:
            if user_id:
                conn.execute(
                    "UPDATE purchases SET user_id = ? WHERE stripe_session_id = ? AND user_id IS NULL",
                    (user_id, session['id'])
                )
            if customer_id:
                conn.execute(
                    "UPDATE purchases SET stripe_customer_id = ? WHERE stripe_session_id = ? AND stripe_customer_id IS NULL",
                    (customer_id, session['id'])
                )

    return conn.execute("SELECT * FROM purchases WHERE stripe_session_id = ?", (session['id'],)).fetchone()


def grant_purchase(conn, purchase_id):
    """
    Apply a purchase's entitlement to its owner exactly once.

    Returns:
        GrantResult, or None if the purchase has no owner or was already granted
    """
    with transaction(conn):
        purchase = conn.execute("SELECT * FROM purchases WHERE id = ?", (purchase_id,)).fetchone()
        if purchase is None or not purchase['user_id']:
            return None

        claimed = conn.execute(
            "UPDATE purchases SET credited_at = ? WHERE id = ? AND credited_at IS NULL AND user_id IS NOT NULL",
            (utcnow(), purchase_id)
        ).rowcount
        if not claimed:
            return None

        user_id = purchase['user_id']
        product_type = purchase['product_type']
        credits = credits_for(product_type)
        if purchase['unlocks_animation'] and product_type != 'subscription':
            credits = max(0, credits - 1)

        if credits:
            conn.execute("UPDATE profiles SET credits = credits + ? WHERE id = ?", (credits, user_id))
        conn.execute("UPDATE purchases SET credits_granted = ? WHERE id = ?", (credits, purchase_id))

        # Subscription webhooks find the profile by Stripe customer; a subscription's
        # own customer replaces whatever an earlier one-off checkout left behind.
        if purchase['stripe_customer_id']:
            if product_type == 'subscription':
                conn.execute("UPDATE profiles SET stripe_customer_id = ? WHERE id = ?",
                             (purchase['stripe_customer_id'], user_id))
            else:
                conn.execute("UPDATE profiles SET stripe_customer_id = ? WHERE id = ? AND stripe_customer_id IS NULL",
                             (purchase['stripe_customer_id'], user_id))

        subscription_started = False
        if product_type == 'subscription':
            subscription_started = conn.execute(
                "UPDATE profiles SET subscription_status = 'trial' WHERE id = ? AND subscription_status IN ('none', 'cancelled')",
                (user_id,)
            ).rowcount == 1

        if purchase['animation_id']:
            conn.execute(
                "UPDATE animations SET user_id = ?, guest_session_id = NULL, updated_at = ? "
                "WHERE id = ? AND (user_id IS NULL OR user_id = ?)",
                (user_id, utcnow(), purchase['animation_id'], user_id)
            )

    print(f"💳 Granted purchase #{purchase_id} ({product_type}) to user {user_id}: +{credits} credits")
    return GrantResult(
        purchase_id=purchase_id,
        user_id=user_id,
        product_type=product_type,
        credits_added=credits,
        animation_id=purchase['animation_id'],
        subscription_started=subscription_started,
    )


def grant_pending_purchases(conn, user_id):
    rows = conn.execute(
        "SELECT id FROM purchases WHERE user_id = ? AND credited_at IS NULL ORDER BY id", (user_id,)
    ).fetchall()
    results = []
    for row in rows:
        result = grant_purchase(conn, row['id'])
        if result:
            results.append(result)
    return results


def handle_checkout_completed(conn, session):
    """Webhook path for checkout.session.completed."""
    metadata = session.get('metadata') or {}
    customer_id = customer_id_of(session)
    email = session_email(session)
    print(f"[Stripe Webhook] Processing checkout complete: {session.get('id')} "
          f"(payment_status={session.get('payment_status')}, product={metadata.get('productType')})")

    user_id = resolve_user(conn, metadata.get('userId'), email, customer_id)
    purchase = record_checkout(conn, session, user_id)

    grant = None
    if purchase['user_id']:
        grant = grant_purchase(conn, purchase['id'])
        if grant is None:
            remember_customer(conn, purchase['user_id'], customer_id)
    else:
        print(f"[Stripe Webhook] No user found - purchase #{purchase['id']} awaits login. "
              f"Email: {email}, guest session: {metadata.get('guestSessionId')}")

    return {
        'purchase_id': purchase['id'],
        'user_id': purchase['user_id'],
        'credits_awarded': grant.credits_added if grant else 0,
        'granted': grant is not None,
    }


def handle_subscription_updated(conn, subscription):
    """Webhook path for customer.subscription.created/updated/deleted."""
    customer_id = customer_id_of(subscription)
    profile = conn.execute("SELECT id FROM profiles WHERE stripe_customer_id = ?", (customer_id,)).fetchone()
    if not profile:
        print(f"[Stripe Webhook] No profile found for customer: {customer_id}")
        return None

    status = map_subscription_status(subscription.get('status'))
    with transaction(conn):
        conn.execute("UPDATE profiles SET subscription_status = ? WHERE id = ?", (status, profile['id']))
    print(f"[Stripe Webhook] Subscription updated: user={profile['id']} status={status}")
    return status


def verify_checkout(conn, session, user_id):
    """Return path: the signed-in buyer confirms a checkout session."""
    if session.get('payment_status') != 'paid' and session.get('status') != 'complete':
        raise CheckoutNotPaid('Payment not completed')

    product_type = (session.get('metadata') or {}).get('productType')
    if not product_type:
        raise CheckoutNotPaid('Unknown product type')

    purchase = record_checkout(conn, session, user_id)
    if purchase['user_id'] == user_id:
        grant_purchase(conn, purchase['id'])
    else:
        print(f"[Verify Checkout] Session {session['id']} already belongs to another user")

    return {'credits': get_credits(conn, user_id), 'productType': product_type}


def use_credit(conn, user_id, animation_id):
    """Spend one credit (or the subscription) to unlock an animation."""
    with transaction(conn):
        profile = conn.execute("SELECT credits, subscription_status FROM profiles WHERE id = ?", (user_id,)).fetchone()
        if profile is None:
            raise ProfileNotFound('Failed to fetch user profile')

        has_subscription = profile['subscription_status'] in SUBSCRIBED_STATUSES
        if not has_subscription and profile['credits'] <= 0:
            raise PaymentRequired('No credits available', credits=profile['credits'],
                                  subscription_status=profile['subscription_status'])

        animation = conn.execute("SELECT id, is_paid FROM animations WHERE id = ?", (animation_id,)).fetchone()
        if animation is None:
            raise AnimationNotFound('Animation not found')

        if animation['is_paid']:
            return {'success': True, 'message': 'Animation already unlocked', 'credits': profile['credits']}

        credits = profile['credits']
        if not has_subscription:
            spent = conn.execute(
                "UPDATE profiles SET credits = credits - 1 WHERE id = ? AND credits > 0", (user_id,)
            ).rowcount
            if not spent:
                raise PaymentRequired('No credits available', credits=0,
                                      subscription_status=profile['subscription_status'])
            credits -= 1

        conn.execute(
            "UPDATE animations SET is_paid = 1, user_id = ?, guest_session_id = NULL, updated_at = ? WHERE id = ?",
            (user_id, utcnow(), animation_id)
        )
        conn.execute(
            "INSERT INTO purchases (user_id, animation_id, stripe_session_id, product_type, amount, "
            "unlocks_animation, credits_granted, credited_at, created_at) VALUES (?, ?, NULL, ?, 0, 1, 0, ?, ?)",
            (user_id, animation_id, 'subscription' if has_subscription else 'single', utcnow(), utcnow())
        )

    return {
        'success': True,
        'credits': credits,
        'usedSubscription': has_subscription,
        'message': 'Animation unlocked with subscription' if has_subscription else 'Animation unlocked with 1 credit',
    }


def promote_guest_to_user(conn, guest_session_id, user_id, email=None, email_verified=False):
    """
    Hand a guest's uploads and unowned purchases to a signed-in user, then
    grant whatever those purchases entitle. Purchases are matched by email only
    when the user has proven they own that address.
    """
    with transaction(conn):
        animation_ids = []
        if guest_session_id:
            animation_ids = [row['id'] for row in conn.execute(
                "SELECT id FROM animations WHERE guest_session_id = ?", (guest_session_id,)
            ).fetchall()]
            conn.execute(
                "UPDATE animations SET user_id = ?, guest_session_id = NULL, updated_at = ? WHERE guest_session_id = ?",
                (user_id, utcnow(), guest_session_id)
            )

        claimed = 0
        if animation_ids:
            placeholders = ','.join('?' for _ in animation_ids)
            claimed += conn.execute(
                f"UPDATE purchases SET user_id = ? WHERE user_id IS NULL AND animation_id IN ({placeholders})",
                [user_id] + animation_ids
            ).rowcount
        if email and email_verified:
            claimed += conn.execute(
                "UPDATE purchases SET user_id = ? WHERE user_id IS NULL AND customer_email = ? COLLATE NOCASE",
                (user_id, email)
            ).rowcount
        if email:
            conn.execute("UPDATE profiles SET email = ? WHERE id = ? AND email IS NULL", (email.lower(), user_id))

    if animation_ids or claimed:
        print(f"👤 Promoted {len(animation_ids)} animations and {claimed} purchases to user {user_id}")
    grants = grant_pending_purchases(conn, user_id)
    return {'animations': len(animation_ids), 'purchases': claimed, 'grants': grants}
