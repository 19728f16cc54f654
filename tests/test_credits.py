import pytest

from credits import (AnimationNotFound, CheckoutNotPaid, PaymentRequired, grant_purchase, handle_checkout_completed,
                     handle_subscription_updated, promote_guest_to_user, record_checkout, resolve_user, use_credit,
                     verify_checkout)

GUEST = '5b6f0f4e-8d0c-4b55-9a3e-2f7f3c1d9a10'


def checkout_session(session_id='cs_test_1', product_type='bundle', animation_id='pricing-page',
                     email='pip@example.com', user_id=None, customer='cus_123', amount=1999):
    metadata = {'animationId': animation_id, 'guestSessionId': GUEST, 'productType': product_type}
    if user_id:
        metadata['userId'] = user_id
    return {
        'id': session_id,
        'payment_status': 'paid',
        'status': 'complete',
        'customer': customer,
        'customer_email': email,
        'amount_total': amount,
        'metadata': metadata,
    }


def credits_of(conn, user_id):
    return conn.execute("SELECT credits FROM profiles WHERE id = ?", (user_id,)).fetchone()['credits']


def purchase_count(conn):
    return conn.execute("SELECT COUNT(*) FROM purchases").fetchone()[0]


def is_paid(conn, animation_id):
    return bool(conn.execute("SELECT is_paid FROM animations WHERE id = ?", (animation_id,)).fetchone()['is_paid'])


def test_resolve_user_prefers_metadata_then_email_then_customer(conn, make_user):
    by_meta = make_user('meta@example.com')
    by_email = make_user('Email@Example.com')
    by_customer = make_user('other@example.com', stripe_customer_id='cus_9')

    assert resolve_user(conn, by_meta, 'email@example.com', 'cus_9') == by_meta
    assert resolve_user(conn, 'missing', 'EMAIL@example.COM', 'cus_9') == by_email
    assert resolve_user(conn, None, 'nobody@example.com', 'cus_9') == by_customer
    assert resolve_user(conn, None, None, None) is None


def test_webhook_then_verify_grants_once(conn, make_user):
    user_id = make_user()
    session = checkout_session()

    result = handle_checkout_completed(conn, session)
    assert result['granted'] is True
    assert credits_of(conn, user_id) == 10

    verified = verify_checkout(conn, session, user_id)
    assert verified == {'credits': 10, 'productType': 'bundle'}
    assert credits_of(conn, user_id) == 10
    assert purchase_count(conn) == 1


def test_verify_then_webhook_grants_once(conn, make_user):
    user_id = make_user()
    session = checkout_session()

    assert verify_checkout(conn, session, user_id)['credits'] == 10
    handle_checkout_completed(conn, session)
    handle_checkout_completed(conn, session)

    assert credits_of(conn, user_id) == 10
    assert purchase_count(conn) == 1


def test_webhook_stores_stripe_customer_id(conn, make_user):
    user_id = make_user()
    handle_checkout_completed(conn, checkout_session(customer='cus_abc'))
    row = conn.execute("SELECT stripe_customer_id FROM profiles WHERE id = ?", (user_id,)).fetchone()
    assert row['stripe_customer_id'] == 'cus_abc'


def test_animation_checkout_spends_one_credit_on_the_unlock(conn, make_user, make_animation):
    user_id = make_user()
    animation_id = make_animation(guest_session_id=GUEST)

    handle_checkout_completed(conn, checkout_session(product_type='bundle', animation_id=animation_id))

    assert is_paid(conn, animation_id)
    assert credits_of(conn, user_id) == 9
    row = conn.execute("SELECT user_id, guest_session_id FROM animations WHERE id = ?", (animation_id,)).fetchone()
    assert row['user_id'] == user_id
    assert row['guest_session_id'] is None


def test_single_purchase_for_animation_nets_zero_credits(conn, make_user, make_animation):
    user_id = make_user()
    animation_id = make_animation(guest_session_id=GUEST)

    handle_checkout_completed(conn, checkout_session(product_type='single', animation_id=animation_id, amount=500))

    assert is_paid(conn, animation_id)
    assert credits_of(conn, user_id) == 0


def test_anonymous_purchase_unlocks_animation_and_waits_for_login(conn, make_user, make_animation):
    animation_id = make_animation(guest_session_id=GUEST)
    session = checkout_session(animation_id=animation_id, email='new@example.com')

    result = handle_checkout_completed(conn, session)
    assert result['user_id'] is None
    assert result['granted'] is False
    assert is_paid(conn, animation_id)

    user_id = make_user('new@example.com')
    promoted = promote_guest_to_user(conn, GUEST, user_id, 'new@example.com')
    assert promoted['animations'] == 1
    assert credits_of(conn, user_id) == 9

    # A second login, or the webhook retrying, changes nothing
    promote_guest_to_user(conn, GUEST, user_id, 'new@example.com', email_verified=True)
    handle_checkout_completed(conn, session)
    assert credits_of(conn, user_id) == 9
    assert purchase_count(conn) == 1


def test_purchases_are_claimed_by_email_only_when_verified(conn, make_user):
    handle_checkout_completed(conn, checkout_session(email='late@example.com'))
    user_id = make_user('late@example.com')

    promote_guest_to_user(conn, None, user_id, 'late@example.com', email_verified=False)
    assert credits_of(conn, user_id) == 0

    promote_guest_to_user(conn, None, user_id, 'LATE@example.com', email_verified=True)
    assert credits_of(conn, user_id) == 10


def test_promotion_fills_missing_profile_email(conn):
    conn.execute("INSERT INTO profiles (id, email, created_at) VALUES ('u1', NULL, '2025-01-01')")
    conn.commit()
    promote_guest_to_user(conn, GUEST, 'u1', 'Filled@Example.com')
    assert conn.execute("SELECT email FROM profiles WHERE id = 'u1'").fetchone()['email'] == 'filled@example.com'


def test_grant_purchase_is_exactly_once(conn, make_user):
    user_id = make_user()
    purchase = record_checkout(conn, checkout_session(), user_id)

    first = grant_purchase(conn, purchase['id'])
    second = grant_purchase(conn, purchase['id'])

    assert first.credits_added == 10
    assert second is None
    assert credits_of(conn, user_id) == 10


def test_record_checkout_does_not_steal_owned_purchase(conn, make_user):
    owner = make_user('owner@example.com')
    other = make_user('other@example.com')
    record_checkout(conn, checkout_session(), owner)
    purchase = record_checkout(conn, checkout_session(), other)
    assert purchase['user_id'] == owner


def test_subscription_checkout_starts_trial(conn, make_user, make_animation):
    user_id = make_user()
    animation_id = make_animation(guest_session_id=GUEST)

    handle_checkout_completed(conn, checkout_session(product_type='subscription', animation_id=animation_id,
                                                     customer='cus_sub'))

    row = conn.execute("SELECT credits, subscription_status FROM profiles WHERE id = ?", (user_id,)).fetchone()
    assert row['subscription_status'] == 'trial'
    assert row['credits'] == 0
    assert is_paid(conn, animation_id)


def test_subscription_updates_map_stripe_status(conn, make_user):
    user_id = make_user(stripe_customer_id='cus_sub')

    assert handle_subscription_updated(conn, {'customer': 'cus_sub', 'status': 'active'}) == 'active'
    assert handle_subscription_updated(conn, {'customer': {'id': 'cus_sub'}, 'status': 'past_due'}) == 'cancelled'
    assert handle_subscription_updated(conn, {'customer': 'cus_unknown', 'status': 'active'}) is None

    row = conn.execute("SELECT subscription_status FROM profiles WHERE id = ?", (user_id,)).fetchone()
    assert row['subscription_status'] == 'cancelled'


def test_verify_rejects_unpaid_session(conn, make_user):
    user_id = make_user()
    session = checkout_session()
    session['payment_status'] = 'unpaid'
    session['status'] = 'open'

    with pytest.raises(CheckoutNotPaid) as excinfo:
        verify_checkout(conn, session, user_id)
    assert excinfo.value.status_code == 400
    assert purchase_count(conn) == 0


def test_use_credit_requires_credits(conn, make_user, make_animation):
    user_id = make_user(credits=0)
    animation_id = make_animation()

    with pytest.raises(PaymentRequired) as excinfo:
        use_credit(conn, user_id, animation_id)
    assert excinfo.value.status_code == 402
    assert excinfo.value.details == {'credits': 0, 'subscription_status': 'none'}
    assert not is_paid(conn, animation_id)


def test_use_credit_unlocks_and_charges_once(conn, make_user, make_animation):
    user_id = make_user(credits=2)
    animation_id = make_animation(guest_session_id=GUEST)

    result = use_credit(conn, user_id, animation_id)
    assert result['credits'] == 1
    assert result['usedSubscription'] is False
    assert is_paid(conn, animation_id)

    again = use_credit(conn, user_id, animation_id)
    assert again['message'] == 'Animation already unlocked'
    assert credits_of(conn, user_id) == 1

    spend = conn.execute("SELECT * FROM purchases WHERE animation_id = ?", (animation_id,)).fetchone()
    assert spend['amount'] == 0
    assert spend['stripe_session_id'] is None
    assert spend['credited_at'] is not None


def test_use_credit_with_subscription_is_free(conn, make_user, make_animation):
    user_id = make_user(credits=0, subscription_status='active')
    animation_id = make_animation()

    result = use_credit(conn, user_id, animation_id)
    assert result['usedSubscription'] is True
    assert credits_of(conn, user_id) == 0
    assert is_paid(conn, animation_id)


def test_use_credit_unknown_animation(conn, make_user):
    user_id = make_user(credits=3)
    with pytest.raises(AnimationNotFound):
        use_credit(conn, user_id, 'does-not-exist')
    assert credits_of(conn, user_id) == 3


def profile_row(conn, user_id):
    return conn.execute("SELECT subscription_status, stripe_customer_id FROM profiles WHERE id = ?",
                        (user_id,)).fetchone()


def test_subscription_claimed_at_login_can_be_cancelled(conn, make_user, make_animation):
    animation_id = make_animation(guest_session_id=GUEST)
    handle_checkout_completed(conn, checkout_session(product_type='subscription', animation_id=animation_id,
                                                     email='later@example.com', customer='cus_1'))

    user_id = make_user('later@example.com')
    promote_guest_to_user(conn, GUEST, user_id, 'later@example.com', email_verified=True)
    assert profile_row(conn, user_id)['subscription_status'] == 'trial'
    assert profile_row(conn, user_id)['stripe_customer_id'] == 'cus_1'

    assert handle_subscription_updated(conn, {'customer': 'cus_1', 'status': 'canceled'}) == 'cancelled'
    assert profile_row(conn, user_id)['subscription_status'] == 'cancelled'


def test_verify_saves_stripe_customer(conn, make_user):
    user_id = make_user('buyer@example.com')
    verify_checkout(conn, checkout_session(email='buyer@example.com', customer='cus_verify'), user_id)
    assert profile_row(conn, user_id)['stripe_customer_id'] == 'cus_verify'


def test_one_off_purchase_keeps_existing_customer(conn, make_user):
    user_id = make_user('buyer@example.com', stripe_customer_id='cus_first')
    handle_checkout_completed(conn, checkout_session(email='buyer@example.com', customer='cus_second'))
    assert profile_row(conn, user_id)['stripe_customer_id'] == 'cus_first'

    handle_checkout_completed(conn, checkout_session(session_id='cs_test_2', product_type='subscription',
                                                     email='buyer@example.com', customer='cus_sub'))
    assert profile_row(conn, user_id)['stripe_customer_id'] == 'cus_sub'
