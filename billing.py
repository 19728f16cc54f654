"""Thin wrapper around the Stripe SDK: products, checkout sessions, customers, webhooks."""

import json

import stripe

import config


class BillingError(Exception):
    pass


PRODUCTS = {
    'single': {
        'name': 'Single Snap',
        'description': 'One-time HD download for this photo',
        'price_setting': 'STRIPE_PRICE_SINGLE',
        'price': 500,  # cents
        'mode': 'payment',
        'credits': 1,
    },
    'bundle': {
        'name': 'Bundle Pack',
        'description': '10 photo animations - Save 60%',
        'price_setting': 'STRIPE_PRICE_BUNDLE',
        'price': 1999,
        'mode': 'payment',
        'credits': 10,
    },
    'subscription': {
        'name': 'Unlimited Magic',
        'description': '7 days free, then $9.99/month',
        'price_setting': 'STRIPE_PRICE_SUBSCRIPTION',
        'price': 999,
        'mode': 'subscription',
        'credits': 0,
        'trial_days': 7,
    },
}

# Checkout started from pages that aren't tied to one animation
NON_ANIMATION_IDS = ('pricing-page', 'credits-only', 'bundle-only')

SUBSCRIPTION_STATUS_MAP = {
    'trialing': 'trial',
    'active': 'active',
    'canceled': 'cancelled',
    'unpaid': 'cancelled',
    'past_due': 'cancelled',
}


def _stripe():
    if not config.STRIPE_SECRET_KEY:
        raise BillingError('STRIPE_SECRET_KEY is not set')
    stripe.api_key = config.STRIPE_SECRET_KEY
    return stripe


def to_plain(obj):
    """StripeObject -> plain dict, so the rest of the code never depends on SDK object behaviour."""
    if obj is None:
        return None
    if isinstance(obj, dict) and not hasattr(obj, 'to_dict'):
        return obj
    if hasattr(obj, 'to_dict'):
        return obj.to_dict()
    return json.loads(str(obj))


def price_id_for(product_type):
    return getattr(config, PRODUCTS[product_type]['price_setting'], '')


def credits_for(product_type):
    product = PRODUCTS.get(product_type)
    return product['credits'] if product else 0


def is_real_animation(animation_id):
    return bool(animation_id) and animation_id not in NON_ANIMATION_IDS


def map_subscription_status(stripe_status):
    return SUBSCRIPTION_STATUS_MAP.get(stripe_status, 'none')


def create_checkout_session(product_type, customer_email, animation_id, guest_session_id,
                            success_url, cancel_url, user_id=None, customer_id=None):
    if product_type not in PRODUCTS:
        raise BillingError(f"Unknown product type: {product_type}")
    product = PRODUCTS[product_type]
    price_id = price_id_for(product_type)
    if not price_id:
        raise BillingError(f"Price ID for {product_type} is not configured")

    metadata = {
        'animationId': animation_id,
        'guestSessionId': guest_session_id or '',
        'productType': product_type,
    }
    if user_id:
        metadata['userId'] = user_id

    params = {
        'payment_method_types': ['card'],
        'mode': product['mode'],
        'success_url': success_url,
        'cancel_url': cancel_url,
        'metadata': metadata,
        'line_items': [{'price': price_id, 'quantity': 1}],
    }
    # Stripe rejects customer and customer_email together
    if customer_id:
        params['customer'] = customer_id
    else:
        params['customer_email'] = customer_email
    if product['mode'] == 'subscription':
        params['subscription_data'] = {
            'trial_period_days': product['trial_days'],
            'metadata': {
                'animationId': animation_id,
                'guestSessionId': guest_session_id or '',
            },
        }

    return to_plain(_stripe().checkout.Session.create(**params))


def retrieve_checkout_session(session_id):
    return to_plain(_stripe().checkout.Session.retrieve(session_id))


def construct_event(payload, signature):
    """Verify a webhook's signature. Raises ValueError / stripe.SignatureVerificationError."""
    if not config.STRIPE_WEBHOOK_SECRET:
        raise BillingError('STRIPE_WEBHOOK_SECRET is not configured')
    event = stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
    return to_plain(event)


def get_or_create_customer(email, user_id=None):
    """Reuse the Stripe customer for ``email`` when one exists, tagging it with our user ID."""
    client = _stripe()
    existing = to_plain(client.Customer.list(email=email, limit=1)).get('data') or []
    if existing:
        customer = to_plain(existing[0])
        if user_id and not (customer.get('metadata') or {}).get('userId'):
            customer = to_plain(client.Customer.modify(customer['id'], metadata={'userId': user_id}))
        return customer
    return to_plain(client.Customer.create(email=email, metadata={'userId': user_id} if user_id else {}))


def customer_id_of(obj):
    """The `customer` field is either an ID or an expanded object."""
    customer = (obj or {}).get('customer')
    if isinstance(customer, dict):
        return customer.get('id')
    return customer
