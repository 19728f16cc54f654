"""Per-IP and global request limits (Flask-Limiter)."""

import time

from flask import jsonify, request
from flask_limiter import Limiter

import config

UPLOAD_LIMIT = "5 per hour"
CHECKOUT_LIMIT = "10 per hour"
RUNWAY_LIMIT = "10 per minute"
DEFAULT_RETRY_AFTER = 3600


def get_client_ip():
    """First hop of X-Forwarded-For, then X-Real-IP."""
    forwarded_for = request.headers.get('X-Forwarded-For')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    real_ip = request.headers.get('X-Real-IP')
    if real_ip:
        return real_ip
    return 'unknown'


def global_key():
    return 'global'


limiter = Limiter(
    key_func=get_client_ip,
    storage_uri=config.RATELIMIT_STORAGE_URI,
)


def retry_after_seconds():
    current = limiter.current_limit
    if current is None:
        return DEFAULT_RETRY_AFTER
    return max(1, int(current.reset_at - time.time()))


def ratelimit_handler(e):
    retry_after = retry_after_seconds()
    print(f"🚦 Rate limit hit: {request.path} from {get_client_ip()} ({e.description})")
    response = jsonify({"error": "Too many requests. Please try again later.", "retryAfter": retry_after})
    response.status_code = 429
    response.headers['Retry-After'] = str(retry_after)
    return response
