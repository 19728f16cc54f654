"""
Accounts and sessions.

Users are rows in ``profiles``; the signed Flask session cookie carries
``user_id``. Passwordless sign-in (and password recovery) goes through one-time
login codes that are emailed as links to /auth/callback.
"""

import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps
from urllib.parse import urlencode

from flask import g, jsonify, session
from werkzeug.security import check_password_hash, generate_password_hash

import config
from database import get_db_connection, transaction, utcnow
from notifications import send_in_background, send_magic_link_email
from security import generate_secure_token

MIN_PASSWORD_LENGTH = 8


class AuthError(Exception):
    pass


def get_user(conn, user_id):
    return conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()


def get_user_by_email(conn, email):
    return conn.execute("SELECT * FROM profiles WHERE email = ? COLLATE NOCASE", (email,)).fetchone()


def create_user(conn, email, password=None):
    if password is not None and len(password) < MIN_PASSWORD_LENGTH:
        raise AuthError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    user_id = str(uuid.uuid4())
    try:
        with transaction(conn):
            conn.execute(
                "INSERT INTO profiles (id, email, password_hash, credits, subscription_status, created_at) "
                "VALUES (?, ?, ?, 0, 'none', ?)",
                (user_id, email.strip().lower(), generate_password_hash(password) if password else None, utcnow())
            )
    except sqlite3.IntegrityError:
        raise AuthError('An account with this email already exists')
    print(f"👤 Created user {user_id} ({email})")
    return get_user(conn, user_id)


def authenticate(conn, email, password):
    """Returns the profile row, or None on a bad email/password."""
    user = get_user_by_email(conn, email.strip())
    if not user or not user['password_hash']:
        return None
    if not check_password_hash(user['password_hash'], password):
        return None
    return user


def set_password(conn, user_id, password):
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AuthError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    with transaction(conn):
        conn.execute("UPDATE profiles SET password_hash = ? WHERE id = ?", (generate_password_hash(password), user_id))


def confirm_email(conn, user_id):
    with transaction(conn):
        return conn.execute("UPDATE profiles SET email_confirmed = 1 WHERE id = ?", (user_id,)).rowcount == 1


def create_login_code(conn, user_id, guest_session_id=None, animation_id=None, purpose='login'):
    code = generate_secure_token(32)
    expires_at = (datetime.now(timezone.utc) + timedelta(seconds=config.LOGIN_CODE_TTL_SECONDS)).isoformat()
    with transaction(conn):
        conn.execute(
            "INSERT INTO login_codes (code, user_id, guest_session_id, animation_id, purpose, expires_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (code, user_id, guest_session_id, animation_id, purpose, expires_at)
        )
    return code


def exchange_login_code(conn, code):
    """
    Consume a login code. Returns the code row, or None if it is unknown,
    expired or already used. Following the link proves the email address, so
    the profile is marked confirmed.
    """
    if not code:
        return None
    with transaction(conn):
        row = conn.execute("SELECT * FROM login_codes WHERE code = ?", (code,)).fetchone()
        if row is None or row['used_at']:
            return None
        if datetime.fromisoformat(row['expires_at']) <= datetime.now(timezone.utc):
            return None
        used = conn.execute(
            "UPDATE login_codes SET used_at = ? WHERE code = ? AND used_at IS NULL", (utcnow(), code)
        ).rowcount
        if not used:
            return None
        conn.execute("UPDATE profiles SET email_confirmed = 1 WHERE id = ?", (row['user_id'],))
    return row


def magic_link_url(code, guest_session_id=None, animation_id=None, purpose='login'):
    params = {'code': code}
    if guest_session_id:
        params['guestSessionId'] = guest_session_id
    if animation_id:
        params['animationId'] = animation_id
    if purpose == 'recovery':
        params['type'] = 'recovery'
    return f"{config.APP_URL}/auth/callback?{urlencode(params)}"


def send_magic_link(email, guest_session_id=None, animation_id=None, purpose='login', background=True):
    """Create the profile if needed, issue a code and email the link."""
    with get_db_connection() as conn:
        user = get_user_by_email(conn, email)
        if user is None:
            user = create_user(conn, email)
        code = create_login_code(conn, user['id'], guest_session_id, animation_id, purpose)

    link = magic_link_url(code, guest_session_id, animation_id, purpose)
    kwargs = dict(email=email, link=link, purpose=purpose, animation_id=animation_id)
    if background:
        send_in_background(send_magic_link_email, **kwargs)
        return {'success': True}
    return send_magic_link_email(**kwargs)


def login_user(user):
    session.clear()
    session['user_id'] = user['id']
    session.permanent = True
    g.current_user = user


def logout_user():
    session.clear()
    g.pop('current_user', None)


def current_user():
    """The signed-in profile row for this request, cached on ``g``."""
    if 'current_user' in g:
        return g.current_user
    user = None
    user_id = session.get('user_id')
    if user_id:
        with get_db_connection() as conn:
            user = get_user(conn, user_id)
        if user is None:
            session.pop('user_id', None)
    g.current_user = user
    return user


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if current_user() is None:
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        user = current_user()
        if user is None or not user['is_admin']:
            return jsonify({"error": "Unauthorized"}), 403
        return f(*args, **kwargs)
    return decorated


def safe_next_path(next_path):
    """Only same-site paths are allowed as post-login redirects."""
    if next_path and next_path.startswith('/') and not next_path.startswith('//'):
        return next_path
    return None
