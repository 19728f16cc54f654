from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

import auth
import config

GUEST = '0f8fad5b-d9cb-469f-a165-70867728950e'


@pytest.fixture
def sent_links(monkeypatch):
    """Capture magic-link emails instead of sending them."""
    sent = []
    monkeypatch.setattr(auth, 'send_in_background', lambda fn, **kwargs: sent.append(kwargs))
    return sent


def code_from(link):
    return parse_qs(urlparse(link).query)['code'][0]


def location(response):
    parsed = urlparse(response.headers['Location'])
    return f"{parsed.path}?{parsed.query}" if parsed.query else parsed.path


def test_signup_login_logout(client):
    response = client.post('/api/auth/signup', json={'email': 'New@Example.com', 'password': 'correct horse'})
    assert response.status_code == 200
    assert response.get_json()['user']['email'] == 'new@example.com'
    assert client.get('/api/account').status_code == 200

    assert client.post('/api/auth/logout').status_code == 200
    assert client.get('/api/account').status_code == 401

    assert client.post('/api/auth/login', json={'email': 'new@example.com', 'password': 'wrong'}).status_code == 401
    assert client.post('/api/auth/login', json={'email': 'NEW@example.com', 'password': 'correct horse'}).status_code == 200


def test_signup_rejects_duplicates_and_short_passwords(client):
    client.post('/api/auth/signup', json={'email': 'pip@example.com', 'password': 'long enough'})
    assert client.post('/api/auth/signup', json={'email': 'PIP@example.com', 'password': 'long enough'}).status_code == 400
    assert client.post('/api/auth/signup', json={'email': 'x@example.com', 'password': 'short'}).status_code == 400


def test_signup_promotes_guest_uploads(client, conn, make_animation):
    animation_id = make_animation(guest_session_id=GUEST)
    response = client.post('/api/auth/signup', json={'email': 'pip@example.com', 'password': 'long enough',
                                                     'guestSessionId': GUEST})
    user_id = response.get_json()['user']['id']
    row = conn.execute("SELECT user_id, guest_session_id FROM animations WHERE id = ?", (animation_id,)).fetchone()
    assert row['user_id'] == user_id
    assert row['guest_session_id'] is None


def test_magic_link_callback_logs_in_and_redirects(client, conn, sent_links, make_animation):
    animation_id = make_animation(guest_session_id=GUEST)
    client.post('/api/auth/magic-link', json={'email': 'pip@example.com', 'guestSessionId': GUEST,
                                              'animationId': animation_id})

    link = sent_links[0]['link']
    assert link.startswith('http://localhost:3000/auth/callback?')
    query = parse_qs(urlparse(link).query)
    assert query['guestSessionId'] == [GUEST]

    response = client.get(f"/auth/callback?code={code_from(link)}&guestSessionId={GUEST}&animationId={animation_id}")
    assert response.status_code == 302
    assert location(response) == f"/celebration/{animation_id}"

    profile = client.get('/api/account').get_json()['profile']
    assert profile['emailConfirmed'] is True
    row = conn.execute("SELECT user_id FROM animations WHERE id = ?", (animation_id,)).fetchone()
    assert row['user_id'] == profile['id']


def test_login_codes_are_single_use(client, sent_links):
    client.post('/api/auth/magic-link', json={'email': 'pip@example.com'})
    code = code_from(sent_links[0]['link'])

    assert location(client.get(f"/auth/callback?code={code}")) == '/memories'
    assert location(client.get(f"/auth/callback?code={code}")) == '/?error=auth_failed'


def test_expired_login_code(client, conn, sent_links):
    client.post('/api/auth/magic-link', json={'email': 'pip@example.com'})
    code = code_from(sent_links[0]['link'])
    past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
    conn.execute("UPDATE login_codes SET expires_at = ? WHERE code = ?", (past, code))
    conn.commit()

    assert location(client.get(f"/auth/callback?code={code}")) == '/?error=auth_failed'


def test_callback_without_code_and_next_handling(client, sent_links):
    assert location(client.get('/auth/callback')) == '/'

    client.post('/api/auth/magic-link', json={'email': 'pip@example.com'})
    code = code_from(sent_links[0]['link'])
    assert location(client.get(f"/auth/callback?code={code}&next=/pricing")) == '/pricing'

    client.post('/api/auth/magic-link', json={'email': 'pip@example.com'})
    code = code_from(sent_links[1]['link'])
    # Off-site redirects are ignored
    assert location(client.get(f"/auth/callback?code={code}&next=//evil.example.com")) == '/memories'


def test_password_recovery(client, sent_links):
    client.post('/api/auth/signup', json={'email': 'pip@example.com', 'password': 'old password'})
    client.post('/api/auth/logout')

    assert client.post('/api/auth/forgot-password', json={'email': 'unknown@example.com'}).status_code == 200
    assert sent_links == []

    client.post('/api/auth/forgot-password', json={'email': 'pip@example.com'})
    assert sent_links[0]['purpose'] == 'recovery'
    assert location(client.get(f"/auth/callback?code={code_from(sent_links[0]['link'])}")) == '/auth/reset-password'

    assert client.post('/api/auth/reset-password', json={'password': 'new password'}).status_code == 200
    client.post('/api/auth/logout')
    assert client.post('/api/auth/login', json={'email': 'pip@example.com', 'password': 'new password'}).status_code == 200


def test_auto_confirm(client, conn, make_user, monkeypatch):
    user_id = make_user(email_confirmed=False)
    response = client.post('/api/auth/auto-confirm', json={'userId': user_id})
    assert response.status_code == 200
    assert response.get_json()['user']['emailConfirmed'] is True

    assert client.post('/api/auth/auto-confirm', json={}).status_code == 400
    assert client.post('/api/auth/auto-confirm', json={'userId': 'missing'}).status_code == 404

    monkeypatch.setattr(config, 'PRODUCTION_MODE', True)
    assert client.post('/api/auth/auto-confirm', json={'userId': user_id}).status_code == 403


def test_admin_required(client, login, make_user):
    login(make_user('member@example.com'))
    assert client.get('/api/admin/support/tickets').status_code == 403
    login(make_user('admin@example.com', is_admin=True))
    assert client.get('/api/admin/support/tickets').status_code == 200
