import os
import tempfile
import uuid

# Settings are read from the environment at import time, so point everything at
# throwaway locations before the app modules load.
_TMP = tempfile.mkdtemp(prefix='picpip_tests_')
os.environ['DATABASE_PATH'] = os.path.join(_TMP, 'import.db')
os.environ['STATIC_FOLDER'] = os.path.join(_TMP, 'static')
os.environ['RATELIMIT_ENABLED'] = 'false'
os.environ['USE_S3'] = 'false'
os.environ['PRODUCTION_MODE'] = 'false'
os.environ['APP_URL'] = 'http://localhost:3000'
os.environ['WATERMARK_VIDEOS'] = 'false'
for key in ('RUNWAY_API_KEY', 'RUNWAY_WEBHOOK_SECRET', 'STRIPE_SECRET_KEY', 'STRIPE_WEBHOOK_SECRET', 'RESEND_API_KEY'):
    os.environ[key] = ''

import pytest

import config
from database import get_db_connection, init_db, utcnow


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'DATABASE_PATH', str(tmp_path / 'picpip.db'))
    monkeypatch.setattr(config, 'STATIC_FOLDER', str(tmp_path / 'static'))
    init_db()
    yield


@pytest.fixture
def conn(fresh_db):
    connection = get_db_connection()
    yield connection
    connection.close()


@pytest.fixture
def flask_app():
    from app import app
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def make_user(conn):
    def _make_user(email='pip@example.com', credits=0, subscription_status='none', is_admin=False,
                   stripe_customer_id=None, email_confirmed=True):
        user_id = str(uuid.uuid4())
        conn.execute(
            "INSERT INTO profiles (id, email, email_confirmed, credits, subscription_status, stripe_customer_id, "
            "is_admin, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (user_id, email, int(email_confirmed), credits, subscription_status, stripe_customer_id,
             int(is_admin), utcnow())
        )
        conn.commit()
        return user_id
    return _make_user


@pytest.fixture
def make_animation(conn):
    def _make_animation(guest_session_id=None, user_id=None, status='pending', is_paid=False, runway_job_id=None):
        animation_id = str(uuid.uuid4())
        now = utcnow()
        conn.execute(
            "INSERT INTO animations (id, user_id, guest_session_id, original_photo_url, thumbnail_url, status, "
            "is_paid, runway_job_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (animation_id, user_id, guest_session_id, '/static/guest-uploads/photo.png',
             '/static/guest-uploads/photo_thumb.jpg', status, int(is_paid), runway_job_id, now, now)
        )
        conn.commit()
        return animation_id
    return _make_animation


@pytest.fixture
def login(client):
    def _login(user_id):
        with client.session_transaction() as sess:
            sess['user_id'] = user_id
    return _login


