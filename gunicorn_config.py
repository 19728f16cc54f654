"""Gunicorn settings for the PicPip API (`gunicorn -c gunicorn_config.py app:app`)"""
import os
import sys
import traceback

sys.path.insert(0, os.path.dirname(__file__))


def on_starting(server):
    """Create or migrate the schema once, before any worker forks."""
    import config
    from database import init_db

    print(f"🚀 PicPip API starting, database at {config.DATABASE_PATH}")
    try:
        init_db()
    except Exception as e:
        # A broken schema would fail every request; refuse to boot instead.
        print(f"❌ CRITICAL: Database initialization failed: {e}")
        traceback.print_exc()
        raise
    print("✅ Database ready")


bind = f"0.0.0.0:{os.environ.get('PORT', '5001')}"
workers = int(os.environ.get('WEB_CONCURRENCY', '2'))
worker_class = "sync"
# Uploads are capped at 10MB; Runway and Stripe calls return quickly.
timeout = 60
graceful_timeout = 30
# Rate limits key on X-Forwarded-For set by the platform proxy.
forwarded_allow_ips = os.environ.get('FORWARDED_ALLOW_IPS', '*')
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get('LOG_LEVEL', 'info')
