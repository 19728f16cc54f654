"""
Configuration for the PicPip backend.

Every setting comes from the environment (or a local .env file). The Flask app,
the worker and the maintenance scripts all import this module, so read values
as ``config.NAME`` at call time rather than copying them at import time.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# --- CONFIGURATION & FOLDER PATHS ---
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
STATIC_FOLDER = os.getenv('STATIC_FOLDER', os.path.join(BASE_DIR, 'static'))
UPLOADS_FOLDER = os.path.join(STATIC_FOLDER, 'uploads')
DATABASE_PATH = os.getenv('DATABASE_PATH', os.path.join(BASE_DIR, 'picpip.db'))

APP_URL = os.getenv('APP_URL', 'http://localhost:3000').rstrip('/')
SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-change-me')
PRODUCTION_MODE = os.getenv('PRODUCTION_MODE', 'false').lower() == 'true'

# --- UPLOADS ---
MAX_UPLOAD_SIZE = 10 * 1024 * 1024  # 10MB
ALLOWED_IMAGE_TYPES = ('image/jpeg', 'image/png', 'image/webp', 'image/gif')
UPLOAD_BUCKET_PREFIX = 'guest-uploads'

# --- STORAGE ---
USE_S3 = os.getenv('USE_S3', 'false').lower() == 'true'
S3_BUCKET_NAME = os.getenv('S3_BUCKET_NAME', '')
AWS_REGION = os.getenv('AWS_REGION', 'us-east-1')
CLOUDFRONT_URL = os.getenv('CLOUDFRONT_URL', '').rstrip('/')

# --- STRIPE ---
STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY', '')
STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET', '')
STRIPE_PRICE_SINGLE = os.getenv('STRIPE_PRICE_SINGLE', '')
STRIPE_PRICE_BUNDLE = os.getenv('STRIPE_PRICE_BUNDLE', '')
STRIPE_PRICE_SUBSCRIPTION = os.getenv('STRIPE_PRICE_SUBSCRIPTION', '')

# --- RUNWAY ---
RUNWAY_API_KEY = os.getenv('RUNWAY_API_KEY', '')
RUNWAY_WEBHOOK_SECRET = os.getenv('RUNWAY_WEBHOOK_SECRET', '')
RUNWAY_MODEL = os.getenv('RUNWAY_MODEL', 'gen3a_turbo')
RUNWAY_DURATION = int(os.getenv('RUNWAY_DURATION', '5'))

# --- EMAIL ---
RESEND_API_KEY = os.getenv('RESEND_API_KEY', '')
FROM_EMAIL = os.getenv('FROM_EMAIL', 'Pip <pip@help.picpip.co>')
ADMIN_EMAIL = os.getenv('ADMIN_EMAIL', 'admin@help.picpip.co')

# --- RATE LIMITING ---
RATELIMIT_ENABLED = os.getenv('RATELIMIT_ENABLED', 'true').lower() == 'true'
RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')

# --- WORKER ---
MAX_CONCURRENT_JOBS = int(os.getenv('MAX_CONCURRENT_JOBS', '3'))
RUNWAY_POLL_INTERVAL = int(os.getenv('RUNWAY_POLL_INTERVAL', '5'))
RUNWAY_MAX_POLL_SECONDS = int(os.getenv('RUNWAY_MAX_POLL_SECONDS', '300'))  # 5 minutes, same as 60 polls x 5s
WATERMARK_VIDEOS = os.getenv('WATERMARK_VIDEOS', 'false').lower() == 'true'

LOGIN_CODE_TTL_SECONDS = 60 * 60
