"""Shared sqlite helpers for the Flask app, the worker and the maintenance scripts."""

import os
import sqlite3
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone

import config

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE COLLATE NOCASE,
        password_hash TEXT,
        email_confirmed INTEGER NOT NULL DEFAULT 0,
        credits INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
        subscription_status TEXT NOT NULL DEFAULT 'none',
        stripe_customer_id TEXT,
        is_admin INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS animations (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        guest_session_id TEXT,
        title TEXT,
        original_photo_url TEXT NOT NULL,
        video_url TEXT,
        watermarked_video_url TEXT,
        thumbnail_url TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        is_paid INTEGER NOT NULL DEFAULT 0,
        runway_job_id TEXT,
        error_message TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS purchases (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        animation_id TEXT,
        stripe_session_id TEXT UNIQUE,
        product_type TEXT NOT NULL,
        amount INTEGER NOT NULL DEFAULT 0,
        customer_email TEXT,
        stripe_customer_id TEXT,
        unlocks_animation INTEGER NOT NULL DEFAULT 0,
        credits_granted INTEGER NOT NULL DEFAULT 0,
        credited_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS login_codes (
        code TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        guest_session_id TEXT,
        animation_id TEXT,
        purpose TEXT NOT NULL DEFAULT 'login',
        expires_at TIMESTAMP NOT NULL,
        used_at TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS support_tickets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ticket_number TEXT UNIQUE NOT NULL,
        email TEXT NOT NULL,
        subject TEXT,
        status TEXT NOT NULL DEFAULT 'open',
        user_id TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS support_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ticket_id INTEGER NOT NULL REFERENCES support_tickets(id) ON DELETE CASCADE,
        sender_type TEXT NOT NULL,
        sender_email TEXT,
        message TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS ix_animations_guest ON animations (guest_session_id)',
    'CREATE INDEX IF NOT EXISTS ix_animations_user ON animations (user_id)',
    'CREATE INDEX IF NOT EXISTS ix_animations_runway_job ON animations (runway_job_id)',
    'CREATE INDEX IF NOT EXISTS ix_animations_status ON animations (status)',
    'CREATE INDEX IF NOT EXISTS ix_purchases_user ON purchases (user_id)',
    'CREATE INDEX IF NOT EXISTS ix_support_messages_ticket ON support_messages (ticket_id)',
]

# Columns added after the first release; init_db() back-fills them on old databases.
LATE_COLUMNS = {
    'animations': {'error_message': 'TEXT', 'updated_at': 'TIMESTAMP'},
    'purchases': {'customer_email': 'TEXT', 'stripe_customer_id': 'TEXT', 'unlocks_animation': 'INTEGER NOT NULL DEFAULT 0', 'credits_granted': 'INTEGER NOT NULL DEFAULT 0', 'credited_at': 'TIMESTAMP'},
    'profiles': {'is_admin': 'INTEGER NOT NULL DEFAULT 0', 'password_hash': 'TEXT', 'email_confirmed': 'INTEGER NOT NULL DEFAULT 0'},
}


def utcnow():
    return datetime.now(timezone.utc).isoformat()


def get_db_connection():
    """Creates a database connection with WAL mode enabled for concurrent app + worker access."""
    conn = sqlite3.connect(config.DATABASE_PATH, timeout=10)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA busy_timeout=30000;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    try:
        print(f"📁 Initializing database at: {config.DATABASE_PATH}")
        db_dir = os.path.dirname(config.DATABASE_PATH)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
            print(f"📁 Created database directory: {db_dir}")

        conn = sqlite3.connect(config.DATABASE_PATH, timeout=30)
        conn.isolation_level = None  # Autocommit mode
        cursor = conn.cursor()
        for statement in SCHEMA:
            cursor.execute(statement)

        for table, columns in LATE_COLUMNS.items():
            existing_columns = [col[1] for col in cursor.execute(f"PRAGMA table_info({table})").fetchall()]
            for col, col_type in columns.items():
                if col not in existing_columns:
                    try:
                        cursor.execute(f"ALTER TABLE {table} ADD COLUMN {col} {col_type}")
                        print(f"✅ Added missing column: {table}.{col}")
                    except sqlite3.OperationalError as e:
                        print(f"⚠️ Column {table}.{col} may already exist or error: {e}")

        conn.close()
        print("✅ Database initialized successfully.")
    except Exception as e:
        print(f"❌ Database initialization error: {e}")
        traceback.print_exc()
        raise


@contextmanager
def transaction(conn):
    """
    Run a block under BEGIN IMMEDIATE so the app and the worker serialize on
    the write lock. Commits on success, rolls back and re-raises on error.
    """
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    else:
        conn.commit()


def row_to_dict(row):
    return dict(row) if row is not None else None
