"""Help-desk tickets: numbering, creation, listing and admin replies."""

import sqlite3
from datetime import datetime, timezone

from database import transaction, utcnow

TICKET_STATUSES = ('open', 'in_progress', 'resolved', 'closed')
MAX_MESSAGE_LENGTH = 5000
MAX_SUBJECT_LENGTH = 100
TICKET_PREFIX = 'PIP'
MAX_NUMBER_ATTEMPTS = 5


class TicketError(Exception):
    pass


def generate_ticket_number(conn, today=None):
    """Next number in today's sequence, e.g. PIP-20250114-0003."""
    today = today or datetime.now(timezone.utc)
    day_prefix = f"{TICKET_PREFIX}-{today.strftime('%Y%m%d')}-"
    row = conn.execute(
        "SELECT ticket_number FROM support_tickets WHERE ticket_number LIKE ? "
        "ORDER BY CAST(substr(ticket_number, ?) AS INTEGER) DESC LIMIT 1",
        (day_prefix + '%', len(day_prefix) + 1)
    ).fetchone()
    sequence = int(row['ticket_number'][len(day_prefix):]) + 1 if row else 1
    return f"{day_prefix}{sequence:04d}"


def subject_from_message(message):
    first_line = message.split('\n')[0].strip()
    if len(first_line) > MAX_SUBJECT_LENGTH:
        return first_line[:MAX_SUBJECT_LENGTH] + '...'
    return first_line or None


def preview(message, length=200):
    return message[:length] + '...' if len(message) > length else message


def create_ticket(conn, email, message, user_id=None):
    """
    Insert a ticket and its first message together.

    Two requests can compute the same next number; the loser hits the UNIQUE
    constraint and tries again with a fresh number.
    """
    email = email.strip()
    message = message.strip()
    subject = subject_from_message(message)

    for attempt in range(MAX_NUMBER_ATTEMPTS):
        try:
            with transaction(conn):
                ticket_number = generate_ticket_number(conn)
                now = utcnow()
                cursor = conn.execute(
                    "INSERT INTO support_tickets (ticket_number, email, subject, status, user_id, created_at, updated_at) "
                    "VALUES (?, ?, ?, 'open', ?, ?, ?)",
                    (ticket_number, email, subject, user_id, now, now)
                )
                ticket_id = cursor.lastrowid
                conn.execute(
                    "INSERT INTO support_messages (ticket_id, sender_type, sender_email, message, created_at) "
                    "VALUES (?, 'user', ?, ?, ?)",
                    (ticket_id, email, message, now)
                )
        except sqlite3.IntegrityError as e:
            print(f"⚠️ Ticket number collision on attempt {attempt + 1}: {e}")
            continue
        print(f"🎫 Created support ticket {ticket_number} for {email}")
        return get_ticket(conn, ticket_id)

    raise TicketError('Could not allocate a ticket number')


def get_ticket(conn, ticket_id):
    return conn.execute("SELECT * FROM support_tickets WHERE id = ?", (ticket_id,)).fetchone()


def get_messages(conn, ticket_id):
    return conn.execute(
        "SELECT * FROM support_messages WHERE ticket_id = ? ORDER BY created_at ASC, id ASC", (ticket_id,)
    ).fetchall()


def list_tickets(conn, status=None, search=None, page=1, limit=50):
    """Newest first. Returns (rows, total)."""
    clauses, params = [], []
    if status and status != 'all' and status in TICKET_STATUSES:
        clauses.append("status = ?")
        params.append(status)
    if search:
        clauses.append("(ticket_number LIKE ? OR email LIKE ?)")
        params.extend([f"%{search}%", f"%{search}%"])
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ''

    total = conn.execute(f"SELECT COUNT(*) FROM support_tickets {where}", params).fetchone()[0]
    rows = conn.execute(
        f"SELECT * FROM support_tickets {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        params + [limit, (page - 1) * limit]
    ).fetchall()
    return rows, total


def update_status(conn, ticket_id, status):
    if status not in TICKET_STATUSES:
        raise TicketError('Invalid status')
    with transaction(conn):
        conn.execute("UPDATE support_tickets SET status = ?, updated_at = ? WHERE id = ?",
                     (status, utcnow(), ticket_id))
    return get_ticket(conn, ticket_id)


def add_admin_reply(conn, ticket, admin_email, message):
    """Store an admin reply; an open ticket moves to in_progress."""
    with transaction(conn):
        now = utcnow()
        cursor = conn.execute(
            "INSERT INTO support_messages (ticket_id, sender_type, sender_email, message, created_at) "
            "VALUES (?, 'admin', ?, ?, ?)",
            (ticket['id'], admin_email, message.strip(), now)
        )
        conn.execute(
            "UPDATE support_tickets SET status = 'in_progress', updated_at = ? WHERE id = ? AND status = 'open'",
            (now, ticket['id'])
        )
    return conn.execute("SELECT * FROM support_messages WHERE id = ?", (cursor.lastrowid,)).fetchone()
