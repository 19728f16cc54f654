"""
Animation rows and their Runway lifecycle: pending -> processing -> completed | failed.

Both the HTTP trigger (/api/runway/create-job) and the worker start jobs, and
both the Runway webhook and the worker's poller apply results, so every
transition here is a guarded UPDATE that is safe to race.
"""

import traceback

from database import get_db_connection, utcnow
from runway_client import RunwayError, get_runway_client
from s3_storage import absolute_url

BOOLEAN_FIELDS = ('is_paid',)


def serialize_animation(row):
    if row is None:
        return None
    data = dict(row)
    for key in BOOLEAN_FIELDS:
        if key in data:
            data[key] = bool(data[key])
    return data


def create_animation(conn, animation_id, guest_session_id, photo_url, thumbnail_url=None, user_id=None):
    now = utcnow()
    conn.execute(
        "INSERT INTO animations (id, user_id, guest_session_id, original_photo_url, thumbnail_url, status, is_paid, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, 'pending', 0, ?, ?)",
        (animation_id, user_id, guest_session_id, photo_url, thumbnail_url or photo_url, now, now)
    )
    return get_animation(conn, animation_id)


def get_animation(conn, animation_id):
    return conn.execute("SELECT * FROM animations WHERE id = ?", (animation_id,)).fetchone()


def get_animation_by_runway_job(conn, runway_job_id):
    return conn.execute("SELECT * FROM animations WHERE runway_job_id = ?", (runway_job_id,)).fetchone()


def list_animations(conn, user_id=None, guest_session_id=None):
    if user_id:
        rows = conn.execute(
            "SELECT * FROM animations WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
        ).fetchall()
    elif guest_session_id:
        rows = conn.execute(
            "SELECT * FROM animations WHERE guest_session_id = ? ORDER BY created_at DESC", (guest_session_id,)
        ).fetchall()
    else:
        rows = []
    return [serialize_animation(row) for row in rows]


def claim_for_processing(conn, animation_id):
    """Move a pending animation to processing. Returns False if someone else already claimed it."""
    cursor = conn.execute(
        "UPDATE animations SET status = 'processing', updated_at = ? WHERE id = ? AND status = 'pending'",
        (utcnow(), animation_id)
    )
    conn.commit()
    return cursor.rowcount == 1


def mark_failed(conn, animation_id, error_message):
    cursor = conn.execute(
        "UPDATE animations SET status = 'failed', error_message = ?, updated_at = ? "
        "WHERE id = ? AND status NOT IN ('completed', 'failed')",
        (error_message, utcnow(), animation_id)
    )
    conn.commit()
    return cursor.rowcount == 1


def start_runway_job(animation_id, image_url, client=None):
    """
    Submit an already-claimed animation to Runway and remember the task ID.

    Returns:
        tuple: (runway_job_id, error)
    """
    client = client or get_runway_client()
    try:
        job = client.create_image_to_video_job(absolute_url(image_url))
    except (RunwayError, ValueError) as e:
        print(f"   ❌ Runway job creation failed for animation {animation_id}: {e}")
        with get_db_connection() as conn:
            mark_failed(conn, animation_id, f"Runway error: {e}")
        return None, str(e)

    with get_db_connection() as conn:
        conn.execute(
            "UPDATE animations SET runway_job_id = ?, updated_at = ? WHERE id = ?",
            (job.id, utcnow(), animation_id)
        )
        conn.commit()
    print(f"   ✅ Runway job {job.id} started for animation {animation_id}")
    return job.id, None


def apply_runway_result(conn, animation_id, status, output=None, failure=None, watermarked_url=None):
    """
    Record a Runway outcome. Finished rows are never rewritten, so a late
    webhook can't undo what the poller already stored (or vice versa).

    Returns the new status, or None if nothing changed.
    """
    output = output or []
    if status == 'SUCCEEDED' and output:
        video_url = output[0]
        cursor = conn.execute(
            "UPDATE animations SET status = 'completed', video_url = ?, watermarked_video_url = ?, "
            "error_message = NULL, updated_at = ? WHERE id = ? AND status NOT IN ('completed', 'failed')",
            (video_url, watermarked_url or video_url, utcnow(), animation_id)
        )
        conn.commit()
        if cursor.rowcount:
            print(f"🎬 Animation completed: {animation_id}")
            return 'completed'
        return None

    if status == 'FAILED' or (status == 'SUCCEEDED' and not output):
        reason = failure or 'Runway job returned no video'
        print(f"❌ Runway job failed for animation {animation_id}: {reason}")
        return 'failed' if mark_failed(conn, animation_id, reason) else None

    return None


def trigger_animation(animation_id, image_url, client=None):
    """Claim + submit in one call; used by the HTTP trigger."""
    try:
        with get_db_connection() as conn:
            if not claim_for_processing(conn, animation_id):
                return None, 'Animation is not pending'
        return start_runway_job(animation_id, image_url, client=client)
    except Exception as e:
        traceback.print_exc()
        return None, str(e)
