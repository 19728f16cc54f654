"""
Background worker: starts Runway jobs for pending animations and polls
the ones in flight. Runs as its own process next to the Flask app.

    python worker.py
"""

import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import config
from animations import apply_runway_result, claim_for_processing, mark_failed, start_runway_job
from database import get_db_connection, init_db
from runway_client import RunwayError, get_runway_client
from video_processor import is_watermarking_enabled, watermark_video

TIMEOUT_ERROR = 'Runway job timed out'


def claim_pending(conn, limit):
    """Claim up to ``limit`` of the oldest pending animations for this worker."""
    rows = conn.execute(
        "SELECT id, original_photo_url FROM animations WHERE status = 'pending' ORDER BY created_at ASC LIMIT ?",
        (limit,)
    ).fetchall()
    claimed = []
    for row in rows:
        if claim_for_processing(conn, row['id']):
            claimed.append(dict(row))
        else:
            print(f"   ⏭️ Animation {row['id']} was claimed elsewhere")
    return claimed


def handle_start(animation, client):
    print(f"[Worker] Starting Runway job for animation {animation['id']}")
    return start_runway_job(animation['id'], animation['original_photo_url'], client=client)


def handle_poll(animation, client):
    """
    Check one in-flight Runway job and record the outcome if it finished.

    Returns:
        str: the new status, or None if the job is still running
    """
    try:
        job = client.get_job_status(animation['runway_job_id'])
    except RunwayError as e:
        print(f"[Worker] Poll error for animation {animation['id']}: {e}")
        return None

    if not job.is_finished:
        print(f"   ⏳ Animation {animation['id']}: {job.status}")
        return None

    watermarked_url = None
    if job.status == 'SUCCEEDED' and job.video_url and is_watermarking_enabled():
        watermarked_url = watermark_video(job.video_url, animation['id'])

    with get_db_connection() as conn:
        return apply_runway_result(conn, animation['id'], job.status, job.output, job.failure, watermarked_url)


def processing_with_jobs(conn):
    return [dict(row) for row in conn.execute(
        "SELECT id, runway_job_id FROM animations WHERE status = 'processing' AND runway_job_id IS NOT NULL "
        "ORDER BY updated_at ASC"
    ).fetchall()]


def fail_timed_out(conn, now=None, client=None):
    """
    Fail animations that have been processing longer than RUNWAY_MAX_POLL_SECONDS.

    With a client, the Runway job is cancelled first so it stops using credits.
    A failed cancel is logged and the animation is still failed.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = (now - timedelta(seconds=config.RUNWAY_MAX_POLL_SECONDS)).isoformat()
    rows = conn.execute(
        "SELECT id, runway_job_id FROM animations WHERE status = 'processing' AND updated_at < ?", (cutoff,)
    ).fetchall()

    timed_out = []
    for row in rows:
        if client is not None and row['runway_job_id']:
            try:
                client.cancel_job(row['runway_job_id'])
            except RunwayError as e:
                print(f"⚠️ Could not cancel Runway job {row['runway_job_id']}: {e}")
        if mark_failed(conn, row['id'], TIMEOUT_ERROR):
            print(f"⌛ Animation {row['id']} timed out after {config.RUNWAY_MAX_POLL_SECONDS}s")
            timed_out.append(row['id'])
    return timed_out


def run_once(client):
    """One synchronous pass: start pending jobs, poll running ones, expire stale ones."""
    with get_db_connection() as conn:
        fail_timed_out(conn, client=client)
        pending = claim_pending(conn, config.MAX_CONCURRENT_JOBS)
    for animation in pending:
        handle_start(animation, client)

    with get_db_connection() as conn:
        in_flight = processing_with_jobs(conn)
    return [handle_poll(animation, client) for animation in in_flight]


def main():
    print("=" * 60)
    print("Starting PicPip Worker")
    print(f"Max concurrent jobs: {config.MAX_CONCURRENT_JOBS}")
    print(f"Poll interval: {config.RUNWAY_POLL_INTERVAL}s, timeout: {config.RUNWAY_MAX_POLL_SECONDS}s")
    print("=" * 60)

    init_db()
    client = get_runway_client()
    executor = ThreadPoolExecutor(max_workers=config.MAX_CONCURRENT_JOBS, thread_name_prefix="RunwayWorker")
    active_futures = {}  # Maps future -> animation_id
    last_poll = 0

    try:
        while True:
            try:
                # Clean up completed futures
                for future in [f for f in active_futures if f.done()]:
                    animation_id = active_futures.pop(future)
                    try:
                        future.result()
                    except Exception as e:
                        print(f"Future for animation {animation_id} raised exception: {e}")

                busy = set(active_futures.values())
                capacity = config.MAX_CONCURRENT_JOBS - len(active_futures)

                if capacity > 0:
                    with get_db_connection() as conn:
                        pending = claim_pending(conn, capacity)
                    for animation in pending:
                        print(f"   ✅ Submitting animation {animation['id']} to thread pool")
                        future = executor.submit(handle_start, animation, client)
                        active_futures[future] = animation['id']

                current_time = time.time()
                if current_time - last_poll >= config.RUNWAY_POLL_INTERVAL:
                    last_poll = current_time
                    with get_db_connection() as conn:
                        fail_timed_out(conn, client=client)
                        in_flight = processing_with_jobs(conn)
                    if in_flight:
                        print(f"🔍 Polling {len(in_flight)} Runway jobs ({len(active_futures)}/{config.MAX_CONCURRENT_JOBS} active)")
                    for animation in in_flight:
                        if animation['id'] in busy:
                            continue
                        future = executor.submit(handle_poll, animation, client)
                        active_futures[future] = animation['id']

                # Sleep briefly to avoid tight loop
                time.sleep(1)

            except Exception as e:
                print(f"ERROR in worker's main loop: {e}")
                traceback.print_exc()
                time.sleep(5)

    except KeyboardInterrupt:
        print("\n\nShutting down worker...")
        print("Waiting for active jobs to complete...")
        executor.shutdown(wait=True)
        print("Worker stopped cleanly.")


if __name__ == "__main__":
    main()
