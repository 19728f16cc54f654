#!/usr/bin/env python3
"""
Database maintenance utility for the PicPip backend.

Run this with the Flask app and the worker stopped.

Usage:
    python3 reset_database.py                   # Interactive menu
    python3 reset_database.py --status          # Counts by table and status
    python3 reset_database.py --clear-failed    # Delete failed animations
    python3 reset_database.py --requeue-stuck   # Put stuck processing animations back to pending
    python3 reset_database.py --pending-grants  # Purchases still waiting for an owner or a grant
    python3 reset_database.py --full-reset      # Delete the database files
"""

import os
import argparse

import config
from database import get_db_connection
from s3_storage import delete_file, key_for_url


def database_exists():
    if not os.path.exists(config.DATABASE_PATH):
        print(f"❌ Database file '{config.DATABASE_PATH}' not found.")
        return False
    return True


def get_counts():
    """Animation counts by status plus purchase bookkeeping totals."""
    try:
        with get_db_connection() as conn:
            counts = {'animations': {}, 'purchases': {}}
            for row in conn.execute("SELECT status, COUNT(*) AS count FROM animations GROUP BY status ORDER BY count DESC"):
                counts['animations'][row['status']] = row['count']
            purchases = counts['purchases']
            purchases['total'] = conn.execute("SELECT COUNT(*) FROM purchases").fetchone()[0]
            purchases['unowned'] = conn.execute("SELECT COUNT(*) FROM purchases WHERE user_id IS NULL").fetchone()[0]
            purchases['uncredited'] = conn.execute(
                "SELECT COUNT(*) FROM purchases WHERE credited_at IS NULL AND user_id IS NOT NULL"
            ).fetchone()[0]
            counts['profiles'] = conn.execute("SELECT COUNT(*) FROM profiles").fetchone()[0]
            counts['open_tickets'] = conn.execute(
                "SELECT COUNT(*) FROM support_tickets WHERE status IN ('open', 'in_progress')"
            ).fetchone()[0]
            return counts
    except Exception as e:
        print(f"❌ Error getting counts: {e}")
        return {}


def clear_failed_animations():
    """Delete failed, unpaid animations along with their stored photo and thumbnail."""
    try:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT id, original_photo_url, thumbnail_url FROM animations WHERE status = 'failed' AND is_paid = 0"
            ).fetchall()
            removed_files = 0
            for row in rows:
                for url in {row['original_photo_url'], row['thumbnail_url']}:
                    key = key_for_url(url)
                    if key and delete_file(key):
                        removed_files += 1
                conn.execute("DELETE FROM animations WHERE id = ?", (row['id'],))
            conn.commit()
            print(f"✅ Cleared {len(rows)} failed (unpaid) animations and {removed_files} stored files.")
            return len(rows)
    except Exception as e:
        print(f"❌ Error clearing failed animations: {e}")
        return None


def requeue_stuck_animations():
    """Processing animations go back to pending so the worker submits them again."""
    try:
        with get_db_connection() as conn:
            count = conn.execute(
                "UPDATE animations SET status = 'pending', runway_job_id = NULL, error_message = NULL "
                "WHERE status = 'processing'"
            ).rowcount
            conn.commit()
            print(f"✅ Re-queued {count} stuck animations.")
            return True
    except Exception as e:
        print(f"❌ Error re-queueing animations: {e}")
        return False


def show_pending_grants():
    try:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT id, stripe_session_id, product_type, customer_email, user_id, created_at FROM purchases "
                "WHERE credited_at IS NULL ORDER BY created_at"
            ).fetchall()
    except Exception as e:
        print(f"❌ Error reading purchases: {e}")
        return False

    if not rows:
        print("✅ Every purchase has been granted.")
        return True
    print(f"\n💳 {len(rows)} purchases not yet granted:")
    for row in rows:
        owner = row['user_id'] or 'no owner yet'
        print(f"  #{row['id']} {row['product_type']:<12} {row['customer_email'] or '-':<30} {owner} ({row['created_at']})")
    return True


def full_reset():
    """Delete the entire database file."""
    try:
        files_to_remove = [config.DATABASE_PATH, f"{config.DATABASE_PATH}-shm", f"{config.DATABASE_PATH}-wal"]
        removed_count = 0
        for file_path in files_to_remove:
            if os.path.exists(file_path):
                os.remove(file_path)
                removed_count += 1
                print(f"🗑️ Removed {file_path}")

        if removed_count > 0:
            print(f"✅ Full database reset complete. Removed {removed_count} files.")
            print("📝 Run `flask --app app init-db` (or restart gunicorn) to recreate it.")
        else:
            print("ℹ️ No database files found to remove.")
        return True
    except OSError as e:
        print(f"❌ Error during full reset: {e}")
        return False


def show_status():
    print("\n📊 Current Database Status:")
    print("=" * 40)
    if not database_exists():
        return

    counts = get_counts()
    if not counts:
        print("❌ Could not read database.")
        return

    print(f"Profiles: {counts['profiles']}")
    print(f"Open tickets: {counts['open_tickets']}")
    print("\nAnimations by status:")
    if not counts['animations']:
        print("  (none)")
    for status, count in counts['animations'].items():
        print(f"  {status}: {count}")
    purchases = counts['purchases']
    print(f"\nPurchases: {purchases['total']} ({purchases['unowned']} without owner, "
          f"{purchases['uncredited']} owned but not granted)")


def interactive_menu():
    while True:
        print("\n🔧 PicPip Database Utility")
        print("=" * 50)

        show_status()

        print("\nOptions:")
        print("1. Clear failed animations")
        print("2. Re-queue stuck processing animations")
        print("3. Show purchases not yet granted")
        print("4. Full database reset (delete files)")
        print("5. Refresh status")
        print("6. Exit")

        choice = input("\nEnter your choice (1-6): ").strip()

        if choice == '1':
            if input("\n🧹 Clear failed animations? Type 'yes' to confirm: ") == 'yes':
                clear_failed_animations()
            else:
                print("❌ Operation cancelled.")

        elif choice == '2':
            if input("\n🔄 Re-queue stuck animations? Type 'yes' to confirm: ") == 'yes':
                requeue_stuck_animations()
            else:
                print("❌ Operation cancelled.")

        elif choice == '3':
            show_pending_grants()

        elif choice == '4':
            print("\n⚠️  DANGER: This will completely delete the database, including purchases!")
            if input("Type 'DELETE' to confirm: ") == 'DELETE':
                full_reset()
            else:
                print("❌ Operation cancelled.")

        elif choice == '5':
            continue

        elif choice == '6':
            print("👋 Goodbye!")
            break

        else:
            print("❌ Invalid choice. Please enter 1-6.")


def main():
    parser = argparse.ArgumentParser(description='PicPip database maintenance')
    parser.add_argument('--status', action='store_true', help='Show database status only')
    parser.add_argument('--clear-failed', action='store_true', help='Delete failed, unpaid animations')
    parser.add_argument('--requeue-stuck', action='store_true', help='Move processing animations back to pending')
    parser.add_argument('--pending-grants', action='store_true', help='List purchases not yet granted')
    parser.add_argument('--full-reset', action='store_true', help='Delete entire database')

    args = parser.parse_args()

    print("⚠️  Make sure the Flask app and worker are stopped before running this script!")

    if not any([args.status, args.clear_failed, args.requeue_stuck, args.pending_grants, args.full_reset]):
        interactive_menu()
        return

    if args.status:
        show_status()

    elif args.clear_failed:
        if database_exists():
            print("\n🧹 Clearing failed animations...")
            clear_failed_animations()

    elif args.requeue_stuck:
        if database_exists():
            print("\n🔄 Re-queueing stuck animations...")
            requeue_stuck_animations()

    elif args.pending_grants:
        if database_exists():
            show_pending_grants()

    elif args.full_reset:
        print("\n💥 Performing full database reset...")
        if input("⚠️ This will DELETE the entire database! Type 'DELETE' to confirm: ") == 'DELETE':
            full_reset()
        else:
            print("❌ Operation cancelled.")


if __name__ == "__main__":
    main()
