#!/usr/bin/env python3
"""
Periodic maintenance job: fire due reminders and remind crews about overdue assets.

Usage:
  python scripts/run_maintenance_sweep.py [--threshold-days N] [--skip-reminders] [--skip-sweep]

Meant to be run from cron. Each run fires a reminder at most once, and the
overdue sweep skips crew members already reminded inside the dedupe window,
so overlapping runs do not double-notify.
"""
import argparse
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables first
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    print("WARNING: python-dotenv is not installed, using process environment only")

from fleethub.db import SessionLocal
from fleethub.logging import setup_logging
from fleethub.services import notifications, reminders


def fire_reminders(db) -> int:
    fired = reminders.fire_due_reminders(db)
    factory = notifications.session_factory_for(db)
    for item in fired:
        notifications.dispatch_push(
            factory,
            [item.notification.user_id],
            "Maintenance Due",
            item.notification.message,
            {"type": reminders.REMINDER_DUE, "asset_id": str(item.reminder.asset_id)},
        )
    return len(fired)


def main():
    parser = argparse.ArgumentParser(description="Fire due maintenance reminders and run the overdue sweep")
    parser.add_argument("--threshold-days", type=int, default=None, help="Override OVERDUE_THRESHOLD_DAYS")
    parser.add_argument("--skip-reminders", action="store_true", help="Don't fire scheduled reminders")
    parser.add_argument("--skip-sweep", action="store_true", help="Don't run the overdue sweep")
    args = parser.parse_args()

    setup_logging()
    db = SessionLocal()
    exit_code = 0
    try:
        if not args.skip_reminders:
            count = fire_reminders(db)
            print(f"[reminders] Fired {count} reminder(s)")
        if not args.skip_sweep:
            result = notifications.send_maintenance_reminders(db, args.threshold_days)
            print(
                f"[sweep] {result.assets_overdue} overdue asset(s), "
                f"{result.notifications_created} notification(s) created, "
                f"{result.assets_skipped} asset(s) already reminded"
            )
            for error in result.errors:
                print(f"[sweep] ERROR {error}")
            if result.errors:
                exit_code = 1
    finally:
        db.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
