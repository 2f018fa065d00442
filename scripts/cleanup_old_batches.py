"""List (and optionally delete) finished batches older than a cutoff date.

Usage:
    python scripts/cleanup_old_batches.py                      # dry run, older than 30 days
    python scripts/cleanup_old_batches.py --before 2026-01-01  # dry run, custom cutoff
    python scripts/cleanup_old_batches.py --before 2026-01-01 --delete
"""

import argparse
import sys
import os
from datetime import datetime, timedelta

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from workflow_engine.database import SessionLocal
from workflow_engine.services.batch_cleanup import find_cleanup_candidates, delete_batch
from workflow_engine.services.result_store import ResultStore
from workflow_engine.utils.timezone import utcnow


def parse_args():
    parser = argparse.ArgumentParser(description="Clean up old batch executions")
    parser.add_argument("--before", help="Cutoff date (YYYY-MM-DD). Default: 30 days ago")
    parser.add_argument("--delete", action="store_true", help="Actually delete (default is a dry run)")
    return parser.parse_args()


def main():
    args = parse_args()
    before = datetime.strptime(args.before, "%Y-%m-%d") if args.before else utcnow() - timedelta(days=30)

    db = SessionLocal()
    try:
        print("Batch Cleanup")
        print("=" * 50)
        print(f"Cutoff: {before.isoformat()}")
        print(f"Mode: {'DELETE' if args.delete else 'DRY RUN'}")

        candidates = find_cleanup_candidates(db, before)
        print(f"\nFound {len(candidates)} finished batches")

        for batch in candidates:
            print(
                f"  {batch.id}  {batch.status:<10} {batch.created_at}  "
                f"{batch.succeeded_count}/{batch.total_items} succeeded"
            )

        if not args.delete:
            print("\nDry run only. Re-run with --delete to remove these batches.")
            return

        result_store = ResultStore(SessionLocal)
        deleted = 0
        for batch_id in [b.id for b in candidates]:
            outcome = delete_batch(db, batch_id, result_store)
            if outcome["deleted"]:
                deleted += 1
            else:
                print(f"  Skipped {batch_id}: {outcome['reason']}")

        print(f"\nDeleted {deleted} batches")
    finally:
        db.close()


if __name__ == "__main__":
    main()
