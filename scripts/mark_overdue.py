#!/usr/bin/env python3
"""
InternTrack — Overdue Sweep
Marks open tasks past their due date as overdue and debits the assignees.
Meant to run from cron or a scheduler; safe to re-run.

Usage:
    python scripts/mark_overdue.py
    python scripts/mark_overdue.py --reconcile-blobs
"""

import sys
import asyncio
import logging
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "backend"))

from database import get_db_context, close_db  # noqa: E402
from storage import get_blob_store  # noqa: E402
import task_lifecycle  # noqa: E402
import uploads  # noqa: E402

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s %(message)s")
logger = logging.getLogger("interntrack.scripts")


async def run(reconcile_blobs: bool) -> int:
    try:
        async with get_db_context() as db:
            results = await task_lifecycle.sweep_overdue(db)
            logger.info(f"Marked {len(results)} task(s) overdue")

            if reconcile_blobs:
                removed = await uploads.reconcile_orphans(db, get_blob_store())
                logger.info(f"Removed {len(removed)} orphaned blob(s)")
    finally:
        await close_db()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the overdue task sweep")
    parser.add_argument("--reconcile-blobs", action="store_true", help="Also delete orphaned upload blobs")
    args = parser.parse_args()
    return asyncio.run(run(args.reconcile_blobs))


if __name__ == "__main__":
    sys.exit(main())
