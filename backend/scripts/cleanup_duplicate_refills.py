"""
Remove duplicate pending refill requests left over from before the
partial unique index on refill_requests(original_order_id) existed.

For every order with more than one pending request the oldest one is
kept and the rest are deleted.  Run this before the index migration if
``CREATE UNIQUE INDEX`` fails on existing data.

Usage:
    cd backend
    python -m scripts.cleanup_duplicate_refills [--dry-run]
"""

import argparse
import asyncio
import logging
import sys

from rxportal.database import AsyncSessionLocal, engine
from rxportal.services.refill_service import cleanup_duplicate_pending_requests

logger = logging.getLogger("cleanup_duplicate_refills")


async def run(dry_run: bool) -> int:
    async with AsyncSessionLocal() as session:
        removed = await cleanup_duplicate_pending_requests(session, dry_run=dry_run)
    await engine.dispose()

    verb = "Would remove" if dry_run else "Removed"
    print(f"{verb} {len(removed)} duplicate pending refill request(s)")
    for refill_id in removed:
        print(f"  - {refill_id}")
    return len(removed)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delete duplicate pending refill requests")
    parser.add_argument("--dry-run", action="store_true", help="List duplicates without deleting them")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(run(args.dry_run))
    except Exception:
        logger.exception("cleanup failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
