#!/usr/bin/env python3
"""
Recompute every provider's public reputation from the raw rating records.

Run after importing historical ratings or when the reputation table drifted:

    DATABASE_URL=postgresql://... python scripts/recompute_reputations.py [--dry-run]
"""
import argparse
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'services', 'engagement_service'))

import crud
from database import SessionLocal, init_db
from ratings import aggregate

logger = logging.getLogger("recompute_reputations")


def recompute(db, dry_run=False):
    """Return {provider_id: (old, new)} for every provider that has ratings."""
    changes = {}
    for provider_id in crud.rated_provider_ids(db):
        old = crud.get_reputation(db, provider_id)
        new = aggregate(crud.list_ratings(db, provider_id))
        changes[provider_id] = (old, new)
        if old == new:
            continue
        logger.info(
            "%s: %.1f (%d) -> %.1f (%d)",
            provider_id, old.score, old.review_count, new.score, new.review_count,
        )
        if not dry_run:
            crud.save_reputation(db, provider_id, new)
    return changes


def main():
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="report differences without writing")
    args = parser.parse_args()

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(), format="%(levelname)s %(message)s")
    init_db()
    db = SessionLocal()
    try:
        changes = recompute(db, dry_run=args.dry_run)
    finally:
        db.close()

    changed = sum(1 for old, new in changes.values() if old != new)
    logger.info("Checked %d providers, %d out of date%s", len(changes), changed, " (dry run)" if args.dry_run else "")


if __name__ == "__main__":
    main()
