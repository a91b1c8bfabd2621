#!/usr/bin/env python3
"""Backfill level-0 competency records for existing users.

Usage:
    python scripts/initialize_user_competencies.py [--user USER_ID ...] [--dry-run]

Without --user, every user id found in the learning-state tables is
processed. Reads DATABASE_PATH / DATABASE_URL from the .env file.

Safe to re-run: users that already have a record for every catalog
competency are left untouched.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from mastery_engine.config import settings
from mastery_engine.db import learning_state as ls
from mastery_engine.db.database import get_db
from mastery_engine.errors import StorageUnavailable
from mastery_engine.services.catalog import SqlCatalogReader
from mastery_engine.services.mastery_store import MasteryStore

logger = logging.getLogger("initialize_user_competencies")


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(StorageUnavailable),
    before_sleep=lambda retry_state: logger.warning(
        "Storage unavailable (attempt %d), retrying: %s",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    ),
    reraise=True,
)
async def _initialize_user(store: MasteryStore, catalog: SqlCatalogReader, user_id: str) -> int:
    return await store.ensure_initialized(user_id, catalog)


async def run(user_ids: list[str], dry_run: bool) -> int:
    total_created = 0
    async for db in get_db():
        catalog = SqlCatalogReader(db)
        store = MasteryStore(db, settings.engine_config(), catalog=catalog)
        if not user_ids:
            user_ids = await ls.get_known_user_ids(db)
        competencies = await catalog.list_competencies()
        print(f"Catalog competencies: {len(competencies)}")
        print(f"Users to process:     {len(user_ids)}")
        print()

        for user_id in user_ids:
            if dry_run:
                rows = await ls.get_user_competencies(db, user_id)
                missing = len(competencies) - len(rows)
                print(f"  {user_id}: {max(missing, 0)} missing")
                continue
            created = await _initialize_user(store, catalog, user_id)
            total_created += created
            print(f"  {user_id}: created {created}")

    print()
    print(f"Done. {total_created} competency records created.")
    return total_created


def main():
    parser = argparse.ArgumentParser(description="Backfill user competency records")
    parser.add_argument("--user", action="append", default=[], dest="users",
                        help="User id to initialize (repeatable; default: all known users)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Only report how many records each user is missing")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s [%(name)s] %(message)s")
    asyncio.run(run(args.users, args.dry_run))


if __name__ == "__main__":
    main()
