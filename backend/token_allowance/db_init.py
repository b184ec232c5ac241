"""
Token Allowance Database Initialization

Prepares MongoDB for the allowance engine:
- collections for the ledger, settings, usage/audit log, profiles and meta
- indexes, including the unique window index that makes concurrent
  ensures converge on one period
- default credit settings, seeded with $setOnInsert so admin edits survive
- a version stamp in token_allowance_meta

Nothing is dropped or overwritten, so the script can be re-run at will.
Production runs need TOKEN_ALLOWANCE_INIT_CONFIRM=YES.

Usage:
    python -m token_allowance.db_init [--dry-run]
"""

import os
import sys
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

from .config import (
    PERIODS_COLLECTION,
    SETTINGS_COLLECTION,
    USAGE_EVENTS_COLLECTION,
    PROFILES_COLLECTION,
    META_COLLECTION,
    SETTING_KEYS,
    DEFAULT_SETTINGS,
    SETTING_LABELS,
)

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.1.0"
VERSION_DOC_ID = "token_allowance_init"

REQUIRED_COLLECTIONS = [
    PERIODS_COLLECTION,
    SETTINGS_COLLECTION,
    USAGE_EVENTS_COLLECTION,
    PROFILES_COLLECTION,
    META_COLLECTION
]

# (collection, keys, options)
REQUIRED_INDEXES = [
    # One period per user and window: makes concurrent ensures converge
    (PERIODS_COLLECTION, [("user_id", 1), ("period_start", 1), ("period_end", 1)], {"unique": True, "name": "idx_user_window_unique"}),
    (PERIODS_COLLECTION, [("id", 1)], {"unique": True, "name": "idx_id_unique"}),
    (PERIODS_COLLECTION, [("user_id", 1), ("period_end", -1)], {"name": "idx_user_period_end"}),

    (SETTINGS_COLLECTION, [("key", 1)], {"unique": True, "name": "idx_key_unique"}),

    (USAGE_EVENTS_COLLECTION, [("idempotency_key", 1)], {"unique": True, "name": "idx_idempotency_key_unique"}),
    (USAGE_EVENTS_COLLECTION, [("user_id", 1), ("created_at", -1)], {"name": "idx_user_created"}),

    (PROFILES_COLLECTION, [("id", 1)], {"unique": True, "name": "idx_profile_id_unique"}),
]


def check_environment() -> Tuple[bool, str]:
    """(allowed, message): production needs an explicit confirmation."""
    app_env = os.environ.get("APP_ENV", "development")
    if app_env.lower() != "production":
        return True, f"Environment: {app_env}"

    if os.environ.get("TOKEN_ALLOWANCE_INIT_CONFIRM") == "YES":
        return True, "Environment: production (confirmed)"

    return False, "Refusing to run in production without TOKEN_ALLOWANCE_INIT_CONFIRM=YES"


async def ensure_collections(db, dry_run: bool = False) -> List[str]:
    existing = set(await db.list_collection_names())
    results = []

    for name in REQUIRED_COLLECTIONS:
        if name in existing:
            results.append(f"  [SKIP] collection {name}")
        elif dry_run:
            results.append(f"  [DRY-RUN] create collection {name}")
        else:
            try:
                await db.create_collection(name)
                results.append(f"  [CREATE] collection {name}")
            except CollectionInvalid:
                # Created by a concurrent run
                results.append(f"  [SKIP] collection {name}")
    return results


async def ensure_indexes(db, dry_run: bool = False) -> List[str]:
    """Create every missing index; also called at application startup."""
    by_collection = defaultdict(list)
    for collection_name, keys, options in REQUIRED_INDEXES:
        by_collection[collection_name].append((keys, options))

    results = []
    for collection_name, indexes in by_collection.items():
        collection = db[collection_name]
        existing = await collection.index_information()

        for keys, options in indexes:
            name = options["name"]
            if name in existing:
                results.append(f"  [SKIP] index {collection_name}.{name}")
                continue
            if dry_run:
                results.append(f"  [DRY-RUN] create index {collection_name}.{name}")
                continue
            try:
                await collection.create_index(keys, **options)
            except OperationFailure as e:
                if "already exists" not in str(e).lower():
                    raise
            results.append(f"  [CREATE] index {collection_name}.{name}")
    return results


async def seed_default_settings(db, dry_run: bool = False) -> List[str]:
    """Insert missing credit settings with their defaults."""
    results = []
    for key in SETTING_KEYS:
        if dry_run:
            results.append(f"  [DRY-RUN] Would seed '{key}' = {DEFAULT_SETTINGS[key]} if missing")
            continue

        result = await db[SETTINGS_COLLECTION].update_one(
            {"key": key},
            {
                "$setOnInsert": {
                    "value_int": DEFAULT_SETTINGS[key],
                    "description": SETTING_LABELS[key],
                    "created_at": datetime.now(timezone.utc).isoformat()
                }
            },
            upsert=True
        )
        if result.upserted_id is not None:
            results.append(f"  [CREATE] Seeded '{key}' = {DEFAULT_SETTINGS[key]}")
        else:
            results.append(f"  [SKIP] Setting '{key}' already exists")
    return results


async def stamp_version(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] stamp {INIT_VERSION}"

    await db[META_COLLECTION].update_one(
        {"_id": VERSION_DOC_ID},
        {"$set": {"version": INIT_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True
    )
    return f"  [UPDATE] stamp {INIT_VERSION}"


async def run_init(dry_run: bool = False):
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Initializing {db_name} (dry_run={dry_run})")

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')

        steps = [
            ("Collections", ensure_collections),
            ("Indexes", ensure_indexes),
            ("Credit settings", seed_default_settings),
        ]
        for title, step in steps:
            logger.info(f"=== {title} ===")
            for line in await step(db, dry_run):
                logger.info(line)

        logger.info("=== Version ===")
        logger.info(await stamp_version(db, dry_run))
    except Exception as e:
        logger.error(f"Token allowance DB init failed: {e}")
        sys.exit(1)
    finally:
        client.close()

    logger.info("Token allowance DB init completed")


def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Token Allowance Database Initialization")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
