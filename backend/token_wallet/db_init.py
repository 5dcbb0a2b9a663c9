"""
Token Wallet Database Initialization

The wallet's correctness depends on three unique indexes:
- token_balances.user_id: one balance document per user
- content_unlocks.(user_id, content_id): a content item is unlocked once
- token_payments.(provider, external_reference): one record per provider order

ensure_indexes() is called at API startup. The CLI below does the same from
a shell, with an environment guard and a dry-run mode. Nothing here drops
or rewrites data; balance documents are created lazily on first use.

Usage:
    python -m token_wallet.db_init
    python -m token_wallet.db_init --dry-run
    APP_ENV=production TOKEN_WALLET_INIT_CONFIRM=YES python -m token_wallet.db_init
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"

META_COLLECTION = "token_wallet_meta"

# (collection, index_spec, options)
REQUIRED_INDEXES = [
    ("token_balances", [("user_id", 1)], {"unique": True, "name": "idx_user_id_unique"}),

    ("token_payments", [("payment_id", 1)], {"unique": True, "name": "idx_payment_id_unique"}),
    (
        "token_payments",
        [("provider", 1), ("external_reference", 1)],
        {
            "unique": True,
            "name": "idx_provider_reference_unique",
            "partialFilterExpression": {"external_reference": {"$type": "string"}}
        }
    ),
    ("token_payments", [("user_id", 1), ("created_at", -1)], {"name": "idx_user_created"}),
    ("token_payments", [("status", 1), ("completed_at", 1)], {"name": "idx_status_completed"}),

    (
        "content_unlocks",
        [("user_id", 1), ("content_id", 1)],
        {"unique": True, "name": "idx_user_content_unique"}
    ),

    ("token_ledger", [("user_id", 1), ("timestamp", -1)], {"name": "idx_user_timestamp"}),
    ("token_ledger", [("user_id", 1), ("reference", 1)], {"name": "idx_user_reference"}),

    ("token_reservations", [("reservation_id", 1)], {"unique": True, "name": "idx_reservation_id_unique"}),
    ("token_reservations", [("status", 1), ("expires_at", 1)], {"name": "idx_status_expires"}),
    ("token_reservations", [("user_id", 1), ("status", 1)], {"name": "idx_user_status"}),
]


def check_environment() -> Tuple[bool, str]:
    """Production runs need TOKEN_WALLET_INIT_CONFIRM=YES."""
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production" and os.environ.get("TOKEN_WALLET_INIT_CONFIRM", "") != "YES":
        return False, (
            "Production environment detected. "
            "Set TOKEN_WALLET_INIT_CONFIRM=YES to run wallet init."
        )

    return True, f"Environment: {app_env}"


async def create_index_if_missing(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    collection = db[collection_name]
    index_name = options["name"]

    existing = await collection.index_information()
    if index_name in existing:
        return f"[SKIP] {collection_name}.{index_name}"

    if dry_run:
        return f"[DRY-RUN] would create {collection_name}.{index_name}"

    try:
        await collection.create_index(index_spec, **options)
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"[SKIP] {collection_name}.{index_name} (created concurrently)"
        raise
    return f"[CREATE] {collection_name}.{index_name}"


async def ensure_indexes(db) -> None:
    """Create the wallet's indexes. Existing indexes are left untouched."""
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        await db[collection_name].create_index(index_spec, **options)
    logger.info(f"Token wallet indexes ensured ({len(REQUIRED_INDEXES)})")


async def run_init(dry_run: bool = False) -> int:
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / ".env")

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error("Init blocked by environment guard")
        return 1

    mongo_url = os.environ.get("MONGO_URL")
    db_name = os.environ.get("DB_NAME")
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        return 1

    logger.info(f"Database: {db_name} | dry run: {dry_run}")

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command("ping")

        for collection_name, index_spec, options in REQUIRED_INDEXES:
            logger.info(await create_index_if_missing(db, collection_name, index_spec, options, dry_run))

        if dry_run:
            logger.info(f"[DRY-RUN] would stamp version {INIT_VERSION}")
        else:
            await db[META_COLLECTION].update_one(
                {"_id": "token_wallet_init"},
                {"$set": {"version": INIT_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
                upsert=True
            )
            logger.info(f"[UPDATE] version stamp {INIT_VERSION}")
    finally:
        client.close()

    logger.info("Token wallet DB init completed")
    return 0


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Token Wallet Database Initialization")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print what would be done without making changes"
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
