#!/usr/bin/env python3
"""Create the vault tables.

Usage:
    python scripts/migrate.py [--resync-nonce]

Options:
    --resync-nonce  Also reset the stored relayer nonce to the chain's value
                    (use after restoring a database backup)
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from phonevault.config import get_settings
from phonevault.ledger.database import close_db, init_db
from phonevault.ledger.models import Base
from phonevault.relay.factory import create_relay_executor

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def main(resync_nonce: bool = False):
    settings = get_settings()
    logger.info(f"Database URL: {settings._redact_url(settings.database_url)}")

    try:
        await init_db()
        for table in Base.metadata.sorted_tables:
            logger.info(f"  {table.name}")
        logger.info(f"{len(Base.metadata.sorted_tables)} tables ready")

        if resync_nonce:
            relay = create_relay_executor(settings=settings)
            nonce = await relay.resync_nonce()
            logger.info(f"Relayer {relay.relayer_address} next nonce: {nonce}")
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the vault tables")
    parser.add_argument("--resync-nonce", action="store_true", help="Reset relayer nonce from chain")
    args = parser.parse_args()

    asyncio.run(main(resync_nonce=args.resync_nonce))
