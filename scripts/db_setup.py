#!/usr/bin/env python3
"""
Database setup script for the credit ledger.

Uses SQLAlchemy models as the SINGLE SOURCE OF TRUTH for schema.
All tables, indexes, and constraints are defined in src/db/models.py.

Usage:
    python scripts/db_setup.py setup      # Create all tables
    python scripts/db_setup.py teardown   # Drop all tables (with confirmation)
    python scripts/db_setup.py reset      # Teardown + setup (full reset)
    python scripts/db_setup.py status     # Show current database state

Environment variables (from .env):
    - DATABASE_URL: Full asyncpg URL (overrides the individual settings)
    - DATABASE_HOST / DATABASE_PORT / DATABASE_NAME
    - DATABASE_USER / DATABASE_PASSWORD
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from sqlalchemy import text

from src.db.connection import db
from src.db.models import Base


async def setup() -> None:
    await db.create_tables()
    logger.info(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")


async def teardown(force: bool = False) -> None:
    if not force:
        answer = input(f"Drop all credit ledger tables on {db.config.safe_url}? [y/N] ")
        if answer.strip().lower() != "y":
            logger.info("Teardown cancelled")
            return
    await db.drop_tables()


async def status() -> None:
    async with db.session() as session:
        if session is None:
            logger.info("Database disabled")
            return
        for table in sorted(Base.metadata.tables):
            try:
                result = await session.execute(text(f"SELECT COUNT(*) FROM {table}"))
                logger.info(f"{table}: {result.scalar():,} rows")
            except Exception as e:
                logger.warning(f"{table}: unavailable ({e})")
                await session.rollback()


async def run(command: str, force: bool) -> None:
    if not await db.test_connection():
        raise SystemExit("Database connection failed")
    try:
        if command == "setup":
            await setup()
        elif command == "teardown":
            await teardown(force)
        elif command == "reset":
            await teardown(force)
            await setup()
        elif command == "status":
            await status()
    finally:
        await db.close_all()


def main():
    parser = argparse.ArgumentParser(description="Credit ledger database setup")
    parser.add_argument("command", choices=["setup", "teardown", "reset", "status"])
    parser.add_argument("--force", action="store_true", help="Skip teardown confirmation")
    args = parser.parse_args()

    asyncio.run(run(args.command, args.force))


if __name__ == "__main__":
    main()
