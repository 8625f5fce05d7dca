#!/usr/bin/env python3
"""
Billing-cycle job: reset every subscriber's monthly allowance.

Runs against the ledger backend selected by LEDGER_BACKEND (normally 'sql'
for this job). Each reset writes an audit adjustment with actor
'billing-cycle'.

Usage:
    python scripts/reset_monthly.py                   # Reset all subscribers
    python scripts/reset_monthly.py --subscriber ID   # Reset one subscriber
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

from src.core.credits import CreditError, create_credit_service
from src.db.connection import db


async def run(subscriber_id: str = None) -> int:
    """Run the reset; returns the process exit code."""
    service = create_credit_service()
    try:
        if subscriber_id:
            balance = await service.reset_monthly(subscriber_id)
            logger.info(f"Reset {subscriber_id}: monthly_allowance={balance.monthly_allowance:,}")
            return 0

        summary = await service.reset_all_monthly()
        logger.info(f"Reset {summary.reset}/{summary.total} subscribers")
        if summary.failed:
            logger.error(f"Failed subscribers: {', '.join(summary.failed_subscribers)}")
            return 1
        return 0

    except CreditError as e:
        logger.error(f"Monthly reset failed: {e.message}")
        return 1
    finally:
        await service.close()
        await db.close_all()


def main():
    parser = argparse.ArgumentParser(description="Reset monthly credit allowances")
    parser.add_argument("--subscriber", help="Reset a single subscriber")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args.subscriber)))


if __name__ == "__main__":
    main()
