"""
Create the ledger tables and check the fee schedule resolves.

Usage:
    python -m database.init_db            # create missing tables
    python -m database.init_db --reset    # drop everything first (dev only)
"""

import logging
from typing import List

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import inspect  # noqa: E402

from database.db import SessionLocal, create_tables, drop_tables, engine  # noqa: E402
from services.settings_service import load_settings  # noqa: E402

logger = logging.getLogger(__name__)


def init_db(reset: bool = False) -> List[str]:
    """
    Create tables, then load platform settings once.

    Returns:
        Sorted table names present afterwards

    Raises:
        ConfigurationError: a fee setting is missing or out of range
    """
    if reset:
        drop_tables()
    create_tables()

    tables = sorted(inspect(engine).get_table_names())
    logger.info(f"Tables: {', '.join(tables)}")

    db = SessionLocal()
    try:
        settings = load_settings(db)
    finally:
        db.close()
    logger.info(
        f"Fee schedule OK: platform {settings.platform_fee_percent}%, "
        f"processing {settings.processing_fee_percent}% + {settings.processing_fee_fixed}, "
        f"minimum payout {settings.minimum_payout_amount} {settings.currency}"
    )
    return tables


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Create FundRaise ledger tables")
    parser.add_argument("--reset", action="store_true", help="Drop all tables first (destroys data)")
    args = parser.parse_args()

    try:
        init_db(reset=args.reset)
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise
    logger.info("✅ Database ready")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    main()
