#!/usr/bin/env python3
"""
Initialize the library circulation database.

This script:
1. Creates all database tables
2. Optionally loads sample books and subscriptions
3. Verifies the database is ready for server use

Usage:
    python scripts/init_database.py [--drop-existing] [--sample-data] [--database-url URL]
"""

import argparse
import logging
import sys

from sqlalchemy import inspect

from library_circulation.database.seed import seed_database
from library_circulation.database.session import get_db_manager

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point for database initialization."""
    parser = argparse.ArgumentParser(description="Initialize the library circulation database")
    parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop existing tables before creating new ones",
    )
    parser.add_argument(
        "--sample-data",
        action="store_true",
        help="Load sample books and subscriptions after creating tables",
    )
    parser.add_argument("--books", type=int, default=200, help="Number of sample books")
    parser.add_argument("--users", type=int, default=50, help="Number of sample users")
    parser.add_argument("--database-url", help="Override default database URL")

    args = parser.parse_args()

    db_manager = get_db_manager(args.database_url)
    if not db_manager.verify_connection():
        logger.error("Failed to connect to database")
        sys.exit(1)

    db_manager.init_database(drop_existing=args.drop_existing)

    if args.sample_data:
        with db_manager.session_scope() as session:
            summary = seed_database(session, num_books=args.books, num_users=args.users)
        logger.info("Sample data loaded: %d books, %d users", summary.books, summary.users)

    tables = inspect(db_manager.engine).get_table_names()
    logger.info("Tables: %s", ", ".join(sorted(tables)))
    db_manager.close()


if __name__ == "__main__":
    main()
