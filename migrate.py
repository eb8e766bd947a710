"""Schema setup for the matching engine.

Creates every table the models declare, then probes the connection so a bad
DATABASE_URL fails here rather than in the worker.

Run: python migrate.py [--seed]
"""
import argparse
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

import config
from db import DATABASE_URL, check_connection, init_db
from errors import PersistenceError

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create the ridepool schema")
    parser.add_argument("--seed", action="store_true", help="load the Denton to Dallas sample data afterwards")
    args = parser.parse_args(argv)

    try:
        init_db()
        check_connection()
    except (PersistenceError, SQLAlchemyError) as exc:
        logger.error(f"Schema setup failed: {exc}")
        return 1
    print(f"Database initialized ({DATABASE_URL})")

    if args.seed:
        from sample_data import seed
        seed()
    return 0


if __name__ == "__main__":
    logging.basicConfig(format=config.LOG_FORMAT, level=config.LOG_LEVEL)
    sys.exit(main())
