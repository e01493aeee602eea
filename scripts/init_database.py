#!/usr/bin/env python3
"""
Database initialization script

Creates the indexer tables and verifies the checkpoint store.
"""

import argparse
import sys
import logging
from pathlib import Path

from indexer.config import init_config
from indexer.database import init_database, init_redis
from indexer.types import IndexerError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main(argv=None):
    """Create tables, then check database and Redis connectivity"""
    parser = argparse.ArgumentParser(description='Create the indexer tables')
    parser.add_argument('--config', type=Path, default=Path('config.yaml'))
    args = parser.parse_args(argv)

    try:
        logger.info(f"Loading configuration from {args.config}...")
        config = init_config(args.config)

        logger.info("Creating tables...")
        db_manager = init_database(config.database)

        if db_manager.health_check():
            logger.info(f"Database connection verified ({db_manager.dialect_name})")
        else:
            logger.error("Database health check failed")
            return 1

        redis_manager = init_redis(config.redis)
        if redis_manager.health_check():
            logger.info("Redis connection verified")
        else:
            logger.warning("Redis unavailable, checkpoints will be kept in memory only")

        logger.info("Database initialization complete")
        return 0

    except IndexerError as e:
        logger.error(f"Initialization failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
