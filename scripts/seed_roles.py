#!/usr/bin/env python3
"""
Seed the default system roles into the configured role store.

Safe to run repeatedly; existing system roles are overwritten with the
default definitions.
"""

import argparse
import sys
from typing import List, Optional

import structlog
from pymongo.errors import PyMongoError

from authz_engine.config.database import create_mongo_client, get_database
from authz_engine.config.settings import ConfigurationError, get_config
from authz_engine.data.defaults import DEFAULT_ROLES, seed_default_roles
from authz_engine.data.exceptions import StorageException
from authz_engine.data.roles import RoleStore
from authz_engine.data.stores import MongoDocumentStore
from authz_engine.monitoring.logging import configure_structured_logging

logger = structlog.get_logger("seed_roles")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Seed default authorization roles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/seed_roles.py                      # Seed using AUTHZ_ENV settings
  python scripts/seed_roles.py --environment prod   # Seed production settings
  python scripts/seed_roles.py --dry-run            # List roles without writing
        """
    )
    parser.add_argument(
        "--environment",
        type=str,
        default=None,
        help="Settings environment (default: AUTHZ_ENV or development)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the roles that would be seeded and exit"
    )
    args = parser.parse_args(argv)

    if args.dry_run:
        for role in DEFAULT_ROLES:
            print(f"{role.role_id}: {', '.join(role.permissions)}")
        return 0

    try:
        config = get_config(args.environment)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_structured_logging(config)
    try:
        client = create_mongo_client(config, verify=True)
    except PyMongoError as e:
        logger.error("MongoDB unreachable", error=str(e), database=config.MONGODB_DATABASE)
        return 1

    try:
        role_store = RoleStore(MongoDocumentStore(get_database(client, config)))
        seeded = seed_default_roles(role_store)
    except (StorageException, PyMongoError) as e:
        logger.error("Seeding failed", error=str(e), error_type=type(e).__name__)
        return 1
    finally:
        client.close()

    logger.info("Seeding completed", roles=seeded, database=config.MONGODB_DATABASE)
    return 0


if __name__ == "__main__":
    sys.exit(main())
