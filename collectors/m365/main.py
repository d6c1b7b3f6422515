"""Microsoft 365 sync main CLI."""

import argparse
import json
import sys
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from common.logging import get_logger, setup_logging
from common.util import utcnow

from .api import GraphAPI
from .errors import M365SyncError
from .mapping import normalize_license, normalize_user
from .sku_names import lookup_static_name, format_sku_as_product_name
from .sync import SYNC_TYPES, run_sync, steps_for


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(description='Microsoft 365 tenant sync')
    parser.add_argument(
        '--type',
        choices=SYNC_TYPES,
        default='full',
        help='Sync type to run (default: full)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Fetch and normalize data but do not save to database'
    )
    parser.add_argument(
        '--limit',
        type=int,
        help='Limit number of records printed per step in dry-run mode'
    )

    args = parser.parse_args(argv)

    setup_logging()
    logger = get_logger(__name__)

    try:
        if args.dry_run:
            logger.info("DRY RUN MODE - no data will be saved to database")
            run_dry_run(GraphAPI(), args.type, args.limit, logger)
            return 0

        result = run_sync(args.type, secret=None)
        print(json.dumps(result.to_dict(), indent=2))

        if not result.success:
            logger.warning(f"{args.type} sync completed with failures")
            return 1
        logger.info(f"{args.type} sync completed successfully")
        return 0

    except (M365SyncError, ValueError, SQLAlchemyError) as e:
        logger.error(f"M365 sync failed: {e}")
        return 1


def run_dry_run(api: GraphAPI, sync_type: str, limit: Optional[int], logger) -> None:
    """Fetch each selected step's data and print it without touching storage."""
    cred = api.get_credential()
    now = utcnow()

    for step in steps_for(sync_type):
        if step.name == 'users':
            records = [normalize_user(user, now) for user in api.fetch_users(cred)]
        elif step.name == 'user-licenses':
            records = [
                {'graph_user_id': user.graph_user_id, 'sku_ids': user.assigned_sku_ids}
                for user in api.fetch_users(cred)
            ]
        elif step.name == 'licenses':
            records = [
                normalize_license(
                    sku,
                    lookup_static_name(sku.sku_part_number or '')
                    or format_sku_as_product_name(sku.sku_part_number or ''),
                    now,
                )
                for sku in api.fetch_subscribed_skus(cred)
            ]
        elif step.name == 'mailbox':
            records = [vars(row) for row in api.fetch_mailbox_usage_report(cred)]
        else:
            records = [vars(row) for row in api.fetch_onedrive_usage_report(cred)]

        shown = records[:limit] if limit else records
        print(f"\n--- {step.name}: {len(records)} records ---")
        print(json.dumps(shown, indent=2, default=str))
        logger.info(f"Dry run fetched {len(records)} {step.name} records")


if __name__ == '__main__':
    sys.exit(main())
