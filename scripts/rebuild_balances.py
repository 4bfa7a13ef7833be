"""
Rebuild cached balances for some or all groups.

Recalculates directly against the database, or with --enqueue hands the
groups to the balance worker.
"""

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fairshare.config import get_settings
from fairshare.dependencies import get_db_client, get_queue_client
from fairshare.errors import FairShareError

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Rebuild cached group balances")
    parser.add_argument(
        "--group-id",
        type=int,
        action="append",
        dest="group_ids",
        help="Group to rebuild (repeatable). Defaults to every group.",
    )
    parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Queue the groups for the balance worker instead of rebuilding inline",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=get_settings().log_level.upper(), format="%(levelname)s:%(message)s"
    )
    db = get_db_client()
    group_ids = args.group_ids or db.list_group_ids()

    if args.enqueue:
        queue = get_queue_client()
        for group_id in group_ids:
            queue.enqueue(group_id)
        logger.info("Queued %d groups", len(group_ids))
        return 0

    failed = 0
    for group_id in group_ids:
        try:
            balances = db.recalculate_group_balances(group_id)
        except FairShareError as exc:
            logger.error("Group %s: %s", group_id, exc.message)
            failed += 1
            continue
        logger.info("Group %s: rebuilt %d balances", group_id, len(balances))

    logger.info("Rebuilt %d groups, %d failed", len(group_ids) - failed, failed)
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
