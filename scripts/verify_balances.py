"""
Check that cached balances agree with the expenses and payments they come from.

Exits 1 when any group fails a check.
"""

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fairshare.audit import audit_group
from fairshare.config import get_settings
from fairshare.dependencies import get_db_client

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Verify cached group balances")
    parser.add_argument(
        "--group-id",
        type=int,
        action="append",
        dest="group_ids",
        help="Group to verify (repeatable). Defaults to every group.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=get_settings().log_level.upper(), format="%(levelname)s:%(message)s"
    )
    db = get_db_client()
    group_ids = args.group_ids or db.list_group_ids()

    failures = 0
    for group_id in group_ids:
        if db.get_group(group_id) is None:
            print(f"group {group_id}: not found")
            failures += 1
            continue
        audit = audit_group(db, group_id)
        if audit.ok:
            print(f"group {group_id}: ok")
            continue
        failures += 1
        print(f"group {group_id}: {len(audit.problems)} problem(s)")
        for problem in audit.problems:
            print(f"  - {problem}")

    print(f"{len(group_ids)} group(s) checked, {failures} failed")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
