"""
Run the balance recalculation worker.
"""

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fairshare.config import get_settings
from fairshare.worker import run_loop


def main() -> int:
    parser = argparse.ArgumentParser(description="Process queued balance recalculations")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Drain the queue and exit instead of polling forever",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=2.0,
        help="Seconds to wait between polls when the queue is empty",
    )
    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level.upper())
    run_loop(poll_interval_seconds=args.poll_interval, once=args.once)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
