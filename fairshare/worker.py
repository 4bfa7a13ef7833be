"""
Background worker that recalculates cached group balances.

Writes keep the cache current on their own; the worker handles refreshes
requested with ``background=true`` and bulk rebuilds scheduled by
``scripts/rebuild_balances.py --enqueue``.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fairshare.config import get_settings
from fairshare.db import DbClient
from fairshare.dependencies import get_db_client, get_queue_client
from fairshare.errors import NotFoundError
from fairshare.queue import JobQueue

logger = logging.getLogger(__name__)


def process_next(
    db: Optional[DbClient] = None,
    queue: Optional[JobQueue] = None,
    block: bool = True,
    timeout: Optional[int] = None,
) -> bool:
    """
    Pop one group id and rebuild its balance cache. Returns True if a group was processed.
    """
    db = db or get_db_client()
    queue = queue or get_queue_client()

    group_id = queue.dequeue(block=block, timeout=timeout)
    if group_id is None:
        return False

    try:
        balances = db.recalculate_group_balances(group_id)
    except NotFoundError:
        logger.warning("Received group %s from queue but it no longer exists", group_id)
        return False
    logger.info("Recalculated balances for group %s (%d users)", group_id, len(balances))
    return True


def enqueue_all_groups(
    db: Optional[DbClient] = None, queue: Optional[JobQueue] = None
) -> int:
    db = db or get_db_client()
    queue = queue or get_queue_client()
    group_ids = db.list_group_ids()
    for group_id in group_ids:
        queue.enqueue(group_id)
    logger.info("Queued %d groups for balance recalculation", len(group_ids))
    return len(group_ids)


def run_loop(poll_interval_seconds: float = 2.0, once: bool = False) -> None:
    """
    Simple polling loop that blocks on the queue. Intended to be run under systemd/supervisor.
    """
    db = get_db_client()
    queue = get_queue_client()
    while True:
        try:
            processed = process_next(
                db=db, queue=queue, block=True, timeout=int(poll_interval_seconds)
            )
        except Exception:
            logger.exception("Balance recalculation failed")
            processed = False
        if once and not processed:
            return
        if not processed:
            time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().log_level.upper())
    run_loop()
