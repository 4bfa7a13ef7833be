"""
Queue abstraction for balance recalculation jobs.

Supports an in-memory fallback for tests/local runs and a Redis-backed
implementation for production. Jobs are group ids.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    """Minimal queue interface for dispatching group ids to workers."""

    def enqueue(self, group_id: int) -> None:
        ...

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[int]:
        ...

    def ping(self) -> bool:
        ...


@dataclass
class InMemoryJobQueue:
    """Simple FIFO queue for testing/dev. A group already waiting is not queued twice."""

    items: list[int] = field(default_factory=list)

    def enqueue(self, group_id: int) -> None:
        if group_id not in self.items:
            self.items.append(group_id)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[int]:
        if not self.items:
            return None
        return self.items.pop(0)

    def ping(self) -> bool:
        return True


@dataclass
class RedisJobQueue:
    """Redis-backed queue using list push/pop operations."""

    url: str
    queue_key: str = "fairshare:balance-jobs"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def enqueue(self, group_id: int) -> None:
        self.client.rpush(self.queue_key, str(group_id))

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[int]:
        try:
            if block:
                result = self.client.blpop(self.queue_key, timeout=timeout or 0)
                if result is None:
                    return None
                _, value = result
            else:
                value = self.client.lpop(self.queue_key)
                if value is None:
                    return None
        except redis_exceptions.ConnectionError:
            # Connection resets can happen on managed Redis. Treat as empty queue
            # and allow the worker loop to retry.
            logger.warning("Lost connection to Redis, reconnecting")
            self.client = redis.Redis.from_url(self.url)
            return None
        try:
            return int(value.decode("utf-8"))
        except ValueError:
            logger.warning("Dropping malformed queue entry %r", value)
            return None

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis_exceptions.ConnectionError:
            return False
