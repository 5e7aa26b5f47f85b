"""
Hands assignment job ids from the API to workers.

Redis backs the queue when ``REDIS_URL`` is set; otherwise a deque in this
process does, which is enough for inline job runs and tests.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    def enqueue(self, job_id: str) -> None:
        ...

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        ...

    def depth(self) -> int:
        ...


@dataclass
class InMemoryJobQueue:
    items: Deque[str] = field(default_factory=deque)

    def enqueue(self, job_id: str) -> None:
        self.items.append(job_id)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        return self.items.popleft() if self.items else None

    def depth(self) -> int:
        return len(self.items)


@dataclass
class RedisJobQueue:
    """Job ids in a Redis list, oldest first.

    A dropped connection is reopened on the next call and the dequeue that hit
    it reports an empty queue.
    """

    url: str
    queue_key: str = "bus_manager:jobs"
    client: redis.Redis = field(init=False)

    def __post_init__(self):
        self._connect()

    def _connect(self) -> None:
        self.client = redis.Redis.from_url(self.url, decode_responses=True)

    def enqueue(self, job_id: str) -> None:
        self.client.rpush(self.queue_key, job_id)
        logger.debug("Queued job %s on %s", job_id, self.queue_key)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        try:
            if not block:
                return self.client.lpop(self.queue_key)
            popped = self.client.blpop([self.queue_key], timeout=timeout or 0)
        except redis_exceptions.ConnectionError:
            logger.warning("Lost Redis connection on %s, reconnecting", self.queue_key)
            self._connect()
            return None
        return popped[1] if popped else None

    def depth(self) -> int:
        try:
            return self.client.llen(self.queue_key)
        except redis_exceptions.ConnectionError:
            logger.warning("Lost Redis connection on %s, reconnecting", self.queue_key)
            self._connect()
            return 0
