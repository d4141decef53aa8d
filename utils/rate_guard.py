"""
utils/rate_guard.py - Per-courier sliding-window limit on collection attempts

A coarse abuse guard, not the idempotency mechanism: duplicate collections
are refused by the payment ledger itself.

Usage:
    guard = build_rate_guard(settings)      # once per process
    guard.check(agent_id)                   # raises CollectionError(rate_limited)

Two window stores are available.  Redis keeps the window shared between
workers; the in-memory store is per process.
"""

import logging
import threading
import time
import uuid
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

import redis

from services.errors import CollectionError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Window stores
# ---------------------------------------------------------------------------

class MemoryWindowStore:
    """Sliding-window log kept in process memory."""

    def __init__(self):
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str, now: float, window: int, limit: int) -> int:
        """Record an attempt unless the window is full; return the count
        in the window before this attempt."""
        with self._lock:
            hits = self._hits[key]
            cutoff = now - window
            while hits and hits[0] <= cutoff:
                hits.popleft()
            count = len(hits)
            if count < limit:
                hits.append(now)
            return count

    def oldest(self, key: str) -> Optional[float]:
        with self._lock:
            hits = self._hits.get(key)
            return hits[0] if hits else None

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


class RedisWindowStore:
    """Sliding-window log in a Redis sorted set (score = attempt time)."""

    def __init__(self, client: redis.Redis, prefix: str = "codledger:rate"):
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def hit(self, key: str, now: float, window: int, limit: int) -> int:
        rkey = self._key(key)
        member = f"{now}:{uuid.uuid4().hex[:8]}"
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(rkey, 0, now - window)
        pipe.zadd(rkey, {member: now})
        pipe.zcard(rkey)
        pipe.expire(rkey, window)
        _, _, count, _ = pipe.execute()
        count = int(count) - 1
        if count >= limit:
            # refused attempts do not extend the window
            self.client.zrem(rkey, member)
        return count

    def oldest(self, key: str) -> Optional[float]:
        entries = self.client.zrange(self._key(key), 0, 0, withscores=True)
        return float(entries[0][1]) if entries else None

    def reset(self, key: Optional[str] = None) -> None:
        if key is not None:
            self.client.delete(self._key(key))
            return
        cursor = 0
        while True:
            cursor, keys = self.client.scan(cursor=cursor, match=f"{self.prefix}:*", count=100)
            if keys:
                self.client.delete(*keys)
            if cursor == 0:
                break


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------

class RateGuard:
    """Allows at most *max_attempts* collection attempts per courier in any
    rolling *window_seconds*."""

    def __init__(
        self,
        store,
        max_attempts: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.clock = clock

    def check(self, agent_id: int) -> None:
        key = f"agent:{agent_id}"
        now = self.clock()
        count = self.store.hit(key, now, self.window_seconds, self.max_attempts)
        if count >= self.max_attempts:
            oldest = self.store.oldest(key)
            retry_after = int(self.window_seconds - (now - oldest)) if oldest else self.window_seconds
            logger.warning(
                f"Rate limit tripped for agent {agent_id}: "
                f"{count} attempts in {self.window_seconds}s"
            )
            raise CollectionError(
                "rate_limited",
                f"Too many collection attempts. Try again in {max(retry_after, 1)} seconds.",
                details={"retry_after": max(retry_after, 1)},
            )

    def reset(self, agent_id: Optional[int] = None) -> None:
        self.store.reset(None if agent_id is None else f"agent:{agent_id}")


def build_rate_guard(settings) -> RateGuard:
    """Redis-backed when enabled and reachable, in-memory otherwise."""
    store = MemoryWindowStore()
    if settings.REDIS_ENABLED:
        try:
            client = redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=2,
                retry_on_timeout=True,
            )
            client.ping()
            store = RedisWindowStore(client)
            logger.info("✅ Rate guard using Redis window store")
        except redis.RedisError as e:
            logger.warning(f"⚠️ Redis unavailable – rate guard falls back to process memory: {e}")
    return RateGuard(
        store,
        max_attempts=settings.RATE_LIMIT_MAX_ATTEMPTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
