"""
Sliding-window rate guard: in-memory store with a fake clock, Redis store
against a mocked client.
"""
import pytest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import redis

from services.errors import CollectionError
from utils.rate_guard import MemoryWindowStore, RateGuard, RedisWindowStore, build_rate_guard


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestMemoryWindow:
    def test_eleventh_attempt_refused(self, clock):
        guard = RateGuard(MemoryWindowStore(), max_attempts=10, window_seconds=3600, clock=clock)
        for _ in range(10):
            guard.check(7)
            clock.advance(1)
        with pytest.raises(CollectionError) as exc:
            guard.check(7)
        assert exc.value.code == "rate_limited"
        assert exc.value.http_status == 429
        assert 0 < exc.value.details["retry_after"] <= 3600

    def test_window_slides(self, clock):
        guard = RateGuard(MemoryWindowStore(), max_attempts=3, window_seconds=60, clock=clock)
        for _ in range(3):
            guard.check(7)
        with pytest.raises(CollectionError):
            guard.check(7)
        clock.advance(61)
        guard.check(7)

    def test_refused_attempts_do_not_extend_the_window(self, clock):
        guard = RateGuard(MemoryWindowStore(), max_attempts=2, window_seconds=60, clock=clock)
        guard.check(7)
        guard.check(7)
        for _ in range(5):
            clock.advance(10)
            with pytest.raises(CollectionError):
                guard.check(7)
        clock.advance(11)
        guard.check(7)

    def test_agents_are_independent(self, clock):
        guard = RateGuard(MemoryWindowStore(), max_attempts=1, window_seconds=60, clock=clock)
        guard.check(1)
        guard.check(2)
        with pytest.raises(CollectionError):
            guard.check(1)

    def test_reset(self, clock):
        guard = RateGuard(MemoryWindowStore(), max_attempts=1, window_seconds=60, clock=clock)
        guard.check(1)
        guard.reset(1)
        guard.check(1)


class TestRedisWindow:
    def _client(self, count_after_add):
        client = MagicMock()
        pipe = MagicMock()
        pipe.execute.return_value = [0, 1, count_after_add, True]
        client.pipeline.return_value = pipe
        return client, pipe

    def test_allowed_attempt(self):
        client, pipe = self._client(count_after_add=3)
        store = RedisWindowStore(client)
        assert store.hit("agent:7", 1000.0, 3600, 10) == 2
        pipe.zremrangebyscore.assert_called_once_with("codledger:rate:agent:7", 0, 1000.0 - 3600)
        pipe.expire.assert_called_once_with("codledger:rate:agent:7", 3600)
        client.zrem.assert_not_called()

    def test_refused_attempt_is_removed(self):
        client, _ = self._client(count_after_add=11)
        client.zrange.return_value = [("m", 900.0)]
        guard = RateGuard(RedisWindowStore(client), max_attempts=10, window_seconds=3600, clock=lambda: 1000.0)
        with pytest.raises(CollectionError) as exc:
            guard.check(7)
        client.zrem.assert_called_once()
        assert exc.value.details["retry_after"] == 3500


class TestBuildRateGuard:
    def _settings(self, enabled):
        return SimpleNamespace(
            REDIS_ENABLED=enabled,
            REDIS_URL="redis://localhost:6379/0",
            RATE_LIMIT_MAX_ATTEMPTS=10,
            RATE_LIMIT_WINDOW_SECONDS=3600,
        )

    def test_memory_when_disabled(self):
        guard = build_rate_guard(self._settings(False))
        assert isinstance(guard.store, MemoryWindowStore)
        assert guard.max_attempts == 10

    def test_redis_when_reachable(self):
        with patch("utils.rate_guard.redis.from_url") as from_url:
            guard = build_rate_guard(self._settings(True))
        from_url.return_value.ping.assert_called_once()
        assert isinstance(guard.store, RedisWindowStore)

    def test_falls_back_when_unreachable(self):
        with patch("utils.rate_guard.redis.from_url") as from_url:
            from_url.return_value.ping.side_effect = redis.ConnectionError("refused")
            guard = build_rate_guard(self._settings(True))
        assert isinstance(guard.store, MemoryWindowStore)
