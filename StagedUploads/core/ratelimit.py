from __future__ import annotations

import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Dict

import redis


class CounterStore(ABC):
    """
    Shared counters with an atomic check-and-increment.

    ``try_acquire`` records one hit for ``key`` only if fewer than ``limit`` hits
    were recorded within the last ``window_seconds``; concurrent callers never
    lose an update.
    """

    @abstractmethod
    def try_acquire(self, key: str, limit: int, window_seconds: int) -> bool:
        raise NotImplementedError


class InMemoryCounterStore(CounterStore):
    """Sliding-window counters for a single process."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}
        self._last_purge = clock()

    def try_acquire(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            if now - self._last_purge >= window_seconds:
                self._purge(now, window_seconds)
            history = self._hits.setdefault(key, deque())
            while history and now - history[0] >= window_seconds:
                history.popleft()
            if len(history) >= limit:
                return False
            history.append(now)
            return True

    def _purge(self, now: float, window_seconds: int) -> None:
        # Keys whose newest hit has aged out carry no state worth keeping.
        stale = [key for key, history in self._hits.items() if not history or now - history[-1] >= window_seconds]
        for key in stale:
            del self._hits[key]
        self._last_purge = now


# Sliding window over a sorted set of hit timestamps (milliseconds).
_ACQUIRE_SCRIPT = """
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local now_ms = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now_ms - window_ms)
if redis.call('ZCARD', KEYS[1]) >= limit then
    return 0
end
redis.call('ZADD', KEYS[1], now_ms, ARGV[4])
redis.call('PEXPIRE', KEYS[1], window_ms)
return 1
"""


class RedisCounterStore(CounterStore):
    """Counters shared by every broker process through Redis."""

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "uploads:rate",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = client
        self._prefix = prefix
        self._clock = clock
        self._acquire = client.register_script(_ACQUIRE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisCounterStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def try_acquire(self, key: str, limit: int, window_seconds: int) -> bool:
        now_ms = int(self._clock() * 1000)
        member = f"{now_ms}-{uuid.uuid4().hex}"
        allowed = self._acquire(
            keys=[f"{self._prefix}:{key}"],
            args=[limit, window_seconds * 1000, now_ms, member],
        )
        return bool(int(allowed))


class RateLimiter:
    def __init__(self, counters: CounterStore, limit: int, window_seconds: int) -> None:
        self.counters = counters
        self.limit = limit
        self.window_seconds = window_seconds

    def allow(self, owner_id: str) -> bool:
        return self.counters.try_acquire(f"owner:{owner_id}", self.limit, self.window_seconds)
