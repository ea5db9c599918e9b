from __future__ import annotations

import time
from threading import Lock
from typing import Callable, TypeVar

from fastapi import Request


T = TypeVar("T")


class RateLimiter:
    """Strict minimum-spacing gate for outbound calls, keyed by API name.

    Calls under one key run one at a time, and each starts no earlier than
    ``min_interval_seconds`` after the previous one under that key finished.
    Distinct keys never wait on each other. There is no burst allowance:
    the protected APIs reject too-frequent calls outright.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._registry_lock = Lock()
        self._key_locks: dict[str, Lock] = {}
        self._last_completed: dict[str, float] = {}

    def _lock_for(self, key: str) -> Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = Lock()
                self._key_locks[key] = lock
            return lock

    def enqueue(self, key: str, task: Callable[[], T], min_interval_seconds: float) -> T:
        with self._lock_for(key):
            last = self._last_completed.get(key)
            if last is not None:
                remaining = last + max(0.0, min_interval_seconds) - self._clock()
                if remaining > 0:
                    self._sleep(remaining)
            try:
                return task()
            finally:
                self._last_completed[key] = self._clock()

    def last_completed_at(self, key: str) -> float | None:
        return self._last_completed.get(key)


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter
