"""
Shared request budget for embedding provider calls.
"""

import threading
import time
from typing import Callable


class RateLimiter:
    """First-come-first-served limiter shared by all threads using one provider.

    Each caller reserves the next free slot under the lock and then sleeps
    outside of it until the slot comes up, so callers are served in arrival
    order. A provider backoff hint pushes the next free slot for everyone.
    """

    def __init__(self, rate_per_sec: float = 0.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if rate_per_sec < 0:
            raise ValueError("rate_per_sec must be >= 0")
        self.rate_per_sec = rate_per_sec
        self._interval = 1.0 / rate_per_sec if rate_per_sec else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def reserve(self) -> float:
        """Reserve a slot and return how long the caller has to wait for it."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self._interval
            return slot - now

    def acquire(self) -> float:
        """Block until the caller's slot comes up; returns the time waited."""
        delay = self.reserve()
        if delay > 0:
            self._sleep(delay)
        return delay

    def penalize(self, delay: float):
        """Hold back every caller for at least `delay` seconds from now."""
        if delay <= 0:
            return
        with self._lock:
            self._next_slot = max(self._next_slot, self._clock() + delay)


class ConcurrencyLimiter:
    """Bounds in-flight provider calls; 0 means unbounded."""

    def __init__(self, max_concurrency: int = 0):
        self.max_concurrency = max_concurrency
        self._semaphore = threading.BoundedSemaphore(max_concurrency) if max_concurrency > 0 else None

    def __enter__(self):
        if self._semaphore is not None:
            self._semaphore.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._semaphore is not None:
            self._semaphore.release()
        return False
