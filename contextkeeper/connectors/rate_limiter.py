"""Token-bucket rate limiter with a separate exponential backoff counter."""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections.abc import Callable
from datetime import timedelta

from contextkeeper.connectors.config import RateLimitConfig
from contextkeeper.connectors.models import RateLimiterState

MAX_BACKOFF = timedelta(minutes=5)


class RateLimiter:
    """Admission control for one connector instance.

    The bucket holds up to ``burst_limit`` tokens and refills continuously
    at ``requests_per_minute``. ``wait`` consumes one token, sleeping
    outside the lock while the bucket is empty. The backoff counter is
    independent of the bucket and only moves through
    :meth:`get_backoff_delay` / :meth:`reset_backoff`.

    State is guarded by a ``threading.Lock`` that is never held across an
    ``await``, so the limiter is safe from several asyncio tasks and from
    several threads alike.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._capacity = float(config.burst_limit)
        self._rate_per_second = config.requests_per_minute / 60.0
        self._multiplier = config.backoff_multiplier if config.backoff_multiplier > 1.0 else 2.0
        # Exponent at which multiplier**n reaches the cap; avoids float overflow.
        self._cap_exponent = math.ceil(
            math.log(MAX_BACKOFF.total_seconds()) / math.log(self._multiplier)
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = self._capacity
        self._last_refill = clock()
        self._failures = 0

    # ── admission ─────────────────────────────────────────────────────────

    async def wait(self, timeout: float | None = None) -> None:
        """Block until a token is available.

        Raises ``TimeoutError`` if *timeout* seconds pass first. Task
        cancellation propagates as ``asyncio.CancelledError`` without
        consuming a token.
        """
        async with asyncio.timeout(timeout):
            while True:
                delay = self._try_acquire()
                if delay is None:
                    return
                await asyncio.sleep(delay)

    def try_acquire(self) -> bool:
        """Take a token without waiting. Returns False if the bucket is empty."""
        return self._try_acquire() is None

    def _try_acquire(self) -> float | None:
        """Consume a token and return None, or return seconds until one is due."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return None
            return (1.0 - self._tokens) / self._rate_per_second

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._last_refill, 0.0)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate_per_second)
        self._last_refill = now

    # ── backoff ───────────────────────────────────────────────────────────

    def get_backoff_delay(self) -> timedelta:
        """Return ``min(multiplier ** failures, 5 min)`` and count a failure."""
        with self._lock:
            failures = self._failures
            self._failures += 1
        if failures >= self._cap_exponent:
            return MAX_BACKOFF
        return min(timedelta(seconds=self._multiplier**failures), MAX_BACKOFF)

    def reset_backoff(self) -> None:
        with self._lock:
            self._failures = 0

    # ── introspection ─────────────────────────────────────────────────────

    def state(self) -> RateLimiterState:
        with self._lock:
            self._refill()
            return RateLimiterState(
                tokens=self._tokens,
                last_refill=self._last_refill,
                failure_count=self._failures,
            )
