#!/usr/bin/env python3
"""
history-sync Token Bucket

Async token bucket used to bound outbound request rate.

One instance is created per run and handed explicitly to every coroutine that
issues requests. Synchronize shares one bucket between the totals fetch and
all history fetches; dispatch builds a fresh bucket per invocation.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional


class TokenBucket:
    """
    Async token bucket pacer.

    Holds at most ``capacity`` tokens (default 1, so no bursts) and refills at
    ``rate`` tokens per second. Refill and consumption happen under a single
    lock, so concurrent acquirers never lose or duplicate a token.
    """

    def __init__(self, rate: float, capacity: Optional[float] = None):
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate!r}")
        self._rate = float(rate)
        self._capacity = float(capacity) if capacity is not None else 1.0
        if self._capacity < 1.0:
            raise ValueError(f"capacity must be at least 1, got {capacity!r}")
        self._tokens = self._capacity
        self._last = time.monotonic()
        self._lock = asyncio.Lock()
        self._acquired = 0

    def get_rate(self) -> float:
        return self._rate

    @property
    def capacity(self) -> float:
        return self._capacity

    @property
    def acquired(self) -> int:
        """Number of tokens handed out so far."""
        return self._acquired

    async def acquire(self) -> None:
        """Wait until a token is available and consume it."""
        while True:
            async with self._lock:
                self._refill_locked()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    self._acquired += 1
                    return
                sleep_s = (1.0 - self._tokens) / self._rate
            await asyncio.sleep(max(0.001, sleep_s))

    def _refill_locked(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last
        if elapsed <= 0:
            return
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last = now
