"""Keyed concurrency limits (one in-flight turn per user)."""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass


@dataclass(slots=True)
class _Limiter:
    semaphore: asyncio.Semaphore
    concurrency: int
    holders: int = 0
    waiters: int = 0
    last_used: float = 0.0


class KeyedLimiter:
    """Lazily created semaphores per key, swept after ``idle_ttl_s`` without use."""

    def __init__(
        self,
        *,
        idle_ttl_s: float = 900.0,
        sweep_interval_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_ttl_s = idle_ttl_s
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._limiters: dict[str, _Limiter] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._limiters)

    def _get(self, key: str, concurrency: int) -> _Limiter:
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = _Limiter(semaphore=asyncio.Semaphore(concurrency), concurrency=concurrency)
            self._limiters[key] = limiter
        elif limiter.concurrency != concurrency:
            raise ValueError(
                f"limiter for {key!r} already exists with concurrency {limiter.concurrency}"
            )
        return limiter

    def sweep(self) -> int:
        now = self._clock()
        self._last_sweep = now
        stale = [
            key
            for key, limiter in self._limiters.items()
            if limiter.holders == 0
            and limiter.waiters == 0
            and now - limiter.last_used >= self.idle_ttl_s
        ]
        for key in stale:
            del self._limiters[key]
        return len(stale)

    def clear(self, key: str) -> None:
        limiter = self._limiters.get(key)
        if limiter is not None and limiter.holders == 0 and limiter.waiters == 0:
            del self._limiters[key]

    @asynccontextmanager
    async def hold(self, key: str, concurrency: int = 1) -> AsyncIterator[None]:
        if self._clock() - self._last_sweep >= self.sweep_interval_s:
            self.sweep()
        limiter = self._get(key, max(1, concurrency))
        limiter.waiters += 1
        try:
            await limiter.semaphore.acquire()
        finally:
            limiter.waiters -= 1
        limiter.holders += 1
        try:
            yield
        finally:
            limiter.holders -= 1
            limiter.last_used = self._clock()
            limiter.semaphore.release()
