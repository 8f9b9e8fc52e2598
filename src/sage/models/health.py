"""EWMA health scores per model id."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Literal, TypeVar

from sage.models.health_store import HealthStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SCORE = 0.5
ALPHA = 0.2
MAX_TRACKED_MODELS = 1024


@dataclass(frozen=True, slots=True)
class HealthEntry:
    model_id: str
    score: float
    samples: int
    updated_at: float


@dataclass(frozen=True, slots=True)
class HealthRuntimeStatus:
    persistence_enabled: bool
    persistence_mode: Literal["db", "memory"]
    degraded_mode: bool


def normalize_model_id(model: str) -> str:
    return (model or "").strip().lower()


def outcome_score(success: bool, latency_ms: float | None = None) -> float:
    if not success:
        return 0.0
    if latency_ms is None or latency_ms <= 0 or latency_ms <= 30_000:
        return 1.0
    if latency_ms <= 60_000:
        return 0.9
    if latency_ms <= 120_000:
        return 0.75
    return 0.6


class ModelHealthTracker:
    """Shared per-model health, optionally mirrored to a durable store.

    Each update reads and writes the in-memory entry without awaiting in
    between, so concurrent turns cannot interleave a torn update for one id.
    Store I/O happens after the in-memory update and is bounded by
    ``store_timeout_s``; the first store failure switches the tracker to
    memory-only for the rest of the process.
    """

    def __init__(
        self,
        store: HealthStore | None = None,
        *,
        alpha: float = ALPHA,
        store_timeout_s: float = 2.0,
        max_entries: int = MAX_TRACKED_MODELS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._alpha = alpha
        self._store_timeout_s = store_timeout_s
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, HealthEntry] = OrderedDict()
        self._hydrated: set[str] = set()
        self._hydrating: dict[str, asyncio.Future[None]] = {}
        self._degraded = False

    @property
    def _persisting(self) -> bool:
        return self._store is not None and not self._degraded

    def status(self) -> HealthRuntimeStatus:
        return HealthRuntimeStatus(
            persistence_enabled=self._store is not None,
            persistence_mode="db" if self._persisting else "memory",
            degraded_mode=self._degraded,
        )

    async def _store_call(self, operation: str, call: Callable[[], Awaitable[T]]) -> T | None:
        if not self._persisting:
            return None
        try:
            return await asyncio.wait_for(call(), timeout=self._store_timeout_s)
        except Exception as exc:
            self._degraded = True
            logger.warning(
                "model health store %s failed; continuing in memory-only mode: %s",
                operation,
                exc,
            )
            return None

    def _put(self, entry: HealthEntry) -> None:
        self._entries[entry.model_id] = entry
        self._entries.move_to_end(entry.model_id)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    async def _hydrate(self, model_id: str) -> None:
        if model_id in self._hydrated or not self._persisting:
            return
        pending = self._hydrating.get(model_id)
        if pending is not None:
            await asyncio.shield(pending)
            return
        done = asyncio.get_running_loop().create_future()
        self._hydrating[model_id] = done
        try:
            rows = await self._store_call("list", lambda: self._store.list([model_id]))
            for row in rows or []:
                if row.model_id == model_id and model_id not in self._entries:
                    self._put(
                        HealthEntry(
                            model_id=model_id,
                            score=min(1.0, max(0.0, row.score)),
                            samples=max(0, row.samples),
                            updated_at=self._clock(),
                        )
                    )
        finally:
            # Callers waiting on this id read the entry only after the load lands.
            self._hydrated.add(model_id)
            del self._hydrating[model_id]
            done.set_result(None)

    async def get_score(self, model: str) -> float:
        model_id = normalize_model_id(model)
        await self._hydrate(model_id)
        entry = self._entries.get(model_id)
        return entry.score if entry is not None else DEFAULT_SCORE

    async def record_outcome(
        self, model: str, success: bool, *, latency_ms: float | None = None
    ) -> HealthEntry:
        model_id = normalize_model_id(model)
        await self._hydrate(model_id)
        sample = outcome_score(success, latency_ms)
        previous = self._entries.get(model_id)
        if previous is None or previous.samples == 0:
            score = sample
            samples = 1
        else:
            score = self._alpha * sample + (1 - self._alpha) * previous.score
            samples = previous.samples + 1
        entry = HealthEntry(
            model_id=model_id,
            score=min(1.0, max(0.0, score)),
            samples=samples,
            updated_at=self._clock(),
        )
        self._put(entry)
        await self._store_call(
            "upsert", lambda: self._store.upsert(model_id, entry.score, entry.samples)
        )
        return entry

    def snapshot(self, models: Iterable[str] | None = None) -> dict[str, HealthEntry]:
        if models is None:
            return dict(self._entries)
        result: dict[str, HealthEntry] = {}
        for model in models:
            model_id = normalize_model_id(model)
            result[model_id] = self._entries.get(model_id) or HealthEntry(
                model_id=model_id, score=DEFAULT_SCORE, samples=0, updated_at=0.0
            )
        return result

    async def reset(self) -> None:
        self._entries.clear()
        self._hydrated.clear()
        await self._store_call("clear", lambda: self._store.clear())
