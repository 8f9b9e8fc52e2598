"""Per-route canary gate for the tool-enabled path."""

import asyncio
import logging
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar

from sage.orchestrator.canary_store import CanaryOutcome, CanaryRow, CanaryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

CanaryReason = Literal[
    "disabled",
    "route_not_allowlisted",
    "error_budget_cooldown",
    "out_of_rollout_sample",
    "allowed",
]

FAILURE_REASONS = frozenset({"graph_failed_tasks", "hard_gate_unmet", "tool_loop_failed"})

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def fnv1a32(text: str) -> int:
    value = _FNV_OFFSET
    for byte in text.encode("utf-8"):
        value ^= byte
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value


def rollout_sample(guild_id: str | None, route: str, trace_id: str) -> float:
    """Stable percentage in [0, 100) for a (guild, route, trace) triple."""
    return (fnv1a32(f"{guild_id or 'dm'}:{route}:{trace_id}") % 10_000) / 100


@dataclass(frozen=True, slots=True)
class CanaryConfig:
    """Canary tuning; an empty ``route_allowlist`` admits every route."""

    enabled: bool = True
    rollout_percent: float = 100.0
    route_allowlist: frozenset[str] = frozenset({"chat", "coding", "search"})
    max_failure_rate: float = 0.3
    min_samples: int = 20
    cooldown_s: float = 300.0
    window_size: int = 100

    def __post_init__(self) -> None:
        object.__setattr__(self, "rollout_percent", min(100.0, max(0.0, self.rollout_percent)))
        object.__setattr__(self, "min_samples", max(1, int(self.min_samples)))
        object.__setattr__(self, "cooldown_s", max(1.0, float(self.cooldown_s)))
        object.__setattr__(self, "window_size", max(10, int(self.window_size)))
        object.__setattr__(self, "max_failure_rate", min(1.0, max(0.0, self.max_failure_rate)))


@dataclass(frozen=True, slots=True)
class CanaryDecision:
    allow_agentic: bool
    reason: CanaryReason
    sample_percent: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "allow_agentic": self.allow_agentic,
            "reason": self.reason,
            "sample_percent": self.sample_percent,
        }


@dataclass(frozen=True, slots=True)
class CanarySnapshot:
    route: str
    samples: int
    failures: int
    failure_rate: float
    cooldown_until: float | None
    tripped: bool = False
    reason_counts: dict[str, int] = field(default_factory=dict)
    latest_outcome: CanaryOutcome | None = None
    persistence_mode: Literal["db", "memory"] = "memory"
    degraded_mode: bool = False
    last_persistence_error: str | None = None


@dataclass(slots=True)
class _RouteWindow:
    outcomes: deque[CanaryOutcome]
    cooldown_until: float | None = None
    last_failure_reason: str | None = field(default=None)

    def failures(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)


def parse_route_allowlist(raw: str | Iterable[str]) -> frozenset[str]:
    items = raw.split(",") if isinstance(raw, str) else raw
    return frozenset(item.strip().lower() for item in items if item.strip())


def normalize_route(route: str) -> str:
    return (route or "").strip().lower()


class CanaryGate:
    """Rolling success/failure windows per route with a cooldown after tripping.

    With a store, each route's window is loaded on first use and written back
    after every change. Store calls are bounded by ``store_timeout_s``; the
    first failure switches the gate to memory-only for the rest of the process.
    """

    def __init__(
        self,
        config: CanaryConfig | None = None,
        *,
        store: CanaryStore | None = None,
        store_timeout_s: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CanaryConfig()
        self._store = store
        self._store_timeout_s = store_timeout_s
        self._clock = clock
        self._windows: dict[str, _RouteWindow] = {}
        self._hydrated: set[str] = set()
        self._hydrating: dict[str, asyncio.Future[None]] = {}
        self._degraded = False
        self._last_error: str | None = None

    @property
    def _persisting(self) -> bool:
        return self._store is not None and not self._degraded

    def _window(self, route: str) -> _RouteWindow:
        window = self._windows.get(route)
        if window is None:
            window = _RouteWindow(outcomes=deque(maxlen=self.config.window_size))
            self._windows[route] = window
        return window

    async def _store_call(self, operation: str, call: Callable[[], Awaitable[T]]) -> T | None:
        if not self._persisting:
            return None
        try:
            return await asyncio.wait_for(call(), timeout=self._store_timeout_s)
        except Exception as exc:
            self._degraded = True
            self._last_error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "canary store %s failed; continuing in memory-only mode: %s", operation, exc
            )
            return None

    async def _hydrate(self, route: str) -> None:
        if route in self._hydrated or not self._persisting:
            return
        pending = self._hydrating.get(route)
        if pending is not None:
            await asyncio.shield(pending)
            return
        done = asyncio.get_running_loop().create_future()
        self._hydrating[route] = done
        try:
            row = await self._store_call("get", lambda: self._store.get(route))
            if row is not None and route not in self._windows:
                window = self._window(route)
                window.outcomes.extend(row.outcomes)
                window.cooldown_until = row.cooldown_until
                failed = [o for o in window.outcomes if not o.success]
                if failed:
                    window.last_failure_reason = failed[-1].reason or "unknown"
        finally:
            self._hydrated.add(route)
            del self._hydrating[route]
            done.set_result(None)

    async def _persist(self, route: str, window: _RouteWindow) -> None:
        row = CanaryRow(route, list(window.outcomes), window.cooldown_until)
        await self._store_call("put", lambda: self._store.put(row))

    async def decide(
        self, route: str, trace_id: str, guild_id: str | None = None
    ) -> CanaryDecision:
        config = self.config
        if not config.enabled:
            return CanaryDecision(True, "disabled")
        route = normalize_route(route)
        if config.route_allowlist and route not in config.route_allowlist:
            return CanaryDecision(False, "route_not_allowlisted")
        await self._hydrate(route)
        window = self._windows.get(route)
        if window is not None and window.cooldown_until is not None:
            if self._clock() < window.cooldown_until:
                return CanaryDecision(False, "error_budget_cooldown")
            window.cooldown_until = None
            window.outcomes.clear()
            await self._persist(route, window)
        sample = rollout_sample(guild_id, route, trace_id)
        if sample >= config.rollout_percent:
            return CanaryDecision(False, "out_of_rollout_sample", sample)
        return CanaryDecision(True, "allowed", sample)

    async def record_outcome(self, route: str, success: bool, reason: str | None = None) -> None:
        route = normalize_route(route)
        await self._hydrate(route)
        window = self._window(route)
        if not success:
            reason = reason if reason in FAILURE_REASONS else "unknown"
            window.last_failure_reason = reason
        window.outcomes.append(
            CanaryOutcome(
                success=success,
                reason=None if success else reason,
                recorded_at=self._clock(),
            )
        )
        samples = len(window.outcomes)
        if samples >= self.config.min_samples:
            failure_rate = window.failures() / samples
            if failure_rate > self.config.max_failure_rate and window.cooldown_until is None:
                window.cooldown_until = self._clock() + self.config.cooldown_s
                logger.warning(
                    "canary tripped for route %s: failure_rate=%.2f samples=%d last_reason=%s",
                    route,
                    failure_rate,
                    samples,
                    window.last_failure_reason,
                )
        await self._persist(route, window)

    def snapshot(self, route: str) -> CanarySnapshot:
        route = normalize_route(route)
        persistence = {
            "persistence_mode": "db" if self._persisting else "memory",
            "degraded_mode": self._degraded,
            "last_persistence_error": self._last_error,
        }
        window = self._windows.get(route)
        if window is None:
            return CanarySnapshot(route, 0, 0, 0.0, None, **persistence)
        samples = len(window.outcomes)
        failures = window.failures()
        counts = Counter(o.reason for o in window.outcomes if not o.success and o.reason)
        return CanarySnapshot(
            route=route,
            samples=samples,
            failures=failures,
            failure_rate=failures / samples if samples else 0.0,
            cooldown_until=window.cooldown_until,
            tripped=window.cooldown_until is not None and self._clock() < window.cooldown_until,
            reason_counts={r: counts.get(r, 0) for r in sorted(FAILURE_REASONS | set(counts))},
            latest_outcome=window.outcomes[-1] if window.outcomes else None,
            **persistence,
        )

    async def reset(self, route: str | None = None) -> None:
        if route is not None:
            route = normalize_route(route)
        await self._store_call("clear", lambda: self._store.clear(route))
        if route is None:
            self._windows.clear()
            self._hydrated.clear()
        else:
            self._windows.pop(route, None)
            self._hydrated.discard(route)
