"""Durable backends for per-route canary windows."""

import asyncio
import json
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from sage.db.connection import get_conn
from sage.errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CanaryOutcome:
    success: bool
    reason: str | None = None
    recorded_at: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {"success": self.success, "reason": self.reason, "recorded_at": self.recorded_at}


@dataclass(frozen=True, slots=True)
class CanaryRow:
    route: str
    outcomes: list[CanaryOutcome] = field(default_factory=list)
    cooldown_until: float | None = None


def parse_outcomes(raw: Any) -> list[CanaryOutcome]:
    """Decode stored outcomes, skipping entries that do not have the expected shape."""
    if not isinstance(raw, list):
        return []
    outcomes: list[CanaryOutcome] = []
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("success"), bool):
            continue
        recorded_at = item.get("recorded_at", 0.0)
        if isinstance(recorded_at, bool) or not isinstance(recorded_at, int | float):
            continue
        reason = item.get("reason")
        outcomes.append(
            CanaryOutcome(
                success=item["success"],
                reason=None if item["success"] or not isinstance(reason, str) else reason,
                recorded_at=float(recorded_at),
            )
        )
    return outcomes


class CanaryStore(Protocol):
    async def get(self, route: str) -> CanaryRow | None: ...

    async def put(self, row: CanaryRow) -> None: ...

    async def clear(self, route: str | None = None) -> None: ...


class InMemoryCanaryStore:
    def __init__(self) -> None:
        self._rows: dict[str, CanaryRow] = {}

    async def get(self, route: str) -> CanaryRow | None:
        return self._rows.get(route)

    async def put(self, row: CanaryRow) -> None:
        self._rows[row.route] = CanaryRow(row.route, list(row.outcomes), row.cooldown_until)

    async def clear(self, route: str | None = None) -> None:
        if route is None:
            self._rows.clear()
        else:
            self._rows.pop(route, None)


class SqliteCanaryStore:
    """``agentic_canary_state`` table, one row per route."""

    def __init__(self, path: str | None = None) -> None:
        self._path = path

    def _get_sync(self, route: str) -> CanaryRow | None:
        with get_conn(self._path) as conn:
            row = conn.execute(
                "SELECT route, outcomes_json, cooldown_until FROM agentic_canary_state "
                "WHERE route=?",
                (route,),
            ).fetchone()
        if row is None:
            return None
        try:
            outcomes = parse_outcomes(json.loads(row["outcomes_json"] or "[]"))
        except json.JSONDecodeError:
            logger.warning("ignoring unreadable canary outcomes for route %s", route)
            outcomes = []
        cooldown = row["cooldown_until"]
        return CanaryRow(
            route=str(row["route"]),
            outcomes=outcomes,
            cooldown_until=float(cooldown) if cooldown is not None else None,
        )

    def _put_sync(self, row: CanaryRow) -> None:
        with get_conn(self._path) as conn:
            conn.execute(
                """
                INSERT INTO agentic_canary_state(route, outcomes_json, cooldown_until, updated_at)
                VALUES(?, ?, ?, datetime('now'))
                ON CONFLICT(route) DO UPDATE SET
                  outcomes_json=excluded.outcomes_json,
                  cooldown_until=excluded.cooldown_until,
                  updated_at=excluded.updated_at
                """,
                (
                    row.route,
                    json.dumps([outcome.as_dict() for outcome in row.outcomes]),
                    row.cooldown_until,
                ),
            )

    def _clear_sync(self, route: str | None) -> None:
        with get_conn(self._path) as conn:
            if route is None:
                conn.execute("DELETE FROM agentic_canary_state")
            else:
                conn.execute("DELETE FROM agentic_canary_state WHERE route=?", (route,))

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise PersistenceError(f"canary store: {exc}") from exc

    async def get(self, route: str) -> CanaryRow | None:
        return await self._run(self._get_sync, route)

    async def put(self, row: CanaryRow) -> None:
        await self._run(self._put_sync, row)

    async def clear(self, route: str | None = None) -> None:
        await self._run(self._clear_sync, route)
