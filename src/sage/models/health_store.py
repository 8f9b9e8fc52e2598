"""Durable backends for model health scores."""

import asyncio
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from sage.db.connection import get_conn
from sage.errors import PersistenceError

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class HealthRow:
    model_id: str
    score: float
    samples: int


class HealthStore(Protocol):
    async def list(self, model_ids: list[str]) -> list[HealthRow]: ...

    async def upsert(self, model_id: str, score: float, samples: int) -> None: ...

    async def clear(self) -> None: ...


class InMemoryHealthStore:
    def __init__(self) -> None:
        self._rows: dict[str, HealthRow] = {}

    async def list(self, model_ids: list[str]) -> list[HealthRow]:
        return [self._rows[model_id] for model_id in model_ids if model_id in self._rows]

    async def upsert(self, model_id: str, score: float, samples: int) -> None:
        self._rows[model_id] = HealthRow(model_id=model_id, score=score, samples=samples)

    async def clear(self) -> None:
        self._rows.clear()


class SqliteHealthStore:
    """``model_health_state`` table; sqlite calls run in a worker thread."""

    def __init__(self, path: str | None = None) -> None:
        self._path = path

    def _list_sync(self, model_ids: list[str]) -> list[HealthRow]:
        if not model_ids:
            return []
        placeholders = ",".join("?" for _ in model_ids)
        with get_conn(self._path) as conn:
            rows = conn.execute(
                "SELECT model_id, score, samples FROM model_health_state "
                f"WHERE model_id IN ({placeholders})",
                model_ids,
            ).fetchall()
        return [
            HealthRow(model_id=str(row["model_id"]), score=float(row["score"]), samples=int(row["samples"]))
            for row in rows
        ]

    def _upsert_sync(self, model_id: str, score: float, samples: int) -> None:
        with get_conn(self._path) as conn:
            conn.execute(
                """
                INSERT INTO model_health_state(model_id, score, samples, updated_at)
                VALUES(?, ?, ?, datetime('now'))
                ON CONFLICT(model_id) DO UPDATE SET
                  score=excluded.score,
                  samples=excluded.samples,
                  updated_at=excluded.updated_at
                """,
                (model_id, score, samples),
            )

    def _clear_sync(self) -> None:
        with get_conn(self._path) as conn:
            conn.execute("DELETE FROM model_health_state")

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise PersistenceError(f"model health store: {exc}") from exc

    async def list(self, model_ids: list[str]) -> list[HealthRow]:
        return await self._run(self._list_sync, list(model_ids))

    async def upsert(self, model_id: str, score: float, samples: int) -> None:
        await self._run(self._upsert_sync, model_id, score, samples)

    async def clear(self) -> None:
        await self._run(self._clear_sync)
