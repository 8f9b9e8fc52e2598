"""Turn trace records and sinks."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from sage.db.connection import get_conn

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TraceStart:
    id: str
    user_id: str
    channel_id: str
    route_kind: str
    guild_id: str | None = None
    router: dict[str, Any] = field(default_factory=dict)
    tokens: dict[str, Any] | None = None


@dataclass(slots=True)
class TraceEnd:
    id: str
    reply_text: str
    tools: dict[str, Any] | None = None
    quality: dict[str, Any] | None = None
    budget: dict[str, Any] | None = None
    error_text: str | None = None


class TraceSink(Protocol):
    async def upsert_trace_start(self, record: TraceStart) -> None: ...

    async def update_trace_end(self, record: TraceEnd) -> None: ...


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


class LoggingTraceSink:
    async def upsert_trace_start(self, record: TraceStart) -> None:
        logger.info(
            "trace start id=%s route=%s router=%s", record.id, record.route_kind, _dumps(record.router)
        )

    async def update_trace_end(self, record: TraceEnd) -> None:
        logger.info(
            "trace end id=%s tools=%s quality=%s error=%s",
            record.id,
            _dumps(record.tools),
            _dumps(record.quality),
            record.error_text,
        )


class SqliteTraceSink:
    """Writes ``agent_traces`` rows; sqlite calls run in a worker thread."""

    def __init__(self, path: str | None = None) -> None:
        self._path = path

    def _start_sync(self, record: TraceStart) -> None:
        with get_conn(self._path) as conn:
            conn.execute(
                """
                INSERT INTO agent_traces(
                  id, guild_id, channel_id, user_id, route_kind, router_json, token_json
                ) VALUES(?,?,?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                  route_kind=excluded.route_kind,
                  router_json=excluded.router_json,
                  token_json=excluded.token_json,
                  updated_at=datetime('now')
                """,
                (
                    record.id,
                    record.guild_id,
                    record.channel_id,
                    record.user_id,
                    record.route_kind,
                    _dumps(record.router) or "{}",
                    _dumps(record.tokens),
                ),
            )

    def _end_sync(self, record: TraceEnd) -> None:
        with get_conn(self._path) as conn:
            conn.execute(
                """
                UPDATE agent_traces SET
                  reply_text=?, tool_json=?, quality_json=?, budget_json=?, error_text=?,
                  updated_at=datetime('now')
                WHERE id=?
                """,
                (
                    record.reply_text,
                    _dumps(record.tools),
                    _dumps(record.quality),
                    _dumps(record.budget),
                    record.error_text,
                    record.id,
                ),
            )

    async def upsert_trace_start(self, record: TraceStart) -> None:
        await asyncio.to_thread(self._start_sync, record)

    async def update_trace_end(self, record: TraceEnd) -> None:
        await asyncio.to_thread(self._end_sync, record)


async def safe_trace_start(sink: TraceSink | None, record: TraceStart) -> None:
    if sink is None:
        return
    try:
        await sink.upsert_trace_start(record)
    except Exception as exc:
        logger.warning("trace start write failed for %s: %s", record.id, exc)


async def safe_trace_end(sink: TraceSink | None, record: TraceEnd) -> None:
    if sink is None:
        return
    try:
        await sink.update_trace_end(record)
    except Exception as exc:
        logger.warning("trace end write failed for %s: %s", record.id, exc)
