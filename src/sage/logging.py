"""Log rendering for the runtime and per-turn trace context.

``build_orchestrator`` never touches logging handlers; the embedding
process calls ``configure_logging`` once at startup. Every turn runs inside
``turn_context`` so any record emitted while it is handled, including
plain ``logging.getLogger(__name__)`` records, carries the turn's
``trace_id``, ``user_id`` and ``route``.
"""

import logging
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import Any

import structlog

from sage.config import Settings, get_settings

TURN_CONTEXT_KEYS = ("trace_id", "user_id", "guild_id", "route", "model")
SECRET_KEYS = frozenset({"api_key", "authorization", "llm_api_key", "searxng_api_key"})

_HANDLER_NAME = "sage"


def redact_secrets(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def configure_logging(
    settings: Settings | None = None,
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> logging.Handler:
    """Install the runtime's structlog handler on the root logger.

    Args:
        settings: Source of LOG_LEVEL, LOG_JSON and APP_ENV; defaults to ``get_settings()``.
        level: Overrides LOG_LEVEL.
        json_output: Overrides LOG_JSON. When both are unset, JSON only when APP_ENV=prod.

    Handlers installed by other code stay in place; calling this again
    replaces only the handler a previous call installed.
    """
    settings = settings or get_settings()
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    if json_output is None:
        json_output = (
            bool(settings.log_json) if settings.log_json is not None else settings.app_env == "prod"
        )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level)
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
    return handler


@contextmanager
def turn_context(**fields: object) -> Iterator[None]:
    """Bind turn fields for the block; on exit the caller's turn fields come back."""
    unknown = set(fields) - set(TURN_CONTEXT_KEYS)
    if unknown:
        raise ValueError(f"unknown turn context keys: {sorted(unknown)}")
    previous = current_turn_fields()
    structlog.contextvars.unbind_contextvars(*TURN_CONTEXT_KEYS)
    bind_turn_fields(**fields)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(*TURN_CONTEXT_KEYS)
        if previous:
            structlog.contextvars.bind_contextvars(**previous)


def bind_turn_fields(**fields: object) -> None:
    """Add fields learned mid-turn, such as the resolved model, to the active turn context."""
    bound = {
        key: value
        for key, value in fields.items()
        if key in TURN_CONTEXT_KEYS and value is not None
    }
    if bound:
        structlog.contextvars.bind_contextvars(**bound)


def current_turn_fields() -> dict[str, Any]:
    context = structlog.contextvars.get_contextvars()
    return {key: context[key] for key in TURN_CONTEXT_KEYS if key in context}
