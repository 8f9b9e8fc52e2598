import logging

import pytest
import structlog

from sage.config import Settings
from sage.logging import (
    bind_turn_fields,
    configure_logging,
    current_turn_fields,
    redact_secrets,
    turn_context,
)


@pytest.fixture
def root_handlers():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield root
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    structlog.reset_defaults()


def test_configure_logging_replaces_only_its_own_handler(root_handlers: logging.Logger) -> None:
    foreign = logging.NullHandler()
    root_handlers.addHandler(foreign)
    settings = Settings(LOG_LEVEL="debug", LOG_JSON=1)

    first = configure_logging(settings)
    second = configure_logging(settings, level="warning")

    assert foreign in root_handlers.handlers
    assert first not in root_handlers.handlers
    assert second in root_handlers.handlers
    assert root_handlers.level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING


def test_redact_secrets_masks_known_keys() -> None:
    event = redact_secrets(
        None, "info", {"event": "call", "api_key": "sk-123", "authorization": ""}
    )
    assert event == {"event": "call", "api_key": "***", "authorization": ""}


def test_turn_context_restores_outer_fields() -> None:
    with turn_context(trace_id="outer", route="chat"):
        with turn_context(trace_id="inner", user_id="u2"):
            bind_turn_fields(model="kimi", unrelated="x")
            assert current_turn_fields() == {"trace_id": "inner", "user_id": "u2", "model": "kimi"}
        assert current_turn_fields() == {"trace_id": "outer", "route": "chat"}
    assert current_turn_fields() == {}


def test_turn_context_rejects_unknown_keys() -> None:
    with pytest.raises(ValueError, match="unknown turn context keys"):
        with turn_context(session="s1"):
            pass
