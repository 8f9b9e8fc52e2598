from sage.config import get_settings
from sage.orchestrator.profiles import (
    loop_config_from_settings,
    output_max_tokens,
    route_tools,
    select_profile,
)
from sage.orchestrator.tool_loop import ToolLoopConfig


def test_creative_route_has_no_tools() -> None:
    assert route_tools("creative") == ()
    assert "web_search" in route_tools("search")
    assert route_tools("unknown") == route_tools("chat")


def test_output_tokens_per_route() -> None:
    assert output_max_tokens("coding") == 4200
    assert output_max_tokens("mystery") == output_max_tokens("chat")


def test_complex_search_requires_evidence() -> None:
    profile = select_profile("search", "complex", ToolLoopConfig(max_rounds=1))
    assert profile.name == "search_complex"
    assert profile.require_tool_evidence
    assert profile.min_successful_tool_calls == 1
    assert profile.loop.max_rounds == 3
    assert profile.loop.max_tokens == 2000


def test_other_profiles_do_not_require_evidence() -> None:
    base = ToolLoopConfig()
    assert select_profile("search", "simple", base).name == "search_simple"
    profile = select_profile("coding", None, base)
    assert profile.name == "coding_default"
    assert not profile.require_tool_evidence


def test_loop_config_from_settings_clamps(monkeypatch) -> None:
    monkeypatch.setenv("AGENTIC_TOOL_MAX_ROUNDS", "-3")
    monkeypatch.setenv("AGENTIC_TOOL_RESULT_MAX_CHARS", "10")
    get_settings.cache_clear()
    config = loop_config_from_settings(get_settings())
    assert config.max_rounds == 0
    assert config.max_tool_result_chars == 200
