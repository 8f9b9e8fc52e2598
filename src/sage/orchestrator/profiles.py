"""Tool-loop execution profiles per route."""

from dataclasses import dataclass, replace

from sage.config import Settings
from sage.orchestrator.tool_loop import ToolLoopConfig

ROUTE_TOOL_ALLOWLIST: dict[str, tuple[str, ...]] = {
    "chat": ("get_current_datetime", "web_search"),
    "qa": ("get_current_datetime", "web_search"),
    "coding": ("get_current_datetime", "web_search"),
    "search": ("get_current_datetime", "web_search"),
    "creative": (),
}

ROUTE_OUTPUT_MAX_TOKENS: dict[str, int] = {
    "coding": 4200,
    "search": 2000,
    "chat": 1800,
    "creative": 1800,
}

TOOL_EVIDENCE_INSTRUCTION = (
    "This request needs fresh evidence. Call at least one of the available tools before "
    "answering, using the tool_calls JSON format."
)


@dataclass(frozen=True, slots=True)
class ToolLoopProfile:
    name: str
    loop: ToolLoopConfig
    require_tool_evidence: bool = False
    min_successful_tool_calls: int = 0


def loop_config_from_settings(settings: Settings) -> ToolLoopConfig:
    return ToolLoopConfig(
        max_rounds=max(0, settings.agentic_tool_max_rounds),
        max_calls_per_round=max(1, settings.agentic_tool_max_calls_per_round),
        tool_timeout_s=max(0.1, settings.agentic_tool_timeout_seconds),
        max_tool_result_chars=max(200, settings.agentic_tool_result_max_chars),
        parallel_read_only=bool(settings.agentic_tool_parallel_read_only),
        max_parallel_read_only=max(1, settings.agentic_tool_max_parallel_read_only),
        cache_enabled=bool(settings.agentic_tool_cache_enabled),
    )


def route_tools(route: str) -> tuple[str, ...]:
    return ROUTE_TOOL_ALLOWLIST.get(route, ROUTE_TOOL_ALLOWLIST["chat"])


def output_max_tokens(route: str) -> int:
    return ROUTE_OUTPUT_MAX_TOKENS.get(route, ROUTE_OUTPUT_MAX_TOKENS["chat"])


def select_profile(route: str, search_mode: str | None, base: ToolLoopConfig) -> ToolLoopProfile:
    loop = replace(base, max_tokens=output_max_tokens(route))
    if route == "search" and search_mode == "complex":
        return ToolLoopProfile(
            name="search_complex",
            loop=replace(loop, max_rounds=max(loop.max_rounds, 3)),
            require_tool_evidence=True,
            min_successful_tool_calls=1,
        )
    if route == "search":
        return ToolLoopProfile(name="search_simple", loop=loop)
    return ToolLoopProfile(name=f"{route}_default", loop=loop)
