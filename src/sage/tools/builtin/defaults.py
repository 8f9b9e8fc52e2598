"""Builtin tool set."""

from sage.tools.builtin.datetime_tool import CurrentDatetimeArgs, get_current_datetime
from sage.tools.builtin.web_search import WebSearchArgs, web_search
from sage.tools.policy import ToolRisk
from sage.tools.registry import ToolRegistry


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    registry.register(
        "get_current_datetime",
        "Return the current date and time, optionally in a given IANA timezone.",
        get_current_datetime,
        args_model=CurrentDatetimeArgs,
        risk=ToolRisk.READ_ONLY,
    )
    registry.register(
        "web_search",
        "Search the web and return titles, URLs and snippets.",
        web_search,
        args_model=WebSearchArgs,
        risk=ToolRisk.NETWORK_READ,
    )
    return registry


def build_default_registry() -> ToolRegistry:
    return register_builtin_tools(ToolRegistry())
