"""Tool registration, argument validation and execution."""

import json
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from sage.errors import ToolError, ToolExecutionError, ToolValidationError
from sage.tools.policy import ToolRisk

MAX_ARGS_SIZE = 10 * 1024


@dataclass(slots=True)
class ToolContext:
    trace_id: str
    user_id: str
    channel_id: str
    guild_id: str | None = None
    route_kind: str = "chat"
    api_key: str | None = None


ToolCallable = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass(slots=True)
class ToolDef:
    name: str
    description: str
    handler: ToolCallable
    args_model: type[BaseModel] | None = None
    parameters: dict[str, object] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    risk: ToolRisk | None = None

    async def execute(self, args: dict[str, Any], context: ToolContext) -> Any:
        return await self.handler(args, context)


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDef] = {}

    def register(
        self,
        name: str,
        description: str,
        handler: ToolCallable,
        *,
        args_model: type[BaseModel] | None = None,
        parameters: dict[str, object] | None = None,
        risk: ToolRisk | None = None,
    ) -> None:
        if name in self._tools:
            raise ToolError(f'Tool "{name}" is already registered')
        if parameters is None:
            parameters = (
                args_model.model_json_schema()
                if args_model is not None
                else {"type": "object", "properties": {}}
            )
        self._tools[name] = ToolDef(
            name=name,
            description=description,
            handler=handler,
            args_model=args_model,
            parameters=parameters,
            risk=risk,
        )

    def get(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def scoped(self, names: Iterable[str]) -> "ToolRegistry":
        """A registry view restricted to ``names`` (unknown names are skipped)."""
        subset = ToolRegistry()
        for name in names:
            tool = self._tools.get(name)
            if tool is not None:
                subset._tools[name] = tool
        return subset

    def schemas(self) -> list[dict[str, object]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            }
            for tool in self._tools.values()
        ]

    def openai_tool_specs(self) -> list[dict[str, object]]:
        return [{"type": "function", "function": schema} for schema in self.schemas()]

    def validate_call(self, name: str, args: Any) -> dict[str, Any]:
        tool = self._tools.get(name)
        if tool is None:
            allowed = ", ".join(self.names()) or "none"
            raise ToolValidationError(f'Unknown tool: "{name}". Allowed tools: {allowed}')
        if not isinstance(args, dict):
            raise ToolValidationError(f'Tool arguments for "{name}" must be a JSON object')
        try:
            encoded = json.dumps(args)
        except (TypeError, ValueError) as exc:
            raise ToolValidationError(
                f'Tool arguments for "{name}" must be JSON-serializable'
            ) from exc
        if len(encoded) > MAX_ARGS_SIZE:
            raise ToolValidationError(
                f"Tool arguments exceed maximum size ({len(encoded)} > {MAX_ARGS_SIZE} bytes)"
            )
        if tool.args_model is None:
            return args
        try:
            parsed = tool.args_model.model_validate(args)
        except ValidationError as exc:
            issues = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            )
            raise ToolValidationError(f'Invalid arguments for tool "{name}": {issues}') from exc
        return parsed.model_dump()

    async def execute_validated(self, name: str, args: Any, context: ToolContext) -> Any:
        validated = self.validate_call(name, args)
        tool = self._tools[name]
        try:
            return await tool.execute(validated, context)
        except ToolError:
            raise
        except Exception as exc:
            raise ToolExecutionError(f"Tool execution failed: {exc}") from exc
