"""Provider contracts."""

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class ChatRequest:
    messages: list[dict[str, Any]]
    model: str | None = None
    temperature: float = 0.7
    max_tokens: int | None = None
    response_format: dict[str, Any] | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    timeout_s: float | None = None
    api_key: str | None = None


@dataclass(slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(slots=True)
class ChatResponse:
    content: str
    model: str
    usage: Usage | None = None
    native_tool_calls: bool = False
    reasoning_text: str = ""
    audio: dict[str, Any] | None = None
    attempts: int = 1
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


class LLMClient(Protocol):
    async def chat(self, request: ChatRequest) -> ChatResponse: ...
