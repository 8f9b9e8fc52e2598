"""Tool-call envelope codec.

Model output is parsed exactly once into a tagged union: either ``FinalText``
(a natural-language answer) or ``ToolCallEnvelope``::

    {"type": "tool_calls", "calls": [{"name": "web_search", "args": {"query": "x"}}]}
"""

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

ENVELOPE_TYPE = "tool_calls"

RETRY_PROMPT = (
    "Your previous response was not valid JSON. Output ONLY valid JSON matching the exact schema:\n"
    "{\n"
    '  "type": "tool_calls",\n'
    '  "calls": [{ "name": "<tool_name>", "args": { ... } }]\n'
    "}\n"
    "OR respond with a plain text answer if you don't need to use tools."
)

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?([\s\S]*?)\n?```$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ToolCall:
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolCallEnvelope:
    calls: tuple[ToolCall, ...]

    def to_json(self, *, indent: int | None = None) -> str:
        return serialize_tool_calls(self.calls, indent=indent)


@dataclass(frozen=True, slots=True)
class FinalText:
    text: str


ParsedOutput = FinalText | ToolCallEnvelope


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = _CODE_FENCE_RE.match(stripped)
    return match.group(1).strip() if match else stripped


def looks_like_json(text: str) -> bool:
    """Heuristic for near-miss envelopes worth one strict retry."""
    candidate = strip_code_fences(text or "")
    if not candidate.startswith(("{", "[")):
        return False
    return any(marker in candidate for marker in ('"type"', '"name"', '"calls"'))


def _coerce_call(raw: Any) -> ToolCall | None:
    if not isinstance(raw, dict):
        return None
    name = raw.get("name")
    args = raw.get("args", {})
    if not isinstance(name, str) or not name.strip():
        return None
    if not isinstance(args, dict):
        return None
    return ToolCall(name=name.strip(), args=args)


def parse_model_output(text: str | None) -> ParsedOutput:
    """Return a ToolCallEnvelope when ``text`` is a well-formed envelope, else FinalText."""
    raw = text or ""
    candidate = strip_code_fences(raw)
    if not candidate.startswith("{"):
        return FinalText(raw)
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        return FinalText(raw)
    if not isinstance(payload, dict) or payload.get("type") != ENVELOPE_TYPE:
        return FinalText(raw)
    calls_raw = payload.get("calls")
    if not isinstance(calls_raw, list) or not calls_raw:
        return FinalText(raw)
    calls: list[ToolCall] = []
    for item in calls_raw:
        call = _coerce_call(item)
        if call is None:
            return FinalText(raw)
        calls.append(call)
    return ToolCallEnvelope(calls=tuple(calls))


def serialize_tool_calls(calls: Iterable[ToolCall], *, indent: int | None = None) -> str:
    payload = {
        "type": ENVELOPE_TYPE,
        "calls": [{"name": call.name, "args": call.args} for call in calls],
    }
    return json.dumps(payload, indent=indent)
