"""Role-sequence normalization for backends that require strict alternation."""

from typing import Any

CONTEXT_PLACEHOLDER = "(Consulting memory/context...)"
JSON_ONLY_INSTRUCTION = (
    " IMPORTANT: You must output strictly valid JSON only. "
    "Do not wrap in markdown blocks. No other text."
)


def _as_parts(content: Any) -> list[Any]:
    if isinstance(content, list):
        return list(content)
    if content is None or content == "":
        return []
    return [{"type": "text", "text": str(content)}]


def _merge_content(left: Any, right: Any) -> Any:
    if isinstance(left, str) and isinstance(right, str):
        if not left:
            return right
        if not right:
            return left
        return f"{left}\n\n{right}"
    return _as_parts(left) + _as_parts(right)


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    return ""


def collapse_system_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    system_texts = [
        text for text in (_text_of(m.get("content")) for m in messages if m.get("role") == "system")
        if text.strip()
    ]
    rest = [dict(m) for m in messages if m.get("role") != "system"]
    if not system_texts:
        return rest
    return [{"role": "system", "content": "\n\n".join(system_texts)}, *rest]


def merge_adjacent_roles(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged: list[dict[str, Any]] = []
    for message in messages:
        if merged and merged[-1].get("role") == message.get("role"):
            previous = merged[-1]
            previous["content"] = _merge_content(previous.get("content"), message.get("content"))
            continue
        merged.append(dict(message))
    return merged


def ensure_user_first(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    first_index = next((i for i, m in enumerate(messages) if m.get("role") != "system"), None)
    if first_index is None or messages[first_index].get("role") == "user":
        return messages
    return [
        *messages[:first_index],
        {"role": "user", "content": CONTEXT_PLACEHOLDER},
        *messages[first_index:],
    ]


def normalize_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return ensure_user_first(merge_adjacent_roles(collapse_system_messages(messages)))


def with_json_only_instruction(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Append the strict JSON instruction to the first system message (inserting one if absent)."""
    updated = [dict(m) for m in messages]
    for message in updated:
        if message.get("role") != "system":
            continue
        text = _text_of(message.get("content"))
        if "valid JSON only" not in text:
            message["content"] = text + JSON_ONLY_INSTRUCTION
        return updated
    return [{"role": "system", "content": JSON_ONLY_INSTRUCTION.strip()}, *updated]
