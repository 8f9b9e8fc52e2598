"""Character-ratio token estimates for text, images and chat messages."""

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

_CODE_FENCE_RE = re.compile(r"```.*?(?:```|$)", re.DOTALL)


@dataclass(frozen=True, slots=True)
class TokenEstimateOptions:
    chars_per_token: float = 4.0
    code_chars_per_token: float = 3.5
    image_tokens: int = 1200
    message_overhead_tokens: int = 4

    @classmethod
    def for_ratio(cls, chars_per_token: float, **overrides: Any) -> "TokenEstimateOptions":
        return cls(
            chars_per_token=chars_per_token,
            code_chars_per_token=max(3.0, chars_per_token - 0.5),
            **overrides,
        )


DEFAULT_OPTIONS = TokenEstimateOptions()


def _ratio_tokens(length: int, ratio: float) -> int:
    if length <= 0 or ratio <= 0 or not math.isfinite(ratio):
        return 0
    return math.ceil(length / ratio)


def estimate_text_tokens(text: Any, options: TokenEstimateOptions = DEFAULT_OPTIONS) -> int:
    """Estimate tokens for a string; fenced code blocks use the denser code ratio."""
    if not isinstance(text, str) or not text:
        return 0
    code_chars = sum(len(match) for match in _CODE_FENCE_RE.findall(text))
    prose_chars = len(text) - code_chars
    return _ratio_tokens(prose_chars, options.chars_per_token) + _ratio_tokens(
        code_chars, options.code_chars_per_token
    )


def is_image_part(part: Any) -> bool:
    return isinstance(part, Mapping) and part.get("type") in {"image_url", "image"}


def estimate_content_tokens(content: Any, options: TokenEstimateOptions = DEFAULT_OPTIONS) -> int:
    if isinstance(content, str):
        return estimate_text_tokens(content, options)
    if not isinstance(content, list):
        return 0
    total = 0
    for part in content:
        if is_image_part(part):
            total += max(0, int(options.image_tokens))
        elif isinstance(part, Mapping):
            total += estimate_text_tokens(part.get("text"), options)
        elif isinstance(part, str):
            total += estimate_text_tokens(part, options)
    return total


def estimate_message_tokens(
    message: Mapping[str, Any], options: TokenEstimateOptions = DEFAULT_OPTIONS
) -> int:
    if not isinstance(message, Mapping):
        return 0
    overhead = max(0, int(options.message_overhead_tokens))
    return overhead + estimate_content_tokens(message.get("content"), options)


def estimate_messages_tokens(
    messages: Iterable[Mapping[str, Any]], options: TokenEstimateOptions = DEFAULT_OPTIONS
) -> int:
    return sum(estimate_message_tokens(message, options) for message in messages or ())
