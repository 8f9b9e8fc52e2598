"""Prompt budget planning and message trimming."""

from __future__ import annotations

import copy
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from sage.context.limits import ModelBudgetConfig
from sage.context.tokens import (
    DEFAULT_OPTIONS,
    TokenEstimateOptions,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_text_tokens,
    is_image_part,
)

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[...truncated for budget...]\n"
IMAGE_FADED_PLACEHOLDER = "[image omitted to save context]"
IMAGE_NO_VISION_PLACEHOLDER = "[image omitted: model does not support images]"

Message = dict[str, Any]


@dataclass(frozen=True, slots=True)
class BudgetPlan:
    available_input_tokens: int
    reserved_output_tokens: int
    safety_margin_tokens: int
    max_context_tokens: int


@dataclass(frozen=True, slots=True)
class TrimOptions:
    keep_system_messages: bool = True
    keep_last_user_turns: int = 4
    vision_enabled: bool = True
    vision_fade_keep_last_user_images: int = 1
    attachment_text_max_tokens: int = 3200
    estimator: TokenEstimateOptions = DEFAULT_OPTIONS

    @classmethod
    def from_model(cls, config: ModelBudgetConfig, **overrides: Any) -> "TrimOptions":
        values: dict[str, Any] = {
            "vision_enabled": config.vision_enabled,
            "vision_fade_keep_last_user_images": config.vision_fade_keep_last_user_images,
            "attachment_text_max_tokens": config.attachment_text_max_tokens,
            "estimator": TokenEstimateOptions.for_ratio(
                config.chars_per_token,
                image_tokens=config.image_tokens,
                message_overhead_tokens=config.message_overhead_tokens,
            ),
        }
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True, slots=True)
class TrimStats:
    before_count: int
    after_count: int
    estimated_tokens_before: int
    estimated_tokens_after: int
    dropped_count: int
    notes: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "before_count": self.before_count,
            "after_count": self.after_count,
            "estimated_tokens_before": self.estimated_tokens_before,
            "estimated_tokens_after": self.estimated_tokens_after,
            "dropped_count": self.dropped_count,
            "notes": list(self.notes),
        }


@dataclass(slots=True)
class TrimResult:
    trimmed: list[Message]
    stats: TrimStats
    plan: BudgetPlan | None = field(default=None)


def plan_budget(
    config: ModelBudgetConfig, reserved_output_override: int | None = None
) -> BudgetPlan:
    reserved = config.max_output_tokens if reserved_output_override is None else reserved_output_override
    reserved = max(0, int(reserved))
    safety = max(0, int(config.safety_margin_tokens))
    max_context = max(0, int(config.max_context_tokens))
    return BudgetPlan(
        available_input_tokens=max(0, max_context - reserved - safety),
        reserved_output_tokens=reserved,
        safety_margin_tokens=safety,
        max_context_tokens=max_context,
    )


def truncate_text_to_tokens(
    text: str, max_tokens: int, options: TokenEstimateOptions = DEFAULT_OPTIONS
) -> str:
    """Keep the head (65%) and tail (20%) of ``text`` around a marker until it fits."""
    if max_tokens <= 0:
        return ""
    if estimate_text_tokens(text, options) <= max_tokens:
        return text
    ratio = min(options.chars_per_token, options.code_chars_per_token)
    max_chars = int(max_tokens * max(ratio, 1.0))
    while max_chars > 0:
        if max_chars <= len(TRUNCATION_MARKER) + 8:
            candidate = text[:max_chars]
        else:
            head = int(max_chars * 0.65)
            tail = int(max_chars * 0.20)
            candidate = text[:head] + TRUNCATION_MARKER + (text[-tail:] if tail else "")
        if estimate_text_tokens(candidate, options) <= max_tokens:
            return candidate
        max_chars = int(max_chars * 0.9)
    return ""


def _placeholder_part(placeholder: str) -> dict[str, Any]:
    return {"type": "text", "text": placeholder}


def _apply_vision_policy(messages: list[Message], options: TrimOptions, notes: list[str]) -> None:
    kept = 0
    faded = 0
    keep_limit = max(0, options.vision_fade_keep_last_user_images)
    for message in reversed(messages):
        content = message.get("content")
        if not isinstance(content, list):
            continue
        new_parts: list[Any] = []
        for part in reversed(content):
            if not is_image_part(part):
                new_parts.append(part)
                continue
            if not options.vision_enabled:
                new_parts.append(_placeholder_part(IMAGE_NO_VISION_PLACEHOLDER))
                faded += 1
            elif message.get("role") == "user" and kept < keep_limit:
                new_parts.append(part)
                kept += 1
            else:
                new_parts.append(_placeholder_part(IMAGE_FADED_PLACEHOLDER))
                faded += 1
        new_parts.reverse()
        message["content"] = new_parts
    if faded:
        notes.append(
            f"images_removed_no_vision={faded}"
            if not options.vision_enabled
            else f"images_faded={faded}"
        )


def _cap_text_content(message: Message, max_tokens: int, options: TokenEstimateOptions) -> bool:
    content = message.get("content")
    changed = False
    if isinstance(content, str):
        truncated = truncate_text_to_tokens(content, max_tokens, options)
        if truncated != content:
            message["content"] = truncated
            changed = True
    elif isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                truncated = truncate_text_to_tokens(part["text"], max_tokens, options)
                if truncated != part["text"]:
                    part["text"] = truncated
                    changed = True
    return changed


def _text_tokens(message: Message, options: TokenEstimateOptions) -> int:
    return max(0, estimate_message_tokens(message, options) - options.message_overhead_tokens)


def _shrink_message(message: Message, target_tokens: int, options: TokenEstimateOptions) -> None:
    content = message.get("content")
    if isinstance(content, list):
        # Images are the cheapest thing to give up once only the minimum set is left.
        content = [
            _placeholder_part(IMAGE_FADED_PLACEHOLDER) if is_image_part(part) else part
            for part in content
        ]
        texts = [
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        ]
        content = "\n".join(text for text in texts if text)
    if not isinstance(content, str):
        content = ""
    message["content"] = truncate_text_to_tokens(content, target_tokens, options)


def _protected_indices(messages: Sequence[Message], options: TrimOptions) -> set[int]:
    protected: set[int] = set()
    if options.keep_system_messages:
        protected.update(i for i, m in enumerate(messages) if m.get("role") == "system")
    user_indices = [i for i, m in enumerate(messages) if m.get("role") == "user"]
    keep = max(1, options.keep_last_user_turns)
    protected.update(user_indices[-keep:])
    return protected


def _minimal_indices(messages: Sequence[Message], options: TrimOptions) -> set[int]:
    minimal: set[int] = set()
    if options.keep_system_messages:
        minimal.update(i for i, m in enumerate(messages) if m.get("role") == "system")
    user_indices = [i for i, m in enumerate(messages) if m.get("role") == "user"]
    if user_indices:
        minimal.add(user_indices[-1])
    elif messages:
        minimal.add(len(messages) - 1)
    return minimal


def trim_messages_to_budget(
    messages: Sequence[Message],
    plan: BudgetPlan,
    options: TrimOptions | None = None,
) -> TrimResult:
    """Fit ``messages`` into ``plan.available_input_tokens``.

    Order of operations: image fading, per-message attachment caps, dropping the
    oldest unprotected messages, dropping older protected user turns, and finally
    truncating the minimum set (system + last user turn). The input is never
    mutated.
    """
    options = options or TrimOptions()
    est = options.estimator
    budget = plan.available_input_tokens
    working: list[Message] = copy.deepcopy(list(messages))
    notes: list[str] = []
    tokens_before = estimate_messages_tokens(working, est)

    _apply_vision_policy(working, options, notes)
    total = estimate_messages_tokens(working, est)

    if total > budget and options.attachment_text_max_tokens > 0:
        capped = 0
        for message in working:
            if message.get("role") == "system":
                continue
            if _cap_text_content(message, options.attachment_text_max_tokens, est):
                capped += 1
        if capped:
            notes.append(f"attachments_truncated={capped}")
            total = estimate_messages_tokens(working, est)

    dropped = 0
    for stage, keep_indices in (
        ("unprotected", _protected_indices),
        ("older_user_turns", _minimal_indices),
    ):
        if total <= budget:
            break
        keep = keep_indices(working, options)
        stage_dropped = 0
        index = 0
        while total > budget and index < len(working):
            if index in keep:
                index += 1
                continue
            total -= estimate_message_tokens(working[index], est)
            del working[index]
            keep = {k - 1 if k > index else k for k in keep}
            stage_dropped += 1
        if stage_dropped:
            dropped += stage_dropped
            notes.append(f"dropped_{stage}={stage_dropped}")
        total = estimate_messages_tokens(working, est)

    if total > budget:
        notes.append("minimum_set_truncated")
        order = sorted(
            range(len(working)), key=lambda i: _text_tokens(working[i], est), reverse=True
        )
        for index in order:
            if total <= budget:
                break
            overflow = total - budget
            current = _text_tokens(working[index], est)
            _shrink_message(working[index], max(0, current - overflow), est)
            total = estimate_messages_tokens(working, est)
        if total > budget:
            notes.append("budget_unsatisfiable")
            logger.warning(
                "prompt exceeds budget even after trimming: tokens=%d budget=%d", total, budget
            )

    stats = TrimStats(
        before_count=len(messages),
        after_count=len(working),
        estimated_tokens_before=tokens_before,
        estimated_tokens_after=total,
        dropped_count=dropped,
        notes=tuple(notes),
    )
    return TrimResult(trimmed=working, stats=stats, plan=plan)
