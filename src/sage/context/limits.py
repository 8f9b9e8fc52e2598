"""Per-model context limits used to plan prompt budgets."""

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_USER_MAX_TOKENS = 8000


@dataclass(frozen=True, slots=True)
class ModelBudgetConfig:
    model: str
    max_context_tokens: int = 16000
    max_output_tokens: int = 4000
    safety_margin_tokens: int = 200
    vision_enabled: bool = True
    vision_fade_keep_last_user_images: int = 1
    attachment_text_max_tokens: int = math.floor(DEFAULT_USER_MAX_TOKENS * 0.4)
    chars_per_token: float = 4.0
    image_tokens: int = 1200
    message_overhead_tokens: int = 4


_BUILTIN_OVERRIDES: dict[str, dict[str, Any]] = {
    "kimi": {"vision_enabled": True},
    "deepseek": {"vision_enabled": False},
    "qwen-coder": {"vision_enabled": False},
    "openai-large": {
        "max_context_tokens": 120000,
        "max_output_tokens": 12000,
        "safety_margin_tokens": 400,
        "attachment_text_max_tokens": 36000,
        "vision_fade_keep_last_user_images": 0,
        "vision_enabled": False,
    },
}

_FIELD_NAMES = {item.name for item in fields(ModelBudgetConfig)} - {"model"}
_FLOORED_FIELDS = {"max_context_tokens", "max_output_tokens", "attachment_text_max_tokens"}
_POSITIVE_FIELDS = {"max_context_tokens", "max_output_tokens", "chars_per_token"}
_FIELD_TYPES = {name: type(getattr(ModelBudgetConfig(model=""), name)) for name in _FIELD_NAMES}


def coerce_limit_value(name: str, value: Any) -> Any:
    """Return ``value`` converted to the field's type; raises ValueError when it cannot be."""
    kind = _FIELD_TYPES[name]
    if kind is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        raise ValueError(f"{name} must be a boolean, got {value!r}")
    if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value):
        raise ValueError(f"{name} must be a number, got {value!r}")
    number = int(value) if kind is int else float(value)
    if number < 0 or (number == 0 and name in _POSITIVE_FIELDS):
        raise ValueError(f"{name} out of range: {value!r}")
    return number


def clean_limit_overrides(model_id: str, values: Mapping[str, Any]) -> dict[str, Any]:
    """Keep known fields with usable values; everything else is dropped with a warning."""
    clean: dict[str, Any] = {}
    for key, value in values.items():
        if key not in _FIELD_NAMES:
            logger.warning("ignoring unknown model limit %s for %s", key, model_id)
            continue
        try:
            clean[key] = coerce_limit_value(key, value)
        except ValueError as exc:
            logger.warning("ignoring model limit override for %s: %s", model_id, exc)
    return clean


def parse_limits_json(raw: str) -> dict[str, dict[str, Any]]:
    """Parse operator overrides: ``{"model-id": {"max_context_tokens": 32000, ...}}``."""
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("ignoring invalid LLM_MODEL_LIMITS_JSON: %s", exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("ignoring LLM_MODEL_LIMITS_JSON: expected an object")
        return {}
    parsed: dict[str, dict[str, Any]] = {}
    for model_id, values in payload.items():
        key = str(model_id).strip().lower()
        if not isinstance(values, dict):
            logger.warning("ignoring model limits for %s: expected an object", key)
            continue
        clean = clean_limit_overrides(key, values)
        if clean:
            parsed[key] = clean
    return parsed


class ModelLimits:
    """Resolves a ModelBudgetConfig per model id.

    Precedence: operator overrides, then builtin overrides, then the catalog's
    context size, then defaults. Builtin context/output sizes act as floors.
    """

    def __init__(
        self,
        overrides: Mapping[str, Mapping[str, Any]] | None = None,
        *,
        context_sizes: Mapping[str, int] | None = None,
        user_max_tokens: int = DEFAULT_USER_MAX_TOKENS,
        chars_per_token: float = 4.0,
    ) -> None:
        self._overrides = {
            key.strip().lower(): clean_limit_overrides(key, value)
            for key, value in (overrides or {}).items()
        }
        self._context_sizes = {key.lower(): value for key, value in (context_sizes or {}).items()}
        self._base = ModelBudgetConfig(
            model="",
            attachment_text_max_tokens=math.floor(max(0, user_max_tokens) * 0.4),
            chars_per_token=chars_per_token if chars_per_token > 0 else 4.0,
        )

    def for_model(self, model: str) -> ModelBudgetConfig:
        key = model.strip().lower()
        config = replace(self._base, model=key)
        if key in self._context_sizes:
            config = replace(config, max_context_tokens=self._context_sizes[key])
        builtin = _BUILTIN_OVERRIDES.get(key, {})
        for name, value in builtin.items():
            if name in _FLOORED_FIELDS:
                value = max(value, getattr(config, name))
            config = replace(config, **{name: value})
        operator = self._overrides.get(key)
        if operator:
            config = replace(config, **operator)
        return config

    def __call__(self, model: str) -> ModelBudgetConfig:
        return self.for_model(model)
