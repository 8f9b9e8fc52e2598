"""Health-aware model selection per route."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sage.context.tokens import is_image_part
from sage.models.catalog import ModelCatalog, ModelRequirements, model_supports
from sage.models.health import DEFAULT_SCORE, ModelHealthTracker, normalize_model_id

logger = logging.getLogger(__name__)

AUDIO_MODEL = "openai-audio"
LINK_SCRAPE_MODEL = "gemini-search"
SEARCH_MODELS = ("perplexity-fast", "gemini-search")
REASONING_MODELS = ("perplexity-reasoning", "deepseek")

DEFAULT_MODEL_SENTINEL = "@default"

ROUTE_DEFAULTS: dict[str, tuple[str, ...]] = {
    "chat": (DEFAULT_MODEL_SENTINEL, "gemini-fast", "openai", "kimi"),
    "qa": (DEFAULT_MODEL_SENTINEL, "gemini-fast", "openai", "kimi"),
    "coding": ("qwen-coder", "deepseek", "openai-large", DEFAULT_MODEL_SENTINEL),
    "search": ("perplexity-fast", "gemini-search", "perplexity-reasoning", DEFAULT_MODEL_SENTINEL),
    "creative": ("openai", "kimi", DEFAULT_MODEL_SENTINEL),
}

_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class FeatureFlags:
    tools: bool = False
    search: bool = False
    reasoning: bool = False
    audio_in: bool = False
    audio_out: bool = False
    code_exec: bool = False
    link_scrape: bool = False


@dataclass(frozen=True, slots=True)
class ModelDecision:
    model: str
    accepted: bool
    reason: str
    health_score: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "accepted": self.accepted,
            "reason": self.reason,
            "health_score": round(self.health_score, 4),
        }


@dataclass(slots=True)
class ResolveResult:
    model: str
    decisions: list[ModelDecision] = field(default_factory=list)
    candidates: list[str] = field(default_factory=list)


def _latest_user_text(messages: Sequence[Mapping[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return " ".join(
                part.get("text", "")
                for part in content
                if isinstance(part, Mapping) and isinstance(part.get("text"), str)
            )
        return ""
    return ""


def messages_have_images(messages: Sequence[Mapping[str, Any]]) -> bool:
    for message in messages:
        content = message.get("content")
        if isinstance(content, list) and any(is_image_part(part) for part in content):
            return True
    return False


def _dedupe(models: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for model in models:
        key = normalize_model_id(model)
        if key and key not in seen:
            seen.add(key)
            ordered.append(key)
    return ordered


class ModelResolver:
    def __init__(
        self,
        catalog: ModelCatalog,
        health: ModelHealthTracker,
        *,
        default_model: str = "openai-fast",
        route_defaults: Mapping[str, Sequence[str]] | None = None,
        strict_catalog: bool = False,
        refresh_on_miss: bool = True,
    ) -> None:
        self.catalog = catalog
        self.health = health
        self.default_model = normalize_model_id(default_model) or "openai-fast"
        self._route_defaults = dict(route_defaults or ROUTE_DEFAULTS)
        self.strict_catalog = strict_catalog
        self.refresh_on_miss = refresh_on_miss

    def build_candidates(
        self,
        route: str,
        messages: Sequence[Mapping[str, Any]],
        flags: FeatureFlags,
    ) -> list[str]:
        base = self._route_defaults.get(route) or self._route_defaults.get("chat") or ()
        candidates = [self.default_model if m == DEFAULT_MODEL_SENTINEL else m for m in base]
        if not candidates:
            candidates = [self.default_model]
        front: list[str] = []
        if flags.link_scrape and _URL_RE.search(_latest_user_text(messages)):
            front.append(LINK_SCRAPE_MODEL)
        if flags.audio_out or flags.audio_in:
            front.append(AUDIO_MODEL)
        back: list[str] = []
        if flags.search:
            back.extend(SEARCH_MODELS)
        if flags.reasoning:
            back.extend(REASONING_MODELS)
        return _dedupe([*front, *candidates, *back])

    @staticmethod
    def requirements_for(
        messages: Sequence[Mapping[str, Any]], flags: FeatureFlags
    ) -> ModelRequirements:
        return ModelRequirements(
            vision=messages_have_images(messages),
            search=flags.search,
            audio_in=flags.audio_in,
            audio_out=flags.audio_out,
            reasoning=flags.reasoning,
            code_exec=flags.code_exec,
        )

    async def _evaluate(self, model: str, requirements: ModelRequirements) -> ModelDecision:
        score = await self.health.get_score(model)
        try:
            lookup = await self.catalog.find_model(model, refresh_if_missing=self.refresh_on_miss)
            info = lookup.model
        except Exception as exc:
            logger.warning("catalog lookup failed for %s; treating as a miss: %s", model, exc)
            info = None
        if info is None:
            if self.strict_catalog:
                return ModelDecision(model, False, "catalog_miss_rejected", score)
            return ModelDecision(model, True, "catalog_miss_accept_unknown", score)
        if not model_supports(info, requirements):
            return ModelDecision(model, False, "capability_mismatch", score)
        return ModelDecision(model, True, "capability_match", score)

    async def resolve(
        self,
        route: str,
        messages: Sequence[Mapping[str, Any]],
        feature_flags: FeatureFlags | None = None,
        allowed_models: Iterable[str] | None = None,
    ) -> ResolveResult:
        """Pick a model; never raises and always returns one of the route's candidates."""
        flags = feature_flags or FeatureFlags()
        candidates = self.build_candidates(route, messages, flags)
        try:
            return await self._resolve(candidates, messages, flags, allowed_models)
        except Exception:
            logger.exception("model resolution failed; using first candidate")
            fallback = candidates[0]
            return ResolveResult(
                model=fallback,
                decisions=[ModelDecision(fallback, True, "fallback_first_candidate", DEFAULT_SCORE)],
                candidates=candidates,
            )

    async def _resolve(
        self,
        candidates: list[str],
        messages: Sequence[Mapping[str, Any]],
        flags: FeatureFlags,
        allowed_models: Iterable[str] | None,
    ) -> ResolveResult:
        pool = candidates
        if allowed_models is not None:
            allowed = {normalize_model_id(m) for m in allowed_models}
            pool = [m for m in candidates if m in allowed]

        requirements = self.requirements_for(messages, flags)
        decisions = [await self._evaluate(model, requirements) for model in pool]

        best_index: int | None = None
        for index, decision in enumerate(decisions):
            if not decision.accepted:
                continue
            # Strict ">" keeps the earlier candidate on ties.
            if best_index is None or decision.health_score > decisions[best_index].health_score:
                best_index = index

        if best_index is not None:
            chosen = decisions[best_index]
            decisions[best_index] = ModelDecision(chosen.model, True, "selected", chosen.health_score)
            return ResolveResult(model=chosen.model, decisions=decisions, candidates=candidates)

        fallback = candidates[0]
        logger.warning(
            "no candidate accepted for requirements %s; falling back to %s", requirements, fallback
        )
        decisions.append(
            ModelDecision(
                fallback, True, "fallback_first_candidate", await self.health.get_score(fallback)
            )
        )
        return ResolveResult(model=fallback, decisions=decisions, candidates=candidates)
