"""Model capability catalog."""

import asyncio
import difflib
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class Capability(StrEnum):
    VISION = "vision"
    SEARCH = "search"
    AUDIO_IN = "audio_in"
    AUDIO_OUT = "audio_out"
    REASONING = "reasoning"
    CODE_EXEC = "code_exec"


class ContextSize(StrEnum):
    SMALL = "small"
    STANDARD = "standard"
    LARGE = "large"


CONTEXT_SIZE_TOKENS: dict[ContextSize, int] = {
    ContextSize.SMALL: 8000,
    ContextSize.STANDARD: 16000,
    ContextSize.LARGE: 128000,
}


@dataclass(frozen=True, slots=True)
class ModelInfo:
    id: str
    capabilities: frozenset[Capability] = frozenset()
    input_modalities: tuple[str, ...] = ("text",)
    output_modalities: tuple[str, ...] = ("text",)
    context_size: ContextSize = ContextSize.STANDARD
    description: str = ""

    @property
    def context_tokens(self) -> int:
        return CONTEXT_SIZE_TOKENS[self.context_size]


@dataclass(frozen=True, slots=True)
class ModelRequirements:
    vision: bool = False
    search: bool = False
    audio_in: bool = False
    audio_out: bool = False
    reasoning: bool = False
    code_exec: bool = False

    def is_empty(self) -> bool:
        return not any(
            (self.vision, self.search, self.audio_in, self.audio_out, self.reasoning, self.code_exec)
        )


@dataclass(frozen=True, slots=True)
class CatalogLookup:
    model: ModelInfo | None
    refreshed: bool = False


def _model(
    model_id: str,
    *caps: Capability,
    inputs: tuple[str, ...] = ("text",),
    outputs: tuple[str, ...] = ("text",),
    size: ContextSize = ContextSize.STANDARD,
    description: str = "",
) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        capabilities=frozenset(caps),
        input_modalities=inputs,
        output_modalities=outputs,
        context_size=size,
        description=description,
    )


DEFAULT_MODELS: dict[str, ModelInfo] = {
    model.id: model
    for model in (
        _model("openai-fast", Capability.VISION, inputs=("text", "image"), description="fast general chat"),
        _model("openai", Capability.VISION, inputs=("text", "image"), description="general chat"),
        _model(
            "openai-large",
            Capability.REASONING,
            size=ContextSize.LARGE,
            description="large-context reasoning",
        ),
        _model(
            "openai-audio",
            Capability.AUDIO_IN,
            Capability.AUDIO_OUT,
            inputs=("text", "audio"),
            outputs=("text", "audio"),
            description="speech in and out",
        ),
        _model("gemini-fast", Capability.VISION, inputs=("text", "image"), description="fast multimodal"),
        _model(
            "gemini-search",
            Capability.SEARCH,
            Capability.VISION,
            inputs=("text", "image"),
            description="grounded search and link reading",
        ),
        _model("kimi", Capability.VISION, Capability.REASONING, inputs=("text", "image")),
        _model("deepseek", Capability.REASONING, size=ContextSize.LARGE, description="reasoning"),
        _model("qwen-coder", Capability.CODE_EXEC, description="code generation"),
        _model("perplexity-fast", Capability.SEARCH, description="web-grounded answers"),
        _model(
            "perplexity-reasoning",
            Capability.SEARCH,
            Capability.REASONING,
            description="web-grounded reasoning",
        ),
    )
}


def model_supports(model: ModelInfo, requirements: ModelRequirements) -> bool:
    caps = model.capabilities
    if requirements.vision and not (
        Capability.VISION in caps or "image" in model.input_modalities
    ):
        return False
    if requirements.audio_in and not (
        Capability.AUDIO_IN in caps or "audio" in model.input_modalities
    ):
        return False
    if requirements.audio_out and not (
        Capability.AUDIO_OUT in caps or "audio" in model.output_modalities
    ):
        return False
    if requirements.search and Capability.SEARCH not in caps:
        return False
    if requirements.reasoning and Capability.REASONING not in caps:
        return False
    if requirements.code_exec and Capability.CODE_EXEC not in caps:
        return False
    return True


def suggest_model_ids(model_id: str, models: Iterable[str], limit: int = 3) -> list[str]:
    """Close matches for an unknown id, for error messages and operator hints."""
    return difflib.get_close_matches(model_id.strip().lower(), list(models), n=limit, cutoff=0.5)


CatalogLoader = Callable[[], Awaitable[Mapping[str, ModelInfo]]]


class ModelCatalog:
    """Immutable model metadata that is replaced wholesale on refresh."""

    def __init__(
        self,
        models: Mapping[str, ModelInfo] | None = None,
        *,
        loader: CatalogLoader | None = None,
    ) -> None:
        self._models: dict[str, ModelInfo] = dict(models if models is not None else DEFAULT_MODELS)
        self._loader = loader
        self._refresh_lock = asyncio.Lock()
        self._generation = 0

    def models(self) -> dict[str, ModelInfo]:
        return dict(self._models)

    def get(self, model_id: str) -> ModelInfo | None:
        return self._models.get(model_id.strip().lower())

    def context_sizes(self) -> dict[str, int]:
        return {model_id: info.context_tokens for model_id, info in self._models.items()}

    async def refresh(self) -> bool:
        if self._loader is None:
            return False
        generation = self._generation
        async with self._refresh_lock:
            if generation != self._generation:
                # Another task reloaded while this one waited for the lock.
                return True
            loaded = await self._loader()
            self._models = {key.strip().lower(): value for key, value in loaded.items()}
            self._generation += 1
            logger.info("model catalog refreshed: %d models", len(self._models))
            return True

    async def find_model(self, model_id: str, *, refresh_if_missing: bool = False) -> CatalogLookup:
        key = model_id.strip().lower()
        model = self._models.get(key)
        if model is not None or not refresh_if_missing:
            return CatalogLookup(model=model, refreshed=False)
        refreshed = await self.refresh()
        return CatalogLookup(model=self._models.get(key), refreshed=refreshed)

    def suggest(self, model_id: str, limit: int = 3) -> list[str]:
        return suggest_model_ids(model_id, self._models, limit)


def _str_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, list):
        return tuple(str(item).strip().lower() for item in value if str(item).strip())
    return ()


def parse_catalog_entry(raw: Mapping[str, Any]) -> ModelInfo | None:
    model_id = raw.get("name") or raw.get("id")
    if not isinstance(model_id, str) or not model_id.strip():
        return None
    inputs = _str_list(raw.get("input_modalities")) or ("text",)
    outputs = _str_list(raw.get("output_modalities")) or ("text",)
    caps: set[Capability] = set()
    if raw.get("vision") or "image" in inputs:
        caps.add(Capability.VISION)
    if raw.get("audio") or "audio" in inputs:
        caps.add(Capability.AUDIO_IN)
    if "audio" in outputs:
        caps.add(Capability.AUDIO_OUT)
    if raw.get("reasoning"):
        caps.add(Capability.REASONING)
    if raw.get("search"):
        caps.add(Capability.SEARCH)
    if raw.get("code_execution") or raw.get("code_exec"):
        caps.add(Capability.CODE_EXEC)
    context = raw.get("context_length") or raw.get("context_window")
    size = ContextSize.STANDARD
    if isinstance(context, int):
        if context >= 100_000:
            size = ContextSize.LARGE
        elif context < 12_000:
            size = ContextSize.SMALL
    description = raw.get("description")
    return ModelInfo(
        id=model_id.strip().lower(),
        capabilities=frozenset(caps),
        input_modalities=inputs,
        output_modalities=outputs,
        context_size=size,
        description=description if isinstance(description, str) else "",
    )


async def fetch_remote_catalog(
    base_url: str,
    *,
    timeout_s: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, ModelInfo]:
    """Load ``GET {base_url}/models``; accepts a bare list or an OpenAI ``{"data": [...]}`` body."""
    async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
        response = await client.get(f"{base_url.rstrip('/')}/models")
        response.raise_for_status()
    payload = response.json()
    entries = payload.get("data") if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        raise ValueError("model catalog response is not a list")
    catalog: dict[str, ModelInfo] = {}
    for raw in entries:
        if not isinstance(raw, dict):
            continue
        info = parse_catalog_entry(raw)
        if info is not None:
            catalog[info.id] = info
    if not catalog:
        raise ValueError("model catalog response contained no models")
    return catalog
