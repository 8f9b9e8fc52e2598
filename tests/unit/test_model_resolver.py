import pytest

from sage.models.catalog import ModelCatalog, ModelInfo
from sage.models.health import ModelHealthTracker
from sage.models.resolver import FeatureFlags, ModelResolver, messages_have_images

TEXT = [{"role": "user", "content": "hello"}]
IMAGE = [
    {
        "role": "user",
        "content": [
            {"type": "text", "text": "what is this?"},
            {"type": "image_url", "image_url": {"url": "https://example.com/x.png"}},
        ],
    }
]


def _resolver(**kwargs: object) -> tuple[ModelResolver, ModelHealthTracker]:
    health = ModelHealthTracker()
    return ModelResolver(ModelCatalog(), health, **kwargs), health


@pytest.mark.asyncio
async def test_default_route_picks_default_model_on_tie() -> None:
    resolver, _ = _resolver(default_model="openai-fast")
    result = await resolver.resolve("chat", TEXT)
    assert result.model == "openai-fast"
    assert result.candidates == ["openai-fast", "gemini-fast", "openai", "kimi"]
    assert result.decisions[0].reason == "selected"


@pytest.mark.asyncio
async def test_healthiest_accepted_candidate_wins() -> None:
    resolver, health = _resolver()
    await health.record_outcome("openai-fast", False)
    await health.record_outcome("kimi", True)
    result = await resolver.resolve("chat", TEXT)
    assert result.model == "kimi"


@pytest.mark.asyncio
async def test_images_reject_models_without_vision() -> None:
    resolver, _ = _resolver()
    assert messages_have_images(IMAGE)
    result = await resolver.resolve("coding", IMAGE)
    reasons = {d.model: d.reason for d in result.decisions}
    assert reasons["qwen-coder"] == "capability_mismatch"
    assert reasons["deepseek"] == "capability_mismatch"
    assert result.model == "openai-fast"


@pytest.mark.asyncio
async def test_feature_flags_shape_candidates() -> None:
    resolver, _ = _resolver()
    flags = FeatureFlags(audio_out=True, search=True, link_scrape=True)
    messages = [{"role": "user", "content": "read https://example.com please"}]
    candidates = resolver.build_candidates("chat", messages, flags)
    assert candidates[:2] == ["gemini-search", "openai-audio"]
    assert candidates[-1] == "perplexity-fast"
    assert len(candidates) == len(set(candidates))


@pytest.mark.asyncio
async def test_unknown_model_accepted_unless_strict() -> None:
    routes = {"chat": ("mystery-model",)}
    lenient = ModelResolver(ModelCatalog(), ModelHealthTracker(), route_defaults=routes)
    result = await lenient.resolve("chat", TEXT)
    assert result.model == "mystery-model"
    assert result.decisions[0].reason == "selected"

    strict = ModelResolver(
        ModelCatalog(), ModelHealthTracker(), route_defaults=routes, strict_catalog=True
    )
    result = await strict.resolve("chat", TEXT)
    assert result.decisions[0].reason == "catalog_miss_rejected"
    assert result.decisions[-1].reason == "fallback_first_candidate"
    assert result.model == "mystery-model"


@pytest.mark.asyncio
async def test_catalog_miss_reason_is_recorded_for_unselected_unknowns() -> None:
    routes = {"chat": ("openai-fast", "mystery-model")}
    resolver = ModelResolver(ModelCatalog(), ModelHealthTracker(), route_defaults=routes)
    result = await resolver.resolve("chat", TEXT)
    assert result.decisions[1].reason == "catalog_miss_accept_unknown"


@pytest.mark.asyncio
async def test_every_candidate_failing_falls_back_to_first() -> None:
    resolver, _ = _resolver()
    result = await resolver.resolve("coding", IMAGE, FeatureFlags(audio_in=True, code_exec=True))
    assert result.model == result.candidates[0]
    assert result.decisions[-1].reason == "fallback_first_candidate"


@pytest.mark.asyncio
async def test_allowlist_excluding_everything_keeps_first_candidate() -> None:
    resolver, _ = _resolver()
    result = await resolver.resolve("search", TEXT, allowed_models=["not-a-candidate"])
    assert result.model == "perplexity-fast"
    assert [d.reason for d in result.decisions] == ["fallback_first_candidate"]


@pytest.mark.asyncio
async def test_allowlist_filters_candidates() -> None:
    resolver, _ = _resolver()
    result = await resolver.resolve("search", TEXT, allowed_models=["Gemini-Search"])
    assert result.model == "gemini-search"


@pytest.mark.asyncio
async def test_resolve_never_raises_when_catalog_breaks() -> None:
    async def broken_loader() -> dict[str, ModelInfo]:
        raise RuntimeError("catalog endpoint down")

    resolver = ModelResolver(ModelCatalog({}, loader=broken_loader), ModelHealthTracker())
    result = await resolver.resolve("chat", TEXT)
    assert result.model in result.candidates
