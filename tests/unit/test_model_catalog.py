import asyncio

import httpx
import pytest

from sage.models.catalog import (
    Capability,
    ContextSize,
    ModelCatalog,
    ModelInfo,
    ModelRequirements,
    fetch_remote_catalog,
    model_supports,
    parse_catalog_entry,
)


def test_default_catalog_capabilities() -> None:
    catalog = ModelCatalog()
    assert catalog.get("gemini-search") is not None
    assert Capability.SEARCH in catalog.get("perplexity-fast").capabilities
    assert catalog.get("OpenAI-Large").context_tokens == 128000
    assert catalog.context_sizes()["openai-fast"] == 16000


def test_model_supports_checks_every_requirement() -> None:
    catalog = ModelCatalog()
    assert model_supports(catalog.get("openai-fast"), ModelRequirements(vision=True))
    assert not model_supports(catalog.get("deepseek"), ModelRequirements(vision=True))
    assert model_supports(catalog.get("openai-audio"), ModelRequirements(audio_out=True))
    assert not model_supports(catalog.get("openai"), ModelRequirements(search=True))
    assert model_supports(catalog.get("qwen-coder"), ModelRequirements())
    assert ModelRequirements().is_empty()


def test_suggest_close_ids() -> None:
    assert "deepseek" in ModelCatalog().suggest("deepsek")


def test_parse_catalog_entry_maps_modalities() -> None:
    info = parse_catalog_entry(
        {
            "name": "Vision-Pro",
            "input_modalities": ["text", "image"],
            "output_modalities": ["text", "audio"],
            "reasoning": True,
            "context_length": 200_000,
        }
    )
    assert info is not None
    assert info.id == "vision-pro"
    assert info.capabilities == frozenset(
        {Capability.VISION, Capability.AUDIO_OUT, Capability.REASONING}
    )
    assert info.context_size is ContextSize.LARGE
    assert parse_catalog_entry({"description": "no id"}) is None


@pytest.mark.asyncio
async def test_find_model_refreshes_on_miss() -> None:
    loads = 0

    async def loader() -> dict[str, ModelInfo]:
        nonlocal loads
        loads += 1
        return {"brand-new": ModelInfo(id="brand-new")}

    catalog = ModelCatalog({}, loader=loader)
    missing = await catalog.find_model("brand-new")
    assert missing.model is None
    found = await catalog.find_model("brand-new", refresh_if_missing=True)
    assert found.model is not None
    assert found.refreshed is True
    assert loads == 1


@pytest.mark.asyncio
async def test_concurrent_refreshes_load_once() -> None:
    loads = 0

    async def loader() -> dict[str, ModelInfo]:
        nonlocal loads
        loads += 1
        await asyncio.sleep(0.01)
        return {"m": ModelInfo(id="m")}

    catalog = ModelCatalog({}, loader=loader)
    results = await asyncio.gather(*(catalog.refresh() for _ in range(5)))
    assert all(results)
    assert loads == 1


@pytest.mark.asyncio
async def test_refresh_without_loader_is_noop() -> None:
    catalog = ModelCatalog()
    assert await catalog.refresh() is False


@pytest.mark.asyncio
async def test_fetch_remote_catalog_accepts_openai_shape() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models"
        return httpx.Response(
            200,
            json={"data": [{"id": "alpha", "input_modalities": ["text", "image"]}, "junk"]},
        )

    models = await fetch_remote_catalog(
        "https://llm.example.com/v1/", transport=httpx.MockTransport(handler)
    )
    assert list(models) == ["alpha"]
    assert Capability.VISION in models["alpha"].capabilities


@pytest.mark.asyncio
async def test_fetch_remote_catalog_rejects_empty_list() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[])

    with pytest.raises(ValueError):
        await fetch_remote_catalog("https://llm.example.com", transport=httpx.MockTransport(handler))
