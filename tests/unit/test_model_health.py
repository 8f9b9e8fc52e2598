import asyncio

import pytest

from sage.models.health import (
    DEFAULT_SCORE,
    ModelHealthTracker,
    normalize_model_id,
    outcome_score,
)
from sage.models.health_store import HealthRow, InMemoryHealthStore


class BrokenStore:
    async def list(self, model_ids: list[str]) -> list[HealthRow]:
        raise RuntimeError("database is locked")

    async def upsert(self, model_id: str, score: float, samples: int) -> None:
        raise RuntimeError("database is locked")

    async def clear(self) -> None:
        raise RuntimeError("database is locked")


class SlowStore(InMemoryHealthStore):
    async def list(self, model_ids: list[str]) -> list[HealthRow]:
        await asyncio.sleep(1)
        return await super().list(model_ids)


@pytest.mark.asyncio
async def test_unseen_models_score_default() -> None:
    tracker = ModelHealthTracker()
    assert await tracker.get_score("never-used") == DEFAULT_SCORE == 0.5


@pytest.mark.asyncio
async def test_first_sample_sets_score_then_ewma() -> None:
    tracker = ModelHealthTracker(alpha=0.2)
    first = await tracker.record_outcome("Kimi ", False)
    assert first.model_id == "kimi"
    assert first.score == 0.0
    second = await tracker.record_outcome("kimi", True, latency_ms=100)
    assert second.score == pytest.approx(0.2)
    assert second.samples == 2


def test_outcome_score_latency_tiers() -> None:
    assert outcome_score(False, 10) == 0.0
    assert outcome_score(True) == 1.0
    assert outcome_score(True, 30_000) == 1.0
    assert outcome_score(True, 45_000) == 0.9
    assert outcome_score(True, 90_000) == 0.75
    assert outcome_score(True, 200_000) == 0.6
    assert normalize_model_id("  GPT ") == "gpt"


@pytest.mark.asyncio
async def test_scores_hydrate_from_store_once() -> None:
    store = InMemoryHealthStore()
    await store.upsert("deepseek", 0.9, 7)
    tracker = ModelHealthTracker(store)

    assert await tracker.get_score("deepseek") == 0.9
    entry = await tracker.record_outcome("deepseek", False)
    assert entry.samples == 8
    assert entry.score == pytest.approx(0.72)
    rows = await store.list(["deepseek"])
    assert rows[0].samples == 8
    assert tracker.status().persistence_mode == "db"


@pytest.mark.asyncio
async def test_store_failure_degrades_to_memory_only() -> None:
    tracker = ModelHealthTracker(BrokenStore())

    entry = await tracker.record_outcome("openai", True)

    assert entry.score == 1.0
    assert await tracker.get_score("openai") == 1.0
    status = tracker.status()
    assert status.persistence_enabled is True
    assert status.degraded_mode is True
    assert status.persistence_mode == "memory"


@pytest.mark.asyncio
async def test_slow_store_times_out_and_degrades() -> None:
    tracker = ModelHealthTracker(SlowStore(), store_timeout_s=0.01)
    assert await tracker.get_score("openai") == DEFAULT_SCORE
    assert tracker.status().degraded_mode is True


@pytest.mark.asyncio
async def test_tracked_models_are_bounded() -> None:
    tracker = ModelHealthTracker(max_entries=2)
    for model in ("a", "b", "c"):
        await tracker.record_outcome(model, True)
    assert set(tracker.snapshot()) == {"b", "c"}
    assert await tracker.get_score("a") == DEFAULT_SCORE


@pytest.mark.asyncio
async def test_concurrent_updates_for_one_model_are_not_lost() -> None:
    tracker = ModelHealthTracker(InMemoryHealthStore())
    await asyncio.gather(*(tracker.record_outcome("openai", i % 2 == 0) for i in range(40)))
    assert tracker.snapshot(["openai"])["openai"].samples == 40


@pytest.mark.asyncio
async def test_reset_clears_memory_and_store() -> None:
    store = InMemoryHealthStore()
    tracker = ModelHealthTracker(store)
    await tracker.record_outcome("openai", False)
    await tracker.reset()
    assert await tracker.get_score("openai") == DEFAULT_SCORE
    assert await store.list(["openai"]) == []


class LaggingStore(InMemoryHealthStore):
    async def list(self, model_ids: list[str]) -> list[HealthRow]:
        await asyncio.sleep(0.05)
        return await super().list(model_ids)


@pytest.mark.asyncio
async def test_outcome_recorded_during_hydration_builds_on_stored_score() -> None:
    store = LaggingStore()
    await store.upsert("deepseek", 0.9, 50)
    tracker = ModelHealthTracker(store)

    score, entry = await asyncio.gather(
        tracker.get_score("deepseek"),
        tracker.record_outcome("deepseek", False),
    )

    assert score == 0.9
    assert entry.samples == 51
    assert entry.score == pytest.approx(0.72)
    rows = await store.list(["deepseek"])
    assert rows[0].samples == 51
    assert rows[0].score == pytest.approx(0.72)
