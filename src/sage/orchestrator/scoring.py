"""Weighted aggregate scoring for judge dimension scores."""

import math
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Literal

Verdict = Literal["pass", "revise"]


class EvalDimension(StrEnum):
    FACTUAL_GROUNDING = "factual_grounding"
    INSTRUCTION_ADHERENCE = "instruction_adherence"
    SAFETY = "safety"
    COMPLETENESS = "completeness"
    TOOL_USE_CORRECTNESS = "tool_use_correctness"
    SOURCE_QUALITY = "source_quality"
    TEMPORAL_CORRECTNESS = "temporal_correctness"


DEFAULT_WEIGHTS: dict[EvalDimension, float] = {
    EvalDimension.FACTUAL_GROUNDING: 0.22,
    EvalDimension.INSTRUCTION_ADHERENCE: 0.16,
    EvalDimension.SAFETY: 0.20,
    EvalDimension.COMPLETENESS: 0.14,
    EvalDimension.TOOL_USE_CORRECTNESS: 0.10,
    EvalDimension.SOURCE_QUALITY: 0.10,
    EvalDimension.TEMPORAL_CORRECTNESS: 0.08,
}

DEFAULT_PASS_THRESHOLD = 0.75
DEFAULT_HARD_FAIL_THRESHOLD = 0.45

DimensionScores = dict[EvalDimension, float]


@dataclass(frozen=True, slots=True)
class AggregateScore:
    overall_score: float
    verdict: Verdict
    hard_fail_dimensions: tuple[EvalDimension, ...]
    confidence: float


def clamp01(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return min(1.0, max(0.0, number))


def normalize_dimension_scores(value: Any) -> DimensionScores:
    """Every dimension present, clamped to [0, 1]; missing or non-numeric becomes 0."""
    raw = value if isinstance(value, Mapping) else {}
    return {dimension: clamp01(raw.get(dimension.value)) for dimension in EvalDimension}


def compute_overall_score(
    scores: Mapping[EvalDimension, float],
    weights: Mapping[EvalDimension, float] = DEFAULT_WEIGHTS,
) -> float:
    total_weight = sum(max(0.0, weights.get(d, 0.0)) for d in EvalDimension)
    if total_weight <= 0:
        return 0.0
    weighted = sum(
        max(0.0, weights.get(d, 0.0)) * clamp01(scores.get(d, 0.0)) for d in EvalDimension
    )
    return clamp01(weighted / total_weight)


def evaluate_aggregate_score(
    scores: Mapping[EvalDimension, float] | Mapping[str, Any],
    confidence: Any = 1.0,
    *,
    pass_threshold: float = DEFAULT_PASS_THRESHOLD,
    hard_fail_threshold: float = DEFAULT_HARD_FAIL_THRESHOLD,
    weights: Mapping[EvalDimension, float] = DEFAULT_WEIGHTS,
) -> AggregateScore:
    normalized = normalize_dimension_scores({str(k): v for k, v in scores.items()})
    overall = compute_overall_score(normalized, weights)
    hard_fails = tuple(d for d in EvalDimension if normalized[d] < hard_fail_threshold)
    verdict: Verdict = "pass" if overall >= pass_threshold and not hard_fails else "revise"
    return AggregateScore(
        overall_score=round(overall, 4),
        verdict=verdict,
        hard_fail_dimensions=hard_fails,
        confidence=round(clamp01(confidence), 4),
    )
