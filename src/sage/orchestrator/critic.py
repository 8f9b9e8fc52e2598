"""Dual-judge critic with adjudication for draft replies."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from sage.orchestrator.scoring import (
    DEFAULT_HARD_FAIL_THRESHOLD,
    DEFAULT_PASS_THRESHOLD,
    DimensionScores,
    EvalDimension,
    Verdict,
    clamp01,
    evaluate_aggregate_score,
    normalize_dimension_scores,
)
from sage.providers.base import ChatRequest, LLMClient

logger = logging.getLogger(__name__)

JudgeRole = Literal["primary", "secondary", "adjudicator"]

CRITIC_ROUTES = frozenset({"chat", "coding", "search"})
SILENCE_MARKER = "[SILENCE]"
DISAGREEMENT_OVERALL_DELTA = 0.15
DISAGREEMENT_DIMENSION_DELTA = 0.25
MAX_ISSUES = 10

JUDGE_SYSTEM_PROMPT = "You are a deterministic evaluator. Output JSON only."

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class CriticConfig:
    enabled: bool = False
    max_loops: int = 1
    min_score: float = 0.72

    def __post_init__(self) -> None:
        object.__setattr__(self, "max_loops", min(2, max(0, int(self.max_loops))))
        object.__setattr__(self, "min_score", clamp01(self.min_score))


@dataclass(frozen=True, slots=True)
class JudgeSettings:
    primary_model: str
    candidates: tuple[str, ...] = ()
    dual_judge: bool = True
    timeout_s: float = 120.0
    max_tokens: int = 1200
    pass_threshold: float = DEFAULT_PASS_THRESHOLD
    hard_fail_threshold: float = DEFAULT_HARD_FAIL_THRESHOLD

    def __post_init__(self) -> None:
        object.__setattr__(self, "timeout_s", max(1.0, float(self.timeout_s)))
        object.__setattr__(self, "max_tokens", max(128, int(self.max_tokens)))


@dataclass(frozen=True, slots=True)
class JudgeAssessment:
    model: str
    role: JudgeRole
    scores: DimensionScores
    overall_score: float
    verdict: Verdict
    confidence: float
    hard_fail_dimensions: tuple[EvalDimension, ...]
    issues: tuple[str, ...] = ()
    summary: str = ""
    failed: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "role": self.role,
            "scores": {str(k): v for k, v in self.scores.items()},
            "overall_score": self.overall_score,
            "verdict": self.verdict,
            "confidence": self.confidence,
            "hard_fail_dimensions": [str(d) for d in self.hard_fail_dimensions],
            "issues": list(self.issues),
            "summary": self.summary,
        }


@dataclass(slots=True)
class CriticAssessment:
    final: JudgeAssessment
    judges: list[JudgeAssessment] = field(default_factory=list)
    disagreement: bool = False
    arbitration_used: bool = False

    @property
    def scores(self) -> DimensionScores:
        return self.final.scores

    @property
    def overall_score(self) -> float:
        return self.final.overall_score

    @property
    def verdict(self) -> Verdict:
        return self.final.verdict

    @property
    def confidence(self) -> float:
        return self.final.confidence

    @property
    def issues(self) -> tuple[str, ...]:
        return self.final.issues

    @property
    def available(self) -> bool:
        """False when no judge produced a real assessment (every call failed)."""
        return any(not judge.failed for judge in self.judges)

    def as_dict(self) -> dict[str, Any]:
        return {
            "final": self.final.as_dict(),
            "judges": [judge.as_dict() for judge in self.judges],
            "disagreement": self.disagreement,
            "arbitration_used": self.arbitration_used,
        }


JudgeInvoker = Callable[[JudgeRole, str, list[dict[str, Any]]], Awaitable[str]]


def should_run_critic(
    config: CriticConfig,
    route: str,
    draft: str,
    *,
    voice_active: bool = False,
    has_files: bool = False,
) -> bool:
    if not config.enabled or config.max_loops <= 0:
        return False
    if route not in CRITIC_ROUTES:
        return False
    if not draft.strip() or SILENCE_MARKER in draft:
        return False
    return not (voice_active or has_files)


def should_request_revision(assessment: CriticAssessment, min_score: float) -> bool:
    return assessment.verdict == "revise" or assessment.overall_score < min_score


def extract_first_json_object(content: str) -> str | None:
    start = content.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(content)):
        char = content[index]
        if escaped:
            escaped = False
            continue
        if char == "\\" and in_string:
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return content[start : index + 1]
    return None


def parse_judge_payload(raw: str) -> dict[str, Any] | None:
    match = _FENCE_RE.search(raw)
    body = (match.group(1) if match else raw).strip()
    candidate = extract_first_json_object(body) or body
    if not candidate:
        return None
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    issues_raw = parsed.get("issues")
    issues = (
        [str(item).strip() for item in issues_raw if str(item).strip()][:MAX_ISSUES]
        if isinstance(issues_raw, list)
        else []
    )
    summary = parsed.get("summary")
    return {
        "scores": normalize_dimension_scores(parsed.get("scores")),
        "confidence": clamp01(parsed.get("confidence")),
        "issues": issues,
        "summary": summary.strip() if isinstance(summary, str) else "",
    }


def build_judge_prompt(
    user_text: str,
    draft_text: str,
    route_kind: str,
    tool_summary: str | None = None,
    arbitration: Sequence[JudgeAssessment] = (),
) -> str:
    dimensions = ", ".join(d.value for d in EvalDimension)
    lines = [
        f"Evaluate the assistant reply for a '{route_kind}' request.",
        f"Score each dimension from 0 to 1: {dimensions}.",
        'Respond with JSON: {"scores": {...}, "confidence": 0-1, "issues": [..], "summary": ".."}',
        "",
        "User request:",
        user_text.strip() or "(empty)",
        "",
        "Assistant reply:",
        draft_text.strip(),
    ]
    if tool_summary:
        lines += ["", f"Tool telemetry: {tool_summary}"]
    if arbitration:
        lines += ["", "Two judges disagreed. Their assessments:"]
        lines += [json.dumps(judge.as_dict()) for judge in arbitration]
        lines.append("Decide independently and return the same JSON shape.")
    return "\n".join(lines)


def conservative_pick(a: JudgeAssessment, b: JudgeAssessment) -> JudgeAssessment:
    if a.verdict == "revise" and b.verdict == "pass":
        return a
    if b.verdict == "revise" and a.verdict == "pass":
        return b
    return a if a.overall_score <= b.overall_score else b


def has_disagreement(a: JudgeAssessment, b: JudgeAssessment) -> bool:
    if a.verdict != b.verdict:
        return True
    if abs(a.overall_score - b.overall_score) >= DISAGREEMENT_OVERALL_DELTA:
        return True
    return max(abs(a.scores[d] - b.scores[d]) for d in EvalDimension) >= DISAGREEMENT_DIMENSION_DELTA


def client_invoker(client: LLMClient, settings: JudgeSettings, api_key: str | None = None) -> JudgeInvoker:
    async def invoke(role: JudgeRole, model: str, messages: list[dict[str, Any]]) -> str:
        del role
        response = await client.chat(
            ChatRequest(
                messages=messages,
                model=model,
                temperature=0.1,
                max_tokens=settings.max_tokens,
                response_format={"type": "json_object"},
                timeout_s=settings.timeout_s,
                api_key=api_key,
            )
        )
        return response.content

    return invoke


class CriticEvaluator:
    def __init__(self, invoker: JudgeInvoker, settings: JudgeSettings) -> None:
        self._invoke = invoker
        self.settings = settings

    def _judge_models(self) -> tuple[str, str, str]:
        primary = self.settings.primary_model
        candidates = self.settings.candidates
        secondary = next((m for m in candidates if m != primary), primary)
        adjudicator = next((m for m in candidates if m not in {primary, secondary}), primary)
        return primary, secondary, adjudicator

    def _fallback(self, model: str, role: JudgeRole, issue: str, summary: str) -> JudgeAssessment:
        scores = normalize_dimension_scores({})
        aggregate = evaluate_aggregate_score(
            scores,
            0.0,
            pass_threshold=self.settings.pass_threshold,
            hard_fail_threshold=self.settings.hard_fail_threshold,
        )
        return JudgeAssessment(
            model=model,
            role=role,
            scores=scores,
            overall_score=aggregate.overall_score,
            verdict=aggregate.verdict,
            confidence=aggregate.confidence,
            hard_fail_dimensions=aggregate.hard_fail_dimensions,
            issues=(issue,),
            summary=summary,
            failed=issue == "judge_call_failed",
        )

    async def _judge(self, role: JudgeRole, model: str, prompt: str) -> JudgeAssessment:
        messages = [
            {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            raw = await self._invoke(role, model, messages)
        except Exception as exc:
            logger.warning("%s judge call failed for %s: %s", role, model, exc)
            return self._fallback(model, role, "judge_call_failed", "Judge model call failed.")
        parsed = parse_judge_payload(raw)
        if parsed is None:
            return self._fallback(
                model, role, "judge_parse_failed", "Judge output could not be parsed as valid JSON."
            )
        aggregate = evaluate_aggregate_score(
            parsed["scores"],
            parsed["confidence"],
            pass_threshold=self.settings.pass_threshold,
            hard_fail_threshold=self.settings.hard_fail_threshold,
        )
        return JudgeAssessment(
            model=model,
            role=role,
            scores=parsed["scores"],
            overall_score=aggregate.overall_score,
            verdict=aggregate.verdict,
            confidence=aggregate.confidence,
            hard_fail_dimensions=aggregate.hard_fail_dimensions,
            issues=tuple(parsed["issues"]),
            summary=parsed["summary"],
        )

    async def evaluate(
        self,
        user_text: str,
        draft_text: str,
        route_kind: str,
        tool_summary: str | None = None,
    ) -> CriticAssessment:
        primary_model, secondary_model, adjudicator_model = self._judge_models()
        prompt = build_judge_prompt(user_text, draft_text, route_kind, tool_summary)
        primary = await self._judge("primary", primary_model, prompt)
        if not self.settings.dual_judge:
            return CriticAssessment(final=primary, judges=[primary])

        secondary = await self._judge("secondary", secondary_model, prompt)
        judges = [primary, secondary]
        if not has_disagreement(primary, secondary):
            final = primary if primary.overall_score >= secondary.overall_score else secondary
            return CriticAssessment(final=final, judges=judges)

        arbitration_prompt = build_judge_prompt(
            user_text, draft_text, route_kind, tool_summary, arbitration=(primary, secondary)
        )
        adjudicator = await self._judge("adjudicator", adjudicator_model, arbitration_prompt)
        judges.append(adjudicator)
        if "judge_parse_failed" in adjudicator.issues or adjudicator.failed:
            final = conservative_pick(primary, secondary)
        else:
            final = adjudicator
        return CriticAssessment(final=final, judges=judges, disagreement=True, arbitration_used=True)


def revision_instruction(assessment: CriticAssessment) -> str:
    issues = list(assessment.issues) or list(str(d) for d in assessment.final.hard_fail_dimensions)
    lines = ["Revise your previous answer. Address these problems:"]
    lines += [f"- {issue}" for issue in issues] or ["- improve accuracy and completeness"]
    if assessment.final.summary:
        lines.append(f"Reviewer summary: {assessment.final.summary}")
    lines.append("Reply with the improved answer only.")
    return "\n".join(lines)
