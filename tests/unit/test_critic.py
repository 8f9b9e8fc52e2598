import json
from typing import Any

import pytest

from sage.orchestrator.critic import (
    CriticConfig,
    CriticEvaluator,
    JudgeSettings,
    client_invoker,
    extract_first_json_object,
    parse_judge_payload,
    revision_instruction,
    should_request_revision,
    should_run_critic,
)
from sage.orchestrator.scoring import EvalDimension
from sage.providers.base import ChatRequest, ChatResponse


def _payload(value: float, issues: list[str] | None = None, summary: str = "") -> str:
    return json.dumps(
        {
            "scores": {d.value: value for d in EvalDimension},
            "confidence": 0.8,
            "issues": issues or [],
            "summary": summary,
        }
    )


class FakeInvoker:
    def __init__(self, replies: dict[str, Any]) -> None:
        self.replies = replies
        self.calls: list[tuple[str, str, list[dict[str, Any]]]] = []

    async def __call__(self, role: str, model: str, messages: list[dict[str, Any]]) -> str:
        self.calls.append((role, model, messages))
        reply = self.replies[role]
        if isinstance(reply, Exception):
            raise reply
        return reply


SETTINGS = JudgeSettings(primary_model="judge-a", candidates=("judge-a", "judge-b", "judge-c"))


def test_config_clamps_loops_and_score() -> None:
    config = CriticConfig(enabled=True, max_loops=7, min_score=3)
    assert config.max_loops == 2
    assert config.min_score == 1.0


def test_should_run_critic_gates() -> None:
    config = CriticConfig(enabled=True)
    assert should_run_critic(config, "chat", "a draft")
    assert not should_run_critic(CriticConfig(), "chat", "a draft")
    assert not should_run_critic(CriticConfig(enabled=True, max_loops=0), "chat", "a draft")
    assert not should_run_critic(config, "creative", "a draft")
    assert not should_run_critic(config, "chat", "   ")
    assert not should_run_critic(config, "chat", "[SILENCE]")
    assert not should_run_critic(config, "chat", "a draft", voice_active=True)
    assert not should_run_critic(config, "search", "a draft", has_files=True)


def test_extract_first_json_object_respects_strings() -> None:
    assert extract_first_json_object('noise {"a": "}{", "b": {"c": 1}} tail') == (
        '{"a": "}{", "b": {"c": 1}}'
    )
    assert extract_first_json_object("no json here") is None
    assert extract_first_json_object('{"open": ') is None


def test_parse_judge_payload_handles_fences_and_caps_issues() -> None:
    body = json.dumps(
        {"scores": {"safety": 2}, "confidence": 0.5, "issues": [f"i{n}" for n in range(15)]}
    )
    parsed = parse_judge_payload(f"```json\n{body}\n```")
    assert parsed is not None
    assert parsed["scores"][EvalDimension.SAFETY] == 1.0
    assert parsed["scores"][EvalDimension.COMPLETENESS] == 0.0
    assert len(parsed["issues"]) == 10
    assert parsed["summary"] == ""


def test_parse_judge_payload_rejects_non_objects() -> None:
    assert parse_judge_payload("[1, 2]") is None
    assert parse_judge_payload("not json") is None
    assert parse_judge_payload("") is None


def test_judge_models_fall_back_to_primary() -> None:
    evaluator = CriticEvaluator(FakeInvoker({}), JudgeSettings(primary_model="solo"))
    assert evaluator._judge_models() == ("solo", "solo", "solo")
    assert CriticEvaluator(FakeInvoker({}), SETTINGS)._judge_models() == (
        "judge-a",
        "judge-b",
        "judge-c",
    )


@pytest.mark.asyncio
async def test_single_judge_mode_calls_primary_only() -> None:
    invoker = FakeInvoker({"primary": _payload(0.9)})
    settings = JudgeSettings(primary_model="judge-a", dual_judge=False)
    assessment = await CriticEvaluator(invoker, settings).evaluate("q", "draft", "chat")
    assert [call[0] for call in invoker.calls] == ["primary"]
    assert assessment.verdict == "pass"
    assert assessment.available


@pytest.mark.asyncio
async def test_agreeing_judges_take_higher_score() -> None:
    invoker = FakeInvoker({"primary": _payload(0.85), "secondary": _payload(0.9)})
    assessment = await CriticEvaluator(invoker, SETTINGS).evaluate("q", "draft", "chat")
    assert [call[0] for call in invoker.calls] == ["primary", "secondary"]
    assert not assessment.disagreement
    assert assessment.final.role == "secondary"
    assert assessment.overall_score == 0.9


@pytest.mark.asyncio
async def test_disagreement_uses_adjudicator() -> None:
    invoker = FakeInvoker(
        {
            "primary": _payload(0.9),
            "secondary": _payload(0.5),
            "adjudicator": _payload(0.8, summary="fine"),
        }
    )
    assessment = await CriticEvaluator(invoker, SETTINGS).evaluate("q", "draft", "search", "{}")
    assert assessment.disagreement and assessment.arbitration_used
    assert assessment.final.model == "judge-c"
    assert assessment.overall_score == 0.8
    arbitration_prompt = invoker.calls[-1][2][1]["content"]
    assert "Two judges disagreed" in arbitration_prompt
    assert "Tool telemetry: {}" in arbitration_prompt


@pytest.mark.asyncio
async def test_unparseable_adjudicator_picks_conservatively() -> None:
    invoker = FakeInvoker(
        {"primary": _payload(0.9), "secondary": _payload(0.5), "adjudicator": "nonsense"}
    )
    assessment = await CriticEvaluator(invoker, SETTINGS).evaluate("q", "draft", "chat")
    assert assessment.arbitration_used
    assert assessment.final.role == "secondary"
    assert assessment.verdict == "revise"


@pytest.mark.asyncio
async def test_parse_failure_is_a_revise_but_still_available() -> None:
    invoker = FakeInvoker({"primary": "garbage"})
    settings = JudgeSettings(primary_model="judge-a", dual_judge=False)
    assessment = await CriticEvaluator(invoker, settings).evaluate("q", "draft", "chat")
    assert assessment.issues == ("judge_parse_failed",)
    assert assessment.verdict == "revise"
    assert assessment.available


@pytest.mark.asyncio
async def test_all_judges_failing_is_unavailable() -> None:
    boom = RuntimeError("down")
    invoker = FakeInvoker({"primary": boom, "secondary": boom, "adjudicator": boom})
    assessment = await CriticEvaluator(invoker, SETTINGS).evaluate("q", "draft", "chat")
    assert not assessment.available
    assert assessment.issues == ("judge_call_failed",)


@pytest.mark.asyncio
async def test_revision_instruction_lists_issues() -> None:
    invoker = FakeInvoker(
        {"primary": _payload(0.5, issues=["missing source"], summary="too vague")}
    )
    settings = JudgeSettings(primary_model="judge-a", dual_judge=False)
    assessment = await CriticEvaluator(invoker, settings).evaluate("q", "draft", "chat")
    assert should_request_revision(assessment, 0.72)
    text = revision_instruction(assessment)
    assert text.startswith("Revise your previous answer. Address these problems:")
    assert "- missing source" in text
    assert "Reviewer summary: too vague" in text


@pytest.mark.asyncio
async def test_client_invoker_requests_json_mode() -> None:
    seen: list[ChatRequest] = []

    class Client:
        async def chat(self, request: ChatRequest) -> ChatResponse:
            seen.append(request)
            return ChatResponse(content="{}", model=request.model or "")

    invoke = client_invoker(Client(), SETTINGS, api_key="k")
    assert await invoke("primary", "judge-a", [{"role": "user", "content": "x"}]) == "{}"
    request = seen[0]
    assert request.response_format == {"type": "json_object"}
    assert request.temperature == 0.1
    assert request.max_tokens == SETTINGS.max_tokens
    assert request.api_key == "k"
