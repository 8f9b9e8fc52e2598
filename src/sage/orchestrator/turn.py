"""Chat turn orchestration: resolve, budget, draft, critique, trace."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sage.context.budget import TrimOptions, TrimStats, plan_budget, trim_messages_to_budget
from sage.context.limits import ModelBudgetConfig
from sage.errors import ProviderError
from sage.ids import new_trace_id
from sage.logging import bind_turn_fields, turn_context
from sage.models.resolver import FeatureFlags, ModelDecision, ModelResolver
from sage.orchestrator.canary import CanaryDecision, CanaryGate
from sage.orchestrator.concurrency import KeyedLimiter
from sage.orchestrator.critic import (
    CriticAssessment,
    CriticConfig,
    CriticEvaluator,
    revision_instruction,
    should_request_revision,
    should_run_critic,
)
from sage.orchestrator.profiles import (
    TOOL_EVIDENCE_INSTRUCTION,
    ToolLoopProfile,
    route_tools,
    select_profile,
)
from sage.orchestrator.tool_loop import (
    ToolCallLoop,
    ToolLoopConfig,
    ToolLoopResult,
    ToolResult,
    summarize_tool_results,
)
from sage.orchestrator.trace import (
    TraceEnd,
    TraceSink,
    TraceStart,
    safe_trace_end,
    safe_trace_start,
)
from sage.providers.base import ChatRequest, LLMClient
from sage.tools.cache import ToolResultCache
from sage.tools.envelope import ToolCallEnvelope, parse_model_output
from sage.tools.policy import ToolPolicyConfig
from sage.tools.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

FAILURE_REPLY = "Sorry, I couldn't finish that request right now. Please try again in a moment."
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Answer clearly and accurately."
DIRECT_ANSWER_INSTRUCTION = "Tools are unavailable for this request. Answer directly in plain text."


def build_tool_protocol_prompt(registry: ToolRegistry) -> str:
    lines = [
        "You can use tools. To call tools, reply with ONLY this JSON and nothing else:",
        '{"type": "tool_calls", "calls": [{"name": "<tool_name>", "args": {...}}]}',
        "If no tool is needed, answer in plain text.",
        "Available tools:",
    ]
    for schema in registry.schemas():
        parameters = json.dumps(schema["parameters"], separators=(",", ":"))
        lines.append(f"- {schema['name']}: {schema['description']} args schema: {parameters}")
    return "\n".join(lines)


@dataclass(slots=True)
class ChatTurnRequest:
    user_id: str
    channel_id: str
    user_text: str
    route: str = "chat"
    trace_id: str = field(default_factory=new_trace_id)
    guild_id: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)
    user_content: list[dict[str, Any]] | None = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    feature_flags: FeatureFlags = field(default_factory=FeatureFlags)
    allowed_models: list[str] | None = None
    search_mode: str | None = None
    api_key: str | None = None
    voice_active: bool = False
    has_files: bool = False

    def user_message(self) -> dict[str, Any]:
        if self.user_content:
            return {"role": "user", "content": list(self.user_content)}
        return {"role": "user", "content": self.user_text}


@dataclass(slots=True)
class ChatTurnResult:
    reply_text: str
    trace_id: str
    route: str
    model: str
    failed: bool = False
    tools_executed: bool = False
    rounds_completed: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)
    decisions: list[ModelDecision] = field(default_factory=list)
    canary: CanaryDecision | None = None
    profile: str | None = None
    critic: list[CriticAssessment] = field(default_factory=list)
    trim_stats: TrimStats | None = None
    hard_gate_satisfied: bool | None = None


@dataclass(slots=True)
class _Draft:
    text: str
    tool_results: list[ToolResult] = field(default_factory=list)
    rounds: int = 0
    tools_executed: bool = False

    def absorb(self, result: ToolLoopResult) -> None:
        self.text = result.reply_text
        self.tools_executed = self.tools_executed or result.tools_executed
        self.tool_results.extend(result.tool_results)
        self.rounds += result.rounds_completed

    @property
    def successful_tool_calls(self) -> int:
        return sum(1 for r in self.tool_results if r.success)


AfterTurnHook = Callable[[ChatTurnRequest, ChatTurnResult], Awaitable[None]]


class ChatTurnOrchestrator:
    def __init__(
        self,
        *,
        client: LLMClient,
        resolver: ModelResolver,
        registry: ToolRegistry,
        limits: Callable[[str], ModelBudgetConfig],
        canary: CanaryGate | None = None,
        critic: CriticEvaluator | None = None,
        critic_config: CriticConfig | None = None,
        loop_config: ToolLoopConfig | None = None,
        tool_policy: ToolPolicyConfig | None = None,
        tool_cache: ToolResultCache | None = None,
        trace_sink: TraceSink | None = None,
        limiter: KeyedLimiter | None = None,
        agentic_enabled: bool = True,
        keep_last_user_turns: int = 4,
        after_turn: AfterTurnHook | None = None,
    ) -> None:
        self.client = client
        self.resolver = resolver
        self.registry = registry
        self.limits = limits
        self.canary = canary
        self.critic = critic
        self.critic_config = critic_config or CriticConfig()
        self.loop_config = loop_config or ToolLoopConfig()
        self.tool_policy = tool_policy
        self.tool_cache = tool_cache
        self.trace_sink = trace_sink
        self.limiter = limiter or KeyedLimiter()
        self.agentic_enabled = agentic_enabled
        self.keep_last_user_turns = keep_last_user_turns
        self.after_turn = after_turn

    async def run_turn(self, request: ChatTurnRequest) -> ChatTurnResult:
        """Run one turn; turns for the same user id never overlap."""
        async with self.limiter.hold(request.user_id):
            result = await self._run_turn(request)
            if self.after_turn is not None:
                try:
                    await self.after_turn(request, result)
                except Exception:
                    logger.exception("post-turn hook failed for trace %s", request.trace_id)
            return result

    def _loop(self, tools: ToolRegistry, profile: ToolLoopProfile) -> ToolCallLoop:
        return ToolCallLoop(
            self.client, tools, profile.loop, policy=self.tool_policy, cache=self.tool_cache
        )

    async def _run_turn(self, request: ChatTurnRequest) -> ChatTurnResult:
        with turn_context(
            trace_id=request.trace_id,
            user_id=request.user_id,
            guild_id=request.guild_id,
            route=request.route,
        ):
            return await self._guarded_turn(request)

    async def _guarded_turn(self, request: ChatTurnRequest) -> ChatTurnResult:
        route = request.route
        profile = select_profile(route, request.search_mode, self.loop_config)
        result = ChatTurnResult(
            reply_text=FAILURE_REPLY,
            trace_id=request.trace_id,
            route=route,
            model=self.resolver.default_model,
        )
        draft = _Draft(text="")
        agentic = False
        trace_started = False
        error_text: str | None = None
        # Everything from model resolution on is guarded; a turn always ends with a reply.
        try:
            conversation = [*request.history, request.user_message()]
            resolution = await self.resolver.resolve(
                route, conversation, request.feature_flags, request.allowed_models
            )
            model = result.model = resolution.model
            result.decisions = resolution.decisions
            bind_turn_fields(model=model)

            canary_decision = (
                await self.canary.decide(route, request.trace_id, request.guild_id)
                if self.canary is not None
                else CanaryDecision(True, "allowed")
            )
            result.canary = canary_decision
            tools = self.registry.scoped(route_tools(route))
            agentic = self.agentic_enabled and canary_decision.allow_agentic and len(tools) > 0
            result.profile = profile.name if agentic else None

            system_prompt = request.system_prompt
            if agentic:
                system_prompt = f"{system_prompt}\n\n{build_tool_protocol_prompt(tools)}"
            messages = [{"role": "system", "content": system_prompt}, *conversation]
            limits = self.limits(model)
            plan = plan_budget(limits, profile.loop.max_tokens)
            trim = trim_messages_to_budget(
                messages,
                plan,
                TrimOptions.from_model(limits, keep_last_user_turns=self.keep_last_user_turns),
            )
            messages = trim.trimmed
            result.trim_stats = trim.stats

            await safe_trace_start(self.trace_sink, self._trace_start(request, result))
            trace_started = True

            context = ToolContext(
                trace_id=request.trace_id,
                user_id=request.user_id,
                channel_id=request.channel_id,
                guild_id=request.guild_id,
                route_kind=route,
                api_key=request.api_key,
            )
            first = await self.client.chat(
                ChatRequest(
                    messages=messages,
                    model=model,
                    temperature=profile.loop.temperature,
                    max_tokens=profile.loop.max_tokens,
                    api_key=request.api_key,
                )
            )
            if agentic:
                loop = self._loop(tools, profile)
                draft.absorb(
                    await loop.run(messages, context, model=model, initial_response=first.content)
                )
                if profile.require_tool_evidence:
                    result.hard_gate_satisfied = await self._enforce_tool_evidence(
                        loop, messages, context, model, profile, draft
                    )
            else:
                draft.text = await self._direct_answer(messages, first.content, model, request)

            result.critic = await self._critique(
                request, messages, context, model, draft, tools, profile, agentic
            )
        except ProviderError as exc:
            logger.warning("chat turn failed with provider error: %s", exc)
            error_text = f"{type(exc).__name__}: {exc}"
        except Exception as exc:
            logger.exception("chat turn failed")
            error_text = f"{type(exc).__name__}: {exc}"

        if error_text is None:
            result.reply_text = draft.text
        else:
            result.failed = True
        result.tools_executed = draft.tools_executed
        result.rounds_completed = draft.rounds
        result.tool_results = draft.tool_results

        if agentic and self.canary is not None:
            await self._record_canary(self.canary, route, result, error_text)

        if not trace_started:
            await safe_trace_start(self.trace_sink, self._trace_start(request, result))
        await safe_trace_end(
            self.trace_sink,
            TraceEnd(
                id=request.trace_id,
                reply_text=result.reply_text,
                tools={
                    **summarize_tool_results(draft.tool_results),
                    "hard_gate_required": profile.require_tool_evidence and agentic,
                    "hard_gate_satisfied": result.hard_gate_satisfied,
                    "tool_loop_failed": error_text is not None and agentic,
                },
                quality={"critic": [a.as_dict() for a in result.critic]} if result.critic else None,
                budget=result.trim_stats.as_dict() if result.trim_stats else None,
                error_text=error_text,
            ),
        )
        return result

    def _trace_start(self, request: ChatTurnRequest, result: ChatTurnResult) -> TraceStart:
        return TraceStart(
            id=request.trace_id,
            user_id=request.user_id,
            channel_id=request.channel_id,
            guild_id=request.guild_id,
            route_kind=result.route,
            router={
                "model": result.model,
                "decisions": [d.as_dict() for d in result.decisions],
                "canary": result.canary.as_dict() if result.canary else None,
                "profile": result.profile,
            },
            tokens=result.trim_stats.as_dict() if result.trim_stats else None,
        )

    async def _plain_call(
        self,
        messages: list[dict[str, Any]],
        model: str,
        request: ChatTurnRequest,
        max_tokens: int | None,
    ) -> str:
        response = await self.client.chat(
            ChatRequest(
                messages=messages, model=model, max_tokens=max_tokens, api_key=request.api_key
            )
        )
        return response.content

    async def _direct_answer(
        self,
        messages: list[dict[str, Any]],
        first_text: str,
        model: str,
        request: ChatTurnRequest,
    ) -> str:
        if not isinstance(parse_model_output(first_text), ToolCallEnvelope):
            return first_text
        logger.info("model requested tools on a non-agentic turn; asking for a direct answer")
        followup = [
            *messages,
            {"role": "assistant", "content": first_text},
            {"role": "user", "content": DIRECT_ANSWER_INSTRUCTION},
        ]
        return await self._plain_call(followup, model, request, None)

    async def _enforce_tool_evidence(
        self,
        loop: ToolCallLoop,
        messages: list[dict[str, Any]],
        context: ToolContext,
        model: str,
        profile: ToolLoopProfile,
        draft: _Draft,
    ) -> bool:
        if draft.successful_tool_calls >= profile.min_successful_tool_calls:
            return True
        logger.info(
            "tool evidence missing for profile %s (successful=%d); retrying once",
            profile.name,
            draft.successful_tool_calls,
        )
        retry_messages = [*messages, {"role": "system", "content": TOOL_EVIDENCE_INSTRUCTION}]
        draft.absorb(await loop.run(retry_messages, context, model=model))
        return draft.successful_tool_calls >= profile.min_successful_tool_calls

    async def _critique(
        self,
        request: ChatTurnRequest,
        messages: list[dict[str, Any]],
        context: ToolContext,
        model: str,
        draft: _Draft,
        tools: ToolRegistry,
        profile: ToolLoopProfile,
        agentic: bool,
    ) -> list[CriticAssessment]:
        assessments: list[CriticAssessment] = []
        if self.critic is None:
            return assessments
        for _ in range(self.critic_config.max_loops):
            if not should_run_critic(
                self.critic_config,
                request.route,
                draft.text,
                voice_active=request.voice_active,
                has_files=request.has_files,
            ):
                break
            tool_summary = None
            if draft.tool_results:
                tool_summary = json.dumps(summarize_tool_results(draft.tool_results), default=str)
            assessment = await self.critic.evaluate(
                request.user_text, draft.text, request.route, tool_summary
            )
            assessments.append(assessment)
            if not assessment.available:
                logger.warning("critic unavailable; keeping current draft")
                break
            if not should_request_revision(assessment, self.critic_config.min_score):
                break
            revision_messages = [
                *messages,
                {"role": "assistant", "content": draft.text},
                {"role": "user", "content": revision_instruction(assessment)},
            ]
            try:
                if agentic:
                    loop = self._loop(tools, profile)
                    draft.absorb(await loop.run(revision_messages, context, model=model))
                else:
                    draft.text = await self._plain_call(
                        revision_messages, model, request, profile.loop.max_tokens
                    )
            except ProviderError as exc:
                logger.warning("critic revision failed, keeping previous draft: %s", exc)
                break
        return assessments

    async def _record_canary(
        self, canary: CanaryGate, route: str, result: ChatTurnResult, error_text: str | None
    ) -> None:
        if error_text is not None:
            await canary.record_outcome(route, False, "tool_loop_failed")
        elif result.hard_gate_satisfied is False:
            await canary.record_outcome(route, False, "hard_gate_unmet")
        else:
            await canary.record_outcome(route, True)
