"""Iterative tool-calling protocol between the model and registered tools."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sage.errors import ToolError, ToolTimeoutError, ToolValidationError
from sage.providers.base import ChatRequest, LLMClient
from sage.tools.cache import ToolResultCache
from sage.tools.envelope import (
    RETRY_PROMPT,
    FinalText,
    ToolCall,
    ToolCallEnvelope,
    looks_like_json,
    parse_model_output,
)
from sage.tools.policy import (
    ToolPolicyConfig,
    ToolPolicyDecision,
    evaluate_tool_policy,
    is_read_only,
)
from sage.tools.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

TOOL_RESULTS_HEADER = "[Tool Results]"


@dataclass(frozen=True, slots=True)
class ToolLoopConfig:
    max_rounds: int = 2
    max_calls_per_round: int = 3
    tool_timeout_s: float = 45.0
    max_tool_result_chars: int = 4000
    parallel_read_only: bool = True
    max_parallel_read_only: int = 3
    cache_enabled: bool = True
    temperature: float = 0.7
    max_tokens: int | None = None
    native_tools: bool = False


@dataclass(frozen=True, slots=True)
class ToolResult:
    name: str
    success: bool
    result: Any = None
    error: str | None = None
    error_type: str | None = None
    latency_ms: int = 0
    cached: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "error": self.error,
            "error_type": self.error_type,
            "latency_ms": self.latency_ms,
            "cached": self.cached,
        }


@dataclass(slots=True)
class ToolLoopResult:
    reply_text: str
    tools_executed: bool
    rounds_completed: int
    tool_results: list[ToolResult] = field(default_factory=list)
    provider_calls: int = 0
    json_retry_used: bool = False
    exhausted: bool = False
    policy_decisions: list[ToolPolicyDecision] = field(default_factory=list)

    @property
    def successful_tool_calls(self) -> int:
        return sum(1 for result in self.tool_results if result.success)


def classify_error_type(error: str) -> str:
    text = (error or "").lower()
    if "timeout" in text or "timed out" in text:
        return "timeout"
    if "not found" in text or "404" in text:
        return "not_found"
    if "rate limit" in text or "429" in text or "too many" in text:
        return "rate_limited"
    if "validation" in text or "invalid" in text:
        return "validation"
    return "unknown"


def recovery_suggestion(tool: str, error_type: str) -> str:
    suggestions = {
        "timeout": (
            f"The {tool} tool timed out. You may try again with a simpler query, or explain "
            "to the user that this operation is taking longer than expected."
        ),
        "not_found": (
            f"The {tool} tool could not find the requested resource. Check the input for "
            "typos or try a different query."
        ),
        "rate_limited": (
            f"The {tool} tool is rate limited. Answer from what you already know and tell the "
            "user the data may be incomplete."
        ),
        "validation": (
            f"The arguments for {tool} were rejected. Fix the arguments to match the tool "
            "schema, or answer without this tool."
        ),
    }
    return suggestions.get(
        error_type,
        f"The {tool} tool failed unexpectedly. Try a different approach or answer without it.",
    )


def _serialize_result(result: Any, max_chars: int) -> str:
    try:
        text = json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = str(result)
    if max_chars > 0 and len(text) > max_chars:
        return text[:max_chars] + "...(truncated)"
    return text


def format_tool_results(results: list[ToolResult], max_chars: int = 4000) -> str:
    """One line per call, in call order; failures carry a type and a suggestion."""
    lines = [TOOL_RESULTS_HEADER]
    for result in results:
        if result.success:
            lines.append(
                f'Tool "{result.name}" succeeded: {_serialize_result(result.result, max_chars)}'
            )
        else:
            error_type = result.error_type or "unknown"
            lines.append(f'Tool "{result.name}" failed ({error_type}): {result.error}')
            lines.append(f"   Suggestion: {recovery_suggestion(result.name, error_type)}")
    return "\n".join(lines)


class ToolCallLoop:
    """Model -> envelope -> tools -> feedback, bounded by ``max_rounds``.

    The loop makes at most ``max_rounds + 2`` provider calls: the first
    request, one strict-JSON retry, one request per completed tool round, and
    a final call once the rounds are used up.
    """

    def __init__(
        self,
        client: LLMClient,
        registry: ToolRegistry,
        config: ToolLoopConfig | None = None,
        *,
        policy: ToolPolicyConfig | None = None,
        cache: ToolResultCache | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.registry = registry
        self.config = config or ToolLoopConfig()
        self.policy = policy
        self.cache = cache
        self._clock = clock

    async def _call(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None,
        api_key: str | None,
        temperature: float,
        with_tools: bool,
    ) -> str:
        request = ChatRequest(
            messages=list(messages),
            model=model,
            temperature=temperature,
            max_tokens=self.config.max_tokens,
            api_key=api_key,
        )
        if with_tools and self.config.native_tools and len(self.registry):
            request.tools = self.registry.openai_tool_specs()
        response = await self.client.chat(request)
        return response.content

    async def run(
        self,
        messages: list[dict[str, Any]],
        context: ToolContext,
        *,
        model: str | None = None,
        initial_response: str | None = None,
    ) -> ToolLoopResult:
        conversation = list(messages)
        pending = initial_response
        retry_available = True
        all_results: list[ToolResult] = []
        decisions: list[ToolPolicyDecision] = []
        calls = 0
        rounds = 0

        def finish(
            text: str, *, exhausted: bool = False, tools_executed: bool | None = None
        ) -> ToolLoopResult:
            return ToolLoopResult(
                reply_text=text,
                tools_executed=bool(all_results) if tools_executed is None else tools_executed,
                rounds_completed=rounds,
                tool_results=all_results,
                provider_calls=calls,
                json_retry_used=not retry_available,
                exhausted=exhausted,
                policy_decisions=decisions,
            )

        while rounds < self.config.max_rounds:
            if pending is None:
                text = await self._call(
                    conversation,
                    model=model,
                    api_key=context.api_key,
                    temperature=self.config.temperature,
                    with_tools=True,
                )
                calls += 1
            else:
                text, pending = pending, None

            parsed = parse_model_output(text)
            if isinstance(parsed, FinalText) and retry_available and looks_like_json(text):
                retry_available = False
                logger.info("model output looked like a malformed tool envelope; retrying once")
                conversation.append({"role": "assistant", "content": text})
                conversation.append({"role": "user", "content": RETRY_PROMPT})
                text = await self._call(
                    conversation,
                    model=model,
                    api_key=context.api_key,
                    temperature=0.0,
                    with_tools=True,
                )
                calls += 1
                parsed = parse_model_output(text)
                if isinstance(parsed, FinalText):
                    logger.warning("retried tool envelope still unparseable; returning it as-is")
                    # The reply is the raw retry text, not an answer grounded in earlier results.
                    return finish(text, tools_executed=False)
                # Drop the malformed attempt; the envelope is appended with the round feedback.
                conversation = conversation[:-2]

            if isinstance(parsed, FinalText):
                return finish(parsed.text)

            round_results = await self._dispatch(parsed, context, decisions)
            all_results.extend(round_results)
            rounds += 1
            conversation.append({"role": "assistant", "content": text})
            conversation.append(
                {
                    "role": "user",
                    "content": format_tool_results(
                        round_results, self.config.max_tool_result_chars
                    ),
                }
            )

        logger.info("tool loop reached %d rounds; requesting final answer", rounds)
        text = await self._call(
            conversation,
            model=model,
            api_key=context.api_key,
            temperature=self.config.temperature,
            with_tools=False,
        )
        calls += 1
        return finish(text, exhausted=True)

    async def _dispatch(
        self,
        envelope: ToolCallEnvelope,
        context: ToolContext,
        decisions: list[ToolPolicyDecision],
    ) -> list[ToolResult]:
        calls = list(envelope.calls)
        limit = max(0, self.config.max_calls_per_round)
        if len(calls) > limit:
            logger.warning(
                "model requested %d tool calls; executing only the first %d", len(calls), limit
            )
            calls = calls[:limit]

        slots: list[ToolResult | None] = [None] * len(calls)
        read_only: list[int] = []
        side_effecting: list[int] = []
        known = self.registry.names()

        for index, call in enumerate(calls):
            if self.config.cache_enabled and self.cache is not None:
                hit = self.cache.get(call.name, call.args)
                if hit is not None:
                    slots[index] = ToolResult(
                        name=call.name, success=True, result=hit.result, cached=True
                    )
                    continue
            tool = self.registry.get(call.name)
            decision = evaluate_tool_policy(
                call.name,
                self.policy,
                declared_risk=tool.risk if tool is not None else None,
                known_tools=known,
            )
            decisions.append(decision)
            if not decision.allow:
                logger.info("tool call denied: %s (%s)", call.name, decision.code)
                slots[index] = ToolResult(
                    name=call.name,
                    success=False,
                    error=decision.reason,
                    error_type="validation",
                )
                continue
            (read_only if is_read_only(decision.risk) else side_effecting).append(index)

        if read_only:
            if self.config.parallel_read_only and len(read_only) > 1:
                semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_read_only))

                async def bounded(i: int) -> ToolResult:
                    async with semaphore:
                        return await self._execute(calls[i], context)

                outcomes = await asyncio.gather(*(bounded(i) for i in read_only))
                for i, outcome in zip(read_only, outcomes, strict=True):
                    slots[i] = outcome
            else:
                for i in read_only:
                    slots[i] = await self._execute(calls[i], context)
            if self.config.cache_enabled and self.cache is not None:
                for i in read_only:
                    outcome = slots[i]
                    if outcome is not None and outcome.success:
                        self.cache.set(calls[i].name, calls[i].args, outcome.result)

        for i in side_effecting:
            slots[i] = await self._execute(calls[i], context)

        return [slot for slot in slots if slot is not None]

    async def _execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        started = self._clock()

        def elapsed() -> int:
            return int((self._clock() - started) * 1000)

        try:
            result = await asyncio.wait_for(
                self.registry.execute_validated(call.name, call.args, context),
                timeout=self.config.tool_timeout_s,
            )
        except TimeoutError:
            error = str(ToolTimeoutError(call.name, self.config.tool_timeout_s))
            logger.warning("tool %s timed out", call.name)
            return ToolResult(
                name=call.name, success=False, error=error, error_type="timeout", latency_ms=elapsed()
            )
        except ToolValidationError as exc:
            return ToolResult(
                name=call.name,
                success=False,
                error=str(exc),
                error_type="validation",
                latency_ms=elapsed(),
            )
        except ToolError as exc:
            logger.warning("tool %s failed: %s", call.name, exc)
            return ToolResult(
                name=call.name,
                success=False,
                error=str(exc),
                error_type=classify_error_type(str(exc)),
                latency_ms=elapsed(),
            )
        return ToolResult(name=call.name, success=True, result=result, latency_ms=elapsed())


def summarize_tool_results(results: list[ToolResult]) -> dict[str, Any]:
    outcomes: dict[str, int] = {}
    for result in results:
        key = "ok" if result.success else (result.error_type or "unknown")
        outcomes[key] = outcomes.get(key, 0) + 1
    return {
        "calls": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "cached": sum(1 for r in results if r.cached),
        "outcomes": outcomes,
        "results": [r.as_dict() for r in results],
    }
