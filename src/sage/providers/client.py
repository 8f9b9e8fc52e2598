"""Provider client for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import httpx

from sage.context.budget import TrimOptions, plan_budget, trim_messages_to_budget
from sage.context.limits import ModelBudgetConfig
from sage.errors import (
    CircuitOpenError,
    ProviderError,
    ProviderExhaustedError,
    ProviderValidationError,
)
from sage.providers.base import ChatRequest, ChatResponse, Usage
from sage.providers.circuit_breaker import CircuitBreaker
from sage.providers.normalize import normalize_messages, with_json_only_instruction
from sage.tools.envelope import ToolCall, serialize_tool_calls

if TYPE_CHECKING:
    from sage.models.health import ModelHealthTracker

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4000
AUDIO_OUTPUT_MODELS = {"openai-audio"}
JSON_MODE_UNSUPPORTED_MODELS = {"gemini-search"}

_MODEL_VALIDATION_RE = re.compile(r"model|validation", re.IGNORECASE)
_JSON_MODE_REJECTION_RE = re.compile(
    r"response_format|json_object|unknown field|unsupported", re.IGNORECASE
)

SleepFn = Callable[[float], Awaitable[None]]


def _coerce_text(value: object) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        chunks: list[str] = []
        for item in value:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    chunks.append(text)
        return "".join(chunks)
    return ""


def _parse_native_tool_calls(raw: object) -> list[ToolCall]:
    calls: list[ToolCall] = []
    if not isinstance(raw, list):
        return calls
    for call in raw:
        if not isinstance(call, dict):
            continue
        fn = call.get("function")
        if not isinstance(fn, dict):
            continue
        name = fn.get("name")
        arguments = fn.get("arguments", {})
        parsed_arguments: dict[str, Any] = {}
        if isinstance(arguments, str):
            try:
                decoded = json.loads(arguments) if arguments.strip() else {}
                if isinstance(decoded, dict):
                    parsed_arguments = decoded
            except json.JSONDecodeError:
                parsed_arguments = {}
        elif isinstance(arguments, dict):
            parsed_arguments = arguments
        if isinstance(name, str) and name:
            calls.append(ToolCall(name=name, args=parsed_arguments))
    return calls


def parse_chat_payload(payload: dict[str, Any], model: str) -> ChatResponse:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ProviderError("provider response missing choices")
    first = choices[0]
    if not isinstance(first, dict):
        raise ProviderError("provider response choice malformed")
    message = first.get("message")
    if not isinstance(message, dict):
        raise ProviderError("provider response message missing")

    content = _coerce_text(message.get("content"))
    native_calls = _parse_native_tool_calls(message.get("tool_calls"))
    if native_calls:
        # One downstream code path: native calls become the text envelope.
        content = serialize_tool_calls(native_calls, indent=2)

    usage: Usage | None = None
    raw_usage = payload.get("usage")
    if isinstance(raw_usage, dict):
        usage = Usage(
            prompt_tokens=int(raw_usage.get("prompt_tokens") or 0),
            completion_tokens=int(raw_usage.get("completion_tokens") or 0),
            total_tokens=int(raw_usage.get("total_tokens") or 0),
        )
    audio = message.get("audio")
    return ChatResponse(
        content=content,
        model=str(payload.get("model") or model),
        usage=usage,
        native_tool_calls=bool(native_calls),
        reasoning_text=_coerce_text(message.get("reasoning_content")),
        audio=audio if isinstance(audio, dict) else None,
        raw=payload,
    )


class ProviderClient:
    """Breaker-guarded chat client with retry, backoff and payload normalization."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        model: str = "openai-fast",
        timeout_s: float = 180.0,
        max_retries: int = 2,
        retry_base_delay_s: float = 0.5,
        breaker: CircuitBreaker | None = None,
        health: ModelHealthTracker | None = None,
        limits: Callable[[str], ModelBudgetConfig] | None = None,
        keep_last_user_turns: int = 4,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.retry_base_delay_s = max(0.0, retry_base_delay_s)
        self.breaker = breaker or CircuitBreaker(
            "llm", excluded_exceptions=(ProviderValidationError,), clock=clock
        )
        self.health = health
        self._limits = limits
        self._keep_last_user_turns = keep_last_user_turns
        self._transport = transport
        self._clock = clock
        self._sleep = sleep

    def _resolve_model(self, request: ChatRequest) -> str:
        return (request.model or self.model).strip().lower()

    async def chat(self, request: ChatRequest) -> ChatResponse:
        model = self._resolve_model(request)
        started = self._clock()
        try:
            response = await self.breaker.call(lambda: self._chat(request, model))
        except CircuitOpenError:
            raise
        except Exception:
            await self._record_health(model, False, started)
            raise
        await self._record_health(model, True, started)
        return response

    async def _record_health(self, model: str, success: bool, started: float) -> None:
        if self.health is None:
            return
        latency_ms = (self._clock() - started) * 1000
        await self.health.record_outcome(model, success, latency_ms=latency_ms)

    def _prepare_messages(self, request: ChatRequest, model: str) -> tuple[list[dict[str, Any]], int]:
        messages = list(request.messages)
        max_tokens = request.max_tokens
        if self._limits is not None:
            config = self._limits(model)
            if max_tokens is None:
                max_tokens = config.max_output_tokens
            plan = plan_budget(config, max_tokens)
            result = trim_messages_to_budget(
                messages,
                plan,
                TrimOptions.from_model(config, keep_last_user_turns=self._keep_last_user_turns),
            )
            if result.stats.dropped_count or result.stats.notes:
                logger.debug("provider budget trim for %s: %s", model, result.stats.as_dict())
            messages = result.trimmed
        return normalize_messages(messages), max_tokens or DEFAULT_MAX_TOKENS

    def _build_payload(
        self, request: ChatRequest, model: str, messages: list[dict[str, Any]], max_tokens: int
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": max_tokens,
        }
        if request.response_format is not None:
            payload["response_format"] = request.response_format
        if request.tools:
            payload["tools"] = request.tools
            payload["tool_choice"] = request.tool_choice or "auto"
        if model in AUDIO_OUTPUT_MODELS:
            payload["modalities"] = ["text", "audio"]
            payload["audio"] = {"voice": "alloy", "format": "mp3"}
        if model in JSON_MODE_UNSUPPORTED_MODELS and "response_format" in payload:
            payload.pop("response_format")
            payload["messages"] = with_json_only_instruction(messages)
        return payload

    def _headers(self, request: ChatRequest) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = request.api_key or self.api_key
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _chat(self, request: ChatRequest, model: str) -> ChatResponse:
        messages, max_tokens = self._prepare_messages(request, model)
        payload = self._build_payload(request, model, messages, max_tokens)
        endpoint = f"{self.base_url}/chat/completions"
        timeout = request.timeout_s or self.timeout_s
        max_attempts = self.max_retries + 1
        json_retry_used = False
        failures = 0
        attempts = 0
        last_error: ProviderError | None = None

        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            while failures < max_attempts:
                attempts += 1
                try:
                    response = await client.post(
                        endpoint, json=payload, headers=self._headers(request)
                    )
                except httpx.TimeoutException as exc:
                    last_error = ProviderError(f"provider request timed out after {timeout}s: {exc}")
                except httpx.HTTPError as exc:
                    last_error = ProviderError(f"provider transport error: {exc}")
                else:
                    status = response.status_code
                    if status < 400:
                        try:
                            body = response.json()
                        except ValueError as exc:
                            last_error = ProviderError(f"provider returned invalid JSON: {exc}")
                        else:
                            if not isinstance(body, dict):
                                last_error = ProviderError("provider response is not an object")
                            else:
                                try:
                                    parsed = parse_chat_payload(body, model)
                                except ProviderError as exc:
                                    last_error = exc
                                else:
                                    parsed.attempts = attempts
                                    return parsed
                    else:
                        error_text = response.text[:500]
                        if (
                            not json_retry_used
                            and status in (400, 422)
                            and "response_format" in payload
                            and _JSON_MODE_REJECTION_RE.search(error_text)
                        ):
                            json_retry_used = True
                            payload.pop("response_format")
                            payload["messages"] = with_json_only_instruction(payload["messages"])
                            logger.warning(
                                "provider rejected JSON response mode for %s; retrying without it",
                                model,
                            )
                            continue
                        if status == 400 and _MODEL_VALIDATION_RE.search(error_text):
                            raise ProviderValidationError(
                                f"provider rejected request for model {model}: {error_text[:200]}",
                                status_code=status,
                            )
                        last_error = ProviderError(
                            f"provider API error: {status} - {error_text[:200]}", status_code=status
                        )

                failures += 1
                if failures < max_attempts:
                    delay = self.retry_base_delay_s * (2 ** (failures - 1))
                    logger.warning(
                        "provider call failed for %s (attempt %d/%d): %s; retrying in %.2fs",
                        model,
                        failures,
                        max_attempts,
                        last_error,
                        delay,
                    )
                    await self._sleep(delay)

        status_code = last_error.status_code if last_error is not None else None
        raise ProviderExhaustedError(
            f"provider call failed after {max_attempts} attempts: {last_error}",
            status_code=status_code,
        ) from last_error
