"""Composition root: builds a ChatTurnOrchestrator from Settings."""

import logging
from functools import partial

import httpx

from sage.config import Settings, get_settings, validate_settings_for_env
from sage.context.limits import ModelLimits, parse_limits_json
from sage.db.migrations.runner import run_migrations
from sage.errors import ProviderValidationError
from sage.models.catalog import ModelCatalog, fetch_remote_catalog
from sage.models.health import ModelHealthTracker
from sage.models.health_store import SqliteHealthStore
from sage.models.resolver import ModelResolver
from sage.orchestrator.canary import CanaryConfig, CanaryGate, parse_route_allowlist
from sage.orchestrator.canary_store import SqliteCanaryStore
from sage.orchestrator.concurrency import KeyedLimiter
from sage.orchestrator.critic import CriticConfig, CriticEvaluator, JudgeSettings, client_invoker
from sage.orchestrator.profiles import loop_config_from_settings
from sage.orchestrator.trace import LoggingTraceSink, SqliteTraceSink, TraceSink
from sage.orchestrator.turn import AfterTurnHook, ChatTurnOrchestrator
from sage.providers.circuit_breaker import CircuitBreaker
from sage.providers.client import ProviderClient
from sage.tools.builtin.defaults import build_default_registry
from sage.tools.cache import ToolResultCache
from sage.tools.policy import (
    ToolPolicyConfig,
    merge_tool_policy_config,
    parse_tool_blocklist_csv,
    parse_tool_policy_json,
)

logger = logging.getLogger(__name__)


def _csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def tool_policy_from_settings(settings: Settings) -> ToolPolicyConfig:
    policy = parse_tool_policy_json(settings.agentic_tool_policy_json)
    blocked = parse_tool_blocklist_csv(settings.agentic_tool_blocklist_csv)
    if blocked:
        policy = merge_tool_policy_config(policy, {"blocked_tools": sorted(blocked)})
    return policy


def canary_config_from_settings(settings: Settings) -> CanaryConfig:
    return CanaryConfig(
        enabled=bool(settings.agentic_canary_enabled),
        rollout_percent=settings.agentic_canary_percent,
        route_allowlist=parse_route_allowlist(settings.agentic_canary_route_allowlist),
        max_failure_rate=settings.agentic_canary_max_failure_rate,
        min_samples=settings.agentic_canary_min_samples,
        cooldown_s=settings.agentic_canary_cooldown_seconds,
        window_size=settings.agentic_canary_window_size,
    )


def judge_settings_from_settings(settings: Settings) -> JudgeSettings:
    return JudgeSettings(
        primary_model=settings.judge_primary_model.strip() or settings.chat_model,
        candidates=_csv(settings.judge_model_candidates),
        dual_judge=bool(settings.judge_dual_enabled),
        timeout_s=settings.judge_timeout_seconds,
        max_tokens=settings.judge_max_tokens,
        pass_threshold=settings.judge_pass_threshold,
        hard_fail_threshold=settings.judge_hard_fail_threshold,
    )


def build_orchestrator(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    trace_sink: TraceSink | None = None,
    after_turn: AfterTurnHook | None = None,
) -> ChatTurnOrchestrator:
    settings = settings or get_settings()
    validate_settings_for_env(settings)
    persist = (
        bool(settings.model_health_persist)
        or bool(settings.trace_persist)
        or bool(settings.agentic_canary_persist_state)
    )
    if persist:
        applied = run_migrations(settings.app_db)
        if applied:
            logger.info("applied migrations: %s", ", ".join(applied))

    health = ModelHealthTracker(
        SqliteHealthStore(settings.app_db) if settings.model_health_persist else None,
        store_timeout_s=settings.model_health_store_timeout_seconds,
    )
    loader = None
    if settings.model_catalog_remote:
        loader = partial(
            fetch_remote_catalog,
            settings.llm_base_url,
            timeout_s=min(30.0, settings.llm_timeout_seconds),
            transport=transport,
        )
    catalog = ModelCatalog(loader=loader)
    limits = ModelLimits(
        parse_limits_json(settings.llm_model_limits_json),
        context_sizes=catalog.context_sizes(),
        user_max_tokens=settings.context_user_max_tokens,
        chars_per_token=settings.token_chars_per_token,
    )
    breaker = CircuitBreaker(
        "llm",
        failure_threshold=settings.llm_breaker_failure_threshold,
        reset_timeout_s=settings.llm_breaker_reset_timeout_seconds,
        excluded_exceptions=(ProviderValidationError,),
    )
    client = ProviderClient(
        settings.llm_base_url,
        api_key=settings.llm_api_key,
        model=settings.chat_model,
        timeout_s=settings.llm_timeout_seconds,
        max_retries=settings.llm_max_retries,
        retry_base_delay_s=settings.llm_retry_base_delay_seconds,
        breaker=breaker,
        health=health,
        limits=limits if settings.llm_budget_in_client else None,
        keep_last_user_turns=settings.context_keep_last_user_turns,
        transport=transport,
    )
    resolver = ModelResolver(
        catalog,
        health,
        default_model=settings.chat_model,
        strict_catalog=bool(settings.model_catalog_strict),
        refresh_on_miss=bool(settings.model_catalog_refresh_on_miss),
    )

    critic_config = CriticConfig(
        enabled=bool(settings.agentic_critic_enabled),
        max_loops=settings.agentic_critic_max_loops,
        min_score=settings.agentic_critic_min_score,
    )
    critic = None
    if critic_config.enabled:
        judges = judge_settings_from_settings(settings)
        critic = CriticEvaluator(client_invoker(client, judges), judges)

    if trace_sink is None:
        trace_sink = (
            SqliteTraceSink(settings.app_db) if settings.trace_persist else LoggingTraceSink()
        )

    loop_config = loop_config_from_settings(settings)
    return ChatTurnOrchestrator(
        client=client,
        resolver=resolver,
        registry=build_default_registry(),
        limits=limits,
        canary=CanaryGate(
            canary_config_from_settings(settings),
            store=(
                SqliteCanaryStore(settings.app_db)
                if settings.agentic_canary_persist_state
                else None
            ),
            store_timeout_s=settings.agentic_canary_store_timeout_seconds,
        ),
        critic=critic,
        critic_config=critic_config,
        loop_config=loop_config,
        tool_policy=tool_policy_from_settings(settings),
        tool_cache=(
            ToolResultCache(settings.agentic_tool_cache_max_entries)
            if loop_config.cache_enabled
            else None
        ),
        trace_sink=trace_sink,
        limiter=KeyedLimiter(
            idle_ttl_s=settings.user_turn_idle_ttl_seconds,
            sweep_interval_s=settings.user_turn_sweep_interval_seconds,
        ),
        agentic_enabled=bool(settings.agentic_tool_loop_enabled),
        keep_last_user_turns=settings.context_keep_last_user_turns,
        after_turn=after_turn,
    )
