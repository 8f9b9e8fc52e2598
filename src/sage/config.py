"""Runtime configuration contract."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sage.errors import ConfigError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    app_db: str = Field(alias="APP_DB", default="/tmp/sage.db")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")
    log_json: int | None = Field(alias="LOG_JSON", default=None)

    # Provider
    llm_base_url: str = Field(alias="LLM_BASE_URL", default="https://text.pollinations.ai/openai")
    llm_api_key: str = Field(alias="LLM_API_KEY", default="")
    chat_model: str = Field(alias="CHAT_MODEL", default="openai-fast")
    llm_timeout_seconds: float = Field(alias="LLM_TIMEOUT_SECONDS", default=180.0)
    llm_max_retries: int = Field(alias="LLM_MAX_RETRIES", default=2)
    llm_retry_base_delay_seconds: float = Field(
        alias="LLM_RETRY_BASE_DELAY_SECONDS", default=0.5
    )
    llm_breaker_failure_threshold: int = Field(alias="LLM_BREAKER_FAILURE_THRESHOLD", default=5)
    llm_breaker_reset_timeout_seconds: float = Field(
        alias="LLM_BREAKER_RESET_TIMEOUT_SECONDS", default=60.0
    )
    llm_model_limits_json: str = Field(alias="LLM_MODEL_LIMITS_JSON", default="")
    llm_budget_in_client: int = Field(alias="LLM_BUDGET_IN_CLIENT", default=1)

    # Context budgeting
    context_user_max_tokens: int = Field(alias="CONTEXT_USER_MAX_TOKENS", default=8000)
    context_keep_last_user_turns: int = Field(alias="CONTEXT_KEEP_LAST_USER_TURNS", default=4)
    token_chars_per_token: float = Field(alias="TOKEN_HEURISTIC_CHARS_PER_TOKEN", default=4.0)

    # Model catalog + health
    model_catalog_strict: int = Field(alias="MODEL_CATALOG_STRICT", default=0)
    model_catalog_refresh_on_miss: int = Field(alias="MODEL_CATALOG_REFRESH_ON_MISS", default=1)
    model_catalog_remote: int = Field(alias="MODEL_CATALOG_REMOTE", default=0)
    model_health_persist: int = Field(alias="MODEL_HEALTH_PERSIST", default=1)
    model_health_store_timeout_seconds: float = Field(
        alias="MODEL_HEALTH_STORE_TIMEOUT_SECONDS", default=2.0
    )

    # Tool loop
    agentic_tool_loop_enabled: int = Field(alias="AGENTIC_TOOL_LOOP_ENABLED", default=1)
    agentic_tool_max_rounds: int = Field(alias="AGENTIC_TOOL_MAX_ROUNDS", default=2)
    agentic_tool_max_calls_per_round: int = Field(
        alias="AGENTIC_TOOL_MAX_CALLS_PER_ROUND", default=3
    )
    agentic_tool_timeout_seconds: float = Field(alias="AGENTIC_TOOL_TIMEOUT_SECONDS", default=45.0)
    agentic_tool_result_max_chars: int = Field(alias="AGENTIC_TOOL_RESULT_MAX_CHARS", default=4000)
    agentic_tool_parallel_read_only: int = Field(
        alias="AGENTIC_TOOL_PARALLEL_READ_ONLY", default=1
    )
    agentic_tool_max_parallel_read_only: int = Field(
        alias="AGENTIC_TOOL_MAX_PARALLEL_READ_ONLY", default=3
    )
    agentic_tool_cache_enabled: int = Field(alias="AGENTIC_TOOL_CACHE_ENABLED", default=1)
    agentic_tool_cache_max_entries: int = Field(alias="AGENTIC_TOOL_CACHE_MAX_ENTRIES", default=50)
    agentic_tool_policy_json: str = Field(alias="AGENTIC_TOOL_POLICY_JSON", default="")
    agentic_tool_blocklist_csv: str = Field(alias="AGENTIC_TOOL_BLOCKLIST_CSV", default="")

    # Canary gate
    agentic_canary_enabled: int = Field(alias="AGENTIC_CANARY_ENABLED", default=1)
    agentic_canary_percent: float = Field(alias="AGENTIC_CANARY_PERCENT", default=100.0)
    agentic_canary_route_allowlist: str = Field(
        alias="AGENTIC_CANARY_ROUTE_ALLOWLIST", default="chat,coding,search"
    )
    agentic_canary_max_failure_rate: float = Field(
        alias="AGENTIC_CANARY_MAX_FAILURE_RATE", default=0.3
    )
    agentic_canary_min_samples: int = Field(alias="AGENTIC_CANARY_MIN_SAMPLES", default=20)
    agentic_canary_cooldown_seconds: float = Field(
        alias="AGENTIC_CANARY_COOLDOWN_SECONDS", default=300.0
    )
    agentic_canary_window_size: int = Field(alias="AGENTIC_CANARY_WINDOW_SIZE", default=100)
    agentic_canary_persist_state: int = Field(alias="AGENTIC_CANARY_PERSIST_STATE", default=0)
    agentic_canary_store_timeout_seconds: float = Field(
        alias="AGENTIC_CANARY_STORE_TIMEOUT_SECONDS", default=2.0
    )

    # Critic / judges
    agentic_critic_enabled: int = Field(alias="AGENTIC_CRITIC_ENABLED", default=0)
    agentic_critic_min_score: float = Field(alias="AGENTIC_CRITIC_MIN_SCORE", default=0.72)
    agentic_critic_max_loops: int = Field(alias="AGENTIC_CRITIC_MAX_LOOPS", default=1)
    judge_dual_enabled: int = Field(alias="JUDGE_DUAL_ENABLED", default=1)
    judge_primary_model: str = Field(alias="JUDGE_PRIMARY_MODEL", default="")
    judge_model_candidates: str = Field(
        alias="JUDGE_MODEL_CANDIDATES", default="openai-large,deepseek,gemini-fast,openai"
    )
    judge_timeout_seconds: float = Field(alias="JUDGE_TIMEOUT_SECONDS", default=120.0)
    judge_max_tokens: int = Field(alias="JUDGE_MAX_TOKENS", default=1200)
    judge_pass_threshold: float = Field(alias="JUDGE_PASS_THRESHOLD", default=0.75)
    judge_hard_fail_threshold: float = Field(alias="JUDGE_HARD_FAIL_THRESHOLD", default=0.45)

    # Builtin tools
    searxng_base_url: str = Field(alias="SEARXNG_BASE_URL", default="http://localhost:8080")
    searxng_api_key: str = Field(alias="SEARXNG_API_KEY", default="")
    searxng_api_key_header: str = Field(alias="SEARXNG_API_KEY_HEADER", default="X-API-Key")
    web_search_user_agent: str = Field(alias="WEB_SEARCH_USER_AGENT", default="Sage/1.0")
    web_search_timeout_seconds: float = Field(alias="WEB_SEARCH_TIMEOUT_SECONDS", default=10.0)

    # Per-user turn serialization
    user_turn_idle_ttl_seconds: float = Field(alias="USER_TURN_IDLE_TTL_SECONDS", default=900.0)
    user_turn_sweep_interval_seconds: float = Field(
        alias="USER_TURN_SWEEP_INTERVAL_SECONDS", default=300.0
    )

    # Traces
    trace_persist: int = Field(alias="TRACE_PERSIST", default=1)


def validate_settings_for_env(settings: Settings) -> None:
    if settings.app_env != "prod":
        return

    missing: list[str] = []
    if not settings.llm_base_url.startswith("https://"):
        missing.append("LLM_BASE_URL(https required)")
    if not settings.llm_api_key.strip():
        missing.append("LLM_API_KEY")
    if not settings.chat_model.strip():
        missing.append("CHAT_MODEL")
    if not settings.app_db.startswith("/"):
        missing.append("APP_DB(absolute path required)")
    if settings.llm_breaker_failure_threshold < 1:
        missing.append("LLM_BREAKER_FAILURE_THRESHOLD(>=1)")

    if missing:
        keys = ", ".join(sorted(set(missing)))
        raise ConfigError(f"invalid production configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
