"""Sage exception hierarchy.

All runtime exceptions inherit from SageError so callers can catch the
whole family while still branching on ``retryable``.
"""


class SageError(Exception):
    """Base exception for all Sage errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ProviderError(SageError):
    """Error communicating with an LLM provider."""

    def __init__(
        self,
        message: str = "",
        *,
        retryable: bool = True,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class ProviderValidationError(ProviderError):
    """Provider rejected the request itself (unknown model, schema violation)."""

    def __init__(self, message: str = "", *, status_code: int | None = 400) -> None:
        super().__init__(message, retryable=False, status_code=status_code)


class ProviderExhaustedError(ProviderError):
    """Every retry attempt inside one chat call failed."""

    def __init__(self, message: str = "", *, status_code: int | None = None) -> None:
        super().__init__(message, retryable=False, status_code=status_code)


class CircuitOpenError(ProviderError):
    """Circuit breaker is open; the call was rejected without a network attempt."""

    def __init__(self, name: str, retry_after_s: float) -> None:
        super().__init__(
            f"circuit '{name}' is open; retry in {retry_after_s:.1f}s", retryable=True
        )
        self.name = name
        self.retry_after_s = retry_after_s


class ToolError(SageError):
    """Error registering or executing a tool."""


class ToolValidationError(ToolError):
    """Tool call rejected before execution (unknown tool, bad arguments, policy)."""


class ToolExecutionError(ToolError):
    """Tool handler raised while executing."""


class ToolTimeoutError(ToolError):
    """Tool handler did not finish within its timeout."""

    def __init__(self, name: str, timeout_s: float) -> None:
        super().__init__(
            f'Tool "{name}" timed out after {int(timeout_s * 1000)}ms', retryable=True
        )
        self.name = name
        self.timeout_s = timeout_s


class ConfigError(SageError, ValueError):
    """Invalid or missing configuration."""


class PersistenceError(SageError):
    """Error reading or writing durable runtime state."""

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)
