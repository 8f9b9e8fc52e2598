import asyncio

import pytest

from sage.errors import CircuitOpenError, ProviderError, ProviderValidationError
from sage.providers.circuit_breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _fail() -> None:
    raise ProviderError("boom")


async def _ok() -> str:
    return "ok"


@pytest.mark.asyncio
async def test_breaker_opens_after_threshold_and_rejects_without_calling() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("llm", failure_threshold=3, reset_timeout_s=30, clock=clock)
    for _ in range(3):
        with pytest.raises(ProviderError):
            await breaker.call(_fail)
    assert breaker.state is CircuitState.OPEN

    calls = 0

    async def counted() -> str:
        nonlocal calls
        calls += 1
        return "ok"

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.call(counted)
    assert calls == 0
    assert exc_info.value.retry_after_s == pytest.approx(30)
    assert breaker.stats().rejected_calls == 1


@pytest.mark.asyncio
async def test_half_open_admits_single_trial_then_closes_on_success() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout_s=10, clock=clock)
    with pytest.raises(ProviderError):
        await breaker.call(_fail)
    assert breaker.state is CircuitState.OPEN

    clock.now += 10
    assert breaker.state is CircuitState.HALF_OPEN
    breaker.before_call()
    with pytest.raises(CircuitOpenError):
        breaker.before_call()
    breaker.record_success()
    assert breaker.state is CircuitState.CLOSED
    assert await breaker.call(_ok) == "ok"


@pytest.mark.asyncio
async def test_half_open_failure_reopens() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout_s=5, clock=clock)
    for _ in range(2):
        with pytest.raises(ProviderError):
            await breaker.call(_fail)
    clock.now += 5
    with pytest.raises(ProviderError):
        await breaker.call(_fail)
    assert breaker.state is CircuitState.OPEN
    clock.now += 4
    with pytest.raises(CircuitOpenError):
        await breaker.call(_ok)


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures() -> None:
    breaker = CircuitBreaker(failure_threshold=2)
    with pytest.raises(ProviderError):
        await breaker.call(_fail)
    await breaker.call(_ok)
    with pytest.raises(ProviderError):
        await breaker.call(_fail)
    stats = breaker.stats()
    assert stats.state is CircuitState.CLOSED
    assert stats.consecutive_failures == 1
    assert stats.total_failures == 2
    assert stats.total_successes == 1


@pytest.mark.asyncio
async def test_excluded_exceptions_do_not_count() -> None:
    breaker = CircuitBreaker(failure_threshold=1, excluded_exceptions=(ProviderValidationError,))

    async def invalid() -> None:
        raise ProviderValidationError("unknown model")

    for _ in range(3):
        with pytest.raises(ProviderValidationError):
            await breaker.call(invalid)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats().total_failures == 0


def test_reset_closes_breaker() -> None:
    breaker = CircuitBreaker(failure_threshold=1)
    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN
    breaker.reset()
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_late_success_from_before_trip_keeps_breaker_open() -> None:
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout_s=60, clock=FakeClock())
    release = asyncio.Event()

    async def slow_ok() -> str:
        await release.wait()
        return "late"

    slow = asyncio.create_task(breaker.call(slow_ok))
    await asyncio.sleep(0)
    for _ in range(2):
        with pytest.raises(ProviderError):
            await breaker.call(_fail)
    assert breaker.state is CircuitState.OPEN

    release.set()
    assert await slow == "late"
    assert breaker.state is CircuitState.OPEN
    assert breaker.stats().total_successes == 0


@pytest.mark.asyncio
async def test_late_failure_does_not_reopen_after_recovery() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout_s=10, clock=clock)
    stale = breaker.before_call()
    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN

    clock.now += 10
    assert await breaker.call(_ok) == "ok"
    assert breaker.state is CircuitState.CLOSED

    breaker.record_failure(stale)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats().consecutive_failures == 0
