"""Circuit breaker guarding a single provider client."""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

from sage.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class CircuitStats:
    state: CircuitState
    consecutive_failures: int
    total_failures: int
    total_successes: int
    rejected_calls: int
    opened_at: float | None


class CircuitBreaker:
    """closed -> open after ``failure_threshold`` consecutive failures,
    open -> half_open once ``reset_timeout_s`` has elapsed, half_open admits a
    single trial call and closes on its success or reopens on its failure.
    Every transition starts a new generation; a call that finishes after the
    state moved on cannot change it.

    State changes happen between awaits, so concurrent asyncio callers never
    observe a torn transition.
    """

    def __init__(
        self,
        name: str = "provider",
        *,
        failure_threshold: int = 5,
        reset_timeout_s: float = 60.0,
        excluded_exceptions: tuple[type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.reset_timeout_s = max(0.0, reset_timeout_s)
        self.excluded_exceptions = excluded_exceptions
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._total_failures = 0
        self._total_successes = 0
        self._rejected = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._generation = 0

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout_s
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def stats(self) -> CircuitStats:
        return CircuitStats(
            state=self.state,
            consecutive_failures=self._consecutive_failures,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            rejected_calls=self._rejected,
            opened_at=self._opened_at,
        )

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.info("circuit %s: %s -> %s", self.name, self._state, new_state)
        self._state = new_state
        self._generation += 1
        self._trial_in_flight = False
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state is CircuitState.CLOSED:
            self._opened_at = None
            self._consecutive_failures = 0

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.reset_timeout_s - (self._clock() - self._opened_at))

    def _is_stale(self, generation: int | None) -> bool:
        return generation is not None and generation != self._generation

    def before_call(self) -> int:
        """Admit or reject a call.

        Returns the generation the call was admitted under; outcomes reported
        with an older generation are ignored.
        """
        state = self.state
        if state is CircuitState.OPEN or (state is CircuitState.HALF_OPEN and self._trial_in_flight):
            self._rejected += 1
            raise CircuitOpenError(self.name, self._retry_after())
        if state is CircuitState.HALF_OPEN:
            self._trial_in_flight = True
        return self._generation

    def record_success(self, generation: int | None = None) -> None:
        if self._is_stale(generation):
            logger.debug("circuit %s: ignoring success from generation %s", self.name, generation)
            return
        self._total_successes += 1
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)
        elif self._state is CircuitState.CLOSED:
            self._consecutive_failures = 0

    def record_failure(self, generation: int | None = None) -> None:
        if self._is_stale(generation):
            logger.debug("circuit %s: ignoring failure from generation %s", self.name, generation)
            return
        self._total_failures += 1
        self._consecutive_failures += 1
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif (
            self._state is CircuitState.CLOSED
            and self._consecutive_failures >= self.failure_threshold
        ):
            logger.warning(
                "circuit %s tripped after %d consecutive failures",
                self.name,
                self._consecutive_failures,
            )
            self._transition(CircuitState.OPEN)

    def release(self, generation: int | None = None) -> None:
        """End a call that neither succeeded nor counted as a failure."""
        if not self._is_stale(generation):
            self._trial_in_flight = False

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        generation = self.before_call()
        try:
            result = await fn()
        except self.excluded_exceptions:
            self.release(generation)
            raise
        except Exception:
            self.record_failure(generation)
            raise
        except BaseException:
            self.release(generation)
            raise
        self.record_success(generation)
        return result

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._generation += 1
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False
