"""Circuit breaker that short-circuits calls to an unhealthy integration."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict

from ..errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Trip after ``failure_threshold`` consecutive failures.

    While open every call is refused with :class:`CircuitOpenError`. Once
    ``cooldown`` seconds have passed exactly one trial call is admitted: its
    success closes the circuit, its failure opens it again for a new cooldown.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown: float = 30.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.open_until = 0.0
        self._trial_in_flight = False
        self.last_state_change = clock()

    def _transition(self, state: CircuitState) -> None:
        if state != self.state:
            logger.info(f"Circuit for integration={self.name}: {self.state.value} -> {state.value}")
            self.state = state
            self.last_state_change = self._clock()

    def _retry_after(self) -> float:
        return max(0.0, self.open_until - self._clock())

    def check(self) -> None:
        """Fail fast without reserving the half-open trial.

        Raises:
            CircuitOpenError: while the cooldown is running or a trial is in flight.
        """
        if self.state == CircuitState.OPEN and self._clock() < self.open_until:
            raise CircuitOpenError(self.name, self._retry_after())
        if self.state == CircuitState.HALF_OPEN and self._trial_in_flight:
            raise CircuitOpenError(self.name, 0.0)

    def before_call(self) -> None:
        """Admit a call, reserving the half-open trial if the cooldown elapsed.

        Raises:
            CircuitOpenError: if the call must not reach the integration.
        """
        if self.state == CircuitState.OPEN:
            if self._clock() < self.open_until:
                raise CircuitOpenError(self.name, self._retry_after())
            self._transition(CircuitState.HALF_OPEN)
        if self.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

    def record_success(self) -> None:
        self.failure_count = 0
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._open()
            return
        self.failure_count += 1
        if self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            logger.warning(
                f"Circuit for integration={self.name} opening after {self.failure_count} consecutive failures"
            )
            self._open()

    def abandon_trial(self) -> None:
        """Give back the half-open trial when the call was cancelled, not failed."""
        self._trial_in_flight = False

    def _open(self) -> None:
        self.open_until = self._clock() + self.cooldown
        self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the breaker closed."""
        self.failure_count = 0
        self._trial_in_flight = False
        self.open_until = 0.0
        self._transition(CircuitState.CLOSED)

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "retry_after": round(self._retry_after(), 3) if self.state == CircuitState.OPEN else None,
            "time_in_current_state": round(self._clock() - self.last_state_change, 3),
        }

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    def is_half_open(self) -> bool:
        return self.state == CircuitState.HALF_OPEN
