"""Circuit breaker guarding the remote vision endpoint.

States:
    - CLOSED: calls pass through, consecutive transient failures are counted
    - OPEN: calls rejected immediately until the recovery timeout elapses
    - HALF_OPEN: exactly one trial call; success closes, failure re-opens

One instance is shared by every request in the process. All state transitions
happen under a single lock which is never held while the guarded call runs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, TypeVar

from iris.exceptions import CircuitOpenError, Err, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._opened_at: float | None = None
        self._trial_in_flight = False
        # bumped on every state transition; outcomes from an older generation are stale
        self._generation = 0
        self._total_calls = 0
        self._rejected_calls = 0
        self._stale_outcomes = 0
        self._lock = asyncio.Lock()

        logger.info(
            "CircuitBreaker '%s' initialized: failure_threshold=%d, recovery_timeout=%.1fs",
            name,
            failure_threshold,
            recovery_timeout,
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    async def call(
        self,
        operation: Callable[..., Awaitable[Result[T]]],
        *args: Any,
        **kwargs: Any,
    ) -> Result[T]:
        """Run ``operation`` through the breaker.

        The operation returns a ``Result``; a transient ``Err`` counts as a
        failure, anything else (including non-transient errors, which prove
        the backend answered) counts as a success.
        """
        async with self._lock:
            self._total_calls += 1
            rejection = self._admit()
            if rejection is not None:
                self._rejected_calls += 1
                return Err(rejection)
            is_trial = self._state == CircuitState.HALF_OPEN
            generation = self._generation

        try:
            outcome = await operation(*args, **kwargs)
        except asyncio.CancelledError:
            if is_trial:
                async with self._lock:
                    if generation == self._generation:
                        self._trial_in_flight = False
                logger.info("CircuitBreaker '%s' trial call cancelled, slot released", self._name)
            raise
        except Exception:
            # unclassified errors are treated as transient by the service boundary
            async with self._lock:
                if self._is_current(generation):
                    self._record_failure()
            raise

        async with self._lock:
            if self._is_current(generation):
                if isinstance(outcome, Err) and outcome.error.is_transient:
                    self._record_failure()
                else:
                    self._record_success()
        return outcome

    def status(self) -> dict[str, Any]:
        return {
            "name": self._name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "total_calls": self._total_calls,
            "rejected_calls": self._rejected_calls,
            "stale_outcomes": self._stale_outcomes,
            "last_failure_time": self._last_failure_time,
            "opened_at": self._opened_at,
            "config": {
                "failure_threshold": self._failure_threshold,
                "recovery_timeout": self._recovery_timeout,
            },
        }

    def reset(self) -> None:
        """Manually reset circuit breaker to CLOSED state."""
        self._transition_to_closed()
        self._last_failure_time = None
        logger.info("CircuitBreaker '%s' manually reset to CLOSED", self._name)

    # ------------------------------------------------------------------ #
    #  State machine (callers hold the lock)
    # ------------------------------------------------------------------ #

    def _admit(self) -> CircuitOpenError | None:
        if self._state == CircuitState.OPEN:
            if not self._recovery_elapsed():
                return CircuitOpenError(self._name, self._state.value)
            self._transition_to_half_open()

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                return CircuitOpenError(self._name, self._state.value)
            self._trial_in_flight = True
        return None

    def _is_current(self, generation: int) -> bool:
        """Whether a call admitted under ``generation`` may still move the state machine.

        A call admitted before the breaker opened can finish while a half-open
        trial is running; its outcome is counted but must not decide the trial.
        """
        if generation == self._generation:
            return True
        self._stale_outcomes += 1
        logger.debug(
            "CircuitBreaker '%s' ignoring outcome from generation %d (now %d, %s)",
            self._name,
            generation,
            self._generation,
            self._state.value,
        )
        return False

    def _record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to_closed()
        elif self._failure_count > 0:
            logger.debug("CircuitBreaker '%s' resetting failure count on success", self._name)
            self._failure_count = 0

    def _record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()
        logger.warning(
            "CircuitBreaker '%s' failure recorded: %d/%d",
            self._name,
            self._failure_count,
            self._failure_threshold,
        )
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to_open()
        elif self._failure_count >= self._failure_threshold:
            self._transition_to_open()

    def _recovery_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return self._clock() - self._opened_at >= self._recovery_timeout

    def _transition_to_open(self) -> None:
        prev = self._state
        self._generation += 1
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            "CircuitBreaker '%s' transitioned %s -> OPEN (failures=%d, threshold=%d)",
            self._name,
            prev.value,
            self._failure_count,
            self._failure_threshold,
        )

    def _transition_to_half_open(self) -> None:
        self._generation += 1
        self._state = CircuitState.HALF_OPEN
        self._trial_in_flight = False
        logger.info(
            "CircuitBreaker '%s' transitioned OPEN -> HALF_OPEN (testing recovery after %.1fs)",
            self._name,
            self._recovery_timeout,
        )

    def _transition_to_closed(self) -> None:
        prev = self._state
        self._generation += 1
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False
        if prev != CircuitState.CLOSED:
            logger.info("CircuitBreaker '%s' transitioned %s -> CLOSED", self._name, prev.value)
