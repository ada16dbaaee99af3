"""Bounded exponential-backoff retry around one logical remote operation.

The policy knows nothing about the circuit breaker; the service composes them
as ``breaker.call(retry.run, ...)`` so an open breaker rejects before any
attempt is spent.
"""

import asyncio
import dataclasses
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from iris.exceptions import Err, ErrorKind, IrisError, Ok, Result
from iris.services.vision_client import CallParameters

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 低于此值不再继续压缩输出 token
_MIN_DEGRADED_TOKENS = 200


class RetryPolicy:
    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.1,
        allow_degradation: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        context: str = "Vision API",
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        # jitter <= 1 keeps delays non-decreasing (each step at least doubles)
        self._jitter = min(max(jitter, 0.0), 1.0)
        self._allow_degradation = allow_degradation
        self._sleep = sleep
        self._context = context

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def backoff(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        factor = 1.0 + self._jitter * random.random()
        return min(self._max_delay, self._base_delay * (2**attempt) * factor)

    async def run(
        self,
        operation: Callable[[CallParameters], Awaitable[T]],
        params: CallParameters,
    ) -> Result[T]:
        previous_delay = 0.0
        attempt = 0

        while True:
            outcome = await _capture(operation, params)
            if isinstance(outcome, Ok):
                if attempt > 0:
                    logger.info(
                        "%s succeeded on attempt %d/%d",
                        self._context,
                        attempt + 1,
                        self._max_attempts,
                    )
                return outcome

            attempt += 1
            is_final = attempt >= self._max_attempts
            logger.warning(
                "%s attempt %d/%d failed (%s, retryable=%s): %s",
                self._context,
                attempt,
                self._max_attempts,
                outcome.kind.value,
                outcome.retryable,
                outcome.error.message,
            )

            if outcome.kind == ErrorKind.TOKEN_LIMIT:
                degraded = self._degrade_tokens(params)
                if degraded is None or is_final:
                    return outcome
                params = degraded
                continue

            if not outcome.retryable:
                return outcome
            if is_final:
                return self._exhausted(outcome)

            delay = self.backoff(attempt - 1)
            retry_after = getattr(outcome.error, "retry_after", None)
            if retry_after:
                # the server's Retry-After wins over max_delay
                delay = max(delay, retry_after)
            delay = max(delay, previous_delay)
            previous_delay = delay
            logger.info("%s retry in %.2fs", self._context, delay)
            await self._sleep(delay)

    def _exhausted(self, last: Err) -> Err:
        logger.error("All %d %s attempts failed", self._max_attempts, self._context)
        if self._allow_degradation:
            return last
        return last.without_fallback()

    def _degrade_tokens(self, params: CallParameters) -> CallParameters | None:
        if not self._allow_degradation or params.max_tokens <= _MIN_DEGRADED_TOKENS:
            return None
        reduced = int(params.max_tokens * 0.75)
        logger.warning("Reducing max tokens to %d and retrying", reduced)
        return dataclasses.replace(params, max_tokens=reduced)


async def _capture(
    operation: Callable[[CallParameters], Awaitable[T]],
    params: CallParameters,
) -> Result[T]:
    try:
        return Ok(await operation(params))
    except IrisError as e:
        return Err(e)
