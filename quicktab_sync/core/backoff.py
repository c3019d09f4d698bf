"""
Shared backoff policy.

One configurable policy object is used by every retrying component: the
write coordinator (transient backend errors), the revision ledger
(optimistic-concurrency conflicts) and the connection monitor (health
probes while the circuit is open).

Delay formula: min(max_delay, base_delay * multiplier ** attempt) +/- jitter
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Iterator, Optional, Tuple, TypeVar

from .config import BackoffConfig
from .errors import SyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """All attempts failed; ``last_error`` holds the final failure."""

    def __init__(self, operation_name: str, attempts: int, last_error: BaseException):
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation_name} failed after {attempts} attempts: {last_error}"
        )


def _default_retryable(error: BaseException) -> bool:
    if isinstance(error, SyncError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError))


class BackoffPolicy:
    """
    Exponential backoff with optional jitter.

    With the default config (base 0.1s, multiplier 2, cap 0.4s, 3 attempts)
    the delays between attempts are 100ms and 200ms, and a third retry, if
    allowed, would wait 400ms.
    """

    def __init__(
        self,
        config: Optional[BackoffConfig] = None,
        retryable: Optional[Callable[[BaseException], bool]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or BackoffConfig()
        self._retryable = retryable or _default_retryable
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given zero-based failed attempt."""
        delay = self.config.base_delay * (self.config.multiplier ** attempt)
        delay = min(delay, self.config.max_delay)
        if self.config.jitter:
            delay += self._rng.uniform(-self.config.jitter, self.config.jitter) * delay
        return max(0.0, delay)

    def delays(self) -> Iterator[float]:
        """Delays between consecutive attempts (``max_attempts - 1`` values)."""
        for attempt in range(self.config.max_attempts - 1):
            yield self.delay_for(attempt)

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Check whether a zero-based ``attempt`` that raised may be retried."""
        if attempt + 1 >= self.config.max_attempts:
            return False
        return self._retryable(error)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        retryable: Optional[Callable[[BaseException], bool]] = None,
    ) -> Tuple[T, int]:
        """Run ``operation`` until it succeeds or retries are exhausted.

        Returns the result and the number of attempts used. Non-retryable
        errors propagate immediately; exhausting the retries raises
        :class:`RetryExhaustedError`.
        """
        is_retryable = retryable or self._retryable
        attempt = 0
        while True:
            try:
                return await operation(), attempt + 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not is_retryable(e):
                    raise
                if attempt + 1 >= self.config.max_attempts:
                    logger.warning(
                        f"[Backoff] {operation_name} exhausted "
                        f"{self.config.max_attempts} attempts: {e}"
                    )
                    raise RetryExhaustedError(operation_name, attempt + 1, e) from e
                delay = self.delay_for(attempt)
                logger.debug(
                    f"[Backoff] {operation_name} attempt {attempt + 1} failed "
                    f"({type(e).__name__}), retrying in {delay:.3f}s"
                )
                await self._sleep(delay)
                attempt += 1


__all__ = ["BackoffPolicy", "RetryExhaustedError"]
