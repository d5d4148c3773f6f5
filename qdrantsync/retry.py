"""Retry policy shared by the embedding and vector-store adapters."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """All attempts failed with transient errors.  ``__cause__`` is the last one."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{description} failed after {attempts} attempt(s): {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error


def _never_transient(exc: BaseException) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff on top of tenacity.

    ``is_transient`` classifies an exception: transient errors are retried
    until ``max_attempts`` is reached, anything else is re-raised at once.
    The delay before attempt ``n + 1`` is
    ``min(base_delay * multiplier ** (n - 1), max_delay)``.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    is_transient: Callable[[BaseException], bool] = _never_transient

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def with_classifier(
        self, is_transient: Callable[[BaseException], bool]
    ) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            is_transient=is_transient,
        )

    def _retrying(self, description: str) -> AsyncRetrying:
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                retry_state.attempt_number,
                self.max_attempts,
                retry_state.outcome.exception(),
                retry_state.next_action.sleep,
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay
            ),
            retry=retry_if_exception(self.is_transient),
            before_sleep=log_retry,
            sleep=asyncio.sleep,
        )

    async def call(
        self, fn: Callable[[], Awaitable[T]], description: str = "operation"
    ) -> T:
        """Await ``fn()`` under this policy.

        Raises:
            RetryExhaustedError: If every attempt failed transiently.
            Exception: The first permanent error, unchanged.
        """
        try:
            return await self._retrying(description)(fn)
        except RetryError as e:
            last_attempt = e.last_attempt
            last_error = last_attempt.exception()
            raise RetryExhaustedError(
                description, last_attempt.attempt_number, last_error
            ) from last_error
