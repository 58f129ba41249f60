"""Retry with capped exponential backoff for external calls.

`retry_async` is a plain higher-order function: it takes the operation and a
RetryPolicy and either returns the operation's result or raises once the
policy gives up. The sleep function is injectable so tests never wait on
real timers.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from vesting_ledger.errors import ExternalServiceError, RetryExhaustedError

if TYPE_CHECKING:
    from vesting_ledger.config import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_WARN_AFTER = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 60.0
DEFAULT_BACKOFF_FACTOR = 2.0

SleepFn = Callable[[float], Awaitable[None]]


def is_retryable_error(error: BaseException) -> bool:
    """Default classification: everything is transient except 4xx client errors."""
    if isinstance(error, ExternalServiceError):
        return error.retryable
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int) and 400 <= status_code < 500:
        return status_code == 429
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, how long to wait, and what is worth retrying.

    Attributes:
        max_attempts: Total attempts (the first call included).
        base_delay: Delay before the first retry, in seconds.
        factor: Multiplier applied to the delay after each failure.
        max_delay: Cap on any single delay.
        warn_after: Consecutive failures after which a warning is logged once.
        is_retryable: Predicate deciding whether an error should be retried.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    factor: float = DEFAULT_BACKOFF_FACTOR
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    warn_after: int = DEFAULT_WARN_AFTER
    is_retryable: Callable[[BaseException], bool] = field(default=is_retryable_error)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def backoff_schedule(self) -> Iterator[float]:
        """Yield the delay before each retry (max_attempts - 1 values)."""
        delay = self.base_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.factor

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
            warn_after=settings.warn_after,
        )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    context: str = "external call",
    service: str = "external",
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Run `operation` until it succeeds or the policy gives up.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        policy: Retry policy.
        context: Label used in log messages.
        service: Collaborator name attached to the raised error.
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        The operation's result.

    Raises:
        The original error immediately when it is not retryable.
        RetryExhaustedError: When every attempt failed.
    """
    delays = policy.backoff_schedule()
    last_exception: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_exception = e
            if not policy.is_retryable(e):
                logger.warning("%s: non-retryable failure, aborting: %s", context, e)
                raise

            if attempt == policy.warn_after:
                logger.warning(
                    "%s: failed %d times. Retrying... Error: %s",
                    context,
                    attempt,
                    e,
                )
            else:
                logger.debug("%s: attempt %d/%d failed: %s", context, attempt, policy.max_attempts, e)

            if attempt == policy.max_attempts:
                break
            await sleep(next(delays))

    raise RetryExhaustedError(
        f"{context} failed after {policy.max_attempts} attempts: {last_exception}",
        service=service,
        attempts=policy.max_attempts,
        last_exception=last_exception,
    ) from last_exception
