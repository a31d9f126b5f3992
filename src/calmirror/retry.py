"""Retry with backoff and batched fan-out for provider calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from calmirror.core.metrics import sync_metrics
from calmirror.errors import CalendarSyncError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

Sleep = Callable[[float], Awaitable[None]]
OnRetry = Callable[[CalendarSyncError, int], None]

DEFAULT_BATCH_SIZE = 5
DEFAULT_BATCH_PAUSE_SECONDS = 0.5


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff parameters; delays are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def backoff_for(self, attempt: int) -> float:
        """Capped exponential delay after the *attempt*-th failure (1-based)."""
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


DEFAULT_RETRY_POLICY = RetryPolicy()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    on_retry: OnRetry | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run *operation*, retrying classified-retryable failures.

    The provider's suggested delay wins over the exponential schedule.  The
    last classified error is raised when the failure is not retryable or the
    attempts are exhausted.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            error = classify_error(exc)
            if not error.retryable or attempt >= policy.max_attempts:
                if error is exc:
                    raise
                raise error from exc

            delay = error.retry_after
            if delay is None:
                delay = policy.backoff_for(attempt)
            sync_metrics.record_retry(str(error.kind))
            if on_retry is not None:
                on_retry(error, attempt)
            logger.debug(
                "Retrying after %s in %.1fs (attempt %d/%d)",
                error.kind,
                delay,
                attempt,
                policy.max_attempts,
            )
            await sleep(delay)
            attempt += 1


@dataclass
class BatchFailure(Generic[T]):
    """One item that failed inside :func:`run_in_batches`."""

    item: T
    error: CalendarSyncError


@dataclass
class BatchResult(Generic[T, R]):
    """Outcome of :func:`run_in_batches`."""

    successful: list[R] = field(default_factory=list)
    failed: list[BatchFailure[T]] = field(default_factory=list)


async def run_in_batches(
    items: Sequence[T],
    processor: Callable[[T], Awaitable[R]],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    pause: float = DEFAULT_BATCH_PAUSE_SECONDS,
    continue_on_error: bool = True,
    on_error: Callable[[T, CalendarSyncError], None] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> BatchResult[T, R]:
    """Process *items* in concurrent groups of *batch_size*.

    Each item's failure is classified and captured without affecting the rest
    of its group.  With ``continue_on_error=False`` the remaining groups are
    skipped once a group reports a failure.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    result: BatchResult[T, R] = BatchResult()

    for start in range(0, len(items), batch_size):
        batch = items[start : start + batch_size]
        outcomes = await asyncio.gather(
            *(processor(item) for item in batch),
            return_exceptions=True,
        )

        for item, outcome in zip(batch, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                error = classify_error(outcome)
                result.failed.append(BatchFailure(item=item, error=error))
                if on_error is not None:
                    on_error(item, error)
            else:
                result.successful.append(outcome)

        if result.failed and not continue_on_error:
            break

        if start + batch_size < len(items) and pause > 0:
            await sleep(pause)

    return result
