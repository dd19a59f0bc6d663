from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from .async_utils import Deadline
from .logging import log_event

T = TypeVar("T")

BackoffFn = Callable[[int], float]


def exponential_backoff(base_seconds: float, *, max_seconds: float = 30.0) -> BackoffFn:
    """Delay after the n-th failure: ``base * 2**(n-1)``, capped at ``max_seconds``."""

    def _backoff(failures: int) -> float:
        return min(max_seconds, max(0.0, base_seconds) * float(2 ** max(0, failures - 1)))

    return _backoff


@dataclass(slots=True, frozen=True)
class AttemptFailure:
    attempt: int
    endpoint: str
    error: Exception
    delay_seconds: float


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    endpoints: tuple[str, ...]
    max_attempts: int
    backoff: BackoffFn
    attempts_per_endpoint: int = 1
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if not self.endpoints:
            raise ValueError("RetryPolicy requires at least one endpoint.")
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1.")
        if self.attempts_per_endpoint < 1:
            raise ValueError("RetryPolicy.attempts_per_endpoint must be >= 1.")

    def endpoint_for(self, attempt: int) -> str:
        index = ((attempt - 1) // self.attempts_per_endpoint) % len(self.endpoints)
        return self.endpoints[index]

    def delay_after(self, attempt: int, error: Exception | None = None) -> float:
        delay = self.backoff(attempt)
        retry_after = getattr(error, "retry_after_seconds", None)
        if isinstance(retry_after, (int, float)) and retry_after > delay:
            delay = float(retry_after)
        return min(self.max_delay_seconds, max(0.0, delay))


async def run_with_retry(
    policy: RetryPolicy,
    operation: Callable[[int, str], Awaitable[T]],
    *,
    is_retryable: Callable[[Exception], bool],
    exhausted: Callable[[list[AttemptFailure]], Exception],
    logger: logging.Logger,
    event: str,
    deadline: Deadline | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_failure: Callable[[AttemptFailure], Awaitable[None]] | None = None,
) -> T:
    """Drive ``operation(attempt, endpoint)`` until it succeeds or the policy is spent.

    Non-retryable errors propagate immediately. Retryable errors are collected and
    handed to ``exhausted`` once the attempt bound or the deadline is reached.
    """
    budget = deadline or Deadline.unbounded()
    failures: list[AttemptFailure] = []

    for attempt in range(1, policy.max_attempts + 1):
        endpoint = policy.endpoint_for(attempt)
        try:
            return await operation(attempt, endpoint)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            retryable = is_retryable(error)
            delay = policy.delay_after(attempt, error) if retryable else 0.0
            failure = AttemptFailure(
                attempt=attempt,
                endpoint=endpoint,
                error=error,
                delay_seconds=delay,
            )
            if on_failure is not None:
                await on_failure(failure)
            if not retryable:
                raise
            failures.append(failure)

            if attempt >= policy.max_attempts or budget.expired:
                break

            log_event(
                logger,
                level="warning",
                event=event,
                message="Retryable failure; backing off before the next attempt",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                endpoint=endpoint,
                next_endpoint=policy.endpoint_for(attempt + 1),
                backoff_seconds=round(delay, 3),
                error=str(error),
            )
            if delay > 0:
                await sleep(budget.clamp(delay))
            if budget.expired:
                break

    raise exhausted(failures)
