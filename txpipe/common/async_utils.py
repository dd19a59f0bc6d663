from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    **fields: Any,
) -> T | None:
    try:
        result = action()
        if inspect.isawaitable(result):
            return await result
        return result
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            **fields,
        )
        return default


async def wait_with_stop(stop_event: asyncio.Event | None, timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds; returns True if ``stop_event`` fired first."""
    if timeout <= 0:
        return stop_event is not None and stop_event.is_set()
    if stop_event is None:
        await asyncio.sleep(timeout)
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


@dataclass(slots=True, frozen=True)
class Deadline:
    expires_at: float | None
    clock: Callable[[], float] = time.monotonic

    @classmethod
    def after(cls, seconds: float | None, *, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        if seconds is None:
            return cls(expires_at=None, clock=clock)
        return cls(expires_at=clock() + max(0.0, float(seconds)), clock=clock)

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(expires_at=None)

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self.clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def clamp(self, seconds: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return max(0.0, seconds)
        return max(0.0, min(seconds, remaining))
