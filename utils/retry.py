"""Bounded retry combinator for flaky network reads."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from utils.structured_logging import get_logger

LOG = get_logger("aperture_controller.retry")

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class RetryExhausted(RuntimeError):
    """Raised when every attempt of a retried call has failed."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(f"{label} failed after {attempts} attempts: {last_error!r}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Retry with a fixed (optionally exponential) delay between attempts.

    ``retries`` counts the extra attempts after the first one, so ``retries=3``
    means at most four calls. ``sleep`` is injectable so tests can run without
    waiting on a real clock.
    """

    retries: int = 3
    delay: float = 1.0
    backoff: float = 1.0
    max_delay: float = 30.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    sleep: SleepFn = field(default=asyncio.sleep, compare=False, repr=False)

    @property
    def max_attempts(self) -> int:
        return max(0, int(self.retries)) + 1

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.delay * (self.backoff ** attempt))

    async def run(self, fn: Callable[[], Awaitable[T]], *, label: str = "call") -> T:
        last_exc: Optional[BaseException] = None
        for attempt in range(self.max_attempts):
            try:
                return await fn()
            except asyncio.CancelledError:
                raise
            except self.retry_on as exc:
                last_exc = exc
                if attempt < self.max_attempts - 1:
                    wait = self.delay_for(attempt)
                    LOG.debug("%s attempt %d/%d failed (%r), retrying in %.2fs", label, attempt + 1, self.max_attempts, exc, wait)
                    await self.sleep(wait)
        assert last_exc is not None
        raise RetryExhausted(label, self.max_attempts, last_exc) from last_exc


NO_RETRY = RetryPolicy(retries=0, delay=0.0)
