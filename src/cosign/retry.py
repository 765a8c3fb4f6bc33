import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TypeVar

import cosign.constants as C

log = logging.getLogger("cosign.retry")

T = TypeVar("T")


class Backoff(StrEnum):
    CONSTANT    = "constant"
    EXPONENTIAL = "exponential"


class RetryExhausted(Exception):
    """Raised once every allowed attempt failed. Chains the last error."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Failed after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = C.MAX_RETRY_COUNT
    delay: float = C.RETRY_DELAY
    backoff: Backoff = Backoff.CONSTANT
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay < 0:
            raise ValueError(f"delay must be >= 0, got {self.delay}")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        if self.backoff is Backoff.EXPONENTIAL:
            return self.delay * (2 ** (attempt - 1))
        return self.delay

    def limited(self, max_attempts: int) -> "RetryPolicy":
        return replace(self, max_attempts=max_attempts)

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except self.retry_on as e:
                last_error = e
                log.warning("%s attempt %s/%s failed: %s", label, attempt, self.max_attempts, e)
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.delay_for(attempt))
        raise RetryExhausted(self.max_attempts, last_error) from last_error


async def retry(operation: Callable[[], Awaitable[T]], max_attempts: int = C.MAX_RETRY_COUNT,
                delay: float = C.RETRY_DELAY) -> T:
    return await RetryPolicy(max_attempts=max_attempts, delay=delay).run(operation)
