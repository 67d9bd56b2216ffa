"""Bounded exponential backoff for transient infrastructure failures."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import random
import time
from typing import TypeVar

from deploygate.contracts.errors import TransientInfraError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (TransientInfraError, ConnectionError, TimeoutError)


@dataclass(slots=True)
class RetryPolicy:
    """Retry a call on transient errors with exponential backoff and jitter.

    Attempt ``n`` (0-indexed) waits ``min(initial_delay * multiplier ** n, max_delay)``
    seconds, plus up to 25% jitter, before the next try. Anything that is not a
    transient error propagates immediately.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True
    retryable: tuple[type[Exception], ...] = RETRYABLE_ERRORS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        delay = min(self.initial_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter and delay > 0:
            delay += random.uniform(0, delay * 0.25)
        return delay

    def call(self, operation: str, fn: Callable[..., T], *args: object, **kwargs: object) -> T:
        """Invoke ``fn`` until it succeeds or the attempt limit is reached."""
        for attempt in range(self.max_attempts):
            try:
                return fn(*args, **kwargs)
            except self.retryable as exc:
                if attempt == self.max_attempts - 1:
                    logger.error(
                        "retry.exhausted",
                        extra={
                            "extra": {
                                "operation": operation,
                                "attempts": self.max_attempts,
                                "error": str(exc),
                            }
                        },
                    )
                    if isinstance(exc, TransientInfraError):
                        raise
                    raise TransientInfraError(f"{operation}: {exc}") from exc
                delay = self.delay_for(attempt)
                logger.warning(
                    "retry.scheduled",
                    extra={
                        "extra": {
                            "operation": operation,
                            "attempt": attempt + 1,
                            "delay_s": round(delay, 3),
                            "error": str(exc),
                        }
                    },
                )
                self.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    @classmethod
    def no_wait(cls, max_attempts: int = 3) -> RetryPolicy:
        """Policy that retries without sleeping, for tests and dry runs."""
        return cls(max_attempts=max_attempts, initial_delay=0.0, jitter=False, sleep=lambda _: None)
