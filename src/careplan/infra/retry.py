"""Bounded retry with backoff for transient storage errors."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, TypeVar

from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from ..config import BaseConfig
from ..errors import StorageUnavailableError, TransientError
from ..logging_config import get_logger

logger = get_logger("infra.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times and how long to wait between attempts."""

    attempts: int = 3
    backoff_seconds: tuple[float, ...] = (0.05, 0.1, 0.2)

    @classmethod
    def from_config(cls, config: BaseConfig) -> "RetryPolicy":
        return cls(
            attempts=config.STORAGE_RETRY_ATTEMPTS,
            backoff_seconds=tuple(config.STORAGE_RETRY_BACKOFF),
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        index = min(max(attempt - 1, 0), len(self.backoff_seconds) - 1)
        return self.backoff_seconds[index] if self.backoff_seconds else 0.0


DEFAULT_POLICY = RetryPolicy()


def retry_transient(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy = DEFAULT_POLICY,
    description: str = "storage operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying ``TransientError`` up to ``policy.attempts`` times.

    Non-transient errors propagate immediately. When attempts are exhausted
    the last transient error is re-raised unchanged.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except TransientError as exc:
            if attempt >= policy.attempts:
                logger.error(
                    "Giving up on %s after %d attempts: %s",
                    description,
                    attempt,
                    exc,
                    extra={"operation": description, "attempts": attempt},
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retrying %s after transient error: %s",
                description,
                exc,
                extra={"operation": description, "attempt": attempt, "delay": delay},
            )
            if delay > 0:
                sleep(delay)


@contextmanager
def storage_guard(operation: str) -> Iterator[None]:
    """Translate driver timeouts and connection failures into ``StorageUnavailableError``."""

    try:
        yield
    except (OperationalError, DisconnectionError, PoolTimeoutError) as exc:
        raise StorageUnavailableError(
            "Storage unavailable", operation=operation, cause=type(exc).__name__
        ) from exc
