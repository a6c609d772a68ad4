from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import time
from typing import TypeVar

from helicone_integrator.observability import log_event


LOGGER = logging.getLogger("helicone_integrator.execution_policy")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with capped exponential backoff for a single leaf call."""

    max_attempts: int
    initial_interval_seconds: float
    max_interval_seconds: float
    backoff_coefficient: float = 2.0

    def delay(self, retry_index: int) -> float:
        raw = self.initial_interval_seconds * (self.backoff_coefficient**retry_index)
        return float(min(self.max_interval_seconds, raw))


NO_RETRY = RetryPolicy(max_attempts=1, initial_interval_seconds=0.0, max_interval_seconds=0.0)


def is_retryable(exc: BaseException) -> bool:
    return getattr(exc, "retryable", True) is not False


def call_with_retry(
    policy: RetryPolicy,
    fn: Callable[[], T],
    *,
    operation: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as exc:
            if attempt >= policy.max_attempts or not is_retryable(exc):
                log_event(
                    LOGGER,
                    "leaf_call_failed",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    retryable=is_retryable(exc),
                    error_type=type(exc).__name__,
                )
                raise
            delay = policy.delay(attempt - 1)
            log_event(
                LOGGER,
                "leaf_call_retry_scheduled",
                operation=operation,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=delay,
                error_type=type(exc).__name__,
            )
            sleep(delay)
            attempt += 1
