from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")

_logger = logging.getLogger("billing_sync.retry")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0


def call_with_retry(
    *,
    action: str,
    call: Callable[[], T],
    policy: RetryPolicy | None = None,
    is_retryable: Callable[[Exception], bool],
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    effective = policy or RetryPolicy()
    attempts = max(1, int(effective.max_attempts))
    delay_seconds = max(0.0, float(effective.initial_delay_seconds))

    for attempt in range(1, attempts + 1):
        try:
            return call()
        except Exception as exc:
            if attempt >= attempts or not is_retryable(exc):
                raise
            _logger.warning(
                "transient failure action=%s attempt=%s/%s retry_in=%.1fs error=%s",
                action,
                attempt,
                attempts,
                delay_seconds,
                exc,
            )
            if delay_seconds > 0.0:
                sleep(delay_seconds)
            delay_seconds = min(
                float(effective.max_delay_seconds),
                delay_seconds * float(effective.backoff_multiplier),
            )

    raise RuntimeError(f"retry loop exited without result for action={action}")
