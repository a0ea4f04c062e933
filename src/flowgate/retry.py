# retry.py
"""
Retry executors.

Two deliberately separate paths:
  - run_with_retry / run_with_retry_for_kinds: exponential backoff,
    delay = base_delay * 2 ** (attempt - 1)
  - run_with_fixed_retry: parallel-group retries, fixed delay, its own
    attempt counter (retry_count + 1 attempts)
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Collection, Optional, TypeVar

from .classifier import Classification, classify
from .errors import FailureKind
from .model import RetryPolicy

log = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, Classification, float], None]


def _attempt_loop(
    op: Callable[[], T],
    *,
    max_attempts: int,
    delay_for: Callable[[int], float],
    should_retry: Callable[[Classification], bool],
    on_retry: Optional[RetryCallback],
    sleep: Callable[[float], None],
    label: str,
) -> T:
    attempt = 1
    while True:
        try:
            return op()
        except Exception as exc:
            c = classify(exc)
            if not should_retry(c):
                log.debug("%s: not retrying %s failure: %s", label, c.kind.value, c.message)
                raise
            if attempt >= max_attempts:
                log.warning(
                    "%s: giving up after %d attempt(s) (%s): %s",
                    label, attempt, c.kind.value, c.message,
                )
                raise

            delay = delay_for(attempt)
            log.warning(
                "%s: retry %d/%d after %s failure, waiting %.2fs: %s",
                label, attempt, max_attempts, c.kind.value, delay, c.message,
            )
            if on_retry is not None:
                on_retry(attempt, c, delay)
            sleep(delay)
            attempt += 1


def run_with_retry(
    op: Callable[[], T],
    policy: RetryPolicy = RetryPolicy(),
    *,
    on_retry: Optional[RetryCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Run `op`, retrying retryable failures with exponential backoff."""
    return _attempt_loop(
        op,
        max_attempts=policy.max_attempts,
        delay_for=lambda attempt: policy.base_delay * 2 ** (attempt - 1),
        should_retry=lambda c: c.retryable,
        on_retry=on_retry,
        sleep=sleep,
        label=label,
    )


def run_with_retry_for_kinds(
    op: Callable[[], T],
    allowed_kinds: Collection[FailureKind],
    policy: RetryPolicy = RetryPolicy(),
    *,
    on_retry: Optional[RetryCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Like run_with_retry, but only the listed failure kinds are retried."""
    allowed = frozenset(FailureKind(k) for k in allowed_kinds)
    return _attempt_loop(
        op,
        max_attempts=policy.max_attempts,
        delay_for=lambda attempt: policy.base_delay * 2 ** (attempt - 1),
        should_retry=lambda c: c.kind in allowed,
        on_retry=on_retry,
        sleep=sleep,
        label=label,
    )


def run_with_fixed_retry(
    op: Callable[[], T],
    retry_count: int,
    retry_delay: float,
    *,
    on_retry: Optional[RetryCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Parallel-group retry: `retry_count` extra attempts, constant `retry_delay` between them."""
    return _attempt_loop(
        op,
        max_attempts=retry_count + 1,
        delay_for=lambda attempt: retry_delay,
        should_retry=lambda c: c.retryable,
        on_retry=on_retry,
        sleep=sleep,
        label=label,
    )
