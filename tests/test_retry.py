from __future__ import annotations

from typing import Callable, List

import pytest

from flowgate.errors import (
    FailureKind,
    RateLimitedError,
    StepValidationError,
    TransientNetworkError,
)
from flowgate.model import RetryPolicy
from flowgate.retry import run_with_fixed_retry, run_with_retry, run_with_retry_for_kinds


def flaky(failures: List[Exception], value: str = "ok") -> Callable[[], str]:
    """Raises the given failures in order, then returns `value`."""
    pending = list(failures)
    calls = {"n": 0}

    def op() -> str:
        calls["n"] += 1
        if pending:
            raise pending.pop(0)
        return value

    op.calls = calls  # type: ignore[attr-defined]
    return op


def test_rate_limited_twice_then_success_backs_off_exponentially(sleeper) -> None:
    op = flaky([RateLimitedError("429"), RateLimitedError("429")], value="done")
    result = run_with_retry(op, RetryPolicy(max_attempts=3, base_delay=0.5), sleep=sleeper)
    assert result == "done"
    assert sleeper.delays == [0.5, 1.0]
    assert op.calls["n"] == 3


def test_gives_up_after_max_attempts(sleeper) -> None:
    op = flaky([TransientNetworkError("reset")] * 5)
    with pytest.raises(TransientNetworkError):
        run_with_retry(op, RetryPolicy(max_attempts=3, base_delay=1.0), sleep=sleeper)
    assert op.calls["n"] == 3
    assert sleeper.delays == [1.0, 2.0]


def test_non_retryable_failure_propagates_immediately(sleeper) -> None:
    op = flaky([StepValidationError("bad shape")])
    with pytest.raises(StepValidationError):
        run_with_retry(op, RetryPolicy(max_attempts=5), sleep=sleeper)
    assert op.calls["n"] == 1
    assert sleeper.delays == []


def test_on_retry_callback_sees_attempt_kind_and_delay(sleeper) -> None:
    seen = []
    op = flaky([RateLimitedError("slow down")])
    run_with_retry(
        op,
        RetryPolicy(max_attempts=2, base_delay=2.0),
        sleep=sleeper,
        on_retry=lambda attempt, c, delay: seen.append((attempt, c.kind, delay)),
    )
    assert seen == [(1, FailureKind.RATE_LIMITED, 2.0)]


def test_for_kinds_only_retries_the_allow_list(sleeper) -> None:
    op = flaky([TransientNetworkError("reset")])
    with pytest.raises(TransientNetworkError):
        run_with_retry_for_kinds(op, [FailureKind.RATE_LIMITED], RetryPolicy(), sleep=sleeper)
    assert op.calls["n"] == 1

    op = flaky([RateLimitedError("429")], value="ok")
    assert run_with_retry_for_kinds(op, ["rate-limited"], RetryPolicy(), sleep=sleeper) == "ok"


def test_for_kinds_can_opt_into_normally_fatal_kinds(sleeper) -> None:
    op = flaky([StepValidationError("malformed JSON")], value="fixed")
    result = run_with_retry_for_kinds(
        op, [FailureKind.VALIDATION], RetryPolicy(max_attempts=2, base_delay=1.0), sleep=sleeper
    )
    assert result == "fixed"
    assert sleeper.delays == [1.0]


def test_fixed_retry_uses_constant_delay(sleeper) -> None:
    op = flaky([TransientNetworkError("a"), TransientNetworkError("b")], value="ok")
    assert run_with_fixed_retry(op, retry_count=2, retry_delay=0.25, sleep=sleeper) == "ok"
    assert sleeper.delays == [0.25, 0.25]


def test_fixed_retry_with_zero_count_tries_once(sleeper) -> None:
    op = flaky([TransientNetworkError("a")])
    with pytest.raises(TransientNetworkError):
        run_with_fixed_retry(op, retry_count=0, retry_delay=1.0, sleep=sleeper)
    assert op.calls["n"] == 1
    assert sleeper.delays == []
