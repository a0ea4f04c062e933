from __future__ import annotations

import json

import pytest

from flowgate.classifier import classify, describe, is_retryable
from flowgate.errors import (
    BudgetExceededError,
    FailureKind,
    FatalStepError,
    RateLimitedError,
    StepTimeoutError,
)


class HTTPError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class _Response:
    def __init__(self, status_code: int):
        self.status_code = status_code


class ClientError(Exception):
    def __init__(self, status_code: int):
        super().__init__("client error")
        self.response = _Response(status_code)


@pytest.mark.parametrize(
    "exc, kind",
    [
        (HTTPError(429), FailureKind.RATE_LIMITED),
        (HTTPError(408), FailureKind.TIMEOUT),
        (HTTPError(503), FailureKind.TRANSIENT_NETWORK),
        (HTTPError(400), FailureKind.FATAL),
        (ClientError(502), FailureKind.TRANSIENT_NETWORK),
        (TimeoutError("slow"), FailureKind.TIMEOUT),
        (ConnectionResetError("reset"), FailureKind.TRANSIENT_NETWORK),
        (RuntimeError("You exceeded your quota"), FailureKind.RATE_LIMITED),
        (RuntimeError("request timed out"), FailureKind.TIMEOUT),
        (RuntimeError("something odd"), FailureKind.UNKNOWN),
    ],
)
def test_classify_raw_failures(exc: Exception, kind: FailureKind) -> None:
    assert classify(exc).kind == kind


def test_json_decode_errors_are_validation_failures() -> None:
    with pytest.raises(json.JSONDecodeError) as info:
        json.loads("{not json")
    c = classify(info.value)
    assert c.kind == FailureKind.VALIDATION
    assert c.retryable is False


def test_explicit_kinds_win_over_message_hints() -> None:
    exc = FatalStepError("rate limit wording, but fatal")
    assert classify(exc).kind == FailureKind.FATAL


def test_retryability_and_suggested_delays() -> None:
    assert is_retryable(RateLimitedError("slow down"))
    assert is_retryable(StepTimeoutError("too slow"))
    assert not is_retryable(BudgetExceededError("cap reached"))
    assert classify(RateLimitedError("x")).base_delay == 60.0
    assert classify(FatalStepError("x")).base_delay == 0.0


def test_fatal_attribute_marks_failure_fatal() -> None:
    exc = RuntimeError("bad key")
    exc.fatal = True
    assert classify(exc).kind == FailureKind.FATAL


def test_describe_mentions_kind_and_retryability() -> None:
    text = describe(RateLimitedError("slow down"))
    assert text.startswith("rate-limited (retryable)")
    assert "slow down" in text
