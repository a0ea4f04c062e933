# classifier.py
from __future__ import annotations

import json
import socket
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from .errors import RETRYABLE_KINDS, FailureKind, FlowError


# Suggested base delays (seconds) per kind. Informational: callers with an
# explicit policy use their own base delay.
SUGGESTED_DELAYS = {
    FailureKind.TRANSIENT_NETWORK: 5.0,
    FailureKind.RATE_LIMITED: 60.0,
    FailureKind.TIMEOUT: 10.0,
}


@dataclass(frozen=True)
class Classification:
    kind: FailureKind
    retryable: bool
    base_delay: float
    message: str


def _make(kind: FailureKind, exc: BaseException, fallback: str) -> Classification:
    message = str(getattr(exc, "message", None) or exc) or fallback
    return Classification(
        kind=kind,
        retryable=kind in RETRYABLE_KINDS,
        base_delay=SUGGESTED_DELAYS.get(kind, 0.0),
        message=message,
    )


def _status_code(exc: BaseException) -> Optional[int]:
    """HTTP-like status from common client exception shapes."""
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def _kind_for_status(status: int) -> FailureKind:
    if status == 429:
        return FailureKind.RATE_LIMITED
    if status == 408:
        return FailureKind.TIMEOUT
    if status >= 500:
        return FailureKind.TRANSIENT_NETWORK
    return FailureKind.FATAL


def classify(exc: BaseException) -> Classification:
    """
    Map a raw failure into a FailureKind + retryability.

    Order matters: explicit FlowError kinds win, then status codes, then
    exception types, then message hints.
    """
    if isinstance(exc, FlowError):
        return _make(exc.kind, exc, exc.kind.value)

    if isinstance(exc, (ValidationError, json.JSONDecodeError)):
        return _make(FailureKind.VALIDATION, exc, "validation error")

    status = _status_code(exc)
    if status is not None:
        return _make(_kind_for_status(status), exc, f"status {status}")

    if isinstance(exc, (TimeoutError, socket.timeout)):
        return _make(FailureKind.TIMEOUT, exc, "timeout")

    if isinstance(exc, (ConnectionError, socket.gaierror)):
        return _make(FailureKind.TRANSIENT_NETWORK, exc, "network error")

    if getattr(exc, "fatal", False) is True:
        return _make(FailureKind.FATAL, exc, "fatal error")

    text = str(exc).lower()
    if "rate limit" in text or "quota" in text:
        return _make(FailureKind.RATE_LIMITED, exc, "rate limited")
    if "timed out" in text or "timeout" in text:
        return _make(FailureKind.TIMEOUT, exc, "timeout")

    return _make(FailureKind.UNKNOWN, exc, type(exc).__name__)


def is_retryable(exc: BaseException) -> bool:
    return classify(exc).retryable


def describe(exc: Any) -> str:
    c = classify(exc)
    flag = "retryable" if c.retryable else "not retryable"
    return f"{c.kind.value} ({flag}): {c.message}"
