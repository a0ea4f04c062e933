# errors.py
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class FailureKind(str, Enum):
    """Failure taxonomy used to decide retryability."""

    TRANSIENT_NETWORK = "transient-network"
    RATE_LIMITED = "rate-limited"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    RESOURCE_EXHAUSTED = "resource-exhausted"
    FATAL = "fatal"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {
        FailureKind.TRANSIENT_NETWORK,
        FailureKind.RATE_LIMITED,
        FailureKind.TIMEOUT,
    }
)


# ----------------------------------------------------------------------
# Structured errors
# ----------------------------------------------------------------------

class FlowError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - per-step records in the run result
      - classification without string matching
    """

    kind: FailureKind = FailureKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[FailureKind] = None,
    ):
        super().__init__(message)
        self.message = message
        self.step = step
        self.details = dict(details or {})
        if kind is not None:
            self.kind = kind

    def __str__(self) -> str:
        lines = [f"{self.kind.value}: {self.message}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class GraphStalledError(FlowError):
    """No step is runnable but the pipeline is not finished (cycle or unknown reference)."""

    kind = FailureKind.FATAL


class PipelineValidationError(FlowError, ValueError):
    """A pipeline definition was rejected before execution."""

    kind = FailureKind.VALIDATION


class DuplicateStepError(PipelineValidationError):
    pass


class UnknownGroupError(PipelineValidationError):
    pass


class UnknownStepTypeError(PipelineValidationError):
    pass


class UnknownDependencyError(PipelineValidationError, GraphStalledError):
    kind = FailureKind.FATAL


class CycleDetectedError(PipelineValidationError, GraphStalledError):
    kind = FailureKind.FATAL


class BudgetExceededError(FlowError):
    """Admission denied by the resource governor. Policy exhaustion, never retried."""

    kind = FailureKind.RESOURCE_EXHAUSTED


class StepTimeoutError(FlowError):
    kind = FailureKind.TIMEOUT


class StepValidationError(FlowError):
    kind = FailureKind.VALIDATION


class FatalStepError(FlowError):
    kind = FailureKind.FATAL


class TransientNetworkError(FlowError):
    kind = FailureKind.TRANSIENT_NETWORK


class RateLimitedError(FlowError):
    kind = FailureKind.RATE_LIMITED
