# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import FailureKind

DEFAULT_GROUP = "default"


@dataclass(frozen=True)
class Usage:
    """Token / cost / wall-clock figures. Used as admission estimate and as settled actual."""
    tokens: int = 0
    cost_usd: float = 0.0
    wall_time_sec: float = 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential retry policy: delay = base_delay * 2 ** (attempt - 1)."""
    max_attempts: int = 3
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")


@dataclass(frozen=True)
class StepSpec:
    """
    One unit of work in a pipeline.

    Canonical dependency field: `dependencies` (ordered, names of steps that
    must complete BEFORE this step). `literal_input` is only used when there
    are no dependencies; None means "use the pipeline's initial input".
    """
    name: str
    step_type: str
    dependencies: Tuple[str, ...] = ()
    literal_input: Any = None
    is_parallel: bool = False
    parallel_group: Optional[str] = None

    # per-step overrides (serial steps)
    retry: Optional[RetryPolicy] = None
    retry_kinds: Optional[Tuple[FailureKind, ...]] = None

    # passed to step factories at bind time
    config: Mapping[str, Any] = field(default_factory=dict)
    # planning figure for admission; step implementations may also estimate
    estimate: Optional[Usage] = None

    def __post_init__(self) -> None:
        name = (self.name or "").strip()
        if not name:
            raise ValueError("Step name cannot be empty")
        object.__setattr__(self, "name", name)
        if not self.step_type:
            raise ValueError(f"Step {name!r} has no step_type")
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        if self.retry_kinds is not None:
            object.__setattr__(
                self, "retry_kinds", tuple(FailureKind(k) for k in self.retry_kinds)
            )

    @property
    def group_name(self) -> Optional[str]:
        if not self.is_parallel:
            return None
        return self.parallel_group or DEFAULT_GROUP


@dataclass(frozen=True)
class ParallelGroupSpec:
    """Named concurrency/retry policy shared by parallel steps."""
    name: str
    max_concurrency: int = 3
    per_attempt_timeout: Optional[float] = 30.0
    retry_count: int = 0
    retry_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError(f"Group {self.name!r}: max_concurrency must be >= 1")
        if self.retry_count < 0:
            raise ValueError(f"Group {self.name!r}: retry_count must be >= 0")


@dataclass(frozen=True)
class RunOptions:
    max_concurrency: int = 3
    timeout: Optional[float] = None          # per-attempt, serial steps
    use_cache: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    cache_ttl: float = 24 * 60 * 60
    fail_fast: bool = True


@dataclass(frozen=True)
class PipelineSpec:
    name: str
    steps: Tuple[StepSpec, ...]
    groups: Mapping[str, ParallelGroupSpec] = field(default_factory=dict)
    options: RunOptions = field(default_factory=RunOptions)
    description: str = ""
    version: str = "1.0"

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "groups", dict(self.groups))

    def step(self, name: str) -> StepSpec:
        for s in self.steps:
            if s.name == name:
                return s
        raise KeyError(name)

    def group_for(self, step: StepSpec) -> ParallelGroupSpec:
        """Group policy for a parallel step; ungrouped steps share the implicit default group."""
        name = step.group_name or DEFAULT_GROUP
        if name in self.groups:
            return self.groups[name]
        return ParallelGroupSpec(
            name=name,
            max_concurrency=self.options.max_concurrency,
            per_attempt_timeout=self.options.timeout,
        )


# ----------------------------------------------------------------------
# Run outcome
# ----------------------------------------------------------------------

class StepState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    ADMITTED = "admitted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


FINAL_STATES = frozenset({StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED})


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass
class StepRecord:
    name: str
    step_type: str
    state: StepState = StepState.PENDING
    duration_sec: float = 0.0
    attempts: int = 0
    cached: bool = False
    tokens: int = 0
    cost_usd: float = 0.0
    error_kind: Optional[FailureKind] = None
    error: Optional[str] = None
    history: List[StepState] = field(default_factory=list)

    def transition(self, state: StepState) -> None:
        """Move to `state` and append it to `history` (pending is implicit)."""
        self.state = state
        self.history.append(state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "step_type": self.step_type,
            "status": self.state.value,
            "duration_sec": round(self.duration_sec, 6),
            "attempts": self.attempts,
            "cached": self.cached,
            "tokens": self.tokens,
            "cost_usd": self.cost_usd,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
        }
