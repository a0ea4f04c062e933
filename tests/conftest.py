# tests/conftest.py
"""
Shared fixtures.

Steps used here are plain callables registered on a fresh StepRegistry;
on-disk state (ledger, cache) lives under pytest's tmp_path.
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

from flowgate.budget import ResourceGovernor
from flowgate.cache import MemoStore
from flowgate.registry import StepRegistry
from flowgate.runner import PipelineExecutor
from flowgate.steps import register_builtins


class SleepRecorder:
    """Stand-in for time.sleep: records requested delays, never blocks."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CallLog:
    """Thread-safe record of (step_type, input) calls made by test steps."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls: List[tuple[str, Any]] = []

    def record(self, step_type: str, step_input: Any) -> None:
        with self._lock:
            self.calls.append((step_type, step_input))

    def count(self, step_type: str) -> int:
        with self._lock:
            return sum(1 for t, _ in self.calls if t == step_type)

    def inputs(self, step_type: str) -> List[Any]:
        with self._lock:
            return [i for t, i in self.calls if t == step_type]


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def calls() -> CallLog:
    return CallLog()


@pytest.fixture
def registry(calls: CallLog) -> StepRegistry:
    """Builtins plus a few recording step types: upper, suffix, echo, boom."""
    reg = register_builtins(StepRegistry())

    def recording(step_type: str, fn: Callable[[Any], Any]) -> None:
        def run(step_input: Any) -> Any:
            calls.record(step_type, step_input)
            return fn(step_input)
        reg.register(step_type, run)

    recording("upper", lambda x: str(x).upper())
    recording("suffix", lambda x: f"{x}!")
    recording("echo", lambda x: x)

    def boom(x: Any) -> Any:
        raise ValueError(f"boom on {x!r}")

    recording("boom", boom)
    return reg


@pytest.fixture
def memo(tmp_path: Path, clock: FakeClock):
    store = MemoStore(tmp_path / "cache", clock=clock)
    yield store
    store.close()


@pytest.fixture
def governor(tmp_path: Path, clock: FakeClock) -> ResourceGovernor:
    return ResourceGovernor(tmp_path / "budget.json", clock=clock)


@pytest.fixture
def make_executor(registry: StepRegistry, sleeper: SleepRecorder) -> Callable[..., PipelineExecutor]:
    def make(**kwargs: Any) -> PipelineExecutor:
        kwargs.setdefault("sleep", sleeper)
        return PipelineExecutor(kwargs.pop("registry", registry), **kwargs)
    return make


@pytest.fixture
def results_by_name() -> Callable[[Any], Dict[str, str]]:
    def states(result: Any) -> Dict[str, str]:
        return {name: rec.state.value for name, rec in result.steps.items()}
    return states
