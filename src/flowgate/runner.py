# runner.py
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .budget import ResourceGovernor
from .cache import MemoStore
from .classifier import classify
from .dag import ready_steps, resolve_input, validate_pipeline
from .errors import BudgetExceededError, FailureKind, FlowError, GraphStalledError, StepTimeoutError
from .gate import ConcurrencyGate
from .model import (
    FINAL_STATES,
    ParallelGroupSpec,
    PipelineSpec,
    RunStatus,
    StepRecord,
    StepSpec,
    StepState,
    Usage,
)
from .registry import StepImplementation, StepOutput, StepRegistry
from .retry import run_with_fixed_retry, run_with_retry, run_with_retry_for_kinds

log = logging.getLogger(__name__)


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ----------------------------------------------------------------------
# Run state / result
# ----------------------------------------------------------------------

@dataclass
class ExecutionState:
    """Per-run state. Owned by the coordinating thread of one run only."""
    completed: Set[str] = field(default_factory=set)
    failed: Set[str] = field(default_factory=set)
    skipped: Set[str] = field(default_factory=set)
    results: Dict[str, Any] = field(default_factory=dict)

    @property
    def finished(self) -> Set[str]:
        return self.completed | self.failed | self.skipped


@dataclass
class RunResult:
    run_id: str
    pipeline: str
    status: RunStatus
    started_at: str
    finished_at: str
    duration_sec: float
    steps: Dict[str, StepRecord]
    results: Dict[str, Any]
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    error_kind: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def to_dict(self, *, include_results: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_sec": round(self.duration_sec, 6),
            "steps": [r.to_dict() for r in self.steps.values()],
            "total_tokens": self.total_tokens,
            "total_cost_usd": self.total_cost_usd,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
        }
        if include_results:
            out["results"] = self.results
        return out


def save_result(result: RunResult, path: str | Path) -> Path:
    """Write a run result as JSON (non-JSON outputs are stringified)."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(
        json.dumps(result.to_dict(), indent=2, ensure_ascii=False, default=str),
        encoding="utf-8",
    )
    return p


# ----------------------------------------------------------------------
# Internals
# ----------------------------------------------------------------------

class _RunAborted(Exception):
    def __init__(self, error: BaseException):
        super().__init__(str(error))
        self.error = error


@dataclass
class _Tracker:
    """Written by the thread executing one step; read by the coordinator once it is done."""
    attempts: int = 0
    duration_sec: float = 0.0
    tokens: int = 0
    cost_usd: float = 0.0
    cached: bool = False


@dataclass
class _Run:
    spec: PipelineSpec
    run_id: str
    impls: Dict[str, StepImplementation]
    initial_input: Any
    records: Dict[str, StepRecord]
    state: ExecutionState = field(default_factory=ExecutionState)
    error: Optional[BaseException] = None
    aborted: bool = False
    # guards StepRecord transitions; members mark admitted/running from worker threads
    lock: threading.Lock = field(default_factory=threading.Lock)


def _unwrap(output: Any) -> tuple[Any, int, float]:
    if isinstance(output, StepOutput):
        return output.value, int(output.tokens), float(output.cost_usd)
    return output, 0, 0.0


Retrying = Callable[[Callable[[], Any]], Any]


class PipelineExecutor:
    """
    Round-based executor:

    - each round asks the resolver for the ready set
    - serial-ready steps run one at a time under the pipeline gate
    - parallel-ready steps run per group, bounded by that group's gate;
      the whole group drains before the next round starts
    - every unit: memo lookup -> admission -> retry executor -> memo write -> settle
    """

    def __init__(
        self,
        registry: StepRegistry,
        *,
        governor: Optional[ResourceGovernor] = None,
        memo: Optional[MemoStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.governor = governor
        self.memo = memo
        self._sleep = sleep
        self._clock = clock

    # ---- public API ----

    def run(
        self,
        spec: PipelineSpec,
        initial_input: Any = None,
        *,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """
        Execute `spec`. Structural problems (duplicates, unknown dependencies,
        cycles, unknown groups or step types) raise before any step runs.
        Step failures are reported in the returned RunResult.
        """
        validate_pipeline(spec)
        impls = self.registry.bind(spec.steps)

        run = _Run(
            spec=spec,
            run_id=run_id or uuid.uuid4().hex[:12],
            impls=impls,
            initial_input=initial_input,
            records={s.name: StepRecord(name=s.name, step_type=s.step_type) for s in spec.steps},
        )
        started_at = utc_now_iso8601()
        t0 = self._clock()
        log.info("Pipeline %s started (run_id=%s, steps=%d)", spec.name, run.run_id, len(spec.steps))

        # global gate: shares its size with the governor's slots when budgeting
        global_limit = spec.options.max_concurrency
        if self.governor is not None:
            global_limit = self.governor.status().max_concurrency
        serial_gate = ConcurrencyGate(global_limit, name=f"{spec.name}:serial")
        try:
            self._run_rounds(run, serial_gate)
        except _RunAborted as e:
            run.aborted = True
            run.error = run.error or e.error
        except GraphStalledError as e:
            run.aborted = True
            run.error = run.error or e
            log.error("Pipeline %s stalled: %s", spec.name, e.message)

        self._finalize_skipped(run)
        if self.memo is not None and spec.options.use_cache:
            self.memo.enforce_size_limit()

        result = self._build_result(run, started_at, self._clock() - t0)
        log.info(
            "Pipeline %s finished: %s (%.2fs, tokens=%d, cost=$%.4f)",
            spec.name, result.status.value, result.duration_sec,
            result.total_tokens, result.total_cost_usd,
        )
        return result

    def _slot_limit(self, wanted: int) -> int:
        """Gate size: `wanted`, capped at the governor's concurrency slots when budgeting."""
        if self.governor is None:
            return wanted
        return max(1, min(wanted, self.governor.status().max_concurrency))

    # ---- rounds ----

    def _run_rounds(self, run: _Run, serial_gate: ConcurrencyGate) -> None:
        steps = run.spec.steps
        state = run.state
        round_no = 0

        while True:
            self._skip_blocked(run)
            if len(state.finished) == len(steps):
                return

            ready = ready_steps(steps, state.completed, state.finished)
            round_no += 1
            for s in ready:
                self._mark(run, s.name, StepState.READY)

            serial = [s for s in ready if not s.is_parallel]
            groups: Dict[str, List[StepSpec]] = {}
            for s in ready:
                if s.is_parallel:
                    groups.setdefault(s.group_name, []).append(s)

            log.info(
                "Round %d: serial=%s groups=%s",
                round_no, [s.name for s in serial],
                {g: [s.name for s in members] for g, members in groups.items()},
            )

            for step in serial:
                self._run_serial(run, step, serial_gate)

            for members in groups.values():
                self._run_group(run, members)

    def _skip_blocked(self, run: _Run) -> None:
        """Mark steps downstream of a failed/skipped step as skipped (fail_fast=False runs)."""
        state = run.state
        changed = True
        while changed:
            changed = False
            blocked = state.failed | state.skipped
            for step in run.spec.steps:
                if step.name in state.finished:
                    continue
                bad = [d for d in step.dependencies if d in blocked]
                if bad:
                    self._mark(run, step.name, StepState.SKIPPED)
                    run.records[step.name].error = f"dependency {bad[0]!r} did not complete"
                    state.skipped.add(step.name)
                    changed = True

    # ---- serial ----

    def _run_serial(self, run: _Run, step: StepSpec, gate: ConcurrencyGate) -> None:
        options = run.spec.options
        policy = step.retry or options.retry
        step_input = resolve_input(step, run.state.results, run.initial_input)

        def retrying(op: Callable[[], Any]) -> Any:
            if step.retry_kinds is not None:
                return run_with_retry_for_kinds(
                    op, step.retry_kinds, policy, sleep=self._sleep, label=step.name
                )
            return run_with_retry(op, policy, sleep=self._sleep, label=step.name)

        tracker = _Tracker()
        log.info("[%s] ▶ %s (serial)", step.name, step.step_type)
        with gate:
            try:
                value = self._execute(run, step, step_input, retrying, options.timeout, tracker)
            except Exception as exc:
                self._record_failure(run, step, exc, tracker)
                if self._aborts_run(run, exc):
                    raise _RunAborted(exc) from exc
                return
        self._record_success(run, step, value, tracker)

    # ---- parallel groups ----

    def _run_group(self, run: _Run, members: List[StepSpec]) -> None:
        group = run.spec.group_for(members[0])
        permits = self._slot_limit(group.max_concurrency)
        if permits < group.max_concurrency:
            log.warning(
                "Group %s: max_concurrency=%d exceeds the budget slot limit, running at most %d at once",
                group.name, group.max_concurrency, permits,
            )
        gate = ConcurrencyGate(permits, name=f"{run.spec.name}:{group.name}")
        inputs = {s.name: resolve_input(s, run.state.results, run.initial_input) for s in members}
        aborted = threading.Event()
        futures: Dict[Future, StepSpec] = {}
        trackers: Dict[str, _Tracker] = {}
        first_error: Optional[BaseException] = None

        log.info(
            "Group %s: %d step(s), max %d concurrent, retry_count=%d",
            group.name, len(members), permits, group.retry_count,
        )
        pool = ThreadPoolExecutor(
            max_workers=permits,
            thread_name_prefix=f"flowgate-{group.name}",
        )
        try:
            # permits are taken here, in member order, and handed to the member task
            for step in members:
                gate.acquire()
                if aborted.is_set():
                    gate.release()
                    break
                tracker = trackers[step.name] = _Tracker()
                fut = pool.submit(
                    self._run_member, run, step, group, inputs[step.name], gate, aborted, tracker
                )
                futures[fut] = step

            order = {s.name: i for i, s in enumerate(members)}
            pending = set(futures)
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: order[futures[f].name]):
                    step = futures[fut]
                    exc = fut.exception()
                    if exc is None:
                        self._record_success(run, step, fut.result(), trackers[step.name])
                        continue
                    self._record_failure(run, step, exc, trackers[step.name])
                    if first_error is None and self._aborts_run(run, exc):
                        first_error = exc
                if first_error is not None:
                    # stop waiting; siblings still running finish on their own and are discarded
                    for fut in pending:
                        run.records[futures[fut].name].error = "result discarded: group aborted"
                    break
        finally:
            pool.shutdown(wait=False)

        if first_error is not None:
            raise _RunAborted(first_error)

    def _run_member(
        self,
        run: _Run,
        step: StepSpec,
        group: ParallelGroupSpec,
        step_input: Any,
        gate: ConcurrencyGate,
        aborted: threading.Event,
        tracker: _Tracker,
    ) -> Any:
        """Runs on a group worker thread. Holds one group permit until it returns."""
        def retrying(op: Callable[[], Any]) -> Any:
            return run_with_fixed_retry(
                op, group.retry_count, group.retry_delay,
                sleep=self._sleep, label=f"{group.name}/{step.name}",
            )

        try:
            log.info("[%s] ▶ %s (group %s)", step.name, step.step_type, group.name)
            return self._execute(run, step, step_input, retrying, group.per_attempt_timeout, tracker)
        except Exception as exc:
            if self._aborts_run(run, exc):
                aborted.set()
            raise
        finally:
            gate.release()

    # ---- one unit of work ----

    def _execute(
        self,
        run: _Run,
        step: StepSpec,
        step_input: Any,
        retrying: Retrying,
        timeout: Optional[float],
        tracker: _Tracker,
    ) -> Any:
        impl = run.impls[step.name]
        options = run.spec.options
        started = self._clock()
        try:
            key = None
            if options.use_cache and self.memo is not None:
                key = self.memo.key_for(step.step_type, step_input, step.config)
                hit = self.memo.get(key)
                if hit.hit:
                    log.info("[%s] cache: %s", step.name, hit.reason)
                    tracker.cached = True
                    return hit.value

            request_id = f"{run.run_id}:{step.name}:{uuid.uuid4().hex[:8]}"
            if self.governor is not None:
                decision = self.governor.try_admit(self._estimate(step, impl, step_input), request_id)
                if not decision.allowed:
                    raise BudgetExceededError(
                        decision.reason or "admission denied",
                        step=step.name,
                        details={"max_rate": round(decision.usage_rates.max_rate, 4)},
                    )
            self._mark(run, step.name, StepState.ADMITTED)

            def attempt() -> Any:
                tracker.attempts += 1
                if tracker.attempts == 1:
                    self._mark(run, step.name, StepState.RUNNING)
                return self._call(impl, step_input, timeout, step.name)

            run_started = self._clock()
            value = None
            try:
                value, tracker.tokens, tracker.cost_usd = _unwrap(retrying(attempt))
            finally:
                if self.governor is not None:
                    self.governor.settle(
                        Usage(
                            tokens=tracker.tokens,
                            cost_usd=tracker.cost_usd,
                            wall_time_sec=self._clock() - run_started,
                        ),
                        request_id,
                    )

            if key is not None:
                self.memo.set(key, value, options.cache_ttl)
            return value
        finally:
            tracker.duration_sec = self._clock() - started

    @staticmethod
    def _estimate(step: StepSpec, impl: StepImplementation, step_input: Any) -> Usage:
        if step.estimate is not None:
            return step.estimate
        estimate = getattr(impl, "estimate", None)
        if callable(estimate):
            return estimate(step_input)
        return Usage()

    @staticmethod
    def _call(impl: StepImplementation, step_input: Any, timeout: Optional[float], name: str) -> Any:
        if timeout is None:
            return impl.execute(step_input)

        # the attempt thread is not interrupted on timeout; we only stop waiting for it
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"flowgate-attempt-{name}")
        fut = pool.submit(impl.execute, step_input)
        try:
            return fut.result(timeout=timeout)
        except FuturesTimeout:
            if fut.done():
                raise
            raise StepTimeoutError(
                f"attempt exceeded {timeout}s", step=name, details={"timeout": timeout}
            ) from None
        finally:
            pool.shutdown(wait=False)

    @staticmethod
    def _mark(run: _Run, name: str, state: StepState) -> None:
        """Record a state transition; a step that already reached a final state keeps it."""
        with run.lock:
            rec = run.records[name]
            if rec.state in FINAL_STATES:
                return
            rec.transition(state)

    # ---- bookkeeping (coordinator only) ----

    @staticmethod
    def _aborts_run(run: _Run, exc: BaseException) -> bool:
        if isinstance(exc, (BudgetExceededError, GraphStalledError)):
            return True
        return run.spec.options.fail_fast

    @staticmethod
    def _copy_tracker(rec: StepRecord, tracker: _Tracker) -> None:
        rec.attempts = tracker.attempts
        rec.duration_sec = tracker.duration_sec
        rec.tokens = tracker.tokens
        rec.cost_usd = tracker.cost_usd
        rec.cached = tracker.cached

    def _record_success(self, run: _Run, step: StepSpec, value: Any, tracker: _Tracker) -> None:
        rec = run.records[step.name]
        self._copy_tracker(rec, tracker)
        self._mark(run, step.name, StepState.COMPLETED)
        run.state.results[step.name] = value
        run.state.completed.add(step.name)
        log.info(
            "[%s] ✓ completed (%.2fs, attempts=%d%s)",
            step.name, rec.duration_sec, rec.attempts, ", cached" if rec.cached else "",
        )

    def _record_failure(self, run: _Run, step: StepSpec, exc: BaseException, tracker: _Tracker) -> None:
        c = classify(exc)
        rec = run.records[step.name]
        self._copy_tracker(rec, tracker)
        self._mark(run, step.name, StepState.FAILED)
        rec.error_kind = c.kind
        rec.error = exc.message if isinstance(exc, FlowError) else (str(exc) or type(exc).__name__)
        run.state.failed.add(step.name)
        if run.error is None:
            run.error = exc
        log.error("[%s] ✗ failed (%s): %s", step.name, c.kind.value, rec.error)

    def _finalize_skipped(self, run: _Run) -> None:
        for name, rec in run.records.items():
            if rec.state in FINAL_STATES:
                continue
            self._mark(run, name, StepState.SKIPPED)
            if rec.error is None:
                rec.error = "not run: pipeline aborted"
            run.state.skipped.add(name)

    def _build_result(self, run: _Run, started_at: str, duration: float) -> RunResult:
        state = run.state
        if not state.failed and not run.aborted and len(state.completed) == len(run.spec.steps):
            status = RunStatus.SUCCESS
        elif not run.aborted and state.completed:
            status = RunStatus.PARTIAL
        else:
            status = RunStatus.FAILED

        error_kind = None
        error = None
        if run.error is not None:
            c = classify(run.error)
            error_kind = c.kind
            error = c.message

        records = run.records
        return RunResult(
            run_id=run.run_id,
            pipeline=run.spec.name,
            status=status,
            started_at=started_at,
            finished_at=utc_now_iso8601(),
            duration_sec=duration,
            steps=dict(records),
            results=dict(state.results),
            total_tokens=sum(r.tokens for r in records.values()),
            total_cost_usd=sum(r.cost_usd for r in records.values()),
            error_kind=error_kind,
            error=error,
        )
