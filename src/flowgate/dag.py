# dag.py
from __future__ import annotations

from collections import Counter
from typing import AbstractSet, Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import (
    CycleDetectedError,
    DuplicateStepError,
    GraphStalledError,
    UnknownDependencyError,
    UnknownGroupError,
)
from .model import DEFAULT_GROUP, PipelineSpec, StepSpec


def build_dag(steps: Sequence[StepSpec]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Index the step graph as (dependents, pending).

    dependents[name] holds the steps that consume `name`'s output;
    pending[name] counts how many of `name`'s dependencies have yet to finish.
    Duplicate names and dependencies on undeclared steps are rejected here.
    """
    names = [s.name for s in steps]
    dupes = sorted(n for n, count in Counter(names).items() if count > 1)
    if dupes:
        raise DuplicateStepError(f"Duplicate step names found: {dupes}")

    dependents: Dict[str, Set[str]] = {n: set() for n in names}
    pending: Dict[str, int] = {n: 0 for n in names}

    for step in steps:
        for dep in dict.fromkeys(step.dependencies):
            if dep not in dependents:
                raise UnknownDependencyError(
                    f"Step '{step.name}' depends on missing step '{dep}'",
                    step=step.name,
                    details={"known_steps": sorted(dependents)},
                )
            dependents[dep].add(step.name)
            pending[step.name] += 1

    return dependents, pending


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Group steps into rounds: round N holds the steps whose dependencies all
    sit in rounds before N. Names within a round are sorted.

    Steps left over once no round can be formed sit on a cycle.
    """
    pending = dict(indeg)
    rounds: List[List[str]] = []
    current = sorted(n for n, count in pending.items() if count == 0)

    while current:
        rounds.append(current)
        unlocked: Set[str] = set()
        for name in current:
            for child in adj.get(name, ()):
                pending[child] -= 1
                if pending[child] == 0:
                    unlocked.add(child)
        current = sorted(unlocked)

    placed = sum(len(r) for r in rounds)
    if placed != len(pending):
        stuck = sorted(n for n, count in pending.items() if count > 0)
        raise CycleDetectedError(
            f"Dependency graph has a cycle. Stuck steps: {stuck}",
            details={"stuck": stuck},
        )

    return rounds


def validate_pipeline(spec: PipelineSpec) -> List[List[str]]:
    """
    Reject a pipeline before anything runs. Returns its execution rounds.

    Fails on duplicate names, unknown dependency targets, cycles, and
    parallel steps naming an undeclared group.
    """
    adj, indeg = build_dag(spec.steps)
    levels = topo_levels(adj, indeg)

    for step in spec.steps:
        group = step.group_name
        if group is None or group == DEFAULT_GROUP:
            continue
        if group not in spec.groups:
            raise UnknownGroupError(
                f"Step '{step.name}' uses undeclared parallel group '{group}'",
                step=step.name,
                details={"known_groups": sorted(spec.groups)},
            )
    return levels


# ----------------------------------------------------------------------
# Round-by-round resolution
# ----------------------------------------------------------------------

def ready_steps(
    steps: Iterable[StepSpec],
    completed: AbstractSet[str],
    finished: Optional[AbstractSet[str]] = None,
) -> List[StepSpec]:
    """
    Steps not yet finished whose every dependency is completed.

    `finished` defaults to `completed`; the executor passes a larger set
    (completed + failed + skipped) when it keeps going after failures.
    An empty result while some step is still unfinished means the graph
    cannot make progress.
    """
    steps = list(steps)
    done = completed if finished is None else finished
    ready = [
        s for s in steps
        if s.name not in done and all(d in completed for d in s.dependencies)
    ]
    if not ready:
        pending = sorted(s.name for s in steps if s.name not in done)
        if pending:
            raise GraphStalledError(
                "No runnable steps left: cycle or reference to an unknown step",
                details={"pending": pending},
            )
    return ready


def resolve_input(step: StepSpec, results: Mapping[str, Any], initial_input: Any) -> Any:
    """
    Effective input of a step:
      - no dependencies -> literal_input if present, else the pipeline input
      - otherwise [results[dep] for dep in dependencies], in declaration order
    """
    if not step.dependencies:
        return step.literal_input if step.literal_input is not None else initial_input
    return [results[dep] for dep in step.dependencies]
