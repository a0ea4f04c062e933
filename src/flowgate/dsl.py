# dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import FailureKind
from .model import ParallelGroupSpec, PipelineSpec, RetryPolicy, RunOptions, StepSpec, Usage


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def step(
    name: str,
    step_type: str,
    *,
    needs: Optional[Sequence[str]] = None,
    input: Any = None,
    retry: Optional[RetryPolicy] = None,
    retry_kinds: Optional[Iterable[FailureKind | str]] = None,
    config: Optional[Mapping[str, Any]] = None,
    estimate: Optional[Usage] = None,
) -> StepSpec:
    """Create a serial step."""
    return StepSpec(
        name=name,
        step_type=step_type,
        dependencies=tuple(needs or ()),
        literal_input=input,
        retry=retry,
        retry_kinds=tuple(retry_kinds) if retry_kinds is not None else None,
        config=dict(config or {}),
        estimate=estimate,
    )


def parallel(
    name: str,
    step_type: str,
    *,
    group: Optional[str] = None,
    needs: Optional[Sequence[str]] = None,
    input: Any = None,
    config: Optional[Mapping[str, Any]] = None,
    estimate: Optional[Usage] = None,
) -> StepSpec:
    """Create a parallel step. Without `group` it joins the implicit default group."""
    return StepSpec(
        name=name,
        step_type=step_type,
        dependencies=tuple(needs or ()),
        literal_input=input,
        is_parallel=True,
        parallel_group=group,
        config=dict(config or {}),
        estimate=estimate,
    )


def group(
    name: str,
    *,
    max_concurrency: int = 3,
    timeout: Optional[float] = 30.0,
    retry_count: int = 0,
    retry_delay: float = 1.0,
) -> ParallelGroupSpec:
    return ParallelGroupSpec(
        name=name,
        max_concurrency=max_concurrency,
        per_attempt_timeout=timeout,
        retry_count=retry_count,
        retry_delay=retry_delay,
    )


# ---------------------------------------------------------------------
# Pipeline helper
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *steps: StepSpec,
    groups: Iterable[ParallelGroupSpec] = (),
    max_concurrency: int = 3,
    timeout: Optional[float] = None,
    use_cache: bool = True,
    retry: Optional[RetryPolicy] = None,
    cache_ttl: Optional[float] = None,
    fail_fast: bool = True,
    description: str = "",
) -> PipelineSpec:
    """
    Pipeline definition helper.

    Users can write:
        from flowgate import pipeline, step, parallel, group

        def pipeline_spec():
            return pipeline(
                "review",
                step("draft", "completion", config={"prompt": "Draft: {input}"}),
                parallel("critic", "completion", group="review", needs=["draft"]),
                groups=[group("review", max_concurrency=2)],
            )

    Or define PIPELINE = pipeline(...) directly.
    """
    if not steps:
        raise ValueError(f"pipeline({name!r}) must have at least one step")

    options_kwargs: Dict[str, Any] = {
        "max_concurrency": max_concurrency,
        "timeout": timeout,
        "use_cache": use_cache,
        "fail_fast": fail_fast,
    }
    if retry is not None:
        options_kwargs["retry"] = retry
    if cache_ttl is not None:
        options_kwargs["cache_ttl"] = cache_ttl

    return PipelineSpec(
        name=name,
        steps=tuple(steps),
        groups={g.name: g for g in groups},
        options=RunOptions(**options_kwargs),
        description=description,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class PipelineBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: List[StepSpec] = []
        self._groups: List[ParallelGroupSpec] = []
        self._options: Dict[str, Any] = {}
        self._description = ""

    def add_step(self, name: str, step_type: str, **kwargs):
        self._steps.append(step(name, step_type, **kwargs))
        return self

    def add_parallel(self, name: str, step_type: str, **kwargs):
        self._steps.append(parallel(name, step_type, **kwargs))
        return self

    def with_group(self, name: str, **kwargs):
        self._groups.append(group(name, **kwargs))
        return self

    def with_options(self, **options):
        self._options.update(options)
        return self

    def describe(self, text: str):
        self._description = text
        return self

    def build(self) -> PipelineSpec:
        if not self._steps:
            raise ValueError(f"Pipeline '{self.name}' has no steps")
        return pipeline(
            self.name,
            *self._steps,
            groups=self._groups,
            description=self._description,
            **self._options,
        )


def build(name: str) -> PipelineBuilder:
    """Convenience: build('review').add_step(...).build()"""
    return PipelineBuilder(name)


# ---------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------

class Matrix:
    """
    Fan-out expander.

    Example:
        matrix("tone", ["formal", "casual"]).steps(
            lambda v: parallel(f"rewrite-{v}", "completion", group="rewrite", needs=["draft"])
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def steps(self, builder: Callable[[Any], StepSpec]) -> List[StepSpec]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)
