# loader.py
"""
Pipeline loading.

Supported sources:
  - .py          runs the file; it must define `pipeline_spec() -> PipelineSpec`
                 or `PIPELINE = PipelineSpec(...)`. An optional
                 `register_steps(registry)` adds custom step types.
  - .json        pipeline document (see PipelineDocument)
  - .yaml / .yml same document shape, parsed with PyYAML
"""
from __future__ import annotations

import json
import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import FailureKind, PipelineValidationError
from .model import ParallelGroupSpec, PipelineSpec, RetryPolicy, RunOptions, StepSpec, Usage
from .registry import StepRegistry

log = logging.getLogger(__name__)

PY_SUFFIXES = {".py"}
DOC_SUFFIXES = {".json", ".yaml", ".yml"}


# ---------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------

class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RetryDocument(_Strict):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)


class UsageDocument(_Strict):
    tokens: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0)
    wall_time_sec: float = Field(default=0.0, ge=0)


class GroupDocument(_Strict):
    max_concurrency: int = Field(default=3, ge=1)
    timeout: Optional[float] = Field(default=30.0, gt=0)
    retry_count: int = Field(default=0, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)


class OptionsDocument(_Strict):
    max_concurrency: int = Field(default=3, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)
    use_cache: bool = True
    fail_fast: bool = True
    cache_ttl: float = Field(default=24 * 60 * 60, gt=0)
    retry: RetryDocument = Field(default_factory=RetryDocument)


class StepDocument(_Strict):
    name: str = Field(min_length=1)
    step_type: str = Field(alias="type", min_length=1)
    needs: List[str] = Field(default_factory=list)
    input: Any = None
    parallel: bool = False
    group: Optional[str] = None
    retry: Optional[RetryDocument] = None
    retry_kinds: Optional[List[FailureKind]] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    estimate: Optional[UsageDocument] = None

    @field_validator("group")
    @classmethod
    def _group_not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("group must not be blank")
        return v


class PipelineDocument(_Strict):
    name: str = Field(min_length=1)
    description: str = ""
    version: str = "1.0"
    options: OptionsDocument = Field(default_factory=OptionsDocument)
    groups: Dict[str, GroupDocument] = Field(default_factory=dict)
    steps: List[StepDocument] = Field(min_length=1)

    def to_spec(self) -> PipelineSpec:
        o = self.options
        options = RunOptions(
            max_concurrency=o.max_concurrency,
            timeout=o.timeout,
            use_cache=o.use_cache,
            retry=RetryPolicy(o.retry.max_attempts, o.retry.base_delay),
            cache_ttl=o.cache_ttl,
            fail_fast=o.fail_fast,
        )
        groups = {
            name: ParallelGroupSpec(
                name=name,
                max_concurrency=g.max_concurrency,
                per_attempt_timeout=g.timeout,
                retry_count=g.retry_count,
                retry_delay=g.retry_delay,
            )
            for name, g in self.groups.items()
        }
        steps = [
            StepSpec(
                name=s.name,
                step_type=s.step_type,
                dependencies=tuple(s.needs),
                literal_input=s.input,
                is_parallel=s.parallel,
                parallel_group=s.group,
                retry=RetryPolicy(s.retry.max_attempts, s.retry.base_delay) if s.retry else None,
                retry_kinds=tuple(s.retry_kinds) if s.retry_kinds is not None else None,
                config=s.config,
                estimate=Usage(**s.estimate.model_dump()) if s.estimate else None,
            )
            for s in self.steps
        ]
        return PipelineSpec(
            name=self.name,
            steps=tuple(steps),
            groups=groups,
            options=options,
            description=self.description,
            version=self.version,
        )


# ---------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------

def parse_pipeline(data: Any, *, source: str = "<data>") -> PipelineSpec:
    """Validate a decoded pipeline document and convert it to a PipelineSpec."""
    if not isinstance(data, dict):
        raise PipelineValidationError(
            f"Pipeline document must be a mapping, got {type(data).__name__}",
            details={"source": source},
        )
    try:
        doc = PipelineDocument.model_validate(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise PipelineValidationError(
            f"Invalid pipeline document {source}",
            details={"problems": problems},
        ) from e
    try:
        return doc.to_spec()
    except ValueError as e:
        raise PipelineValidationError(f"Invalid pipeline document {source}: {e}") from e


def _read_document(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PipelineValidationError(f"Could not parse {path.name}: {e}") from e


def _load_python(path: Path, registry: Optional[StepRegistry]) -> PipelineSpec:
    module_name = f"flowgate_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    spec = None
    if "pipeline_spec" in globals_dict and callable(globals_dict["pipeline_spec"]):
        spec = globals_dict["pipeline_spec"]()
    elif "PIPELINE" in globals_dict:
        spec = globals_dict["PIPELINE"]

    if not isinstance(spec, PipelineSpec):
        raise PipelineValidationError(
            f"{path.name} must return/define a PipelineSpec. "
            "Define pipeline_spec() -> PipelineSpec or PIPELINE = pipeline(...).",
            details={"found": type(spec).__name__},
        )

    hook = globals_dict.get("register_steps")
    if registry is not None and callable(hook):
        hook(registry)
    return spec


def load_pipeline(path: str | Path, registry: Optional[StepRegistry] = None) -> PipelineSpec:
    """
    Load a pipeline from a .py, .json, .yaml or .yml file.

    `registry`, when given, receives the custom step types a .py pipeline
    registers through `register_steps(registry)`.
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    if p.suffix in PY_SUFFIXES:
        spec = _load_python(p, registry)
    elif p.suffix in DOC_SUFFIXES:
        spec = parse_pipeline(_read_document(p), source=p.name)
    else:
        raise ValueError(
            f"Unsupported pipeline format {p.suffix!r} ({p.name}); "
            f"use one of {sorted(PY_SUFFIXES | DOC_SUFFIXES)}"
        )

    log.debug("Loaded pipeline %s (%d steps) from %s", spec.name, len(spec.steps), p)
    return spec
