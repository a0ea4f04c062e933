# registry.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Protocol, runtime_checkable

from .errors import UnknownStepTypeError
from .model import StepSpec, Usage


@dataclass(frozen=True)
class StepOutput:
    """Optional return wrapper so a step can report what it consumed."""
    value: Any
    tokens: int = 0
    cost_usd: float = 0.0


@runtime_checkable
class StepImplementation(Protocol):
    def execute(self, step_input: Any) -> Any:
        ...


StepFactory = Callable[[Mapping[str, Any]], StepImplementation]


class FunctionStep:
    """Adapts a plain `fn(step_input) -> output` callable."""

    def __init__(self, fn: Callable[[Any], Any], estimate: Optional[Callable[[Any], Usage]] = None):
        if not callable(fn):
            raise TypeError(f"Step function must be callable (type={type(fn).__name__})")
        self._fn = fn
        self._estimate = estimate

    def execute(self, step_input: Any) -> Any:
        return self._fn(step_input)

    def estimate(self, step_input: Any) -> Usage:
        if self._estimate is None:
            return Usage()
        return self._estimate(step_input)

    def __repr__(self) -> str:
        return f"FunctionStep({getattr(self._fn, '__name__', self._fn)!r})"


class StepRegistry:
    """
    Maps step_type -> implementation.

    Entries are either ready implementations (shared by every step of that
    type) or factories called with the step's `config` at bind time. Binding
    happens once per run, before any step executes.
    """

    def __init__(self) -> None:
        self._impls: Dict[str, StepImplementation] = {}
        self._factories: Dict[str, StepFactory] = {}

    def register(self, step_type: str, impl: StepImplementation | Callable[[Any], Any]) -> None:
        self._check_free(step_type)
        if not isinstance(impl, StepImplementation):
            impl = FunctionStep(impl)
        self._impls[step_type] = impl

    def register_factory(self, step_type: str, factory: StepFactory) -> None:
        self._check_free(step_type)
        if not callable(factory):
            raise TypeError(f"Factory for {step_type!r} must be callable")
        self._factories[step_type] = factory

    def step(self, step_type: str) -> Callable[[Callable[[Any], Any]], Callable[[Any], Any]]:
        """Decorator: @registry.step("upper") def upper(text): ..."""
        def deco(fn: Callable[[Any], Any]) -> Callable[[Any], Any]:
            self.register(step_type, FunctionStep(fn))
            return fn
        return deco

    def _check_free(self, step_type: str) -> None:
        if not step_type or not isinstance(step_type, str):
            raise ValueError("step_type must be a non-empty string")
        if step_type in self._impls or step_type in self._factories:
            raise ValueError(f"Step type {step_type!r} is already registered")

    def __contains__(self, step_type: object) -> bool:
        return step_type in self._impls or step_type in self._factories

    @property
    def step_types(self) -> list[str]:
        return sorted(set(self._impls) | set(self._factories))

    def resolve(self, step: StepSpec) -> StepImplementation:
        if step.step_type in self._impls:
            return self._impls[step.step_type]
        if step.step_type in self._factories:
            impl = self._factories[step.step_type](dict(step.config))
            if not isinstance(impl, StepImplementation):
                raise TypeError(
                    f"Factory for {step.step_type!r} returned {type(impl).__name__}, "
                    "which has no execute(step_input)"
                )
            return impl
        raise UnknownStepTypeError(
            f"Step '{step.name}' has unknown step type '{step.step_type}'",
            step=step.name,
            details={"known_types": self.step_types},
        )

    def bind(self, steps: Iterable[StepSpec]) -> Dict[str, StepImplementation]:
        """Resolve every step's implementation up front (fail fast on unknown types)."""
        return {s.name: self.resolve(s) for s in steps}
