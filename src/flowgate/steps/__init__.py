from __future__ import annotations

from typing import Optional

from ..registry import StepRegistry
from .completion import (
    Completion,
    CompletionProvider,
    CompletionStep,
    MockCompletionProvider,
    completion_factory,
)
from .transform import IdentityStep, JoinStep, TemplateStep, join_factory, template_factory


def register_builtins(
    registry: StepRegistry,
    *,
    provider: Optional[CompletionProvider] = None,
) -> StepRegistry:
    """Register identity / join / template / completion on `registry`."""
    registry.register("identity", IdentityStep())
    registry.register_factory("join", join_factory)
    registry.register_factory("template", template_factory)
    registry.register_factory("completion", completion_factory(provider or MockCompletionProvider()))
    return registry


def default_registry(*, provider: Optional[CompletionProvider] = None) -> StepRegistry:
    return register_builtins(StepRegistry(), provider=provider)


__all__ = [
    "Completion",
    "CompletionProvider",
    "CompletionStep",
    "IdentityStep",
    "JoinStep",
    "MockCompletionProvider",
    "TemplateStep",
    "default_registry",
    "register_builtins",
]
