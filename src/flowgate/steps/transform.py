# steps/transform.py
from __future__ import annotations

from typing import Any, Mapping

from ..errors import PipelineValidationError, StepValidationError


# ---------------------------------------------------------------------
# Deterministic transform steps
# ---------------------------------------------------------------------

class IdentityStep:
    """Returns its input unchanged."""

    def execute(self, step_input: Any) -> Any:
        return step_input


class JoinStep:
    """Joins a list input (dependency outputs) into one string."""

    def __init__(self, separator: str = "\n"):
        self.separator = separator

    def execute(self, step_input: Any) -> str:
        if isinstance(step_input, (list, tuple)):
            return self.separator.join("" if v is None else str(v) for v in step_input)
        return "" if step_input is None else str(step_input)


class TemplateStep:
    """
    `str.format` over the input.

    A list input (dependency outputs) is passed positionally ({0}, {1}, ...);
    the whole input is always available as {input}.
    """

    def __init__(self, template: str):
        self.template = template

    def execute(self, step_input: Any) -> str:
        args = list(step_input) if isinstance(step_input, (list, tuple)) else [step_input]
        try:
            return self.template.format(*args, input=step_input)
        except (IndexError, KeyError) as e:
            raise StepValidationError(
                f"Template placeholder has no value: {e}",
                details={"template": self.template},
            ) from e


def join_factory(config: Mapping[str, Any]) -> JoinStep:
    return JoinStep(separator=str(config.get("separator", "\n")))


def template_factory(config: Mapping[str, Any]) -> TemplateStep:
    template = config.get("template")
    if not isinstance(template, str) or not template:
        raise PipelineValidationError(
            "template step requires a non-empty 'template' string in its config",
            details={"config": dict(config)},
        )
    return TemplateStep(template)
