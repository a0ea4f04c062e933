# steps/completion.py
from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Protocol

from ..errors import StepValidationError
from ..model import Usage
from ..registry import StepOutput

DEFAULT_MODEL = "mock-small"
CHARS_PER_TOKEN = 3


@dataclass(frozen=True)
class Completion:
    text: str
    tokens: int
    cost_usd: float
    model: str
    provider: str


class CompletionProvider(Protocol):
    """Anything that can turn (system prompt, user input) into text."""
    name: str

    def complete(self, system_prompt: str, user_input: str, *, model: str) -> Completion:
        ...


def estimate_tokens(*texts: str) -> int:
    return math.ceil(sum(len(t) for t in texts) / CHARS_PER_TOKEN)


class MockCompletionProvider:
    """
    Deterministic offline provider.

    Token count is ceil(prompt chars / 3) and each call costs `cost_per_call`.
    `failures` are raised, in order, by the first calls (retry tests).
    """

    name = "mock"

    def __init__(
        self,
        *,
        cost_per_call: float = 0.001,
        responder: Optional[Callable[[str, str], str]] = None,
        failures: Optional[List[BaseException]] = None,
    ):
        self.cost_per_call = cost_per_call
        self._responder = responder
        self._failures = list(failures or [])
        self._lock = threading.Lock()
        self.calls = 0

    def complete(self, system_prompt: str, user_input: str, *, model: str = DEFAULT_MODEL) -> Completion:
        with self._lock:
            self.calls += 1
            failure = self._failures.pop(0) if self._failures else None
        if failure is not None:
            raise failure

        if self._responder is not None:
            text = self._responder(system_prompt, user_input)
        else:
            text = f"[{model}] {user_input}"
        return Completion(
            text=text,
            tokens=estimate_tokens(system_prompt, user_input),
            cost_usd=self.cost_per_call,
            model=model,
            provider=self.name,
        )


class CompletionStep:
    """Prompt-template step backed by a CompletionProvider."""

    def __init__(
        self,
        provider: CompletionProvider,
        *,
        prompt: str = "{input}",
        system: str = "",
        model: str = DEFAULT_MODEL,
    ):
        self.provider = provider
        self.prompt = prompt
        self.system = system
        self.model = model

    def render(self, step_input: Any) -> str:
        if isinstance(step_input, (list, tuple)):
            text = "\n".join("" if v is None else str(v) for v in step_input)
        else:
            text = "" if step_input is None else str(step_input)
        try:
            return self.prompt.format(input=text)
        except (IndexError, KeyError) as e:
            raise StepValidationError(f"Prompt placeholder has no value: {e}") from e

    def execute(self, step_input: Any) -> StepOutput:
        c = self.provider.complete(self.system, self.render(step_input), model=self.model)
        return StepOutput(value=c.text, tokens=c.tokens, cost_usd=c.cost_usd)

    def estimate(self, step_input: Any) -> Usage:
        return Usage(
            tokens=estimate_tokens(self.system, self.render(step_input)),
            cost_usd=float(getattr(self.provider, "cost_per_call", 0.0)),
        )


def completion_factory(provider: CompletionProvider) -> Callable[[Mapping[str, Any]], CompletionStep]:
    def factory(config: Mapping[str, Any]) -> CompletionStep:
        return CompletionStep(
            provider,
            prompt=str(config.get("prompt", "{input}")),
            system=str(config.get("system", "")),
            model=str(config.get("model", DEFAULT_MODEL)),
        )
    return factory
