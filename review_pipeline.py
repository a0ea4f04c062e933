# review_pipeline.py
# Draft -> parallel critiques -> merged review, using the mock completion provider.
from __future__ import annotations

from flowgate.dsl import group, matrix, parallel, pipeline, step


def register_steps(registry):
    # word count of the draft, as a deterministic local step
    registry.register("word-count", lambda parts: len(" ".join(map(str, parts)).split()))


def pipeline_spec():
    critics = matrix("angle", ["pacing", "characters", "dialogue"]).steps(
        lambda angle: parallel(
            f"critic-{angle}",
            "completion",
            group="critics",
            needs=["draft"],
            config={
                "system": f"You review {angle} only.",
                "prompt": "Critique this draft:\n{input}",
            },
        )
    )
    return pipeline(
        "review",
        step(
            "draft",
            "completion",
            config={"prompt": "Write a one-paragraph film treatment about: {input}"},
        ),
        step("length", "word-count", needs=["draft"]),
        *critics,
        step(
            "summary",
            "template",
            needs=["length", *[c.name for c in critics]],
            config={"template": "Draft length: {0} words\n{1}\n{2}\n{3}"},
        ),
        groups=[group("critics", max_concurrency=2, retry_count=1, retry_delay=2.0)],
        description="Draft, critique in parallel, summarise",
    )
