from .budget import ResourceGovernor
from .cache import MemoStore
from .dsl import build, group, matrix, parallel, pipeline, step, PipelineBuilder
from .errors import FailureKind, FlowError
from .gate import ConcurrencyGate
from .loader import load_pipeline
from .model import ParallelGroupSpec, PipelineSpec, RetryPolicy, RunOptions, RunStatus, StepSpec, Usage
from .registry import StepOutput, StepRegistry
from .runner import PipelineExecutor, RunResult

__version__ = "0.1.0"

__all__ = [
    "build", "group", "matrix", "parallel", "pipeline", "step", "PipelineBuilder",
    "ConcurrencyGate", "FailureKind", "FlowError", "MemoStore", "ResourceGovernor",
    "ParallelGroupSpec", "PipelineSpec", "RetryPolicy", "RunOptions", "RunStatus", "StepSpec", "Usage",
    "StepOutput", "StepRegistry", "PipelineExecutor", "RunResult", "load_pipeline",
]
