from .dsl import sh, cache, override, group, cross, native, on, matrix
from .expand import expand
from .model import (
    ExecutorKind,
    ExecutionRun,
    JobOutcome,
    JobSpec,
    JobStatus,
    MatrixSpec,
    Step,
    TargetGroup,
    Trigger,
    TriggerEvent,
    Verdict,
)
from .runner import run_matrix
from .scheduler import Scheduler

__all__ = [
    "sh", "cache", "override", "group", "cross", "native", "on", "matrix",
    "expand", "run_matrix", "Scheduler",
    "ExecutorKind", "ExecutionRun", "JobOutcome", "JobSpec", "JobStatus",
    "MatrixSpec", "Step", "TargetGroup", "Trigger", "TriggerEvent", "Verdict",
]
