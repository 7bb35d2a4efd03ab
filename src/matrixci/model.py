# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Dict, List, Optional


class ExecutorKind(str, Enum):
    NATIVE = "native"
    CROSS = "cross"


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SEALED = "sealed"


class TriggerEvent(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


# ---------------------------------------------------------------------
# Matrix definition
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command (step) inside a job template."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CacheSpec:
    """
    Cache key inputs for a job.

    namespace:        logical cache namespace, also the readable key prefix
                      (e.g. "linux-cargo-")
    lock_files:       globs whose contents fingerprint the dependency lock state
    paths:            dirs/files to restore before and save after the job
    restore_prefixes: fallback prefixes tried on an exact miss
    """
    namespace: str
    lock_files: tuple[str, ...] = ()
    paths: tuple[str, ...] = ()
    restore_prefixes: tuple[str, ...] = ()

    def prefixes(self) -> list[str]:
        # longest (most specific) first
        candidates = list(self.restore_prefixes) or [self.namespace]
        return sorted(dict.fromkeys(candidates), key=len, reverse=True)


@dataclass(frozen=True)
class TargetOverride:
    vars: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None


@dataclass
class TargetGroup:
    name: str
    targets: List[str]
    steps: List[Step]
    mode: ExecutorKind = ExecutorKind.NATIVE
    env: Dict[str, str] = field(default_factory=dict)
    vars: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CacheSpec] = None
    timeout: Optional[float] = None
    display: Optional[str] = None
    overrides: Dict[str, TargetOverride] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.mode = ExecutorKind(self.mode)
        dupes = sorted({t for t in self.targets if self.targets.count(t) > 1})
        if dupes:
            raise ValueError(f"Group '{self.name}' lists duplicate targets: {dupes}")
        unknown = sorted(set(self.overrides) - set(self.targets))
        if unknown:
            raise ValueError(f"Group '{self.name}' has overrides for unknown targets: {unknown}")


@dataclass(frozen=True)
class Trigger:
    event: TriggerEvent
    ref: str = ""


@dataclass
class TriggerRules:
    """
    push_branches: None means "push events never trigger";
                   a list of fnmatch patterns otherwise.
    """
    push_branches: Optional[List[str]] = None
    pull_request: bool = False

    def matches(self, trigger: Trigger) -> bool:
        if trigger.event == TriggerEvent.PULL_REQUEST:
            return self.pull_request
        if self.push_branches is None:
            return False
        branch = trigger.ref.removeprefix("refs/heads/")
        return any(fnmatch(branch, p) for p in self.push_branches)


@dataclass
class MatrixSpec:
    name: str
    groups: List[TargetGroup]
    triggers: TriggerRules = field(default_factory=lambda: TriggerRules(push_branches=["*"], pull_request=True))
    concurrency: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        names = [g.name for g in self.groups]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate group names found: {dupes}")

    def concurrency_group(self, trigger: Trigger) -> str:
        if self.concurrency:
            return self.concurrency
        return f"{self.name}-{trigger.ref or 'local'}"


# ---------------------------------------------------------------------
# Expanded jobs
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobSpec:
    """A concrete job: one target of one group. Immutable once expanded."""
    index: int
    name: str
    group: str
    target: str
    kind: ExecutorKind
    steps: tuple[Step, ...]
    env: Dict[str, str] = field(default_factory=dict)
    vars: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CacheSpec] = None
    timeout: Optional[float] = None
    display: str = ""


# ---------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepRecord:
    index: int
    name: str
    command: str
    exit_code: int | None
    output: str
    duration: float
    status: JobStatus


@dataclass(frozen=True)
class JobOutcome:
    job: JobSpec
    status: JobStatus
    failing_step: Optional[int] = None
    steps: tuple[StepRecord, ...] = ()
    duration: float = 0.0
    error_kind: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1
    cache_hit: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == JobStatus.SUCCESS

    @property
    def output(self) -> str:
        return "".join(s.output for s in self.steps)

    @property
    def failing_step_name(self) -> Optional[str]:
        if self.failing_step is None:
            return None
        return self.job.steps[self.failing_step].name


@dataclass
class ExecutionRun:
    """
    One triggered execution of a matrix.

    Populated as jobs complete; only ResultAggregator writes `verdict`
    and `state=SEALED`.
    """
    run_id: str
    trigger: Trigger
    group: str
    jobs: List[JobSpec] = field(default_factory=list)
    outcomes: List[JobOutcome] = field(default_factory=list)
    verdict: Optional[Verdict] = None
    state: RunState = RunState.PENDING
    superseded_by: Optional[str] = None
    interrupted: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def sealed(self) -> bool:
        return self.state == RunState.SEALED
