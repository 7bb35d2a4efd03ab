# aggregate.py
from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from .errors import InvariantViolation
from .model import ExecutionRun, JobOutcome, JobStatus, RunState, Verdict


def aggregate(outcomes: Iterable[JobOutcome]) -> Verdict:
    """Pass iff every outcome is a success. An empty run passes."""
    return Verdict.PASS if all(o.status == JobStatus.SUCCESS for o in outcomes) else Verdict.FAIL


@dataclass
class Report:
    """Structured per-run record for an external presentation layer."""
    run_id: str
    group: str
    trigger: Dict[str, str]
    verdict: Verdict
    rows: List[Dict[str, Any]] = field(default_factory=list)
    superseded_by: str | None = None
    interrupted: bool = False
    duration: float = 0.0

    @property
    def failures(self) -> List[Dict[str, Any]]:
        return [r for r in self.rows if r["status"] != JobStatus.SUCCESS.value]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "group": self.group,
            "trigger": self.trigger,
            "verdict": self.verdict.value,
            "superseded_by": self.superseded_by,
            "interrupted": self.interrupted,
            "duration": round(self.duration, 3),
            "jobs": self.rows,
            "failures": self.failures,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)


def _row(outcome: JobOutcome) -> Dict[str, Any]:
    return {
        "job": outcome.job.name,
        "group": outcome.job.group,
        "target": outcome.job.target,
        "display": outcome.job.display,
        "status": outcome.status.value,
        "failing_step": outcome.failing_step,
        "failing_step_name": outcome.failing_step_name,
        "error_kind": outcome.error_kind,
        "error": outcome.error,
        "attempts": outcome.attempts,
        "cache": outcome.cache_hit,
        "duration": round(outcome.duration, 3),
    }


def build_report(run: ExecutionRun) -> Report:
    if not run.sealed or run.verdict is None:
        raise InvariantViolation(f"run {run.run_id} must be sealed before reporting")
    finished = run.finished_at or time.time()
    return Report(
        run_id=run.run_id,
        group=run.group,
        trigger={"event": run.trigger.event.value, "ref": run.trigger.ref},
        verdict=run.verdict,
        rows=[_row(o) for o in run.outcomes],
        superseded_by=run.superseded_by,
        interrupted=run.interrupted,
        duration=finished - run.started_at,
    )


class ResultAggregator:
    """
    Owns an ExecutionRun's outcomes and verdict.

    Workers call record() from any thread; seal() fixes the outcome order
    (expansion order, not completion order) and the verdict.
    """

    def __init__(self, run: ExecutionRun):
        self.run = run
        self._lock = threading.Lock()
        self._by_index: Dict[int, JobOutcome] = {}

    def record(self, outcome: JobOutcome) -> None:
        with self._lock:
            if self.run.sealed:
                raise InvariantViolation(f"run {self.run.run_id} is sealed; cannot record {outcome.job.name}")
            if outcome.job.index in self._by_index:
                raise InvariantViolation(f"duplicate outcome for {outcome.job.name}")
            self._by_index[outcome.job.index] = outcome
            self.run.outcomes = [self._by_index[i] for i in sorted(self._by_index)]

    def seal(self) -> ExecutionRun:
        with self._lock:
            if self.run.sealed:
                return self.run
            missing = [j.name for j in self.run.jobs if j.index not in self._by_index]
            if missing:
                raise InvariantViolation(f"run {self.run.run_id} sealed without outcomes for {missing}")
            self.run.outcomes = [self._by_index[i] for i in sorted(self._by_index)]
            self.run.verdict = aggregate(self.run.outcomes)
            self.run.state = RunState.SEALED
            self.run.finished_at = time.time()
            return self.run
