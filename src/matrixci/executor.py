# executor.py
from __future__ import annotations

import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .cache import CacheHandle
from .errors import InvariantViolation, StepFailure
from .model import JobOutcome, JobSpec, JobStatus, StepRecord
from .process import CancellationToken, ProcessResult, SpawnFn, spawn
from .toolchain import ExecutorHandle
from .ui.console import get_console

# ${{ toolchain }} in a step is replaced with the resolved program path.
TOOLCHAIN_PLACEHOLDERS = ("${{ toolchain }}", "${{toolchain}}")


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED, JobState.TIMED_OUT}


@dataclass
class JobStateMachine:
    """
    Pending -> Running(0) -> Running(1) ... -> terminal.

    Step indices only move forward; terminal states are final. Anything
    else is a programming error.
    """
    job: str
    state: JobState = JobState.PENDING
    step: Optional[int] = None

    def start_step(self, index: int) -> None:
        if self.state in TERMINAL_STATES:
            raise InvariantViolation(f"[{self.job}] cannot start step {index}: job already {self.state.value}")
        if self.state == JobState.RUNNING and self.step is not None and index <= self.step:
            raise InvariantViolation(f"[{self.job}] step index moved backwards: {self.step} -> {index}")
        self.state = JobState.RUNNING
        self.step = index

    def finish(self, state: JobState) -> None:
        if state not in TERMINAL_STATES:
            raise InvariantViolation(f"[{self.job}] {state.value} is not a terminal state")
        if self.state in TERMINAL_STATES:
            raise InvariantViolation(f"[{self.job}] already {self.state.value}, cannot become {state.value}")
        self.state = state

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


def render_command(command: str, handle: ExecutorHandle) -> str:
    for placeholder in TOOLCHAIN_PLACEHOLDERS:
        command = command.replace(placeholder, handle.program)
    return command


def _status_of(state: JobState) -> JobStatus:
    return {
        JobState.SUCCEEDED: JobStatus.SUCCESS,
        JobState.FAILED: JobStatus.FAILED,
        JobState.CANCELLED: JobStatus.CANCELLED,
        JobState.TIMED_OUT: JobStatus.TIMED_OUT,
    }[state]


def _timeout_message(job: JobSpec, state: JobState) -> Optional[str]:
    if state != JobState.TIMED_OUT:
        return None
    return f"timed out after {job.timeout:g}s" if job.timeout else "timed out"


class JobExecutor:
    """
    Runs one job's steps strictly in order against a working directory.

    Fail-fast: the first failing step ends the job and later steps never
    run. No retries here; that is a scheduler policy.
    """

    def __init__(self, spawn_fn: SpawnFn = spawn, base_env: Optional[Dict[str, str]] = None, stream_output: bool = False):
        self.spawn = spawn_fn
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.stream_output = stream_output

    def _step_env(self, job: JobSpec, handle: ExecutorHandle, step_env: Dict[str, str]) -> Dict[str, str]:
        env = dict(self.base_env)
        env.update(handle.env)
        env.update(job.env)
        env.update(step_env)
        env["MATRIXCI_TARGET"] = job.target
        env["MATRIXCI_JOB"] = job.name
        return env

    def execute(
        self,
        job: JobSpec,
        handle: ExecutorHandle,
        cache_handle: Optional[CacheHandle],
        token: CancellationToken,
        *,
        workdir: str | Path = ".",
        deadline: Optional[float] = None,
    ) -> JobOutcome:
        """
        Args:
            job: Expanded job
            handle: Resolved toolchain for job.target
            cache_handle: Restored cache state, if the job uses a cache
            token: Checked between steps and polled while a step runs
            workdir: Job working directory (steps' cwd is relative to it)
            deadline: Absolute time.monotonic() wall-clock limit

        Returns:
            JobOutcome
        """
        console = get_console()
        machine = JobStateMachine(job.name)
        records: List[StepRecord] = []
        root = Path(workdir)
        started = time.monotonic()
        failing: Optional[int] = None
        failure: Optional[StepFailure] = None

        for index, step in enumerate(job.steps):
            if token.cancelled:
                machine.finish(JobState.CANCELLED)
                break
            if deadline is not None and time.monotonic() >= deadline:
                machine.finish(JobState.TIMED_OUT)
                failing = index
                break

            machine.start_step(index)
            command = render_command(step.run, handle)
            console.print_step(job.name, index, step.name)

            cwd = (root / step.cwd) if step.cwd else root
            if not cwd.exists():
                records.append(StepRecord(index, step.name, command, None, f"cwd not found: {cwd}\n", 0.0, JobStatus.FAILED))
                failing = index
                failure = StepFailure(job.name, step.name, index, f"cd {cwd}", None)
                machine.finish(JobState.FAILED)
                break

            on_output: Optional[Callable[[str], None]] = None
            if self.stream_output:
                on_output = lambda line, _job=job.name: console.print_output(_job, line)

            result: ProcessResult = self.spawn(
                command,
                cwd=cwd,
                env=self._step_env(job, handle, step.env),
                token=token,
                deadline=deadline,
                on_output=on_output,
            )

            if result.cancelled:
                status, state = JobStatus.CANCELLED, JobState.CANCELLED
            elif result.timed_out:
                status, state = JobStatus.TIMED_OUT, JobState.TIMED_OUT
            elif result.exit_code != 0:
                status, state = JobStatus.FAILED, JobState.FAILED
            else:
                status, state = JobStatus.SUCCESS, None

            records.append(StepRecord(index, step.name, command, result.exit_code, result.output, result.duration, status))

            if state is not None:
                if state != JobState.CANCELLED:
                    failing = index
                if state == JobState.FAILED:
                    failure = StepFailure(job.name, step.name, index, command, result.exit_code)
                machine.finish(state)
                break

        if not machine.terminal:
            machine.finish(JobState.SUCCEEDED)

        return JobOutcome(
            job=job,
            status=_status_of(machine.state),
            failing_step=failing,
            steps=tuple(records),
            duration=time.monotonic() - started,
            error_kind=type(failure).__name__ if failure is not None else None,
            error=str(failure) if failure is not None else _timeout_message(job, machine.state),
            cache_hit=cache_handle.hit.value if cache_handle is not None else None,
        )
