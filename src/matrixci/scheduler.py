# scheduler.py
from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .aggregate import ResultAggregator
from .cache import CacheHandle, CacheManager
from .errors import InvariantViolation, StepFailure, UnresolvedTarget
from .executor import JobExecutor
from .model import ExecutionRun, ExecutorKind, JobOutcome, JobSpec, JobStatus, RunState, Trigger, TriggerEvent
from .process import CancellationToken
from .settings import default_workers
from .toolchain import ExecutorHandle, ToolchainProvider, ToolchainResolver, default_providers
from .ui.console import get_console
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class ActiveRun:
    """A run holding (or waiting for) its concurrency group."""
    run: ExecutionRun
    token: CancellationToken = field(default_factory=CancellationToken)
    finished: threading.Event = field(default_factory=threading.Event)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def supersede(self, by: str) -> bool:
        """Tell the run to stop. A run that already sealed keeps its result."""
        with self._lock:
            if self.run.sealed:
                return False
            self.run.superseded_by = by
        self.token.cancel(f"superseded by run {by}")
        return True

    def seal(self, aggregator: ResultAggregator) -> ExecutionRun:
        with self._lock:
            return aggregator.seal()


class ConcurrencyRegistry:
    """
    group name -> the newest run for that group.

    Injectable so tests (and embedders) control the lock domain; one
    registry per process gives "one active run per group".
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, ActiveRun] = {}

    def claim(self, group: str, active: ActiveRun) -> Optional[ActiveRun]:
        """Make `active` the group's holder. Returns the previous holder, already told to stop."""
        with self._lock:
            prev = self._active.get(group)
            self._active[group] = active
            if prev is not None and not prev.finished.is_set():
                prev.supersede(active.run.run_id)
            return prev

    def finish(self, group: str, active: ActiveRun) -> None:
        """Mark `active` finished and drop it from the group in one step."""
        with self._lock:
            active.finished.set()
            if self._active.get(group) is active:
                del self._active[group]

    def active(self, group: str) -> Optional[ExecutionRun]:
        with self._lock:
            holder = self._active.get(group)
            return holder.run if holder is not None else None

    def cancel(self, group: str, reason: str = "cancelled") -> bool:
        with self._lock:
            holder = self._active.get(group)
        if holder is None:
            return False
        holder.token.cancel(reason)
        return True


_default_registry = ConcurrencyRegistry()


def default_registry() -> ConcurrencyRegistry:
    return _default_registry


class Scheduler:
    """
    Runs jobs under a concurrency budget:

      claim group (supersede + wait for the previous run)
        -> worker pool
          -> resolve toolchain -> prepare workspace -> restore cache
          -> execute -> save cache (on success)
        -> seal run

    Jobs are independent: one failing never cancels its siblings.
    """

    def __init__(
        self,
        *,
        providers: Optional[Mapping[ExecutorKind, ToolchainProvider]] = None,
        cache: Optional[CacheManager] = None,
        workspace: Optional[WorkspaceManager] = None,
        executor: Optional[JobExecutor] = None,
        registry: Optional[ConcurrencyRegistry] = None,
        retries: int = 0,
        resolver_factory: Optional[Callable[[], ToolchainResolver]] = None,
    ):
        self.providers = dict(providers) if providers is not None else default_providers()
        self.cache = cache
        self.workspace = workspace or WorkspaceManager(isolate=False)
        self.executor = executor or JobExecutor()
        self.registry = registry or default_registry()
        self.retries = max(0, retries)
        self.resolver_factory = resolver_factory or (lambda: ToolchainResolver(self.providers))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        jobs: Iterable[JobSpec],
        budget: Optional[int] = None,
        group: str = "default",
        trigger: Optional[Trigger] = None,
        *,
        run_id: Optional[str] = None,
        matrix_name: str = "",
    ) -> ExecutionRun:
        """
        Run every job to a terminal state and return the sealed run.

        Args:
            jobs: Expanded jobs (dispatched in this order)
            budget: Max jobs in flight (defaults to settings)
            group: Concurrency group; a newer run in the same group supersedes this one
            trigger: What triggered the run (recorded only)
            run_id: Optional explicit id

        Returns:
            Sealed ExecutionRun
        """
        jobs = list(jobs)
        budget = max(1, budget or default_workers())
        run = ExecutionRun(
            run_id=run_id or uuid.uuid4().hex[:12],
            trigger=trigger or Trigger(TriggerEvent.PUSH),
            group=group,
            jobs=jobs,
        )
        aggregator = ResultAggregator(run)
        active = ActiveRun(run)
        console = get_console()

        prev = self.registry.claim(group, active)
        try:
            if prev is not None and not prev.finished.is_set():
                logger.info("run %s supersedes run %s in group '%s'", run.run_id, prev.run.run_id, group)
                console.print_superseding(group, prev.run.run_id)
                prev.finished.wait()

            run.state = RunState.RUNNING
            run.started_at = time.time()
            console.print_run_started(matrix_name or group, run.run_id, group, len(jobs), budget)

            resolver = self.resolver_factory()
            self._dispatch(jobs, budget, active, aggregator, resolver)
            return active.seal(aggregator)
        finally:
            self.registry.finish(group, active)
            self.workspace.release_run(run.run_id)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        jobs: List[JobSpec],
        budget: int,
        active: ActiveRun,
        aggregator: ResultAggregator,
        resolver: ToolchainResolver,
    ) -> None:
        console = get_console()
        pool = ThreadPoolExecutor(max_workers=budget, thread_name_prefix=f"matrixci-{active.run.run_id}")
        try:
            pending: set[Future] = {pool.submit(self._run_job, job, active, resolver) for job in jobs}
            while pending:
                try:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    active.run.interrupted = True
                    active.token.cancel("interrupted")
                    continue
                for fut in done:
                    outcome = fut.result()
                    aggregator.record(outcome)
                    console.print_job_outcome(outcome)
        except InvariantViolation:
            active.token.cancel("internal invariant violation")
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        finally:
            pool.shutdown(wait=True)

    def _cancelled(self, job: JobSpec, token: CancellationToken, started: float) -> JobOutcome:
        return JobOutcome(
            job=job,
            status=JobStatus.CANCELLED,
            error=token.reason,
            duration=time.monotonic() - started,
        )

    def _run_job(self, job: JobSpec, active: ActiveRun, resolver: ToolchainResolver) -> JobOutcome:
        token = active.token.child()
        started = time.monotonic()
        if token.cancelled:
            return self._cancelled(job, token, started)

        get_console().print_job_start(job)
        deadline = started + job.timeout if job.timeout else None

        try:
            handle = resolver.resolve(job.target, job.kind)
        except UnresolvedTarget as e:
            return JobOutcome(
                job=job,
                status=JobStatus.FAILED,
                error_kind=type(e).__name__,
                error=e.reason,
                duration=time.monotonic() - started,
            )
        except InvariantViolation:
            raise
        except Exception as e:
            logger.error("[%s] toolchain lookup errored: %s", job.name, e, exc_info=True)
            return JobOutcome(
                job=job,
                status=JobStatus.FAILED,
                error_kind=type(e).__name__,
                error=str(e),
                duration=time.monotonic() - started,
            )

        attempts = 0
        while True:
            attempts += 1
            outcome = self._attempt(job, handle, active.run.run_id, token, deadline)
            retryable = outcome.status == JobStatus.FAILED and outcome.error_kind == StepFailure.__name__
            if retryable and attempts <= self.retries and not token.cancelled:
                logger.info("[%s] attempt %d failed at step %s, retrying", job.name, attempts, outcome.failing_step)
                continue
            return replace(outcome, attempts=attempts, duration=time.monotonic() - started)

    def _attempt(
        self,
        job: JobSpec,
        handle: ExecutorHandle,
        run_id: str,
        token: CancellationToken,
        deadline: Optional[float],
    ) -> JobOutcome:
        console = get_console()
        workdir: Optional[Path] = None
        try:
            workdir = self.workspace.prepare(job, run_id)

            cache_handle: Optional[CacheHandle] = None
            if job.cache is not None and self.cache is not None:
                try:
                    cache_handle = self.cache.acquire(job.cache, workdir)
                    console.print_cache(job.name, cache_handle.reason)
                except OSError as e:
                    logger.warning("[%s] cache restore failed, starting empty: %s", job.name, e)

            outcome = self.executor.execute(job, handle, cache_handle, token, workdir=workdir, deadline=deadline)

            if outcome.ok and cache_handle is not None and self.cache is not None:
                if self.cache.release(cache_handle):
                    console.print_cache_saved(job.name, cache_handle.key)
            return outcome
        except InvariantViolation:
            raise
        except Exception as e:
            # job-local: recorded against this job only
            logger.error("[%s] job errored: %s", job.name, e, exc_info=True)
            return JobOutcome(job=job, status=JobStatus.FAILED, error_kind=type(e).__name__, error=str(e))
        finally:
            self.workspace.release(workdir)
