"""Tests for the scheduler: independence, budgets, supersession, caching, retries."""

import threading
import time

import pytest

from conftest import FakeProvider, ScriptedSpawn
from matrixci import scheduler as scheduler_module
from matrixci.cache import CacheManager, MemoryCacheStore
from matrixci.dsl import cache, matrix, native, sh
from matrixci.errors import InvariantViolation
from matrixci.executor import JobExecutor
from matrixci.expand import expand
from matrixci.model import ExecutionRun, ExecutorKind, JobStatus, RunState, Trigger, TriggerEvent, Verdict
from matrixci.process import ProcessResult
from matrixci.scheduler import ActiveRun, ConcurrencyRegistry, Scheduler
from matrixci.workspace import WorkspaceManager


def _scheduler(providers, registry, spawn, **kw):
    return Scheduler(
        providers=providers,
        executor=JobExecutor(spawn, base_env={}),
        registry=registry,
        **kw,
    )


def _many(n, *steps, **kw):
    return expand(matrix("m", native("g", [f"t{i}" for i in range(n)], *steps, **kw)))


class TestScenario:
    def test_unresolved_target_is_job_local(self, registry, two_group_matrix):
        providers = {
            ExecutorKind.NATIVE: FakeProvider(ExecutorKind.NATIVE, program="cargo"),
            ExecutorKind.CROSS: FakeProvider(ExecutorKind.CROSS, unknown={"arm-linux"}, program="cross"),
        }
        spawn = ScriptedSpawn()
        run = _scheduler(providers, registry, spawn).run(expand(two_group_matrix), budget=2)

        assert run.sealed
        assert run.verdict == Verdict.FAIL
        by_target = {o.job.target: o for o in run.outcomes}
        assert by_target["x86_64-linux"].status == JobStatus.SUCCESS
        assert by_target["ubuntu-native"].status == JobStatus.SUCCESS
        arm = by_target["arm-linux"]
        assert arm.status == JobStatus.FAILED
        assert arm.error_kind == "UnresolvedTarget"
        assert [o.error_kind for o in run.outcomes].count("UnresolvedTarget") == 1
        assert spawn.count("arm-linux") == 0
        assert spawn.calls.count("cargo build") == 1
        assert spawn.count("cross build --target x86_64-linux") == 1

    def test_outcomes_follow_expansion_order(self, registry, providers, two_group_matrix):
        spawn = ScriptedSpawn()
        run = _scheduler(providers, registry, spawn).run(expand(two_group_matrix), budget=3)
        assert [o.job.index for o in run.outcomes] == [0, 1, 2]

    def test_failing_job_does_not_cancel_siblings(self, registry, providers, two_group_matrix):
        spawn = ScriptedSpawn(fail_on=["build --target x86_64-linux"])
        run = _scheduler(providers, registry, spawn).run(expand(two_group_matrix), budget=1)
        statuses = [o.status for o in run.outcomes]
        assert statuses == [JobStatus.FAILED, JobStatus.SUCCESS, JobStatus.SUCCESS]
        assert run.outcomes[0].failing_step == 0
        assert spawn.count("test --target x86_64-linux") == 0
        assert run.verdict == Verdict.FAIL

    def test_all_pass(self, registry, providers, two_group_matrix):
        run = _scheduler(providers, registry, ScriptedSpawn()).run(expand(two_group_matrix))
        assert run.verdict == Verdict.PASS
        assert run.state == RunState.SEALED

    def test_empty_run_passes(self, registry, providers):
        run = _scheduler(providers, registry, ScriptedSpawn()).run([])
        assert run.verdict == Verdict.PASS
        assert run.outcomes == []


class TestBudget:
    def test_in_flight_never_exceeds_budget(self, registry, providers):
        spawn = ScriptedSpawn(delay=0.03)
        run = _scheduler(providers, registry, spawn).run(_many(8, sh("s", "echo ${{ matrix.target }}")), budget=2)
        assert run.verdict == Verdict.PASS
        assert spawn.max_in_flight <= 2

    def test_budget_is_used(self, registry, providers):
        spawn = ScriptedSpawn(delay=0.1)
        _scheduler(providers, registry, spawn).run(_many(4, sh("s", "echo")), budget=4)
        assert spawn.max_in_flight > 1

    def test_toolchain_resolved_once_per_target(self, registry):
        native_provider = FakeProvider(ExecutorKind.NATIVE, delay=0.02)
        jobs = expand(
            matrix(
                "m",
                native("a", ["shared"], sh("s", "echo a")),
                native("b", ["shared"], sh("s", "echo b")),
                native("c", ["shared"], sh("s", "echo c")),
            )
        )
        _scheduler({ExecutorKind.NATIVE: native_provider}, registry, ScriptedSpawn()).run(jobs, budget=3)
        assert native_provider.calls["shared"] == 1

    def test_resolver_is_fresh_per_run(self, registry):
        native_provider = FakeProvider(ExecutorKind.NATIVE)
        scheduler = _scheduler({ExecutorKind.NATIVE: native_provider}, registry, ScriptedSpawn())
        jobs = _many(1, sh("s", "echo"))
        scheduler.run(jobs)
        scheduler.run(jobs)
        assert native_provider.calls["t0"] == 2


class TestTimeout:
    def test_job_timeout(self, registry, providers):
        spawn = ScriptedSpawn(block_on=["hang"])
        jobs = _many(2, sh("s", "hang"), timeout=0.2)
        run = _scheduler(providers, registry, spawn).run(jobs, budget=2)
        assert [o.status for o in run.outcomes] == [JobStatus.TIMED_OUT, JobStatus.TIMED_OUT]
        assert run.verdict == Verdict.FAIL


class TestSupersession:
    def test_newer_run_supersedes_and_waits(self, registry, providers):
        blocking = ScriptedSpawn(block_on=["hang"])
        jobs = _many(3, sh("s", "hang"))
        first_result = {}

        def first():
            first_result["run"] = _scheduler(providers, registry, blocking).run(jobs, budget=1, group="staging", run_id="r1")

        t = threading.Thread(target=first)
        t.start()
        assert blocking.started.wait(5)

        second = _scheduler(providers, registry, ScriptedSpawn()).run(jobs, budget=3, group="staging", run_id="r2")
        t.join(5)
        r1 = first_result["run"]

        assert r1.superseded_by == "r2"
        assert all(o.status == JobStatus.CANCELLED for o in r1.outcomes)
        assert r1.verdict == Verdict.FAIL
        # only the first job ever reached a process
        assert len(blocking.calls) == 1
        assert second.verdict == Verdict.PASS
        assert second.superseded_by is None
        assert second.started_at >= r1.finished_at
        assert registry.active("staging") is None

    def test_different_groups_run_concurrently(self, registry, providers):
        blocking = ScriptedSpawn(block_on=["hang"])
        holder = {}

        def first():
            holder["run"] = _scheduler(providers, registry, blocking).run(_many(1, sh("s", "hang")), group="a")

        t = threading.Thread(target=first)
        t.start()
        assert blocking.started.wait(5)

        other = _scheduler(providers, registry, ScriptedSpawn()).run(_many(1, sh("s", "echo")), group="b")
        assert other.verdict == Verdict.PASS
        assert registry.active("a") is not None

        registry.cancel("a", "test over")
        t.join(5)
        assert holder["run"].outcomes[0].status == JobStatus.CANCELLED
        assert holder["run"].superseded_by is None

    def test_registry_does_not_supersede_finished_runs(self, registry):
        done = ActiveRun(ExecutionRun("old", Trigger(TriggerEvent.PUSH), "g"))
        done.finished.set()
        registry.claim("g", done)
        registry.claim("g", ActiveRun(ExecutionRun("new", Trigger(TriggerEvent.PUSH), "g")))
        assert done.run.superseded_by is None
        assert not done.token.cancelled

    def test_release_only_by_holder(self):
        registry = ConcurrencyRegistry()
        a = ActiveRun(ExecutionRun("a", Trigger(TriggerEvent.PUSH), "g"))
        b = ActiveRun(ExecutionRun("b", Trigger(TriggerEvent.PUSH), "g"))
        registry.claim("g", a)
        registry.claim("g", b)
        registry.finish("g", a)
        assert a.finished.is_set()
        assert registry.active("g").run_id == "b"
        registry.finish("g", b)
        assert registry.active("g") is None

    def test_sealed_run_is_not_superseded(self, registry):
        sealed = ActiveRun(ExecutionRun("old", Trigger(TriggerEvent.PUSH), "g"))
        sealed.run.state = RunState.SEALED
        registry.claim("g", sealed)
        registry.claim("g", ActiveRun(ExecutionRun("new", Trigger(TriggerEvent.PUSH), "g")))
        assert sealed.run.superseded_by is None
        assert not sealed.token.cancelled


class TestCaching:
    def test_second_run_hits_for_every_job(self, registry, providers, tmp_path):
        manager = CacheManager(MemoryCacheStore())
        scheduler = _scheduler(
            providers,
            registry,
            ScriptedSpawn(),
            cache=manager,
            workspace=WorkspaceManager(tmp_path, isolate=False),
        )
        jobs = _many(4, sh("s", "echo"), cache=cache("${{ matrix.target }}-deps-", paths=["deps"]))

        first = scheduler.run(jobs, budget=2)
        assert [o.cache_hit for o in first.outcomes] == ["miss"] * 4
        assert manager.stats.commits == 4

        second = scheduler.run(jobs, budget=2)
        assert [o.cache_hit for o in second.outcomes] == ["exact"] * 4
        assert manager.stats.hits == len(jobs)
        assert manager.stats.commits == 4

    def test_shared_key_commits_once(self, registry, providers, tmp_path):
        manager = CacheManager(MemoryCacheStore())
        scheduler = _scheduler(
            providers,
            registry,
            ScriptedSpawn(delay=0.02),
            cache=manager,
            workspace=WorkspaceManager(tmp_path, isolate=False),
        )
        jobs = _many(6, sh("s", "echo"), cache=cache("shared-", paths=["deps"]))
        scheduler.run(jobs, budget=6)
        assert manager.stats.commits == 1
        assert manager.store.puts == 1

    def test_failed_job_does_not_save(self, registry, providers, tmp_path):
        manager = CacheManager(MemoryCacheStore())
        scheduler = _scheduler(
            providers,
            registry,
            ScriptedSpawn(fail_on=["boom"]),
            cache=manager,
            workspace=WorkspaceManager(tmp_path, isolate=False),
        )
        scheduler.run(_many(1, sh("s", "boom"), cache=cache("k-", paths=["deps"])))
        assert manager.stats.commits == 0


class TestRetries:
    def test_step_failure_is_retried(self, registry, providers):
        lock = threading.Lock()
        seen = []

        def flaky(command, *, cwd, env, token=None, deadline=None, on_output=None):
            with lock:
                seen.append(command)
                code = 1 if len(seen) == 1 else 0
            return ProcessResult(code, "", 0.0)

        run = _scheduler(providers, registry, flaky, retries=2).run(_many(1, sh("s", "flaky")))
        assert run.outcomes[0].status == JobStatus.SUCCESS
        assert run.outcomes[0].attempts == 2

    def test_retries_exhausted(self, registry, providers):
        spawn = ScriptedSpawn(fail_on=["boom"])
        run = _scheduler(providers, registry, spawn, retries=2).run(_many(1, sh("s", "boom")))
        assert run.outcomes[0].attempts == 3
        assert spawn.count("boom") == 3
        assert run.verdict == Verdict.FAIL

    def test_unresolved_target_not_retried(self, registry):
        provider = FakeProvider(ExecutorKind.NATIVE, unknown={"t0"})
        run = _scheduler({ExecutorKind.NATIVE: provider}, registry, ScriptedSpawn(), retries=3).run(_many(1, sh("s", "echo")))
        assert run.outcomes[0].attempts == 1
        assert provider.calls["t0"] == 1


class TestInvariants:
    def test_invariant_violation_aborts_run(self, registry, providers):
        class BrokenExecutor(JobExecutor):
            def execute(self, job, handle, cache_handle, token, *, workdir=".", deadline=None):
                if job.target == "t1":
                    raise InvariantViolation("step index moved backwards")
                time.sleep(0.01)
                return super().execute(job, handle, cache_handle, token, workdir=workdir, deadline=deadline)

        scheduler = Scheduler(
            providers=providers,
            executor=BrokenExecutor(ScriptedSpawn(), base_env={}),
            registry=registry,
        )
        with pytest.raises(InvariantViolation):
            scheduler.run(_many(3, sh("s", "echo")), budget=1, group="g")
        assert registry.active("g") is None

    def test_unexpected_error_is_job_local(self, registry, providers):
        class FlakyExecutor(JobExecutor):
            def execute(self, job, handle, cache_handle, token, *, workdir=".", deadline=None):
                if job.target == "t1":
                    raise RuntimeError("docker daemon went away")
                return super().execute(job, handle, cache_handle, token, workdir=workdir, deadline=deadline)

        scheduler = Scheduler(providers=providers, executor=FlakyExecutor(ScriptedSpawn(), base_env={}), registry=registry)
        run = scheduler.run(_many(3, sh("s", "echo")), budget=2)
        assert [o.status for o in run.outcomes] == [JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.SUCCESS]
        assert run.outcomes[1].error_kind == "RuntimeError"

    def test_provider_error_is_job_local(self, registry):
        class DeniedProvider(FakeProvider):
            def provide(self, target):
                if target == "t1":
                    raise PermissionError(13, "Permission denied", "/usr/bin/cargo")
                return super().provide(target)

        providers = {ExecutorKind.NATIVE: DeniedProvider(ExecutorKind.NATIVE)}
        spawn = ScriptedSpawn()
        run = _scheduler(providers, registry, spawn).run(_many(3, sh("s", "echo ${{ matrix.target }}")), budget=1)

        assert run.sealed
        assert [o.status for o in run.outcomes] == [JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.SUCCESS]
        assert run.outcomes[1].error_kind == "PermissionError"
        assert spawn.count("echo t1") == 0


class TestInterrupt:
    def test_interrupt_cancels_jobs_and_marks_run(self, registry, providers, monkeypatch):
        spawn = ScriptedSpawn(block_on=["hang"])
        real_wait = scheduler_module.wait
        interrupted = []

        def interrupting_wait(fs, **kw):
            if not interrupted:
                interrupted.append(True)
                assert spawn.started.wait(5)
                raise KeyboardInterrupt
            return real_wait(fs, **kw)

        monkeypatch.setattr(scheduler_module, "wait", interrupting_wait)
        run = _scheduler(providers, registry, spawn).run(_many(3, sh("s", "hang")), budget=1, group="g")

        assert run.sealed
        assert run.interrupted
        assert [o.status for o in run.outcomes] == [JobStatus.CANCELLED] * 3
        assert len(spawn.calls) == 1
        assert run.verdict == Verdict.FAIL
        assert registry.active("g") is None
