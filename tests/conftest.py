"""Shared fakes: toolchain providers and a scripted process spawner."""

from __future__ import annotations

import threading
import time
from collections import Counter

import pytest

from matrixci.dsl import cross, matrix, native, sh
from matrixci.errors import UnresolvedTarget
from matrixci.model import ExecutorKind
from matrixci.process import ProcessResult
from matrixci.scheduler import ConcurrencyRegistry
from matrixci.toolchain import ExecutorHandle, ToolchainProvider
from matrixci.ui.console import Console, set_console


class FakeProvider(ToolchainProvider):
    def __init__(self, kind: ExecutorKind, unknown=(), program: str = "tool", delay: float = 0.0):
        self.kind = kind
        self.unknown = set(unknown)
        self.program = program
        self.delay = delay
        self.calls: Counter = Counter()
        self._lock = threading.Lock()

    def provide(self, target: str) -> ExecutorHandle:
        with self._lock:
            self.calls[target] += 1
        if self.delay:
            time.sleep(self.delay)
        if target in self.unknown:
            raise UnresolvedTarget(target=target, kind=self.kind.value, reason=f"unknown target {target}")
        return ExecutorHandle(target=target, kind=self.kind, program=self.program)


class ScriptedSpawn:
    """
    Stands in for matrixci.process.spawn.

    - commands containing a `fail_on` marker exit 1
    - commands containing a `block_on` marker run until cancelled / deadline
    """

    def __init__(self, fail_on=(), block_on=(), delay: float = 0.0):
        self.fail_on = tuple(fail_on)
        self.block_on = tuple(block_on)
        self.delay = delay
        self.calls: list[str] = []
        self.started = threading.Event()
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def __call__(self, command, *, cwd, env, token=None, deadline=None, on_output=None):
        with self._lock:
            self.calls.append(command)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if any(m in command for m in self.block_on):
                self.started.set()
                while not (token is not None and token.cancelled):
                    if deadline is not None and time.monotonic() >= deadline:
                        return ProcessResult(None, "still running\n", 0.0, timed_out=True)
                    time.sleep(0.005)
                return ProcessResult(None, "interrupted\n", 0.0, cancelled=True)
            if self.delay:
                time.sleep(self.delay)
            code = 1 if any(m in command for m in self.fail_on) else 0
            if on_output is not None:
                on_output(f"ran {command}\n")
            return ProcessResult(code, f"ran {command}\n", 0.0)
        finally:
            with self._lock:
                self.in_flight -= 1

    def count(self, marker: str) -> int:
        with self._lock:
            return sum(1 for c in self.calls if marker in c)


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield
    set_console(Console())


@pytest.fixture
def registry():
    return ConcurrencyRegistry()


@pytest.fixture
def providers():
    return {
        ExecutorKind.NATIVE: FakeProvider(ExecutorKind.NATIVE, program="cargo"),
        ExecutorKind.CROSS: FakeProvider(ExecutorKind.CROSS, program="cross"),
    }


@pytest.fixture
def two_group_matrix():
    return matrix(
        "scenario",
        cross(
            "A",
            ["x86_64-linux", "arm-linux"],
            sh("build", "${{ toolchain }} build --target ${{ matrix.target }}"),
            sh("test", "${{ toolchain }} test --target ${{ matrix.target }}"),
        ),
        native(
            "B",
            ["ubuntu-native"],
            sh("build", "${{ toolchain }} build"),
            sh("test", "${{ toolchain }} test"),
        ),
    )
