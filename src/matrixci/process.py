# process.py
from __future__ import annotations

import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

# How often a running step checks its cancellation token / deadline.
POLL_INTERVAL = 0.05
# Time between SIGTERM and SIGKILL when tearing down a process group.
KILL_GRACE = 3.0
# Keep the tail of very chatty steps only.
MAX_CAPTURE_CHARS = 64_000


class CancellationToken:
    """
    Cooperative cancellation signal shared by the scheduler and its jobs.

    Children created with `child()` are cancelled with their parent, so a
    run-level cancel reaches every job without the scheduler tracking them.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List[CancellationToken] = []
        self.reason: Optional[str] = None
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancellationToken") -> None:
        with self._lock:
            self._children.append(child)
            cancelled, reason = self._event.is_set(), self.reason
        if cancelled:
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason or "cancelled"
            self._event.set()
            children = list(self._children)
        for c in children:
            c.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int | None
    output: str
    duration: float
    cancelled: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not (self.cancelled or self.timed_out)


SpawnFn = Callable[..., ProcessResult]


def _popen_kwargs() -> dict:
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _terminate_group(proc: subprocess.Popen, grace: float = KILL_GRACE) -> None:
    """Terminate the step's whole process group: SIGTERM, then SIGKILL."""
    if proc.poll() is not None:
        return
    if sys.platform == "win32":
        proc.terminate()
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            proc.kill()
        return

    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()


def spawn(
    command: str,
    *,
    cwd: str | Path,
    env: Dict[str, str],
    token: Optional[CancellationToken] = None,
    deadline: Optional[float] = None,
    on_output: Optional[Callable[[str], None]] = None,
) -> ProcessResult:
    """
    Run a shell command in its own process group and capture its output.

    Args:
        command: Shell command line
        cwd: Working directory
        env: Full environment for the child
        token: Cancellation token polled while the process runs
        deadline: Absolute time.monotonic() value; exceeding it kills the group
        on_output: Called with each output line as it arrives

    Returns:
        ProcessResult (stderr is merged into output)
    """
    started = time.monotonic()
    proc = subprocess.Popen(
        command,
        shell=True,
        cwd=str(cwd),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        errors="replace",
        **_popen_kwargs(),
    )

    chunks: List[str] = []

    def _pump() -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            chunks.append(line)
            if on_output is not None:
                on_output(line)

    reader = threading.Thread(target=_pump, name=f"spawn-reader-{proc.pid}", daemon=True)
    reader.start()

    cancelled = timed_out = False
    try:
        while True:
            try:
                proc.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass
            if token is not None and token.cancelled:
                cancelled = True
                _terminate_group(proc)
                break
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                _terminate_group(proc)
                break
    finally:
        if proc.poll() is None:
            # Interrupted by an exception in this thread; never leak the group.
            _terminate_group(proc, grace=0.5)
        reader.join(timeout=KILL_GRACE)

    output = "".join(chunks)
    if len(output) > MAX_CAPTURE_CHARS:
        output = output[-MAX_CAPTURE_CHARS:]

    return ProcessResult(
        exit_code=proc.returncode,
        output=output,
        duration=time.monotonic() - started,
        cancelled=cancelled,
        timed_out=timed_out,
    )
