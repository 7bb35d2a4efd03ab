# toolchain.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from .errors import UnresolvedTarget
from .model import ExecutorKind

logger = logging.getLogger(__name__)


# Targets the cross wrapper can build and test out of the box.
SUPPORTED_CROSS_TARGETS: tuple[str, ...] = (
    "aarch64-linux-android",
    "arm-linux-androideabi",
    "armv7-linux-androideabi",
    "i686-linux-android",
    "x86_64-linux-android",
    "aarch64-unknown-linux-gnu",
    "arm-unknown-linux-gnueabi",
    "armv5te-unknown-linux-gnueabi",
    "armv7-unknown-linux-gnueabihf",
    "i686-unknown-linux-gnu",
    "i686-unknown-linux-musl",
    "mips-unknown-linux-gnu",
    "mips64-unknown-linux-gnuabi64",
    "mips64el-unknown-linux-gnuabi64",
    "mipsel-unknown-linux-gnu",
    "powerpc-unknown-linux-gnu",
    "powerpc64le-unknown-linux-gnu",
    "riscv64gc-unknown-linux-gnu",
    "s390x-unknown-linux-gnu",
    "x86_64-unknown-linux-musl",
)

TOOL_HINTS = {
    "cargo": "Install Rust (rustup) or fix PATH.",
    "cross": "Install cross (cargo install cross) or let matrixci install it.",
    "docker": "Install Docker and ensure the daemon is running.",
}


@dataclass(frozen=True)
class ExecutorHandle:
    """What the executor needs to run a target's steps."""
    target: str
    kind: ExecutorKind
    program: str
    env: Dict[str, str] = field(default_factory=dict)


class ToolchainProvider:
    """Boundary to whatever installs/locates toolchains. Override `provide`."""

    kind: ExecutorKind = ExecutorKind.NATIVE

    def provide(self, target: str) -> ExecutorHandle:
        raise NotImplementedError


class NativeToolchainProvider(ToolchainProvider):
    """
    Host toolchain: locate `program` on PATH.

    `targets` optionally restricts which identifiers this host accepts
    (e.g. OS labels); None accepts anything.
    """

    kind = ExecutorKind.NATIVE

    def __init__(self, program: str = "cargo", targets: Optional[Iterable[str]] = None, env: Optional[Mapping[str, str]] = None):
        self.program = program
        self.targets = set(targets) if targets is not None else None
        self.env = dict(env or {})

    def provide(self, target: str) -> ExecutorHandle:
        if self.targets is not None and target not in self.targets:
            raise UnresolvedTarget(target=target, kind=self.kind.value, reason=f"host does not provide '{target}'")
        path = shutil.which(self.program)
        if path is None:
            hint = TOOL_HINTS.get(self.program, "")
            raise UnresolvedTarget(
                target=target,
                kind=self.kind.value,
                reason=f"'{self.program}' not found on PATH. {hint}".strip(),
            )
        return ExecutorHandle(target=target, kind=self.kind, program=path, env=dict(self.env))


class CrossToolchainProvider(ToolchainProvider):
    """
    Cross-execution wrapper (e.g. `cross`), installed on first use.

    Installation happens at most once per provider even when many targets
    resolve concurrently.
    """

    kind = ExecutorKind.CROSS

    def __init__(
        self,
        program: str = "cross",
        targets: Iterable[str] = SUPPORTED_CROSS_TARGETS,
        install: Optional[Sequence[str]] = ("cargo", "install", "cross", "--git", "https://github.com/cross-rs/cross"),
        env: Optional[Mapping[str, str]] = None,
    ):
        self.program = program
        self.targets = set(targets)
        self.install = list(install) if install else None
        self.env = dict(env or {})
        self._lock = threading.Lock()
        self._path: Optional[str] = None
        self._install_error: Optional[str] = None

    def _locate(self) -> Optional[str]:
        found = shutil.which(self.program)
        if found is None:
            cargo_home = os.environ.get("CARGO_HOME", os.path.expanduser("~/.cargo"))
            found = shutil.which(self.program, path=os.path.join(cargo_home, "bin"))
        return found

    def _ensure_installed(self) -> Tuple[Optional[str], Optional[str]]:
        with self._lock:
            if self._path is not None or self._install_error is not None:
                return self._path, self._install_error

            self._path = self._locate()
            if self._path is None and self.install:
                logger.info("installing %s: %s", self.program, " ".join(self.install))
                try:
                    proc = subprocess.run(self.install, text=True, capture_output=True, check=False)
                except FileNotFoundError as e:
                    self._install_error = f"installer not found: {e.filename}"
                except OSError as e:
                    self._install_error = f"installer could not start: {e}"
                else:
                    if proc.returncode != 0:
                        tail = (proc.stderr or proc.stdout or "").strip()[-2000:]
                        self._install_error = f"install failed (exit={proc.returncode}): {tail}"
                    else:
                        self._path = self._locate()
            if self._path is None and self._install_error is None:
                self._install_error = f"'{self.program}' not found. {TOOL_HINTS.get(self.program, '')}".strip()
            return self._path, self._install_error

    def provide(self, target: str) -> ExecutorHandle:
        if target not in self.targets:
            raise UnresolvedTarget(target=target, kind=self.kind.value, reason=f"'{self.program}' does not support '{target}'")
        path, error = self._ensure_installed()
        if path is None:
            raise UnresolvedTarget(target=target, kind=self.kind.value, reason=error or "toolchain unavailable")
        return ExecutorHandle(target=target, kind=self.kind, program=path, env=dict(self.env))


def default_providers() -> Dict[ExecutorKind, ToolchainProvider]:
    return {
        ExecutorKind.NATIVE: NativeToolchainProvider(),
        ExecutorKind.CROSS: CrossToolchainProvider(),
    }


class ToolchainResolver:
    """
    Memoized target -> ExecutorHandle lookup, scoped to one ExecutionRun.

    Failures are memoized as well: every job of an unresolved target gets
    the same UnresolvedTarget without re-attempting the install.
    """

    def __init__(self, providers: Mapping[ExecutorKind, ToolchainProvider]):
        self.providers = dict(providers)
        self._lock = threading.Lock()
        self._key_locks: Dict[Tuple[str, ExecutorKind], threading.Lock] = {}
        self._memo: Dict[Tuple[str, ExecutorKind], ExecutorHandle | UnresolvedTarget] = {}

    def _key_lock(self, key: Tuple[str, ExecutorKind]) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def resolve(self, target: str, kind: ExecutorKind) -> ExecutorHandle:
        kind = ExecutorKind(kind)
        key = (target, kind)
        with self._key_lock(key):
            if key not in self._memo:
                provider = self.providers.get(kind)
                if provider is None:
                    self._memo[key] = UnresolvedTarget(target=target, kind=kind.value, reason=f"no provider for '{kind.value}'")
                else:
                    try:
                        self._memo[key] = provider.provide(target)
                    except UnresolvedTarget as e:
                        logger.warning("toolchain unresolved for %s (%s): %s", target, kind.value, e.reason)
                        self._memo[key] = e
            result = self._memo[key]
        if isinstance(result, UnresolvedTarget):
            raise result
        return result

    @property
    def resolved(self) -> Dict[Tuple[str, ExecutorKind], ExecutorHandle]:
        return {k: v for k, v in self._memo.items() if isinstance(v, ExecutorHandle)}
