# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class MatrixCIError(Exception):
    """Base exception for matrixci."""


class ConfigError(MatrixCIError):
    """A matrix document could not be loaded or failed validation."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = list(problems or [])

    def __str__(self) -> str:
        lines = [self.args[0]]
        lines.extend(f"  {p}" for p in self.problems)
        return "\n".join(lines)


@dataclass
class UnresolvedTarget(MatrixCIError):
    """
    No toolchain is available for a target.

    Attributed to the jobs using that target only; sibling jobs keep running.
    """
    target: str
    kind: str
    reason: str = "target not recognized by toolchain provider"

    def __str__(self) -> str:
        return f"UnresolvedTarget: {self.reason}\ntarget={self.target}\nkind={self.kind}"


@dataclass
class StepFailure(MatrixCIError):
    job: str
    step: str
    index: int
    cmd: str
    exit_code: int | None

    def __str__(self) -> str:
        return f"[{self.job}] step {self.index} '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class CacheWriteFailure(MatrixCIError):
    """Raised by cache stores; the cache manager downgrades it to a warning."""
    key: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"CacheWriteFailure: {self.message}", f"key={self.key}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class InvariantViolation(MatrixCIError):
    """Internal programming error. Aborts the whole run."""
