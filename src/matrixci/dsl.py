# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .model import CacheSpec, ExecutorKind, MatrixSpec, Step, TargetGroup, TargetOverride, TriggerRules


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, str]] = None) -> Step:
    """Create a shell step. `cmd` may use ${{ matrix.target }} and ${{ toolchain }}."""
    return Step(name=name, run=cmd, cwd=cwd, env=dict(env or {}))


def cache(
    namespace: str,
    *,
    lock_files: Iterable[str] = (),
    paths: Iterable[str] = (),
    restore_prefixes: Iterable[str] = (),
) -> CacheSpec:
    return CacheSpec(
        namespace=namespace,
        lock_files=tuple(lock_files),
        paths=tuple(paths),
        restore_prefixes=tuple(restore_prefixes),
    )


def override(*, timeout: float | None = None, env: Optional[Dict[str, str]] = None, **vars: str) -> TargetOverride:
    """Per-target matrix variables, e.g. override(display_name="macOS 10.15")."""
    return TargetOverride(vars={k: str(v) for k, v in vars.items()}, env=dict(env or {}), timeout=timeout)


# ---------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------

def group(
    name: str,
    targets: Iterable[str],
    *steps: Step,
    mode: ExecutorKind | str = ExecutorKind.NATIVE,
    env: Optional[Dict[str, str]] = None,
    vars: Optional[Dict[str, str]] = None,
    cache: Optional[CacheSpec] = None,
    timeout: float | None = None,
    display: str | None = None,
    overrides: Optional[Dict[str, TargetOverride]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> TargetGroup:
    steps_final: List[Step] = list(steps)
    if not steps_final:
        raise ValueError(f"group({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return TargetGroup(
        name=name,
        targets=list(targets),
        steps=steps_final,
        mode=ExecutorKind(mode),
        env=dict(env or {}),
        vars=dict(vars or {}),
        cache=cache,
        timeout=timeout,
        display=display,
        overrides=dict(overrides or {}),
    )


def cross(name: str, targets: Iterable[str], *steps: Step, **kwargs) -> TargetGroup:
    return group(name, targets, *steps, mode=ExecutorKind.CROSS, **kwargs)


def native(name: str, targets: Iterable[str], *steps: Step, **kwargs) -> TargetGroup:
    return group(name, targets, *steps, mode=ExecutorKind.NATIVE, **kwargs)


# ---------------------------------------------------------------------
# Matrix (single-file story)
# ---------------------------------------------------------------------

def on(*, push: Optional[Iterable[str]] = None, pull_request: bool = False) -> TriggerRules:
    """
    Trigger rules:
        on(push=["master"], pull_request=True)
    """
    return TriggerRules(push_branches=list(push) if push is not None else None, pull_request=pull_request)


def matrix(
    name: str,
    *groups: TargetGroup,
    triggers: Optional[TriggerRules] = None,
    concurrency: str | None = None,
    env: Optional[Dict[str, str]] = None,
) -> MatrixSpec:
    """
    Matrix definition helper. A workflow file can write:

        from matrixci.dsl import matrix, cross, native, sh

        def workflow():
            return matrix(
                "test-suite",
                cross("test-cross", [...], sh(...)),
                native("test-native", [...], sh(...)),
            )

    Or define MATRIX = matrix(...) directly.
    """
    return MatrixSpec(
        name=name,
        groups=list(groups),
        triggers=triggers or TriggerRules(push_branches=["*"], pull_request=True),
        concurrency=concurrency,
        env=dict(env or {}),
    )
