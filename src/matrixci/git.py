# git.py
# Small wrapper around the Git CLI; used to fill in the trigger ref.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout, stripped.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch name, or the HEAD sha when detached.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if name == "HEAD":
        return head_sha(cwd=cwd)
    return name


def current_ref_or_default(default: str = "local", cwd: Optional[str | Path] = None) -> str:
    try:
        return current_branch(cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return default
