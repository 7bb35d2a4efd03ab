# workspace.py
from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Iterable, Optional

from .model import JobSpec
from .settings import DEFAULT_WORK_DIR

logger = logging.getLogger(__name__)

DEFAULT_IGNORES = (".git", ".matrixci", "target", "__pycache__", ".venv", "node_modules")

_SLUG = re.compile(r"[^A-Za-z0-9._-]+")


def job_slug(job: JobSpec) -> str:
    return _SLUG.sub("_", job.name).strip("_") or f"job-{job.index}"


class WorkspaceManager:
    """
    Gives every job its own copy of the source tree:

      <work_root>/<run_id>/<job slug>/

    With isolate=False jobs share the source root (no copy, no cleanup).
    """

    def __init__(
        self,
        source_root: str | Path = ".",
        work_root: str | Path = DEFAULT_WORK_DIR,
        *,
        isolate: bool = True,
        keep: bool = False,
        ignores: Iterable[str] = DEFAULT_IGNORES,
    ):
        self.source_root = Path(source_root).resolve()
        self.work_root = Path(work_root)
        if not self.work_root.is_absolute():
            self.work_root = self.source_root / self.work_root
        self.isolate = isolate
        self.keep = keep
        self.ignores = tuple(ignores)

    def _ignore(self, directory: str, names: list[str]) -> set[str]:
        ignored = set(shutil.ignore_patterns(*self.ignores)(directory, names))
        # never copy the work root into itself
        for name in names:
            if (Path(directory) / name).resolve() == self.work_root.resolve():
                ignored.add(name)
        return ignored

    def prepare(self, job: JobSpec, run_id: str) -> Path:
        if not self.isolate:
            return self.source_root
        dest = self.work_root / run_id / job_slug(job)
        if dest.exists():
            shutil.rmtree(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(self.source_root, dest, ignore=self._ignore, symlinks=True)
        logger.debug("prepared workspace for %s at %s", job.name, dest)
        return dest

    def release(self, path: Optional[Path]) -> None:
        if path is None or not self.isolate or self.keep:
            return
        shutil.rmtree(path, ignore_errors=True)

    def release_run(self, run_id: str) -> None:
        if not self.isolate or self.keep:
            return
        run_dir = self.work_root / run_id
        if run_dir.exists():
            shutil.rmtree(run_dir, ignore_errors=True)
