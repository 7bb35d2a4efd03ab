# runner.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

from .aggregate import Report, build_report
from .cache import CacheManager, FileCacheStore
from .executor import JobExecutor
from .expand import expand
from .model import ExecutionRun, ExecutorKind, MatrixSpec, Trigger
from .scheduler import ConcurrencyRegistry, Scheduler
from .settings import Settings
from .toolchain import ToolchainProvider
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)


def run_matrix(
    spec: MatrixSpec,
    trigger: Trigger,
    *,
    source_root: str | Path = ".",
    settings: Optional[Settings] = None,
    workers: Optional[int] = None,
    group: Optional[str] = None,
    retries: int = 0,
    providers: Optional[Mapping[ExecutorKind, ToolchainProvider]] = None,
    registry: Optional[ConcurrencyRegistry] = None,
    stream_output: bool = False,
    keep_workspaces: bool = False,
) -> tuple[ExecutionRun, Report]:
    """
    expand -> schedule -> report, with the on-disk cache and per-job
    workspaces rooted at `source_root`.
    """
    settings = settings or Settings.from_env()
    root = Path(source_root).resolve()

    cache_dir = Path(settings.cache_dir)
    if not cache_dir.is_absolute():
        cache_dir = root / cache_dir

    scheduler = Scheduler(
        providers=providers,
        cache=CacheManager(FileCacheStore(cache_dir)),
        workspace=WorkspaceManager(root, settings.work_dir, isolate=settings.isolate, keep=keep_workspaces),
        executor=JobExecutor(stream_output=stream_output),
        registry=registry,
        retries=retries,
    )

    jobs = expand(spec)
    run = scheduler.run(
        jobs,
        workers or settings.workers,
        group or spec.concurrency_group(trigger),
        trigger,
        matrix_name=spec.name,
    )
    stats = scheduler.cache.stats if scheduler.cache else None
    if stats is not None:
        logger.info(
            "cache: %d hit(s), %d prefix hit(s), %d miss(es), %d commit(s)",
            stats.hits, stats.prefix_hits, stats.misses, stats.commits,
        )
    return run, build_report(run)
