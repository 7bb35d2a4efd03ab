# cli.py
from __future__ import annotations

import logging
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import click

from matrixci.cache import FileCacheStore
from matrixci.config import DEFAULT_MATRIX_FILES, find_matrix_files, load_matrix
from matrixci.errors import ConfigError
from matrixci.expand import expand
from matrixci.git import current_ref_or_default
from matrixci.model import Trigger, TriggerEvent, Verdict
from matrixci.runner import run_matrix
from matrixci.settings import Settings
from matrixci.ui.console import Console, get_console, set_console


def discover_matrix(matrix_arg: str | None) -> Path:
    """
    Discover the matrix file from argument or default names.

    Raises:
        SystemExit: If no file (or more than one candidate) is found
    """
    console = get_console()

    if matrix_arg:
        path = Path(matrix_arg)
        if not path.exists():
            console.print_error(
                "Matrix file not found",
                f"Could not find matrix file: {matrix_arg}",
                suggestion="Create a matrix file or specify a different path:\n  matrixci run --matrix matrixci.yml",
            )
            sys.exit(1)
        return path

    candidates = find_matrix_files(".")
    if not candidates:
        console.print_error(
            "No matrix file found",
            "Could not find any matrix files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_MATRIX_FILES), "  *_matrix.py", "  *.matrix.yml"],
            suggestion="Create matrixci.yml, or specify one explicitly:\n  matrixci run --matrix my.matrix.yml",
        )
        sys.exit(1)

    if len(candidates) > 1:
        console.print_error(
            "Multiple matrix files found",
            "Found multiple matrix files. Please specify which one to use:",
            details=[str(c) for c in candidates],
            suggestion=f"Specify one explicitly:\n  matrixci run --matrix {candidates[0]}",
        )
        sys.exit(1)

    return candidates[0]


def _load_or_exit(ctx: click.Context, matrix: str | None):
    console = get_console()
    path = discover_matrix(matrix)
    try:
        return path, load_matrix(path)
    except ConfigError as e:
        console.print_error("Invalid matrix file", f"Could not load {path}", details=e.problems or [str(e)])
        sys.exit(1)
    except Exception as e:
        console.print_error("Failed to load matrix", f"Could not load {path}", details=[str(e)])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Enable debug mode (show stack traces and full step output)")
@click.option("--quiet", is_flag=True, default=False, help="Only print failures and the final report")
@click.option("--log-level", default=None, help="Logging level (defaults to MATRIXCI_LOG_LEVEL or WARNING)")
@click.pass_context
def cli(ctx, debug, quiet, log_level):
    """matrixci: multi-target build-and-test matrix runner."""
    settings = Settings.from_env()
    level = (log_level or ("DEBUG" if debug else settings.log_level)).upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING), format="%(levelname)s: %(name)s: %(message)s")

    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--matrix", default=None, help="Matrix file (defaults to matrixci.yml / matrixci_workflow.py if present)")
@click.option("--workers", default=None, type=int, help="Number of jobs run in parallel")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--work-dir", default=None, help="Per-job workspace directory")
@click.option(
    "--event",
    type=click.Choice([e.value for e in TriggerEvent]),
    default=TriggerEvent.PUSH.value,
    show_default=True,
    help="Trigger event",
)
@click.option("--ref", default=None, help="Branch/ref that triggered the run (defaults to the current git branch)")
@click.option("--group", default=None, help="Concurrency group (defaults to the matrix's)")
@click.option("--retries", default=0, show_default=True, type=int, help="Re-run a job whose step failed up to N times")
@click.option("--isolate/--no-isolate", default=None, help="Run each job in its own copy of the source tree")
@click.option("--keep-workspaces", is_flag=True, default=False, help="Do not delete job workspaces afterwards")
@click.option("--stream/--no-stream", default=False, show_default=True, help="Stream step output while jobs run")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write the JSON report here")
@click.option("--force", is_flag=True, default=False, help="Run even if the trigger rules do not match")
@click.pass_context
def run(ctx, matrix, workers, cache_dir, work_dir, event, ref, group, retries, isolate, keep_workspaces, stream, report_path, force):
    """Run a matrix and exit non-zero unless every job passes."""
    console = get_console()
    path, spec = _load_or_exit(ctx, matrix)

    settings: Settings = ctx.obj["settings"]
    overrides = {}
    if cache_dir:
        overrides["cache_dir"] = cache_dir
    if work_dir:
        overrides["work_dir"] = work_dir
    if isolate is not None:
        overrides["isolate"] = isolate
    settings = replace(settings, **overrides)

    trigger = Trigger(TriggerEvent(event), ref or current_ref_or_default())
    if not force and not spec.triggers.matches(trigger):
        console.print_info(f"{path.name}: {trigger.event.value} on '{trigger.ref}' does not match the matrix triggers, nothing to run")
        return

    try:
        execution, report = run_matrix(
            spec,
            trigger,
            settings=settings,
            workers=workers,
            group=group,
            retries=retries,
            stream_output=stream,
            keep_workspaces=keep_workspaces,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_report(report)
    if report_path:
        Path(report_path).write_text(report.to_json(), encoding="utf-8")
        console.print_info(f"Report written to {report_path}")

    if execution.interrupted:
        console.print_info("Interrupted by user")
        sys.exit(130)
    if execution.verdict != Verdict.PASS:
        sys.exit(1)


@cli.command()
@click.option("--matrix", default=None, help="Matrix file")
@click.pass_context
def plan(ctx, matrix):
    """Print the jobs a matrix expands to, without running anything."""
    console = get_console()
    path, spec = _load_or_exit(ctx, matrix)
    jobs = expand(spec)

    console.print_header(f"{spec.name} ({path.name}): {len(jobs)} job(s)")
    for job in jobs:
        timeout = f" timeout={job.timeout:g}s" if job.timeout else ""
        cache = f" cache={job.cache.namespace}" if job.cache else ""
        console.print_info(f"  [{job.index:>3}] {job.name} ({job.kind.value}){cache}{timeout}")
        for i, step in enumerate(job.steps):
            console.print_info(f"        {i}. {step.name}: {step.run}")


@cli.group()
def cache():
    """Inspect and trim the local cache store."""


@cache.command("ls")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.pass_context
def cache_ls(ctx, cache_dir):
    """List cache entries."""
    console = get_console()
    store = FileCacheStore(cache_dir or ctx.obj["settings"].cache_dir)
    entries = store.entries()
    if not entries:
        console.print_info("cache is empty")
        return
    for e in sorted(entries, key=lambda e: e.last_write, reverse=True):
        when = datetime.fromtimestamp(e.last_write).strftime("%Y-%m-%d %H:%M:%S")
        size = Path(e.location).stat().st_size
        console.print_info(f"  {when}  {size:>10}  {e.key}")


@cache.command("prune")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--keep", default=3, show_default=True, type=int, help="Entries to keep per namespace")
@click.pass_context
def cache_prune(ctx, cache_dir, keep):
    """Keep only the newest entries of each cache namespace."""
    store = FileCacheStore(cache_dir or ctx.obj["settings"].cache_dir)
    removed = store.prune(keep=keep)
    get_console().print_info(f"removed {len(removed)} cache entr{'y' if len(removed) == 1 else 'ies'}")


if __name__ == "__main__":
    cli()
