"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from matrixci.aggregate import Report
    from matrixci.model import JobOutcome, JobSpec


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only print the final report and errors
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _print(self, *lines: str, file=None) -> None:
        with self._lock:
            for line in lines:
                print(line, file=file or sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        matrix: str,
        run_id: str,
        group: str,
        job_count: int,
        workers: int,
    ) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._print(
            "\nRUN STARTED",
            f"Matrix: {matrix}",
            f"Run ID: {run_id}",
            f"Concurrency group: {group}",
            f"Jobs: {job_count}",
            f"Workers: {workers}",
            "",
        )

    def print_superseding(self, group: str, previous_run: str) -> None:
        self._print(f"SUPERSEDING: run {previous_run} in group '{group}' (waiting for its jobs to stop)")

    def print_job_start(self, job: "JobSpec") -> None:
        """Print job start message."""
        if not self.quiet:
            self._print(f"JOB STARTED: {job.display or job.name}")

    def print_step(self, job: str, index: int, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._print(f"[{job}] STEP {index}: {name}")

    def print_output(self, job: str, line: str) -> None:
        """Print one streamed output line of a running step."""
        self._print(f"[{job}] {line.rstrip()}")

    def print_cache(self, job: str, reason: str) -> None:
        """Print cache restore message."""
        if not self.quiet:
            self._print(f"[{job}] CACHE: {reason}")

    def print_cache_saved(self, job: str, key: str) -> None:
        """Print cache save message."""
        if not self.quiet:
            short_key = key[:24] + "..." if len(key) > 24 else key
            self._print(f"[{job}] CACHE: saved ({short_key})")

    def print_job_outcome(self, outcome: "JobOutcome", tail_lines: int = 20) -> None:
        """
        Print a job's terminal status; failures include the tail of the
        failing step's output.
        """
        if self.quiet and outcome.ok:
            return
        name = outcome.job.display or outcome.job.name
        lines = [f"JOB {outcome.status.value.upper()}: {name} ({outcome.duration:.1f}s)"]
        if outcome.error_kind:
            lines.append(f"  {outcome.error_kind}: {outcome.error}")
        elif outcome.error:
            lines.append(f"  {outcome.error}")
        if outcome.failing_step is not None:
            record = next((r for r in outcome.steps if r.index == outcome.failing_step), None)
            if record is None:
                lines.append(f"  {outcome.status.value} before step {outcome.failing_step} '{outcome.failing_step_name}' started")
            else:
                lines.append(f"  failing step {record.index} '{record.name}' (exit={record.exit_code})")
                output = record.output.splitlines()
                if not self.debug:
                    output = output[-tail_lines:]
                lines.extend(f"  | {line}" for line in output)
        self._print(*lines)

    def print_report(self, report: "Report") -> None:
        """Print final results summary."""
        lines = ["", "=" * 60, f"RESULTS: {report.verdict.value.upper()}", "=" * 60]
        for row in report.rows:
            status = row["status"].upper() if row["status"] != "success" else "SUCCESS"
            detail = ""
            if row.get("failing_step") is not None:
                detail = f" at step {row['failing_step']} ({row['failing_step_name']})"
            elif row.get("error_kind"):
                detail = f" ({row['error_kind']})"
            lines.append(f"  {row['target']:<40} {status}{detail} [{row['duration']:.1f}s]")
        if report.failures:
            lines.append(f"\n{len(report.failures)} of {len(report.rows)} job(s) did not pass")
        self._print(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(exc)
        else:
            self._print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
