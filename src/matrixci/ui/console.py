"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

from .. import settings

if TYPE_CHECKING:
    from ..errors import ReportError
    from ..model import JobConfig, StepOutcome
    from ..report import Report


class Console:
    """
    Centralized console output.

    Jobs run on worker threads, so every write holds a lock and lines from a
    job are prefixed with its identity.
    """

    def __init__(self, debug: bool = False, output_tail: int | None = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            output_tail: How many trailing characters of a failed step's
                output to show
        """
        self.debug = debug
        self.output_tail = settings.OUTPUT_TAIL if output_tail is None else output_tail
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)
            stream.flush()

    def print_run_started(self, pipeline: str, source: str, job_count: int) -> None:
        """Print run start information."""
        self._emit("", "RUN STARTED", f"Pipeline: {pipeline}", f"Source: {source}", f"Jobs: {job_count}", "")

    def print_plan(self, configs: "Iterable[JobConfig]") -> None:
        """Print the expanded job matrix."""
        lines = ["PLAN"]
        for c in configs:
            bindings = ", ".join(f"{k}={v}" for k, v in c.variables.items())
            lines.append(f"  {c.identity} ({bindings})" if bindings else f"  {c.identity}")
        self._emit(*lines)

    def print_job_start(self, job: str) -> None:
        self._emit(f"[{job}] JOB STARTED")

    def print_step(self, job: str, step: str) -> None:
        self._emit(f"[{job}] ▶ {step}")

    def print_step_result(self, job: str, outcome: "StepOutcome") -> None:
        """Print a step's status; on failure also its exit code and output tail."""
        if outcome.status == "succeeded":
            self._emit(f"[{job}] ✓ {outcome.name} ({outcome.duration:.1f}s)")
            return
        if outcome.status == "skipped":
            if self.debug:
                self._emit(f"[{job}] ⏭ {outcome.name} ({outcome.error})")
            return

        lines = [f"[{job}] ✗ {outcome.name}: {outcome.status.upper()}"]
        if outcome.exit_code is not None:
            lines.append(f"[{job}]   Exit code: {outcome.exit_code}")
        if outcome.error:
            lines.append(f"[{job}]   {outcome.error}")
        tail = outcome.output[-self.output_tail:] if self.output_tail else ""
        for line in tail.rstrip().splitlines():
            lines.append(f"[{job}]   | {line}")
        self._emit(*lines)

    def print_job_result(self, job: str, status: str, duration: float) -> None:
        self._emit(f"[{job}] JOB {status.upper()} ({duration:.1f}s)")

    def print_job_skipped(self, job: str, reason: str) -> None:
        """Print job skipped message."""
        self._emit(f"[{job}] JOB NOT STARTED ({reason})")

    def print_report_error(self, error: "ReportError") -> None:
        self._emit(f"WARNING: {error}", err=True)

    def print_results(self, report: "Report") -> None:
        """Print final results summary."""
        self._emit("", "=" * 40, "RESULTS", "=" * 40, report.summary_text())

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
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


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
