"""Console output formatting utilities for buildmatrix."""

from __future__ import annotations

import sys
import threading
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        job_name: str,
        build_number: str,
        branch: str,
        workflow: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Job: {job_name} #{build_number}",
            f"Branch: {branch}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan_job(self, job_id: str, requirement: str) -> None:
        """Print one expanded job."""
        self._emit(f"  {job_id}  (on: {requirement})")

    def print_job_start(self, job_id: str, worker: str) -> None:
        self._emit(f"[{job_id}] STARTED on {worker}")

    def print_step(self, job_id: str, step: str) -> None:
        self._emit(f"[{job_id}] STEP: {step}")

    def print_job_finished(self, job_id: str, status: str, error: Optional[str] = None) -> None:
        """
        Print job completion.

        In non-debug mode only the first line of the error is shown; the
        full output goes into the failure notification.
        """
        if error and not self.debug:
            error = error.split("\n")[0]
        lines = [f"[{job_id}] STATUS: {status}"]
        if error:
            lines.append(f"[{job_id}] Error: {error}")
        self._emit(*lines)

    def print_results(self, outcomes) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for outcome in outcomes:
            status = "SUCCESS" if outcome.succeeded else "FAILED"
            suffix = f" ({outcome.error_kind})" if outcome.error_kind else ""
            lines.append(f"  {outcome.job_id}: {status}{suffix}")
        self._emit(*lines)

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

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
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
