"""Console output formatting utilities for stageci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from ..model import STATUS_FAILED, STATUS_SKIPPED, PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs in one stage report from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, definition: str, event: str, job_count: int) -> None:
        """Print run start information."""
        self._out(
            "\nPIPELINE STARTED",
            f"Definition: {definition}",
            f"Event: {event}",
            f"Jobs: {job_count}",
            "",
        )

    def print_stage(self, name: str, jobs: list[str]) -> None:
        self._out(f"\n=== Stage {name}: {jobs} ===")

    def print_job_start(self, name: str) -> None:
        self._out(f"[{name}] JOB STARTED")

    def print_command(self, name: str, command: str) -> None:
        self._out(f"[{name}] $ {command}")

    def print_success(self, name: str) -> None:
        self._out(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
    ) -> None:
        """
        Print job failure.

        Args:
            name: Job name
            reason: Failure reason/error message
            exit_code: Optional exit code
            output: Captured stderr/stdout tail, only shown in debug mode
        """
        lines = [f"[{name}] JOB FAILED: {reason.splitlines()[0] if reason else 'Unknown error'}"]
        if exit_code is not None:
            lines.append(f"[{name}] Exit code: {exit_code}")
        if self.debug and output:
            lines.append(output.rstrip())
        self._out(*lines)

    def print_cache_hit(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: hit ({key})")

    def print_cache_miss(self, job: str, key: str, reason: str = "cache miss") -> None:
        self._out(f"[{job}] CACHE: miss ({key}: {reason})")

    def print_cache_saved(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: saved ({key})")

    def print_cache_save_failed(self, job: str, key: str, error: str) -> None:
        self._out(f"[{job}] CACHE: save failed ({key}: {error})")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"[{name}] STATUS: skipped ({reason})")

    def print_plan_job(self, name: str, stage: str, reason: str, key: Optional[str] = None) -> None:
        suffix = f" cache={key}" if key else ""
        self._out(f"  ✓ {stage}/{name} ({reason}){suffix}")

    def print_plan_job_skipped(self, name: str, stage: str, reason: str) -> None:
        self._out(f"  ⏭ {stage}/{name} (skipped: {reason})")

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for r in result.jobs:
            status = r.status.upper()
            if r.status == STATUS_FAILED and r.allow_failure:
                status += " (allowed)"
            if r.status in (STATUS_FAILED, STATUS_SKIPPED) and r.reason:
                status += f": {r.reason}"
            lines.append(f"  {r.stage}/{r.name}: {status}")
        self._out(*lines)

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
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
