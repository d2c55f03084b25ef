"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from ..deploy.applier import ApplyResult
    from ..model import RunResult


class Console:
    """Centralized console output formatting (safe to call from worker threads)."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Output stream (defaults to sys.stdout at call time)
        """
        self.debug = debug
        self._stream = stream
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        out = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=out)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        source: str,
        job_count: int,
        branch: str = "",
        event: str = "",
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Source: {source}",
            f"Trigger: {event or '-'} on {branch or '-'}",
            f"Jobs: {job_count}",
            "",
        )

    def print_stages(self, stages: List[List[str]]) -> None:
        """Print the stages a pipeline resolves to."""
        for idx, stage in enumerate(stages, start=1):
            self._emit(f"=== Stage {idx}: {', '.join(stage)} ===")

    def print_plan_job(self, name: str, reason: str) -> None:
        self._emit(f"  {name} ({reason})")

    def print_job_start(self, name: str) -> None:
        self._emit(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._emit(f"[{job}] STEP: {name}")

    def print_step_output(self, job: str, output: str) -> None:
        """Step output is only echoed in debug mode; it is always kept in the result."""
        if self.debug and output:
            self._emit(*(f"[{job}] | {line}" for line in output.rstrip().splitlines()))

    def print_success(self, name: str) -> None:
        self._emit(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job, step or host name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._emit(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._emit(f"[{name}] STATUS: skipped ({reason})")

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        if not result.trigger_matched:
            lines.append("  (trigger did not match; nothing ran)")
        for job, jr in result.jobs.items():
            suffix = f" ({jr.reason})" if jr.reason and jr.state.value != "succeeded" else ""
            lines.append(f"  {job}: {jr.state.value.upper()}{suffix}")
        if result.cancelled:
            lines.append("  run was cancelled")
        self._emit(*lines)

    # -------------------------- deployment --------------------------

    def print_target_started(self, host: str, count: int) -> None:
        self._emit(f"\nTARGET: {host} ({count} assertion(s))")

    def print_assertion(self, host: str, description: str, status: str) -> None:
        self._emit(f"[{host}] {status:<9} {description}")

    def print_apply_results(self, results: Iterable["ApplyResult"]) -> None:
        lines = ["", "=" * 40, "DEPLOYMENT", "=" * 40]
        for r in results:
            line = f"  {r.host}: {r.status.value.upper()} changed={r.changed} ok={r.ok_count}"
            if r.failed_at is not None:
                line += f" failed_at={r.failed_at}"
            lines.append(line)
            if r.error:
                lines.append(f"    {r.error.splitlines()[0]}")
        self._emit(*lines)

    # ---------------------------- generic ----------------------------

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
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (initialized by the CLI)
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
