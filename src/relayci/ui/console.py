"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import Mapping, Optional, TextIO


class Console:
    """Human-facing progress and error output for runs."""

    def __init__(self, debug: bool = False, quiet: bool = False, stream: Optional[TextIO] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress progress output (errors still print)
            stream: Output stream for progress (defaults to stdout)
        """
        self.debug = debug
        self.quiet = quiet
        self._stream = stream
        # job workers print concurrently
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        if self.quiet and not err:
            return
        stream = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, run_id: str, workflow: str, event: str, ref: str | None, job_count: int) -> None:
        self._out(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Workflow: {workflow}",
            f"Event: {event} ({ref or '-'})",
            f"Jobs: {job_count}",
            "",
        )

    def print_trigger_rejected(self, workflow: str, reason: str) -> None:
        self._out(f"\nTRIGGER REJECTED: {workflow} ({reason})")

    def print_job_start(self, name: str, slot: int | None = None) -> None:
        suffix = f" [slot {slot}]" if slot is not None else ""
        self._out(f"JOB STARTED: {name}{suffix}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_job_finished(self, name: str, status: str, reason: str | None = None) -> None:
        extra = f" ({reason})" if reason else ""
        self._out(f"JOB {status.upper()}: {name}{extra}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        output: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            output: Captured output tail (shown in debug mode)
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
            if output:
                lines.append(output.rstrip())
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_plan(self, levels: list[list[str]]) -> None:
        for idx, level in enumerate(levels):
            self._out(f"Stage {idx + 1}: {', '.join(level)}")

    def print_results(self, status: str, results: Mapping[str, str]) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40, "RESULTS", "=" * 40)
        for job, job_status in results.items():
            self._out(f"  {job}: {job_status.upper()}")
        self._out(f"\nRUN {status.upper()}")

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
        lines = [f"\nERROR: {title}", f"{message}"]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(exc)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# process-wide console; the CLI replaces it according to --debug
_console: Optional[Console] = None


def get_console() -> Console:
    """Return the shared console, creating a default one on first use."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
