"""Console output formatting utilities for flowci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..errors import CIError
    from ..results import JobResult, RunResult


class Console:
    """Centralized console output formatting (shared by parallel job instances)."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to stdout)
        """
        self.debug = debug
        self._stream = stream
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        out = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=out)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(self, pipeline: str, event: str, ref: str | None, instance_count: int) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Event: {event}" + (f" ({ref})" if ref else ""),
            f"Job instances: {instance_count}",
            "",
        )

    def print_not_triggered(self, pipeline: str, event: str, ref: str | None) -> None:
        self._print(f"Pipeline {pipeline} not triggered by {event}" + (f" ({ref})" if ref else ""))

    def print_plan(self, stages: List[List[str]]) -> None:
        """Print job instances grouped by dependency stage."""
        for idx, stage in enumerate(stages):
            self._print(f"=== Stage {idx + 1} ===")
            for name in stage:
                self._print(f"  {name}")

    def print_job_start(self, name: str, platform: str) -> None:
        """Print job start message."""
        self._print(f"\nJOB STARTED: {name} [{platform}]")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._print(f"[{job}] STEP: {name}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._print(f"[{name}] STATUS: success")

    def print_failure(self, name: str, error: "CIError") -> None:
        """
        Print job failure message.

        Args:
            name: Job instance id
            error: The cause recorded on the job result
        """
        lines = [f"[{name}] JOB FAILED: {error.kind}"]
        if error.step:
            lines.append(f"[{name}] Failed step: {error.step}")
        exit_code = error.details.get("exit_code")
        if exit_code is not None:
            lines.append(f"[{name}] Exit code: {exit_code}")
        if self.debug:
            lines.append(f"[{name}] Error details: {error}")
        else:
            lines.append(f"[{name}] Error: {error.message}")
        self._print(*lines)

    def print_job_log(self, result: "JobResult") -> None:
        """Print captured output of a failing instance, up to the failing step."""
        self.print_header(f"LOG: {result.instance.id}")
        self._print(result.log or "(no output)")

    def print_results(self, results: "RunResult") -> None:
        """Print final results summary."""
        self._print("\n" + "=" * 40, "RESULTS", "=" * 40)
        for r in results:
            status = "SUCCESS" if r.succeeded else "FAILED"
            suffix = f" ({r.error.kind}: {r.failed_step})" if r.error is not None and r.failed_step else ""
            self._print(f"  {r.instance.id}: {status}{suffix}")
        self._print(f"\nPipeline: {results.status.upper()}")

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
        self._print(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


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
