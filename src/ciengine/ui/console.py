"""Console output formatting utilities for ciengine."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Iterable, Optional

from ..errors import CIError

if TYPE_CHECKING:
    from ..model import JobStatus


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_job_start(self, job_id: str, repo: str, commit: str) -> None:
        """Print job start message."""
        print(f"\nJOB STARTED: {job_id}")
        print(f"Repository: {repo}")
        print(f"Commit: {commit}")

    def print_step(self, job_id: str, name: str) -> None:
        """Print step start message."""
        print(f"[{job_id}] STEP: {name}")

    def print_step_result(
        self,
        job_id: str,
        name: str,
        status: str,
        exit_code: Optional[int] = None,
        duration: Optional[int] = None,
    ) -> None:
        line = f"[{job_id}] STEP {status.upper()}: {name}"
        if exit_code is not None and status != "success":
            line += f" (exit={exit_code})"
        if duration is not None:
            line += f" in {duration / 1000:.1f}s"
        print(line)

    def print_job_finished(self, status: "JobStatus") -> None:
        print(f"[{status.id}] STATUS: {status.status}")
        if status.error:
            print(f"[{status.id}] Error: {status.error}")

    def print_cache_hit(self, job_id: str, key: str) -> None:
        """Print cache hit message."""
        print(f"[{job_id}] CACHE: hit ({self._short(key)})")

    def print_cache_miss(self, job_id: str) -> None:
        """Print cache miss message."""
        print(f"[{job_id}] CACHE: miss")

    def print_cache_saved(self, job_id: str, key: str) -> None:
        """Print cache save message."""
        print(f"[{job_id}] CACHE: saved ({self._short(key)})")

    @staticmethod
    def _short(key: str) -> str:
        return key[-24:] if len(key) > 24 else key

    def print_warning(self, message: str) -> None:
        print(f"WARNING: {message}", file=sys.stderr)

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
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        elif isinstance(exc, CIError):
            print(f"Error: {exc.describe()}", file=sys.stderr)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_worker_started(self, max_concurrent: int, poll_interval: float) -> None:
        """Print worker start information."""
        print("\nWORKER STARTED")
        print(f"Max concurrent jobs: {max_concurrent}")
        print(f"Polling every: {poll_interval}s")
        print()

    def print_job_dequeued(self, job_id: str, priority: Optional[int]) -> None:
        print(f"\nJOB DEQUEUED: {job_id} (priority={priority})")

    def print_execution_complete(
        self,
        status: str,
        duration: Optional[float] = None,
    ) -> None:
        """Print execution completion message."""
        print("\nEXECUTION COMPLETE")
        print(f"Status: {status}")
        if duration is not None:
            print(f"Duration: {duration:.1f}s")

    def print_status(self, status: "JobStatus") -> None:
        """Print one job status in full."""
        self.print_header(f"JOB {status.id}")
        print(f"Status: {status.status}")
        if status.duration is not None:
            print(f"Duration: {status.duration / 1000:.1f}s")
        if status.cache_hit is not None:
            print(f"Cache: {'hit' if status.cache_hit else 'miss'}")
        if status.error:
            print(f"Error: {status.error}")
        for i, step in enumerate(status.steps):
            marker = ">" if status.current_step == i and status.status == "running" else " "
            print(f" {marker} {step.name}: {step.status}")

    def print_job_table(self, statuses: Iterable["JobStatus"]) -> None:
        rows = list(statuses)
        if not rows:
            print("No jobs.")
            return
        for s in rows:
            print(f"  {s.id}: {s.status.upper()}")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


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
