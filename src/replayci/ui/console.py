"""Console output formatting utilities for replayci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Mapping, Optional

if TYPE_CHECKING:
    from ..state import StageRecord


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # stages may report from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        bar = "=" * max(40, len(title))
        self._out("", bar, title, bar)

    def print_run_started(self, pipeline: str, stage_count: int, settings: Mapping[str, str]) -> None:
        """Print run start information."""
        lines = ["", "RUN STARTED", f"Pipeline: {pipeline}", f"Stages: {stage_count}"]
        for key, value in settings.items():
            lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
        self._out(*lines, "")

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the stage plan, one line per level of independent stages."""
        lines = ["PLAN"]
        for idx, level in enumerate(levels, start=1):
            lines.append(f"  {idx}. {', '.join(level)}")
        self._out(*lines)

    def print_sync(self, label: str, commit: Optional[str], summary: str = "") -> None:
        self._out(f"[INFO] Checked out: {label}")
        if summary:
            self._out(f"[INFO] Current commit: {summary}")
        elif commit:
            self._out(f"[INFO] Current commit: {commit}")

    def print_stage_started(self, name: str, command: str, attempt: int = 1, description: str = "") -> None:
        """Print stage start message."""
        suffix = f" (attempt {attempt})" if attempt > 1 else ""
        lines = ["", f"STAGE STARTED: {name}{suffix}"]
        if description:
            lines.append(f"About: {description}")
        lines.append(f"Running: {command}")
        self._out(*lines)

    def print_stage_success(self, name: str, duration: float) -> None:
        self._out(f"STATUS: success ({duration:.1f}s)")

    def print_stage_skipped(self, name: str, reason: str) -> None:
        """Print stage skipped message."""
        self._out(f"\nSTAGE SKIPPED: {name} ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        stderr: str = "",
        hint: Optional[str] = None,
        warn_only: bool = False,
    ) -> None:
        """
        Print stage failure message.

        Args:
            name: Stage name
            reason: Failure reason/error message
            exit_code: Optional exit code
            stderr: Captured stderr; only the last lines are shown unless debugging
            hint: Optional hint for user
            warn_only: The stage's policy lets the run continue
        """
        lines = [f"{'STAGE FAILED (continuing)' if warn_only else 'STAGE FAILED'}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        if hint:
            lines.append(f"Hint: {hint}")
        if stderr.strip():
            shown = stderr.rstrip().splitlines()
            if not self.debug:
                shown = shown[-20:]
            lines.append("stderr:")
            lines.extend(f"  {line}" for line in shown)
        self._out(*lines)

    def print_retry(self, name: str, attempt: int, max_attempts: int) -> None:
        self._out(f"RETRY: {name} ({attempt}/{max_attempts})")

    def print_results(self, status: str, records: Iterable["StageRecord"], exit_code: Optional[int] = None) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for record in records:
            detail = f"{record.status.value.upper()}"
            if record.exit_code not in (None, 0):
                detail += f" (exit={record.exit_code})"
            if record.attempts > 1:
                detail += f" [{record.attempts} attempts]"
            if record.cause:
                detail += f" - {record.cause}"
            lines.append(f"  {record.stage}: {detail}")
        lines.append("-" * 40)
        if exit_code is None:
            lines.append(f"RUN {status.upper()}")
        else:
            lines.append(f"RUN {status.upper()} (exit code {exit_code})")
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
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(f"[INFO] {message}")

    def print_warning(self, message: str) -> None:
        self._out(f"[WARNING] {message}")

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Process-wide console; the CLI swaps in one that honours --debug
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
