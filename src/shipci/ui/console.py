# console.py
"""Console output formatting utilities for shipci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple

if TYPE_CHECKING:
    from ..report import RunReport


class Console:
    """Centralized console output formatting.

    Jobs run on worker threads, so every print goes through one lock and
    lines belonging to a job instance are prefixed with its id.
    """

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        self._lock = threading.RLock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        pipeline: str,
        context: str,
        instance_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Pipeline: {pipeline}",
            f"Trigger: {context}",
            f"Job instances: {instance_count}",
            "",
        )

    def print_plan(self, rows: Iterable[Tuple[str, List[str], str]]) -> None:
        """Print the compiled plan: instance, its dependencies and planned state."""
        self.print_header("PLAN")
        for instance_id, deps, state in rows:
            needs = f" <- {', '.join(deps)}" if deps else ""
            self._out(f"  {instance_id}{needs} [{state}]")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._out(f"[{name}] STATUS: success")

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
            name: Job instance id or "<instance> / <step>"
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
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print a job that finished without running (skipped or cancelled)."""
        self._out(f"[{name}] STATUS: {reason}")

    def print_gate(self, job: str, environment: str, message: str) -> None:
        """Print an environment gate phase."""
        self._out(f"[{job}] GATE {environment}: {message}")

    def print_cancelled(self, reason: str) -> None:
        self._out(f"\nRUN CANCELLED: {reason}", err=True)

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for inst in report.instances:
            line = f"  {inst.id}: {inst.status.upper()}"
            if inst.reason and inst.status != "success":
                line += f" ({inst.reason})"
            lines.append(line)
            first = inst.first_failure
            if first is not None and not first.ignored:
                tail = (first.stderr or first.stdout or first.error or "").strip().splitlines()[-5:]
                lines.extend(f"      {t}" for t in tail)
            if inst.gate is not None and inst.gate.status == "failure":
                lines.append(f"      gate: {inst.gate.kind}: {inst.gate.message}")
                if inst.gate.applied:
                    lines.append("      manifests remain applied; manual intervention required")
        lines.append("-" * 40)
        lines.append(f"RUN {report.status.upper()}")
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
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_server_started(self, host: str, port: int) -> None:
        self._out("\nCONTROL PLANE STARTED", f"Listening on http://{host}:{port}", "")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
