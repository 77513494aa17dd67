"""Console output formatting utilities for bettermake."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from bettermake.model import RuleInstance
    from bettermake.runner import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only print errors and the final results
        """
        self.debug = debug
        self.quiet = quiet

    def _out(self, text: str = "") -> None:
        if not self.quiet:
            print(text)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        targets: Iterable[str],
        instance_count: int,
        cores: int,
        mode: str,
    ) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Workflow: {workflow}")
        self._out(f"Targets: {', '.join(targets)}")
        self._out(f"Rule instances: {instance_count}")
        self._out(f"Cores: {cores}")
        self._out(f"Mode: {mode}")
        self._out()

    def print_rule_start(self, inst: "RuleInstance", reason: str, dry_run: bool = False) -> None:
        """Print the block describing an instance that is about to run."""
        kind = "checkpoint" if inst.is_checkpoint else "rule"
        suffix = " (dry-run)" if dry_run else ""
        self._out(f"\n{kind} {inst.rule.name}:{suffix}")
        if inst.inputs:
            self._out(f"    input: {', '.join(inst.inputs)}")
        if inst.outputs:
            self._out(f"    output: {', '.join(inst.outputs)}")
        if inst.log:
            self._out(f"    log: {inst.log}")
        if inst.wildcards:
            self._out(f"    wildcards: {inst.wildcards}")
        self._out(f"    reason: {reason}")
        if inst.rule.message:
            self._out(f"    {inst.rule.message}")

    def print_success(self, name: str, duration: Optional[float] = None) -> None:
        """Print success message."""
        if duration is None:
            self._out(f"DONE: {name}")
        else:
            self._out(f"DONE: {name} ({duration:.1f}s)")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Rule instance key
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user (e.g. stderr tail or log path)
        """
        print(f"FAILED: {name}", file=sys.stderr)
        if exit_code is not None:
            print(f"Exit code: {exit_code}", file=sys.stderr)
        if self.debug:
            print(f"Error details: {reason}", file=sys.stderr)
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}", file=sys.stderr)
        if hint:
            print(f"Hint: {hint}", file=sys.stderr)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print skipped instance message (debug only for up-to-date work)."""
        if reason == "up to date":
            self.print_debug(f"{name}: up to date")
            return
        self._out(f"SKIPPED: {name} ({reason})")

    def print_checkpoint_update(self, name: str, added: int) -> None:
        """Print how many instances a finished checkpoint added to the graph."""
        self._out(f"CHECKPOINT: {name} finished, {added} new rule instance(s) scheduled")

    def print_nothing_to_do(self) -> None:
        self._out("Nothing to be done (all requested files are present and up to date).")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for entry in report.entries:
            status = entry.state.value.upper()
            if entry.planned:
                status = "PLANNED"
            detail = f" ({entry.reason})" if entry.reason and entry.state.value != "done" else ""
            print(f"  {entry.key}: {status}{detail}")
        print(
            f"\n{len(report.done)} done, {len(report.failed)} failed, "
            f"{len(report.skipped)} skipped"
        )

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

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

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
