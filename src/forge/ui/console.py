"""Console output formatting utilities for FORGE."""

from __future__ import annotations

import codecs
import sys
from typing import Dict, Optional

from ..events import EventKind, ExecutionEvent
from ..model import PipelineConfig
from ..results import NodeState, PipelineResult, PipelineStatus


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, verbose: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            verbose: If True, echo step output live while the pipeline runs
        """
        self.debug = debug
        self.verbose = verbose or debug
        self._partial: Dict[str, str] = {}
        self._decoders: Dict[str, codecs.IncrementalDecoder] = {}

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        config_file: str,
        stage_count: int,
        run_id: str,
        scope: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Config: {config_file}")
        print(f"Run ID: {run_id}")
        print(f"Stages: {stage_count}")
        if scope:
            print(f"Scope: {scope} (+ dependencies)")
        print()

    # ------------------------------------------------------------------
    # Live events
    # ------------------------------------------------------------------

    def render_event(self, event: ExecutionEvent) -> None:
        """Render one execution event (called from the scheduler thread)."""
        if event.kind is EventKind.STEP_OUTPUT:
            if self.verbose:
                self._print_output(event.node, event.data)
            return

        if event.kind is EventKind.WARNING:
            self.print_warning(event.message)
            return

        if event.kind is EventKind.NODE_STARTED:
            if event.is_step:
                print(f"STEP STARTED: {event.node}")
            else:
                print(f"\nSTAGE STARTED: {event.stage}")
            return

        if event.kind is EventKind.NODE_SKIPPED:
            label = "STEP" if event.is_step else "STAGE"
            print(f"{label} SKIPPED: {event.node} ({event.message})")
            return

        if event.kind is EventKind.NODE_FINISHED:
            self._flush_output(event.node)
            label = "STEP" if event.is_step else "STAGE"
            status = event.status.value if event.status else "unknown"
            print(f"{label} {status.upper()}: {event.node}")
            if event.status is NodeState.FAILED and event.message:
                self._print_reason(event.message)

    def _print_output(self, node: str, data: bytes) -> None:
        # a multi-byte character may be split across chunks
        decoder = self._decoders.get(node)
        if decoder is None:
            decoder = self._decoders[node] = codecs.getincrementaldecoder("utf-8")(errors="replace")
        text = self._partial.pop(node, "") + decoder.decode(data)
        lines = text.split("\n")
        self._partial[node] = lines.pop()
        for line in lines:
            print(f"  [{node}] {line}")

    def _flush_output(self, node: str) -> None:
        rest = self._partial.pop(node, "")
        decoder = self._decoders.pop(node, None)
        if decoder is not None:
            rest += decoder.decode(b"", final=True)
        if rest:
            print(f"  [{node}] {rest}")

    def _print_reason(self, reason: str) -> None:
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            print(f"Error: {reason.splitlines()[0]}")

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for stage in result.stages:
            print(f"  {stage.stage}: {stage.status.value.upper()}"
                  + (f" ({stage.skip_reason})" if stage.skip_reason else ""))
            for step in stage.steps:
                line = f"    {step.step}: {step.outcome.value.upper()}"
                if step.exit_code not in (None, 0):
                    line += f" (exit={step.exit_code})"
                if step.duration is not None:
                    line += f" [{step.duration:.1f}s]"
                if step.skip_reason and stage.status is not NodeState.SKIPPED:
                    line += f" ({step.skip_reason})"
                print(line)
                for w in step.warnings:
                    print(f"      warning: {w}")
                if step.error is not None and step.status is NodeState.FAILED:
                    print(f"      cause: {str(step.error).splitlines()[0]}")
                    if step.log is not None:
                        print(f"      log: {step.log.path}")

        print()
        if result.status is PipelineStatus.SUCCEEDED:
            print("Pipeline completed successfully!")
        elif result.status is PipelineStatus.INVALID:
            print("Pipeline could not start: invalid configuration", file=sys.stderr)
            if result.error is not None:
                print(f"  {result.error}", file=sys.stderr)
        elif result.aborted:
            print("Pipeline aborted.")
        else:
            print("Pipeline failed.")

    def print_validation(self, config: PipelineConfig) -> None:
        """Print a summary of a valid configuration."""
        print("Configuration is valid!")
        print("Stages:")
        for stage in config.stages:
            mode = "parallel" if stage.parallel else "sequential"
            deps = f", depends on {', '.join(stage.depends_on)}" if stage.depends_on else ""
            print(f"  - {stage.name} ({len(stage.steps)} steps, {mode}{deps})")

        if config.cache.enabled:
            print("Cache: Enabled")
            print("Cached directories:")
            for d in config.cache.directories:
                print(f"  - {d}")
        else:
            print("Cache: Disabled")

        if config.secrets:
            print("Secrets:")
            for secret in config.secrets:
                print(f"  - {secret.name} (from {secret.env_var})")

    # ------------------------------------------------------------------
    # Generic
    # ------------------------------------------------------------------

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

    def print_warning(self, message: str) -> None:
        print(f"WARNING: {message}", file=sys.stderr)

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
