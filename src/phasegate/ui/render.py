"""Output rendering abstraction for the phasegate CLI.

File: src/phasegate/ui/render.py
Last updated: 2026-10-18

Purpose
- Provide a thin rendering layer for CLI output with optional ANSI coloring of
  verdicts and run outcomes.
- Respect NO_COLOR environment variable and --no-color CLI flag.

Functional requirements
- Plain-text rendering must always work without external dependencies.
- Run reports render the halting phase, blocking checks, and risk score.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final, TextIO

from phasegate.domain.models import CheckOutcome, PipelineStatus, RollbackOutcome, Verdict

if TYPE_CHECKING:
    from collections.abc import Sequence

    from phasegate.domain.models import PhaseReport, RunReport

_RESET: Final[str] = "\033[0m"
_COLORS: Final[dict[str, str]] = {
    "green": "\033[32m",
    "red": "\033[31m",
    "yellow": "\033[33m",
    "dim": "\033[2m",
    "bold": "\033[1m",
}
_TONE: Final[dict[str, str]] = {
    Verdict.GO.value: "green",
    Verdict.NO_GO.value: "red",
    CheckOutcome.PASS.value: "green",
    CheckOutcome.FAIL.value: "red",
    CheckOutcome.ERROR.value: "red",
    CheckOutcome.TIMEOUT.value: "yellow",
    PipelineStatus.COMPLETED.value: "green",
    PipelineStatus.ROLLED_BACK.value: "yellow",
    PipelineStatus.HALTED.value: "red",
    PipelineStatus.RUNNING.value: "bold",
    PipelineStatus.PENDING.value: "dim",
    RollbackOutcome.INCOMPLETE.value: "red",
}


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Thin CLI output renderer.

    Produces clean, deterministic plain-text output.
    Respects ``NO_COLOR`` env var and ``--no-color`` flag.
    """

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)

    def _print(self, text: str = "") -> None:
        print(text, file=self._stream)

    def paint(self, text: str) -> str:
        """Color a verdict, outcome, or status token when the terminal allows it."""

        tone = _TONE.get(text)
        if not self._color or tone is None:
            return text
        return f"{_COLORS[tone]}{text}{_RESET}"

    def heading(self, text: str) -> None:
        self._print(text)

    def kv(self, key: str, value: object) -> None:
        """Print a key: value pair."""

        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self._print(f"\n{title}")

    def warning(self, text: str) -> None:
        self._print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        """Print a bulleted list."""

        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                # Pad before painting so escape codes do not skew the columns.
                parts.append(self.paint(cell) + " " * (widths[i] - len(cell)))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._print(f"  {_pad(list(headers))}")
        self._print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            self._print(f"  {_pad(list(row))}")

    def next_steps(self, steps: Sequence[str]) -> None:
        """Print actionable next-step hints."""

        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._print(f"  $ {step}")

    def run_report(self, report: RunReport) -> None:
        """Render a run report: outcome, per-phase verdicts, and risk."""

        self.kv("Run ID", report.run_id)
        self.kv("Pipeline", f"{report.pipeline_name} ({report.pipeline_kind})")
        self.kv("Outcome", self.paint(report.outcome.value))
        self.kv("Duration", f"{report.duration_ms / 1000:.1f}s")
        self.kv(
            "Checks",
            f"total={report.total_checks} passed={report.passed_checks} "
            f"failed={report.failed_checks} infra={report.infra_checks}",
        )
        self.kv("Risk score", f"{report.risk_score:g}")
        if report.halting_phase is not None:
            blocking = ", ".join(report.halting_check_ids) or "(none)"
            self.kv("Halted at", f"{report.halting_phase} (blocking: {blocking})")
        if report.escalated:
            self.warning("rollback incomplete; manual intervention required")

        self.table(
            ("#", "Phase", "Attempt", "Verdict", "Checkpoint"),
            [
                (
                    str(phase.phase_index),
                    phase.phase_name,
                    str(phase.attempt),
                    phase.decision.verdict.value,
                    phase.checkpoint_id or "",
                )
                for phase in report.phase_reports
            ],
            title="Phases:",
        )
        for phase in report.phase_reports:
            if self.verbose or phase.decision.verdict is Verdict.NO_GO:
                self.phase_detail(phase)

        if report.rollback is not None:
            self.section("Rollback:")
            self.kv("  Target", report.rollback.target_checkpoint_id)
            self.kv("  Outcome", self.paint(report.rollback.outcome.value))
            if report.rollback.reasons:
                self.items(list(report.rollback.reasons))

    def phase_detail(self, phase: PhaseReport) -> None:
        self.table(
            ("Check", "Required", "Outcome", "Summary"),
            [
                (
                    result.check_id,
                    "yes" if result.required else "no",
                    result.outcome.value,
                    _truncate(result.summary, 72),
                )
                for result in phase.results
            ],
            title=f"{phase.phase_name} (attempt {phase.attempt}):",
        )
        if phase.decision.reasons:
            self.items(list(phase.decision.reasons))


def _truncate(text: str, max_len: int) -> str:
    flattened = " ".join(text.split())
    if len(flattened) <= max_len:
        return flattened
    return flattened[: max_len - 3] + "..."


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, stream: TextIO | None = None
) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer"]
