"""
phasegate — report aggregator

File: src/phasegate/engine/report.py
Last updated: 2026-10-18

Purpose
- Fold a Pipeline's history into a RunReport: outcome, the phase and checks
  responsible for a halt, check tallies, checkpoints, rollback details, and an
  advisory risk score.

Risk score
- ``advisory_failure_weight * advisory failures``
  ``+ manual_override_weight * phases that went to an operator,
  approved or not``
  ``+ rollback_weight * (1 if a rollback was invoked)``
- The score is informational. Nothing in the engine gates on it.

Tallies count the latest attempt of each phase, so a phase that was resumed
after a fix contributes only its final results.
"""

from __future__ import annotations

from typing import Any

import structlog

from phasegate.domain.models import (
    CheckOutcome,
    ErrorKind,
    GatePolicyKind,
    PhaseReport,
    Pipeline,
    PipelineStatus,
    RunReport,
    utc_now,
)
from phasegate.engine.settings import RiskWeights


class ReportAggregator:
    def __init__(self, risk: RiskWeights | None = None, *, logger: Any | None = None) -> None:
        self._risk = risk or RiskWeights()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def build(self, pipeline: Pipeline) -> RunReport:
        effective = latest_attempts(pipeline.history)
        results = [result for report in effective for result in report.results]

        advisory_failures = sum(
            1 for result in results if not result.required and not result.passed
        )
        manual_overrides = sum(1 for report in effective if _required_override(report))
        rollback_invoked = pipeline.rollback_report is not None

        factors = {
            "advisory_failures": self._risk.advisory_failure * advisory_failures,
            "manual_overrides": self._risk.manual_override * manual_overrides,
            "rollback": self._risk.rollback if rollback_invoked else 0.0,
        }
        halting_phase, halting_check_ids = _halting(pipeline)

        finished_at = pipeline.updated_at
        if pipeline.status in (PipelineStatus.PENDING, PipelineStatus.RUNNING):
            finished_at = utc_now()
        started_at = pipeline.history[0].started_at if pipeline.history else pipeline.created_at
        finished_at = max(finished_at, started_at)

        report = RunReport(
            run_id=pipeline.run_id,
            pipeline_name=pipeline.name,
            pipeline_kind=pipeline.kind,
            outcome=pipeline.status,
            phase_reports=tuple(pipeline.history),
            checkpoints=tuple(pipeline.checkpoints),
            rollback=pipeline.rollback_report,
            halting_phase=halting_phase,
            halting_check_ids=halting_check_ids,
            total_checks=len(results),
            passed_checks=sum(1 for result in results if result.passed),
            failed_checks=sum(1 for result in results if result.outcome is CheckOutcome.FAIL),
            infra_checks=sum(1 for result in results if result.outcome.is_infra),
            advisory_failures=advisory_failures,
            manual_overrides=manual_overrides,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((finished_at - started_at).total_seconds() * 1000),
            risk_score=round(sum(factors.values()), 6),
            risk_factors=factors,
            escalated=pipeline.escalated,
        )
        self._logger.debug(
            "run_report_built",
            run_id=pipeline.run_id,
            outcome=str(report.outcome),
            risk_score=report.risk_score,
        )
        return report


def latest_attempts(history: list[PhaseReport]) -> list[PhaseReport]:
    """Keep the most recent report per phase index, ordered by phase index."""
    latest: dict[int, PhaseReport] = {}
    for report in history:
        latest[report.phase_index] = report
    return [latest[index] for index in sorted(latest)]


def _required_override(report: PhaseReport) -> bool:
    """The phase went to an operator, whatever the operator (or the clock) said."""
    decision = report.decision
    if decision.policy is not GatePolicyKind.MANUAL_OVERRIDE:
        return False
    return decision.override is not None or decision.error_kind is ErrorKind.GATE_TIMEOUT


def _halting(pipeline: Pipeline) -> tuple[str | None, tuple[str, ...]]:
    last = pipeline.last_report
    if pipeline.status is PipelineStatus.ROLLED_BACK:
        # Rolled back straight out of a halt: keep the phase that caused it.
        if last is not None and not last.decision.is_go:
            return last.phase_name, last.decision.blocking_check_ids
        return None, ()
    if pipeline.status is not PipelineStatus.HALTED:
        return None, ()
    if last is not None and not last.decision.is_go:
        return last.phase_name, last.decision.blocking_check_ids
    # Aborted between phases: the run stopped before the next phase started.
    current = pipeline.current_phase
    return (current.name if current is not None else None), ()


__all__ = ["ReportAggregator", "latest_attempts"]
