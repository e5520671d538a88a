"""Unit tests for the run report aggregator and its risk score."""

from __future__ import annotations

from datetime import timedelta

import pytest

from phasegate.domain import ids
from phasegate.domain.models import (
    Checkpoint,
    CheckOutcome,
    CheckResult,
    ErrorKind,
    GateDecision,
    GatePolicyKind,
    OverrideDecision,
    PhaseReport,
    Pipeline,
    PipelineStatus,
    RollbackOutcome,
    RollbackReport,
    Verdict,
    utc_now,
)
from phasegate.engine.report import ReportAggregator, latest_attempts
from phasegate.engine.settings import RiskWeights


def _result(check_id: str, outcome: str, *, required: bool = True) -> CheckResult:
    return CheckResult(check_id=check_id, outcome=CheckOutcome(outcome), required=required)


def _phase_report(
    name: str,
    index: int,
    results: list[CheckResult],
    *,
    attempt: int = 1,
    decision: GateDecision | None = None,
    checkpoint_id: str | None = None,
) -> PhaseReport:
    started = utc_now()
    if decision is None:
        blocking = tuple(result.check_id for result in results if result.required and not result.passed)
        decision = (
            GateDecision(
                verdict=Verdict.NO_GO,
                policy=GatePolicyKind.STRICT_ALL,
                blocking_check_ids=blocking,
                error_kind=ErrorKind.CHECK_FAILURE,
            )
            if blocking
            else GateDecision(verdict=Verdict.GO, policy=GatePolicyKind.STRICT_ALL)
        )
    return PhaseReport(
        phase_name=name,
        phase_index=index,
        attempt=attempt,
        results=tuple(results),
        decision=decision,
        started_at=started,
        finished_at=started + timedelta(milliseconds=5),
        checkpoint_id=checkpoint_id,
    )


@pytest.fixture()
def pipeline(release_pipeline) -> Pipeline:
    return release_pipeline()


def test_latest_attempts_keeps_last_report_per_phase() -> None:
    first = _phase_report("build", 0, [_result("compile", "pass")])
    failed = _phase_report("test", 1, [_result("unit", "fail")])
    retried = _phase_report("test", 1, [_result("unit", "pass")], attempt=2)

    assert latest_attempts([first, failed, retried]) == [first, retried]
    assert latest_attempts([]) == []


def test_halted_report_names_phase_and_blocking_checks(pipeline: Pipeline) -> None:
    pipeline.history.extend(
        [
            _phase_report("build", 0, [_result("compile", "pass"), _result("docs", "fail", required=False)]),
            _phase_report("test", 1, [_result("unit", "fail"), _result("integration", "timeout")]),
        ]
    )
    pipeline.current_index = 1
    pipeline.status = PipelineStatus.HALTED

    report = ReportAggregator().build(pipeline)

    assert report.outcome is PipelineStatus.HALTED
    assert report.halting_phase == "test"
    assert report.halting_check_ids == ("unit", "integration")
    assert report.total_checks == 4
    assert report.passed_checks == 1
    assert report.failed_checks == 2
    assert report.infra_checks == 1
    assert report.advisory_failures == 1
    assert report.risk_factors == {"advisory_failures": 1.0, "manual_overrides": 0.0, "rollback": 0.0}
    assert report.risk_score == 1.0


def test_halt_between_phases_names_next_phase(pipeline: Pipeline) -> None:
    pipeline.history.append(_phase_report("build", 0, [_result("compile", "pass")]))
    pipeline.current_index = 1
    pipeline.status = PipelineStatus.HALTED

    report = ReportAggregator().build(pipeline)

    assert report.halting_phase == "test"
    assert report.halting_check_ids == ()


def test_risk_score_combines_weighted_factors(pipeline: Pipeline) -> None:
    checkpoint = Checkpoint(
        id=ids.generate_checkpoint_id(),
        run_id=pipeline.run_id,
        phase_name="deploy",
        phase_index=2,
        state_ref="v2",
    )
    approved = GateDecision(
        verdict=Verdict.GO,
        policy=GatePolicyKind.MANUAL_OVERRIDE,
        override=OverrideDecision(approved=True, approver="alice"),
    )
    pipeline.history.extend(
        [
            _phase_report("build", 0, [_result("compile", "pass"), _result("docs", "fail", required=False)]),
            _phase_report("test", 1, [_result("unit", "pass"), _result("integration", "pass")]),
            _phase_report(
                "deploy", 2, [_result("deploy-staging", "fail")], decision=approved, checkpoint_id=checkpoint.id
            ),
        ]
    )
    pipeline.checkpoints.append(checkpoint)
    pipeline.rollback_report = RollbackReport(
        target_checkpoint_id=checkpoint.id, outcome=RollbackOutcome.ROLLED_BACK
    )
    pipeline.status = PipelineStatus.ROLLED_BACK
    pipeline.current_index = 2
    weights = RiskWeights(advisory_failure=0.5, manual_override=3.0, rollback=10.0)

    report = ReportAggregator(weights).build(pipeline)

    assert report.manual_overrides == 1
    assert report.risk_factors == {"advisory_failures": 0.5, "manual_overrides": 3.0, "rollback": 10.0}
    assert report.risk_score == 13.5
    assert report.halting_phase is None
    assert report.rollback is not None
    assert report.checkpoints == (checkpoint,)


@pytest.mark.parametrize(
    "decision",
    [
        GateDecision(
            verdict=Verdict.NO_GO,
            policy=GatePolicyKind.MANUAL_OVERRIDE,
            blocking_check_ids=("deploy-staging",),
            error_kind=ErrorKind.OVERRIDE_REJECTED,
            override=OverrideDecision(approved=False, approver="bob"),
        ),
        GateDecision(
            verdict=Verdict.NO_GO,
            policy=GatePolicyKind.MANUAL_OVERRIDE,
            error_kind=ErrorKind.GATE_TIMEOUT,
        ),
    ],
    ids=["rejected", "timed-out"],
)
def test_unapproved_override_still_counts_toward_risk(pipeline: Pipeline, decision: GateDecision) -> None:
    pipeline.history.append(
        _phase_report("deploy", 2, [_result("deploy-staging", "fail")], decision=decision)
    )
    pipeline.current_index = 2
    pipeline.status = PipelineStatus.HALTED

    report = ReportAggregator(RiskWeights(manual_override=3.0)).build(pipeline)

    assert report.manual_overrides == 1
    assert report.risk_factors["manual_overrides"] == 3.0
    assert report.halting_phase == "deploy"


def test_manual_gate_without_operator_adds_no_override_risk(pipeline: Pipeline) -> None:
    unattended = GateDecision(
        verdict=Verdict.NO_GO,
        policy=GatePolicyKind.MANUAL_OVERRIDE,
        reasons=("no override channel configured",),
        error_kind=ErrorKind.CHECK_INFRA,
    )
    passed = GateDecision(verdict=Verdict.GO, policy=GatePolicyKind.MANUAL_OVERRIDE)
    pipeline.history.extend(
        [
            _phase_report("build", 0, [_result("compile", "pass")], decision=passed),
            _phase_report("test", 1, [_result("unit", "fail")], decision=unattended),
        ]
    )
    pipeline.current_index = 1
    pipeline.status = PipelineStatus.HALTED

    report = ReportAggregator().build(pipeline)

    assert report.manual_overrides == 0
    assert report.risk_factors["manual_overrides"] == 0.0


def test_automatic_rollback_keeps_the_halting_phase(pipeline: Pipeline) -> None:
    pipeline.history.append(_phase_report("verify", 3, [_result("smoke", "fail")]))
    pipeline.rollback_report = RollbackReport(
        target_checkpoint_id=ids.generate_checkpoint_id(), outcome=RollbackOutcome.ROLLED_BACK
    )
    pipeline.status = PipelineStatus.ROLLED_BACK
    pipeline.current_index = 2

    report = ReportAggregator().build(pipeline)

    assert report.halting_phase == "verify"
    assert report.halting_check_ids == ("smoke",)


def test_report_for_pending_run_is_empty(pipeline: Pipeline) -> None:
    report = ReportAggregator().build(pipeline)

    assert report.outcome is PipelineStatus.PENDING
    assert report.phase_reports == ()
    assert report.total_checks == 0
    assert report.risk_score == 0.0
    assert report.duration_ms >= 0


def test_risk_weights_reject_negative_values() -> None:
    with pytest.raises(ValueError, match="risk weight rollback must be >= 0"):
        RiskWeights(rollback=-1.0)
