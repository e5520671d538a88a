"""
phasegate — unit tests for the pipeline state machine

File: tests/unit/engine/test_state_machine.py
Last updated: 2026-10-18

Purpose
- Drive whole runs through PipelineEngine with scripted checks and in-memory
  deployment state, and validate every lifecycle transition.

What this test file should cover
- Happy path to completed with checkpoints at each deployment boundary.
- Required-check failure halts at the failing phase; later phases never run.
- Rollback to the earliest or a chosen checkpoint; escalation when reverting
  or verification fails.
- Manual override timeout, resume, abort, auto rollback.
- Rejected transitions and unknown run ids.

Functional requirements
- No subprocesses. Deployment state is InMemoryDeploymentState.
"""

from __future__ import annotations

import asyncio
import itertools

import pytest

from phasegate.domain import ids
from phasegate.domain.errors import InvalidTransition, RollbackIncomplete, RunNotFound
from phasegate.domain.models import (
    ErrorKind,
    GatePolicy,
    GatePolicyKind,
    Pipeline,
    PipelineStatus,
    RollbackOutcome,
)
from phasegate.engine.collaborators import StaticOverrideChannel, UnattendedOverrideChannel
from phasegate.engine.deployment import (
    InMemoryDeploymentState,
    ShellDeploymentHooks,
    UnmanagedDeployment,
)
from phasegate.engine.settings import EngineSettings
from phasegate.engine.state_machine import DEPLOYMENT_METADATA_KEY, PipelineEngine, can_transition
from phasegate.persistence.repositories import InMemoryRunStore


class _RecordingStore(InMemoryRunStore):
    def __init__(self) -> None:
        super().__init__()
        self.saves: list[tuple[PipelineStatus, int]] = []

    def save(self, pipeline: Pipeline) -> None:
        self.saves.append((pipeline.status, pipeline.current_index))
        super().save(pipeline)


@pytest.mark.asyncio
async def test_all_checks_pass_completes_with_checkpoints(scripted_invoker, release_pipeline) -> None:
    deployment = InMemoryDeploymentState()
    store = _RecordingStore()
    engine = PipelineEngine(scripted_invoker(), store=store, deployment=deployment)
    pipeline = release_pipeline()

    report = await engine.start(pipeline)

    assert report.outcome is PipelineStatus.COMPLETED
    assert [phase.phase_name for phase in report.phase_reports] == ["build", "test", "deploy", "verify"]
    assert [checkpoint.phase_name for checkpoint in report.checkpoints] == ["deploy", "verify"]
    assert deployment.snapshots == [("deploy", "deploy@1"), ("verify", "verify@2")]
    assert report.halting_phase is None
    assert report.total_checks == 6
    assert report.passed_checks == 6
    assert report.risk_score == 0.0

    stored = engine.store.get(pipeline.run_id)
    assert stored is not None
    assert stored.status is PipelineStatus.COMPLETED
    assert stored.current_index == 4
    # The caller's object is never mutated by the engine.
    assert pipeline.status is PipelineStatus.PENDING
    assert pipeline.history == []

    indices = [index for _, index in store.saves]
    assert indices == sorted(indices)
    assert [status for status, _ in store.saves][0] is PipelineStatus.PENDING
    assert store.saves[-1] == (PipelineStatus.COMPLETED, 4)


@pytest.mark.asyncio
async def test_required_failure_halts_and_later_phases_never_run(
    scripted_invoker, release_pipeline
) -> None:
    invoker = scripted_invoker({"unit": "fail"})
    deployment = InMemoryDeploymentState()
    engine = PipelineEngine(invoker, deployment=deployment)
    pipeline = release_pipeline()

    report = await engine.start(pipeline)

    assert report.outcome is PipelineStatus.HALTED
    assert report.halting_phase == "test"
    assert report.halting_check_ids == ("unit",)
    assert report.phase_reports[-1].decision.error_kind is ErrorKind.CHECK_FAILURE
    assert report.checkpoints == ()
    assert invoker.calls_for("deploy-staging") == 0
    assert deployment.snapshots == []
    assert engine.status(pipeline.run_id).current_index == 1


@pytest.mark.asyncio
async def test_rollback_reverts_newest_first_to_earliest_checkpoint(
    scripted_invoker, release_pipeline
) -> None:
    invoker = scripted_invoker()
    deployment = InMemoryDeploymentState()
    engine = PipelineEngine(invoker, deployment=deployment)
    pipeline = release_pipeline()
    await engine.start(pipeline)

    report = await engine.rollback(pipeline.run_id)

    assert report.outcome is PipelineStatus.ROLLED_BACK
    assert deployment.reverted == ["verify@2", "deploy@1"]
    assert report.rollback is not None
    assert report.rollback.outcome is RollbackOutcome.ROLLED_BACK
    assert report.rollback.target_checkpoint_id == report.checkpoints[0].id
    assert [result.check_id for result in report.rollback.verification] == ["health"]
    assert report.risk_factors["rollback"] == 5.0
    assert invoker.calls_for("health") == 1
    assert engine.status(pipeline.run_id).current_index == 2


@pytest.mark.asyncio
async def test_rollback_to_named_checkpoint_leaves_older_state(scripted_invoker, release_pipeline) -> None:
    deployment = InMemoryDeploymentState()
    engine = PipelineEngine(scripted_invoker(), deployment=deployment)
    pipeline = release_pipeline()
    completed = await engine.start(pipeline)
    verify_checkpoint = completed.checkpoints[1]

    report = await engine.rollback(pipeline.run_id, verify_checkpoint.id)

    assert report.outcome is PipelineStatus.ROLLED_BACK
    assert deployment.reverted == ["verify@2"]
    assert engine.status(pipeline.run_id).current_index == 3


@pytest.mark.asyncio
async def test_rollback_from_halted_run(scripted_invoker, release_pipeline) -> None:
    deployment = InMemoryDeploymentState()
    engine = PipelineEngine(
        scripted_invoker({"smoke": "fail"}),
        deployment=deployment,
        settings=EngineSettings(auto_rollback=False),
    )
    pipeline = release_pipeline()

    halted = await engine.start(pipeline)
    assert halted.outcome is PipelineStatus.HALTED
    assert halted.halting_phase == "verify"

    report = await engine.rollback(pipeline.run_id)

    assert report.outcome is PipelineStatus.ROLLED_BACK
    assert deployment.reverted == ["deploy@1"]


@pytest.mark.asyncio
async def test_failed_revert_escalates_without_changing_status(scripted_invoker, release_pipeline) -> None:
    deployment = InMemoryDeploymentState(failing_reverts={"verify@2"})
    engine = PipelineEngine(scripted_invoker(), deployment=deployment)
    pipeline = release_pipeline()
    await engine.start(pipeline)

    with pytest.raises(RollbackIncomplete) as excinfo:
        await engine.rollback(pipeline.run_id)

    report = excinfo.value.report
    assert report.escalated is True
    assert report.outcome is PipelineStatus.COMPLETED
    assert report.rollback is not None
    assert report.rollback.outcome is RollbackOutcome.INCOMPLETE
    assert "deployment_revert reported failure" in report.rollback.reasons[0]
    assert deployment.reverted == []

    stored = engine.status(pipeline.run_id)
    assert stored.status is PipelineStatus.COMPLETED
    assert stored.escalated is True


@pytest.mark.asyncio
async def test_failed_verification_escalates(scripted_invoker, release_pipeline) -> None:
    deployment = InMemoryDeploymentState()
    engine = PipelineEngine(scripted_invoker({"health": "fail"}), deployment=deployment)
    pipeline = release_pipeline()
    await engine.start(pipeline)

    with pytest.raises(RollbackIncomplete, match="verification checks not passing: health"):
        await engine.rollback(pipeline.run_id)

    assert deployment.reverted == ["verify@2", "deploy@1"]
    assert engine.status(pipeline.run_id).escalated is True


@pytest.mark.asyncio
async def test_unmanaged_deployment_cannot_be_rolled_back(scripted_invoker, release_pipeline) -> None:
    engine = PipelineEngine(scripted_invoker())
    pipeline = release_pipeline()
    completed = await engine.start(pipeline)
    assert {checkpoint.state_ref for checkpoint in completed.checkpoints} == {""}

    with pytest.raises(RollbackIncomplete, match="no deployment hooks configured"):
        await engine.rollback(pipeline.run_id)


@pytest.mark.asyncio
async def test_manual_override_timeout_halts_with_gate_timeout(
    scripted_invoker, make_phase, release_pipeline
) -> None:
    gated = make_phase(
        "deploy",
        ["deploy-staging"],
        gate=GatePolicy(kind=GatePolicyKind.MANUAL_OVERRIDE, override_timeout_seconds=0.05),
        boundary=True,
    )
    pipeline = release_pipeline(phases=(make_phase("build", ["compile"]), gated))
    deployment = InMemoryDeploymentState()
    engine = PipelineEngine(
        scripted_invoker(), deployment=deployment, override_channel=UnattendedOverrideChannel()
    )

    report = await engine.start(pipeline)

    assert report.outcome is PipelineStatus.HALTED
    assert report.halting_phase == "deploy"
    assert report.phase_reports[-1].decision.error_kind is ErrorKind.GATE_TIMEOUT
    assert deployment.snapshots == []


@pytest.mark.asyncio
async def test_approved_override_counts_toward_risk(scripted_invoker, make_phase, release_pipeline) -> None:
    gated = make_phase("deploy", ["deploy-staging"], gate=GatePolicyKind.MANUAL_OVERRIDE, boundary=True)
    pipeline = release_pipeline(phases=(make_phase("build", ["compile"]), gated))
    engine = PipelineEngine(
        scripted_invoker({"deploy-staging": "fail"}),
        deployment=InMemoryDeploymentState(),
        override_channel=StaticOverrideChannel(approved=True, approver="alice"),
    )

    report = await engine.start(pipeline)

    assert report.outcome is PipelineStatus.COMPLETED
    assert report.manual_overrides == 1
    assert report.risk_factors["manual_overrides"] == 2.0
    assert len(report.checkpoints) == 1


@pytest.mark.asyncio
async def test_resume_reexecutes_halted_phase_as_next_attempt(scripted_invoker, release_pipeline) -> None:
    invoker = scripted_invoker({"unit": ["fail", "pass"]})
    engine = PipelineEngine(invoker, deployment=InMemoryDeploymentState())
    pipeline = release_pipeline()

    halted = await engine.start(pipeline)
    assert halted.outcome is PipelineStatus.HALTED

    report = await engine.resume(pipeline.run_id)

    assert report.outcome is PipelineStatus.COMPLETED
    test_reports = [phase for phase in report.phase_reports if phase.phase_name == "test"]
    assert [phase.attempt for phase in test_reports] == [1, 2]
    assert ("unit", "test", 2) in invoker.calls
    assert invoker.calls_for("compile") == 1
    # Tallies only count the latest attempt of each phase.
    assert report.failed_checks == 0
    assert report.total_checks == 6


@pytest.mark.asyncio
async def test_abort_halts_in_flight_run(scripted_invoker, sleep_step, release_pipeline) -> None:
    invoker = scripted_invoker({"compile": sleep_step(5.0)})
    engine = PipelineEngine(invoker)
    pipeline = release_pipeline()

    running = asyncio.create_task(engine.start(pipeline))
    while not engine.abort(pipeline.run_id, "operator abort"):
        await asyncio.sleep(0.005)
    assert engine.status(pipeline.run_id).status is PipelineStatus.RUNNING
    with pytest.raises(InvalidTransition, match="run is in flight"):
        await engine.resume(pipeline.run_id)

    report = await running

    assert report.outcome is PipelineStatus.HALTED
    assert report.halting_phase == "build"
    assert report.phase_reports[0].decision.error_kind is ErrorKind.CHECK_INFRA
    assert invoker.calls_for("unit") == 0
    assert engine.abort(pipeline.run_id) is False


@pytest.mark.asyncio
async def test_abort_halts_even_when_gate_tolerates_the_aborted_check(
    scripted_invoker, sleep_step, make_phase, release_pipeline
) -> None:
    deployment = InMemoryDeploymentState()
    engine = PipelineEngine(
        scripted_invoker({"deploy-staging": sleep_step(5.0)}), deployment=deployment
    )
    pipeline = release_pipeline(
        phases=(
            make_phase(
                "deploy",
                ["deploy-staging"],
                gate=GatePolicy(kind=GatePolicyKind.WEIGHTED_THRESHOLD, threshold=1.0),
                boundary=True,
            ),
        )
    )

    running = asyncio.create_task(engine.start(pipeline))
    while not engine.abort(pipeline.run_id, "operator abort"):
        await asyncio.sleep(0.005)
    report = await running

    assert report.outcome is PipelineStatus.HALTED
    assert report.halting_phase == "deploy"
    assert report.checkpoints == ()
    assert deployment.snapshots == []
    assert report.phase_reports[0].decision.reasons[-1] == "aborted: operator abort"


@pytest.mark.asyncio
async def test_auto_rollback_after_halt(scripted_invoker, release_pipeline) -> None:
    deployment = InMemoryDeploymentState()
    engine = PipelineEngine(scripted_invoker({"smoke": "fail"}), deployment=deployment)
    pipeline = release_pipeline()

    report = await engine.start(pipeline)

    assert report.outcome is PipelineStatus.ROLLED_BACK
    assert report.phase_reports[-1].phase_name == "verify"
    assert report.rollback is not None
    assert report.rollback.outcome is RollbackOutcome.ROLLED_BACK
    assert deployment.reverted == ["deploy@1"]
    assert engine.status(pipeline.run_id).current_index == 2


@pytest.mark.asyncio
async def test_auto_rollback_can_be_disabled(scripted_invoker, release_pipeline) -> None:
    deployment = InMemoryDeploymentState()
    engine = PipelineEngine(
        scripted_invoker({"smoke": "fail"}),
        deployment=deployment,
        settings=EngineSettings(auto_rollback=False),
    )

    report = await engine.start(release_pipeline())

    assert report.outcome is PipelineStatus.HALTED
    assert report.rollback is None
    assert deployment.reverted == []
    assert len(report.checkpoints) == 1


@pytest.mark.asyncio
async def test_auto_rollback_skipped_without_checkpoints(scripted_invoker, release_pipeline) -> None:
    engine = PipelineEngine(
        scripted_invoker({"compile": "fail"}),
        deployment=InMemoryDeploymentState(),
    )

    report = await engine.start(release_pipeline())

    assert report.outcome is PipelineStatus.HALTED
    assert report.rollback is None


@pytest.mark.asyncio
async def test_rejected_transitions(scripted_invoker, release_pipeline) -> None:
    engine = PipelineEngine(scripted_invoker(), deployment=InMemoryDeploymentState())
    pipeline = release_pipeline()
    await engine.start(pipeline)

    with pytest.raises(InvalidTransition, match="only halted runs can resume"):
        await engine.resume(pipeline.run_id)
    with pytest.raises(InvalidTransition, match="run already started"):
        await engine.start(pipeline)
    with pytest.raises(InvalidTransition, match="unknown checkpoint"):
        await engine.rollback(pipeline.run_id, ids.generate_checkpoint_id())

    await engine.rollback(pipeline.run_id)
    with pytest.raises(InvalidTransition, match="cannot move from rolled_back to rolled_back"):
        await engine.rollback(pipeline.run_id)


@pytest.mark.asyncio
async def test_rollback_without_checkpoints_is_rejected(scripted_invoker, release_pipeline) -> None:
    engine = PipelineEngine(scripted_invoker({"unit": "fail"}), deployment=InMemoryDeploymentState())
    pipeline = release_pipeline()
    await engine.start(pipeline)

    with pytest.raises(InvalidTransition, match="no checkpoints recorded"):
        await engine.rollback(pipeline.run_id)


@pytest.mark.asyncio
async def test_start_rejects_pipeline_that_is_not_pending(scripted_invoker, release_pipeline) -> None:
    engine = PipelineEngine(scripted_invoker())

    with pytest.raises(InvalidTransition, match="run already started"):
        await engine.start(release_pipeline(status=PipelineStatus.HALTED))


@pytest.mark.asyncio
async def test_unknown_run_ids_raise_run_not_found(scripted_invoker) -> None:
    engine = PipelineEngine(scripted_invoker())
    missing = ids.generate_run_id()

    with pytest.raises(RunNotFound):
        engine.status(missing)
    with pytest.raises(RunNotFound):
        engine.report(missing)
    with pytest.raises(RunNotFound):
        await engine.resume("not-a-run-id")
    with pytest.raises(RunNotFound):
        await engine.rollback(missing)
    assert engine.abort(missing) is False


def test_deployment_provider_selection(scripted_invoker, release_pipeline) -> None:
    hooks = {
        "snapshot": {"argv": ["git", "rev-parse", "HEAD"]},
        "revert": {"command": "git checkout $PHASEGATE_CHECKPOINT_REF"},
    }
    with_hooks = release_pipeline(metadata={DEPLOYMENT_METADATA_KEY: hooks})
    plain = release_pipeline()
    explicit = InMemoryDeploymentState()

    engine = PipelineEngine(scripted_invoker())
    assert isinstance(engine.deployment_for(with_hooks), ShellDeploymentHooks)
    assert isinstance(engine.deployment_for(plain), UnmanagedDeployment)
    assert PipelineEngine(scripted_invoker(), deployment=explicit).deployment_for(with_hooks) is explicit


_ALLOWED = {
    (PipelineStatus.PENDING, PipelineStatus.RUNNING),
    (PipelineStatus.RUNNING, PipelineStatus.COMPLETED),
    (PipelineStatus.RUNNING, PipelineStatus.HALTED),
    (PipelineStatus.RUNNING, PipelineStatus.ROLLED_BACK),
    (PipelineStatus.HALTED, PipelineStatus.RUNNING),
    (PipelineStatus.HALTED, PipelineStatus.ROLLED_BACK),
    (PipelineStatus.COMPLETED, PipelineStatus.ROLLED_BACK),
}


@pytest.mark.parametrize(
    ("current", "requested"),
    list(itertools.product(PipelineStatus, repeat=2)),
    ids=lambda status: str(status),
)
def test_transition_table(current: PipelineStatus, requested: PipelineStatus) -> None:
    assert can_transition(current, requested) is ((current, requested) in _ALLOWED)
