"""
phasegate — pipeline state machine

File: src/phasegate/engine/state_machine.py
Last updated: 2026-10-18

Purpose
- Own the mutable state of every Pipeline run and drive it through its
  phases: start, resume, abort, rollback, status, report.

Transitions
- pending -> running
- running -> completed | halted | rolled_back
- halted -> running (resume) | rolled_back
- completed -> rolled_back
- Anything else raises InvalidTransition.

Functional requirements
- ``current_index`` only increases, except when a rollback resets it to the
  target checkpoint's phase.
- Every transition is persisted through the RunStore before it is observable.
- A halted phase is re-executed from scratch on resume; the engine never
  retries a phase on its own.
- Check failures, infrastructure errors and gate timeouts end as a halted run,
  never as an exception. RollbackIncomplete is the one fatal outcome.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

import structlog

from phasegate.domain.errors import InvalidTransition, RollbackIncomplete, RunNotFound
from phasegate.domain.models import Checkpoint, Pipeline, PipelineStatus, RunReport
from phasegate.engine.check_runner import CheckRunner
from phasegate.engine.collaborators import (
    CheckContext,
    CheckInvoker,
    DeploymentStateProvider,
    OverrideChannel,
)
from phasegate.engine.deployment import ShellDeploymentHooks, UnmanagedDeployment
from phasegate.engine.gate import GateEvaluator
from phasegate.engine.phase_executor import PhaseExecutor
from phasegate.engine.report import ReportAggregator
from phasegate.engine.rollback import RollbackManager
from phasegate.engine.settings import EngineSettings
from phasegate.persistence.repositories import InMemoryRunStore, RunStore
from phasegate.utils.concurrency import CancellationToken

_TRANSITIONS: Final[Mapping[PipelineStatus, frozenset[PipelineStatus]]] = {
    PipelineStatus.PENDING: frozenset({PipelineStatus.RUNNING}),
    PipelineStatus.RUNNING: frozenset(
        {PipelineStatus.COMPLETED, PipelineStatus.HALTED, PipelineStatus.ROLLED_BACK}
    ),
    PipelineStatus.HALTED: frozenset({PipelineStatus.RUNNING, PipelineStatus.ROLLED_BACK}),
    PipelineStatus.COMPLETED: frozenset({PipelineStatus.ROLLED_BACK}),
    PipelineStatus.ROLLED_BACK: frozenset(),
}

DEPLOYMENT_METADATA_KEY: Final[str] = "deployment"
ROLLBACK_PHASE_NAME: Final[str] = "rollback"


def can_transition(current: PipelineStatus, requested: PipelineStatus) -> bool:
    return requested in _TRANSITIONS[current]


@dataclass(slots=True)
class _ActiveRun:
    pipeline: Pipeline
    token: CancellationToken = field(default_factory=CancellationToken)


class PipelineEngine:
    """Drives Pipelines through their phases and persists every transition."""

    def __init__(
        self,
        invoker: CheckInvoker,
        *,
        store: RunStore | None = None,
        deployment: DeploymentStateProvider | None = None,
        override_channel: OverrideChannel | None = None,
        settings: EngineSettings | None = None,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._store: RunStore = store if store is not None else InMemoryRunStore()
        self._deployment = deployment
        self._component_logger = logger
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._runner = CheckRunner(invoker, logger=logger)
        self._gate = GateEvaluator(
            override_channel=override_channel, settings=self._settings, logger=logger
        )
        self._aggregator = ReportAggregator(self._settings.risk, logger=logger)
        self._active: dict[str, _ActiveRun] = {}

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def store(self) -> RunStore:
        return self._store

    async def start(self, pipeline: Pipeline) -> RunReport:
        """Run ``pipeline`` from its first phase until it completes or halts."""
        self._ensure_not_active(pipeline.run_id, PipelineStatus.RUNNING)
        if pipeline.status is not PipelineStatus.PENDING:
            raise InvalidTransition(
                pipeline.run_id, pipeline.status, PipelineStatus.RUNNING, "run already started"
            )
        existing = self._store.get(pipeline.run_id)
        if existing is not None:
            raise InvalidTransition(
                pipeline.run_id, existing.status, PipelineStatus.RUNNING, "run already started"
            )

        owned = pipeline.snapshot()
        self._store.save(owned)
        self._logger.info(
            "pipeline_created",
            run_id=owned.run_id,
            pipeline=owned.name,
            kind=owned.kind,
            phases=[phase.name for phase in owned.phases],
        )
        return await self._run(owned)

    async def resume(self, run_id: str) -> RunReport:
        """Re-execute the halted phase of ``run_id`` and continue from there."""
        self._ensure_not_active(run_id, PipelineStatus.RUNNING)
        pipeline = self._require(run_id)
        if pipeline.status is not PipelineStatus.HALTED:
            raise InvalidTransition(
                run_id, pipeline.status, PipelineStatus.RUNNING, "only halted runs can resume"
            )
        self._logger.info(
            "pipeline_resumed",
            run_id=run_id,
            phase_index=pipeline.current_index,
        )
        return await self._run(pipeline)

    def abort(self, run_id: str, reason: str = "aborted by operator") -> bool:
        """Signal the in-flight run. Returns ``False`` when nothing is running."""
        active = self._active.get(run_id)
        if active is None:
            return False
        active.token.cancel(reason)
        self._logger.warning("pipeline_abort_requested", run_id=run_id, reason=reason)
        return True

    async def rollback(self, run_id: str, checkpoint_id: str | None = None) -> RunReport:
        """Revert deployment state to a checkpoint and verify it.

        Without ``checkpoint_id`` the earliest checkpoint is the target, which
        undoes every deployment boundary the run passed. Raises
        :class:`RollbackIncomplete` when reverting or verification fails.
        """
        self._ensure_not_active(run_id, PipelineStatus.ROLLED_BACK)
        pipeline = self._require(run_id)
        return await self._rollback(pipeline, checkpoint_id)

    def status(self, run_id: str) -> Pipeline:
        active = self._active.get(run_id)
        if active is not None:
            return active.pipeline.snapshot()
        return self._require(run_id)

    def report(self, run_id: str) -> RunReport:
        return self._aggregator.build(self.status(run_id))

    def deployment_for(self, pipeline: Pipeline) -> DeploymentStateProvider:
        if self._deployment is not None:
            return self._deployment
        hooks = pipeline.metadata.get(DEPLOYMENT_METADATA_KEY)
        if isinstance(hooks, dict):
            return ShellDeploymentHooks.from_definition(hooks)
        return UnmanagedDeployment()

    async def _run(self, pipeline: Pipeline) -> RunReport:
        active = _ActiveRun(pipeline=pipeline)
        self._active[pipeline.run_id] = active
        try:
            with structlog.contextvars.bound_contextvars(run_id=pipeline.run_id):
                self._transition(pipeline, PipelineStatus.RUNNING)
                await self._drive(pipeline, active.token)
        except (asyncio.CancelledError, Exception):
            if pipeline.status is PipelineStatus.RUNNING:
                self._logger.exception("pipeline_crashed", run_id=pipeline.run_id)
                self._transition(pipeline, PipelineStatus.HALTED)
            raise
        finally:
            self._active.pop(pipeline.run_id, None)

        if (
            pipeline.status is PipelineStatus.HALTED
            and self._settings.auto_rollback
            and pipeline.checkpoints
        ):
            self._logger.warning(
                "pipeline_auto_rollback",
                run_id=pipeline.run_id,
                checkpoints=[checkpoint.id for checkpoint in pipeline.checkpoints],
            )
            return await self._rollback(pipeline, None)
        return self._aggregator.build(pipeline.snapshot())

    async def _drive(self, pipeline: Pipeline, token: CancellationToken) -> None:
        executor = PhaseExecutor(
            self._runner,
            self._gate,
            deployment=self.deployment_for(pipeline),
            max_parallel_checks=self._settings.max_parallel_checks,
            logger=self._component_logger,
        )
        while pipeline.current_index < len(pipeline.phases):
            if token.is_cancelled:
                self._logger.warning(
                    "pipeline_aborted_between_phases",
                    run_id=pipeline.run_id,
                    phase_index=pipeline.current_index,
                    reason=token.reason,
                )
                self._transition(pipeline, PipelineStatus.HALTED)
                return

            index = pipeline.current_index
            phase = pipeline.phases[index]
            context = CheckContext(
                run_id=pipeline.run_id,
                pipeline_name=pipeline.name,
                pipeline_kind=pipeline.kind,
                phase_name=phase.name,
                phase_index=index,
                attempt=pipeline.attempts_for(index) + 1,
                cancel_token=token,
                metadata=pipeline.metadata,
            )
            with structlog.contextvars.bound_contextvars(phase=phase.name):
                execution = await executor.execute(phase, context)

            pipeline.history.append(execution.report)
            if execution.checkpoint is not None:
                pipeline.checkpoints.append(execution.checkpoint)
            if not execution.report.decision.is_go:
                self._transition(pipeline, PipelineStatus.HALTED)
                return
            pipeline.current_index = index + 1
            pipeline.touch()
            self._store.save(pipeline)

        self._transition(pipeline, PipelineStatus.COMPLETED)

    async def _rollback(self, pipeline: Pipeline, checkpoint_id: str | None) -> RunReport:
        if not can_transition(pipeline.status, PipelineStatus.ROLLED_BACK):
            raise InvalidTransition(pipeline.run_id, pipeline.status, PipelineStatus.ROLLED_BACK)
        if not pipeline.checkpoints:
            raise InvalidTransition(
                pipeline.run_id,
                pipeline.status,
                PipelineStatus.ROLLED_BACK,
                "no checkpoints recorded",
            )
        target = self._resolve_checkpoint(pipeline, checkpoint_id)
        newer = _newer_than(pipeline.checkpoints, target)

        deployment = self.deployment_for(pipeline)
        manager = RollbackManager(
            self._runner,
            deployment,
            max_parallel_checks=self._settings.max_parallel_checks,
            logger=self._component_logger,
        )
        context = CheckContext(
            run_id=pipeline.run_id,
            pipeline_name=pipeline.name,
            pipeline_kind=pipeline.kind,
            phase_name=ROLLBACK_PHASE_NAME,
            phase_index=target.phase_index,
            metadata=pipeline.metadata,
        )
        with structlog.contextvars.bound_contextvars(run_id=pipeline.run_id):
            rollback_report = await manager.rollback(
                target,
                newer,
                verification_checks=pipeline.rollback_checks,
                context=context,
            )

        pipeline.rollback_report = rollback_report
        if not rollback_report.succeeded:
            pipeline.escalated = True
            pipeline.touch()
            self._store.save(pipeline)
            report = self._aggregator.build(pipeline.snapshot())
            raise RollbackIncomplete(report)

        pipeline.current_index = target.phase_index
        self._transition(pipeline, PipelineStatus.ROLLED_BACK)
        return self._aggregator.build(pipeline.snapshot())

    def _resolve_checkpoint(self, pipeline: Pipeline, checkpoint_id: str | None) -> Checkpoint:
        if checkpoint_id is None:
            return pipeline.checkpoints[0]
        checkpoint = pipeline.find_checkpoint(checkpoint_id)
        if checkpoint is None:
            raise InvalidTransition(
                pipeline.run_id,
                pipeline.status,
                PipelineStatus.ROLLED_BACK,
                f"unknown checkpoint {checkpoint_id!r}",
            )
        return checkpoint

    def _transition(self, pipeline: Pipeline, requested: PipelineStatus) -> None:
        current = pipeline.status
        if not can_transition(current, requested):
            raise InvalidTransition(pipeline.run_id, current, requested)
        pipeline.status = requested
        pipeline.touch()
        self._store.save(pipeline)
        self._logger.info(
            "pipeline_transition",
            run_id=pipeline.run_id,
            from_status=str(current),
            to_status=str(requested),
            phase_index=pipeline.current_index,
        )

    def _ensure_not_active(self, run_id: str, requested: PipelineStatus) -> None:
        active = self._active.get(run_id)
        if active is not None:
            raise InvalidTransition(run_id, active.pipeline.status, requested, "run is in flight")

    def _require(self, run_id: str) -> Pipeline:
        try:
            pipeline = self._store.get(run_id)
        except ValueError as exc:
            raise RunNotFound(run_id) from exc
        if pipeline is None:
            raise RunNotFound(run_id)
        return pipeline


def _newer_than(checkpoints: list[Checkpoint], target: Checkpoint) -> list[Checkpoint]:
    position = next(index for index, item in enumerate(checkpoints) if item.id == target.id)
    return checkpoints[position + 1 :]


__all__ = [
    "DEPLOYMENT_METADATA_KEY",
    "ROLLBACK_PHASE_NAME",
    "PipelineEngine",
    "can_transition",
]
