"""
phasegate — phase executor

File: src/phasegate/engine/phase_executor.py
Last updated: 2026-10-18

Purpose
- Run every check of one phase concurrently (bounded), join on all of them,
  consult the gate exactly once, and produce the PhaseReport.

Behavior
- No short-circuit: a failing check never cancels its siblings. Only an abort
  (the context's cancellation token) stops in-flight checks, which then report
  ``error``.
- Results are reported in definition order regardless of completion order.
- On GO at a deployment boundary a snapshot is taken and a Checkpoint is
  produced before returning. A failed snapshot turns the verdict into NO_GO.
- A phase whose token was cancelled is NO_GO (``check_infra``) even when
  its gate said GO, and no snapshot is taken.
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from typing import Any

import structlog

from phasegate.domain import ids as domain_ids
from phasegate.domain.models import (
    Checkpoint,
    CheckResult,
    ErrorKind,
    GateDecision,
    PhaseDefinition,
    PhaseReport,
    Verdict,
    utc_now,
)
from phasegate.engine.check_runner import CheckRunner
from phasegate.engine.collaborators import CheckContext, DeploymentStateProvider
from phasegate.engine.deployment import UnmanagedDeployment
from phasegate.engine.gate import GateEvaluator
from phasegate.utils.concurrency import WorkerPool


@dataclass(frozen=True, slots=True)
class PhaseExecution:
    report: PhaseReport
    checkpoint: Checkpoint | None = None

    @property
    def verdict(self) -> Verdict:
        return self.report.verdict


class PhaseExecutor:
    def __init__(
        self,
        runner: CheckRunner,
        gate: GateEvaluator,
        *,
        deployment: DeploymentStateProvider | None = None,
        max_parallel_checks: int = 4,
        logger: Any | None = None,
    ) -> None:
        if max_parallel_checks <= 0:
            raise ValueError("max_parallel_checks must be > 0")
        self._runner = runner
        self._gate = gate
        self._deployment = deployment if deployment is not None else UnmanagedDeployment()
        self._max_parallel_checks = max_parallel_checks
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def execute(self, phase: PhaseDefinition, context: CheckContext) -> PhaseExecution:
        started_at = utc_now()
        self._logger.info(
            "phase_started",
            checks=len(phase.checks),
            policy=str(phase.gate.kind),
            deployment_boundary=phase.deployment_boundary,
            **context.log_fields(),
        )

        results = await self._run_checks(phase, context)
        decision = await self._gate.evaluate(phase, results, context)
        token = context.cancel_token
        if token is not None and token.is_cancelled:
            decision = _aborted(decision, token.reason)

        checkpoint: Checkpoint | None = None
        if decision.is_go and phase.deployment_boundary:
            checkpoint, decision = await self._snapshot(phase, context, decision)

        report = PhaseReport(
            phase_name=phase.name,
            phase_index=context.phase_index,
            attempt=context.attempt,
            results=results,
            decision=decision,
            started_at=started_at,
            finished_at=utc_now(),
            checkpoint_id=checkpoint.id if checkpoint is not None else None,
        )
        self._logger.info(
            "phase_finished",
            verdict=str(report.verdict),
            duration_ms=report.duration_ms,
            checkpoint_id=report.checkpoint_id,
            **context.log_fields(),
        )
        return PhaseExecution(report=report, checkpoint=checkpoint)

    async def _run_checks(
        self, phase: PhaseDefinition, context: CheckContext
    ) -> tuple[CheckResult, ...]:
        if not phase.checks:
            return ()
        # The pool gets its own token: aborts reach checks through the context
        # so that every check still reports a result.
        pool: WorkerPool[CheckResult] = WorkerPool(
            max_concurrency=min(self._max_parallel_checks, len(phase.checks)),
        )
        results = await pool.gather(self._runner.run(check, context) for check in phase.checks)
        return tuple(results)

    async def _snapshot(
        self,
        phase: PhaseDefinition,
        context: CheckContext,
        decision: GateDecision,
    ) -> tuple[Checkpoint | None, GateDecision]:
        try:
            state_ref = await self._deployment.deployment_snapshot(context)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "deployment_snapshot_failed",
                error=f"{type(exc).__name__}: {exc}",
                **context.log_fields(),
            )
            return None, dataclasses.replace(
                decision,
                verdict=Verdict.NO_GO,
                error_kind=ErrorKind.CHECK_INFRA,
                reasons=(*decision.reasons, f"deployment snapshot failed: {exc}"),
            )

        checkpoint = Checkpoint(
            id=domain_ids.generate_checkpoint_id(),
            run_id=context.run_id,
            phase_name=phase.name,
            phase_index=context.phase_index,
            state_ref=state_ref if isinstance(state_ref, str) else str(state_ref),
        )
        self._logger.info(
            "checkpoint_recorded",
            checkpoint_id=checkpoint.id,
            **context.log_fields(),
        )
        return checkpoint, decision


def _aborted(decision: GateDecision, reason: str | None) -> GateDecision:
    """An aborted phase never advances, whatever its gate concluded."""
    return dataclasses.replace(
        decision,
        verdict=Verdict.NO_GO,
        error_kind=ErrorKind.CHECK_INFRA,
        reasons=(*decision.reasons, f"aborted: {reason or 'operation cancelled'}"),
    )


__all__ = ["PhaseExecution", "PhaseExecutor"]
