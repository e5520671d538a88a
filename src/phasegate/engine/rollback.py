"""
phasegate — rollback manager

File: src/phasegate/engine/rollback.py
Last updated: 2026-10-18

Purpose
- Restore deployment state to a Checkpoint and verify the restoration.

Behavior
- Checkpoints newer than the target are reverted first, newest first, then the
  target itself. The first failed revert stops the sequence; older state is
  never restored over a newer state that could not be undone.
- Verification checks run through the check runner and are judged strict-all
  over the required checks. No verification checks means nothing to verify.
- Never raises for revert or verification failures; the outcome is
  ``rollback_incomplete`` and the caller decides how to escalate.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from typing import Any

import structlog

from phasegate.domain.models import (
    CheckDefinition,
    Checkpoint,
    CheckResult,
    RevertResult,
    RollbackOutcome,
    RollbackReport,
    utc_now,
)
from phasegate.engine.check_runner import CheckRunner
from phasegate.engine.collaborators import CheckContext, DeploymentStateProvider
from phasegate.utils.concurrency import WorkerPool


class RollbackManager:
    def __init__(
        self,
        runner: CheckRunner,
        deployment: DeploymentStateProvider,
        *,
        max_parallel_checks: int = 4,
        logger: Any | None = None,
    ) -> None:
        if max_parallel_checks <= 0:
            raise ValueError("max_parallel_checks must be > 0")
        self._runner = runner
        self._deployment = deployment
        self._max_parallel_checks = max_parallel_checks
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def rollback(
        self,
        target: Checkpoint,
        newer: Sequence[Checkpoint] = (),
        *,
        verification_checks: Sequence[CheckDefinition] = (),
        context: CheckContext,
    ) -> RollbackReport:
        started_at = utc_now()
        ordered = sorted(newer, key=lambda item: (item.phase_index, item.created_at), reverse=True)
        self._logger.info(
            "rollback_started",
            target_checkpoint_id=target.id,
            newer=[item.id for item in ordered],
            run_id=context.run_id,
        )

        reverts: list[RevertResult] = []
        reasons: list[str] = []
        for checkpoint in (*ordered, target):
            step = await self._revert(checkpoint)
            reverts.append(step)
            if not step.ok:
                reasons.append(f"revert of {checkpoint.id} ({checkpoint.phase_name}) failed: {step.detail}")
                break

        verification: tuple[CheckResult, ...] = ()
        if not reasons:
            verification = await self._verify(verification_checks, context)
            failing = [
                result.check_id
                for result in verification
                if result.required and not result.passed
            ]
            if failing:
                reasons.append(f"verification checks not passing: {', '.join(failing)}")

        outcome = RollbackOutcome.INCOMPLETE if reasons else RollbackOutcome.ROLLED_BACK
        report = RollbackReport(
            target_checkpoint_id=target.id,
            outcome=outcome,
            reverts=tuple(reverts),
            verification=verification,
            reasons=tuple(reasons),
            started_at=started_at,
            finished_at=utc_now(),
        )
        log = self._logger.info if report.succeeded else self._logger.error
        log(
            "rollback_finished",
            target_checkpoint_id=target.id,
            outcome=str(outcome),
            reverted=list(report.reverted_checkpoint_ids),
            reasons=list(reasons),
            run_id=context.run_id,
        )
        return report

    async def _revert(self, checkpoint: Checkpoint) -> RevertResult:
        start = time.perf_counter()
        try:
            ok = await self._deployment.deployment_revert(checkpoint)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            return RevertResult(
                checkpoint_id=checkpoint.id,
                ok=False,
                detail=f"{type(exc).__name__}: {exc}",
                duration_ms=_elapsed_ms(start),
            )
        return RevertResult(
            checkpoint_id=checkpoint.id,
            ok=bool(ok),
            detail=None if ok else "deployment_revert reported failure",
            duration_ms=_elapsed_ms(start),
        )

    async def _verify(
        self, checks: Sequence[CheckDefinition], context: CheckContext
    ) -> tuple[CheckResult, ...]:
        if not checks:
            self._logger.warning("rollback_unverified", run_id=context.run_id)
            return ()
        pool: WorkerPool[CheckResult] = WorkerPool(
            max_concurrency=min(self._max_parallel_checks, len(checks)),
        )
        return tuple(await pool.gather(self._runner.run(check, context) for check in checks))


def _elapsed_ms(start: float) -> int:
    return int(round(max(time.perf_counter() - start, 0.0) * 1000))


__all__ = ["RollbackManager"]
