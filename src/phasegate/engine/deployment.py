"""Deployment state providers used to snapshot and revert deployment boundaries."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from phasegate.constants import CHECKPOINT_REF_ENV
from phasegate.domain.models import Checkpoint, JSONValue
from phasegate.engine.collaborators import CheckContext, DeploymentStateProvider
from phasegate.engine.commands import CommandExecutor, CommandSpec, LocalSubprocessExecutor

_DEFAULT_HOOK_TIMEOUT_SECONDS = 300.0


class DeploymentHookError(RuntimeError):
    pass


class ShellDeploymentHooks(DeploymentStateProvider):
    """Snapshot and revert through shell commands.

    The snapshot command's trimmed stdout becomes the checkpoint's state
    reference. The revert command receives it in ``PHASEGATE_CHECKPOINT_REF``
    and succeeds on an allowed exit code.
    """

    def __init__(
        self,
        *,
        snapshot: Mapping[str, JSONValue],
        revert: Mapping[str, JSONValue],
        timeout_seconds: float = _DEFAULT_HOOK_TIMEOUT_SECONDS,
        executor: CommandExecutor | None = None,
        logger: Any | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        # Both descriptors must parse before any phase runs.
        CommandSpec.from_invocation(snapshot)
        CommandSpec.from_invocation(revert)
        self._snapshot = dict(snapshot)
        self._revert = dict(revert)
        self._timeout_seconds = timeout_seconds
        self._executor = executor or LocalSubprocessExecutor()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_definition(
        cls, hooks: Mapping[str, JSONValue], *, executor: CommandExecutor | None = None
    ) -> ShellDeploymentHooks:
        snapshot = hooks.get("snapshot")
        revert = hooks.get("revert")
        if not isinstance(snapshot, dict) or not isinstance(revert, dict):
            raise ValueError("deployment hooks require 'snapshot' and 'revert' objects")
        timeout = hooks.get("timeout_seconds", _DEFAULT_HOOK_TIMEOUT_SECONDS)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
            raise ValueError("deployment.timeout_seconds must be a number")
        return cls(snapshot=snapshot, revert=revert, timeout_seconds=float(timeout), executor=executor)

    async def deployment_snapshot(self, context: CheckContext) -> str:
        spec = CommandSpec.from_invocation(
            self._snapshot, extra_env=context.env(), timeout_seconds=self._timeout_seconds
        )
        result = await self._executor.run(spec)
        if not result.is_success(spec):
            raise DeploymentHookError(
                f"snapshot hook failed (exit={result.exit_code}, error={result.error}): "
                f"{result.tail(500)}"
            )
        state_ref = result.stdout.strip()
        self._logger.info(
            "deployment_snapshot_taken",
            run_id=context.run_id,
            phase=context.phase_name,
            state_ref=state_ref,
        )
        return state_ref

    async def deployment_revert(self, checkpoint: Checkpoint) -> bool:
        spec = CommandSpec.from_invocation(
            self._revert,
            extra_env={
                CHECKPOINT_REF_ENV: checkpoint.state_ref,
                "PHASEGATE_CHECKPOINT_ID": checkpoint.id,
                "PHASEGATE_RUN_ID": checkpoint.run_id,
                "PHASEGATE_PHASE": checkpoint.phase_name,
            },
            timeout_seconds=self._timeout_seconds,
        )
        result = await self._executor.run(spec)
        ok = result.is_success(spec)
        self._logger.info(
            "deployment_revert_finished",
            run_id=checkpoint.run_id,
            checkpoint_id=checkpoint.id,
            ok=ok,
            exit_code=result.exit_code,
        )
        if not ok:
            raise DeploymentHookError(
                f"revert hook failed (exit={result.exit_code}, error={result.error}): "
                f"{result.tail(500)}"
            )
        return True


class InMemoryDeploymentState(DeploymentStateProvider):
    """Records snapshots and reverts in memory; for embedding and tests."""

    def __init__(self, *, failing_reverts: Iterable[str] = ()) -> None:
        self.snapshots: list[tuple[str, str]] = []
        self.reverted: list[str] = []
        self._failing_reverts = set(failing_reverts)

    def fail_revert(self, state_ref: str) -> None:
        self._failing_reverts.add(state_ref)

    async def deployment_snapshot(self, context: CheckContext) -> str:
        state_ref = f"{context.phase_name}@{len(self.snapshots) + 1}"
        self.snapshots.append((context.phase_name, state_ref))
        return state_ref

    async def deployment_revert(self, checkpoint: Checkpoint) -> bool:
        if checkpoint.state_ref in self._failing_reverts:
            return False
        self.reverted.append(checkpoint.state_ref)
        return True


class UnmanagedDeployment(DeploymentStateProvider):
    """Used when a pipeline declares no deployment hooks.

    Snapshots succeed with an empty reference; reverts always fail so a
    rollback can never claim to have restored state it never captured.
    """

    async def deployment_snapshot(self, context: CheckContext) -> str:
        return ""

    async def deployment_revert(self, checkpoint: Checkpoint) -> bool:
        raise DeploymentHookError("no deployment hooks configured; cannot revert")


__all__ = [
    "DeploymentHookError",
    "InMemoryDeploymentState",
    "ShellDeploymentHooks",
    "UnmanagedDeployment",
]
