"""Exception taxonomy for pipeline orchestration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from phasegate.domain.models import ErrorKind, GateDecision, PipelineStatus

if TYPE_CHECKING:
    from phasegate.domain.models import PhaseReport, RunReport


class PhasegateError(RuntimeError):
    """Base class for engine errors."""


class PhaseHaltError(PhasegateError):
    """A phase ended in NO_GO. Raised only by callers that want exceptions."""

    kind: ErrorKind = ErrorKind.CHECK_FAILURE

    def __init__(self, report: PhaseReport) -> None:
        self.report = report
        blocking = ", ".join(report.decision.blocking_check_ids) or "-"
        super().__init__(
            f"phase {report.phase_name!r} halted ({self.kind}); blocking checks: {blocking}"
        )


class CheckFailure(PhaseHaltError):
    kind = ErrorKind.CHECK_FAILURE


class CheckInfra(PhaseHaltError):
    kind = ErrorKind.CHECK_INFRA


class GateTimeout(PhaseHaltError):
    kind = ErrorKind.GATE_TIMEOUT


class OverrideRejected(PhaseHaltError):
    kind = ErrorKind.OVERRIDE_REJECTED


_HALT_ERRORS: dict[ErrorKind, type[PhaseHaltError]] = {
    ErrorKind.CHECK_FAILURE: CheckFailure,
    ErrorKind.CHECK_INFRA: CheckInfra,
    ErrorKind.GATE_TIMEOUT: GateTimeout,
    ErrorKind.OVERRIDE_REJECTED: OverrideRejected,
}


def error_for_decision(report: PhaseReport) -> PhaseHaltError | None:
    """Map a halted phase report to its exception, or ``None`` for GO."""
    decision: GateDecision = report.decision
    if decision.is_go or decision.error_kind is None:
        return None
    return _HALT_ERRORS[decision.error_kind](report)


class RollbackIncomplete(PhasegateError):
    """Reverting or verifying a rollback failed; the run needs a human."""

    def __init__(self, report: RunReport, message: str | None = None) -> None:
        self.report = report
        reasons = report.rollback.reasons if report.rollback is not None else ()
        detail = message or "; ".join(reasons) or "rollback did not complete"
        super().__init__(f"rollback of {report.run_id} incomplete: {detail}")


class InvalidTransition(PhasegateError):
    def __init__(
        self,
        run_id: str,
        current: PipelineStatus,
        requested: PipelineStatus | str,
        detail: str | None = None,
    ) -> None:
        self.run_id = run_id
        self.current = current
        self.requested = requested
        message = f"{run_id}: cannot move from {current} to {requested}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class RunNotFound(PhasegateError, KeyError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"unknown run id {run_id!r}")

    def __str__(self) -> str:
        return str(self.args[0])


class PipelineDefinitionError(ValueError):
    """A pipeline definition could not be parsed or validated."""

    def __init__(self, message: str, *, source: str | None = None) -> None:
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)


__all__ = [
    "CheckFailure",
    "CheckInfra",
    "GateTimeout",
    "InvalidTransition",
    "OverrideRejected",
    "PhaseHaltError",
    "PhasegateError",
    "PipelineDefinitionError",
    "RollbackIncomplete",
    "RunNotFound",
    "error_for_decision",
]
