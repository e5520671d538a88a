"""
phasegate — domain layer

File: src/phasegate/domain/__init__.py
Last updated: 2026-10-18

Purpose
- Domain types shared across the engine: pipelines, phase and check definitions,
  check results, gate decisions, checkpoints, and reports.
- Keep this layer free of IO side effects.
"""

from phasegate.domain.errors import (
    CheckFailure,
    CheckInfra,
    GateTimeout,
    InvalidTransition,
    PhasegateError,
    PipelineDefinitionError,
    RollbackIncomplete,
    RunNotFound,
)
from phasegate.domain.models import (
    CheckDefinition,
    CheckOutcome,
    CheckResult,
    Checkpoint,
    ErrorKind,
    GateDecision,
    GatePolicy,
    GatePolicyKind,
    OverrideDecision,
    PhaseDefinition,
    PhaseReport,
    Pipeline,
    PipelineStatus,
    RevertResult,
    RollbackOutcome,
    RollbackReport,
    RunReport,
    Verdict,
)

__all__ = [
    "CheckDefinition",
    "CheckFailure",
    "CheckInfra",
    "CheckOutcome",
    "CheckResult",
    "Checkpoint",
    "ErrorKind",
    "GateDecision",
    "GatePolicy",
    "GatePolicyKind",
    "GateTimeout",
    "InvalidTransition",
    "OverrideDecision",
    "PhaseDefinition",
    "PhaseReport",
    "PhasegateError",
    "Pipeline",
    "PipelineDefinitionError",
    "PipelineStatus",
    "RevertResult",
    "RollbackIncomplete",
    "RollbackOutcome",
    "RollbackReport",
    "RunNotFound",
    "RunReport",
    "Verdict",
]
