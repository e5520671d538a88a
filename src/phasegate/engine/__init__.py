"""
phasegate — engine

File: src/phasegate/engine/__init__.py
Last updated: 2026-10-18

Purpose
- Pipeline orchestration: check runner, gate evaluator, phase executor, state
  machine, rollback manager, and report aggregator.
"""

from phasegate.engine.check_runner import CheckRunner, normalize_check_output
from phasegate.engine.collaborators import (
    CheckContext,
    CheckInvoker,
    DeploymentStateProvider,
    OverrideChannel,
    OverrideRequest,
    StaticOverrideChannel,
    UnattendedOverrideChannel,
)
from phasegate.engine.deployment import (
    DeploymentHookError,
    InMemoryDeploymentState,
    ShellDeploymentHooks,
    UnmanagedDeployment,
)
from phasegate.engine.gate import GateEvaluator
from phasegate.engine.invokers import (
    CallableInvoker,
    HttpProbeInvoker,
    InvokerRegistry,
    ShellCommandInvoker,
    default_invoker_registry,
)
from phasegate.engine.phase_executor import PhaseExecution, PhaseExecutor
from phasegate.engine.report import ReportAggregator
from phasegate.engine.rollback import RollbackManager
from phasegate.engine.settings import EngineSettings, RiskWeights
from phasegate.engine.state_machine import PipelineEngine, can_transition

__all__ = [
    "CallableInvoker",
    "CheckContext",
    "CheckInvoker",
    "CheckRunner",
    "DeploymentHookError",
    "DeploymentStateProvider",
    "EngineSettings",
    "GateEvaluator",
    "HttpProbeInvoker",
    "InMemoryDeploymentState",
    "InvokerRegistry",
    "OverrideChannel",
    "OverrideRequest",
    "PhaseExecution",
    "PhaseExecutor",
    "PipelineEngine",
    "ReportAggregator",
    "RiskWeights",
    "RollbackManager",
    "ShellCommandInvoker",
    "ShellDeploymentHooks",
    "StaticOverrideChannel",
    "UnattendedOverrideChannel",
    "UnmanagedDeployment",
    "can_transition",
    "default_invoker_registry",
]
