"""Engine tunables resolved from the effective configuration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType


@dataclass(frozen=True, slots=True)
class RiskWeights:
    advisory_failure: float = 1.0
    manual_override: float = 2.0
    rollback: float = 5.0

    def __post_init__(self) -> None:
        for name in ("advisory_failure", "manual_override", "rollback"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"risk weight {name} must be >= 0")


@dataclass(frozen=True, slots=True)
class EngineSettings:
    max_parallel_checks: int = 4
    override_timeout_seconds: float = 900.0
    override_timeouts: Mapping[str, float] = field(default_factory=dict)
    default_weighted_threshold: float = 0.0
    auto_rollback: bool = True
    risk: RiskWeights = field(default_factory=RiskWeights)

    def __post_init__(self) -> None:
        if self.max_parallel_checks <= 0:
            raise ValueError("max_parallel_checks must be > 0")
        if self.override_timeout_seconds <= 0:
            raise ValueError("override_timeout_seconds must be > 0")
        if self.default_weighted_threshold < 0:
            raise ValueError("default_weighted_threshold must be >= 0")
        for kind, timeout in self.override_timeouts.items():
            if timeout <= 0:
                raise ValueError(f"override_timeouts.{kind} must be > 0")
        object.__setattr__(self, "override_timeouts", MappingProxyType(dict(self.override_timeouts)))

    def override_timeout_for(self, pipeline_kind: str, policy_timeout: float | None = None) -> float:
        """Policy value wins, then the per-kind setting, then the global default."""
        if policy_timeout is not None:
            return policy_timeout
        return self.override_timeouts.get(pipeline_kind, self.override_timeout_seconds)

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> EngineSettings:
        engine = _section(config, "engine")
        gates = _section(config, "gates")
        risk = _section(config, "risk")
        overrides = gates.get("override_timeouts", {})
        return cls(
            max_parallel_checks=int(engine.get("max_parallel_checks", 4)),  # type: ignore[call-overload]
            override_timeout_seconds=float(gates.get("override_timeout_seconds", 900.0)),  # type: ignore[arg-type]
            override_timeouts={
                str(kind): float(value)  # type: ignore[arg-type]
                for kind, value in (overrides.items() if isinstance(overrides, Mapping) else ())
            },
            default_weighted_threshold=float(gates.get("default_weighted_threshold", 0.0)),  # type: ignore[arg-type]
            auto_rollback=bool(engine.get("auto_rollback", True)),
            risk=RiskWeights(
                advisory_failure=float(risk.get("advisory_failure_weight", 1.0)),  # type: ignore[arg-type]
                manual_override=float(risk.get("manual_override_weight", 2.0)),  # type: ignore[arg-type]
                rollback=float(risk.get("rollback_weight", 5.0)),  # type: ignore[arg-type]
            ),
        )


def _section(config: Mapping[str, object], name: str) -> Mapping[str, object]:
    value = config.get(name, {})
    return value if isinstance(value, Mapping) else {}


__all__ = ["EngineSettings", "RiskWeights"]
