"""Dataclass domain models for pipelines, phases, checks, and run reports."""

from __future__ import annotations

import copy
import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from phasegate.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_SCHEMA_VERSION = 1
_MAX_TEXT = 8192
_MAX_DETAILS = 64 * 1024
_MAX_JSON_DEPTH = 16
_MAX_JSON_COLLECTION = 512

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")


class CheckOutcome(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_infra(self) -> bool:
        """``error`` and ``timeout`` describe the check machinery, not the change."""
        return self in (CheckOutcome.ERROR, CheckOutcome.TIMEOUT)


class Verdict(StrEnum):
    GO = "GO"
    NO_GO = "NO_GO"


class PipelineStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    HALTED = "halted"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


class GatePolicyKind(StrEnum):
    STRICT_ALL = "strict_all"
    WEIGHTED_THRESHOLD = "weighted_threshold"
    MANUAL_OVERRIDE = "manual_override"


class ErrorKind(StrEnum):
    CHECK_FAILURE = "check_failure"
    CHECK_INFRA = "check_infra"
    GATE_TIMEOUT = "gate_timeout"
    OVERRIDE_REJECTED = "override_rejected"


class RollbackOutcome(StrEnum):
    ROLLED_BACK = "rolled_back"
    INCOMPLETE = "rollback_incomplete"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_identifier(value: object, path: str) -> str:
    parsed = _as_str(value, path, max_len=128)
    if not _IDENTIFIER_RE.fullmatch(parsed):
        _fail(path, "must start with a letter or digit and contain only [A-Za-z0-9_.:-]")
    return parsed


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_positive_float(value: object, path: str) -> float:
    parsed = _as_float(value, path)
    if parsed <= 0:
        _fail(path, "must be > 0")
    return parsed


def _as_optional_positive_float(value: object, path: str) -> float | None:
    if value is None:
        return None
    return _as_positive_float(value, path)


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_optional_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum | None:
    if value is None:
        return None
    return _as_enum(enum_type, value, path)


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(
    value: object,
    path: str,
    *,
    allow_empty: bool,
    unique: bool,
    max_len: int = _MAX_TEXT,
) -> tuple[str, ...]:
    values = _as_sequence(value, path)
    if not allow_empty and not values:
        _fail(path, "must not be empty")
    if len(values) > _MAX_JSON_COLLECTION:
        _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")

    parsed: list[str] = []
    for index, item in enumerate(values):
        parsed.append(_as_str(item, f"{path}[{index}]", max_len=max_len))

    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return tuple(parsed)


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        if len(value) > _MAX_DETAILS:
            _fail(path, f"string exceeds max length {_MAX_DETAILS}")
        return value
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"object size exceeds {_MAX_JSON_COLLECTION}")
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _as_model(value: object, path: str, model: type[TModel]) -> TModel:
    if isinstance(value, model):
        return value
    if isinstance(value, Mapping):
        return model.from_dict(value)
    _fail(path, f"expected {model.__name__} or object, got {type(value).__name__}")


def _as_optional_model(value: object, path: str, model: type[TModel]) -> TModel | None:
    if value is None:
        return None
    return _as_model(value, path, model)


def _as_model_tuple(value: object, path: str, model: type[TModel]) -> tuple[TModel, ...]:
    items = _as_sequence(value, path)
    if len(items) > _MAX_JSON_COLLECTION:
        _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")
    return tuple(_as_model(item, f"{path}[{index}]", model) for index, item in enumerate(items))


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


def _validate_prefixed(value: str, path: str, prefix: str) -> str:
    try:
        domain_ids.validate_prefixed_id(value, prefix)
    except ValueError as exc:
        _fail(path, str(exc))
    return value


def _ensure_unique(values: tuple[str, ...], path: str) -> None:
    seen: set[str] = set()
    for value in values:
        if value in seen:
            _fail(path, f"duplicate entry {value!r}")
        seen.add(value)


# ----------------------------------------------------------------------------
# Definitions
# ----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CheckDefinition(CanonicalModel):
    """One externally-defined verification.

    ``invocation`` is opaque to the engine; invokers interpret it (see
    :mod:`phasegate.engine.invokers`). ``retries`` re-attempts ``error`` and
    ``timeout`` outcomes only.
    """

    id: str
    invocation: dict[str, JSONValue] = field(default_factory=dict)
    required: bool = True
    timeout_seconds: float = 60.0
    weight: float = 1.0
    retries: int = 0
    description: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_identifier(self.id, "CheckDefinition.id"))
        object.__setattr__(
            self,
            "invocation",
            _as_json_object(self.invocation, f"CheckDefinition[{self.id}].invocation"),
        )
        object.__setattr__(
            self, "required", _as_bool(self.required, f"CheckDefinition[{self.id}].required")
        )
        object.__setattr__(
            self,
            "timeout_seconds",
            _as_positive_float(self.timeout_seconds, f"CheckDefinition[{self.id}].timeout_seconds"),
        )
        object.__setattr__(
            self,
            "weight",
            _as_float(self.weight, f"CheckDefinition[{self.id}].weight", minimum=0.0),
        )
        object.__setattr__(
            self,
            "retries",
            _as_int(self.retries, f"CheckDefinition[{self.id}].retries", minimum=0),
        )
        object.__setattr__(
            self,
            "description",
            _as_optional_str(self.description, f"CheckDefinition[{self.id}].description"),
        )

    @property
    def kind(self) -> str | None:
        raw = self.invocation.get("kind")
        return raw if isinstance(raw, str) else None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CheckDefinition:
        parsed = _expect_object(
            data,
            "CheckDefinition",
            required={"id"},
            optional={
                "invocation",
                "required",
                "timeout_seconds",
                "weight",
                "retries",
                "description",
            },
        )
        return cls(
            id=cast("str", parsed["id"]),
            invocation=cast("dict[str, JSONValue]", parsed.get("invocation", {})),
            required=cast("bool", parsed.get("required", True)),
            timeout_seconds=cast("float", parsed.get("timeout_seconds", 60.0)),
            weight=cast("float", parsed.get("weight", 1.0)),
            retries=cast("int", parsed.get("retries", 0)),
            description=cast("str | None", parsed.get("description")),
        )


@dataclass(frozen=True, slots=True)
class GatePolicy(CanonicalModel):
    kind: GatePolicyKind = GatePolicyKind.STRICT_ALL
    threshold: float | None = None
    override_timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(GatePolicyKind, self.kind, "GatePolicy.kind"))
        if self.threshold is not None:
            object.__setattr__(
                self,
                "threshold",
                _as_float(self.threshold, "GatePolicy.threshold", minimum=0.0),
            )
            if self.kind is not GatePolicyKind.WEIGHTED_THRESHOLD:
                _fail("GatePolicy.threshold", f"only valid for {GatePolicyKind.WEIGHTED_THRESHOLD}")
        object.__setattr__(
            self,
            "override_timeout_seconds",
            _as_optional_positive_float(
                self.override_timeout_seconds, "GatePolicy.override_timeout_seconds"
            ),
        )
        if (
            self.override_timeout_seconds is not None
            and self.kind is not GatePolicyKind.MANUAL_OVERRIDE
        ):
            _fail(
                "GatePolicy.override_timeout_seconds",
                f"only valid for {GatePolicyKind.MANUAL_OVERRIDE}",
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GatePolicy:
        parsed = _expect_object(
            data,
            "GatePolicy",
            required=set(),
            optional={"kind", "threshold", "override_timeout_seconds"},
        )
        return cls(
            kind=_as_enum(
                GatePolicyKind, parsed.get("kind", GatePolicyKind.STRICT_ALL), "GatePolicy.kind"
            ),
            threshold=cast("float | None", parsed.get("threshold")),
            override_timeout_seconds=cast("float | None", parsed.get("override_timeout_seconds")),
        )


@dataclass(frozen=True, slots=True)
class PhaseDefinition(CanonicalModel):
    name: str
    checks: tuple[CheckDefinition, ...] = ()
    gate: GatePolicy = field(default_factory=GatePolicy)
    deployment_boundary: bool = False
    description: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_identifier(self.name, "PhaseDefinition.name"))
        path = f"PhaseDefinition[{self.name}]"
        checks = _as_model_tuple(self.checks, f"{path}.checks", CheckDefinition)
        _ensure_unique(tuple(check.id for check in checks), f"{path}.checks")
        object.__setattr__(self, "checks", checks)
        object.__setattr__(self, "gate", _as_model(self.gate, f"{path}.gate", GatePolicy))
        object.__setattr__(
            self,
            "deployment_boundary",
            _as_bool(self.deployment_boundary, f"{path}.deployment_boundary"),
        )
        object.__setattr__(
            self, "description", _as_optional_str(self.description, f"{path}.description")
        )

    @property
    def required_checks(self) -> tuple[CheckDefinition, ...]:
        return tuple(check for check in self.checks if check.required)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PhaseDefinition:
        parsed = _expect_object(
            data,
            "PhaseDefinition",
            required={"name"},
            optional={"checks", "gate", "deployment_boundary", "description"},
        )
        return cls(
            name=cast("str", parsed["name"]),
            checks=_as_model_tuple(
                parsed.get("checks", ()), "PhaseDefinition.checks", CheckDefinition
            ),
            gate=_as_model(parsed.get("gate", {}), "PhaseDefinition.gate", GatePolicy),
            deployment_boundary=cast("bool", parsed.get("deployment_boundary", False)),
            description=cast("str | None", parsed.get("description")),
        )


# ----------------------------------------------------------------------------
# Outcomes
# ----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CheckResult(CanonicalModel):
    check_id: str
    outcome: CheckOutcome
    duration_ms: int = 0
    required: bool = True
    weight: float = 1.0
    attempts: int = 1
    summary: str = ""
    details: str | None = None
    metadata: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "check_id", _as_identifier(self.check_id, "CheckResult.check_id"))
        path = f"CheckResult[{self.check_id}]"
        object.__setattr__(self, "outcome", _as_enum(CheckOutcome, self.outcome, f"{path}.outcome"))
        object.__setattr__(
            self, "duration_ms", _as_int(self.duration_ms, f"{path}.duration_ms", minimum=0)
        )
        object.__setattr__(self, "required", _as_bool(self.required, f"{path}.required"))
        object.__setattr__(self, "weight", _as_float(self.weight, f"{path}.weight", minimum=0.0))
        object.__setattr__(self, "attempts", _as_int(self.attempts, f"{path}.attempts", minimum=1))
        object.__setattr__(
            self, "summary", _as_str(self.summary, f"{path}.summary", min_len=0, max_len=_MAX_TEXT)
        )
        object.__setattr__(
            self,
            "details",
            _as_optional_str(self.details, f"{path}.details", max_len=_MAX_DETAILS),
        )
        object.__setattr__(self, "metadata", _as_json_object(self.metadata, f"{path}.metadata"))

    @property
    def passed(self) -> bool:
        return self.outcome is CheckOutcome.PASS

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CheckResult:
        parsed = _expect_object(
            data,
            "CheckResult",
            required={"check_id", "outcome"},
            optional={
                "duration_ms",
                "required",
                "weight",
                "attempts",
                "summary",
                "details",
                "metadata",
            },
        )
        return cls(
            check_id=cast("str", parsed["check_id"]),
            outcome=_as_enum(CheckOutcome, parsed["outcome"], "CheckResult.outcome"),
            duration_ms=cast("int", parsed.get("duration_ms", 0)),
            required=cast("bool", parsed.get("required", True)),
            weight=cast("float", parsed.get("weight", 1.0)),
            attempts=cast("int", parsed.get("attempts", 1)),
            summary=cast("str", parsed.get("summary", "")),
            details=cast("str | None", parsed.get("details")),
            metadata=cast("dict[str, JSONValue]", parsed.get("metadata", {})),
        )


@dataclass(frozen=True, slots=True)
class OverrideDecision(CanonicalModel):
    approved: bool
    approver: str | None = None
    justification: str | None = None
    decided_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "approved", _as_bool(self.approved, "OverrideDecision.approved"))
        object.__setattr__(
            self, "approver", _as_optional_str(self.approver, "OverrideDecision.approver")
        )
        object.__setattr__(
            self,
            "justification",
            _as_optional_str(self.justification, "OverrideDecision.justification"),
        )
        object.__setattr__(
            self, "decided_at", _as_datetime(self.decided_at, "OverrideDecision.decided_at")
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> OverrideDecision:
        parsed = _expect_object(
            data,
            "OverrideDecision",
            required={"approved", "decided_at"},
            optional={"approver", "justification"},
        )
        return cls(
            approved=_as_bool(parsed["approved"], "OverrideDecision.approved"),
            approver=cast("str | None", parsed.get("approver")),
            justification=cast("str | None", parsed.get("justification")),
            decided_at=_as_datetime(parsed["decided_at"], "OverrideDecision.decided_at"),
        )


@dataclass(frozen=True, slots=True)
class GateDecision(CanonicalModel):
    verdict: Verdict
    policy: GatePolicyKind
    reasons: tuple[str, ...] = ()
    blocking_check_ids: tuple[str, ...] = ()
    advisory_failure_ids: tuple[str, ...] = ()
    error_kind: ErrorKind | None = None
    weighted_score: float | None = None
    override: OverrideDecision | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "verdict", _as_enum(Verdict, self.verdict, "GateDecision.verdict"))
        object.__setattr__(
            self, "policy", _as_enum(GatePolicyKind, self.policy, "GateDecision.policy")
        )
        object.__setattr__(
            self,
            "reasons",
            _as_str_tuple(self.reasons, "GateDecision.reasons", allow_empty=True, unique=False),
        )
        object.__setattr__(
            self,
            "blocking_check_ids",
            _as_str_tuple(
                self.blocking_check_ids,
                "GateDecision.blocking_check_ids",
                allow_empty=True,
                unique=True,
            ),
        )
        object.__setattr__(
            self,
            "advisory_failure_ids",
            _as_str_tuple(
                self.advisory_failure_ids,
                "GateDecision.advisory_failure_ids",
                allow_empty=True,
                unique=True,
            ),
        )
        object.__setattr__(
            self,
            "error_kind",
            _as_optional_enum(ErrorKind, self.error_kind, "GateDecision.error_kind"),
        )
        if self.weighted_score is not None:
            object.__setattr__(
                self,
                "weighted_score",
                _as_float(self.weighted_score, "GateDecision.weighted_score", minimum=0.0),
            )
        object.__setattr__(
            self,
            "override",
            _as_optional_model(self.override, "GateDecision.override", OverrideDecision),
        )
        if self.verdict is Verdict.NO_GO and self.error_kind is None:
            _fail("GateDecision.error_kind", "required when verdict is NO_GO")

    @property
    def is_go(self) -> bool:
        return self.verdict is Verdict.GO

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GateDecision:
        parsed = _expect_object(
            data,
            "GateDecision",
            required={"verdict", "policy"},
            optional={
                "reasons",
                "blocking_check_ids",
                "advisory_failure_ids",
                "error_kind",
                "weighted_score",
                "override",
            },
        )
        return cls(
            verdict=_as_enum(Verdict, parsed["verdict"], "GateDecision.verdict"),
            policy=_as_enum(GatePolicyKind, parsed["policy"], "GateDecision.policy"),
            reasons=_as_str_tuple(
                parsed.get("reasons", ()), "GateDecision.reasons", allow_empty=True, unique=False
            ),
            blocking_check_ids=_as_str_tuple(
                parsed.get("blocking_check_ids", ()),
                "GateDecision.blocking_check_ids",
                allow_empty=True,
                unique=True,
            ),
            advisory_failure_ids=_as_str_tuple(
                parsed.get("advisory_failure_ids", ()),
                "GateDecision.advisory_failure_ids",
                allow_empty=True,
                unique=True,
            ),
            error_kind=_as_optional_enum(
                ErrorKind, parsed.get("error_kind"), "GateDecision.error_kind"
            ),
            weighted_score=cast("float | None", parsed.get("weighted_score")),
            override=_as_optional_model(
                parsed.get("override"), "GateDecision.override", OverrideDecision
            ),
        )


@dataclass(frozen=True, slots=True)
class PhaseReport(CanonicalModel):
    """Outcome of one execution of one phase; appended to history exactly once."""

    phase_name: str
    phase_index: int
    attempt: int
    results: tuple[CheckResult, ...]
    decision: GateDecision
    started_at: datetime
    finished_at: datetime
    checkpoint_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "phase_name", _as_identifier(self.phase_name, "PhaseReport.phase_name")
        )
        object.__setattr__(
            self, "phase_index", _as_int(self.phase_index, "PhaseReport.phase_index", minimum=0)
        )
        object.__setattr__(self, "attempt", _as_int(self.attempt, "PhaseReport.attempt", minimum=1))
        results = _as_model_tuple(self.results, "PhaseReport.results", CheckResult)
        _ensure_unique(tuple(result.check_id for result in results), "PhaseReport.results")
        object.__setattr__(self, "results", results)
        object.__setattr__(
            self, "decision", _as_model(self.decision, "PhaseReport.decision", GateDecision)
        )
        object.__setattr__(
            self, "started_at", _as_datetime(self.started_at, "PhaseReport.started_at")
        )
        object.__setattr__(
            self, "finished_at", _as_datetime(self.finished_at, "PhaseReport.finished_at")
        )
        if self.finished_at < self.started_at:
            _fail("PhaseReport.finished_at", "must be >= PhaseReport.started_at")
        if self.checkpoint_id is not None:
            _validate_prefixed(
                _as_str(self.checkpoint_id, "PhaseReport.checkpoint_id"),
                "PhaseReport.checkpoint_id",
                domain_ids.CHECKPOINT_ID_PREFIX,
            )
            if not self.decision.is_go:
                _fail("PhaseReport.checkpoint_id", "only a GO phase may record a checkpoint")

    @property
    def verdict(self) -> Verdict:
        return self.decision.verdict

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def result_for(self, check_id: str) -> CheckResult | None:
        for result in self.results:
            if result.check_id == check_id:
                return result
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PhaseReport:
        parsed = _expect_object(
            data,
            "PhaseReport",
            required={
                "phase_name",
                "phase_index",
                "attempt",
                "results",
                "decision",
                "started_at",
                "finished_at",
            },
            optional={"checkpoint_id"},
        )
        return cls(
            phase_name=cast("str", parsed["phase_name"]),
            phase_index=_as_int(parsed["phase_index"], "PhaseReport.phase_index", minimum=0),
            attempt=_as_int(parsed["attempt"], "PhaseReport.attempt", minimum=1),
            results=_as_model_tuple(parsed["results"], "PhaseReport.results", CheckResult),
            decision=_as_model(parsed["decision"], "PhaseReport.decision", GateDecision),
            started_at=_as_datetime(parsed["started_at"], "PhaseReport.started_at"),
            finished_at=_as_datetime(parsed["finished_at"], "PhaseReport.finished_at"),
            checkpoint_id=cast("str | None", parsed.get("checkpoint_id")),
        )


@dataclass(frozen=True, slots=True)
class Checkpoint(CanonicalModel):
    id: str
    run_id: str
    phase_name: str
    phase_index: int
    state_ref: str
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "id",
            _validate_prefixed(
                _as_str(self.id, "Checkpoint.id"), "Checkpoint.id", domain_ids.CHECKPOINT_ID_PREFIX
            ),
        )
        object.__setattr__(
            self,
            "run_id",
            _validate_prefixed(
                _as_str(self.run_id, "Checkpoint.run_id"),
                "Checkpoint.run_id",
                domain_ids.RUN_ID_PREFIX,
            ),
        )
        object.__setattr__(
            self, "phase_name", _as_identifier(self.phase_name, "Checkpoint.phase_name")
        )
        object.__setattr__(
            self, "phase_index", _as_int(self.phase_index, "Checkpoint.phase_index", minimum=0)
        )
        object.__setattr__(
            self,
            "state_ref",
            _as_str(self.state_ref, "Checkpoint.state_ref", min_len=0, max_len=_MAX_TEXT),
        )
        object.__setattr__(
            self, "created_at", _as_datetime(self.created_at, "Checkpoint.created_at")
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Checkpoint:
        parsed = _expect_object(
            data,
            "Checkpoint",
            required={"id", "run_id", "phase_name", "phase_index", "state_ref", "created_at"},
        )
        return cls(
            id=cast("str", parsed["id"]),
            run_id=cast("str", parsed["run_id"]),
            phase_name=cast("str", parsed["phase_name"]),
            phase_index=_as_int(parsed["phase_index"], "Checkpoint.phase_index", minimum=0),
            state_ref=cast("str", parsed["state_ref"]),
            created_at=_as_datetime(parsed["created_at"], "Checkpoint.created_at"),
        )


@dataclass(frozen=True, slots=True)
class RevertResult(CanonicalModel):
    checkpoint_id: str
    ok: bool
    detail: str | None = None
    duration_ms: int = 0

    def __post_init__(self) -> None:
        _validate_prefixed(
            _as_str(self.checkpoint_id, "RevertResult.checkpoint_id"),
            "RevertResult.checkpoint_id",
            domain_ids.CHECKPOINT_ID_PREFIX,
        )
        object.__setattr__(self, "ok", _as_bool(self.ok, "RevertResult.ok"))
        object.__setattr__(
            self, "detail", _as_optional_str(self.detail, "RevertResult.detail", max_len=_MAX_DETAILS)
        )
        object.__setattr__(
            self, "duration_ms", _as_int(self.duration_ms, "RevertResult.duration_ms", minimum=0)
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RevertResult:
        parsed = _expect_object(
            data,
            "RevertResult",
            required={"checkpoint_id", "ok"},
            optional={"detail", "duration_ms"},
        )
        return cls(
            checkpoint_id=cast("str", parsed["checkpoint_id"]),
            ok=_as_bool(parsed["ok"], "RevertResult.ok"),
            detail=cast("str | None", parsed.get("detail")),
            duration_ms=cast("int", parsed.get("duration_ms", 0)),
        )


@dataclass(frozen=True, slots=True)
class RollbackReport(CanonicalModel):
    target_checkpoint_id: str
    outcome: RollbackOutcome
    reverts: tuple[RevertResult, ...] = ()
    verification: tuple[CheckResult, ...] = ()
    reasons: tuple[str, ...] = ()
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        _validate_prefixed(
            _as_str(self.target_checkpoint_id, "RollbackReport.target_checkpoint_id"),
            "RollbackReport.target_checkpoint_id",
            domain_ids.CHECKPOINT_ID_PREFIX,
        )
        object.__setattr__(
            self, "outcome", _as_enum(RollbackOutcome, self.outcome, "RollbackReport.outcome")
        )
        object.__setattr__(
            self, "reverts", _as_model_tuple(self.reverts, "RollbackReport.reverts", RevertResult)
        )
        object.__setattr__(
            self,
            "verification",
            _as_model_tuple(self.verification, "RollbackReport.verification", CheckResult),
        )
        object.__setattr__(
            self,
            "reasons",
            _as_str_tuple(self.reasons, "RollbackReport.reasons", allow_empty=True, unique=False),
        )
        object.__setattr__(
            self, "started_at", _as_datetime(self.started_at, "RollbackReport.started_at")
        )
        object.__setattr__(
            self, "finished_at", _as_datetime(self.finished_at, "RollbackReport.finished_at")
        )

    @property
    def succeeded(self) -> bool:
        return self.outcome is RollbackOutcome.ROLLED_BACK

    @property
    def reverted_checkpoint_ids(self) -> tuple[str, ...]:
        return tuple(step.checkpoint_id for step in self.reverts if step.ok)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RollbackReport:
        parsed = _expect_object(
            data,
            "RollbackReport",
            required={"target_checkpoint_id", "outcome", "started_at", "finished_at"},
            optional={"reverts", "verification", "reasons"},
        )
        return cls(
            target_checkpoint_id=cast("str", parsed["target_checkpoint_id"]),
            outcome=_as_enum(RollbackOutcome, parsed["outcome"], "RollbackReport.outcome"),
            reverts=_as_model_tuple(parsed.get("reverts", ()), "RollbackReport.reverts", RevertResult),
            verification=_as_model_tuple(
                parsed.get("verification", ()), "RollbackReport.verification", CheckResult
            ),
            reasons=_as_str_tuple(
                parsed.get("reasons", ()), "RollbackReport.reasons", allow_empty=True, unique=False
            ),
            started_at=_as_datetime(parsed["started_at"], "RollbackReport.started_at"),
            finished_at=_as_datetime(parsed["finished_at"], "RollbackReport.finished_at"),
        )


# ----------------------------------------------------------------------------
# Pipeline aggregate
# ----------------------------------------------------------------------------


@dataclass(slots=True)
class Pipeline(CanonicalModel):
    """A run of an ordered phase sequence.

    Mutable state (``status``, ``current_index``, ``history``, ``checkpoints``)
    is owned by :class:`phasegate.engine.state_machine.PipelineEngine`. Callers
    outside the engine should only ever see copies from :meth:`snapshot`.
    """

    name: str
    phases: tuple[PhaseDefinition, ...]
    kind: str = "commit"
    run_id: str = field(default_factory=domain_ids.generate_run_id)
    status: PipelineStatus = PipelineStatus.PENDING
    current_index: int = 0
    history: list[PhaseReport] = field(default_factory=list)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    rollback_checks: tuple[CheckDefinition, ...] = ()
    rollback_report: RollbackReport | None = None
    escalated: bool = False
    metadata: dict[str, JSONValue] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    schema_version: int = _SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = _as_int(self.schema_version, "Pipeline.schema_version", minimum=1)
        self.name = _as_str(self.name, "Pipeline.name", max_len=256)
        self.kind = _as_identifier(self.kind, "Pipeline.kind")
        self.run_id = _validate_prefixed(
            _as_str(self.run_id, "Pipeline.run_id"), "Pipeline.run_id", domain_ids.RUN_ID_PREFIX
        )
        self.phases = _as_model_tuple(self.phases, "Pipeline.phases", PhaseDefinition)
        if not self.phases:
            _fail("Pipeline.phases", "must contain at least one phase")
        _ensure_unique(tuple(phase.name for phase in self.phases), "Pipeline.phases")
        self.status = _as_enum(PipelineStatus, self.status, "Pipeline.status")
        self.current_index = _as_int(self.current_index, "Pipeline.current_index", minimum=0)
        if self.current_index > len(self.phases):
            _fail("Pipeline.current_index", f"must be <= {len(self.phases)}")
        self.history = list(_as_model_tuple(self.history, "Pipeline.history", PhaseReport))
        self.checkpoints = list(
            _as_model_tuple(self.checkpoints, "Pipeline.checkpoints", Checkpoint)
        )
        rollback_checks = _as_model_tuple(
            self.rollback_checks, "Pipeline.rollback_checks", CheckDefinition
        )
        _ensure_unique(tuple(check.id for check in rollback_checks), "Pipeline.rollback_checks")
        self.rollback_checks = rollback_checks
        self.rollback_report = _as_optional_model(
            self.rollback_report, "Pipeline.rollback_report", RollbackReport
        )
        self.escalated = _as_bool(self.escalated, "Pipeline.escalated")
        self.metadata = _as_json_object(self.metadata, "Pipeline.metadata")
        self.created_at = _as_datetime(self.created_at, "Pipeline.created_at")
        self.updated_at = _as_datetime(self.updated_at, "Pipeline.updated_at")

    @property
    def current_phase(self) -> PhaseDefinition | None:
        if self.current_index >= len(self.phases):
            return None
        return self.phases[self.current_index]

    @property
    def last_report(self) -> PhaseReport | None:
        return self.history[-1] if self.history else None

    def phase_index(self, phase_name: str) -> int:
        for index, phase in enumerate(self.phases):
            if phase.name == phase_name:
                return index
        raise KeyError(phase_name)

    def find_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        for checkpoint in self.checkpoints:
            if checkpoint.id == checkpoint_id:
                return checkpoint
        return None

    def attempts_for(self, phase_index: int) -> int:
        return sum(1 for report in self.history if report.phase_index == phase_index)

    def touch(self) -> None:
        self.updated_at = utc_now()

    def snapshot(self) -> Pipeline:
        """Return a detached deep copy safe to hand to callers."""
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Pipeline:
        parsed = _expect_object(
            data,
            "Pipeline",
            required={"name", "phases", "run_id", "status"},
            optional={
                "kind",
                "current_index",
                "history",
                "checkpoints",
                "rollback_checks",
                "rollback_report",
                "escalated",
                "metadata",
                "created_at",
                "updated_at",
                "schema_version",
            },
        )
        now = utc_now()
        return cls(
            name=_as_str(parsed["name"], "Pipeline.name", max_len=256),
            phases=_as_model_tuple(parsed["phases"], "Pipeline.phases", PhaseDefinition),
            kind=cast("str", parsed.get("kind", "commit")),
            run_id=_as_str(parsed["run_id"], "Pipeline.run_id"),
            status=_as_enum(PipelineStatus, parsed["status"], "Pipeline.status"),
            current_index=_as_int(
                parsed.get("current_index", 0), "Pipeline.current_index", minimum=0
            ),
            history=list(
                _as_model_tuple(parsed.get("history", ()), "Pipeline.history", PhaseReport)
            ),
            checkpoints=list(
                _as_model_tuple(parsed.get("checkpoints", ()), "Pipeline.checkpoints", Checkpoint)
            ),
            rollback_checks=_as_model_tuple(
                parsed.get("rollback_checks", ()), "Pipeline.rollback_checks", CheckDefinition
            ),
            rollback_report=_as_optional_model(
                parsed.get("rollback_report"), "Pipeline.rollback_report", RollbackReport
            ),
            escalated=_as_bool(parsed.get("escalated", False), "Pipeline.escalated"),
            metadata=_as_json_object(parsed.get("metadata", {}), "Pipeline.metadata"),
            created_at=_as_datetime(parsed.get("created_at", now), "Pipeline.created_at"),
            updated_at=_as_datetime(parsed.get("updated_at", now), "Pipeline.updated_at"),
            schema_version=_as_int(
                parsed.get("schema_version", _SCHEMA_VERSION), "Pipeline.schema_version", minimum=1
            ),
        )


@dataclass(frozen=True, slots=True)
class RunReport(CanonicalModel):
    """Terminal summary of a run. Serialize-only; rebuild from the Pipeline instead."""

    run_id: str
    pipeline_name: str
    pipeline_kind: str
    outcome: PipelineStatus
    phase_reports: tuple[PhaseReport, ...]
    checkpoints: tuple[Checkpoint, ...]
    rollback: RollbackReport | None
    halting_phase: str | None
    halting_check_ids: tuple[str, ...]
    total_checks: int
    passed_checks: int
    failed_checks: int
    infra_checks: int
    advisory_failures: int
    manual_overrides: int
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    risk_score: float
    risk_factors: dict[str, float] = field(default_factory=dict)
    escalated: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "outcome", _as_enum(PipelineStatus, self.outcome, "RunReport.outcome"))
        object.__setattr__(
            self, "risk_score", _as_float(self.risk_score, "RunReport.risk_score", minimum=0.0)
        )

    @property
    def halted(self) -> bool:
        return self.outcome is PipelineStatus.HALTED


__all__ = [
    "CanonicalModel",
    "CheckDefinition",
    "CheckOutcome",
    "CheckResult",
    "Checkpoint",
    "ErrorKind",
    "GateDecision",
    "GatePolicy",
    "GatePolicyKind",
    "JSONValue",
    "OverrideDecision",
    "PhaseDefinition",
    "PhaseReport",
    "Pipeline",
    "PipelineStatus",
    "RevertResult",
    "RollbackOutcome",
    "RollbackReport",
    "RunReport",
    "Verdict",
    "utc_now",
]
