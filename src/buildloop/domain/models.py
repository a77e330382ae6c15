"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from buildloop.constants import MUST_FIX_SEVERITIES, PRIORITIZED_FIX_SEVERITIES
from buildloop.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_SCHEMA_VERSION = 1
_MAX_TEXT = 65_536
_MAX_JSON_DEPTH = 32
_MAX_JSON_COLLECTION = 4096
_MAX_REF = 1024


class Phase(StrEnum):
    DECOMPOSE = "decompose"
    ORCHESTRATE = "orchestrate"
    VERIFY = "verify"
    DEPLOY = "deploy"


PHASE_ORDER: tuple[Phase, ...] = (Phase.DECOMPOSE, Phase.ORCHESTRATE, Phase.VERIFY, Phase.DEPLOY)


def next_phase(phase: Phase) -> Phase | None:
    """Return the phase that consumes ``phase``'s output, or ``None`` after Deploy."""
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[index + 1] if index + 1 < len(PHASE_ORDER) else None


class ExecutionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_SUCCESS = "partial_success"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[ExecutionStatus] = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.PARTIAL_SUCCESS,
        ExecutionStatus.CANCELLED,
    }
)


class PhaseOutcome(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    INFRA_FAILED = "infra_failed"
    LOGICAL_FAILED = "logical_failed"


class QAStatus(StrEnum):
    PASS = "pass"
    FAIL = "fail"


class UnitStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

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


def canonical_json(value: object) -> str:
    """Deterministic JSON: sorted keys, compact separators, UTF-8 preserved."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def utc_now() -> datetime:
    return datetime.now(UTC)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
    allow_unknown: bool = False,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    if not allow_unknown:
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


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


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


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    return None if value is None else _as_datetime(value, path)


def datetime_to_iso8601z(value: datetime) -> str:
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


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    return tuple(
        _as_str(item, f"{path}[{index}]") for index, item in enumerate(_as_sequence(value, path))
    )


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
        if len(value) > _MAX_TEXT:
            _fail(path, f"string exceeds max length {_MAX_TEXT}")
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(_as_sequence(value, path))
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


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        return cast("str", value.value)
    if isinstance(value, datetime):
        return datetime_to_iso8601z(value)
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
        return {
            dataclass_field.name: _serialize_value(
                getattr(value, dataclass_field.name), f"{path}.{dataclass_field.name}"
            )
            for dataclass_field in fields(value)
        }

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


def _validate_execution_id(value: object, path: str) -> str:
    parsed = _as_str(value, path, max_len=64)
    try:
        domain_ids.validate_execution_id(parsed)
    except ValueError as exc:
        _fail(path, str(exc))
    return parsed


@dataclass(slots=True)
class BuildExecution(CanonicalModel):
    """Aggregate root for one submitted build.

    ``version`` is bumped on every ledger write and is the token that conditional
    updates compare against. ``diagnostic`` carries the last QA report summary or
    infrastructure error detail once the execution fails.
    """

    id: str
    org_id: str
    user_id: str
    current_build_spec_ref: str
    status: ExecutionStatus | str
    created_at: datetime
    updated_at: datetime
    current_phase: Phase | str | None = None
    qa_iteration: int = 1
    build_cycle: int = 1
    spec_revision: int = 1
    version: int = 1
    failure_reason: str | None = None
    last_qa_report_ref: str | None = None
    diagnostic: dict[str, JSONValue] = field(default_factory=dict)
    schema_version: int = _SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = _as_int(
            self.schema_version, "BuildExecution.schema_version", minimum=1
        )
        self.id = _validate_execution_id(self.id, "BuildExecution.id")
        self.org_id = _as_str(self.org_id, "BuildExecution.org_id", max_len=256)
        self.user_id = _as_str(self.user_id, "BuildExecution.user_id", max_len=256)
        self.current_build_spec_ref = _as_str(
            self.current_build_spec_ref, "BuildExecution.current_build_spec_ref", max_len=_MAX_REF
        )
        self.status = _as_enum(ExecutionStatus, self.status, "BuildExecution.status")
        self.created_at = _as_datetime(self.created_at, "BuildExecution.created_at")
        self.updated_at = _as_datetime(self.updated_at, "BuildExecution.updated_at")
        if self.updated_at < self.created_at:
            _fail("BuildExecution.updated_at", "must be >= BuildExecution.created_at")
        if self.current_phase is not None:
            self.current_phase = _as_enum(Phase, self.current_phase, "BuildExecution.current_phase")
        self.qa_iteration = _as_int(self.qa_iteration, "BuildExecution.qa_iteration", minimum=1)
        self.build_cycle = _as_int(self.build_cycle, "BuildExecution.build_cycle", minimum=1)
        self.spec_revision = _as_int(self.spec_revision, "BuildExecution.spec_revision", minimum=1)
        self.version = _as_int(self.version, "BuildExecution.version", minimum=1)
        self.failure_reason = _as_optional_str(
            self.failure_reason, "BuildExecution.failure_reason", max_len=4096
        )
        self.last_qa_report_ref = _as_optional_str(
            self.last_qa_report_ref, "BuildExecution.last_qa_report_ref", max_len=_MAX_REF
        )
        self.diagnostic = _as_json_object(self.diagnostic, "BuildExecution.diagnostic")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BuildExecution:
        parsed = _expect_object(
            data,
            "BuildExecution",
            required={
                "id",
                "org_id",
                "user_id",
                "current_build_spec_ref",
                "status",
                "created_at",
                "updated_at",
            },
            optional={
                "current_phase",
                "qa_iteration",
                "build_cycle",
                "spec_revision",
                "version",
                "failure_reason",
                "last_qa_report_ref",
                "diagnostic",
                "schema_version",
            },
        )
        return cls(
            id=_as_str(parsed["id"], "BuildExecution.id"),
            org_id=_as_str(parsed["org_id"], "BuildExecution.org_id"),
            user_id=_as_str(parsed["user_id"], "BuildExecution.user_id"),
            current_build_spec_ref=_as_str(
                parsed["current_build_spec_ref"], "BuildExecution.current_build_spec_ref"
            ),
            status=_as_enum(ExecutionStatus, parsed["status"], "BuildExecution.status"),
            created_at=_as_datetime(parsed["created_at"], "BuildExecution.created_at"),
            updated_at=_as_datetime(parsed["updated_at"], "BuildExecution.updated_at"),
            current_phase=(
                _as_enum(Phase, parsed["current_phase"], "BuildExecution.current_phase")
                if parsed.get("current_phase") is not None
                else None
            ),
            qa_iteration=_as_int(parsed.get("qa_iteration", 1), "BuildExecution.qa_iteration"),
            build_cycle=_as_int(parsed.get("build_cycle", 1), "BuildExecution.build_cycle"),
            spec_revision=_as_int(parsed.get("spec_revision", 1), "BuildExecution.spec_revision"),
            version=_as_int(parsed.get("version", 1), "BuildExecution.version"),
            failure_reason=_as_optional_str(
                parsed.get("failure_reason"), "BuildExecution.failure_reason"
            ),
            last_qa_report_ref=_as_optional_str(
                parsed.get("last_qa_report_ref"), "BuildExecution.last_qa_report_ref"
            ),
            diagnostic=_as_json_object(parsed.get("diagnostic", {}), "BuildExecution.diagnostic"),
            schema_version=_as_int(
                parsed.get("schema_version", _SCHEMA_VERSION), "BuildExecution.schema_version"
            ),
        )


@dataclass(slots=True)
class PhaseRun(CanonicalModel):
    """One attempt to run a phase's worker; resolved exactly once."""

    execution_id: str
    phase: Phase | str
    attempt_number: int
    worker_ref: str
    input_ref: str
    started_at: datetime
    deadline_at: datetime
    build_cycle: int = 1
    outcome: PhaseOutcome | str = PhaseOutcome.PENDING
    completed_at: datetime | None = None
    output_ref: str | None = None
    detail: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.execution_id = _validate_execution_id(self.execution_id, "PhaseRun.execution_id")
        self.phase = _as_enum(Phase, self.phase, "PhaseRun.phase")
        self.attempt_number = _as_int(self.attempt_number, "PhaseRun.attempt_number", minimum=1)
        self.worker_ref = _as_str(self.worker_ref, "PhaseRun.worker_ref", max_len=512)
        self.input_ref = _as_str(self.input_ref, "PhaseRun.input_ref", max_len=_MAX_REF)
        self.started_at = _as_datetime(self.started_at, "PhaseRun.started_at")
        self.deadline_at = _as_datetime(self.deadline_at, "PhaseRun.deadline_at")
        if self.deadline_at < self.started_at:
            _fail("PhaseRun.deadline_at", "must be >= PhaseRun.started_at")
        self.build_cycle = _as_int(self.build_cycle, "PhaseRun.build_cycle", minimum=1)
        self.outcome = _as_enum(PhaseOutcome, self.outcome, "PhaseRun.outcome")
        self.completed_at = _as_optional_datetime(self.completed_at, "PhaseRun.completed_at")
        if (self.outcome is PhaseOutcome.PENDING) != (self.completed_at is None):
            _fail("PhaseRun.completed_at", "must be set exactly when the outcome is resolved")
        self.output_ref = _as_optional_str(self.output_ref, "PhaseRun.output_ref", max_len=_MAX_REF)
        self.detail = _as_json_object(self.detail, "PhaseRun.detail")

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not PhaseOutcome.PENDING

    @property
    def key(self) -> tuple[str, Phase, int]:
        return (self.execution_id, cast("Phase", self.phase), self.attempt_number)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PhaseRun:
        parsed = _expect_object(
            data,
            "PhaseRun",
            required={
                "execution_id",
                "phase",
                "attempt_number",
                "worker_ref",
                "input_ref",
                "started_at",
                "deadline_at",
            },
            optional={"build_cycle", "outcome", "completed_at", "output_ref", "detail"},
        )
        return cls(
            execution_id=_as_str(parsed["execution_id"], "PhaseRun.execution_id"),
            phase=_as_enum(Phase, parsed["phase"], "PhaseRun.phase"),
            attempt_number=_as_int(parsed["attempt_number"], "PhaseRun.attempt_number"),
            worker_ref=_as_str(parsed["worker_ref"], "PhaseRun.worker_ref"),
            input_ref=_as_str(parsed["input_ref"], "PhaseRun.input_ref"),
            started_at=_as_datetime(parsed["started_at"], "PhaseRun.started_at"),
            deadline_at=_as_datetime(parsed["deadline_at"], "PhaseRun.deadline_at"),
            build_cycle=_as_int(parsed.get("build_cycle", 1), "PhaseRun.build_cycle"),
            outcome=_as_enum(
                PhaseOutcome, parsed.get("outcome", PhaseOutcome.PENDING), "PhaseRun.outcome"
            ),
            completed_at=_as_optional_datetime(parsed.get("completed_at"), "PhaseRun.completed_at"),
            output_ref=_as_optional_str(parsed.get("output_ref"), "PhaseRun.output_ref"),
            detail=_as_json_object(parsed.get("detail", {}), "PhaseRun.detail"),
        )


@dataclass(frozen=True, slots=True)
class QAIssue(CanonicalModel):
    type: str
    severity: str
    message: str
    suggestion: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _as_str(self.type, "QAIssue.type", max_len=256))
        object.__setattr__(
            self, "severity", _as_str(self.severity, "QAIssue.severity", max_len=64).lower()
        )
        object.__setattr__(self, "message", _as_str(self.message, "QAIssue.message"))
        object.__setattr__(
            self, "suggestion", _as_optional_str(self.suggestion, "QAIssue.suggestion")
        )

    @property
    def fix_text(self) -> str:
        return self.suggestion or self.message

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> QAIssue:
        parsed = _expect_object(
            data,
            "QAIssue",
            required={"message"},
            optional={"type", "severity", "suggestion"},
            allow_unknown=True,
        )
        return cls(
            type=cast("str", parsed.get("type", "general")),
            severity=cast("str", parsed.get("severity", "medium")),
            message=cast("str", parsed["message"]),
            suggestion=cast("str | None", parsed.get("suggestion")),
        )


@dataclass(frozen=True, slots=True)
class QAReport(CanonicalModel):
    """Structured Verify result. ``revision`` is the BuildSpec revision it judged."""

    execution_id: str
    revision: int
    status: QAStatus
    issues: tuple[QAIssue, ...] = ()
    feedback_text: str = ""
    failed_checks: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _validate_execution_id(self.execution_id, "QAReport.execution_id")
        _as_int(self.revision, "QAReport.revision", minimum=1)
        object.__setattr__(self, "status", _as_enum(QAStatus, self.status, "QAReport.status"))
        for index, issue in enumerate(self.issues):
            if not isinstance(issue, QAIssue):
                _fail(f"QAReport.issues[{index}]", "must be QAIssue")

    @property
    def must_fix(self) -> tuple[str, ...]:
        return tuple(
            issue.fix_text for issue in self.issues if issue.severity in MUST_FIX_SEVERITIES
        )

    @property
    def prioritized_fixes(self) -> tuple[str, ...]:
        return tuple(
            issue.fix_text for issue in self.issues if issue.severity in PRIORITIZED_FIX_SEVERITIES
        )

    def summary(self) -> dict[str, JSONValue]:
        return {
            "status": self.status.value,
            "revision": self.revision,
            "issue_count": len(self.issues),
            "must_fix": list(self.must_fix),
            "feedback": self.feedback_text,
        }

    @classmethod
    def from_worker_output(
        cls, payload: Mapping[str, object], *, execution_id: str, revision: int
    ) -> QAReport:
        """Parse a Verify worker's ``output.json``; raises ``ValueError`` when malformed."""
        parsed = _expect_object(
            payload,
            "QAReport",
            required={"status"},
            optional={"issues", "feedback", "checks"},
            allow_unknown=True,
        )
        issues = tuple(
            QAIssue.from_dict(cast("Mapping[str, object]", item))
            for item in _as_sequence(parsed.get("issues", []), "QAReport.issues")
        )
        failed_checks: list[str] = []
        for index, check in enumerate(_as_sequence(parsed.get("checks", []), "QAReport.checks")):
            entry = _expect_object(
                check, f"QAReport.checks[{index}]", required={"name"}, allow_unknown=True
            )
            if entry.get("passed") is False:
                failed_checks.append(_as_str(entry["name"], f"QAReport.checks[{index}].name"))
        feedback = parsed.get("feedback", "")
        return cls(
            execution_id=execution_id,
            revision=revision,
            status=_as_enum(QAStatus, parsed["status"], "QAReport.status"),
            issues=issues,
            feedback_text=_as_str(feedback, "QAReport.feedback", min_len=0) if feedback else "",
            failed_checks=tuple(failed_checks),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> QAReport:
        parsed = _expect_object(
            data,
            "QAReport",
            required={"execution_id", "revision", "status"},
            optional={"issues", "feedback_text", "failed_checks"},
        )
        return cls(
            execution_id=_as_str(parsed["execution_id"], "QAReport.execution_id"),
            revision=_as_int(parsed["revision"], "QAReport.revision", minimum=1),
            status=_as_enum(QAStatus, parsed["status"], "QAReport.status"),
            issues=tuple(
                QAIssue.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(parsed.get("issues", []), "QAReport.issues")
            ),
            feedback_text=cast("str", parsed.get("feedback_text", "")),
            failed_checks=_as_str_tuple(parsed.get("failed_checks", []), "QAReport.failed_checks"),
        )


@dataclass(frozen=True, slots=True)
class FeedbackBlock(CanonicalModel):
    """Findings of one failed verification, tagged with the iteration that raised them."""

    iteration: int
    qa_report_ref: str
    issues: tuple[QAIssue, ...]
    feedback_text: str
    must_fix: tuple[str, ...] = ()
    prioritized_fixes: tuple[str, ...] = ()
    failed_checks: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _as_int(self.iteration, "FeedbackBlock.iteration", minimum=1)
        _as_str(self.qa_report_ref, "FeedbackBlock.qa_report_ref", max_len=_MAX_REF)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FeedbackBlock:
        parsed = _expect_object(
            data,
            "FeedbackBlock",
            required={"iteration", "qa_report_ref", "issues", "feedback_text"},
            optional={"must_fix", "prioritized_fixes", "failed_checks"},
        )
        return cls(
            iteration=_as_int(parsed["iteration"], "FeedbackBlock.iteration", minimum=1),
            qa_report_ref=_as_str(parsed["qa_report_ref"], "FeedbackBlock.qa_report_ref"),
            issues=tuple(
                QAIssue.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(parsed["issues"], "FeedbackBlock.issues")
            ),
            feedback_text=_as_str(
                parsed["feedback_text"], "FeedbackBlock.feedback_text", min_len=0
            ),
            must_fix=_as_str_tuple(parsed.get("must_fix", []), "FeedbackBlock.must_fix"),
            prioritized_fixes=_as_str_tuple(
                parsed.get("prioritized_fixes", []), "FeedbackBlock.prioritized_fixes"
            ),
            failed_checks=_as_str_tuple(
                parsed.get("failed_checks", []), "FeedbackBlock.failed_checks"
            ),
        )


@dataclass(frozen=True, slots=True)
class BuildSpec(CanonicalModel):
    """Immutable build-instruction revision.

    ``content`` is opaque to the controller. ``feedback`` only ever grows:
    revision N+1 holds every block of revision N followed by one new block.
    """

    execution_id: str
    revision: int
    content: dict[str, JSONValue]
    feedback: tuple[FeedbackBlock, ...] = ()
    previous_qa_report_ref: str | None = None

    def __post_init__(self) -> None:
        _validate_execution_id(self.execution_id, "BuildSpec.execution_id")
        _as_int(self.revision, "BuildSpec.revision", minimum=1)
        object.__setattr__(self, "content", _as_json_object(self.content, "BuildSpec.content"))
        for index, block in enumerate(self.feedback):
            if not isinstance(block, FeedbackBlock):
                _fail(f"BuildSpec.feedback[{index}]", "must be FeedbackBlock")
        _as_optional_str(self.previous_qa_report_ref, "BuildSpec.previous_qa_report_ref")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BuildSpec:
        parsed = _expect_object(
            data,
            "BuildSpec",
            required={"execution_id", "revision", "content"},
            optional={"feedback", "previous_qa_report_ref"},
        )
        return cls(
            execution_id=_as_str(parsed["execution_id"], "BuildSpec.execution_id"),
            revision=_as_int(parsed["revision"], "BuildSpec.revision", minimum=1),
            content=_as_json_object(parsed["content"], "BuildSpec.content"),
            feedback=tuple(
                FeedbackBlock.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(parsed.get("feedback", []), "BuildSpec.feedback")
            ),
            previous_qa_report_ref=_as_optional_str(
                parsed.get("previous_qa_report_ref"), "BuildSpec.previous_qa_report_ref"
            ),
        )


@dataclass(frozen=True, slots=True)
class DeployUnitResult(CanonicalModel):
    name: str
    status: UnitStatus
    artifact_ref: str | None = None
    error: str | None = None
    verified_outcomes: dict[str, JSONValue] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status is UnitStatus.SUCCESS

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> DeployUnitResult:
        parsed = _expect_object(
            data,
            "DeployUnitResult",
            required={"name", "status"},
            optional={"artifact_ref", "error", "verified_outcomes"},
            allow_unknown=True,
        )
        status = _as_enum(UnitStatus, parsed["status"], "DeployUnitResult.status")
        name = _as_str(parsed["name"], "DeployUnitResult.name", max_len=256)
        artifact_ref = _as_optional_str(
            parsed.get("artifact_ref"), "DeployUnitResult.artifact_ref", max_len=_MAX_REF
        )
        if status is UnitStatus.SUCCESS and artifact_ref is None:
            _fail("DeployUnitResult.artifact_ref", f"required for successful unit {name!r}")
        return cls(
            name=name,
            status=status,
            artifact_ref=artifact_ref,
            error=_as_optional_str(parsed.get("error"), "DeployUnitResult.error"),
            verified_outcomes=_as_json_object(
                parsed.get("verified_outcomes", {}), "DeployUnitResult.verified_outcomes"
            ),
        )


@dataclass(frozen=True, slots=True)
class DeployReport(CanonicalModel):
    units: tuple[DeployUnitResult, ...]
    reason: str | None = None

    @property
    def succeeded_units(self) -> tuple[DeployUnitResult, ...]:
        return tuple(unit for unit in self.units if unit.succeeded)

    @property
    def all_succeeded(self) -> bool:
        return bool(self.units) and len(self.succeeded_units) == len(self.units)

    @property
    def any_succeeded(self) -> bool:
        return bool(self.succeeded_units)

    def failure_reason(self) -> str:
        if self.reason:
            return self.reason
        errors = [f"{unit.name}: {unit.error}" for unit in self.units if unit.error]
        if errors:
            return "; ".join(errors)
        return "no deployable unit succeeded"

    @classmethod
    def from_worker_output(cls, payload: Mapping[str, object]) -> DeployReport:
        """Parse a Deploy worker's ``output.json``; raises ``ValueError`` when malformed."""
        parsed = _expect_object(
            payload,
            "DeployReport",
            required={"status", "units"},
            optional={"reason", "error"},
            allow_unknown=True,
        )
        units = tuple(
            DeployUnitResult.from_dict(
                _expect_object(
                    item, f"DeployReport.units[{index}]", required=set(), allow_unknown=True
                )
            )
            for index, item in enumerate(_as_sequence(parsed["units"], "DeployReport.units"))
        )
        names = [unit.name for unit in units]
        if len(set(names)) != len(names):
            _fail("DeployReport.units", "unit names must be unique")
        reason = parsed.get("reason", parsed.get("error"))
        return cls(
            units=units,
            reason=_as_optional_str(reason, "DeployReport.reason", max_len=4096),
        )


@dataclass(frozen=True, slots=True)
class ToolArtifact(CanonicalModel):
    """One deployed unit from a succeeded Deploy PhaseRun."""

    id: str
    execution_id: str
    unit_name: str
    artifact_ref: str
    deployed_at: datetime
    verified_outcomes: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        domain_ids.validate_artifact_id(self.id)
        _validate_execution_id(self.execution_id, "ToolArtifact.execution_id")
        _as_str(self.unit_name, "ToolArtifact.unit_name", max_len=256)
        _as_str(self.artifact_ref, "ToolArtifact.artifact_ref", max_len=_MAX_REF)
        object.__setattr__(
            self, "deployed_at", _as_datetime(self.deployed_at, "ToolArtifact.deployed_at")
        )
        object.__setattr__(
            self,
            "verified_outcomes",
            _as_json_object(self.verified_outcomes, "ToolArtifact.verified_outcomes"),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ToolArtifact:
        parsed = _expect_object(
            data,
            "ToolArtifact",
            required={"id", "execution_id", "unit_name", "artifact_ref", "deployed_at"},
            optional={"verified_outcomes"},
        )
        return cls(
            id=_as_str(parsed["id"], "ToolArtifact.id"),
            execution_id=_as_str(parsed["execution_id"], "ToolArtifact.execution_id"),
            unit_name=_as_str(parsed["unit_name"], "ToolArtifact.unit_name"),
            artifact_ref=_as_str(parsed["artifact_ref"], "ToolArtifact.artifact_ref"),
            deployed_at=_as_datetime(parsed["deployed_at"], "ToolArtifact.deployed_at"),
            verified_outcomes=_as_json_object(
                parsed.get("verified_outcomes", {}), "ToolArtifact.verified_outcomes"
            ),
        )


__all__ = [
    "PHASE_ORDER",
    "TERMINAL_STATUSES",
    "BuildExecution",
    "BuildSpec",
    "CanonicalModel",
    "DeployReport",
    "DeployUnitResult",
    "ExecutionStatus",
    "FeedbackBlock",
    "JSONValue",
    "Phase",
    "PhaseOutcome",
    "PhaseRun",
    "QAIssue",
    "QAReport",
    "QAStatus",
    "ToolArtifact",
    "UnitStatus",
    "canonical_json",
    "datetime_to_iso8601z",
    "next_phase",
    "utc_now",
]
