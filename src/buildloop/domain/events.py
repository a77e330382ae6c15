"""Phase-transition events, serialization, and payload redaction helpers."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from buildloop.domain import ids
from buildloop.domain.models import (
    JSONValue,
    Phase,
    _as_datetime,
    _as_enum,
    _as_int,
    _as_json_object,
    _as_str,
    _expect_object,
    canonical_json,
    datetime_to_iso8601z,
)

_SENSITIVE_KEY_TERMS = ("secret", "key", "password", "token")
_REDACTED_VALUE = "***REDACTED***"


class PhaseEventType(StrEnum):
    """Lifecycle notifications emitted by the pipeline controller."""

    EXECUTION_STARTED = "ExecutionStarted"
    PHASE_LAUNCHED = "PhaseLaunched"
    LAUNCH_FAILED = "LaunchFailed"
    PHASE_RESOLVED = "PhaseResolved"
    SPEC_REVISED = "SpecRevised"
    CYCLE_RESTARTED = "CycleRestarted"
    CANCEL_REQUESTED = "CancelRequested"
    EXECUTION_FINISHED = "ExecutionFinished"


@dataclass(slots=True)
class PhaseEvent:
    """Serializable notification for one step of an execution's state machine."""

    event_id: str
    execution_id: str
    event_type: PhaseEventType
    timestamp: datetime
    phase: Phase | None = None
    attempt_number: int | None = None
    payload: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        ids.validate_execution_id(self.execution_id)
        self.event_type = _as_enum(PhaseEventType, self.event_type, "PhaseEvent.event_type")
        self.timestamp = _as_datetime(self.timestamp, "PhaseEvent.timestamp")
        if self.phase is not None:
            self.phase = _as_enum(Phase, self.phase, "PhaseEvent.phase")
        if self.attempt_number is not None:
            self.attempt_number = _as_int(
                self.attempt_number, "PhaseEvent.attempt_number", minimum=1
            )
        self.payload = _as_json_object(self.payload, "PhaseEvent.payload")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "execution_id": self.execution_id,
            "event_type": self.event_type.value,
            "timestamp": datetime_to_iso8601z(self.timestamp),
            "phase": None if self.phase is None else self.phase.value,
            "attempt_number": self.attempt_number,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PhaseEvent:
        parsed = _expect_object(
            data,
            "PhaseEvent",
            required={"event_id", "execution_id", "event_type", "timestamp"},
            optional={"phase", "attempt_number", "payload"},
        )
        phase_raw = parsed.get("phase")
        attempt_raw = parsed.get("attempt_number")
        return cls(
            event_id=_as_str(parsed["event_id"], "PhaseEvent.event_id", max_len=128),
            execution_id=_as_str(parsed["execution_id"], "PhaseEvent.execution_id", max_len=128),
            event_type=_as_enum(PhaseEventType, parsed["event_type"], "PhaseEvent.event_type"),
            timestamp=_as_datetime(parsed["timestamp"], "PhaseEvent.timestamp"),
            phase=None if phase_raw is None else _as_enum(Phase, phase_raw, "PhaseEvent.phase"),
            attempt_number=(
                None
                if attempt_raw is None
                else _as_int(attempt_raw, "PhaseEvent.attempt_number", minimum=1)
            ),
            payload=_as_json_object(parsed.get("payload", {}), "PhaseEvent.payload"),
        )

    @classmethod
    def from_json(cls, raw: str) -> PhaseEvent:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"PhaseEvent: invalid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("PhaseEvent: JSON root must be an object")
        return cls.from_dict(parsed)


def redact_sensitive(event: PhaseEvent) -> PhaseEvent:
    """Return a new event with sensitive payload keys deeply redacted."""
    redacted_payload = _redact_value(event.payload, key_context=None)
    if not isinstance(redacted_payload, dict):
        raise ValueError("redacted payload must remain a JSON object")
    return PhaseEvent(
        event_id=event.event_id,
        execution_id=event.execution_id,
        event_type=event.event_type,
        timestamp=event.timestamp,
        phase=event.phase,
        attempt_number=event.attempt_number,
        payload=redacted_payload,
    )


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _redact_value(value: JSONValue, key_context: str | None) -> JSONValue:
    if key_context is not None and _is_sensitive_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}
    return value


__all__ = ["PhaseEvent", "PhaseEventType", "redact_sensitive"]
