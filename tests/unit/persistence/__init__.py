"""Shared deterministic builders for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Final

from buildloop.domain import ids
from buildloop.domain.events import PhaseEvent, PhaseEventType
from buildloop.domain.models import (
    BuildExecution,
    ExecutionStatus,
    Phase,
    PhaseRun,
    ToolArtifact,
)
from buildloop.sandbox.supervisor import worker_identity
from buildloop.storage.object_store import phase_input_key, spec_key

_BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def _randbytes(seed: int):
    def provider(size: int) -> bytes:
        return seed.to_bytes(size, "big")

    return provider


def ts(offset_seconds: int = 0) -> datetime:
    return _BASE_TS + timedelta(seconds=offset_seconds)


def make_execution_id(seed: int) -> str:
    return ids.generate_execution_id(
        timestamp_ms=1_760_000_000_000 + seed, randbytes=_randbytes(seed)
    )


def make_execution(
    seed: int,
    *,
    org_id: str = "org-1",
    status: ExecutionStatus = ExecutionStatus.RUNNING,
    created_offset: int = 0,
) -> BuildExecution:
    execution_id = make_execution_id(seed)
    return BuildExecution(
        id=execution_id,
        org_id=org_id,
        user_id=f"user-{seed}",
        current_build_spec_ref=spec_key(execution_id, 1),
        status=status,
        created_at=ts(created_offset),
        updated_at=ts(created_offset),
        current_phase=Phase.DECOMPOSE,
    )


def make_phase_run(
    execution_id: str,
    phase: Phase = Phase.DECOMPOSE,
    attempt: int = 1,
    *,
    started_offset: int = 0,
    budget_seconds: int = 60,
    build_cycle: int = 1,
) -> PhaseRun:
    return PhaseRun(
        execution_id=execution_id,
        phase=phase,
        attempt_number=attempt,
        worker_ref=worker_identity(execution_id, phase, attempt),
        input_ref=phase_input_key(execution_id, phase, attempt),
        started_at=ts(started_offset),
        deadline_at=ts(started_offset + budget_seconds),
        build_cycle=build_cycle,
        detail={"spec_revision": 1},
    )


def make_artifact(execution_id: str, unit_name: str, seed: int) -> ToolArtifact:
    return ToolArtifact(
        id=ids.generate_artifact_id(timestamp_ms=1_760_000_000_000, randbytes=_randbytes(seed)),
        execution_id=execution_id,
        unit_name=unit_name,
        artifact_ref=f"artifacts/{unit_name}",
        deployed_at=ts(600),
        verified_outcomes={"smoke": "passed"},
    )


def make_event(
    execution_id: str, event_type: PhaseEventType, seed: int, **payload: object
) -> PhaseEvent:
    return PhaseEvent(
        event_id=ids.generate_event_id(
            timestamp_ms=1_760_000_000_000 + seed, randbytes=_randbytes(seed)
        ),
        execution_id=execution_id,
        event_type=event_type,
        timestamp=ts(seed),
        payload=dict(payload),  # type: ignore[arg-type]
    )
