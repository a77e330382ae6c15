"""
buildloop — ledger repositories

File: src/buildloop/persistence/repositories.py

Purpose
- Repository classes reading/writing execution records, phase runs, spec
  revisions, tool artifacts, signal receipts, and phase events.

Functional requirements
- Execution writes are single conditional updates keyed on the record version.
- A phase run resolves at most once; losing writers observe ``None``.
- Phase events stream in insertion order and are never rewritten.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Final

from buildloop.domain import ids
from buildloop.domain.events import PhaseEvent
from buildloop.domain.models import (
    TERMINAL_STATUSES,
    BuildExecution,
    ExecutionStatus,
    JSONValue,
    Phase,
    PhaseOutcome,
    PhaseRun,
    ToolArtifact,
    _as_datetime,
    datetime_to_iso8601z,
    utc_now,
)
from buildloop.persistence.state_db import (
    RowValue,
    StateDB,
    StateDBError,
    utc_now_iso,
)

_MAX_PAGE_SIZE: Final[int] = 1_000
_EVENT_STREAM_BATCH: Final[int] = 200

_ACTIVE_STATUS_VALUES: Final[tuple[str, ...]] = tuple(
    sorted(status.value for status in ExecutionStatus if status not in TERMINAL_STATUSES)
)


class StaleTransitionError(StateDBError):
    """Raised when a conditional execution update finds the record already moved on."""


class ExecutionNotFoundError(LookupError):
    """Raised when an execution id has no ledger record."""


@dataclass(frozen=True, slots=True)
class BuildSpecRecord:
    """Ledger pointer to one immutable BuildSpec revision in the object store."""

    execution_id: str
    revision: int
    spec_ref: str
    previous_qa_report_ref: str | None
    created_at: datetime


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.ensure_migrated()

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class ExecutionRepo(_BaseRepo):
    """Repository for BuildExecution records and their conditional transitions."""

    def add(
        self, execution: BuildExecution, *, conn: sqlite3.Connection | None = None
    ) -> BuildExecution:
        self._db.execute(
            """
            INSERT INTO executions (
                id, org_id, user_id, status, current_phase, qa_iteration, build_cycle,
                spec_revision, version, created_at, updated_at, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution.id,
                execution.org_id,
                execution.user_id,
                str(execution.status),
                None if execution.current_phase is None else str(execution.current_phase),
                execution.qa_iteration,
                execution.build_cycle,
                execution.spec_revision,
                execution.version,
                datetime_to_iso8601z(execution.created_at),
                datetime_to_iso8601z(execution.updated_at),
                execution.to_json(),
            ),
            conn=conn,
        )
        return execution

    def get(
        self, execution_id: str, *, conn: sqlite3.Connection | None = None
    ) -> BuildExecution | None:
        ids.validate_execution_id(execution_id)
        row = self._db.query_one(
            "SELECT payload_json FROM executions WHERE id = ?", (execution_id,), conn=conn
        )
        if row is None:
            return None
        return BuildExecution.from_json(_row_text(row, "payload_json", "executions.payload_json"))

    def require(
        self, execution_id: str, *, conn: sqlite3.Connection | None = None
    ) -> BuildExecution:
        execution = self.get(execution_id, conn=conn)
        if execution is None:
            raise ExecutionNotFoundError(f"execution not found: {execution_id}")
        return execution

    def list_for_org(
        self, org_id: str, *, limit: int = 100, offset: int = 0
    ) -> list[BuildExecution]:
        self._validate_page(limit, offset)
        rows = self._db.query_all(
            """
            SELECT payload_json FROM executions
            WHERE org_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (org_id, limit, offset),
        )
        return [
            BuildExecution.from_json(_row_text(row, "payload_json", "executions.payload_json"))
            for row in rows
        ]

    def count_active(self, org_id: str, *, conn: sqlite3.Connection | None = None) -> int:
        placeholders = ",".join("?" for _ in _ACTIVE_STATUS_VALUES)
        row = self._db.query_one(
            "SELECT COUNT(*) AS active FROM executions "
            f"WHERE org_id = ? AND status IN ({placeholders})",
            (org_id, *_ACTIVE_STATUS_VALUES),
            conn=conn,
        )
        return 0 if row is None else int(_row_int(row, "active", "executions.active"))

    def compare_and_set(
        self,
        expected: BuildExecution,
        updated: BuildExecution,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> BuildExecution:
        """Persist ``updated`` only if the stored record still equals ``expected``'s version.

        Returns the stored record with its version bumped. Raises
        ``StaleTransitionError`` when another writer got there first or the
        stored record is already terminal.
        """

        if updated.id != expected.id:
            raise ValueError("compare_and_set requires matching execution ids")
        stored = replace(updated, version=expected.version + 1, updated_at=utc_now())
        try:
            rowcount = self._db.execute(
                """
                UPDATE executions SET
                    status = ?,
                    current_phase = ?,
                    qa_iteration = ?,
                    build_cycle = ?,
                    spec_revision = ?,
                    version = ?,
                    updated_at = ?,
                    payload_json = ?
                WHERE id = ? AND version = ? AND status = ?
                """,
                (
                    str(stored.status),
                    None if stored.current_phase is None else str(stored.current_phase),
                    stored.qa_iteration,
                    stored.build_cycle,
                    stored.spec_revision,
                    stored.version,
                    datetime_to_iso8601z(stored.updated_at),
                    stored.to_json(),
                    expected.id,
                    expected.version,
                    str(expected.status),
                ),
                conn=conn,
            )
        except sqlite3.IntegrityError as exc:
            raise StaleTransitionError(f"execution {expected.id} rejected update: {exc}") from exc
        if rowcount != 1:
            raise StaleTransitionError(
                f"execution {expected.id} is no longer at version {expected.version} "
                f"with status {expected.status}"
            )
        return stored


class PhaseRunRepo(_BaseRepo):
    """Append-only audit trail of phase attempts."""

    def next_attempt_number(
        self, execution_id: str, phase: Phase, *, conn: sqlite3.Connection | None = None
    ) -> int:
        row = self._db.query_one(
            """
            SELECT COALESCE(MAX(attempt_number), 0) AS last_attempt
            FROM phase_runs WHERE execution_id = ? AND phase = ?
            """,
            (execution_id, phase.value),
            conn=conn,
        )
        last = 0 if row is None else _row_int(row, "last_attempt", "phase_runs.attempt_number")
        return last + 1

    def add(self, run: PhaseRun, *, conn: sqlite3.Connection | None = None) -> PhaseRun:
        if run.is_resolved:
            raise ValueError("phase runs must be recorded as pending before they resolve")
        previous = self.next_attempt_number(run.execution_id, Phase(run.phase), conn=conn) - 1
        if run.attempt_number <= previous:
            raise ValueError(
                f"attempt_number must exceed {previous} for "
                f"{run.execution_id}/{run.phase}, got {run.attempt_number}"
            )
        self._db.execute(
            """
            INSERT INTO phase_runs (
                execution_id, phase, attempt_number, worker_ref, build_cycle, outcome,
                started_at, deadline_at, completed_at, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.execution_id,
                str(run.phase),
                run.attempt_number,
                run.worker_ref,
                run.build_cycle,
                str(run.outcome),
                datetime_to_iso8601z(run.started_at),
                datetime_to_iso8601z(run.deadline_at),
                None,
                run.to_json(),
            ),
            conn=conn,
        )
        return run

    def get(
        self,
        execution_id: str,
        phase: Phase,
        attempt_number: int,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> PhaseRun | None:
        row = self._db.query_one(
            """
            SELECT payload_json FROM phase_runs
            WHERE execution_id = ? AND phase = ? AND attempt_number = ?
            """,
            (execution_id, phase.value, attempt_number),
            conn=conn,
        )
        return None if row is None else _phase_run_from_row(row)

    def list_for_execution(self, execution_id: str) -> list[PhaseRun]:
        rows = self._db.query_all(
            "SELECT payload_json FROM phase_runs WHERE execution_id = ? ORDER BY rowid ASC",
            (execution_id,),
        )
        return [_phase_run_from_row(row) for row in rows]

    def list_pending(self, execution_id: str | None = None) -> list[PhaseRun]:
        sql = "SELECT payload_json FROM phase_runs WHERE outcome = 'pending'"
        params: tuple[str, ...] = ()
        if execution_id is not None:
            sql += " AND execution_id = ?"
            params = (execution_id,)
        rows = self._db.query_all(sql + " ORDER BY rowid ASC", params)
        return [_phase_run_from_row(row) for row in rows]

    def list_overdue(self, now: datetime) -> list[PhaseRun]:
        rows = self._db.query_all(
            """
            SELECT payload_json FROM phase_runs
            WHERE outcome = 'pending' AND deadline_at <= ?
            ORDER BY deadline_at ASC, rowid ASC
            """,
            (datetime_to_iso8601z(now),),
        )
        return [_phase_run_from_row(row) for row in rows]

    def has_passing_verify(
        self, execution_id: str, *, conn: sqlite3.Connection | None = None
    ) -> bool:
        row = self._db.query_one(
            """
            SELECT 1 AS found FROM phase_runs
            WHERE execution_id = ? AND phase = ? AND outcome = ?
            LIMIT 1
            """,
            (execution_id, Phase.VERIFY.value, PhaseOutcome.SUCCEEDED.value),
            conn=conn,
        )
        return row is not None

    def resolve(
        self,
        run: PhaseRun,
        *,
        outcome: PhaseOutcome,
        completed_at: datetime | None = None,
        output_ref: str | None = None,
        detail: dict[str, JSONValue] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> PhaseRun | None:
        """Write the terminal outcome iff the run is still pending.

        Returns the resolved run for the single winning caller and ``None`` for
        every later caller, which is what makes duplicate termination delivery
        harmless.
        """

        if outcome is PhaseOutcome.PENDING:
            raise ValueError("cannot resolve a phase run to pending")
        resolved = replace(
            run,
            outcome=outcome,
            completed_at=completed_at or utc_now(),
            output_ref=output_ref,
            detail={**run.detail, **(detail or {})},
        )
        rowcount = self._db.execute(
            """
            UPDATE phase_runs SET outcome = ?, completed_at = ?, payload_json = ?
            WHERE execution_id = ? AND phase = ? AND attempt_number = ? AND outcome = 'pending'
            """,
            (
                outcome.value,
                datetime_to_iso8601z(resolved.completed_at or utc_now()),
                resolved.to_json(),
                run.execution_id,
                str(run.phase),
                run.attempt_number,
            ),
            conn=conn,
        )
        return resolved if rowcount == 1 else None


class BuildSpecRepo(_BaseRepo):
    """Append-only index of BuildSpec revisions stored in the object store."""

    def add(
        self,
        execution_id: str,
        revision: int,
        spec_ref: str,
        *,
        previous_qa_report_ref: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> BuildSpecRecord:
        created_at = utc_now_iso()
        self._db.execute(
            """
            INSERT INTO build_specs (
                execution_id, revision, spec_ref, previous_qa_report_ref, created_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (execution_id, revision, spec_ref, previous_qa_report_ref, created_at),
            conn=conn,
        )
        return BuildSpecRecord(
            execution_id=execution_id,
            revision=revision,
            spec_ref=spec_ref,
            previous_qa_report_ref=previous_qa_report_ref,
            created_at=_as_datetime(created_at, "build_specs.created_at"),
        )

    def list_for_execution(self, execution_id: str) -> list[BuildSpecRecord]:
        rows = self._db.query_all(
            """
            SELECT execution_id, revision, spec_ref, previous_qa_report_ref, created_at
            FROM build_specs WHERE execution_id = ? ORDER BY revision ASC
            """,
            (execution_id,),
        )
        return [_spec_record_from_row(row) for row in rows]

    def latest(self, execution_id: str) -> BuildSpecRecord | None:
        records = self.list_for_execution(execution_id)
        return records[-1] if records else None


class ToolArtifactRepo(_BaseRepo):
    def add(
        self, artifact: ToolArtifact, *, conn: sqlite3.Connection | None = None
    ) -> ToolArtifact:
        self._db.execute(
            """
            INSERT INTO tool_artifacts (
                id, execution_id, unit_name, artifact_ref, deployed_at, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.id,
                artifact.execution_id,
                artifact.unit_name,
                artifact.artifact_ref,
                datetime_to_iso8601z(artifact.deployed_at),
                artifact.to_json(),
            ),
            conn=conn,
        )
        return artifact

    def list_for_execution(self, execution_id: str) -> list[ToolArtifact]:
        rows = self._db.query_all(
            """
            SELECT id, execution_id, unit_name, artifact_ref, deployed_at, payload_json
            FROM tool_artifacts WHERE execution_id = ? ORDER BY unit_name ASC
            """,
            (execution_id,),
        )
        return [
            ToolArtifact.from_json(_row_text(row, "payload_json", "tool_artifacts.payload_json"))
            for row in rows
        ]


class SignalReceiptRepo(_BaseRepo):
    """Counts termination deliveries per (execution, phase, attempt)."""

    def record(
        self,
        execution_id: str,
        phase: Phase,
        attempt_number: int,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Record one delivery and return how many times this key has now been seen."""

        now = utc_now_iso()
        with self._db.transaction(conn=conn) as tx:
            self._db.execute(
                """
                INSERT INTO signal_receipts (
                    execution_id, phase, attempt_number, delivery_count,
                    first_received_at, last_received_at
                ) VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT(execution_id, phase, attempt_number) DO UPDATE SET
                    delivery_count = delivery_count + 1,
                    last_received_at = excluded.last_received_at
                """,
                (execution_id, phase.value, attempt_number, now, now),
                conn=tx,
            )
            row = self._db.query_one(
                """
                SELECT delivery_count FROM signal_receipts
                WHERE execution_id = ? AND phase = ? AND attempt_number = ?
                """,
                (execution_id, phase.value, attempt_number),
                conn=tx,
            )
        return 0 if row is None else _row_int(row, "delivery_count", "signal_receipts")

    def delivery_count(self, execution_id: str, phase: Phase, attempt_number: int) -> int:
        row = self._db.query_one(
            """
            SELECT delivery_count FROM signal_receipts
            WHERE execution_id = ? AND phase = ? AND attempt_number = ?
            """,
            (execution_id, phase.value, attempt_number),
        )
        return 0 if row is None else _row_int(row, "delivery_count", "signal_receipts")


class PhaseEventRepo(_BaseRepo):
    """Append-only phase-transition log backing ``stream_phase_events``."""

    def append(self, event: PhaseEvent, *, conn: sqlite3.Connection | None = None) -> PhaseEvent:
        self._db.execute(
            """
            INSERT INTO phase_events (event_id, execution_id, event_type, created_at, payload_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.execution_id,
                event.event_type.value,
                datetime_to_iso8601z(event.timestamp),
                event.to_json(),
            ),
            conn=conn,
        )
        return event

    def stream(self, execution_id: str) -> Iterator[PhaseEvent]:
        """Yield events in order, up to the last one recorded when iteration began.

        The stream is finite and restartable only from the beginning.
        """

        ids.validate_execution_id(execution_id)
        head = self._db.query_one(
            "SELECT COALESCE(MAX(seq), 0) AS head FROM phase_events WHERE execution_id = ?",
            (execution_id,),
        )
        last_seq = 0 if head is None else _row_int(head, "head", "phase_events.seq")
        cursor = 0
        while cursor < last_seq:
            rows = self._db.query_all(
                """
                SELECT seq, payload_json FROM phase_events
                WHERE execution_id = ? AND seq > ? AND seq <= ?
                ORDER BY seq ASC LIMIT ?
                """,
                (execution_id, cursor, last_seq, _EVENT_STREAM_BATCH),
            )
            if not rows:
                return
            for row in rows:
                cursor = _row_int(row, "seq", "phase_events.seq")
                yield PhaseEvent.from_json(
                    _row_text(row, "payload_json", "phase_events.payload_json")
                )

    def list_for_execution(self, execution_id: str) -> list[PhaseEvent]:
        return list(self.stream(execution_id))


def _row_text(row: dict[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise StateDBError(f"{path} must be text")
    return value


def _row_int(row: dict[str, RowValue], key: str, path: str) -> int:
    value = row.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise StateDBError(f"{path} must be an integer")
    return value


def _phase_run_from_row(row: dict[str, RowValue]) -> PhaseRun:
    return PhaseRun.from_json(_row_text(row, "payload_json", "phase_runs.payload_json"))


def _spec_record_from_row(row: dict[str, RowValue]) -> BuildSpecRecord:
    previous = row.get("previous_qa_report_ref")
    return BuildSpecRecord(
        execution_id=_row_text(row, "execution_id", "build_specs.execution_id"),
        revision=_row_int(row, "revision", "build_specs.revision"),
        spec_ref=_row_text(row, "spec_ref", "build_specs.spec_ref"),
        previous_qa_report_ref=previous if isinstance(previous, str) else None,
        created_at=_as_datetime(
            _row_text(row, "created_at", "build_specs.created_at"), "build_specs.created_at"
        ),
    )


__all__ = [
    "BuildSpecRecord",
    "BuildSpecRepo",
    "ExecutionNotFoundError",
    "ExecutionRepo",
    "PhaseEventRepo",
    "PhaseRunRepo",
    "SignalReceiptRepo",
    "StaleTransitionError",
    "ToolArtifactRepo",
]
