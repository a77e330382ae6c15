"""
buildloop — status ledger storage

File: src/buildloop/persistence/state_db.py

Purpose
- SQLite schema management, migrations, and connection lifecycle for the
  status ledger (executions, phase runs, spec revisions, artifacts, events).

Functional requirements
- Migrations apply idempotently and are checksummed.
- Append-only tables are enforced by triggers, not by caller discipline.
- A terminal execution row and a resolved phase-run row reject further updates.

Non-functional requirements
- Short-lived connections; WAL journal so status queries never block writers.
- Bounded retry with backoff on SQLITE_BUSY.
"""

from __future__ import annotations

import hashlib
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from buildloop.constants import STATE_DB_SCHEMA_VERSION
from buildloop.domain.models import (
    TERMINAL_STATUSES,
    ExecutionStatus,
    Phase,
    PhaseOutcome,
    canonical_json,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _sql_enum(values: Sequence[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


def _enum_values(
    values: type[ExecutionStatus] | type[Phase] | type[PhaseOutcome],
) -> tuple[str, ...]:
    return tuple(sorted(item.value for item in values))


_STATUS_VALUES: Final[tuple[str, ...]] = _enum_values(ExecutionStatus)
_TERMINAL_STATUS_VALUES: Final[tuple[str, ...]] = tuple(
    sorted(status.value for status in TERMINAL_STATUSES)
)
_PHASE_VALUES: Final[tuple[str, ...]] = _enum_values(Phase)
_OUTCOME_VALUES: Final[tuple[str, ...]] = _enum_values(PhaseOutcome)

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS executions (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(_STATUS_VALUES)})),
        current_phase TEXT CHECK (
            current_phase IS NULL OR current_phase IN ({_sql_enum(_PHASE_VALUES)})
        ),
        qa_iteration INTEGER NOT NULL CHECK (qa_iteration >= 1),
        build_cycle INTEGER NOT NULL CHECK (build_cycle >= 1),
        spec_revision INTEGER NOT NULL CHECK (spec_revision >= 1),
        version INTEGER NOT NULL CHECK (version >= 1),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS executions_terminal_status_frozen
    BEFORE UPDATE ON executions
    WHEN OLD.status IN ({_sql_enum(_TERMINAL_STATUS_VALUES)})
    BEGIN
        SELECT RAISE(ABORT, 'execution is terminal');
    END
    """,
    f"""
    CREATE TABLE IF NOT EXISTS phase_runs (
        execution_id TEXT NOT NULL,
        phase TEXT NOT NULL CHECK (phase IN ({_sql_enum(_PHASE_VALUES)})),
        attempt_number INTEGER NOT NULL CHECK (attempt_number >= 1),
        worker_ref TEXT NOT NULL UNIQUE,
        build_cycle INTEGER NOT NULL CHECK (build_cycle >= 1),
        outcome TEXT NOT NULL CHECK (outcome IN ({_sql_enum(_OUTCOME_VALUES)})),
        started_at TEXT NOT NULL,
        deadline_at TEXT NOT NULL,
        completed_at TEXT,
        payload_json TEXT NOT NULL,
        PRIMARY KEY (execution_id, phase, attempt_number),
        FOREIGN KEY(execution_id) REFERENCES executions(id)
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS phase_runs_append_only_delete
    BEFORE DELETE ON phase_runs
    BEGIN
        SELECT RAISE(ABORT, 'phase_runs is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS phase_runs_resolved_frozen
    BEFORE UPDATE ON phase_runs
    WHEN OLD.outcome <> 'pending'
    BEGIN
        SELECT RAISE(ABORT, 'phase run is already resolved');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS build_specs (
        execution_id TEXT NOT NULL,
        revision INTEGER NOT NULL CHECK (revision >= 1),
        spec_ref TEXT NOT NULL,
        previous_qa_report_ref TEXT,
        created_at TEXT NOT NULL,
        PRIMARY KEY (execution_id, revision),
        FOREIGN KEY(execution_id) REFERENCES executions(id)
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS build_specs_append_only_update
    BEFORE UPDATE ON build_specs
    BEGIN
        SELECT RAISE(ABORT, 'build_specs is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS build_specs_append_only_delete
    BEFORE DELETE ON build_specs
    BEGIN
        SELECT RAISE(ABORT, 'build_specs is append-only');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS tool_artifacts (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        unit_name TEXT NOT NULL,
        artifact_ref TEXT NOT NULL,
        deployed_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        UNIQUE (execution_id, unit_name),
        FOREIGN KEY(execution_id) REFERENCES executions(id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS signal_receipts (
        execution_id TEXT NOT NULL,
        phase TEXT NOT NULL CHECK (phase IN ({_sql_enum(_PHASE_VALUES)})),
        attempt_number INTEGER NOT NULL CHECK (attempt_number >= 1),
        delivery_count INTEGER NOT NULL CHECK (delivery_count >= 1),
        first_received_at TEXT NOT NULL,
        last_received_at TEXT NOT NULL,
        PRIMARY KEY (execution_id, phase, attempt_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS phase_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT NOT NULL UNIQUE,
        execution_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        FOREIGN KEY(execution_id) REFERENCES executions(id)
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS phase_events_append_only_update
    BEFORE UPDATE ON phase_events
    BEGIN
        SELECT RAISE(ABORT, 'phase_events is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS phase_events_append_only_delete
    BEFORE DELETE ON phase_events
    BEGIN
        SELECT RAISE(ABORT, 'phase_events is append-only');
    END
    """,
    "CREATE INDEX IF NOT EXISTS idx_executions_org_created ON executions(org_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status)",
    """
    CREATE INDEX IF NOT EXISTS idx_phase_runs_outcome_deadline
    ON phase_runs(outcome, deadline_at)
    """,
    "CREATE INDEX IF NOT EXISTS idx_phase_events_execution_seq ON phase_events(execution_id, seq)",
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="status_ledger",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "status_ledger", _MIGRATION_0001_STATEMENTS),
    ),
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (getattr(sqlite3, "SQLITE_CORRUPT", None), getattr(sqlite3, "SQLITE_NOTADB", None))
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when bounded busy retries are exhausted."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports possible corruption."""


class StateDB:
    """SQLite status ledger with deterministic migrations and safe helpers."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoint_counter = 0
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a configured SQLite connection for the ledger."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        self._configure_connection(conn)
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside an atomic transaction with savepoint support."""

        if conn is None:
            with self.connection() as owned_conn:
                with self.transaction(conn=owned_conn, immediate=immediate) as txn_conn:
                    yield txn_conn
                return

        if conn.in_transaction:
            savepoint = self._next_savepoint_name()
            self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except Exception:
                self._execute_with_retry(
                    conn, f"ROLLBACK TO SAVEPOINT {savepoint}", (), operation="rollback savepoint"
                )
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
                raise
            else:
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
            return

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute_with_retry(conn, begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return current schema version."""

        self._validate_migration_chain(STATE_DB_SCHEMA_VERSION)
        with self.connection() as conn:
            self._execute_with_retry(
                conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions table"
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this binary "
                    f"(db={current_version}, code={STATE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue

                applied_at = utc_now_iso()
                with self.transaction(conn=conn, immediate=True) as tx:
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx, statement, (), operation=f"apply migration {migration.version}"
                        )
                    self._execute_with_retry(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, applied_at),
                        operation=f"record migration {migration.version}",
                    )
                applied[migration.version] = MigrationRecord(
                    version=migration.version,
                    name=migration.name,
                    checksum=migration.checksum,
                    applied_at=applied_at,
                )

            self._migrated = True
            return self.schema_version(conn=conn)

    def ensure_migrated(self) -> None:
        """Run ``migrate`` once per instance."""

        if not self._migrated:
            self.migrate()

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        if row is None:
            return 0
        value = row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return value

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return affected row count."""

        if conn is not None:
            return self._execute_with_retry(conn, sql, params, operation="execute").rowcount
        with self.transaction(immediate=True) as tx:
            return self._execute_with_retry(tx, sql, params, operation="execute").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]
        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        if conn is not None:
            row = self._execute_with_retry(conn, sql, params, operation="query one").fetchone()
            return None if row is None else _row_to_dict(row)
        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query one")
            row = cursor.fetchone()
            return None if row is None else _row_to_dict(row)

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({max_errors})")
        messages = tuple(str(row.get("integrity_check", "")) for row in rows)
        return () if messages == ("ok",) else messages

    def __enter__(self) -> StateDB:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None or str(journal_row[0]).lower() != "wal":
            raise StateDBError("failed to configure journal_mode=WAL")

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version ASC",
            (),
            operation="load schema_versions",
        )
        out: dict[int, MigrationRecord] = {}
        for row in cursor.fetchall():
            if not isinstance(row["version"], int) or not isinstance(row["checksum"], str):
                raise StateDBMigrationError("schema_versions row is malformed")
            out[row["version"]] = MigrationRecord(
                version=row["version"],
                name=str(row["name"]),
                checksum=row["checksum"],
                applied_at=str(row["applied_at"]),
            )
        return out

    def _validate_migration_chain(self, target_version: int) -> None:
        migration_versions = {migration.version for migration in _MIGRATIONS}
        if target_version > max(migration_versions, default=0):
            raise StateDBMigrationError(
                "schema target exceeds known migrations "
                f"(target={target_version}, known={max(migration_versions, default=0)})"
            )
        for version in range(1, target_version + 1):
            if version not in migration_versions:
                raise StateDBMigrationError(f"missing migration for schema version {version}")

    def _next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        if self._is_corruption_error(exc):
            raise StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. Run `StateDB.integrity_check()`."
            ) from exc
        if self._is_busy_error(exc):
            raise StateDBBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    return {str(key): row[key] for key in row.keys()}


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
    "utc_now_iso",
]
