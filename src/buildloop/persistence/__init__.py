"""
buildloop — persistence layer

File: src/buildloop/persistence/__init__.py

Purpose
- Status ledger: SQLite state DB, migrations, and per-entity repositories.

Rules
- SQLite-first; no server database dependency.
- Every execution write is a conditional update on the record version.
"""

from buildloop.persistence.repositories import (
    BuildSpecRecord,
    BuildSpecRepo,
    ExecutionNotFoundError,
    ExecutionRepo,
    PhaseEventRepo,
    PhaseRunRepo,
    SignalReceiptRepo,
    StaleTransitionError,
    ToolArtifactRepo,
)
from buildloop.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
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
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "ToolArtifactRepo",
]
