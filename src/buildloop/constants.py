"""Stable constants shared across pipeline planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Retry bounds.
DEFAULT_MAX_ITERATIONS: Final[int] = 3
DEFAULT_MAX_CYCLES: Final[int] = 3
DEFAULT_MAX_CONCURRENT_BUILDS: Final[int] = 3

# Per-phase wall-clock budgets in seconds.
DEFAULT_PHASE_TIMEOUTS: Final[dict[str, float]] = {
    "decompose": 900.0,
    "orchestrate": 1800.0,
    "verify": 1800.0,
    "deploy": 900.0,
}

# How long the router waits for an output object after a worker terminates.
DEFAULT_OUTPUT_GRACE_SECONDS: Final[float] = 10.0
DEFAULT_OUTPUT_POLL_INTERVAL_SECONDS: Final[float] = 0.5

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
STATE_DB_FILENAME: Final[str] = "buildloop.sqlite3"
OBJECT_STORE_DIR: Final[PurePosixPath] = PurePosixPath("objects")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")
WORKER_DIR: Final[PurePosixPath] = PurePosixPath("workers")

# Worker identity and handoff keys.
WORKER_IDENTITY_PREFIX: Final[str] = "buildloop"
INPUT_OBJECT_NAME: Final[str] = "input.json"
OUTPUT_OBJECT_NAME: Final[str] = "output.json"
SPEC_OBJECT_DIR: Final[str] = "specs"

# Issue severities in descending urgency.
ISSUE_SEVERITIES: Final[tuple[str, ...]] = ("critical", "high", "medium", "low", "info")
MUST_FIX_SEVERITIES: Final[frozenset[str]] = frozenset({"critical", "high"})
PRIORITIZED_FIX_SEVERITIES: Final[frozenset[str]] = frozenset({"medium"})

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_MAX_CONCURRENT_BUILDS",
    "DEFAULT_MAX_CYCLES",
    "DEFAULT_MAX_ITERATIONS",
    "DEFAULT_OUTPUT_GRACE_SECONDS",
    "DEFAULT_OUTPUT_POLL_INTERVAL_SECONDS",
    "DEFAULT_PHASE_TIMEOUTS",
    "INPUT_OBJECT_NAME",
    "ISSUE_SEVERITIES",
    "LOG_DIR",
    "MUST_FIX_SEVERITIES",
    "OBJECT_STORE_DIR",
    "OUTPUT_OBJECT_NAME",
    "PRIORITIZED_FIX_SEVERITIES",
    "SPEC_OBJECT_DIR",
    "STATE_DB_FILENAME",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "WORKER_DIR",
    "WORKER_IDENTITY_PREFIX",
]
