"""Worker sandbox plane: executors, capacity checks, and the launch supervisor."""

from buildloop.sandbox.capacity import CapacityGovernor, PsutilMetricsProvider
from buildloop.sandbox.executors import (
    LaunchError,
    LaunchRequest,
    LocalProcessExecutor,
    TaskExecutor,
    TerminationChannel,
    TerminationEvent,
    WorkerState,
    WorkerStatus,
)
from buildloop.sandbox.supervisor import WorkerSupervisor, parse_worker_identity, worker_identity

__all__ = [
    "CapacityGovernor",
    "LaunchError",
    "LaunchRequest",
    "LocalProcessExecutor",
    "PsutilMetricsProvider",
    "TaskExecutor",
    "TerminationChannel",
    "TerminationEvent",
    "WorkerState",
    "WorkerStatus",
    "WorkerSupervisor",
    "parse_worker_identity",
    "worker_identity",
]
