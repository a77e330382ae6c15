"""
buildloop — runtime assembly.

File: src/buildloop/control_plane/runtime.py

Purpose
- Wire the status ledger, object store, executor, supervisor, signal router, and
  controller from one ``PipelineConfig``.
- Provide ``pump``: one non-blocking pass of reconcile -> drain -> timeout sweep,
  which is everything a host loop (or the CLI) needs to keep executions moving.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

import structlog

from buildloop.config.schema import PipelineConfig
from buildloop.constants import WORKER_DIR
from buildloop.control_plane.controller import PipelineController
from buildloop.control_plane.signals import CompletionSignalRouter
from buildloop.domain.models import BuildExecution
from buildloop.persistence.repositories import PhaseRunRepo, SignalReceiptRepo
from buildloop.persistence.state_db import StateDB
from buildloop.sandbox.capacity import CapacityGovernor, MetricsProvider
from buildloop.sandbox.executors import LocalProcessExecutor, TaskExecutor, TerminationChannel
from buildloop.sandbox.supervisor import WorkerSupervisor
from buildloop.storage.object_store import LocalObjectStore, ObjectStore

DEFAULT_PUMP_INTERVAL_SECONDS: Final[float] = 0.5


class WaitTimeoutError(TimeoutError):
    """Raised when ``wait_for`` gives up before the execution reaches a terminal status."""


@dataclass(slots=True)
class PipelineRuntime:
    config: PipelineConfig
    db: StateDB
    store: ObjectStore
    channel: TerminationChannel
    executor: TaskExecutor
    supervisor: WorkerSupervisor
    router: CompletionSignalRouter
    controller: PipelineController

    def pump(self) -> int:
        """Run one signal-processing pass; return the number of PhaseRuns resolved."""

        self.router.reconcile()
        resolved = self.router.run_pending()
        resolved += len(self.router.sweep_timeouts())
        return resolved

    def wait_for(
        self,
        execution_id: str,
        *,
        timeout_seconds: float | None = None,
        interval_seconds: float = DEFAULT_PUMP_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> BuildExecution:
        deadline = None if timeout_seconds is None else monotonic() + timeout_seconds
        while True:
            self.pump()
            execution = self.controller.get_execution(execution_id)
            if execution.is_terminal:
                return execution
            if deadline is not None and monotonic() >= deadline:
                raise WaitTimeoutError(
                    f"execution {execution_id} still {execution.status} "
                    f"after {timeout_seconds:g}s"
                )
            sleep(interval_seconds)

    def close(self) -> None:
        shutdown = getattr(self.executor, "shutdown", None)
        if callable(shutdown):
            shutdown()


def build_runtime(
    config: PipelineConfig,
    *,
    executor: TaskExecutor | None = None,
    channel: TerminationChannel | None = None,
    store: ObjectStore | None = None,
    metrics_provider: MetricsProvider | None = None,
    logger: Any | None = None,
) -> PipelineRuntime:
    """Assemble a runtime; ``executor``/``channel``/``store`` may be swapped for doubles."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    db = StateDB(config.state_db)
    db.ensure_migrated()
    object_store = store if store is not None else LocalObjectStore(config.object_store_root)
    termination_channel = channel if channel is not None else TerminationChannel()
    if executor is None:
        executor = LocalProcessExecutor(
            command=config.worker_command,
            work_root=config.state_db.parent / WORKER_DIR,
            channel=termination_channel,
            governor=CapacityGovernor(
                max_active_workers=config.max_active_workers,
                min_available_memory_mb=config.min_available_memory_mb,
                metrics_provider=metrics_provider,
            ),
            inherit_host_env=config.inherit_host_env,
        )

    runs = PhaseRunRepo(db)
    supervisor = WorkerSupervisor(
        executor=executor,
        runs=runs,
        config=config,
        store_root=(
            str(object_store.root) if isinstance(object_store, LocalObjectStore) else None
        ),
    )
    router = CompletionSignalRouter(
        channel=termination_channel,
        runs=runs,
        receipts=SignalReceiptRepo(db),
        store=object_store,
        config=config,
        executor=executor,
    )
    controller = PipelineController(
        config=config, db=db, store=object_store, supervisor=supervisor
    )
    router.subscribe(controller.on_phase_outcome)
    log.debug("runtime_assembled", state_db=str(db.path), executor=type(executor).__name__)
    return PipelineRuntime(
        config=config,
        db=db,
        store=object_store,
        channel=termination_channel,
        executor=executor,
        supervisor=supervisor,
        router=router,
        controller=controller,
    )


__all__ = [
    "DEFAULT_PUMP_INTERVAL_SECONDS",
    "PipelineRuntime",
    "WaitTimeoutError",
    "build_runtime",
]
