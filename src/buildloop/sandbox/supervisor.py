"""
buildloop — worker supervisor.

File: src/buildloop/sandbox/supervisor.py

Purpose
- Launch one isolated worker per phase invocation and record its PhaseRun.

Functional requirements
- The pending PhaseRun is written before the executor is asked to start the
  worker, so a termination signal can never arrive for an unknown run.
- Worker identities follow ``buildloop:{execution_id}:{phase}:{attempt}`` and are
  the key the signal router matches termination events against.
- A launch the executor refuses resolves the PhaseRun as infra_failed with a
  ``launch_failure`` detail and re-raises ``LaunchError`` to the caller.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from buildloop.config.schema import PipelineConfig
from buildloop.constants import WORKER_IDENTITY_PREFIX
from buildloop.domain import ids
from buildloop.domain.models import JSONValue, Phase, PhaseOutcome, PhaseRun, utc_now
from buildloop.observability.logging import correlation_scope
from buildloop.persistence.repositories import PhaseRunRepo
from buildloop.sandbox.executors import LaunchError, LaunchRequest, TaskExecutor
from buildloop.storage.object_store import phase_output_key


def worker_identity(execution_id: str, phase: Phase | str, attempt_number: int) -> str:
    if attempt_number < 1:
        raise ValueError("attempt_number must be >= 1")
    return f"{WORKER_IDENTITY_PREFIX}:{execution_id}:{Phase(phase).value}:{attempt_number}"


def parse_worker_identity(worker_ref: str) -> tuple[str, Phase, int]:
    """Split a worker identity into (execution_id, phase, attempt_number).

    Raises ``ValueError`` for anything not produced by ``worker_identity``.
    """

    parts = worker_ref.split(":") if isinstance(worker_ref, str) else []
    if len(parts) != 4 or parts[0] != WORKER_IDENTITY_PREFIX:
        raise ValueError(f"not a buildloop worker identity: {worker_ref!r}")
    _, execution_id, phase_raw, attempt_raw = parts
    ids.validate_execution_id(execution_id)
    phase = Phase(phase_raw)
    if not attempt_raw.isdigit() or int(attempt_raw) < 1:
        raise ValueError(f"invalid attempt number in worker identity: {worker_ref!r}")
    return execution_id, phase, int(attempt_raw)


class WorkerSupervisor:
    """Fire-and-forget launcher; never waits on the worker it starts."""

    def __init__(
        self,
        *,
        executor: TaskExecutor,
        runs: PhaseRunRepo,
        config: PipelineConfig,
        store_root: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._executor = executor
        self._runs = runs
        self._config = config
        self._store_root = store_root
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def executor(self) -> TaskExecutor:
        return self._executor

    def launch(
        self,
        phase: Phase,
        execution_id: str,
        attempt_number: int,
        input_ref: str,
        *,
        build_cycle: int = 1,
        detail: dict[str, JSONValue] | None = None,
    ) -> str:
        worker_ref = worker_identity(execution_id, phase, attempt_number)
        timeout_seconds = self._config.timeout_for(phase)
        started_at = self._clock()
        run = self._runs.add(
            PhaseRun(
                execution_id=execution_id,
                phase=phase,
                attempt_number=attempt_number,
                worker_ref=worker_ref,
                input_ref=input_ref,
                started_at=started_at,
                deadline_at=started_at + timedelta(seconds=timeout_seconds),
                build_cycle=build_cycle,
                detail=dict(detail or {}),
            )
        )
        request = LaunchRequest(
            worker_ref=worker_ref,
            execution_id=execution_id,
            phase=phase,
            attempt_number=attempt_number,
            input_key=input_ref,
            output_key=phase_output_key(execution_id, phase, attempt_number),
            timeout_seconds=timeout_seconds,
            store_root=self._store_root,
        )
        with correlation_scope(execution_id=execution_id, phase=phase, attempt=attempt_number):
            try:
                self._executor.launch(request)
            except LaunchError as exc:
                self._runs.resolve(
                    run,
                    outcome=PhaseOutcome.INFRA_FAILED,
                    completed_at=self._clock(),
                    detail={"reason": "launch_failure", "error": exc.reason},
                )
                self._logger.warning(
                    "worker_launch_failed", worker_ref=worker_ref, error=exc.reason
                )
                raise
            self._logger.info(
                "worker_launched",
                worker_ref=worker_ref,
                build_cycle=build_cycle,
                timeout_seconds=timeout_seconds,
            )
        return worker_ref


__all__ = ["WorkerSupervisor", "parse_worker_identity", "worker_identity"]
