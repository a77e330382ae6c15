"""
buildloop — completion signal router.

File: src/buildloop/control_plane/signals.py

Purpose
- Turn at-least-once worker termination notifications into exactly one typed
  PhaseRun outcome and exactly one controller invocation per phase attempt.

Functional requirements
- Events whose worker identity does not follow the supervisor's naming
  convention, or that name no known PhaseRun, are ignored.
- Every delivery is counted in ``signal_receipts``; only the caller whose
  conditional resolve wins goes on to invoke the controller.
- An abnormal exit resolves infra_failed without fetching output. Otherwise the
  output object is polled for within the configured grace period:
  - missing or malformed: infra_failed
  - Verify ``fail`` or Deploy with no successful unit: logical_failed
  - Decompose/Orchestrate ``status: failed``: logical_failed (retried as a cycle)
  - anything else well-formed: succeeded
- ``sweep_timeouts`` resolves overdue pending runs as infra_failed and asks the
  executor to stop the worker.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final

import structlog

from buildloop.config.schema import PipelineConfig
from buildloop.domain.models import (
    DeployReport,
    JSONValue,
    Phase,
    PhaseOutcome,
    PhaseRun,
    QAReport,
    QAStatus,
    utc_now,
)
from buildloop.observability.logging import correlation_scope
from buildloop.persistence.repositories import PhaseRunRepo, SignalReceiptRepo
from buildloop.sandbox.executors import (
    TaskExecutor,
    TerminationChannel,
    TerminationEvent,
    WorkerState,
)
from buildloop.sandbox.supervisor import parse_worker_identity
from buildloop.storage.object_store import (
    MalformedObjectError,
    ObjectNotFoundError,
    ObjectStore,
    phase_output_key,
)

OutcomeHandler = Callable[[PhaseRun], None]

_WORKER_STATUS_SUCCESS: Final[str] = "success"
_WORKER_STATUS_FAILED: Final[str] = "failed"


@dataclass(frozen=True, slots=True)
class Classification:
    outcome: PhaseOutcome
    output_ref: str | None
    detail: dict[str, JSONValue]


def classify_output(
    phase: Phase, payload: Mapping[str, object], *, run: PhaseRun
) -> Classification:
    """Map a well-formed-JSON worker output onto a phase outcome.

    Raises ``ValueError`` when the payload does not match the phase's output shape.
    """

    output_ref = phase_output_key(run.execution_id, phase, run.attempt_number)
    if phase is Phase.VERIFY:
        revision = run.detail.get("spec_revision", 1)
        report = QAReport.from_worker_output(
            payload,
            execution_id=run.execution_id,
            revision=revision if isinstance(revision, int) and revision >= 1 else 1,
        )
        outcome = PhaseOutcome.SUCCEEDED
        if report.status is QAStatus.FAIL:
            outcome = PhaseOutcome.LOGICAL_FAILED
        return Classification(
            outcome=outcome,
            output_ref=output_ref,
            detail={"qa_status": report.status.value, "issue_count": len(report.issues)},
        )

    if phase is Phase.DEPLOY:
        deploy = DeployReport.from_worker_output(payload)
        succeeded = len(deploy.succeeded_units)
        detail: dict[str, JSONValue] = {
            "units_total": len(deploy.units),
            "units_succeeded": succeeded,
        }
        if not deploy.any_succeeded:
            detail["reason"] = "no_unit_succeeded"
            detail["error"] = deploy.failure_reason()
            return Classification(PhaseOutcome.LOGICAL_FAILED, output_ref, detail)
        return Classification(PhaseOutcome.SUCCEEDED, output_ref, detail)

    status = payload.get("status")
    if status == _WORKER_STATUS_SUCCESS:
        return Classification(PhaseOutcome.SUCCEEDED, output_ref, {})
    if status == _WORKER_STATUS_FAILED:
        error = payload.get("error") or payload.get("reason") or "worker reported failure"
        return Classification(
            PhaseOutcome.LOGICAL_FAILED,
            output_ref,
            {"reason": "worker_reported_failure", "error": str(error)},
        )
    raise ValueError(
        f"{phase.value} output status must be 'success' or 'failed', got {status!r}"
    )


class CompletionSignalRouter:
    """Consume termination events and resolve each PhaseRun exactly once."""

    def __init__(
        self,
        *,
        channel: TerminationChannel,
        runs: PhaseRunRepo,
        receipts: SignalReceiptRepo,
        store: ObjectStore,
        config: PipelineConfig,
        executor: TaskExecutor | None = None,
        handler: OutcomeHandler | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._channel = channel
        self._runs = runs
        self._receipts = receipts
        self._store = store
        self._config = config
        self._executor = executor
        self._handler = handler
        self._sleep = sleep
        self._monotonic = monotonic
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def channel(self) -> TerminationChannel:
        return self._channel

    def subscribe(self, handler: OutcomeHandler) -> None:
        self._handler = handler

    def run_pending(self) -> int:
        """Drain the channel once; return how many PhaseRuns were resolved."""

        resolved = 0
        for event in self._channel.drain():
            if self.handle(event) is not None:
                resolved += 1
        return resolved

    def reconcile(self) -> int:
        """Publish termination events for pending runs whose worker already exited.

        Covers workers whose watcher lived in another process; duplicates are
        harmless because resolution is conditional.
        """

        if self._executor is None:
            return 0
        published = 0
        for run in self._runs.list_pending():
            status = self._executor.describe(run.worker_ref)
            if status.state is not WorkerState.EXITED:
                continue
            self._channel.publish(
                TerminationEvent(worker_ref=run.worker_ref, exit_code=status.exit_code)
            )
            published += 1
        return published

    def handle(self, event: TerminationEvent) -> PhaseRun | None:
        """Process one delivery. Returns the resolved run only for the winning delivery."""

        try:
            execution_id, phase, attempt_number = parse_worker_identity(event.worker_ref)
        except ValueError:
            self._logger.debug("signal_ignored", worker_ref=event.worker_ref, reason="foreign")
            return None

        with correlation_scope(execution_id=execution_id, phase=phase, attempt=attempt_number):
            deliveries = self._receipts.record(execution_id, phase, attempt_number)
            run = self._runs.get(execution_id, phase, attempt_number)
            if run is None:
                self._logger.warning(
                    "signal_ignored", worker_ref=event.worker_ref, reason="unknown"
                )
                return None
            if run.is_resolved:
                self._logger.info(
                    "duplicate_signal_dropped", deliveries=deliveries, outcome=str(run.outcome)
                )
                return None

            classification = self._classify(run, event)
            resolved = self._runs.resolve(
                run,
                outcome=classification.outcome,
                completed_at=self._clock(),
                output_ref=classification.output_ref,
                detail={**classification.detail, "exit_code": event.exit_code},
            )
            if resolved is None:
                self._logger.info("duplicate_signal_dropped", deliveries=deliveries)
                return None
            self._logger.info(
                "phase_run_resolved",
                outcome=classification.outcome.value,
                deliveries=deliveries,
                reason=classification.detail.get("reason"),
            )
            self._dispatch(resolved)
            return resolved

    def sweep_timeouts(self, now: datetime | None = None) -> list[PhaseRun]:
        """Resolve every overdue pending run as infra_failed."""

        cutoff = now or self._clock()
        swept: list[PhaseRun] = []
        for run in self._runs.list_overdue(cutoff):
            budget = (run.deadline_at - run.started_at).total_seconds()
            with correlation_scope(
                execution_id=run.execution_id, phase=run.phase, attempt=run.attempt_number
            ):
                resolved = self._runs.resolve(
                    run,
                    outcome=PhaseOutcome.INFRA_FAILED,
                    completed_at=cutoff,
                    detail={"reason": "timed_out", "error": f"timed out after {budget:g}s"},
                )
                if resolved is None:
                    continue
                self._logger.warning("phase_run_timed_out", budget_seconds=budget)
                if self._executor is not None:
                    self._executor.terminate(run.worker_ref)
                self._dispatch(resolved)
                swept.append(resolved)
        return swept

    def _dispatch(self, run: PhaseRun) -> None:
        if self._handler is None:
            self._logger.warning("no_outcome_handler", worker_ref=run.worker_ref)
            return
        self._handler(run)

    def _classify(self, run: PhaseRun, event: TerminationEvent) -> Classification:
        phase = Phase(run.phase)
        if event.abnormal:
            code = "none" if event.exit_code is None else str(event.exit_code)
            return Classification(
                PhaseOutcome.INFRA_FAILED,
                None,
                {"reason": "abnormal_exit", "error": f"exit code {code} ({event.stop_reason})"},
            )

        output_key = phase_output_key(run.execution_id, phase, run.attempt_number)
        try:
            payload = self._await_output(output_key)
        except MalformedObjectError as exc:
            return Classification(
                PhaseOutcome.INFRA_FAILED,
                output_key,
                {"reason": "output_malformed", "error": str(exc)},
            )
        if payload is None:
            return Classification(
                PhaseOutcome.INFRA_FAILED,
                None,
                {
                    "reason": "output_missing",
                    "error": f"output missing after {self._config.output_grace_seconds:g}s",
                },
            )
        try:
            return classify_output(phase, payload, run=run)
        except ValueError as exc:
            return Classification(
                PhaseOutcome.INFRA_FAILED,
                output_key,
                {"reason": "output_malformed", "error": str(exc)},
            )

    def _await_output(self, key: str) -> Mapping[str, object] | None:
        deadline = self._monotonic() + self._config.output_grace_seconds
        while True:
            try:
                return self._store.get_json(key)
            except ObjectNotFoundError:
                pass
            if self._monotonic() >= deadline:
                return None
            self._sleep(self._config.output_poll_interval_seconds)


__all__ = [
    "Classification",
    "CompletionSignalRouter",
    "OutcomeHandler",
    "classify_output",
]
