"""
buildloop — pipeline controller.

File: src/buildloop/control_plane/controller.py

Purpose
- Drive each BuildExecution through Decompose -> Orchestrate -> Verify -> Deploy.
- Own the two bounded retry loops:
  - inner: Verify fail -> enrich spec -> iteration guard -> Decompose
  - outer: infra failure or launch failure -> cycle guard -> restart at Decompose

Functional requirements
- Every execution write is a single conditional update against the record's
  version; a lost race raises ``StaleTransitionError`` and the signal is dropped.
- ``qa_iteration <= max_iterations`` and ``build_cycle <= max_cycles`` hold at
  every observable point: a counter is stored only after the guard accepts it.
- Deploy is launched only once a Verify run for the execution has passed.
- Terminal failures always carry ``failure_reason`` and a ``diagnostic`` object.
- The controller is event-driven: it runs after ``start_build`` and after each
  resolved PhaseRun, and never waits on a worker.
- A store, database or content fault raised while applying an outcome never
  leaves the execution without a next step: it restarts the cycle or fails the build.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator, Mapping
from dataclasses import replace
from datetime import datetime
from typing import Any, Final

import structlog

from buildloop.config.schema import PipelineConfig
from buildloop.control_plane.feedback import FeedbackEnricher
from buildloop.control_plane.guard import GuardDecision, check_cycle, check_iteration
from buildloop.domain import ids
from buildloop.domain.events import PhaseEvent, PhaseEventType
from buildloop.domain.models import (
    BuildExecution,
    BuildSpec,
    DeployReport,
    ExecutionStatus,
    JSONValue,
    Phase,
    PhaseOutcome,
    PhaseRun,
    QAReport,
    ToolArtifact,
    _as_json_object,
    next_phase,
    utc_now,
)
from buildloop.observability.logging import correlation_scope
from buildloop.persistence.repositories import (
    BuildSpecRepo,
    ExecutionRepo,
    PhaseEventRepo,
    PhaseRunRepo,
    StaleTransitionError,
    ToolArtifactRepo,
)
from buildloop.persistence.state_db import StateDB, StateDBError
from buildloop.sandbox.executors import LaunchError
from buildloop.sandbox.supervisor import WorkerSupervisor
from buildloop.storage.object_store import (
    ObjectStore,
    ObjectStoreError,
    phase_input_key,
    spec_key,
)

VERIFICATION_EXHAUSTED: Final[str] = "verification exhausted retries"
INFRASTRUCTURE_EXHAUSTED: Final[str] = "infrastructure retries exhausted"
CANCELLED_REASON: Final[str] = "cancelled by request"
TRANSITION_FAULT: Final[str] = "phase outcome could not be applied"

_CANCEL_ATTEMPTS: Final[int] = 3

_Writer = Callable[[sqlite3.Connection], None]


class ConcurrencyLimitError(RuntimeError):
    """Raised when an org already has ``max_concurrent_builds`` active executions."""


class PipelineController:
    """Hierarchical bounded-retry state machine over the status ledger."""

    def __init__(
        self,
        *,
        config: PipelineConfig,
        db: StateDB,
        store: ObjectStore,
        supervisor: WorkerSupervisor,
        enricher: FeedbackEnricher | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._db = db
        self._store = store
        self._supervisor = supervisor
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._enricher = enricher or FeedbackEnricher(logger=self._logger)
        self._clock = clock
        self._executions = ExecutionRepo(db)
        self._runs = PhaseRunRepo(db)
        self._specs = BuildSpecRepo(db)
        self._artifacts = ToolArtifactRepo(db)
        self._events = PhaseEventRepo(db)

    @property
    def config(self) -> PipelineConfig:
        return self._config

    # ------------------------------------------------------------------ intake

    def start_build(self, build_spec: Mapping[str, object], org_id: str, user_id: str) -> str:
        """Create an execution for ``build_spec`` content and launch Decompose.

        Not idempotent: every call creates a new execution.
        """

        execution_id = ids.generate_execution_id()
        spec = BuildSpec(
            execution_id=execution_id,
            revision=1,
            content=_as_json_object(build_spec, "build_spec"),
        )
        now = self._clock()
        execution = BuildExecution(
            id=execution_id,
            org_id=org_id,
            user_id=user_id,
            current_build_spec_ref=spec_key(execution_id, 1),
            status=ExecutionStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        with self._db.transaction() as conn:
            active = self._executions.count_active(execution.org_id, conn=conn)
            if active >= self._config.max_concurrent_builds:
                raise ConcurrencyLimitError(
                    f"org {execution.org_id!r} already has {active} active builds "
                    f"(limit {self._config.max_concurrent_builds})"
                )
            self._store.put_json(execution.current_build_spec_ref, spec.to_dict(), overwrite=False)
            self._executions.add(execution, conn=conn)
            self._specs.add(execution_id, 1, execution.current_build_spec_ref, conn=conn)
            self._record(
                execution_id,
                PhaseEventType.EXECUTION_STARTED,
                payload={"org_id": execution.org_id, "user_id": execution.user_id},
                conn=conn,
            )

        with correlation_scope(execution_id=execution_id):
            self._logger.info("build_started", org_id=execution.org_id, active_builds=active + 1)
            try:
                self._launch(execution, Phase.DECOMPOSE)
            except (ObjectStoreError, StateDBError) as exc:
                self._settle_fault(execution_id, Phase.DECOMPOSE, 1, exc, infra=True)
        return execution_id

    # ------------------------------------------------------------------ queries

    def get_execution(self, execution_id: str) -> BuildExecution:
        return self._executions.require(execution_id)

    def stream_phase_events(self, execution_id: str) -> Iterator[PhaseEvent]:
        """Finite, from-the-beginning sequence of this execution's transitions."""

        self._executions.require(execution_id)
        return self._events.stream(execution_id)

    def list_executions(
        self, org_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[BuildExecution]:
        return self._executions.list_for_org(org_id, limit=limit, offset=offset)

    def list_phase_runs(self, execution_id: str) -> list[PhaseRun]:
        return self._runs.list_for_execution(execution_id)

    def list_artifacts(self, execution_id: str) -> list[ToolArtifact]:
        return self._artifacts.list_for_execution(execution_id)

    # ------------------------------------------------------------ cancellation

    def cancel(self, execution_id: str) -> BuildExecution:
        """Stop launching further phases; the in-flight worker runs to completion."""

        with correlation_scope(execution_id=execution_id):
            for _ in range(_CANCEL_ATTEMPTS):
                execution = self._executions.require(execution_id)
                if execution.is_terminal or execution.status is ExecutionStatus.CANCELLING:
                    self._logger.info("cancel_ignored", status=str(execution.status))
                    return execution
                try:
                    with self._db.transaction() as conn:
                        stored = self._executions.compare_and_set(
                            execution,
                            replace(execution, status=ExecutionStatus.CANCELLING),
                            conn=conn,
                        )
                        self._record(execution_id, PhaseEventType.CANCEL_REQUESTED, conn=conn)
                except StaleTransitionError:
                    continue
                self._logger.info("cancel_requested")
                if not self._runs.list_pending(execution_id):
                    return self._finish(
                        stored,
                        ExecutionStatus.CANCELLED,
                        reason=CANCELLED_REASON,
                        diagnostic={"in_flight": None},
                    )
                return stored
        raise StaleTransitionError(f"execution {execution_id} kept changing during cancel")

    # --------------------------------------------------------- signal callback

    def on_phase_outcome(self, run: PhaseRun) -> None:
        """Advance the state machine for one resolved PhaseRun."""

        phase = Phase(run.phase)
        with correlation_scope(
            execution_id=run.execution_id, phase=phase, attempt=run.attempt_number
        ):
            execution = self._executions.get(run.execution_id)
            if execution is None:
                self._logger.warning("outcome_for_unknown_execution")
                return
            if execution.is_terminal:
                self._logger.info("outcome_after_terminal", status=str(execution.status))
                return
            if not self._is_current(execution, run):
                self._logger.warning(
                    "stale_outcome_dropped",
                    current_phase=str(execution.current_phase),
                    build_cycle=execution.build_cycle,
                )
                return

            self._record(
                execution.id,
                PhaseEventType.PHASE_RESOLVED,
                phase=phase,
                attempt_number=run.attempt_number,
                payload={"outcome": str(run.outcome), "detail": run.detail},
            )
            try:
                self._transition(execution, run, phase)
            except StaleTransitionError as exc:
                self._logger.warning("stale_transition_dropped", error=str(exc))
            except (ObjectStoreError, StateDBError) as exc:
                self._settle_fault(execution.id, phase, run.attempt_number, exc, infra=True)
            except ValueError as exc:
                self._settle_fault(execution.id, phase, run.attempt_number, exc, infra=False)

    def _settle_fault(
        self,
        execution_id: str,
        phase: Phase,
        attempt_number: int,
        error: Exception,
        *,
        infra: bool,
    ) -> None:
        """Drive the execution to a next state after a transition raised part way.

        Store and database faults count against the build cycle; content that cannot
        be turned into domain records fails the build. Either way the execution is
        re-read first, since the failed transition may already have committed.
        """

        detail: dict[str, JSONValue] = {
            "reason": "transition_fault",
            "error": f"{type(error).__name__}: {error}",
        }
        self._logger.error("transition_fault", infra=infra, error=detail["error"])
        current = self._executions.get(execution_id)
        if current is None or current.is_terminal:
            return
        try:
            if current.status is ExecutionStatus.CANCELLING:
                self._finish(
                    current, ExecutionStatus.CANCELLED, reason=CANCELLED_REASON, diagnostic=detail
                )
                return
            if infra:
                try:
                    self._on_infra_failure(current, phase, attempt_number, detail)
                    return
                except StaleTransitionError:
                    raise
                except (ObjectStoreError, StateDBError, ValueError) as exc:
                    detail["retry_error"] = f"{type(exc).__name__}: {exc}"
                    self._logger.error("cycle_restart_failed", error=detail["retry_error"])
                    current = self._executions.get(execution_id)
                    if current is None or current.is_terminal:
                        return
            self._finish(
                current,
                ExecutionStatus.FAILED,
                reason=TRANSITION_FAULT,
                diagnostic={"phase": phase.value, "attempt_number": attempt_number, **detail},
            )
        except StaleTransitionError as exc:
            self._logger.warning("stale_transition_dropped", error=str(exc))

    def _transition(self, execution: BuildExecution, run: PhaseRun, phase: Phase) -> None:
        outcome = PhaseOutcome(run.outcome)
        if execution.status is ExecutionStatus.CANCELLING:
            self._finish(
                execution,
                ExecutionStatus.CANCELLED,
                reason=CANCELLED_REASON,
                diagnostic={"discarded_phase": phase.value, "discarded_outcome": outcome.value},
            )
            return

        if outcome is PhaseOutcome.INFRA_FAILED:
            self._on_infra_failure(execution, phase, run.attempt_number, run.detail)
        elif phase is Phase.VERIFY and outcome is PhaseOutcome.LOGICAL_FAILED:
            self._on_verification_failed(execution, run)
        elif phase is Phase.DEPLOY and outcome is PhaseOutcome.LOGICAL_FAILED:
            error = run.detail.get("error")
            self._finish(
                execution,
                ExecutionStatus.FAILED,
                reason=error if isinstance(error, str) else "deployment failed",
                diagnostic={"deploy_report_ref": run.output_ref, **run.detail},
            )
        elif phase is Phase.DEPLOY:
            self._on_deploy_succeeded(execution, run)
        elif outcome is PhaseOutcome.LOGICAL_FAILED:
            # Decompose/Orchestrate report no content feedback; retried as a new cycle.
            self._on_infra_failure(execution, phase, run.attempt_number, run.detail)
        elif outcome is PhaseOutcome.SUCCEEDED:
            following = next_phase(phase)
            if following is None:
                raise StaleTransitionError(f"no phase follows {phase.value}")
            if following is Phase.DEPLOY and not self._runs.has_passing_verify(execution.id):
                raise StaleTransitionError("deploy requested without a passing verification")
            self._launch(execution, following, upstream_output_ref=run.output_ref)
        else:
            self._on_infra_failure(
                execution,
                phase,
                run.attempt_number,
                {"reason": "unexpected_outcome", "error": f"{phase.value} -> {outcome.value}"},
            )

    def _is_current(self, execution: BuildExecution, run: PhaseRun) -> bool:
        if execution.current_phase != run.phase or execution.build_cycle != run.build_cycle:
            return False
        latest = self._runs.next_attempt_number(execution.id, Phase(run.phase)) - 1
        return run.attempt_number == latest

    # ------------------------------------------------------------ transitions

    def _launch(
        self,
        expected: BuildExecution,
        phase: Phase,
        *,
        upstream_output_ref: str | None = None,
        changes: Mapping[str, Any] | None = None,
        before_commit: _Writer | None = None,
    ) -> None:
        target = replace(
            expected, status=ExecutionStatus.RUNNING, current_phase=phase, **dict(changes or {})
        )
        attempt = self._runs.next_attempt_number(target.id, phase)
        input_ref = phase_input_key(target.id, phase, attempt)
        self._store.put_json(
            input_ref,
            {
                "execution_id": target.id,
                "phase": phase.value,
                "attempt_number": attempt,
                "build_cycle": target.build_cycle,
                "qa_iteration": target.qa_iteration,
                "spec_ref": target.current_build_spec_ref,
                "spec_revision": target.spec_revision,
                "upstream_output_ref": upstream_output_ref,
            },
        )
        with self._db.transaction() as conn:
            if before_commit is not None:
                before_commit(conn)
            stored = self._executions.compare_and_set(expected, target, conn=conn)

        try:
            worker_ref = self._supervisor.launch(
                phase,
                target.id,
                attempt,
                input_ref,
                build_cycle=target.build_cycle,
                detail={"spec_revision": target.spec_revision},
            )
        except LaunchError as exc:
            detail: dict[str, JSONValue] = {"reason": "launch_failure", "error": exc.reason}
            self._record(
                target.id,
                PhaseEventType.LAUNCH_FAILED,
                phase=phase,
                attempt_number=attempt,
                payload=detail,
            )
            self._on_infra_failure(stored, phase, attempt, detail)
            return

        self._record(
            target.id,
            PhaseEventType.PHASE_LAUNCHED,
            phase=phase,
            attempt_number=attempt,
            payload={
                "worker_ref": worker_ref,
                "input_ref": input_ref,
                "build_cycle": target.build_cycle,
                "qa_iteration": target.qa_iteration,
                "spec_revision": target.spec_revision,
            },
        )

    def _on_infra_failure(
        self,
        execution: BuildExecution,
        phase: Phase,
        attempt_number: int,
        detail: Mapping[str, JSONValue],
    ) -> None:
        candidate = execution.build_cycle + 1
        failure: dict[str, JSONValue] = {
            "phase": phase.value,
            "attempt_number": attempt_number,
            "build_cycle": execution.build_cycle,
            "reason": detail.get("reason"),
            "error": detail.get("error"),
        }
        if check_cycle(candidate, self._config.max_cycles) is GuardDecision.EXHAUSTED:
            self._finish(
                execution,
                ExecutionStatus.FAILED,
                reason=INFRASTRUCTURE_EXHAUSTED,
                diagnostic={"last_infra_failure": failure, "max_cycles": self._config.max_cycles},
            )
            return

        self._logger.warning("build_cycle_restarting", next_cycle=candidate, **failure)
        self._record(
            execution.id,
            PhaseEventType.CYCLE_RESTARTED,
            phase=Phase.DECOMPOSE,
            payload={"build_cycle": candidate, "cause": failure},
        )
        # Infra failures carry no content feedback: same spec revision, fresh pipeline.
        self._launch(execution, Phase.DECOMPOSE, changes={"build_cycle": candidate})

    def _on_verification_failed(self, execution: BuildExecution, run: PhaseRun) -> None:
        qa_report_ref = run.output_ref
        if qa_report_ref is None:
            raise StaleTransitionError("failed verification without a QA report")
        report = QAReport.from_worker_output(
            self._store.get_json(qa_report_ref),
            execution_id=execution.id,
            revision=execution.spec_revision,
        )
        current = BuildSpec.from_dict(self._store.get_json(execution.current_build_spec_ref))
        enriched = self._enricher.enrich(
            current, report, iteration=execution.qa_iteration, qa_report_ref=qa_report_ref
        )
        enriched_ref = spec_key(execution.id, enriched.revision)
        if not self._store.exists(enriched_ref):
            self._store.put_json(enriched_ref, enriched.to_dict(), overwrite=False)

        def write_spec(conn: sqlite3.Connection) -> None:
            self._specs.add(
                execution.id,
                enriched.revision,
                enriched_ref,
                previous_qa_report_ref=qa_report_ref,
                conn=conn,
            )
            self._record(
                execution.id,
                PhaseEventType.SPEC_REVISED,
                phase=Phase.VERIFY,
                attempt_number=run.attempt_number,
                payload={
                    "revision": enriched.revision,
                    "spec_ref": enriched_ref,
                    "qa_report_ref": qa_report_ref,
                    "issue_count": len(report.issues),
                },
                conn=conn,
            )

        spec_changes: dict[str, Any] = {
            "current_build_spec_ref": enriched_ref,
            "spec_revision": enriched.revision,
            "last_qa_report_ref": qa_report_ref,
        }
        candidate = execution.qa_iteration + 1
        if check_iteration(candidate, self._config.max_iterations) is GuardDecision.EXHAUSTED:
            self._finish(
                execution,
                ExecutionStatus.FAILED,
                reason=VERIFICATION_EXHAUSTED,
                diagnostic={
                    "qa_report_ref": qa_report_ref,
                    "qa_report": report.summary(),
                    "qa_iteration": execution.qa_iteration,
                    "max_iterations": self._config.max_iterations,
                },
                changes=spec_changes,
                before_commit=write_spec,
            )
            return

        self._logger.info(
            "verification_retry",
            next_iteration=candidate,
            spec_revision=enriched.revision,
            must_fix_count=len(report.must_fix),
        )
        self._launch(
            execution,
            Phase.DECOMPOSE,
            changes={**spec_changes, "qa_iteration": candidate},
            before_commit=write_spec,
        )

    def _on_deploy_succeeded(self, execution: BuildExecution, run: PhaseRun) -> None:
        if run.output_ref is None:
            raise StaleTransitionError("succeeded deploy without an output object")
        report = DeployReport.from_worker_output(self._store.get_json(run.output_ref))
        deployed_at = run.completed_at or self._clock()
        artifacts = [
            ToolArtifact(
                id=ids.generate_artifact_id(),
                execution_id=execution.id,
                unit_name=unit.name,
                artifact_ref=unit.artifact_ref or "",
                deployed_at=deployed_at,
                verified_outcomes=unit.verified_outcomes,
            )
            for unit in report.succeeded_units
        ]

        def write_artifacts(conn: sqlite3.Connection) -> None:
            for artifact in artifacts:
                self._artifacts.add(artifact, conn=conn)

        failed_units = [unit.name for unit in report.units if not unit.succeeded]
        status = (
            ExecutionStatus.COMPLETED if report.all_succeeded else ExecutionStatus.PARTIAL_SUCCESS
        )
        self._finish(
            execution,
            status,
            reason=None if report.all_succeeded else report.failure_reason(),
            diagnostic={
                "deploy_report_ref": run.output_ref,
                "units_total": len(report.units),
                "units_succeeded": len(artifacts),
                "failed_units": failed_units,
            },
            before_commit=write_artifacts,
        )

    def _finish(
        self,
        expected: BuildExecution,
        status: ExecutionStatus,
        *,
        reason: str | None,
        diagnostic: Mapping[str, JSONValue],
        changes: Mapping[str, Any] | None = None,
        before_commit: _Writer | None = None,
    ) -> BuildExecution:
        target = replace(
            expected,
            status=status,
            failure_reason=reason,
            diagnostic=dict(diagnostic),
            **dict(changes or {}),
        )
        with self._db.transaction() as conn:
            if before_commit is not None:
                before_commit(conn)
            stored = self._executions.compare_and_set(expected, target, conn=conn)
            self._record(
                stored.id,
                PhaseEventType.EXECUTION_FINISHED,
                payload={"status": status.value, "reason": reason},
                conn=conn,
            )
        log = self._logger.info if status is ExecutionStatus.COMPLETED else self._logger.warning
        log(
            "build_finished",
            status=status.value,
            reason=reason,
            qa_iteration=stored.qa_iteration,
            build_cycle=stored.build_cycle,
        )
        return stored

    def _record(
        self,
        execution_id: str,
        event_type: PhaseEventType,
        *,
        phase: Phase | None = None,
        attempt_number: int | None = None,
        payload: Mapping[str, JSONValue] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        self._events.append(
            PhaseEvent(
                event_id=ids.generate_event_id(),
                execution_id=execution_id,
                event_type=event_type,
                timestamp=self._clock(),
                phase=phase,
                attempt_number=attempt_number,
                payload=dict(payload or {}),
            ),
            conn=conn,
        )


__all__ = [
    "CANCELLED_REASON",
    "INFRASTRUCTURE_EXHAUSTED",
    "TRANSITION_FAULT",
    "VERIFICATION_EXHAUSTED",
    "ConcurrencyLimitError",
    "PipelineController",
]
