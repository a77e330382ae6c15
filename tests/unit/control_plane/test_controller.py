"""Unit tests for controller guards that the end-to-end scenarios do not reach."""

from __future__ import annotations

from dataclasses import replace

import pytest
from conftest import WorkerScript

from buildloop.control_plane.controller import PipelineController
from buildloop.domain import ids
from buildloop.domain.models import ExecutionStatus, Phase, PhaseOutcome, utc_now
from buildloop.persistence.repositories import ExecutionNotFoundError, PhaseRunRepo
from buildloop.storage.object_store import spec_key

SPEC = {"tool": "json-diff"}


@pytest.fixture
def controller(runtime, recording_logger) -> PipelineController:
    built = PipelineController(
        config=runtime.config,
        db=runtime.db,
        store=runtime.store,
        supervisor=runtime.supervisor,
        logger=recording_logger,
    )
    runtime.router.subscribe(built.on_phase_outcome)
    return built


def _pending_run(controller: PipelineController, execution_id: str, phase: Phase):
    return next(
        run
        for run in controller.list_phase_runs(execution_id)
        if run.phase is phase and run.outcome is PhaseOutcome.PENDING
    )


def test_start_build_stores_revision_one(controller, runtime, recording_logger) -> None:
    execution_id = controller.start_build(SPEC, "org-1", "user-1")

    execution = controller.get_execution(execution_id)
    assert execution.status is ExecutionStatus.RUNNING
    assert execution.current_phase is Phase.DECOMPOSE
    assert execution.current_build_spec_ref == spec_key(execution_id, 1)
    assert runtime.store.get_json(spec_key(execution_id, 1))["content"] == SPEC
    assert "build_started" in recording_logger.names()


def test_start_build_rejects_non_json_content(controller) -> None:
    with pytest.raises(ValueError, match="build_spec"):
        controller.start_build({"when": object()}, "org-1", "user-1")
    assert controller.list_executions("org-1") == []


def test_unknown_execution_raises(controller) -> None:
    missing = ids.generate_execution_id()
    with pytest.raises(ExecutionNotFoundError):
        controller.get_execution(missing)
    with pytest.raises(ExecutionNotFoundError):
        list(controller.stream_phase_events(missing))


def test_outcome_from_an_old_cycle_is_dropped(
    controller, scripted_executor, recording_logger
) -> None:
    scripted_executor.script(Phase.DECOMPOSE, WorkerScript(hold=True))
    execution_id = controller.start_build(SPEC, "org-1", "user-1")
    run = _pending_run(controller, execution_id, Phase.DECOMPOSE)

    controller.on_phase_outcome(
        replace(run, build_cycle=2, outcome=PhaseOutcome.SUCCEEDED, completed_at=utc_now())
    )

    assert "stale_outcome_dropped" in recording_logger.names()
    assert scripted_executor.launches_for(Phase.ORCHESTRATE) == []
    assert controller.get_execution(execution_id).current_phase is Phase.DECOMPOSE


def test_deploy_requires_a_recorded_passing_verification(
    controller, runtime, scripted_executor, recording_logger
) -> None:
    scripted_executor.script(Phase.VERIFY, WorkerScript(hold=True))
    execution_id = controller.start_build(SPEC, "org-1", "user-1")
    runtime.pump()
    runtime.pump()
    verify_run = _pending_run(controller, execution_id, Phase.VERIFY)

    # The run row is still pending, so the ledger holds no passing Verify.
    controller.on_phase_outcome(
        replace(verify_run, outcome=PhaseOutcome.SUCCEEDED, completed_at=utc_now())
    )

    assert "stale_transition_dropped" in recording_logger.names()
    assert scripted_executor.launches_for(Phase.DEPLOY) == []


def test_outcome_after_terminal_status_is_ignored(
    controller, runtime, recording_logger
) -> None:
    execution_id = controller.start_build(SPEC, "org-1", "user-1")
    finished = runtime.wait_for(execution_id, timeout_seconds=10, sleep=lambda _: None)
    deploy_run = controller.list_phase_runs(execution_id)[-1]

    controller.on_phase_outcome(deploy_run)

    assert "outcome_after_terminal" in recording_logger.names()
    assert controller.get_execution(execution_id).version == finished.version


def test_cancel_without_pending_runs_finishes_immediately(
    controller, runtime, scripted_executor
) -> None:
    scripted_executor.script(Phase.DECOMPOSE, WorkerScript(hold=True))
    execution_id = controller.start_build(SPEC, "org-1", "user-1")
    run = _pending_run(controller, execution_id, Phase.DECOMPOSE)
    # Resolved without a delivered signal, so nothing is left in flight.
    PhaseRunRepo(runtime.db).resolve(run, outcome=PhaseOutcome.INFRA_FAILED)

    cancelled = controller.cancel(execution_id)

    assert cancelled.status is ExecutionStatus.CANCELLED
    assert cancelled.diagnostic == {"in_flight": None}
