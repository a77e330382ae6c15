"""Unit tests for termination-signal classification and exactly-once resolution."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from buildloop.control_plane.signals import CompletionSignalRouter, classify_output
from buildloop.domain import ids
from buildloop.domain.models import (
    BuildExecution,
    ExecutionStatus,
    Phase,
    PhaseOutcome,
    PhaseRun,
    utc_now,
)
from buildloop.persistence.repositories import ExecutionRepo, PhaseRunRepo, SignalReceiptRepo
from buildloop.persistence.state_db import StateDB
from buildloop.sandbox.executors import TerminationChannel, TerminationEvent
from buildloop.sandbox.supervisor import worker_identity
from buildloop.storage.object_store import phase_input_key, phase_output_key

EXECUTION_ID = ids.generate_execution_id()


def _run(phase: Phase = Phase.DECOMPOSE, attempt: int = 1, **detail: object) -> PhaseRun:
    started = utc_now()
    return PhaseRun(
        execution_id=EXECUTION_ID,
        phase=phase,
        attempt_number=attempt,
        worker_ref=worker_identity(EXECUTION_ID, phase, attempt),
        input_ref=phase_input_key(EXECUTION_ID, phase, attempt),
        started_at=started,
        deadline_at=started + timedelta(minutes=5),
        detail=dict(detail),
    )


class _Harness:
    def __init__(self, tmp_path, config, store, *, sleep=None, monotonic=None) -> None:
        self.db = StateDB(tmp_path / "signals.sqlite3")
        now = utc_now()
        ExecutionRepo(self.db).add(
            BuildExecution(
                id=EXECUTION_ID,
                org_id="org-1",
                user_id="user-1",
                current_build_spec_ref=f"{EXECUTION_ID}/specs/1.json",
                status=ExecutionStatus.RUNNING,
                created_at=now,
                updated_at=now,
            )
        )
        self.runs = PhaseRunRepo(self.db)
        self.receipts = SignalReceiptRepo(self.db)
        self.channel = TerminationChannel()
        self.store = store
        self.handled: list[PhaseRun] = []
        kwargs = {}
        if sleep is not None:
            kwargs["sleep"] = sleep
        if monotonic is not None:
            kwargs["monotonic"] = monotonic
        self.router = CompletionSignalRouter(
            channel=self.channel,
            runs=self.runs,
            receipts=self.receipts,
            store=store,
            config=config,
            handler=self.handled.append,
            **kwargs,
        )


@pytest.fixture
def harness(tmp_path, pipeline_config, memory_store) -> _Harness:
    return _Harness(tmp_path, pipeline_config, memory_store)


def test_classify_verify_pass_and_fail() -> None:
    run = _run(Phase.VERIFY, spec_revision=2)

    passed = classify_output(Phase.VERIFY, {"status": "pass"}, run=run)
    failed = classify_output(
        Phase.VERIFY,
        {"status": "fail", "issues": [{"message": "broken", "severity": "high"}]},
        run=run,
    )

    assert passed.outcome is PhaseOutcome.SUCCEEDED
    assert failed.outcome is PhaseOutcome.LOGICAL_FAILED
    assert failed.detail == {"qa_status": "fail", "issue_count": 1}
    assert failed.output_ref == phase_output_key(EXECUTION_ID, Phase.VERIFY, 1)


def test_classify_worker_reported_failure_is_logical() -> None:
    result = classify_output(
        Phase.ORCHESTRATE, {"status": "failed", "error": "toolchain missing"}, run=_run()
    )
    assert result.outcome is PhaseOutcome.LOGICAL_FAILED
    assert result.detail == {"reason": "worker_reported_failure", "error": "toolchain missing"}


@pytest.mark.parametrize(
    ("phase", "payload"),
    [
        (Phase.DECOMPOSE, {"status": "done"}),
        (Phase.VERIFY, {"status": "maybe"}),
        (Phase.DEPLOY, {"status": "success"}),
        (Phase.DEPLOY, {"status": "success", "units": [{"name": "a", "status": "success"}]}),
    ],
)
def test_classify_rejects_malformed_payloads(phase: Phase, payload: dict) -> None:
    with pytest.raises(ValueError):
        classify_output(phase, payload, run=_run(phase))


def test_foreign_worker_refs_are_ignored(harness: _Harness) -> None:
    assert harness.router.handle(TerminationEvent(worker_ref="nightly-backup", exit_code=0)) is None
    assert harness.handled == []


def test_unknown_run_counts_the_delivery_but_resolves_nothing(harness: _Harness) -> None:
    event = TerminationEvent(worker_ref=worker_identity(EXECUTION_ID, Phase.VERIFY, 9), exit_code=0)

    assert harness.router.handle(event) is None
    assert harness.receipts.delivery_count(EXECUTION_ID, Phase.VERIFY, 9) == 1


def test_duplicate_deliveries_invoke_the_handler_once(harness: _Harness) -> None:
    run = harness.runs.add(_run())
    harness.store.put_json(
        phase_output_key(EXECUTION_ID, Phase.DECOMPOSE, 1), {"status": "success"}
    )
    for _ in range(3):
        harness.channel.publish(TerminationEvent(worker_ref=run.worker_ref, exit_code=0))

    assert harness.router.run_pending() == 1
    assert [item.outcome for item in harness.handled] == [PhaseOutcome.SUCCEEDED]
    assert harness.receipts.delivery_count(EXECUTION_ID, Phase.DECOMPOSE, 1) == 3
    stored = harness.runs.get(EXECUTION_ID, Phase.DECOMPOSE, 1)
    assert stored is not None
    assert stored.detail["exit_code"] == 0


def test_abnormal_exit_skips_the_output(harness: _Harness) -> None:
    run = harness.runs.add(_run())
    harness.store.put_json(
        phase_output_key(EXECUTION_ID, Phase.DECOMPOSE, 1), {"status": "success"}
    )

    resolved = harness.router.handle(
        TerminationEvent(worker_ref=run.worker_ref, exit_code=None, stop_reason="terminated")
    )

    assert resolved is not None
    assert resolved.outcome is PhaseOutcome.INFRA_FAILED
    assert resolved.output_ref is None
    assert resolved.detail["reason"] == "abnormal_exit"
    assert "terminated" in resolved.detail["error"]


def test_output_is_polled_until_the_grace_period_ends(
    tmp_path, pipeline_config, memory_store
) -> None:
    clock = [0.0]
    sleeps: list[float] = []

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock[0] += 1.0
        if len(sleeps) == 2:
            memory_store.put_json(
                phase_output_key(EXECUTION_ID, Phase.DECOMPOSE, 1), {"status": "success"}
            )

    config = replace(pipeline_config, output_grace_seconds=5.0, output_poll_interval_seconds=0.5)
    harness = _Harness(
        tmp_path, config, memory_store, sleep=fake_sleep, monotonic=lambda: clock[0]
    )
    run = harness.runs.add(_run())

    resolved = harness.router.handle(TerminationEvent(worker_ref=run.worker_ref, exit_code=0))

    assert resolved is not None
    assert resolved.outcome is PhaseOutcome.SUCCEEDED
    assert sleeps == [0.5, 0.5]


def test_missing_output_after_grace_is_infra_failed(tmp_path, pipeline_config, memory_store):
    clock = [0.0]

    def fake_sleep(_: float) -> None:
        clock[0] += 1.0

    config = replace(pipeline_config, output_grace_seconds=2.0, output_poll_interval_seconds=1.0)
    harness = _Harness(
        tmp_path, config, memory_store, sleep=fake_sleep, monotonic=lambda: clock[0]
    )
    run = harness.runs.add(_run())

    resolved = harness.router.handle(TerminationEvent(worker_ref=run.worker_ref, exit_code=0))

    assert resolved is not None
    assert resolved.outcome is PhaseOutcome.INFRA_FAILED
    assert resolved.detail["reason"] == "output_missing"


def test_sweep_resolves_only_overdue_runs(harness: _Harness) -> None:
    harness.runs.add(_run(Phase.DECOMPOSE))
    harness.runs.add(_run(Phase.ORCHESTRATE))

    assert harness.router.sweep_timeouts(utc_now()) == []
    swept = harness.router.sweep_timeouts(utc_now() + timedelta(minutes=10))

    assert {run.phase for run in swept} == {Phase.DECOMPOSE, Phase.ORCHESTRATE}
    assert all(run.detail["reason"] == "timed_out" for run in swept)
    assert len(harness.handled) == 2
    assert harness.router.sweep_timeouts(utc_now() + timedelta(minutes=10)) == []
