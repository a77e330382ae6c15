"""Repository behavior tests: conditional writes, append-only history, and paging."""

from __future__ import annotations

import sqlite3
from dataclasses import replace
from typing import TYPE_CHECKING

import pytest

from buildloop.domain.events import PhaseEventType
from buildloop.domain.models import ExecutionStatus, Phase, PhaseOutcome
from buildloop.persistence.repositories import (
    BuildSpecRepo,
    ExecutionNotFoundError,
    ExecutionRepo,
    PhaseEventRepo,
    PhaseRunRepo,
    SignalReceiptRepo,
    StaleTransitionError,
    ToolArtifactRepo,
)
from buildloop.persistence.state_db import StateDB

from . import make_artifact, make_event, make_execution, make_phase_run, ts

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def db(tmp_path: Path) -> StateDB:
    state = StateDB(tmp_path / "state" / "buildloop.sqlite3")
    state.migrate()
    return state


def test_compare_and_set_bumps_version_and_rejects_stale_writers(db: StateDB) -> None:
    repo = ExecutionRepo(db)
    original = repo.add(make_execution(1))

    first = repo.compare_and_set(original, replace(original, current_phase=Phase.ORCHESTRATE))
    assert first.version == original.version + 1

    with pytest.raises(StaleTransitionError):
        repo.compare_and_set(original, replace(original, current_phase=Phase.VERIFY))

    stored = repo.require(original.id)
    assert stored.current_phase is Phase.ORCHESTRATE
    assert stored.version == first.version


def test_terminal_execution_rejects_further_updates(db: StateDB) -> None:
    repo = ExecutionRepo(db)
    running = repo.add(make_execution(2))
    failed = repo.compare_and_set(
        running,
        replace(running, status=ExecutionStatus.FAILED, failure_reason="boom"),
    )

    with pytest.raises(StaleTransitionError):
        repo.compare_and_set(failed, replace(failed, status=ExecutionStatus.RUNNING))
    assert repo.require(running.id).status is ExecutionStatus.FAILED


def test_require_raises_for_unknown_execution(db: StateDB) -> None:
    with pytest.raises(ExecutionNotFoundError):
        ExecutionRepo(db).require(make_execution(99).id)


def test_list_for_org_pages_newest_first_and_counts_active(db: StateDB) -> None:
    repo = ExecutionRepo(db)
    for seed in range(5):
        repo.add(make_execution(seed, created_offset=seed))
    repo.add(make_execution(10, org_id="org-2"))
    repo.add(make_execution(11, status=ExecutionStatus.COMPLETED, created_offset=20))

    page_one = repo.list_for_org("org-1", limit=3)
    page_two = repo.list_for_org("org-1", limit=3, offset=3)

    assert [item.created_at for item in page_one] == [ts(20), ts(4), ts(3)]
    assert [item.created_at for item in page_two] == [ts(2), ts(1), ts(0)]
    assert repo.count_active("org-1") == 5
    assert repo.count_active("org-2") == 1

    with pytest.raises(ValueError, match="limit"):
        repo.list_for_org("org-1", limit=0)


def test_phase_run_resolves_exactly_once(db: StateDB) -> None:
    execution = ExecutionRepo(db).add(make_execution(3))
    runs = PhaseRunRepo(db)
    run = runs.add(make_phase_run(execution.id))

    winner = runs.resolve(run, outcome=PhaseOutcome.SUCCEEDED, output_ref="out.json")
    loser = runs.resolve(run, outcome=PhaseOutcome.INFRA_FAILED)

    assert winner is not None
    assert winner.outcome is PhaseOutcome.SUCCEEDED
    assert loser is None
    stored = runs.get(execution.id, Phase.DECOMPOSE, 1)
    assert stored is not None
    assert stored.outcome is PhaseOutcome.SUCCEEDED
    assert stored.detail == {"spec_revision": 1}
    assert runs.list_pending() == []


def test_phase_run_attempts_increase_and_history_is_append_only(db: StateDB) -> None:
    execution = ExecutionRepo(db).add(make_execution(4))
    runs = PhaseRunRepo(db)
    runs.add(make_phase_run(execution.id, attempt=1))
    assert runs.next_attempt_number(execution.id, Phase.DECOMPOSE) == 2
    assert runs.next_attempt_number(execution.id, Phase.VERIFY) == 1

    with pytest.raises(ValueError, match="attempt_number must exceed"):
        runs.add(make_phase_run(execution.id, attempt=1))
    with pytest.raises(sqlite3.IntegrityError, match="append-only"):
        db.execute("DELETE FROM phase_runs WHERE execution_id = ?", (execution.id,))


def test_overdue_and_passing_verify_queries(db: StateDB) -> None:
    execution = ExecutionRepo(db).add(make_execution(5))
    runs = PhaseRunRepo(db)
    short = runs.add(make_phase_run(execution.id, Phase.DECOMPOSE, budget_seconds=10))
    runs.add(make_phase_run(execution.id, Phase.ORCHESTRATE, budget_seconds=100))

    assert [run.phase for run in runs.list_overdue(ts(50))] == [short.phase]
    assert not runs.has_passing_verify(execution.id)

    verify = runs.add(make_phase_run(execution.id, Phase.VERIFY))
    runs.resolve(verify, outcome=PhaseOutcome.LOGICAL_FAILED)
    assert not runs.has_passing_verify(execution.id)
    second = runs.add(make_phase_run(execution.id, Phase.VERIFY, attempt=2))
    runs.resolve(second, outcome=PhaseOutcome.SUCCEEDED)
    assert runs.has_passing_verify(execution.id)


def test_build_spec_index_is_append_only(db: StateDB) -> None:
    execution = ExecutionRepo(db).add(make_execution(6))
    specs = BuildSpecRepo(db)
    specs.add(execution.id, 1, "e/specs/1.json")
    specs.add(execution.id, 2, "e/specs/2.json", previous_qa_report_ref="e/verify/1/output.json")

    latest = specs.latest(execution.id)
    assert latest is not None
    assert latest.revision == 2
    assert latest.previous_qa_report_ref == "e/verify/1/output.json"

    with pytest.raises(sqlite3.IntegrityError):
        specs.add(execution.id, 2, "e/specs/2b.json")
    with pytest.raises(sqlite3.IntegrityError, match="append-only"):
        db.execute("UPDATE build_specs SET spec_ref = 'x' WHERE execution_id = ?", (execution.id,))


def test_artifacts_are_unique_per_unit(db: StateDB) -> None:
    execution = ExecutionRepo(db).add(make_execution(7))
    artifacts = ToolArtifactRepo(db)
    artifacts.add(make_artifact(execution.id, "lib", 1))
    artifacts.add(make_artifact(execution.id, "cli", 2))

    assert [item.unit_name for item in artifacts.list_for_execution(execution.id)] == [
        "cli",
        "lib",
    ]
    with pytest.raises(sqlite3.IntegrityError):
        artifacts.add(make_artifact(execution.id, "cli", 3))


def test_signal_receipts_count_every_delivery(db: StateDB) -> None:
    receipts = SignalReceiptRepo(db)
    execution_id = make_execution(8).id

    counts = [receipts.record(execution_id, Phase.VERIFY, 2) for _ in range(3)]

    assert counts == [1, 2, 3]
    assert receipts.delivery_count(execution_id, Phase.VERIFY, 2) == 3
    assert receipts.delivery_count(execution_id, Phase.VERIFY, 1) == 0


def test_event_stream_is_ordered_and_snapshotted(db: StateDB) -> None:
    execution = ExecutionRepo(db).add(make_execution(9))
    events = PhaseEventRepo(db)
    for seed, event_type in enumerate(
        (PhaseEventType.EXECUTION_STARTED, PhaseEventType.PHASE_LAUNCHED), start=1
    ):
        events.append(make_event(execution.id, event_type, seed))

    stream = events.stream(execution.id)
    first = next(stream)
    events.append(make_event(execution.id, PhaseEventType.PHASE_RESOLVED, 3))
    rest = list(stream)

    assert first.event_type is PhaseEventType.EXECUTION_STARTED
    assert [event.event_type for event in rest] == [PhaseEventType.PHASE_LAUNCHED]
    assert len(events.list_for_execution(execution.id)) == 3
    with pytest.raises(sqlite3.IntegrityError, match="append-only"):
        db.execute("DELETE FROM phase_events WHERE execution_id = ?", (execution.id,))
