"""Unit tests for domain model validation and worker-output parsing."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from buildloop.domain import ids
from buildloop.domain.models import (
    BuildExecution,
    BuildSpec,
    DeployReport,
    ExecutionStatus,
    FeedbackBlock,
    Phase,
    PhaseOutcome,
    PhaseRun,
    QAIssue,
    QAReport,
    QAStatus,
    canonical_json,
    next_phase,
)

UTC = timezone.utc
_NOW = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)
EXECUTION_ID = ids.generate_execution_id(
    timestamp_ms=1_770_000_000_000, randbytes=lambda size: b"\x03" * size
)


def _execution(**overrides: object) -> BuildExecution:
    fields: dict[str, object] = {
        "id": EXECUTION_ID,
        "org_id": "org-1",
        "user_id": "user-1",
        "current_build_spec_ref": f"{EXECUTION_ID}/specs/1.json",
        "status": "running",
        "created_at": _NOW,
        "updated_at": _NOW,
    }
    fields.update(overrides)
    return BuildExecution(**fields)  # type: ignore[arg-type]


def test_phase_order_ends_after_deploy() -> None:
    assert next_phase(Phase.DECOMPOSE) is Phase.ORCHESTRATE
    assert next_phase(Phase.VERIFY) is Phase.DEPLOY
    assert next_phase(Phase.DEPLOY) is None


def test_execution_coerces_enums_and_roundtrips_through_json() -> None:
    execution = _execution(current_phase="verify", diagnostic={"note": ["a", 1]})

    assert execution.status is ExecutionStatus.RUNNING
    assert execution.current_phase is Phase.VERIFY
    assert not execution.is_terminal
    assert BuildExecution.from_json(execution.to_json()) == execution


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"id": "run-123"}, "BuildExecution.id"),
        ({"qa_iteration": 0}, "qa_iteration: must be >= 1"),
        ({"status": "paused"}, "invalid value 'paused'"),
        ({"updated_at": _NOW - timedelta(seconds=1)}, "must be >= BuildExecution.created_at"),
        ({"created_at": datetime(2026, 3, 1)}, "timezone-aware"),
    ],
)
def test_execution_validation_is_path_aware(overrides: dict, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        _execution(**overrides)


def test_execution_from_dict_rejects_unknown_fields() -> None:
    payload = _execution().to_dict()
    payload["surprise"] = True
    with pytest.raises(ValueError, match="unexpected fields"):
        BuildExecution.from_dict(payload)


def test_phase_run_completed_at_tracks_resolution() -> None:
    base = {
        "execution_id": EXECUTION_ID,
        "phase": "decompose",
        "attempt_number": 1,
        "worker_ref": f"buildloop:{EXECUTION_ID}:decompose:1",
        "input_ref": f"{EXECUTION_ID}/decompose/1/input.json",
        "started_at": _NOW,
        "deadline_at": _NOW + timedelta(minutes=15),
    }
    pending = PhaseRun(**base)  # type: ignore[arg-type]
    assert not pending.is_resolved
    assert pending.key == (EXECUTION_ID, Phase.DECOMPOSE, 1)

    with pytest.raises(ValueError, match="exactly when the outcome is resolved"):
        PhaseRun(**base, outcome=PhaseOutcome.SUCCEEDED)  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="deadline_at"):
        PhaseRun(**{**base, "deadline_at": _NOW - timedelta(seconds=1)})  # type: ignore[arg-type]


def test_qa_report_parses_worker_output_and_sorts_fixes() -> None:
    report = QAReport.from_worker_output(
        {
            "status": "fail",
            "issues": [
                {"type": "test", "severity": "CRITICAL", "message": "segfault", "suggestion": "x"},
                {"severity": "medium", "message": "slow startup"},
                {"severity": "low", "message": "typo"},
            ],
            "feedback": "please fix the crash",
            "checks": [{"name": "unit", "passed": False}],
            "extra": "ignored",
        },
        execution_id=EXECUTION_ID,
        revision=2,
    )

    assert report.status is QAStatus.FAIL
    assert report.must_fix == ("x",)
    assert report.prioritized_fixes == ("slow startup",)
    assert report.failed_checks == ("unit",)
    assert report.issues[1].type == "general"
    assert report.summary()["issue_count"] == 3
    assert QAReport.from_dict(report.to_dict()) == report


def test_qa_report_requires_status() -> None:
    with pytest.raises(ValueError, match="missing required fields"):
        QAReport.from_worker_output({"issues": []}, execution_id=EXECUTION_ID, revision=1)


def test_build_spec_roundtrip_preserves_feedback_order() -> None:
    blocks = tuple(
        FeedbackBlock(
            iteration=number,
            qa_report_ref=f"{EXECUTION_ID}/verify/{number}/output.json",
            issues=(QAIssue(type="test", severity="high", message=f"issue {number}"),),
            feedback_text=f"round {number}",
        )
        for number in (1, 2)
    )
    spec = BuildSpec(
        execution_id=EXECUTION_ID,
        revision=3,
        content={"tool": "grep-plus", "flags": {"color": True}},
        feedback=blocks,
        previous_qa_report_ref=blocks[-1].qa_report_ref,
    )

    restored = BuildSpec.from_json(spec.to_json())

    assert restored == spec
    assert [block.iteration for block in restored.feedback] == [1, 2]


def test_build_spec_content_must_be_json() -> None:
    with pytest.raises(ValueError, match="finite"):
        BuildSpec(execution_id=EXECUTION_ID, revision=1, content={"ratio": float("nan")})


def test_deploy_report_splits_units() -> None:
    report = DeployReport.from_worker_output(
        {
            "status": "partial",
            "units": [
                {"name": "cli", "status": "success", "artifact_ref": "a/cli"},
                {"name": "docs", "status": "failed", "error": "timeout"},
            ],
        }
    )

    assert report.any_succeeded
    assert not report.all_succeeded
    assert [unit.name for unit in report.succeeded_units] == ["cli"]
    assert report.failure_reason() == "docs: timeout"


def test_deploy_report_rejects_duplicate_unit_names() -> None:
    unit = {"name": "cli", "status": "success", "artifact_ref": "a/cli"}
    with pytest.raises(ValueError, match="unique"):
        DeployReport.from_worker_output({"status": "success", "units": [unit, unit]})


def test_deploy_unit_artifact_ref_is_bounded_like_tool_artifact() -> None:
    unit = {"name": "cli", "status": "success", "artifact_ref": "s3://bucket/" + "x" * 2000}
    with pytest.raises(ValueError, match=r"DeployUnitResult.artifact_ref: must be <= 1024"):
        DeployReport.from_worker_output({"status": "success", "units": [unit]})


def test_canonical_json_is_stable_and_sorted() -> None:
    assert canonical_json({"b": 1, "a": [2, {"d": None, "c": "é"}]}) == (
        '{"a":[2,{"c":"é","d":null}],"b":1}'
    )
