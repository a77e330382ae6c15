"""Local subprocess executor tests against real short-lived Python workers."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

import buildloop
from buildloop.domain import ids
from buildloop.domain.models import Phase
from buildloop.sandbox.capacity import CapacityGovernor, static_metrics
from buildloop.sandbox.executors import (
    WORKER_LOG_NAME,
    LaunchError,
    LaunchRequest,
    LocalProcessExecutor,
    TerminationChannel,
    WorkerState,
)
from buildloop.sandbox.supervisor import worker_identity
from buildloop.sandbox.worker_wrapper import PID_FILE_NAME, read_exit_marker, write_exit_marker
from buildloop.storage.object_store import phase_input_key, phase_output_key

EXECUTION_ID = ids.generate_execution_id()
WAIT_SECONDS = 10.0

_DUMP_ENV = (
    "import json, os; "
    "print(json.dumps({k: v for k, v in os.environ.items() if k.startswith('BUILDLOOP_')}))"
)


def _request(phase: Phase = Phase.DECOMPOSE, attempt: int = 1) -> LaunchRequest:
    return LaunchRequest(
        worker_ref=worker_identity(EXECUTION_ID, phase, attempt),
        execution_id=EXECUTION_ID,
        phase=phase,
        attempt_number=attempt,
        input_key=phase_input_key(EXECUTION_ID, phase, attempt),
        output_key=phase_output_key(EXECUTION_ID, phase, attempt),
        timeout_seconds=30,
        store_root="/srv/objects",
    )


def _executor(tmp_path: Path, channel: TerminationChannel, *command: str, **kwargs):
    return LocalProcessExecutor(
        command=command, work_root=tmp_path / "workers", channel=channel, **kwargs
    )


def test_worker_gets_phase_environment_and_exit_is_published(tmp_path: Path) -> None:
    channel = TerminationChannel()
    executor = _executor(tmp_path, channel, sys.executable, "-c", _DUMP_ENV, wrap=False)
    request = _request()

    assert executor.launch(request) == request.worker_ref
    event = channel.get(timeout=WAIT_SECONDS)

    assert event is not None
    assert (event.worker_ref, event.exit_code, event.stop_reason) == (
        request.worker_ref,
        0,
        "exited",
    )
    assert not event.abnormal
    work_dir = executor.work_dir_for(request.worker_ref)
    assert work_dir == tmp_path / "workers" / "buildloop" / EXECUTION_ID / "decompose" / "1"
    env = json.loads((work_dir / WORKER_LOG_NAME).read_text(encoding="utf-8"))
    assert env == request.environment()
    assert (work_dir / PID_FILE_NAME).read_text(encoding="utf-8").isdigit()
    status = executor.describe(request.worker_ref)
    assert (status.state, status.exit_code) == (WorkerState.EXITED, 0)


def test_host_environment_is_not_inherited_by_default(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("BUILDLOOP_HOST_SECRET", "leak")
    channel = TerminationChannel()
    executor = _executor(tmp_path, channel, sys.executable, "-c", _DUMP_ENV, wrap=False)
    request = _request()

    executor.launch(request)
    assert channel.get(timeout=WAIT_SECONDS) is not None

    log = executor.work_dir_for(request.worker_ref) / WORKER_LOG_NAME
    assert "BUILDLOOP_HOST_SECRET" not in json.loads(log.read_text(encoding="utf-8"))


def test_nonzero_exit_is_abnormal(tmp_path: Path) -> None:
    channel = TerminationChannel()
    executor = _executor(
        tmp_path, channel, sys.executable, "-c", "raise SystemExit(137)", wrap=False
    )

    executor.launch(_request(Phase.ORCHESTRATE))
    event = channel.get(timeout=WAIT_SECONDS)

    assert event is not None
    assert event.exit_code == 137
    assert event.abnormal


def test_wrapped_worker_leaves_exit_marker(tmp_path: Path) -> None:
    src_root = Path(buildloop.__file__).resolve().parent.parent
    channel = TerminationChannel()
    executor = _executor(
        tmp_path,
        channel,
        sys.executable,
        "-c",
        "raise SystemExit(4)",
        env_overrides={"PYTHONPATH": str(src_root)},
    )
    request = _request(Phase.VERIFY)

    executor.launch(request)
    event = channel.get(timeout=WAIT_SECONDS)

    assert event is not None
    assert event.exit_code == 4
    assert read_exit_marker(executor.work_dir_for(request.worker_ref)) == {
        "exit_code": 4,
        "stop_reason": "exited",
    }


def test_terminate_stops_a_running_worker(tmp_path: Path) -> None:
    channel = TerminationChannel()
    executor = _executor(
        tmp_path, channel, sys.executable, "-c", "import time; time.sleep(60)", wrap=False
    )
    request = _request(Phase.DEPLOY)

    executor.launch(request)
    assert executor.describe(request.worker_ref).state is WorkerState.RUNNING
    assert executor.active_count() == 1

    executor.terminate(request.worker_ref)
    event = channel.get(timeout=WAIT_SECONDS)

    assert event is not None
    assert event.stop_reason == "terminated"
    assert event.abnormal
    assert executor.active_count() == 0


def test_exited_workers_are_released_and_described_from_marker(tmp_path: Path) -> None:
    channel = TerminationChannel()
    executor = _executor(
        tmp_path, channel, sys.executable, "-c", "raise SystemExit(3)", wrap=False
    )
    requests = [_request(Phase.ORCHESTRATE, attempt) for attempt in (1, 2, 3)]

    for request in requests:
        executor.launch(request)
    events = [channel.get(timeout=WAIT_SECONDS) for _ in requests]

    assert all(event is not None for event in events)
    assert executor.tracked_refs() == []
    for request in requests:
        status = executor.describe(request.worker_ref)
        assert (status.state, status.exit_code) == (WorkerState.EXITED, 3)


def test_describe_falls_back_to_marker_then_pid(tmp_path: Path) -> None:
    channel = TerminationChannel()
    executor = _executor(tmp_path, channel, "true", wrap=False)
    ref = worker_identity(EXECUTION_ID, Phase.VERIFY, 2)
    work_dir = executor.work_dir_for(ref)
    work_dir.mkdir(parents=True)

    assert executor.describe(ref).state is WorkerState.UNKNOWN

    (work_dir / PID_FILE_NAME).write_text("999999999", encoding="utf-8")
    status = executor.describe(ref)
    assert (status.state, status.exit_code) == (WorkerState.EXITED, None)

    write_exit_marker(work_dir, 2, "exited")
    status = executor.describe(ref)
    assert (status.state, status.exit_code) == (WorkerState.EXITED, 2)


def test_launch_errors_are_synchronous(tmp_path: Path) -> None:
    channel = TerminationChannel()

    with pytest.raises(LaunchError, match="no worker command configured"):
        _executor(tmp_path, channel, " ", wrap=False).launch(_request())

    with pytest.raises(LaunchError, match="spawn failed"):
        _executor(tmp_path, channel, str(tmp_path / "missing-binary"), wrap=False).launch(
            _request()
        )

    governor = CapacityGovernor(
        max_active_workers=1,
        min_available_memory_mb=10_000,
        metrics_provider=static_metrics(total_mb=1024, available_mb=64),
    )
    with pytest.raises(LaunchError, match="capacity exhausted: available memory"):
        _executor(tmp_path, channel, "true", wrap=False, governor=governor).launch(_request())

    assert channel.drain() == []
