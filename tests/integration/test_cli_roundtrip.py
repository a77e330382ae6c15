"""End-to-end CLI runs against real worker subprocesses and an on-disk state directory."""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from buildloop.main import ExitCode, cli_entrypoint
from buildloop.observability import shutdown_logging

pytestmark = pytest.mark.integration

_WORKER_SOURCE = '''
import json
import os
import pathlib

OUTPUTS = {
    "decompose": {"status": "success", "tasks": [{"name": "cli"}]},
    "orchestrate": {"status": "success", "built": ["cli"]},
    "verify": {"status": "pass", "issues": [], "feedback": "green"},
    "deploy": {
        "status": "success",
        "units": [{"name": "cli", "status": "success", "artifact_ref": "artifacts/cli"}],
    },
}

root = pathlib.Path(os.environ["BUILDLOOP_STORE_ROOT"])
target = root / os.environ["BUILDLOOP_OUTPUT_KEY"]
target.parent.mkdir(parents=True, exist_ok=True)
target.write_text(json.dumps(OUTPUTS[os.environ["BUILDLOOP_PHASE"]]), encoding="utf-8")
'''


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    worker = tmp_path / "phase_worker.py"
    worker.write_text(_WORKER_SOURCE, encoding="utf-8")
    path = tmp_path / "buildloop.toml"
    path.write_text(
        f"""
[pipeline]
output_grace_seconds = 5.0
output_poll_interval_seconds = 0.05

[paths]
state_db = "state/buildloop.sqlite3"
object_store_root = "state/objects"
log_dir = "state/logs"

[worker]
command = [{json.dumps(sys.executable)}, {json.dumps(str(worker))}]
inherit_host_env = true

[capacity]
max_active_workers = 4
min_available_memory_mb = 0
""".strip(),
        encoding="utf-8",
    )
    return path


def _json_out(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    return json.loads(capsys.readouterr().out)


def test_submit_wait_then_inspect(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    spec = tmp_path / "spec.yaml"
    spec.write_text("name: demo\ntools:\n  - cli\n", encoding="utf-8")
    common = ["--config", str(config_path), "--json"]

    submit = ["submit", str(spec), "--org", "acme", "--user", "dev"]
    code = cli_entrypoint([*submit, "--wait", "--timeout", "60", *common])
    submitted = _json_out(capsys)
    assert code == ExitCode.SUCCESS
    execution = submitted["execution"]
    assert isinstance(execution, dict)
    assert execution["status"] == "completed"
    execution_id = str(execution["id"])

    assert cli_entrypoint(["status", execution_id, *common]) == ExitCode.SUCCESS
    status = _json_out(capsys)
    assert [run["phase"] for run in status["phase_runs"]] == [  # type: ignore[index]
        "decompose",
        "orchestrate",
        "verify",
        "deploy",
    ]
    assert [item["unit_name"] for item in status["artifacts"]] == ["cli"]  # type: ignore[index]

    assert cli_entrypoint(["events", execution_id, *common]) == ExitCode.SUCCESS
    lines = capsys.readouterr().out.splitlines()
    event_types = [json.loads(line)["event_type"] for line in lines]
    assert event_types[0] == "ExecutionStarted"
    assert event_types[-1] == "ExecutionFinished"

    assert cli_entrypoint(["list", "--org", "acme", *common]) == ExitCode.SUCCESS
    listed = _json_out(capsys)
    assert [item["id"] for item in listed["executions"]] == [execution_id]  # type: ignore[index]

    assert cli_entrypoint(["cancel", execution_id, *common]) == ExitCode.SUCCESS
    assert _json_out(capsys)["execution"]["status"] == "completed"  # type: ignore[index]

    assert (tmp_path / "state" / "logs" / "buildloop.jsonl").exists()


def test_config_command_shows_effective_config(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = cli_entrypoint(
        ["config", "--config", str(config_path), "--json", "--log-level", "DEBUG"]
    )

    payload = _json_out(capsys)
    assert code == ExitCode.SUCCESS
    assert payload["config"]["observability"]["log_level"] == "DEBUG"  # type: ignore[index]
    assert payload["config"]["capacity"]["min_available_memory_mb"] == 0  # type: ignore[index]


@pytest.mark.parametrize(
    "argv",
    [
        ["config", "--config", "does-not-exist.toml"],
        ["status", "exe-not-a-real-id"],
        ["status", "exe-01JABCDEFGHJKMNPQRSTVWXYZ0"],
        ["submit", "missing.yaml", "--org", "acme", "--user", "dev"],
        [],
    ],
)
def test_usage_and_config_errors_exit_2(
    tmp_path: Path,
    config_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    argv: list[str],
) -> None:
    monkeypatch.chdir(tmp_path)
    if argv and "--config" not in argv:
        argv = [*argv, "--config", str(config_path)]

    assert cli_entrypoint(argv) == ExitCode.CONFIG_ERROR


def test_submit_rejects_non_mapping_spec(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    spec = tmp_path / "spec.yaml"
    spec.write_text("- just\n- a list\n", encoding="utf-8")

    code = cli_entrypoint(
        ["submit", str(spec), "--org", "acme", "--user", "dev", "--config", str(config_path)]
    )

    assert code == ExitCode.CONFIG_ERROR
    assert "must be a mapping" in capsys.readouterr().err
