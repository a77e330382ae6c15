"""
buildloop — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from buildloop.config import ConfigValidationError
from buildloop.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_bindings,
    load_config,
    load_pipeline_config,
)
from buildloop.domain.models import Phase


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "buildloop.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[pipeline]
max_iterations = 4
""".strip(),
    )
    env = {"BUILDLOOP_PIPELINE_MAX_ITERATIONS": "6"}

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ=env)
    cli_loaded = load_config(
        config_path, environ=env, cli_overrides={"pipeline.max_iterations": 7}
    )

    assert default_loaded["pipeline"]["max_iterations"] == 3
    assert file_loaded["pipeline"]["max_iterations"] == 4
    assert env_loaded["pipeline"]["max_iterations"] == 6
    assert cli_loaded["pipeline"]["max_iterations"] == 7


def test_env_mapping_coerces_every_value_kind(tmp_path: Path) -> None:
    config_path = tmp_path / "buildloop.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "BUILDLOOP_TIMEOUTS_VERIFY": "45.5",
            "BUILDLOOP_WORKER_COMMAND": "python -m phase_worker --verbose",
            "BUILDLOOP_WORKER_INHERIT_HOST_ENV": "yes",
            "BUILDLOOP_OBSERVABILITY_LOG_LEVEL": "debug",
            "BUILDLOOP_UNRELATED": "ignored",
        },
    )

    assert loaded["timeouts"]["verify"] == 45.5
    assert loaded["worker"]["command"] == ["python", "-m", "phase_worker", "--verbose"]
    assert loaded["worker"]["inherit_host_env"] is True
    assert loaded["observability"]["log_level"] == "DEBUG"


@pytest.mark.parametrize(
    ("env_name", "raw", "message"),
    [
        ("BUILDLOOP_PIPELINE_MAX_CYCLES", "three", "must be an integer"),
        ("BUILDLOOP_TIMEOUTS_DEPLOY", "soon", "must be a number"),
        ("BUILDLOOP_OBSERVABILITY_LOG_TO_STDOUT", "maybe", "must be a boolean"),
        ("BUILDLOOP_WORKER_COMMAND", "python 'unterminated", "not a valid command line"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(
    tmp_path: Path, env_name: str, raw: str, message: str
) -> None:
    config_path = tmp_path / "buildloop.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match=message) as exc_info:
        load_config(config_path, environ={env_name: raw})
    assert env_name in str(exc_info.value)


def test_env_override_is_revalidated(tmp_path: Path) -> None:
    config_path = tmp_path / "buildloop.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigValidationError, match="pipeline.max_iterations: must be >= 1"):
        load_config(config_path, environ={"BUILDLOOP_PIPELINE_MAX_ITERATIONS": "0"})


def test_missing_explicit_file_and_bad_toml_fail_loudly(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})

    broken = tmp_path / "broken.toml"
    _write_config(broken, "[pipeline\nmax_iterations = 2")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_implicit_default_file_may_be_absent(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    expected = tmp_path.resolve() / "state" / "buildloop.sqlite3"
    assert loaded["paths"]["state_db"] == expected.as_posix()


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / "buildloop.toml"
    _write_config(
        config_path,
        """
[worker]
command = ["phase-worker"]
inherit_host_env = false
""".strip(),
    )
    env = {"BUILDLOOP_CAPACITY_MAX_ACTIVE_WORKERS": "2"}

    first = dump_effective_config(load_config(config_path, environ=env))
    second = dump_effective_config(load_config(config_path, environ=env))

    assert first == second
    assert json.loads(first)["capacity"]["max_active_workers"] == 2


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    config_dir = root / "deploy" / "conf"
    config_path = config_dir / "buildloop.toml"
    _write_config(
        config_path,
        """
[paths]
state_db = "../var/state.sqlite3"
object_store_root = "objects"
log_dir = "/var/log/buildloop"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    assert loaded["paths"]["state_db"] == (root / "deploy" / "var" / "state.sqlite3").as_posix()
    assert loaded["paths"]["object_store_root"] == (config_dir / "objects").as_posix()
    assert loaded["paths"]["log_dir"] == "/var/log/buildloop"


def test_load_pipeline_config_freezes_runtime_settings(tmp_path: Path) -> None:
    config_path = tmp_path / "buildloop.toml"
    _write_config(
        config_path,
        """
[pipeline]
max_cycles = 5

[timeouts]
orchestrate = 60

[worker]
command = ["phase-worker", "--json"]
""".strip(),
    )

    config = load_pipeline_config(config_path, environ={})

    assert config.max_iterations == 3
    assert config.max_cycles == 5
    assert config.timeout_for(Phase.ORCHESTRATE) == 60.0
    assert config.timeout_for("decompose") == 900.0
    assert config.worker_command == ("phase-worker", "--json")
    assert config.state_db == tmp_path.resolve() / "state" / "buildloop.sqlite3"


def test_env_bindings_cover_every_scalar_setting() -> None:
    bindings = env_bindings()

    assert bindings["BUILDLOOP_PIPELINE_MAX_CYCLES"] == ("pipeline", "max_cycles")
    assert bindings["BUILDLOOP_WORKER_COMMAND"] == ("worker", "command")
    assert bindings["BUILDLOOP_PATHS_LOG_DIR"] == ("paths", "log_dir")
    assert all(name.startswith("BUILDLOOP_") and name.isupper() for name in bindings)
    assert "BUILDLOOP_UNRELATED" not in bindings
