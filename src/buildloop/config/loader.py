"""
buildloop — runtime config loader.

File: src/buildloop/config/loader.py

Purpose
- Produce the one validated settings mapping a buildloop process runs with.

Layers, lowest to highest
1. Built-in defaults (``schema.DEFAULT_CONFIG``).
2. ``buildloop.toml``: the ``--config`` path, or ``./buildloop.toml`` when it exists.
   An explicit path that does not exist is an error; the implicit one is optional.
3. ``BUILDLOOP_<SECTION>_<FIELD>`` environment variables, one per scalar setting of
   the schema, e.g. ``BUILDLOOP_PIPELINE_MAX_CYCLES=5`` or
   ``BUILDLOOP_TIMEOUTS_VERIFY=600``. ``BUILDLOOP_WORKER_COMMAND`` is split
   shell-style into argv. Unknown ``BUILDLOOP_*`` names are ignored.
4. Dotted CLI overrides such as ``{"observability.log_level": "DEBUG"}``; ``None``
   values mean "flag not given".

The file layer is validated on its own first, so a bad TOML key is reported
against the file rather than the merged result. ``[paths]`` entries are then
resolved against the directory holding the config file; with no file, against
the working directory.
"""

from __future__ import annotations

import json
import os
import shlex
import tomllib
from collections.abc import Callable, Mapping
from functools import cache
from pathlib import Path
from typing import Any, Final

from buildloop.config.schema import (
    PATH_FIELDS,
    PipelineConfig,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "buildloop.toml"
ENV_PREFIX: Final[str] = "BUILDLOOP_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

SettingPath = tuple[str, ...]
_Coercer = Callable[[str], object]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Merge defaults, file, environment and CLI layers into validated settings."""

    source = _config_file(config_path)
    from_file = assert_valid_config(
        merge_config(default_config(), _read_toml(source, required=config_path is not None))
    )
    layered = merge_config(
        merge_config(from_file, _env_layer(os.environ if environ is None else environ)),
        _cli_layer(cli_overrides or {}),
    )
    normalized = normalize_paths(assert_valid_config(layered), base_dir=source.parent)
    return assert_valid_config(normalized)


def load_pipeline_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> PipelineConfig:
    """Load, validate, and freeze the runtime settings the controller consumes."""

    return PipelineConfig.from_mapping(
        load_config(config_path, cli_overrides=cli_overrides, environ=environ)
    )


def env_bindings() -> dict[str, SettingPath]:
    """Every recognised ``BUILDLOOP_*`` variable and the setting it overrides."""

    return {name: path for name, (path, _) in _binding_table().items()}


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Make every ``[paths]`` entry absolute; relative ones hang off ``base_dir``."""

    normalized = merge_config({}, config)
    for path in PATH_FIELDS:
        section, field = path
        table = normalized.get(section)
        if isinstance(table, dict) and isinstance(table.get(field), str):
            table[field] = _absolute(table[field], base_dir)
    return normalized


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Settings as shown by ``buildloop config``: secret-looking keys masked."""

    return dump_redacted(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Byte-stable JSON of ``effective_config``, for logs and diffs."""

    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


# ------------------------------------------------------------------ file layer


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


# ------------------------------------------------------------ env and CLI layers


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for name, (path, coerce) in sorted(_binding_table().items()):
        raw = environ.get(name)
        if raw is None:
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from exc
        _assign(layer, path, value)
    return layer


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(overrides):
        value = overrides[key]
        if value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


def _assign(target: dict[str, Any], path: SettingPath, value: object) -> None:
    *parents, leaf = path
    for part in parents:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[leaf] = value


@cache
def _binding_table() -> dict[str, tuple[SettingPath, _Coercer]]:
    table: dict[str, tuple[SettingPath, _Coercer]] = {}
    for section, fields in default_config().items():
        if not isinstance(fields, Mapping):
            continue
        for field, default in fields.items():
            coerce = _coercer_for(default)
            if coerce is not None:
                name = f"{ENV_PREFIX}{section.upper()}_{field.upper()}"
                table[name] = ((section, field), coerce)
    return table


def _coercer_for(default: object) -> _Coercer | None:
    # bool before int: True is an int.
    if isinstance(default, bool):
        return _to_bool
    if isinstance(default, int):
        return _to_int
    if isinstance(default, float):
        return _to_float
    if isinstance(default, str):
        return str
    if isinstance(default, list):
        return _to_argv
    return None


def _to_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _to_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


def _to_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _to_argv(raw: str) -> list[str]:
    try:
        return shlex.split(raw)
    except ValueError:
        raise ValueError("is not a valid command line") from None


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "effective_config",
    "env_bindings",
    "load_config",
    "load_pipeline_config",
    "normalize_paths",
]
