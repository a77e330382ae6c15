"""
buildloop — configuration schema and validation.

File: src/buildloop/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Deterministic deep-merge helpers.
- Redaction rules for sensitive fields.
- The frozen ``PipelineConfig`` view handed to the controller.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject unknown keys so typos never silently fall back to defaults.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final, TypedDict

from buildloop.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_MAX_CONCURRENT_BUILDS,
    DEFAULT_MAX_CYCLES,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_OUTPUT_GRACE_SECONDS,
    DEFAULT_OUTPUT_POLL_INTERVAL_SECONDS,
    DEFAULT_PHASE_TIMEOUTS,
    LOG_DIR,
    OBJECT_STORE_DIR,
    STATE_DB_FILENAME,
    STATE_DIR,
)
from buildloop.domain.models import Phase

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "object_store_root"),
    ("paths", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class PipelineSection(TypedDict):
    max_iterations: int
    max_cycles: int
    max_concurrent_builds: int
    output_grace_seconds: float
    output_poll_interval_seconds: float


class TimeoutsConfig(TypedDict):
    decompose: float
    orchestrate: float
    verify: float
    deploy: float


class PathsConfig(TypedDict):
    state_db: str
    object_store_root: str
    log_dir: str


class WorkerConfig(TypedDict):
    command: list[str]
    inherit_host_env: bool


class CapacityConfig(TypedDict):
    max_active_workers: int
    min_available_memory_mb: int


class ObservabilityConfig(TypedDict):
    log_level: str
    log_to_stdout: bool


class BuildloopConfig(TypedDict):
    meta: MetaConfig
    pipeline: PipelineSection
    timeouts: TimeoutsConfig
    paths: PathsConfig
    worker: WorkerConfig
    capacity: CapacityConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[BuildloopConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "pipeline": {
        "max_iterations": DEFAULT_MAX_ITERATIONS,
        "max_cycles": DEFAULT_MAX_CYCLES,
        "max_concurrent_builds": DEFAULT_MAX_CONCURRENT_BUILDS,
        "output_grace_seconds": DEFAULT_OUTPUT_GRACE_SECONDS,
        "output_poll_interval_seconds": DEFAULT_OUTPUT_POLL_INTERVAL_SECONDS,
    },
    "timeouts": {
        "decompose": DEFAULT_PHASE_TIMEOUTS["decompose"],
        "orchestrate": DEFAULT_PHASE_TIMEOUTS["orchestrate"],
        "verify": DEFAULT_PHASE_TIMEOUTS["verify"],
        "deploy": DEFAULT_PHASE_TIMEOUTS["deploy"],
    },
    "paths": {
        "state_db": (STATE_DIR / STATE_DB_FILENAME).as_posix(),
        "object_store_root": (STATE_DIR / OBJECT_STORE_DIR).as_posix(),
        "log_dir": (STATE_DIR / LOG_DIR).as_posix(),
    },
    "worker": {
        "command": [],
        "inherit_host_env": False,
    },
    "capacity": {
        "max_active_workers": 8,
        "min_available_memory_mb": 256,
    },
    "observability": {
        "log_level": "INFO",
        "log_to_stdout": False,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Immutable runtime settings passed explicitly into the controller and router."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_cycles: int = DEFAULT_MAX_CYCLES
    max_concurrent_builds: int = DEFAULT_MAX_CONCURRENT_BUILDS
    output_grace_seconds: float = DEFAULT_OUTPUT_GRACE_SECONDS
    output_poll_interval_seconds: float = DEFAULT_OUTPUT_POLL_INTERVAL_SECONDS
    phase_timeouts: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_PHASE_TIMEOUTS)
    )
    state_db: Path = Path(STATE_DIR / STATE_DB_FILENAME)
    object_store_root: Path = Path(STATE_DIR / OBJECT_STORE_DIR)
    log_dir: Path = Path(STATE_DIR / LOG_DIR)
    worker_command: tuple[str, ...] = ()
    inherit_host_env: bool = False
    max_active_workers: int = 8
    min_available_memory_mb: int = 256

    def __post_init__(self) -> None:
        for name in ("max_iterations", "max_cycles", "max_concurrent_builds"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be an integer >= 1")
        missing = sorted(phase.value for phase in Phase if phase.value not in self.phase_timeouts)
        if missing:
            raise ValueError(f"phase_timeouts missing phases: {missing}")

    def timeout_for(self, phase: Phase | str) -> float:
        return float(self.phase_timeouts[Phase(phase).value])

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> PipelineConfig:
        """Build from a validated config mapping (see ``assert_valid_config``)."""

        pipeline = config["pipeline"]
        paths = config["paths"]
        worker = config["worker"]
        capacity = config["capacity"]
        return cls(
            max_iterations=pipeline["max_iterations"],
            max_cycles=pipeline["max_cycles"],
            max_concurrent_builds=pipeline["max_concurrent_builds"],
            output_grace_seconds=pipeline["output_grace_seconds"],
            output_poll_interval_seconds=pipeline["output_poll_interval_seconds"],
            phase_timeouts=dict(config["timeouts"]),
            state_db=Path(paths["state_db"]),
            object_store_root=Path(paths["object_store_root"]),
            log_dir=Path(paths["log_dir"]),
            worker_command=tuple(worker["command"]),
            inherit_host_env=worker["inherit_host_env"],
            max_active_workers=capacity["max_active_workers"],
            min_available_memory_mb=capacity["min_available_memory_mb"],
        )


def default_config() -> BuildloopConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade buildloop.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the buildloop runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def dump_redacted(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Alias for schema-level redacted dumps."""

    return redact_config(config)


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    validators: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "pipeline": _validate_pipeline,
        "timeouts": _validate_timeouts,
        "paths": _validate_paths,
        "worker": _validate_worker,
        "capacity": _validate_capacity,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, set(validators), "", issues)
    _require_keys(payload, set(validators), "", issues)

    out: dict[str, Any] = {}
    for key, validator in validators.items():
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = validator(section, key, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_pipeline(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    int_fields = ("max_iterations", "max_cycles", "max_concurrent_builds")
    float_fields = ("output_grace_seconds", "output_poll_interval_seconds")
    allowed = set(int_fields) | set(float_fields)
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for name in int_fields:
        if name in payload:
            parsed_int = _as_int(payload[name], _join(path, name), issues, minimum=1)
            if parsed_int is not None:
                out[name] = parsed_int
    for name in float_fields:
        if name in payload:
            parsed_float = _as_float(payload[name], _join(path, name), issues, minimum=0.0)
            if parsed_float is not None:
                out[name] = parsed_float

    interval = out.get("output_poll_interval_seconds")
    if interval is not None and interval <= 0:
        issues.add(_join(path, "output_poll_interval_seconds"), "must be > 0")
    return out


def _validate_timeouts(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {phase.value for phase in Phase}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for name in sorted(allowed):
        if name not in payload:
            continue
        parsed = _as_float(payload[name], _join(path, name), issues, minimum=0.0)
        if parsed is None:
            continue
        if parsed <= 0:
            issues.add(_join(path, name), "must be > 0")
            continue
        out[name] = parsed
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"state_db", "object_store_root", "log_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for name in sorted(allowed):
        if name in payload:
            parsed = _as_path_text(payload[name], _join(path, name), issues)
            if parsed is not None:
                out[name] = parsed
    return out


def _validate_worker(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"command", "inherit_host_env"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "command" in payload:
        raw = payload["command"]
        command_path = _join(path, "command")
        if isinstance(raw, str):
            issues.add(command_path, "expected list of strings (argv), got a single string")
        elif not isinstance(raw, (list, tuple)):
            issues.add(command_path, f"expected list of strings, got {type(raw).__name__}")
        else:
            parts: list[str] = []
            for index, item in enumerate(raw):
                parsed = _as_str(item, f"{command_path}[{index}]", issues)
                if parsed is not None:
                    parts.append(parsed)
            out["command"] = parts
    if "inherit_host_env" in payload:
        parsed_bool = _as_bool(
            payload["inherit_host_env"], _join(path, "inherit_host_env"), issues
        )
        if parsed_bool is not None:
            out["inherit_host_env"] = parsed_bool
    return out


def _validate_capacity(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"max_active_workers", "min_available_memory_mb"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "max_active_workers" in payload:
        workers = _as_int(
            payload["max_active_workers"], _join(path, "max_active_workers"), issues, minimum=1
        )
        if workers is not None:
            out["max_active_workers"] = workers
    if "min_available_memory_mb" in payload:
        memory = _as_int(
            payload["min_available_memory_mb"],
            _join(path, "min_available_memory_mb"),
            issues,
            minimum=0,
        )
        if memory is not None:
            out["min_available_memory_mb"] = memory
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_to_stdout"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw = payload["log_level"]
        level = raw.strip().upper() if isinstance(raw, str) else raw
        parsed = _as_enum(level, _join(path, "log_level"), issues, allowed_values=LOG_LEVELS)
        if parsed is not None:
            out["log_level"] = parsed
    if "log_to_stdout" in payload:
        flag = _as_bool(payload["log_to_stdout"], _join(path, "log_to_stdout"), issues)
        if flag is not None:
            out["log_to_stdout"] = flag
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden in config files")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(value[key], key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BuildloopConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "PipelineConfig",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
