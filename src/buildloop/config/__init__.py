"""
buildloop config package public API.

File: src/buildloop/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``buildloop.toml`` + ``BUILDLOOP_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from buildloop.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    effective_config,
    env_bindings,
    load_config,
    load_pipeline_config,
    normalize_paths,
)
from buildloop.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    PipelineConfig,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "PipelineConfig",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "dump_redacted",
    "effective_config",
    "env_bindings",
    "load_config",
    "load_pipeline_config",
    "merge_config",
    "normalize_paths",
    "validate_config",
]
