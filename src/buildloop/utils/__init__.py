"""Utility exports for filesystem helpers."""

from buildloop.utils.fs import atomic_write, is_within, resolve_within, validate_relative_key

__all__ = ["atomic_write", "is_within", "resolve_within", "validate_relative_key"]
