"""
buildloop — object handoff store

File: src/buildloop/storage/object_store.py

Purpose
- Durable JSON object storage for phase inputs/outputs and BuildSpec revisions.
- Keys are namespaced per execution, phase and attempt, so concurrent
  executions never touch the same object.

Layout
- ``{execution_id}/{phase}/{attempt}/input.json``
- ``{execution_id}/{phase}/{attempt}/output.json``
- ``{execution_id}/specs/{revision}.json``
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from buildloop.constants import INPUT_OBJECT_NAME, OUTPUT_OBJECT_NAME, SPEC_OBJECT_DIR
from buildloop.domain.models import JSONValue, Phase, canonical_json
from buildloop.utils.fs import atomic_write, resolve_within, validate_relative_key


class ObjectStoreError(RuntimeError):
    """Base class for handoff store failures."""


class ObjectNotFoundError(ObjectStoreError):
    """Raised when a key has no stored object."""


class MalformedObjectError(ObjectStoreError):
    """Raised when a stored object is not a JSON object."""


def phase_prefix(execution_id: str, phase: Phase | str, attempt_number: int) -> str:
    if attempt_number < 1:
        raise ValueError("attempt_number must be >= 1")
    return f"{execution_id}/{Phase(phase).value}/{attempt_number}"


def phase_input_key(execution_id: str, phase: Phase | str, attempt_number: int) -> str:
    return f"{phase_prefix(execution_id, phase, attempt_number)}/{INPUT_OBJECT_NAME}"


def phase_output_key(execution_id: str, phase: Phase | str, attempt_number: int) -> str:
    return f"{phase_prefix(execution_id, phase, attempt_number)}/{OUTPUT_OBJECT_NAME}"


def spec_key(execution_id: str, revision: int) -> str:
    if revision < 1:
        raise ValueError("revision must be >= 1")
    return f"{execution_id}/{SPEC_OBJECT_DIR}/{revision}.json"


@runtime_checkable
class ObjectStore(Protocol):
    def put_json(
        self, key: str, value: dict[str, JSONValue], *, overwrite: bool = True
    ) -> str: ...

    def get_json(self, key: str) -> dict[str, JSONValue]: ...

    def exists(self, key: str) -> bool: ...

    def list_keys(self, prefix: str) -> list[str]: ...


def _decode(key: str, raw: bytes) -> dict[str, JSONValue]:
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedObjectError(f"{key}: invalid JSON ({exc})") from exc
    if not isinstance(parsed, dict):
        raise MalformedObjectError(f"{key}: JSON root must be an object")
    return parsed


class LocalObjectStore:
    """Filesystem-backed store rooted at ``root``; writes are atomic renames."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser()
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        return resolve_within(self._root, key)

    def put_json(self, key: str, value: dict[str, JSONValue], *, overwrite: bool = True) -> str:
        target = self.path_for(key)
        with self._lock:
            if not overwrite and target.exists():
                raise ObjectStoreError(f"{key}: object already exists")
            target.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(target, canonical_json(value))
        return key

    def get_json(self, key: str) -> dict[str, JSONValue]:
        target = self.path_for(key)
        try:
            raw = target.read_bytes()
        except FileNotFoundError as exc:
            raise ObjectNotFoundError(f"{key}: no such object") from exc
        except OSError as exc:
            raise ObjectStoreError(f"{key}: read failed ({exc})") from exc
        return _decode(key, raw)

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def list_keys(self, prefix: str) -> list[str]:
        base = self._root if not prefix else self.path_for(prefix.rstrip("/"))
        if not base.is_dir():
            return []
        return sorted(
            path.relative_to(self._root).as_posix()
            for path in base.rglob("*")
            if path.is_file() and not path.name.startswith(".")
        )


class InMemoryObjectStore:
    """Thread-safe in-process store, used by tests and single-process runs."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put_json(self, key: str, value: dict[str, JSONValue], *, overwrite: bool = True) -> str:
        validate_relative_key(key)
        with self._lock:
            if not overwrite and key in self._objects:
                raise ObjectStoreError(f"{key}: object already exists")
            self._objects[key] = canonical_json(value).encode("utf-8")
        return key

    def put_raw(self, key: str, raw: bytes) -> str:
        with self._lock:
            self._objects[key] = raw
        return key

    def get_json(self, key: str) -> dict[str, JSONValue]:
        with self._lock:
            raw = self._objects.get(key)
        if raw is None:
            raise ObjectNotFoundError(f"{key}: no such object")
        return _decode(key, raw)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def list_keys(self, prefix: str) -> list[str]:
        with self._lock:
            return sorted(key for key in self._objects if key.startswith(prefix))


__all__ = [
    "InMemoryObjectStore",
    "LocalObjectStore",
    "MalformedObjectError",
    "ObjectNotFoundError",
    "ObjectStore",
    "ObjectStoreError",
    "phase_input_key",
    "phase_output_key",
    "phase_prefix",
    "spec_key",
]
