"""Object handoff store: durable key/blob storage for phase inputs and outputs."""

from buildloop.storage.object_store import (
    InMemoryObjectStore,
    LocalObjectStore,
    MalformedObjectError,
    ObjectNotFoundError,
    ObjectStore,
    ObjectStoreError,
    phase_input_key,
    phase_output_key,
    spec_key,
)

__all__ = [
    "InMemoryObjectStore",
    "LocalObjectStore",
    "MalformedObjectError",
    "ObjectNotFoundError",
    "ObjectStore",
    "ObjectStoreError",
    "phase_input_key",
    "phase_output_key",
    "spec_key",
]
