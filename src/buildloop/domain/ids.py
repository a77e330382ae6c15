"""Identifiers for build executions, deployed artifacts and phase events.

Every id is ``<kind>-<ulid>``:

- ``exe-`` names a BuildExecution. The same string is embedded in worker refs
  (``buildloop:<execution id>:<phase>:<attempt>``) and is the first segment of
  every object-store key, so it may only use ``[0-9A-Za-z-]``.
- ``art-`` names a ToolArtifact recorded from a succeeded Deploy.
- ``evt-`` names a PhaseEvent in an execution's transition log.

The ULID body leads with a 48-bit millisecond timestamp, so ids of one kind
compare in creation order. Execution listings rely on that to break ties
between builds created within the same clock tick.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from enum import Enum
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

_RANDOM_BITS: Final[int] = ULID_RANDOM_BYTES * 8
_SEPARATOR: Final[str] = "-"
_SHORT_LENGTH: Final[int] = 8
_DIGIT_VALUES: Final[dict[str, int]] = {char: i for i, char in enumerate(CROCKFORD_BASE32_ALPHABET)}

RandBytes = Callable[[int], bytes]


class IdKind(str, Enum):
    EXECUTION = "exe"
    ARTIFACT = "art"
    EVENT = "evt"


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    """Return a 26-character uppercase ULID; both inputs are injectable for tests."""
    stamp = _timestamp(timestamp_ms)
    entropy = int.from_bytes(_entropy(randbytes), "big")
    return _encode((stamp << _RANDOM_BITS) | entropy)


def validate_ulid(value: str) -> None:
    _decode(value)


def parse_ulid_timestamp_ms(value: str) -> int:
    return _decode(value) >> _RANDOM_BITS


def generate_prefixed_id(
    prefix: str, *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    _check_prefix(prefix)
    return prefix + _SEPARATOR + generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    lead = expected_prefix + _SEPARATOR
    if not id_str.startswith(lead):
        raise ValueError(f"expected prefix '{lead}'")
    try:
        _decode(id_str[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def short_id(id_str: str) -> str:
    """Trailing characters of an id, as shown in CLI tables."""
    if not isinstance(id_str, str) or len(id_str) < _SHORT_LENGTH:
        raise ValueError(f"id must be a string of at least {_SHORT_LENGTH} characters")
    return id_str[-_SHORT_LENGTH:]


def generate_execution_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(
        IdKind.EXECUTION.value, timestamp_ms=timestamp_ms, randbytes=randbytes
    )


def validate_execution_id(id_str: str) -> None:
    validate_prefixed_id(id_str, IdKind.EXECUTION.value)


def generate_artifact_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(
        IdKind.ARTIFACT.value, timestamp_ms=timestamp_ms, randbytes=randbytes
    )


def validate_artifact_id(id_str: str) -> None:
    validate_prefixed_id(id_str, IdKind.ARTIFACT.value)


def generate_event_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(IdKind.EVENT.value, timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_event_id(id_str: str) -> None:
    validate_prefixed_id(id_str, IdKind.EVENT.value)


def _timestamp(timestamp_ms: int | None) -> int:
    if timestamp_ms is None:
        return time.time_ns() // 1_000_000
    if isinstance(timestamp_ms, bool) or not isinstance(timestamp_ms, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(timestamp_ms).__name__}")
    if not 0 <= timestamp_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range 0..{ULID_MAX_TIMESTAMP_MS}: {timestamp_ms}")
    return timestamp_ms


def _entropy(randbytes: RandBytes | None) -> bytes:
    raw = (randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES)
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise ValueError("randbytes must return a bytes-like object")
    if len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    return bytes(raw)


def _encode(value: int) -> str:
    # 26 base-32 digits hold 130 bits; a 128-bit value always fits.
    digits: list[str] = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(digits))


def _decode(value: str) -> int:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    decoded = 0
    for index, char in enumerate(value):
        digit = _DIGIT_VALUES.get(char.upper())
        if digit is None:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
        decoded = decoded * 32 + digit
    if decoded >> 128:
        raise ValueError("ulid overflow: leading character must be 0-7")
    return decoded


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_SEPARATOR}'")


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "IdKind",
    "RandBytes",
    "generate_artifact_id",
    "generate_event_id",
    "generate_execution_id",
    "generate_prefixed_id",
    "generate_ulid",
    "parse_ulid_timestamp_ms",
    "short_id",
    "validate_artifact_id",
    "validate_event_id",
    "validate_execution_id",
    "validate_prefixed_id",
    "validate_ulid",
]
