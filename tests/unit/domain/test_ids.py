"""Unit tests for ULID-based ID helpers."""

from __future__ import annotations

import pytest

from buildloop.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_generate_ulid_no_collision_10000() -> None:
    generated = {ids.generate_ulid() for _ in range(10_000)}
    assert len(generated) == 10_000


def test_ulid_charset_length_and_reject_invalid_chars() -> None:
    ulid_value = ids.generate_ulid(timestamp_ms=123_456, randbytes=_ff_bytes)
    assert len(ulid_value) == ids.ULID_LENGTH
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in ulid_value)

    ids.validate_ulid(ulid_value.lower())

    with pytest.raises(ValueError, match="ulid length must be"):
        ids.validate_ulid("0" * 25)
    for invalid in ["I" + "0" * 25, "O" + "0" * 25, "*" + "0" * 25]:
        with pytest.raises(ValueError, match="invalid ULID character"):
            ids.validate_ulid(invalid)


def test_ulid_overflow_and_timestamp_boundaries() -> None:
    ids.validate_ulid("7" + "Z" * 25)
    with pytest.raises(ValueError, match="overflow"):
        ids.validate_ulid("8" + "0" * 25)

    top = ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS, randbytes=_zero_bytes)
    assert ids.parse_ulid_timestamp_ms(top) == ids.ULID_MAX_TIMESTAMP_MS
    with pytest.raises(ValueError, match="out of range"):
        ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS + 1)


def test_execution_ids_sort_by_creation_time() -> None:
    earlier = ids.generate_execution_id(timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.generate_execution_id(timestamp_ms=1_001, randbytes=_zero_bytes)
    assert earlier < later


def test_prefixed_id_helpers_and_short_id() -> None:
    execution_id = ids.generate_execution_id(timestamp_ms=1, randbytes=_ff_bytes)
    artifact_id = ids.generate_artifact_id(timestamp_ms=1, randbytes=_ff_bytes)
    event_id = ids.generate_event_id(timestamp_ms=1, randbytes=_ff_bytes)

    ids.validate_execution_id(execution_id)
    ids.validate_artifact_id(artifact_id)
    ids.validate_event_id(event_id)
    assert execution_id.startswith("exe-")

    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_execution_id(artifact_id)
    with pytest.raises(ValueError, match="must not contain"):
        ids.generate_prefixed_id("bad-prefix")

    assert ids.short_id(execution_id) == execution_id[-8:]
    with pytest.raises(ValueError, match="at least 8"):
        ids.short_id("short")


def test_randbytes_provider_is_validated() -> None:
    with pytest.raises(ValueError, match="exactly 10 bytes"):
        ids.generate_ulid(randbytes=lambda size: b"\x00" * (size - 1))
    assert ids.generate_ulid(timestamp_ms=42, randbytes=_zero_bytes) == ids.generate_ulid(
        timestamp_ms=42, randbytes=_zero_bytes
    )


@pytest.mark.parametrize(
    ("generate", "kind"),
    [
        (ids.generate_execution_id, ids.IdKind.EXECUTION),
        (ids.generate_artifact_id, ids.IdKind.ARTIFACT),
        (ids.generate_event_id, ids.IdKind.EVENT),
    ],
)
def test_ids_are_path_and_worker_ref_safe(generate, kind: ids.IdKind) -> None:
    value = generate()

    prefix, _, body = value.partition("-")
    assert prefix == kind.value
    assert ":" not in value and "/" not in value
    assert ids.parse_ulid_timestamp_ms(body) > 0
