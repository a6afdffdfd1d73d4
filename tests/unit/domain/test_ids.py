"""Prefixed ULID ids: format, ordering, validation errors and entropy source."""

from __future__ import annotations

import random
from collections.abc import Callable

import pytest

from release_orchestrator.domain import ids

try:
    from hypothesis import given
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True


def _constant(byte: int) -> Callable[[int], bytes]:
    return lambda size: bytes([byte]) * size


def test_ten_thousand_ulids_are_distinct() -> None:
    assert len({ids.generate_ulid() for _ in range(10_000)}) == 10_000


def test_ulid_is_uppercase_crockford_and_case_insensitive_on_read() -> None:
    value = ids.generate_ulid(timestamp_ms=987_654, randbytes=_constant(0xAB))

    assert len(value) == ids.ULID_LENGTH
    assert set(value) <= set(ids.CROCKFORD_BASE32_ALPHABET)
    ids.validate_ulid(value.lower())
    assert ids.parse_ulid_timestamp_ms(value.lower()) == 987_654


@pytest.mark.parametrize(
    ("candidate", "message"),
    [
        ("0" * 25, "ulid length must be 26, got 25"),
        ("0" * 27, "ulid length must be 26, got 27"),
        ("01ARZ3NDEKTSV4RRFFQ69G5FAI", "invalid ULID character 'I'"),
        ("L" + "0" * 25, "invalid ULID character 'L' at index 0"),
        ("0" * 12 + "o" + "0" * 13, "invalid ULID character 'o' at index 12"),
        ("0" * 25 + "U", "invalid ULID character"),
        ("8" + "0" * 25, "overflow"),
    ],
)
def test_malformed_ulids_are_rejected(candidate: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        ids.validate_ulid(candidate)


def test_timestamp_extremes_round_trip() -> None:
    ids.validate_ulid("7" + "Z" * 25)
    assert ids.parse_ulid_timestamp_ms("0" * 26) == 0

    latest = ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS, randbytes=_constant(0))
    assert latest.startswith("7ZZZZZZZZZ")
    assert ids.parse_ulid_timestamp_ms(latest) == ids.ULID_MAX_TIMESTAMP_MS


@pytest.mark.parametrize("bad", [-1, ids.ULID_MAX_TIMESTAMP_MS + 1])
def test_timestamp_outside_48_bits_is_refused(bad: int) -> None:
    with pytest.raises(ValueError, match="out of range"):
        ids.generate_ulid(timestamp_ms=bad)


def test_byte_source_must_supply_eighty_bits() -> None:
    with pytest.raises(ValueError, match="exactly 10 bytes, got 9"):
        ids.generate_ulid(timestamp_ms=1, randbytes=lambda size: bytes(size - 1))
    with pytest.raises(ValueError, match="must be an int"):
        ids.generate_ulid(timestamp_ms=True)


if _HYPOTHESIS_AVAILABLE:

    @given(millis=st.integers(min_value=0, max_value=ids.ULID_MAX_TIMESTAMP_MS))
    def test_embedded_timestamp_survives_encoding(millis: int) -> None:
        assert ids.parse_ulid_timestamp_ms(ids.generate_ulid(timestamp_ms=millis)) == millis

else:

    def test_embedded_timestamp_survives_encoding() -> None:
        pytest.skip("hypothesis is not installed")


@pytest.mark.parametrize(
    ("kind", "generate", "validate"),
    [
        (ids.RELEASE, ids.generate_release_id, ids.validate_release_id),
        (ids.TASK, ids.generate_task_id, ids.validate_task_id),
        (ids.CYCLE, ids.generate_cycle_id, ids.validate_cycle_id),
        (ids.BUILD, ids.generate_build_id, ids.validate_build_id),
    ],
)
def test_entity_helpers_share_their_kind_prefix(
    kind: ids.IdKind, generate: Callable[..., str], validate: Callable[[str], None]
) -> None:
    minted = generate(timestamp_ms=5, randbytes=_constant(0x10))

    assert minted.startswith(f"{kind.prefix}-")
    assert minted == kind.new(timestamp_ms=5, randbytes=_constant(0x10))
    validate(minted)
    kind.check(minted)


def test_tick_and_session_ids() -> None:
    assert ids.generate_tick_id().startswith("tick-")
    assert ids.generate_session_id(timestamp_ms=0).startswith("sess-00000000")


def test_validation_names_what_went_wrong() -> None:
    with pytest.raises(ValueError, match="expected id with prefix 'rel-'"):
        ids.validate_release_id(ids.generate_task_id())
    with pytest.raises(ValueError, match="expected id with prefix 'rel-'"):
        ids.validate_release_id("release-" + ids.generate_ulid())
    with pytest.raises(ValueError, match="invalid ULID part in task id"):
        ids.validate_task_id("task-not-a-ulid")
    with pytest.raises(ValueError, match="must be a string"):
        ids.validate_build_id(42)  # type: ignore[arg-type]


@pytest.mark.parametrize(("prefix", "message"), [("rel-x", "must not contain"), ("", "non-empty")])
def test_prefixes_are_single_tokens(prefix: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        ids.generate_prefixed_id(prefix)
    with pytest.raises(ValueError, match=message):
        ids.IdKind(prefix)


def test_short_id_is_the_tail() -> None:
    build_id = ids.generate_build_id(timestamp_ms=1, randbytes=_constant(0xFF))

    assert ids.short_id(build_id) == build_id[-8:]
    with pytest.raises(ValueError, match="at least 8"):
        ids.short_id("bld-1")


def test_later_ids_sort_after_earlier_ones() -> None:
    earlier = ids.generate_release_id(timestamp_ms=1_000, randbytes=_constant(0xFF))
    later = ids.generate_release_id(timestamp_ms=1_001, randbytes=_constant(0x00))

    assert sorted([later, earlier]) == [earlier, later]


def test_global_random_state_is_never_used(monkeypatch: pytest.MonkeyPatch) -> None:
    def forbidden(*_: object) -> int:
        raise AssertionError("random module consulted")

    monkeypatch.setattr(random, "getrandbits", forbidden)
    monkeypatch.setattr(random, "randbytes", forbidden)

    ids.validate_ulid(ids.generate_ulid(timestamp_ms=42))
    assert ids.generate_ulid(timestamp_ms=42, randbytes=_constant(7)) == ids.generate_ulid(
        timestamp_ms=42, randbytes=_constant(7)
    )
