"""
release-orchestrator: entity identifiers

File: src/release_orchestrator/domain/ids.py

Purpose
- Every persisted entity id is ``<prefix>-<ULID>``: 48 bits of milliseconds followed by
  80 random bits, written as 26 Crockford Base32 characters. Ids of one kind therefore
  sort by creation time, which the repositories rely on for stable listings.
- Randomness comes from ``secrets`` unless a test injects its own byte source; the
  ``random`` module is never consulted.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = 2**48 - 1

_RANDOM_BITS: Final[int] = 80
_RANDOM_BYTES: Final[int] = _RANDOM_BITS // 8
_DIGIT_VALUE: Final[dict[str, int]] = {
    char: value for value, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

ByteSource = Callable[[int], bytes]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: ByteSource | None = None) -> str:
    millis = _now_ms() if timestamp_ms is None else timestamp_ms
    if type(millis) is not int:
        raise ValueError(f"timestamp_ms must be an int, got {type(millis).__name__}")
    if millis < 0 or millis > ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms {millis} out of range 0..{ULID_MAX_TIMESTAMP_MS}")

    entropy = bytes((randbytes or secrets.token_bytes)(_RANDOM_BYTES))
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(
            f"randbytes must return exactly {_RANDOM_BYTES} bytes, got {len(entropy)}"
        )
    number = millis << _RANDOM_BITS | int.from_bytes(entropy, "big")
    return "".join(
        CROCKFORD_BASE32_ALPHABET[(number >> shift) & 0x1F]
        for shift in range(5 * (ULID_LENGTH - 1), -1, -5)
    )


def validate_ulid(value: str) -> None:
    _ulid_value(value)


def parse_ulid_timestamp_ms(value: str) -> int:
    return _ulid_value(value) >> _RANDOM_BITS


def _ulid_value(text: object) -> int:
    if not isinstance(text, str):
        raise ValueError(f"ulid must be a string, got {type(text).__name__}")
    if len(text) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(text)}")
    number = 0
    for position, char in enumerate(text.upper()):
        if char not in _DIGIT_VALUE:
            raise ValueError(f"invalid ULID character {text[position]!r} at index {position}")
        number = number * 32 + _DIGIT_VALUE[char]
    # 26 digits hold 130 bits; the leading digit may only use the low 3.
    if number.bit_length() > 128:
        raise ValueError("ulid overflow: value exceeds 128 bits")
    return number


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _checked_prefix(prefix: object) -> str:
    if not isinstance(prefix, str) or prefix == "":
        raise ValueError("prefix must be a non-empty string")
    if "-" in prefix:
        raise ValueError("prefix must not contain '-'")
    return prefix


def generate_prefixed_id(
    prefix: str, *, timestamp_ms: int | None = None, randbytes: ByteSource | None = None
) -> str:
    head = _checked_prefix(prefix)
    return f"{head}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Raise ``ValueError`` unless ``id_str`` reads ``<expected_prefix>-<ULID>``."""
    head = _checked_prefix(expected_prefix) + "-"
    if not isinstance(id_str, str):
        raise ValueError(f"id must be a string, got {type(id_str).__name__}")
    prefix, dash, tail = id_str.partition("-")
    if not dash or prefix + dash != head:
        raise ValueError(f"expected id with prefix '{head}', got {id_str!r}")
    try:
        _ulid_value(tail)
    except ValueError as exc:
        raise ValueError(f"invalid ULID part in {expected_prefix} id: {exc}") from exc


@dataclass(frozen=True, slots=True)
class IdKind:
    """A family of ids sharing one persisted prefix. Prefixes must never change."""

    prefix: str

    def __post_init__(self) -> None:
        _checked_prefix(self.prefix)

    def new(self, *, timestamp_ms: int | None = None, randbytes: ByteSource | None = None) -> str:
        return generate_prefixed_id(self.prefix, timestamp_ms=timestamp_ms, randbytes=randbytes)

    def check(self, id_str: str) -> None:
        validate_prefixed_id(id_str, self.prefix)


RELEASE: Final = IdKind("rel")
TASK: Final = IdKind("task")
CYCLE: Final = IdKind("cyc")
BUILD: Final = IdKind("bld")
TICK: Final = IdKind("tick")
SESSION: Final = IdKind("sess")

generate_release_id = RELEASE.new
validate_release_id = RELEASE.check
generate_task_id = TASK.new
validate_task_id = TASK.check
generate_cycle_id = CYCLE.new
validate_cycle_id = CYCLE.check
generate_build_id = BUILD.new
validate_build_id = BUILD.check
generate_tick_id = TICK.new
generate_session_id = SESSION.new


def short_id(id_str: str) -> str:
    """Trailing 8 characters, enough to tell rows apart in a table or a log line."""
    if isinstance(id_str, str) and len(id_str) >= 8:
        return id_str[-8:]
    raise ValueError("id must be a string of at least 8 characters")


__all__ = [
    "BUILD",
    "CROCKFORD_BASE32_ALPHABET",
    "CYCLE",
    "RELEASE",
    "SESSION",
    "TASK",
    "TICK",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "IdKind",
    "generate_build_id",
    "generate_cycle_id",
    "generate_prefixed_id",
    "generate_release_id",
    "generate_session_id",
    "generate_task_id",
    "generate_tick_id",
    "generate_ulid",
    "parse_ulid_timestamp_ms",
    "short_id",
    "validate_build_id",
    "validate_cycle_id",
    "validate_prefixed_id",
    "validate_release_id",
    "validate_task_id",
    "validate_ulid",
]
