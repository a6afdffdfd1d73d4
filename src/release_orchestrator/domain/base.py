"""
release-orchestrator: field readers and canonical JSON for domain records

File: src/release_orchestrator/domain/base.py

Purpose
- Read untrusted values (webhook bodies, YAML release definitions, stored rows) into
  typed fields. Each reader rejects with ``ValueError("<dotted.path>: <reason>")``.
- Turn dataclass records back into JSON-compatible trees with a stable key order.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Final, NoReturn, TypeVar

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

SCHEMA_VERSION: Final[int] = 1
MAX_TEXT: Final[int] = 8192
MAX_COLLECTION: Final[int] = 512


def fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _kind(value: object) -> str:
    return type(value).__name__


def canonical_json(value: JSONValue) -> str:
    """Compact JSON with sorted keys; equal trees always give equal text."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


class CanonicalModel:
    """Base for records that round-trip through ``to_dict``/``from_dict``."""

    def to_dict(self) -> dict[str, JSONValue]:
        name = type(self).__name__
        tree = serialize_value(self, name)
        if isinstance(tree, dict):
            return tree
        fail(name, "record did not serialize to an object")

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            fail(cls.__name__, f"from_json takes str, not {_kind(raw)}")
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            fail(cls.__name__, f"unparseable JSON ({exc})")
        if not isinstance(document, dict):
            fail(cls.__name__, f"top-level JSON value is {_kind(document)}, not an object")
        return cls.from_dict(document)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        raise NotImplementedError(f"{cls.__name__} does not define from_dict")


# ---------------------------------------------------------------------------
# Objects
# ---------------------------------------------------------------------------


def expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    """Copy a mapping whose key set must cover ``required`` and stay inside both sets.

    Unknown keys are reported before missing ones, each as a sorted list.
    """
    if not isinstance(value, Mapping):
        fail(path, f"expected object, got {_kind(value)}")
    bad_keys = [key for key in value if not isinstance(key, str)]
    if bad_keys:
        fail(path, f"keys must be strings, found {_kind(bad_keys[0])}")

    present = set(value)
    unknown = present - required - (optional or set())
    if unknown:
        fail(path, f"unexpected fields: {sorted(unknown)}")
    missing = required - present
    if missing:
        fail(path, f"missing required fields: {sorted(missing)}")
    return dict(value)


def as_str_dict(value: object, path: str, *, max_entries: int = 128) -> dict[str, str]:
    if not isinstance(value, Mapping):
        fail(path, f"expected object, got {_kind(value)}")
    if len(value) > max_entries:
        fail(path, f"holds {len(value)} entries; the limit is {max_entries}")
    result: dict[str, str] = {}
    for raw_key, raw_value in value.items():
        key = as_str(raw_key, f"{path}.<key>")
        result[key] = as_str(raw_value, f"{path}.{key}")
    return result


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------


def as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        fail(path, f"expected string, got {_kind(value)}")
    text = value.strip() if strip else value
    if not min_len <= len(text) <= max_len:
        fail(path, f"length {len(text)} is outside [{min_len}, {max_len}]")
    return text


def as_optional_str(value: object, path: str, *, max_len: int = MAX_TEXT) -> str | None:
    return None if value is None else as_str(value, path, max_len=max_len)


def as_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        fail(path, f"expected boolean, got {_kind(value)}")
    return value


def as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    # bool is an int subclass; a stray true must not read as 1.
    if type(value) is bool or not isinstance(value, int):
        fail(path, f"expected integer, got {_kind(value)}")
    if minimum is not None and value < minimum:
        fail(path, f"{value} is below the minimum of {minimum}")
    return value


def as_schema_version(value: object, path: str) -> int:
    return as_int(value, path, minimum=1)


def as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if type(value) is bool or not isinstance(value, (int, float)):
        fail(path, f"expected number, got {_kind(value)}")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        fail(path, "must be finite")
    if minimum is not None and number < minimum:
        fail(path, f"{number} is below the minimum of {minimum}")
    return number


def as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        wanted = value.strip().lower()
        for member in enum_type:
            if member.value == wanted:
                return member
        choices = ", ".join(sorted(str(member.value) for member in enum_type))
        fail(path, f"invalid value {value!r}; expected one of: {choices}")
    fail(path, f"expected {enum_type.__name__} name as string, got {_kind(value)}")


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


def as_datetime(value: object, path: str) -> datetime:
    """Accept an aware ``datetime`` or ISO-8601 text (``Z`` allowed); return it in UTC."""
    if isinstance(value, str):
        text = value.removesuffix("Z") + "+00:00" if value.endswith("Z") else value
        try:
            moment = datetime.fromisoformat(text)
        except ValueError as exc:
            fail(path, f"{value!r} is not ISO-8601 ({exc})")
    elif isinstance(value, datetime):
        moment = value
    else:
        fail(path, f"expected datetime or ISO-8601 text, got {_kind(value)}")
    if moment.utcoffset() is None:
        fail(path, "datetime must be timezone-aware UTC")
    return moment.astimezone(UTC)


def as_optional_datetime(value: object, path: str) -> datetime | None:
    return None if value is None else as_datetime(value, path)


def datetime_to_iso8601z(value: datetime) -> str:
    moment = as_datetime(value, "datetime")
    return moment.replace(tzinfo=None).isoformat(timespec="microseconds") + "Z"


# ---------------------------------------------------------------------------
# Sequences
# ---------------------------------------------------------------------------


def as_sequence(value: object, path: str) -> list[object]:
    if not isinstance(value, (list, tuple)):
        fail(path, f"expected array, got {_kind(value)}")
    if len(value) > MAX_COLLECTION:
        fail(path, f"{len(value)} items exceeds the limit of {MAX_COLLECTION}")
    return list(value)


def _non_empty(items: list[object], path: str, allow_empty: bool) -> list[object]:
    if not items and not allow_empty:
        fail(path, "must not be empty")
    return items


def _reject_repeats(items: tuple[object, ...], path: str) -> None:
    seen: set[object] = set()
    for item in items:
        if item in seen:
            fail(path, f"contains duplicate value {getattr(item, 'value', item)!r}")
        seen.add(item)


def as_str_tuple(
    value: object,
    path: str,
    *,
    allow_empty: bool,
    unique: bool,
    max_len: int = MAX_TEXT,
) -> tuple[str, ...]:
    items = _non_empty(as_sequence(value, path), path, allow_empty)
    texts = tuple(as_str(item, f"{path}[{i}]", max_len=max_len) for i, item in enumerate(items))
    if unique:
        _reject_repeats(texts, path)
    return texts


def as_enum_tuple(
    enum_type: type[TEnum],
    value: object,
    path: str,
    *,
    allow_empty: bool,
) -> tuple[TEnum, ...]:
    """Distinct members of ``enum_type`` in declaration order, whatever the input order."""
    items = _non_empty(as_sequence(value, path), path, allow_empty)
    members = tuple(as_enum(enum_type, item, f"{path}[{i}]") for i, item in enumerate(items))
    _reject_repeats(members, path)
    return tuple(member for member in enum_type if member in members)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_value(value: object, path: str) -> JSONValue:
    """Lower ``value`` to JSON types: enums by value, datetimes as ``...Z`` text,
    tuples as lists and dataclasses as objects in field order."""
    if isinstance(value, Enum):
        if not isinstance(value.value, str):
            fail(path, f"{type(value).__name__} has a non-string value")
        return value.value
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            fail(path, f"{value} cannot be written as JSON")
        return value
    if isinstance(value, datetime):
        return datetime_to_iso8601z(value)
    if isinstance(value, (list, tuple)):
        return [serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        tree: dict[str, JSONValue] = {}
        for key, item in value.items():
            if isinstance(key, Enum):
                key = key.value
            if not isinstance(key, str):
                fail(path, f"object keys must be strings, found {_kind(key)}")
            tree[key] = serialize_value(item, f"{path}.{key}")
        return tree
    if is_dataclass(value) and not isinstance(value, type):
        return {
            item.name: serialize_value(getattr(value, item.name), f"{path}.{item.name}")
            for item in fields(value)
        }
    fail(path, f"no JSON form for {_kind(value)}")


__all__ = [
    "MAX_COLLECTION",
    "MAX_TEXT",
    "SCHEMA_VERSION",
    "UTC",
    "CanonicalModel",
    "JSONScalar",
    "JSONValue",
    "StrEnum",
    "as_bool",
    "as_datetime",
    "as_enum",
    "as_enum_tuple",
    "as_float",
    "as_int",
    "as_optional_datetime",
    "as_optional_str",
    "as_schema_version",
    "as_sequence",
    "as_str",
    "as_str_dict",
    "as_str_tuple",
    "canonical_json",
    "datetime_to_iso8601z",
    "expect_object",
    "fail",
    "serialize_value",
]
