"""
release-orchestrator: release definitions

File: src/release_orchestrator/engine/definitions.py

Purpose
- Describe a release to create: version, platforms, schedule, regression slots,
  configured integrations and build modes, feature flags and armed transitions.
- Load definitions from YAML documents. Every malformed field is reported as a
  ``ValidationError`` carrying its dotted path; nothing is persisted on failure.

Example
    tenant_id: acme
    version: 4.2.0
    platforms: [android, ios]
    kickoff_at: 2026-03-02T09:00:00Z
    regression_slots: [2026-03-04T09:00:00Z, 2026-03-06T09:00:00Z]
    integrations: [source_control, ci_cd, test_management]
    build_modes: {regression: manual}
    auto_transitions: [regression]
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path

import yaml

from release_orchestrator.constants import (
    DEFAULT_BASE_BRANCH,
    DEFAULT_RELEASE_BRANCH_PREFIX,
    RELEASE_DEFINITION_SCHEMA_VERSION,
)
from release_orchestrator.domain.base import (
    as_bool,
    as_enum,
    as_enum_tuple,
    as_int,
    as_optional_str,
    as_sequence,
    as_str,
    expect_object,
    fail,
)
from release_orchestrator.domain.enums import (
    BuildSource,
    Integration,
    Platform,
    ReleasePhase,
    Stage,
)
from release_orchestrator.errors import ValidationError

_ARMABLE = frozenset({ReleasePhase.REGRESSION, ReleasePhase.POST_REGRESSION, ReleasePhase.RELEASED})


@dataclass(frozen=True, slots=True)
class ReleaseDefinition:
    tenant_id: str
    version: str
    platforms: tuple[Platform, ...]
    regression_slots: tuple[datetime, ...]
    kickoff_at: datetime | None = None
    target_release_at: datetime | None = None
    branch_name: str | None = None
    base_branch: str = DEFAULT_BASE_BRANCH
    build_modes: Mapping[Stage, BuildSource] = field(default_factory=dict)
    integrations: tuple[Integration, ...] = (Integration.SOURCE_CONTROL,)
    pre_regression_builds: bool = False
    automation_runs: bool = False
    auto_transitions: tuple[ReleasePhase, ...] = ()

    def __post_init__(self) -> None:
        if not self.regression_slots:
            fail("ReleaseDefinition.regression_slots", "at least one regression slot is required")
        for index, slot in enumerate(self.regression_slots):
            if slot.tzinfo is None:
                fail(f"ReleaseDefinition.regression_slots[{index}]", "must be timezone-aware")
        if not self.platforms:
            fail("ReleaseDefinition.platforms", "must not be empty")
        unknown = [phase.value for phase in self.auto_transitions if phase not in _ARMABLE]
        if unknown:
            fail("ReleaseDefinition.auto_transitions", f"cannot arm {unknown}")
        if (
            self.kickoff_at is not None
            and self.target_release_at is not None
            and self.target_release_at < self.kickoff_at
        ):
            fail("ReleaseDefinition.target_release_at", "must be >= kickoff_at")

    @property
    def resolved_branch_name(self) -> str:
        return self.branch_name or f"{DEFAULT_RELEASE_BRANCH_PREFIX}/{self.version}"

    @classmethod
    def from_mapping(cls, data: object, *, path: str = "release") -> ReleaseDefinition:
        """Parse a definition; ``ValidationError`` names the first offending field."""
        try:
            return cls._parse(data, path)
        except ValidationError:
            raise
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    @classmethod
    def _parse(cls, data: object, path: str) -> ReleaseDefinition:
        parsed = expect_object(
            data,
            path,
            required={"tenant_id", "version", "platforms", "regression_slots"},
            optional={
                "schema_version",
                "kickoff_at",
                "target_release_at",
                "branch_name",
                "base_branch",
                "build_modes",
                "integrations",
                "pre_regression_builds",
                "automation_runs",
                "auto_transitions",
            },
        )
        schema_version = as_int(
            parsed.get("schema_version", RELEASE_DEFINITION_SCHEMA_VERSION),
            f"{path}.schema_version",
            minimum=1,
        )
        if schema_version != RELEASE_DEFINITION_SCHEMA_VERSION:
            fail(
                f"{path}.schema_version",
                f"unsupported version {schema_version} "
                f"(expected {RELEASE_DEFINITION_SCHEMA_VERSION})",
            )

        raw_modes = parsed.get("build_modes", {})
        if not isinstance(raw_modes, Mapping):
            fail(f"{path}.build_modes", f"expected object, got {type(raw_modes).__name__}")
        build_modes = {
            as_enum(Stage, key, f"{path}.build_modes.<key>"): as_enum(
                BuildSource, value, f"{path}.build_modes.{key}"
            )
            for key, value in raw_modes.items()
        }

        integrations = parsed.get("integrations")
        return cls(
            tenant_id=as_str(parsed["tenant_id"], f"{path}.tenant_id", max_len=128),
            version=as_str(parsed["version"], f"{path}.version", max_len=64),
            platforms=as_enum_tuple(
                Platform, parsed["platforms"], f"{path}.platforms", allow_empty=False
            ),
            regression_slots=tuple(
                sorted(
                    _as_timestamp(item, f"{path}.regression_slots[{index}]")
                    for index, item in enumerate(
                        as_sequence(parsed["regression_slots"], f"{path}.regression_slots")
                    )
                )
            ),
            kickoff_at=_as_optional_timestamp(parsed.get("kickoff_at"), f"{path}.kickoff_at"),
            target_release_at=_as_optional_timestamp(
                parsed.get("target_release_at"), f"{path}.target_release_at"
            ),
            branch_name=as_optional_str(
                parsed.get("branch_name"), f"{path}.branch_name", max_len=255
            ),
            base_branch=as_str(
                parsed.get("base_branch", DEFAULT_BASE_BRANCH), f"{path}.base_branch", max_len=255
            ),
            build_modes=build_modes,
            integrations=(
                (Integration.SOURCE_CONTROL,)
                if integrations is None
                else as_enum_tuple(
                    Integration, integrations, f"{path}.integrations", allow_empty=True
                )
            ),
            pre_regression_builds=as_bool(
                parsed.get("pre_regression_builds", False), f"{path}.pre_regression_builds"
            ),
            automation_runs=as_bool(
                parsed.get("automation_runs", False), f"{path}.automation_runs"
            ),
            auto_transitions=as_enum_tuple(
                ReleasePhase,
                parsed.get("auto_transitions", []),
                f"{path}.auto_transitions",
                allow_empty=True,
            ),
        )


def load_release_definition(source: str | Path) -> ReleaseDefinition:
    """Read a YAML release definition from ``source``."""
    path = Path(source)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"cannot read release definition {path}: {exc}") from exc
    return parse_release_definition(text, source_name=str(path))


def parse_release_definition(text: str, *, source_name: str = "<string>") -> ReleaseDefinition:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError(f"{source_name}: invalid YAML: {exc}") from exc
    return ReleaseDefinition.from_mapping(document)


def _as_timestamp(value: object, path: str) -> datetime:
    # YAML timestamps without an offset are UTC.
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    if isinstance(value, date):
        fail(path, "expected a date-time, got a bare date")
    text = as_str(value, path, max_len=64)
    try:
        parsed = datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
    except ValueError:
        fail(path, f"invalid ISO-8601 date-time: {text!r}")
    if parsed.tzinfo is None:
        fail(path, "date-time must carry a UTC offset")
    return parsed.astimezone(UTC)


def _as_optional_timestamp(value: object, path: str) -> datetime | None:
    return None if value is None else _as_timestamp(value, path)


__all__ = [
    "ReleaseDefinition",
    "load_release_definition",
    "parse_release_definition",
]
