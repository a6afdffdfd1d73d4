"""Release definition parsing from YAML documents."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from release_orchestrator.domain.enums import (
    BuildSource,
    Integration,
    Platform,
    ReleasePhase,
    Stage,
)
from release_orchestrator.engine import load_release_definition, parse_release_definition
from release_orchestrator.errors import ValidationError

if TYPE_CHECKING:
    from pathlib import Path

FULL_DEFINITION = """
tenant_id: acme
version: 4.2.0
platforms: [android, ios]
kickoff_at: 2026-03-02T09:00:00Z
target_release_at: "2026-03-20T17:00:00+01:00"
regression_slots: [2026-03-06T09:00:00Z, 2026-03-04T09:00:00Z]
integrations: [source_control, ci_cd, test_management]
build_modes: {regression: manual}
pre_regression_builds: true
auto_transitions: [regression]
"""


def _minimal(**lines: str) -> str:
    fields = {
        "tenant_id": "acme",
        "version": "4.2.0",
        "platforms": "[android]",
        "regression_slots": "[2026-03-04T09:00:00Z]",
    }
    fields.update(lines)
    return "\n".join(f"{key}: {value}" for key, value in fields.items()) + "\n"


def test_full_definition_is_parsed() -> None:
    definition = parse_release_definition(FULL_DEFINITION)

    assert definition.tenant_id == "acme"
    assert definition.version == "4.2.0"
    assert definition.platforms == (Platform.ANDROID, Platform.IOS)
    assert definition.kickoff_at == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    assert definition.target_release_at == datetime(2026, 3, 20, 16, 0, tzinfo=UTC)
    assert definition.regression_slots == (
        datetime(2026, 3, 4, 9, 0, tzinfo=UTC),
        datetime(2026, 3, 6, 9, 0, tzinfo=UTC),
    )
    assert definition.integrations == (
        Integration.SOURCE_CONTROL,
        Integration.CI_CD,
        Integration.TEST_MANAGEMENT,
    )
    assert definition.build_modes == {Stage.REGRESSION: BuildSource.MANUAL}
    assert definition.pre_regression_builds is True
    assert definition.automation_runs is False
    assert definition.auto_transitions == (ReleasePhase.REGRESSION,)
    assert definition.resolved_branch_name == "release/4.2.0"
    assert definition.base_branch == "main"


def test_defaults_apply_to_a_minimal_definition() -> None:
    definition = parse_release_definition(_minimal(branch_name="hotfix/4.2.0"))

    assert definition.integrations == (Integration.SOURCE_CONTROL,)
    assert definition.auto_transitions == ()
    assert definition.kickoff_at is None
    assert definition.resolved_branch_name == "hotfix/4.2.0"


def test_timestamps_without_offset_are_utc_only_when_yaml_typed() -> None:
    typed = parse_release_definition(_minimal(regression_slots="[2026-03-04 09:00:00]"))
    assert typed.regression_slots == (datetime(2026, 3, 4, 9, 0, tzinfo=UTC),)

    with pytest.raises(ValidationError, match="UTC offset"):
        parse_release_definition(_minimal(regression_slots='["2026-03-04T09:00:00"]'))


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"regression_slots": "[2026-03-04]"}, "bare date"),
        ({"regression_slots": "[]"}, "at least one regression slot"),
        ({"regression_slots": '["next tuesday"]'}, "invalid ISO-8601"),
        ({"platforms": "[]"}, "platforms"),
        ({"platforms": "[blackberry]"}, "platforms"),
        ({"auto_transitions": "[kickoff]"}, "cannot arm"),
        ({"build_modes": "{regression: nightly}"}, "build_modes.regression"),
        ({"schema_version": "2"}, "unsupported version"),
        ({"owner": "release-team"}, "unexpected fields"),
        (
            {"kickoff_at": "2026-03-10T09:00:00Z", "target_release_at": "2026-03-01T09:00:00Z"},
            "target_release_at",
        ),
    ],
)
def test_malformed_fields_are_reported_by_path(
    overrides: dict[str, str], message: str
) -> None:
    with pytest.raises(ValidationError, match=message):
        parse_release_definition(_minimal(**overrides))


def test_missing_required_field_is_reported() -> None:
    with pytest.raises(ValidationError, match="missing required fields: \\['regression_slots'\\]"):
        parse_release_definition("tenant_id: acme\nversion: 1.0.0\nplatforms: [web]\n")


def test_documents_that_are_not_mappings_are_rejected() -> None:
    with pytest.raises(ValidationError, match="invalid YAML"):
        parse_release_definition("tenant_id: [unterminated\n")
    with pytest.raises(ValidationError, match="expected object"):
        parse_release_definition("- just\n- a list\n")


def test_definitions_load_from_files(tmp_path: Path) -> None:
    path = tmp_path / "release.yaml"
    path.write_text(FULL_DEFINITION, encoding="utf-8")

    assert load_release_definition(path).version == "4.2.0"
    with pytest.raises(ValidationError, match="cannot read release definition"):
        load_release_definition(tmp_path / "missing.yaml")
