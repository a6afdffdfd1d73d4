"""
release-orchestrator: unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Layering of built-in defaults, release_orchestrator.toml, profiles, RELORCH_* variables
  and dotted CLI overrides, with the later layer winning.
- Environment strings are typed after the default they replace.
- Relative paths resolve against the config file directory.
- The effective-config dump masks secrets.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from release_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    env_var_name,
    load_config,
)


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "release_orchestrator.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[scheduler]
tick_interval_seconds = 30
""".strip(),
    )
    env = {"RELORCH_SCHEDULER_TICK_INTERVAL_SECONDS": "20"}

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ=env)
    cli_loaded = load_config(
        config_path,
        environ=env,
        cli_overrides={"scheduler.tick_interval_seconds": 10},
    )

    assert default_loaded["scheduler"]["tick_interval_seconds"] == 60
    assert file_loaded["scheduler"]["tick_interval_seconds"] == 30
    assert env_loaded["scheduler"]["tick_interval_seconds"] == 20
    assert cli_loaded["scheduler"]["tick_interval_seconds"] == 10


def test_profile_overlay_sits_between_file_and_env(tmp_path: Path) -> None:
    config_path = tmp_path / "release_orchestrator.toml"
    _write_config(
        config_path,
        """
[profiles.ci.scheduler]
max_concurrent_releases = 3
""".strip(),
    )

    development = load_config(config_path, profile="development", environ={})
    assert development["observability"]["log_level"] == "DEBUG"
    assert development["scheduler"]["tick_interval_seconds"] == 5

    from_env = load_config(
        config_path,
        environ={"RELORCH_PROFILE": "ci", "RELORCH_SCHEDULER_MAX_CONCURRENT_RELEASES": "4"},
    )
    assert from_env["scheduler"]["max_concurrent_releases"] == 4
    assert load_config(config_path, cli_overrides={"profile": "ci"}, environ={})[
        "scheduler"
    ]["max_concurrent_releases"] == 3

    with pytest.raises(ConfigValidationError, match="profile 'staging' is not defined"):
        load_config(config_path, profile="staging", environ={})


def test_env_values_are_coerced_by_default_type(tmp_path: Path) -> None:
    config_path = tmp_path / "release_orchestrator.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "RELORCH_SCHEDULER_ADAPTER_TIMEOUT_SECONDS": "12.5",
            "RELORCH_OBSERVABILITY_LOG_TO_STDOUT": "yes",
            "RELORCH_OBSERVABILITY_LOG_LEVEL": "warning",
            "RELORCH_UNRELATED": "ignored",
        },
    )

    assert loaded["scheduler"]["adapter_timeout_seconds"] == 12.5
    assert loaded["observability"]["log_to_stdout"] is True
    assert loaded["observability"]["log_level"] == "WARNING"


def test_invalid_env_coercion_raises_actionable_error(tmp_path: Path) -> None:
    config_path = tmp_path / "release_orchestrator.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match="RELORCH_SCHEDULER_TICK_INTERVAL_SECONDS"):
        load_config(config_path, environ={"RELORCH_SCHEDULER_TICK_INTERVAL_SECONDS": "soon"})
    with pytest.raises(ConfigLoadError, match="must be a boolean"):
        load_config(config_path, environ={"RELORCH_OBSERVABILITY_REDACT_SECRETS": "maybe"})


def test_file_errors_are_reported(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "missing.toml", environ={})

    broken = tmp_path / "broken.toml"
    _write_config(broken, "[scheduler\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})

    invalid = tmp_path / "invalid.toml"
    _write_config(invalid, "[scheduler]\ntick_interval_seconds = 0\n")
    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(invalid, environ={})
    assert [issue.path for issue in excinfo.value.issues] == ["scheduler.tick_interval_seconds"]


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / "release_orchestrator.toml"
    _write_config(config_path, "[observability]\nlog_level = \"ERROR\"\n")

    first = load_config(config_path, environ={})
    second = load_config(config_path, environ={})

    assert first == second
    assert dump_effective_config(first) == dump_effective_config(second)


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "release_orchestrator.toml"
    _write_config(
        config_path,
        """
[paths]
state_db = "data/releases.sqlite3"

[observability]
log_dir = "/var/log/relorch"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    expected_db = (tmp_path / "nested" / "data" / "releases.sqlite3").resolve().as_posix()
    assert loaded["paths"]["state_db"] == expected_db
    assert loaded["observability"]["log_dir"] == "/var/log/relorch"


def test_dump_effective_config_is_redacted_and_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "release_orchestrator.toml"
    _write_config(config_path, "")
    loaded = load_config(config_path, environ={})
    loaded["observability"]["webhook_secret"] = "s3cr3t"

    compact = dump_effective_config(loaded)
    pretty = dump_effective_config(loaded, indent=2)

    assert "s3cr3t" not in compact
    assert json.loads(compact) == json.loads(pretty)
    assert json.loads(compact)["observability"]["webhook_secret"] == "<redacted>"
    assert "\n" in pretty


def test_env_var_names_follow_the_config_path() -> None:
    assert env_var_name(("scheduler", "tick_interval_seconds")) == (
        "RELORCH_SCHEDULER_TICK_INTERVAL_SECONDS"
    )
    assert env_var_name(("observability", "log_dir")) == "RELORCH_OBSERVABILITY_LOG_DIR"
