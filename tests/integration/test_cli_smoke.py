"""
release-orchestrator: CLI subprocess smoke contracts

File: tests/integration/test_cli_smoke.py

Purpose
- Drive `python -m release_orchestrator` end to end: create a release, tick it,
  stage a build and read the snapshot back.
- Verify exit codes, deterministic JSON output and persistent state DB side effects.
"""

from __future__ import annotations

import json
import os
import sqlite3
import subprocess
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"

_DEFINITION = """\
tenant_id: acme
version: 4.2.0
platforms: [android, ios]
kickoff_at: 2026-03-02T09:00:00Z
regression_slots: [2026-03-04T09:00:00Z, 2026-03-06T09:00:00Z]
integrations: [source_control]
"""


def _run_cli(workdir: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("RELORCH_")}
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath if not existing_pythonpath else f"{src_pythonpath}:{existing_pythonpath}"
    )
    env["NO_COLOR"] = "1"
    return subprocess.run(
        [sys.executable, "-m", "release_orchestrator", *args],
        cwd=workdir,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )


def _run_json(workdir: Path, *args: str) -> dict[str, object]:
    completed = _run_cli(workdir, *args, "--json")
    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert isinstance(payload, dict)
    return payload


def test_create_tick_upload_and_status_round_trip(tmp_path: Path) -> None:
    state_db = tmp_path / "state" / "releases.sqlite3"
    definition = tmp_path / "release.yaml"
    definition.write_text(_DEFINITION, encoding="utf-8")
    common = ("--state-db", str(state_db))

    created = _run_json(tmp_path, "create-release", str(definition), *common)
    release = created["release"]
    assert isinstance(release, dict)
    release_id = str(release["id"])
    assert release["phase"] == "not_started"
    assert release["branch_name"] == "release/4.2.0"
    cycles = created["cycles"]
    assert isinstance(cycles, list)
    assert [cycle["slot_index"] for cycle in cycles] == [1, 2]

    tick = _run_json(tmp_path, "tick", *common)
    assert tick["command"] == "tick"
    assert tick["evaluated"] == 1
    assert tick["failed"] == 0

    uploaded = _run_json(
        tmp_path,
        "upload-build",
        release_id,
        "--platform",
        "ios",
        "--stage",
        "regression",
        "--locator",
        "s3://builds/ios/123.ipa",
        *common,
    )
    build = uploaded["build"]
    assert isinstance(build, dict)
    assert build["platform"] == "ios"
    assert build["consumed_by_task_id"] is None

    status = _run_json(tmp_path, "status", release_id, *common)
    snapshot = status["snapshot"]
    assert isinstance(snapshot, dict)
    assert snapshot["release"]["phase"] == "kickoff"  # type: ignore[index]
    tasks = {task["task_type"]: task["status"] for task in snapshot["tasks"]}  # type: ignore[index]
    assert tasks["fork_branch"] == "completed"
    staged = snapshot["staged_builds"]
    assert isinstance(staged, list)
    assert [item["locator"] for item in staged] == ["s3://builds/ios/123.ipa"]

    with sqlite3.connect(state_db) as conn:
        row = conn.execute("SELECT phase FROM releases WHERE id = ?", (release_id,)).fetchone()
    assert row is not None
    assert row[0] == "kickoff"

    log_files = list((tmp_path / "logs").rglob("relorch.jsonl"))
    assert log_files, "expected a JSONL session log per command"


def test_duplicate_release_and_bad_input_exit_codes(tmp_path: Path) -> None:
    state_db = tmp_path / "state" / "releases.sqlite3"
    definition = tmp_path / "release.yaml"
    definition.write_text(_DEFINITION, encoding="utf-8")
    common = ("--state-db", str(state_db))

    _run_json(tmp_path, "create-release", str(definition), *common)

    duplicate = _run_cli(tmp_path, "create-release", str(definition), *common)
    assert duplicate.returncode == 1
    assert "error:" in duplicate.stderr

    malformed = _run_cli(
        tmp_path, "upload-build", "not-a-release", "--platform", "ios", "--stage", "regression",
        *common,
    )
    assert malformed.returncode == 1

    broken = tmp_path / "broken.yaml"
    broken.write_text("tenant_id: acme\nversion: 4.3.0\nplatforms: []\n", encoding="utf-8")
    invalid = _run_cli(tmp_path, "create-release", str(broken), *common)
    assert invalid.returncode == 1
    assert "regression_slots" in invalid.stderr or "platforms" in invalid.stderr


def test_config_command_reports_the_effective_configuration(tmp_path: Path) -> None:
    config_path = tmp_path / "release_orchestrator.toml"
    config_path.write_text("[scheduler]\ntick_interval_seconds = 15\n", encoding="utf-8")

    payload = _run_json(tmp_path, "config", "--config", str(config_path))

    config = payload["config"]
    assert isinstance(config, dict)
    assert config["scheduler"]["tick_interval_seconds"] == 15
    assert payload["active_profile"] is None

    bad = tmp_path / "bad.toml"
    bad.write_text("[scheduler]\ntick_interval_seconds = 0\n", encoding="utf-8")
    rejected = _run_cli(tmp_path, "config", "--config", str(bad))
    assert rejected.returncode == 2
    assert "scheduler.tick_interval_seconds" in rejected.stderr


def test_operator_holds_and_repeated_retry_exit_zero(tmp_path: Path) -> None:
    state_db = tmp_path / "state" / "releases.sqlite3"
    definition = tmp_path / "release.yaml"
    definition.write_text(_DEFINITION, encoding="utf-8")
    common = ("--state-db", str(state_db))

    created = _run_json(tmp_path, "create-release", str(definition), *common)
    release_id = str(created["release"]["id"])  # type: ignore[index]
    _run_json(tmp_path, "tick", *common)
    status = _run_json(tmp_path, "status", release_id, *common)
    tasks = {task["task_type"]: task for task in status["snapshot"]["tasks"]}  # type: ignore[index]
    fork_id = str(tasks["fork_branch"]["id"])

    retried = _run_json(tmp_path, "retry", fork_id, *common)
    assert retried["accepted"] is False
    assert retried["reason"] == "not_failed"
    assert _run_cli(tmp_path, "retry", fork_id, *common).returncode == 0

    paused = _run_json(tmp_path, "pause", release_id, *common)
    assert paused["accepted"] is True
    assert paused["stage_status"]["pause_type"] == "user_requested"  # type: ignore[index]
    again = _run_json(tmp_path, "pause", release_id, *common)
    assert again["accepted"] is False
    assert again["reason"] == "already_paused"
    resumed = _run_json(tmp_path, "resume", release_id, *common)
    assert resumed["stage_status"]["pause_type"] == "none"  # type: ignore[index]
    assert _run_cli(tmp_path, "resume", release_id, *common).returncode == 1

    first = _run_json(tmp_path, "abandon-release", release_id, *common)
    second = _run_json(tmp_path, "abandon-release", release_id, *common)
    assert first["release"]["archived_at"] is not None  # type: ignore[index]
    assert second["release"] == first["release"]
    tick = _run_json(tmp_path, "tick", *common)
    assert tick["evaluated"] == 0
