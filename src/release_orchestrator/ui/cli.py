"""Command-line interface router for release-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from release_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    assert_valid_config,
    load_config,
    redact_config,
)
from release_orchestrator.domain import ids
from release_orchestrator.domain.enums import (
    BuildSource,
    CallbackOutcome,
    Platform,
    ReleasePhase,
    Stage,
)
from release_orchestrator.engine import (
    Coordinator,
    EngineSettings,
    OrchestrationContext,
    load_release_definition,
)
from release_orchestrator.observability.logging import setup_logging, shutdown_logging
from release_orchestrator.ui.render import (
    CLIRenderer,
    create_renderer,
    render_builds,
    render_release_list,
    render_snapshot,
    render_tick_report,
)
from release_orchestrator.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """A command failed; ``exit_code`` is what the process should return."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Declare the ``relorch`` subcommands and their shared options."""

    parser = argparse.ArgumentParser(
        prog="relorch",
        description=(
            "release-orchestrator: drive mobile releases from kickoff to release.\n\n"
            "Common workflows:\n"
            "  relorch create-release release.yaml   Register a release\n"
            "  relorch run                           Tick all active releases forever\n"
            "  relorch status REL-ID                 Show one release in detail\n"
            "  relorch upload-build REL-ID ...       Stage a manually uploaded build\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./release_orchestrator.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Apply the named [profiles.<name>] overlay from the config file.",
    )
    common.add_argument(
        "--state-db",
        dest="state_db",
        default=None,
        help="Override paths.state_db from config.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Include per-task and per-build detail in reports.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Print plain text without ANSI colours; NO_COLOR has the same effect.",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # migrate -------------------------------------------------------------
    migrate_parser = subparsers.add_parser(
        "migrate",
        parents=[common],
        help="Create or upgrade the state database",
    )
    migrate_parser.set_defaults(handler=_cmd_migrate)

    # create-release ------------------------------------------------------
    create_parser = subparsers.add_parser(
        "create-release",
        parents=[common],
        help="Register a release from a YAML definition",
        description=(
            "Validate a YAML release definition and persist it as a NOT_STARTED release\n"
            "with one regression cycle per slot.\n\n"
            "Examples:\n"
            "  relorch create-release release.yaml\n"
            "  relorch create-release release.yaml --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    create_parser.add_argument("definition_path", help="Path to the release definition")
    create_parser.set_defaults(handler=_cmd_create_release)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="List releases, or show one release in detail",
        description=(
            "Without an id, list releases. With an id, show stages, tasks, regression\n"
            "cycles and staged builds.\n\n"
            "Examples:\n"
            "  relorch status\n"
            "  relorch status --phase regression\n"
            "  relorch status REL-01J... --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    status_parser.add_argument("release_id", nargs="?", default=None)
    status_parser.add_argument(
        "--phase", choices=[phase.value for phase in ReleasePhase], default=None
    )
    status_parser.add_argument("--limit", type=int, default=100)
    status_parser.set_defaults(handler=_cmd_status)

    # staged --------------------------------------------------------------
    staged_parser = subparsers.add_parser(
        "staged",
        parents=[common],
        help="List unconsumed builds of a release",
    )
    staged_parser.add_argument("release_id")
    staged_parser.add_argument("--stage", choices=[stage.value for stage in Stage], default=None)
    staged_parser.set_defaults(handler=_cmd_staged)

    # tick ----------------------------------------------------------------
    tick_parser = subparsers.add_parser(
        "tick",
        parents=[common],
        help="Evaluate every active release once",
    )
    tick_parser.set_defaults(handler=_cmd_tick)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Tick every scheduler.tick_interval_seconds until interrupted",
        description=(
            "Run the scheduling loop. SIGINT/SIGTERM stop it after the current tick.\n\n"
            "Examples:\n"
            "  relorch run\n"
            "  relorch run --max-ticks 3 --profile dev\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("--max-ticks", type=int, default=None)
    run_parser.set_defaults(handler=_cmd_run)

    # upload-build --------------------------------------------------------
    upload_parser = subparsers.add_parser(
        "upload-build",
        parents=[common],
        help="Stage a build for a release, replacing an unconsumed one",
        description=(
            "Record an uploaded build for one platform and stage. A build that is\n"
            "staged but not yet consumed for the same key is replaced.\n\n"
            "Examples:\n"
            "  relorch upload-build REL-01J... --platform ios --stage regression \\\n"
            "      --locator s3://builds/ios/123.ipa\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    upload_parser.add_argument("release_id")
    upload_parser.add_argument(
        "--platform", required=True, choices=[platform.value for platform in Platform]
    )
    upload_parser.add_argument("--stage", required=True, choices=[stage.value for stage in Stage])
    upload_parser.add_argument("--locator", default=None)
    upload_parser.add_argument(
        "--source",
        choices=[source.value for source in BuildSource],
        default=BuildSource.MANUAL.value,
    )
    upload_parser.set_defaults(handler=_cmd_upload_build)

    # callback ------------------------------------------------------------
    callback_parser = subparsers.add_parser(
        "callback",
        parents=[common],
        help="Deliver one platform's result for a task awaiting callbacks",
    )
    callback_parser.add_argument("task_id")
    callback_parser.add_argument(
        "--platform", required=True, choices=[platform.value for platform in Platform]
    )
    callback_parser.add_argument(
        "--outcome", required=True, choices=[outcome.value for outcome in CallbackOutcome]
    )
    callback_parser.add_argument("--locator", default=None)
    callback_parser.add_argument("--reason", default=None)
    callback_parser.set_defaults(handler=_cmd_callback)

    # retry ---------------------------------------------------------------
    retry_parser = subparsers.add_parser(
        "retry",
        parents=[common],
        help="Reset a FAILED task to PENDING",
    )
    retry_parser.add_argument("task_id")
    retry_parser.set_defaults(handler=_cmd_retry)

    # trigger-next-stage --------------------------------------------------
    trigger_parser = subparsers.add_parser(
        "trigger-next-stage",
        parents=[common],
        help="Advance a release whose current stage is complete",
    )
    trigger_parser.add_argument("release_id")
    trigger_parser.set_defaults(handler=_cmd_trigger_next_stage)

    # abandon-cycle -------------------------------------------------------
    abandon_parser = subparsers.add_parser(
        "abandon-cycle",
        parents=[common],
        help="Abandon a regression cycle and skip its unfinished tasks",
    )
    abandon_parser.add_argument("cycle_id")
    abandon_parser.set_defaults(handler=_cmd_abandon_cycle)

    # add-slot ------------------------------------------------------------
    slot_parser = subparsers.add_parser(
        "add-slot",
        parents=[common],
        help="Schedule an extra regression cycle",
    )
    slot_parser.add_argument("release_id")
    slot_parser.add_argument(
        "--at",
        dest="scheduled_at",
        required=True,
        help="ISO-8601 timestamp; naive values are taken as UTC.",
    )
    slot_parser.set_defaults(handler=_cmd_add_slot)

    # arm -----------------------------------------------------------------
    arm_parser = subparsers.add_parser(
        "arm",
        parents=[common],
        help="Arm or disarm automatic entry into a phase",
    )
    arm_parser.add_argument("release_id")
    arm_parser.add_argument(
        "--phase", required=True, choices=[phase.value for phase in ReleasePhase]
    )
    arm_parser.add_argument("--disarm", action="store_true", default=False)
    arm_parser.set_defaults(handler=_cmd_arm)

    # abandon-release -----------------------------------------------------
    abandon_release_parser = subparsers.add_parser(
        "abandon-release",
        parents=[common],
        help="Archive a release so the scheduler never evaluates it again",
    )
    abandon_release_parser.add_argument("release_id")
    abandon_release_parser.set_defaults(handler=_cmd_abandon_release)

    # pause / resume ------------------------------------------------------
    pause_parser = subparsers.add_parser(
        "pause",
        parents=[common],
        help="Hold a release back from the scheduling loop",
    )
    pause_parser.add_argument("release_id")
    pause_parser.set_defaults(handler=_cmd_pause)

    resume_parser = subparsers.add_parser(
        "resume",
        parents=[common],
        help="Lift an operator pause",
    )
    resume_parser.add_argument("release_id")
    resume_parser.set_defaults(handler=_cmd_resume)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective (redacted) configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Run one ``relorch`` invocation and return its exit status."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_migrate(args: argparse.Namespace) -> int:
    with _session(args) as coordinator:
        version = coordinator.context.db.schema_version()
        path = str(coordinator.context.db.path)
    if _flag(args, "json"):
        _emit_json({"command": "migrate", "state_db": path, "schema_version": version})
        return 0
    renderer = _get_renderer(args)
    renderer.kv("State DB", path)
    renderer.kv("Schema version", version)
    return 0


def _cmd_create_release(args: argparse.Namespace) -> int:
    path = _require_str(getattr(args, "definition_path", None), "definition_path")
    definition = load_release_definition(Path(path).expanduser())
    with _session(args) as coordinator:
        release = coordinator.create_release(definition)
        cycles = coordinator.context.cycles.list_for_release(release.id)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "create-release",
                "release": release.to_dict(),
                "cycles": [cycle.to_dict() for cycle in cycles],
            }
        )
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Created", release.id)
    renderer.kv("Version", f"{release.version} ({release.tenant_id})")
    renderer.kv("Regression slots", len(cycles))
    renderer.next_steps([f"relorch status {release.id}", "relorch run"])
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    release_id = _optional_str(getattr(args, "release_id", None))
    with _session(args) as coordinator:
        if release_id is None:
            releases = coordinator.list_releases(
                phase=_optional_str(getattr(args, "phase", None)),
                limit=int(getattr(args, "limit", 100)),
            )
            payload: dict[str, Any] = {
                "command": "status",
                "releases": [release.to_dict() for release in releases],
            }
        else:
            payload = {
                "command": "status",
                "snapshot": coordinator.snapshot(release_id).to_dict(),
            }

    if _flag(args, "json"):
        _emit_json(payload)
        return 0
    renderer = _get_renderer(args)
    if release_id is None:
        render_release_list(renderer, payload["releases"])
    else:
        render_snapshot(renderer, payload["snapshot"])
    return 0


def _cmd_staged(args: argparse.Namespace) -> int:
    release_id = _require_str(getattr(args, "release_id", None), "release_id")
    with _session(args) as coordinator:
        builds = coordinator.list_staged(
            release_id, stage=_optional_str(getattr(args, "stage", None))
        )
    payload = [build.to_dict() for build in builds]
    if _flag(args, "json"):
        _emit_json({"command": "staged", "release_id": release_id, "builds": payload})
        return 0
    renderer = _get_renderer(args)
    if not payload:
        renderer.text("No staged builds.")
        return 0
    render_builds(renderer, payload)
    return 0


def _cmd_tick(args: argparse.Namespace) -> int:
    with _session(args) as coordinator:
        report = asyncio.run(coordinator.tick())
    payload = report.to_dict()
    if _flag(args, "json"):
        _emit_json({"command": "tick", **payload})
    else:
        render_tick_report(_get_renderer(args), payload)
    return 1 if report.failed else 0


def _cmd_run(args: argparse.Namespace) -> int:
    max_ticks = getattr(args, "max_ticks", None)
    if max_ticks is not None and max_ticks <= 0:
        raise CLIError("--max-ticks must be > 0", exit_code=2)

    async def _serve(coordinator: Coordinator) -> int:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, token.cancel)
        return await coordinator.run_forever(token, max_ticks=max_ticks)

    with _session(args) as coordinator:
        ticks = asyncio.run(_serve(coordinator))
    if _flag(args, "json"):
        _emit_json({"command": "run", "ticks": ticks})
    else:
        _get_renderer(args).kv("Ticks", ticks)
    return 0


def _cmd_upload_build(args: argparse.Namespace) -> int:
    release_id = _require_str(getattr(args, "release_id", None), "release_id")
    with _session(args) as coordinator:
        build = asyncio.run(
            coordinator.on_build_uploaded(
                release_id,
                _require_str(getattr(args, "platform", None), "platform"),
                _require_str(getattr(args, "stage", None), "stage"),
                locator=_optional_str(getattr(args, "locator", None)),
                source=_require_str(getattr(args, "source", None), "source"),
            )
        )
    if _flag(args, "json"):
        _emit_json({"command": "upload-build", "build": build.to_dict()})
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Staged", build.id)
    renderer.kv("Key", f"{build.platform.value}/{build.stage.value}")
    return 0


def _cmd_callback(args: argparse.Namespace) -> int:
    task_id = _require_str(getattr(args, "task_id", None), "task_id")
    with _session(args) as coordinator:
        result = asyncio.run(
            coordinator.on_callback(
                task_id,
                _require_str(getattr(args, "platform", None), "platform"),
                _require_str(getattr(args, "outcome", None), "outcome"),
                locator=_optional_str(getattr(args, "locator", None)),
                reason=_optional_str(getattr(args, "reason", None)),
            )
        )
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "callback",
                "applied": result.applied,
                "reason": result.reason,
                "task": result.task.to_dict(),
            }
        )
        return 0
    renderer = _get_renderer(args)
    if result.applied:
        renderer.kv("Applied", f"{result.task.id} -> {result.task.status.value}")
    else:
        renderer.warning(f"callback ignored: {result.reason}")
    return 0


def _cmd_retry(args: argparse.Namespace) -> int:
    task_id = _require_str(getattr(args, "task_id", None), "task_id")
    with _session(args) as coordinator:
        outcome = asyncio.run(coordinator.retry_task(task_id))
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "retry",
                "accepted": outcome.accepted,
                "reason": outcome.reason,
                "task": outcome.task.to_dict(),
            }
        )
    elif outcome.accepted:
        _get_renderer(args).kv("Reset", f"{outcome.task.id} -> {outcome.task.status.value}")
    else:
        _get_renderer(args).warning(f"retry rejected: {outcome.reason}")
    return 0


def _cmd_trigger_next_stage(args: argparse.Namespace) -> int:
    release_id = _require_str(getattr(args, "release_id", None), "release_id")
    with _session(args) as coordinator:
        release = asyncio.run(coordinator.trigger_next_stage(release_id))
    if _flag(args, "json"):
        _emit_json({"command": "trigger-next-stage", "release": release.to_dict()})
        return 0
    _get_renderer(args).kv("Phase", release.phase.value)
    return 0


def _cmd_abandon_cycle(args: argparse.Namespace) -> int:
    cycle_id = _require_str(getattr(args, "cycle_id", None), "cycle_id")
    with _session(args) as coordinator:
        cycle = asyncio.run(coordinator.abandon_cycle(cycle_id))
    if _flag(args, "json"):
        _emit_json({"command": "abandon-cycle", "cycle": cycle.to_dict()})
        return 0
    _get_renderer(args).kv("Abandoned", f"{cycle.id} (slot {cycle.slot_index})")
    return 0


def _cmd_add_slot(args: argparse.Namespace) -> int:
    release_id = _require_str(getattr(args, "release_id", None), "release_id")
    scheduled_at = _parse_timestamp(_require_str(getattr(args, "scheduled_at", None), "--at"))
    with _session(args) as coordinator:
        cycle = asyncio.run(coordinator.add_regression_slot(release_id, scheduled_at))
    if _flag(args, "json"):
        _emit_json({"command": "add-slot", "cycle": cycle.to_dict()})
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Cycle", cycle.id)
    renderer.kv("Slot", cycle.slot_index)
    return 0


def _cmd_arm(args: argparse.Namespace) -> int:
    release_id = _require_str(getattr(args, "release_id", None), "release_id")
    with _session(args) as coordinator:
        record = asyncio.run(
            coordinator.arm_transition(
                release_id,
                _require_str(getattr(args, "phase", None), "phase"),
                armed=not _flag(args, "disarm"),
            )
        )
    if _flag(args, "json"):
        _emit_json({"command": "arm", "stage_status": record.to_dict()})
        return 0
    armed = ",".join(phase.value for phase in record.armed_transitions) or "(none)"
    _get_renderer(args).kv("Armed", armed)
    return 0


def _cmd_abandon_release(args: argparse.Namespace) -> int:
    release_id = _require_str(getattr(args, "release_id", None), "release_id")
    with _session(args) as coordinator:
        release = asyncio.run(coordinator.abandon_release(release_id))
    if _flag(args, "json"):
        _emit_json({"command": "abandon-release", "release": release.to_dict()})
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Abandoned", release.id)
    renderer.kv("Phase", release.phase.value)
    return 0


def _cmd_pause(args: argparse.Namespace) -> int:
    release_id = _require_str(getattr(args, "release_id", None), "release_id")
    with _session(args) as coordinator:
        outcome = asyncio.run(coordinator.pause_release(release_id))
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "pause",
                "accepted": outcome.accepted,
                "reason": outcome.reason,
                "stage_status": outcome.record.to_dict(),
            }
        )
    elif outcome.accepted:
        _get_renderer(args).kv("Paused", release_id)
    else:
        _get_renderer(args).warning(f"pause ignored: {outcome.reason}")
    return 0


def _cmd_resume(args: argparse.Namespace) -> int:
    release_id = _require_str(getattr(args, "release_id", None), "release_id")
    with _session(args) as coordinator:
        record = asyncio.run(coordinator.resume_release(release_id))
    if _flag(args, "json"):
        _emit_json({"command": "resume", "stage_status": record.to_dict()})
        return 0
    _get_renderer(args).kv("Resumed", record.release_id)
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = redact_config(config)

    payload: dict[str, object] = {
        "command": "config",
        "active_profile": profile,
        "config": redacted,
    }

    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Print ``payload`` as one compact sorted-key JSON line."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


# ---------------------------------------------------------------------------
# Helpers: config, session, parsing
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    overrides: dict[str, object] = {}
    state_db = _optional_str(getattr(args, "state_db", None))
    if state_db is not None:
        overrides["paths.state_db"] = str(Path(state_db).expanduser().resolve())

    try:
        loaded = load_config(config_path, profile=profile, cli_overrides=overrides)
        validated = assert_valid_config(loaded, active_profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    return {key: value for key, value in validated.items()}


@contextlib.contextmanager
def _session(args: argparse.Namespace) -> Iterator[Coordinator]:
    """Logging, settings and an opened state DB for one command invocation."""

    config = _load_effective_config(args)
    try:
        settings = EngineSettings.from_config(config["scheduler"])
    except ValueError as exc:
        raise CLIError(f"scheduler: {exc}", exit_code=2) from exc

    state_db = Path(config["paths"]["state_db"])
    handle = setup_logging(config["observability"], session_id=ids.generate_session_id())
    try:
        ctx = OrchestrationContext.open(state_db, settings=settings)
        yield Coordinator(ctx)
    finally:
        shutdown_logging(handle)


def _parse_timestamp(raw: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise CLIError(f"invalid timestamp {raw!r}: {exc}", exit_code=2) from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise CLIError(f"missing required argument: {name}", exit_code=2)
    return value.strip()


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
