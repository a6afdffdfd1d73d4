"""Output rendering for the ``relorch`` CLI.

File: src/release_orchestrator/ui/render.py

Purpose
- Plain-text rendering of releases, snapshots, staged builds and tick reports.
- Respect the NO_COLOR environment variable and the --no-color flag.

Functional requirements
- Renderers take the JSON payloads the CLI also emits with ``--json`` so both
  outputs always describe the same data.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping, Sequence

from release_orchestrator.domain.base import JSONValue

_STATUS_MARKS = {
    "completed": "[x]",
    "skipped": "[-]",
    "failed": "[!]",
    "in_progress": "[>]",
    "awaiting_callback": "[~]",
    "awaiting_manual_build": "[b]",
    "pending": "[ ]",
}


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin CLI output renderer producing deterministic plain text."""

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        print(f"\n{title}")

    def warning(self, text: str) -> None:
        prefix = "\033[33mWarning\033[0m" if self._color else "Warning"
        print(f"  {prefix}: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table; nothing when there are no rows."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(list(headers))}")
        print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            print(f"  {_pad(list(row))}")

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            print(f"  $ {step}")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


def render_release_list(renderer: CLIRenderer, releases: Sequence[Mapping[str, JSONValue]]) -> None:
    if not releases:
        renderer.text("No releases found.")
        renderer.next_steps(["relorch create-release release.yaml"])
        return
    renderer.table(
        ("ID", "TENANT", "VERSION", "PHASE", "PLATFORMS"),
        [
            (
                _text(item.get("id")),
                _text(item.get("tenant_id")),
                _text(item.get("version")),
                _text(item.get("phase")),
                ",".join(_text(p) for p in _list(item.get("platforms"))),
            )
            for item in releases
        ],
    )


def render_snapshot(renderer: CLIRenderer, snapshot: Mapping[str, JSONValue]) -> None:
    release = _mapping(snapshot.get("release"))
    stage_status = _mapping(snapshot.get("stage_status"))
    renderer.kv("Release", release.get("id"))
    renderer.kv("Version", f"{release.get('version')} ({release.get('tenant_id')})")
    renderer.kv("Phase", release.get("phase"))
    renderer.kv("Branch", f"{release.get('branch_name')} <- {release.get('base_branch')}")
    renderer.kv(
        "Stages",
        " ".join(
            f"{stage}={stage_status.get(stage)}"
            for stage in ("kickoff", "regression", "post_regression")
        ),
    )
    armed = _list(stage_status.get("armed_transitions"))
    renderer.kv("Armed", ",".join(_text(item) for item in armed) or "(none)")
    if stage_status.get("is_executing"):
        renderer.warning(f"execution lock held by {stage_status.get('lock_owner')}")

    tasks = [_mapping(item) for item in _list(snapshot.get("tasks"))]
    renderer.table(
        ("", "STAGE", "TASK", "STATUS", "ID", "DETAIL"),
        [
            (
                _STATUS_MARKS.get(_text(task.get("status")), "[?]"),
                _text(task.get("stage")),
                _text(task.get("task_type")),
                _text(task.get("status")),
                _text(task.get("id")),
                _text(task.get("error")) if task.get("error") else "",
            )
            for task in tasks
        ],
        title="Tasks:",
    )

    cycles = [_mapping(item) for item in _list(snapshot.get("cycles"))]
    renderer.table(
        ("SLOT", "STATUS", "SCHEDULED", "TAG", "ID"),
        [
            (
                _text(cycle.get("slot_index")),
                _text(cycle.get("status")),
                _text(cycle.get("scheduled_at")),
                _text(cycle.get("tag")) if cycle.get("tag") else "",
                _text(cycle.get("id")),
            )
            for cycle in cycles
        ],
        title="Regression cycles:",
    )
    render_builds(
        renderer, [_mapping(item) for item in _list(snapshot.get("staged_builds"))],
        title="Staged builds:",
    )
    if renderer.verbose:
        render_builds(
            renderer,
            [_mapping(item) for item in _list(snapshot.get("consumed_builds"))],
            title="Consumed builds:",
        )


def render_builds(
    renderer: CLIRenderer,
    builds: Sequence[Mapping[str, JSONValue]],
    *,
    title: str | None = None,
) -> None:
    renderer.table(
        ("PLATFORM", "STAGE", "SOURCE", "LOCATOR", "CONSUMED BY", "ID"),
        [
            (
                _text(build.get("platform")),
                _text(build.get("stage")),
                _text(build.get("source")),
                _text(build.get("locator")) if build.get("locator") else "",
                _text(build.get("consumed_by_task_id")) if build.get("consumed_by_task_id") else "",
                _text(build.get("id")),
            )
            for build in builds
        ],
        title=title,
    )


def render_tick_report(renderer: CLIRenderer, report: Mapping[str, JSONValue]) -> None:
    renderer.kv("Tick", report.get("tick_id"))
    renderer.kv(
        "Releases",
        f"evaluated={report.get('evaluated')} skipped_busy={report.get('skipped_busy')} "
        f"failed={report.get('failed')}",
    )
    for result in (_mapping(item) for item in _list(report.get("results"))):
        if result.get("outcome") == "failed":
            renderer.warning(f"{result.get('release_id')}: {result.get('error')}")
        elif renderer.verbose:
            renderer.text(
                f"  {result.get('release_id')}: {result.get('outcome')} {result.get('phase') or ''}"
            )


def _mapping(value: JSONValue | None) -> Mapping[str, JSONValue]:
    return value if isinstance(value, Mapping) else {}


def _list(value: JSONValue | None) -> list[JSONValue]:
    return value if isinstance(value, list) else []


def _text(value: JSONValue | None) -> str:
    return "" if value is None else str(value)


__all__ = [
    "CLIRenderer",
    "create_renderer",
    "render_builds",
    "render_release_list",
    "render_snapshot",
    "render_tick_report",
]
