"""
release-orchestrator: process entrypoint

File: src/release_orchestrator/main.py

Purpose
- Back ``python -m release_orchestrator`` and the ``relorch`` script.
- Turn whatever escapes the CLI into a stable exit code. Callers script against
  these codes, so an unknown failure is always 4 and prints a traceback.
"""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    REJECTED = 1
    CONFIG_ERROR = 2
    STORAGE_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    try:
        from release_orchestrator.ui.cli import run_cli

        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _as_exit_code(exc.code)
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return ExitCode.INTERNAL_ERROR
    except Exception as exc:  # noqa: BLE001 - process boundary
        code = exit_code_for(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(f"error: {str(exc).strip() or type(exc).__name__}", file=sys.stderr)
        return code


def exit_code_for(exc: BaseException) -> ExitCode:
    """Exit code for ``exc``, judged by the first recognised error in its cause chain."""
    from release_orchestrator.config import ConfigLoadError, ConfigValidationError
    from release_orchestrator.errors import AdapterError, OrchestrationError
    from release_orchestrator.persistence.state_db import StateDBError

    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((ConfigLoadError, ConfigValidationError), ExitCode.CONFIG_ERROR),
        ((StateDBError,), ExitCode.STORAGE_ERROR),
        ((AdapterError,), ExitCode.INTERNAL_ERROR),
        ((OrchestrationError,), ExitCode.REJECTED),
        ((FileNotFoundError, NotADirectoryError, PermissionError), ExitCode.CONFIG_ERROR),
    )
    for link in _cause_chain(exc):
        for types, code in routes:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _as_exit_code(raw: object) -> int:
    if raw is None:
        return ExitCode.SUCCESS
    if isinstance(raw, int) and raw in {code.value for code in ExitCode}:
        return raw
    if isinstance(raw, str) and raw.strip():
        print(raw.strip(), file=sys.stderr)
    return ExitCode.INTERNAL_ERROR


__all__ = ["ExitCode", "cli_entrypoint", "exit_code_for"]
