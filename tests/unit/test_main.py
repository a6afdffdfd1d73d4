"""Exit-code routing at the process boundary."""

from __future__ import annotations

import pytest

from release_orchestrator.config import ConfigLoadError
from release_orchestrator.errors import AdapterError, NotFoundError, ReleaseBusyError
from release_orchestrator.main import ExitCode, exit_code_for
from release_orchestrator.persistence.state_db import StateDBBusyError


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (NotFoundError("release rel-1 not found"), ExitCode.REJECTED),
        (ReleaseBusyError("rel-1", waited_seconds=30.0), ExitCode.REJECTED),
        (ConfigLoadError("config file not found"), ExitCode.CONFIG_ERROR),
        (StateDBBusyError("database is locked"), ExitCode.STORAGE_ERROR),
        (AdapterError("ci unreachable"), ExitCode.INTERNAL_ERROR),
        (PermissionError("state dir"), ExitCode.CONFIG_ERROR),
        (RuntimeError("boom"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_exit_code_for_known_failures(exc: BaseException, expected: ExitCode) -> None:
    assert exit_code_for(exc) is expected


def test_exit_code_follows_the_cause_chain() -> None:
    try:
        try:
            raise StateDBBusyError("database is locked")
        except StateDBBusyError as inner:
            raise RuntimeError("tick failed") from inner
    except RuntimeError as outer:
        assert exit_code_for(outer) is ExitCode.STORAGE_ERROR


def test_suppressed_context_is_not_followed() -> None:
    try:
        try:
            raise StateDBBusyError("database is locked")
        except StateDBBusyError:
            raise RuntimeError("tick failed") from None
    except RuntimeError as outer:
        assert exit_code_for(outer) is ExitCode.INTERNAL_ERROR
