"""Stable constants shared across the orchestrator layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Bumped whenever a persisted shape changes.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 2
RELEASE_DEFINITION_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")
DEFAULT_STATE_DB_FILENAME: Final[str] = "releases.sqlite3"

# Scheduling loop defaults.
DEFAULT_TICK_INTERVAL_SECONDS: Final[int] = 60
MIN_TICK_INTERVAL_SECONDS: Final[int] = 1
DEFAULT_MAX_CONCURRENT_RELEASES: Final[int] = 8
DEFAULT_ADAPTER_TIMEOUT_SECONDS: Final[float] = 120.0
DEFAULT_INGRESS_LOCK_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_LOCK_STALE_AFTER_SECONDS: Final[int] = 900

# Release branches.
DEFAULT_BASE_BRANCH: Final[str] = "main"
DEFAULT_RELEASE_BRANCH_PREFIX: Final[str] = "release"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_ADAPTER_TIMEOUT_SECONDS",
    "DEFAULT_BASE_BRANCH",
    "DEFAULT_INGRESS_LOCK_TIMEOUT_SECONDS",
    "DEFAULT_LOCK_STALE_AFTER_SECONDS",
    "DEFAULT_MAX_CONCURRENT_RELEASES",
    "DEFAULT_RELEASE_BRANCH_PREFIX",
    "DEFAULT_STATE_DB_FILENAME",
    "DEFAULT_TICK_INTERVAL_SECONDS",
    "LOG_DIR",
    "MIN_TICK_INTERVAL_SECONDS",
    "RELEASE_DEFINITION_SCHEMA_VERSION",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
]
