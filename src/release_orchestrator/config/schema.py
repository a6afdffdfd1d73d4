"""
release-orchestrator: configuration schema and validation.

File: src/release_orchestrator/config/schema.py

Purpose
- Built-in defaults for the scheduler, state paths and session logging.
- Validate a config tree against a declarative field table and report every
  problem at once, each with its dotted path.
- Profiles (``development``, ``production`` or user-defined) overlay the
  ``scheduler``, ``paths`` and ``observability`` sections only.
- Secrets never live in config: a secret-looking key is rejected, and integrations
  name the env var holding a credential through an ``*_env`` key.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from release_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_ADAPTER_TIMEOUT_SECONDS,
    DEFAULT_INGRESS_LOCK_TIMEOUT_SECONDS,
    DEFAULT_LOCK_STALE_AFTER_SECONDS,
    DEFAULT_MAX_CONCURRENT_RELEASES,
    DEFAULT_STATE_DB_FILENAME,
    DEFAULT_TICK_INTERVAL_SECONDS,
    LOG_DIR,
    MIN_TICK_INTERVAL_SECONDS,
    STATE_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("development", "production")

# Resolved against the config file's directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("observability", "log_dir"),
)

_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
_PROFILE_NAME = re.compile(r"^[a-z][a-z0-9_-]*$")

_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "credentials"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
)
_SECRET_KEY_MESSAGE: Final[str] = (
    "embedded secret values are forbidden; use an *_env key with an env var name"
)


class MetaConfig(TypedDict):
    schema_version: int


class SchedulerConfig(TypedDict):
    tick_interval_seconds: int
    max_concurrent_releases: int
    adapter_timeout_seconds: float
    ingress_lock_timeout_seconds: float
    lock_stale_after_seconds: int


class PathsConfig(TypedDict):
    state_db: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    scheduler: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    scheduler: SchedulerConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "scheduler": {
        "tick_interval_seconds": DEFAULT_TICK_INTERVAL_SECONDS,
        "max_concurrent_releases": DEFAULT_MAX_CONCURRENT_RELEASES,
        "adapter_timeout_seconds": DEFAULT_ADAPTER_TIMEOUT_SECONDS,
        "ingress_lock_timeout_seconds": DEFAULT_INGRESS_LOCK_TIMEOUT_SECONDS,
        "lock_stale_after_seconds": DEFAULT_LOCK_STALE_AFTER_SECONDS,
    },
    "paths": {"state_db": f"{STATE_DIR}/{DEFAULT_STATE_DB_FILENAME}"},
    "observability": {
        "log_level": "INFO",
        "log_dir": str(LOG_DIR),
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "development": {
            "scheduler": {"tick_interval_seconds": 5, "max_concurrent_releases": 2},
            "observability": {"log_level": "DEBUG", "log_to_stdout": True},
        },
        "production": {
            "scheduler": {"tick_interval_seconds": DEFAULT_TICK_INTERVAL_SECONDS},
            "observability": {"log_level": "INFO", "log_to_stdout": False},
        },
    },
}

_Kind = Literal["int", "float", "bool", "path", "level"]


@dataclass(frozen=True, slots=True)
class _Field:
    kind: _Kind
    # Inclusive for ints, exclusive for floats.
    bound: int | float | None = None


_SECTIONS: Final[dict[str, dict[str, _Field]]] = {
    "meta": {"schema_version": _Field("int", 1)},
    "scheduler": {
        "tick_interval_seconds": _Field("int", MIN_TICK_INTERVAL_SECONDS),
        "max_concurrent_releases": _Field("int", 1),
        "adapter_timeout_seconds": _Field("float", 0.0),
        "ingress_lock_timeout_seconds": _Field("float", 0.0),
        "lock_stale_after_seconds": _Field("int", 1),
    },
    "paths": {"state_db": _Field("path")},
    "observability": {
        "log_level": _Field("level"),
        "log_dir": _Field("path"),
        "log_to_stdout": _Field("bool"),
        "redact_secrets": _Field("bool"),
    },
}
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = ("scheduler", "paths", "observability")


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Normalized config, or ``None`` with the issues that prevented it."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Invalid(Exception):
    """One field value failed conversion; the message is user-facing."""


def default_config() -> OrchestratorConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade release_orchestrator.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the release-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base``; neither input is mutated."""
    merged: dict[str, Any] = {
        key: copy.deepcopy(value) for key, value in base.items() if isinstance(key, str)
    }
    for key, value in overlay.items():
        if not isinstance(value, Mapping):
            merged[key] = copy.deepcopy(value)
            continue
        current = merged.get(key)
        merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge ``profiles.<profile>`` over ``config`` and validate the result."""
    name = (profile or "").strip()
    if not name:
        return merge_config({}, config)

    profiles = config.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {name!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=name)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    checker = _Checker()
    root = checker.mapping(config, "<root>")
    if root is None:
        return ConfigValidationResult(None, checker.issues_tuple())

    normalized = checker.tree(root, "", overlay=False)
    wanted = (active_profile or "").strip()
    if wanted and wanted not in normalized.get("profiles", {}):
        checker.flag("profiles", f"profile {wanted!r} is not defined")

    if checker.issues:
        return ConfigValidationResult(None, checker.issues_tuple())
    return ConfigValidationResult(normalized, ())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking values replaced by ``<redacted>``."""
    if not isinstance(config, Mapping):
        return {}
    return _redacted_mapping(config)


def looks_like_secret(key: str) -> bool:
    """True for keys such as ``webhookSecret`` or ``api_key``; ``*_env`` keys never are."""
    snake = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key.strip()).lower()
    normalized = re.sub(r"[^a-z0-9]+", "_", snake).strip("_")
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SECRET_PHRASES):
        return True
    return not _SECRET_WORDS.isdisjoint(normalized.split("_"))


class _Checker:
    """Walks a config tree against ``_SECTIONS`` and collects issues."""

    def __init__(self) -> None:
        self.issues: list[ConfigValidationIssue] = []

    def flag(self, path: str, message: str) -> None:
        self.issues.append(ConfigValidationIssue(path, message))

    def issues_tuple(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self.issues)

    def mapping(self, value: object, path: str) -> dict[str, object] | None:
        if not isinstance(value, Mapping):
            self.flag(path, f"expected object, got {type(value).__name__}")
            return None
        body: dict[str, object] = {}
        for key, item in value.items():
            if isinstance(key, str):
                body[key] = item
            else:
                self.flag(path, f"object key must be string, got {type(key).__name__}")
        return body

    def keys(
        self,
        body: Mapping[str, object],
        path: str,
        *,
        allowed: Collection[str],
        required: Collection[str],
    ) -> None:
        for key in sorted(body):
            if key not in allowed:
                message = _SECRET_KEY_MESSAGE if looks_like_secret(key) else "unknown field"
                self.flag(_join(path, key), message)
        for key in sorted(set(required) - set(body)):
            self.flag(_join(path, key), "missing required field")

    def tree(self, body: Mapping[str, object], path: str, *, overlay: bool) -> dict[str, Any]:
        sections = _OVERLAY_SECTIONS if overlay else tuple(_SECTIONS)
        self.keys(
            body,
            path,
            allowed=sections if overlay else (*sections, "profiles"),
            required=() if overlay else sections,
        )
        normalized: dict[str, Any] = {}
        for name in sections:
            if body.get(name) is None:
                continue
            section_path = _join(path, name)
            section = self.mapping(body[name], section_path)
            if section is not None:
                normalized[name] = self.section(name, section, section_path, overlay=overlay)

        if not overlay and "profiles" in body:
            profiles = self.mapping(body["profiles"], _join(path, "profiles"))
            if profiles is not None:
                normalized["profiles"] = self.profiles(profiles, _join(path, "profiles"))
        return normalized

    def section(
        self, name: str, body: Mapping[str, object], path: str, *, overlay: bool
    ) -> dict[str, Any]:
        fields = _SECTIONS[name]
        self.keys(body, path, allowed=fields, required=() if overlay else fields)
        values: dict[str, Any] = {}
        for key, spec in fields.items():
            if key not in body:
                continue
            try:
                values[key] = _convert(spec, body[key])
            except _Invalid as exc:
                self.flag(_join(path, key), str(exc))

        version = values.get("schema_version")
        if name == "meta" and version is not None and version != ConfigSchemaVersion:
            self.flag(_join(path, "schema_version"), migration_guidance(version))
        if name == "scheduler":
            self._check_lock_window(values, path)
        return values

    def profiles(self, body: Mapping[str, object], path: str) -> dict[str, Any]:
        normalized: dict[str, Any] = {}
        for name in sorted(body):
            profile_path = _join(path, name)
            if not _PROFILE_NAME.fullmatch(name):
                self.flag(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
                continue
            overlay = self.mapping(body[name], profile_path)
            if overlay is not None:
                normalized[name] = self.tree(overlay, profile_path, overlay=True)
        return normalized

    def _check_lock_window(self, scheduler: Mapping[str, Any], path: str) -> None:
        # A slow adapter call must finish before its release lock counts as stale.
        stale = scheduler.get("lock_stale_after_seconds")
        timeout = scheduler.get("adapter_timeout_seconds")
        if stale is not None and timeout is not None and stale <= timeout:
            self.flag(
                _join(path, "lock_stale_after_seconds"),
                "must exceed adapter_timeout_seconds so a live evaluation is never taken over",
            )


def _convert(spec: _Field, value: object) -> object:
    if spec.kind == "bool":
        if not isinstance(value, bool):
            raise _Invalid(f"expected boolean, got {type(value).__name__}")
        return value
    if spec.kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise _Invalid(f"expected integer, got {type(value).__name__}")
        if spec.bound is not None and value < spec.bound:
            raise _Invalid(f"must be >= {spec.bound}")
        return value
    if spec.kind == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _Invalid(f"expected number, got {type(value).__name__}")
        number = float(value)
        if not math.isfinite(number):
            raise _Invalid("must be finite")
        if spec.bound is not None and number <= spec.bound:
            raise _Invalid(f"must be > {spec.bound}")
        return number

    if not isinstance(value, str):
        raise _Invalid(f"expected string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise _Invalid("must not be empty")
    if spec.kind == "path":
        if "\x00" in text:
            raise _Invalid("must not contain NUL bytes")
        return text
    level = text.upper()
    if level not in _LOG_LEVELS:
        raise _Invalid(
            f"invalid value {level!r}; expected one of: {', '.join(sorted(_LOG_LEVELS))}"
        )
    return level


def _redacted_mapping(config: Mapping[str, object]) -> dict[str, Any]:
    return {
        key: "<redacted>" if looks_like_secret(key) else _redacted(config[key])
        for key in sorted(config)
    }


def _redacted(value: object) -> object:
    if isinstance(value, Mapping):
        return _redacted_mapping(value)
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "OrchestratorConfig",
    "PATH_FIELDS",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "looks_like_secret",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
