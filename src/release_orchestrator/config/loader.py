"""
release-orchestrator: runtime config loader.

File: src/release_orchestrator/config/loader.py

Purpose
- Build the effective config for one CLI invocation from layered sources.

Layers, lowest first
1. Built-in defaults.
2. ``release_orchestrator.toml`` (or ``--config``).
3. The selected profile overlay (``--profile``, then ``RELORCH_PROFILE``).
4. ``RELORCH_<SECTION>_<KEY>`` environment variables, typed after the value they replace.
5. Dotted CLI overrides such as ``{"scheduler.tick_interval_seconds": 10}``.

Relative paths resolve against the directory holding the config file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from release_orchestrator.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "release_orchestrator.toml"
ENV_PREFIX: Final[str] = "RELORCH_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Sections the environment cannot reach.
_ENV_EXCLUDED: Final[frozenset[str]] = frozenset({"meta", "profiles"})


class ConfigLoadError(ValueError):
    """The config file could not be read or an override could not be typed."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    Without ``config_path`` a missing ``release_orchestrator.toml`` in the working
    directory just means defaults; a named file that does not exist is an error.
    """
    explicit = config_path is not None
    source = (
        Path(config_path).expanduser().resolve()
        if config_path is not None
        else (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    )
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    chosen = _chosen_profile(profile, overrides, env)

    effective = assert_valid_config(merge_config(default_config(), _read_toml(source, explicit)))
    if chosen is not None:
        effective = apply_profile_overlay(effective, chosen)
    effective = merge_config(effective, _environment_layer(effective, env))
    effective = merge_config(effective, _cli_layer(overrides))

    validated = assert_valid_config(effective, active_profile=chosen)
    return normalize_paths(validated, base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with every ``PATH_FIELDS`` entry made absolute under ``base_dir``."""
    normalized = merge_config({}, config)
    for section, key in PATH_FIELDS:
        table = normalized.get(section)
        if isinstance(table, dict) and isinstance(table.get(key), str):
            table[key] = _absolute(table[key], base_dir)
    return normalized


def dump_effective_config(config: Mapping[str, object], *, indent: int | None = None) -> str:
    """Redacted config as sorted-key JSON."""
    separators = (",", ":") if indent is None else None
    return json.dumps(
        redact_config(config),
        sort_keys=True,
        indent=indent,
        separators=separators,
        ensure_ascii=False,
    )


def env_var_name(path: tuple[str, ...]) -> str:
    """Environment variable that overrides the config value at ``path``."""
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _read_toml(path: Path, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _chosen_profile(
    explicit: str | None,
    overrides: Mapping[str, object],
    env: Mapping[str, str],
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = overrides.get("profile")
        if candidate is not None and not isinstance(candidate, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    if candidate is None:
        candidate = env.get(f"{ENV_PREFIX}PROFILE")
    if not isinstance(candidate, str):
        return None
    return candidate.strip() or None


def _environment_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, current in _scalars(config):
        if path[0] in _ENV_EXCLUDED:
            continue
        name = env_var_name(path)
        raw = env.get(name)
        parse = _ENV_PARSERS.get(type(current))
        if raw is None or parse is None:
            continue
        try:
            value = parse(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from exc
        _assign(layer, path, value)
    return layer


def _scalars(
    tree: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(tree):
        value = tree[key]
        if isinstance(value, Mapping):
            yield from _scalars(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _parse_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _parse_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


# Keyed by the exact type of the default being replaced; bool is not an int here.
_ENV_PARSERS: Final[dict[type, Callable[[str], object]]] = {
    bool: _parse_bool,
    int: _parse_int,
    float: _parse_float,
    str: str,
}


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, value in sorted(overrides.items()):
        if dotted == "profile":
            continue
        path = tuple(part for part in dotted.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        _assign(layer, path, value)
    return layer


def _assign(tree: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    *parents, leaf = path
    node = tree
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[leaf] = value


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_var_name",
    "load_config",
    "normalize_paths",
]
