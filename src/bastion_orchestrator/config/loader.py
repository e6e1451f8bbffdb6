"""
bastion-orchestrator — runtime config loader.

File: src/bastion_orchestrator/config/loader.py
Last updated: 2026-10-19

Purpose
- Build the effective runtime config from defaults, ``bastion.toml``, ``BASTION_*`` env
  vars, and CLI overrides.

Functional requirements
- Precedence: CLI > env > file > defaults, with an optional named profile applied on top
  of the file layer.
- Env vars map one-to-one onto scalar and string-list config leaves
  (``sandbox.timeout_ms`` -> ``BASTION_SANDBOX_TIMEOUT_MS``). Lists are comma separated.
- Path fields are normalized relative to the config file location.

Non-functional requirements
- Loading is deterministic; every failure is a ``ConfigLoadError`` or
  ``ConfigValidationError`` with a precise location.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

from bastion_orchestrator.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from bastion_orchestrator.constants import DEFAULT_CONFIG_FILENAME, ENV_PREFIX

DEFAULT_CONFIG_FILE: Final[str] = DEFAULT_CONFIG_FILENAME

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})

_ValueKind = Literal["str", "int", "float", "bool", "list"]


@dataclass(frozen=True, slots=True)
class _EnvBinding:
    path: tuple[str, ...]
    kind: _ValueKind

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


class ConfigLoadError(ValueError):
    """Raised when a config source cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with deterministic precedence: CLI > env > file > defaults."""

    resolved = _resolve_config_path(config_path)
    env_map = dict(os.environ if environ is None else environ)
    cli_map = dict(cli_overrides or {})
    selected_profile = _select_profile(profile, cli_map, env_map)

    layered = assert_valid_config(
        merge_config(default_config(), _read_toml(resolved, required=config_path is not None))
    )
    if selected_profile is not None:
        layered = apply_profile_overlay(layered, selected_profile)

    layered = merge_config(layered, _env_overrides(layered, env_map))
    layered = merge_config(layered, _cli_payload(cli_map))
    layered = normalize_paths(layered, base_dir=resolved.parent)
    return assert_valid_config(layered, active_profile=selected_profile)


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load config from one TOML file, ignoring process env vars."""

    return load_config(path, environ={})


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Make every configured path field absolute, anchored at ``base_dir``."""

    out = merge_config({}, config)
    targets: list[tuple[str, ...]] = list(PATH_FIELDS)
    profiles = out.get("profiles")
    if isinstance(profiles, Mapping):
        for name in sorted(profiles):
            targets.extend(("profiles", name, *field) for field in PATH_FIELDS)

    for path in targets:
        value = _get_nested(out, path)
        if isinstance(value, str):
            _set_nested(out, path, _absolute_posix(value, base_dir))
    return out


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Return the redacted config mapping that is safe to log or print."""

    return redact_config(config)


def dump_effective_config(config: Mapping[str, object], *, indent: int | None = None) -> str:
    """Return a deterministic JSON rendering of the redacted effective config."""

    separators = (",", ":") if indent is None else (",", ": ")
    return json.dumps(
        effective_config(config),
        sort_keys=True,
        indent=indent,
        separators=separators,
        ensure_ascii=False,
    )


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    profile: str | None,
    cli_overrides: Mapping[str, object],
    environ: Mapping[str, str],
) -> str | None:
    candidate: object = profile
    if candidate is None:
        candidate = cli_overrides.get("profile")
    if candidate is None:
        candidate = environ.get(f"{ENV_PREFIX}PROFILE")
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError("profile must be a string")
    return candidate.strip() or None


def _env_overrides(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    bindings = _bindings_for(config)
    for env_name in sorted(bindings):
        raw = environ.get(env_name)
        if raw is None:
            continue
        binding = bindings[env_name]
        _set_nested(overrides, binding.path, _coerce(raw, binding, env_name))
    return overrides


def _bindings_for(config: Mapping[str, object]) -> dict[str, _EnvBinding]:
    bindings: dict[str, _EnvBinding] = {}
    for path, value in _walk_leaves(config):
        if path[0] == "profiles":
            continue
        kind = _kind_of(value)
        if kind is not None:
            bindings[_env_name_for_path(path)] = _EnvBinding(path=path, kind=kind)
    return bindings


def _walk_leaves(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> list[tuple[tuple[str, ...], object]]:
    leaves: list[tuple[tuple[str, ...], object]] = []
    for key in sorted(payload):
        value = payload[key]
        path = (*prefix, key)
        if isinstance(value, Mapping):
            leaves.extend(_walk_leaves(value, path))
        else:
            leaves.append((path, value))
    return leaves


def _kind_of(value: object) -> _ValueKind | None:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "str"
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return "list"
    return None


def _coerce(raw: str, binding: _EnvBinding, env_name: str) -> object:
    text = raw.strip()
    where = f"{env_name} -> {binding.dotted}"
    if binding.kind == "str":
        return text
    if binding.kind == "list":
        return [item.strip() for item in text.split(",") if item.strip()]
    if binding.kind == "int":
        try:
            return int(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{where} must be an integer") from exc
    if binding.kind == "float":
        try:
            return float(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{where} must be a number") from exc

    lowered = text.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ConfigLoadError(f"{where} must be a boolean (true/false/1/0/yes/no/on/off)")


def _cli_payload(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        value = cli_overrides[key]
        if isinstance(value, Mapping):
            value = merge_config({}, value)
        _set_nested(payload, path, value)
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        child = cursor.get(part)
        if not isinstance(child, dict):
            child = {}
            cursor[part] = child
        cursor = child
    cursor[path[-1]] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    cursor: object = payload
    for part in path:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "load_config_file",
    "normalize_paths",
]
