"""
bastion-orchestrator — configuration schema and validation.

File: src/bastion_orchestrator/config/schema.py
Last updated: 2026-10-19

Purpose
- Define authoritative configuration defaults and strict validation rules for the
  sandbox, rate limits, content filter, scheduler, providers, paths, and logging.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support built-in profile overlays: strict, permissive, development.

Non-functional requirements
- Keep rules deterministic and easy to audit.
- An empty allow-list is a valid (deny-everything) configuration, never an error.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from bastion_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_PIDS_LIMIT,
    DEFAULT_SANDBOX_IMAGE,
    TIER_MULTIPLIERS,
)
from bastion_orchestrator.domain.models import ContentCategory, LimitType

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive", "development")

SANDBOX_BACKENDS: Final[tuple[str, ...]] = ("docker", "podman", "none")
PROVIDER_NAMES: Final[tuple[str, ...]] = ("scripted", "anthropic")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "api",
        "key",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)
# Limit type names collide with the sensitive-token heuristics.
_NON_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset(item.value for item in LimitType)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("sandbox", "root_dir"),
    ("paths", "state_db"),
    ("observability", "log_dir"),
    ("content_filter", "rules_path"),
)


class MetaConfig(TypedDict):
    schema_version: int


class SandboxSection(TypedDict):
    backend: Literal["docker", "podman", "none"]
    image: str
    root_dir: str
    memory_limit_mb: int
    cpu_limit_fraction: float
    timeout_ms: int
    network_access: bool
    allowed_commands: list[str]
    allowed_file_paths: list[str]
    allowed_tool_ids: list[str]
    pids_limit: int


class RateLimitRule(TypedDict):
    limit: int
    window_seconds: int


class RateLimitsConfig(TypedDict):
    tier_multipliers: dict[str, int]
    limits: dict[str, RateLimitRule]


class ContentFilterConfig(TypedDict, total=False):
    enabled_categories: list[str]
    thresholds: dict[str, float]
    block_list: list[str]
    allow_list: list[str]
    redaction_enabled: bool
    report_moderation_results: bool
    block_high_risk_content: bool
    rules_path: str


class SchedulerConfig(TypedDict):
    max_concurrency: int
    temperature: float


class AnthropicSettings(TypedDict, total=False):
    api_key_env: str
    model: str
    max_tokens: int


class ProvidersConfig(TypedDict):
    default: Literal["scripted", "anthropic"]
    anthropic: AnthropicSettings


class PathsConfig(TypedDict):
    state_db: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    sandbox: dict[str, object]
    rate_limits: dict[str, object]
    content_filter: dict[str, object]
    scheduler: dict[str, object]
    providers: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class BastionConfig(TypedDict):
    meta: MetaConfig
    sandbox: SandboxSection
    rate_limits: RateLimitsConfig
    content_filter: ContentFilterConfig
    scheduler: SchedulerConfig
    providers: ProvidersConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[BastionConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "sandbox": {
        "backend": "docker",
        "image": DEFAULT_SANDBOX_IMAGE,
        "root_dir": "sandbox/",
        "memory_limit_mb": 256,
        "cpu_limit_fraction": 0.25,
        "timeout_ms": 30_000,
        "network_access": False,
        "allowed_commands": ["node", "python3", "bash"],
        "allowed_file_paths": ["/tmp/sandbox"],
        "allowed_tool_ids": [],
        "pids_limit": DEFAULT_PIDS_LIMIT,
    },
    "rate_limits": {
        "tier_multipliers": dict(TIER_MULTIPLIERS),
        "limits": {
            "api_calls": {"limit": 1000, "window_seconds": 3600},
            "tool_usage": {"limit": 100, "window_seconds": 3600},
            "compute_resources": {"limit": 300, "window_seconds": 3600},
            "storage": {"limit": 104_857_600, "window_seconds": 86_400},
            "network": {"limit": 52_428_800, "window_seconds": 3600},
            "token_usage": {"limit": 100_000, "window_seconds": 86_400},
        },
    },
    "content_filter": {
        "enabled_categories": [
            ContentCategory.HATE_SPEECH.value,
            ContentCategory.HARMFUL_INSTRUCTIONS.value,
            ContentCategory.MALICIOUS_CODE.value,
            ContentCategory.PII.value,
        ],
        "thresholds": {
            ContentCategory.PROFANITY.value: 0.7,
            ContentCategory.HATE_SPEECH.value: 0.5,
            ContentCategory.VIOLENCE.value: 0.6,
            ContentCategory.SEXUAL.value: 0.6,
            ContentCategory.HARMFUL_INSTRUCTIONS.value: 0.5,
            ContentCategory.PII.value: 0.5,
            ContentCategory.MALICIOUS_CODE.value: 0.5,
        },
        "block_list": [],
        "allow_list": [],
        "redaction_enabled": True,
        "report_moderation_results": True,
        "block_high_risk_content": True,
    },
    "scheduler": {
        "max_concurrency": 4,
        "temperature": 0.7,
    },
    "providers": {
        "default": "scripted",
        "anthropic": {
            "api_key_env": "BASTION_ANTHROPIC_API_KEY",
            "model": "claude-3-5-sonnet-latest",
            "max_tokens": 4096,
        },
    },
    "paths": {
        "state_db": "state/bastion.sqlite",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "sandbox": {"timeout_ms": 10_000, "memory_limit_mb": 128, "network_access": False},
            "scheduler": {"max_concurrency": 2},
        },
        "permissive": {
            "sandbox": {"network_access": True},
            "scheduler": {"max_concurrency": 8},
        },
        "development": {
            "sandbox": {"backend": "none"},
            "observability": {"log_level": "DEBUG"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_Parser = Callable[[object, str, _IssueCollector], Any]


def default_config() -> BastionConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade bastion.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the bastion-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    selected = profile.strip() if isinstance(profile, str) else ""
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )
    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    return assert_valid_config(merge_config(materialized, overlay_raw))


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, "", issues, partial=False)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping) or selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")
        else:
            effective = merge_config(normalized, profiles[selected_profile])
            _validate_root(effective, "", issues, partial=False)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and CLI output."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


_SECTIONS: Final[tuple[str, ...]] = (
    "sandbox",
    "rate_limits",
    "content_filter",
    "scheduler",
    "providers",
    "paths",
    "observability",
)


def _validate_root(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"meta", "profiles", *_SECTIONS}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, {"meta", *_SECTIONS}, path, issues)

    out: dict[str, Any] = {}
    for key in ("meta", *_SECTIONS):
        raw = payload.get(key)
        if raw is None:
            continue
        section_path = _join(path, key)
        section_obj = _as_object(raw, section_path, issues)
        if section_obj is None:
            continue
        out[key] = _SECTION_VALIDATORS[key](section_obj, section_path, issues, partial)

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles_path = _join(path, "profiles")
        profiles_obj = _as_object(profiles_raw, profiles_path, issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, profiles_path, issues)

    if not partial:
        _validate_provider_cross_fields(out.get("providers"), _join(path, "providers"), issues)
    return out


def _fields(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    parsers: Mapping[str, _Parser],
    required: set[str],
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(parsers), path, issues)
    if not partial:
        _require_keys(payload, required, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(parsers):
        if key not in payload:
            continue
        parsed = parsers[key](payload[key], _join(path, key), issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    out = _fields(
        payload,
        path,
        issues,
        parsers={"schema_version": _int_parser(minimum=1)},
        required={"schema_version"},
        partial=partial,
    )
    version = out.get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.add(_join(path, "schema_version"), migration_guidance(version))
    return out


def _validate_sandbox(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    parsers: dict[str, _Parser] = {
        "backend": _enum_parser(SANDBOX_BACKENDS),
        "image": _as_str,
        "root_dir": _as_path_text,
        "memory_limit_mb": _int_parser(minimum=1),
        "cpu_limit_fraction": _float_parser(minimum=0.01),
        "timeout_ms": _int_parser(minimum=1),
        "network_access": _as_bool,
        "allowed_commands": _as_str_list,
        "allowed_file_paths": _as_str_list,
        "allowed_tool_ids": _as_str_list,
        "pids_limit": _int_parser(minimum=1),
    }
    return _fields(
        payload, path, issues, parsers=parsers, required=set(parsers), partial=partial
    )


def _validate_rate_limits(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"tier_multipliers", "limits"}, path, issues)
    if not partial:
        _require_keys(payload, {"tier_multipliers", "limits"}, path, issues)

    out: dict[str, Any] = {}
    multipliers_raw = payload.get("tier_multipliers")
    if multipliers_raw is not None:
        multipliers_path = _join(path, "tier_multipliers")
        multipliers = _as_object(multipliers_raw, multipliers_path, issues)
        if multipliers is not None:
            out["tier_multipliers"] = _fields(
                multipliers,
                multipliers_path,
                issues,
                parsers={tier: _int_parser(minimum=1) for tier in TIER_MULTIPLIERS},
                required=set(TIER_MULTIPLIERS),
                partial=partial,
            )

    limits_raw = payload.get("limits")
    if limits_raw is not None:
        limits_path = _join(path, "limits")
        limits = _as_object(limits_raw, limits_path, issues)
        if limits is not None:
            limit_names = {item.value for item in LimitType}
            _reject_unknown_keys(limits, limit_names, limits_path, issues)
            if not partial:
                _require_keys(limits, limit_names, limits_path, issues)
            parsed_limits: dict[str, Any] = {}
            for name in sorted(limit_names & set(limits)):
                rule_path = _join(limits_path, name)
                rule = _as_object(limits[name], rule_path, issues)
                if rule is None:
                    continue
                parsed_limits[name] = _fields(
                    rule,
                    rule_path,
                    issues,
                    parsers={
                        "limit": _int_parser(minimum=0),
                        "window_seconds": _int_parser(minimum=1),
                    },
                    required={"limit", "window_seconds"},
                    partial=partial,
                )
            out["limits"] = parsed_limits
    return out


def _validate_content_filter(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    categories = tuple(item.value for item in ContentCategory)
    parsers: dict[str, _Parser] = {
        "enabled_categories": _enum_list_parser(categories),
        "thresholds": _thresholds_parser(categories),
        "block_list": _as_str_list,
        "allow_list": _as_str_list,
        "redaction_enabled": _as_bool,
        "report_moderation_results": _as_bool,
        "block_high_risk_content": _as_bool,
        "rules_path": _as_path_text,
    }
    return _fields(
        payload,
        path,
        issues,
        parsers=parsers,
        required=set(parsers) - {"rules_path"},
        partial=partial,
    )


def _validate_scheduler(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    parsers: dict[str, _Parser] = {
        "max_concurrency": _int_parser(minimum=1),
        "temperature": _float_parser(minimum=0.0, maximum=1.0),
    }
    return _fields(
        payload, path, issues, parsers=parsers, required=set(parsers), partial=partial
    )


def _validate_providers(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"default", "anthropic"}, path, issues)
    if not partial:
        _require_keys(payload, {"default"}, path, issues)

    out: dict[str, Any] = {}
    if "default" in payload:
        parsed_default = _as_enum(
            payload["default"], _join(path, "default"), issues, allowed_values=PROVIDER_NAMES
        )
        if parsed_default is not None:
            out["default"] = parsed_default

    raw = payload.get("anthropic")
    if raw is not None:
        section_path = _join(path, "anthropic")
        section = _as_object(raw, section_path, issues)
        if section is not None:
            out["anthropic"] = _fields(
                section,
                section_path,
                issues,
                parsers={
                    "api_key_env": _as_env_name,
                    "model": _as_str,
                    "max_tokens": _int_parser(minimum=1),
                },
                required=set(),
                partial=True,
            )
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    return _fields(
        payload,
        path,
        issues,
        parsers={"state_db": _as_path_text},
        required={"state_db"},
        partial=partial,
    )


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    parsers: dict[str, _Parser] = {
        "log_level": _log_level,
        "log_dir": _as_path_text,
        "log_to_stdout": _as_bool,
        "redact_secrets": _as_bool,
    }
    return _fields(
        payload, path, issues, parsers=parsers, required=set(parsers), partial=partial
    )


_SECTION_VALIDATORS: Final[
    dict[str, Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]]
] = {
    "meta": _validate_meta,
    "sandbox": _validate_sandbox,
    "rate_limits": _validate_rate_limits,
    "content_filter": _validate_content_filter,
    "scheduler": _validate_scheduler,
    "providers": _validate_providers,
    "paths": _validate_paths,
    "observability": _validate_observability,
}


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue

        _reject_unknown_keys(profile_obj, set(_SECTIONS), profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in _SECTIONS:
            raw = profile_obj.get(section)
            if raw is None:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(raw, section_path, issues)
            if section_obj is not None:
                overlay[section] = _SECTION_VALIDATORS[section](
                    section_obj, section_path, issues, True
                )
        out[profile_name] = overlay
    return out


def _validate_provider_cross_fields(
    providers: object,
    path: str,
    issues: _IssueCollector,
) -> None:
    if not isinstance(providers, Mapping):
        return
    if providers.get("default") != "anthropic":
        return
    selected = providers.get("anthropic")
    if not isinstance(selected, Mapping) or not isinstance(selected.get("api_key_env"), str):
        issues.add(_join(path, "anthropic"), "provider requires api_key_env")


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: BASTION_ANTHROPIC_API_KEY)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is None:
            return None
        if parsed in out:
            issues.add(f"{path}[{index}]", f"duplicate value {parsed!r}")
            return None
        out.append(parsed)
    return out


def _int_parser(*, minimum: int | None = None) -> _Parser:
    def parse(value: object, path: str, issues: _IssueCollector) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
            return None
        if minimum is not None and value < minimum:
            issues.add(path, f"must be >= {minimum}")
            return None
        return value

    return parse


def _float_parser(*, minimum: float | None = None, maximum: float | None = None) -> _Parser:
    def parse(value: object, path: str, issues: _IssueCollector) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            issues.add(path, f"expected number, got {type(value).__name__}")
            return None
        parsed = float(value)
        if not math.isfinite(parsed):
            issues.add(path, "must be finite")
            return None
        if minimum is not None and parsed < minimum:
            issues.add(path, f"must be >= {minimum}")
            return None
        if maximum is not None and parsed > maximum:
            issues.add(path, f"must be <= {maximum}")
            return None
        return parsed

    return parse


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _enum_parser(allowed_values: tuple[str, ...]) -> _Parser:
    def parse(value: object, path: str, issues: _IssueCollector) -> str | None:
        return _as_enum(value, path, issues, allowed_values=allowed_values)

    return parse


def _log_level(value: object, path: str, issues: _IssueCollector) -> str | None:
    if isinstance(value, str):
        value = value.upper()
    return _as_enum(value, path, issues, allowed_values=LOG_LEVELS)


def _enum_list_parser(allowed_values: tuple[str, ...]) -> _Parser:
    def parse(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
        items = _as_str_list(value, path, issues)
        if items is None:
            return None
        for index, item in enumerate(items):
            if _as_enum(item, f"{path}[{index}]", issues, allowed_values=allowed_values) is None:
                return None
        return items

    return parse


def _thresholds_parser(categories: tuple[str, ...]) -> _Parser:
    parse_confidence = _float_parser(minimum=0.0, maximum=1.0)

    def parse(value: object, path: str, issues: _IssueCollector) -> dict[str, float] | None:
        payload = _as_object(value, path, issues)
        if payload is None:
            return None
        out: dict[str, float] = {}
        for key in sorted(payload):
            if key not in categories:
                issues.add(_join(path, key), "unknown content category")
                continue
            parsed = parse_confidence(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
        return out

    return parse


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env") or normalized in _NON_SENSITIVE_KEYS:
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(token in _SENSITIVE_KEY_TOKENS for token in normalized.split("_") if token)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value) if isinstance(key, str)}


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _key_is_sensitive_for_redaction(key) and not isinstance(item, Mapping):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


def _key_is_sensitive_for_redaction(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return True
    return _looks_sensitive_key(normalized)


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "PROVIDER_NAMES",
    "SANDBOX_BACKENDS",
    "BastionConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
