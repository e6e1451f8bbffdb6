"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from bastion_orchestrator.constants import TIER_MULTIPLIERS
from bastion_orchestrator.domain.errors import ErrorCode, UnsupportedLanguageError

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 65536
_MAX_JSON_DEPTH = 16
_MAX_JSON_COLLECTION = 1024

WILDCARD_RESOURCE_ID = "*"
OWN_RESOURCE_ID = "own"


class SubscriptionTier(StrEnum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @property
    def multiplier(self) -> int:
        return TIER_MULTIPLIERS[self.value]


class ResourceType(StrEnum):
    TOOL = "tool"
    FILE = "file"
    NETWORK = "network"
    WORKSPACE = "workspace"
    USER_DATA = "user_data"
    SYSTEM = "system"
    DEPLOYMENT = "deployment"


class PermissionLevel(StrEnum):
    NONE = "none"
    READ = "read"
    EXECUTE = "execute"
    WRITE = "write"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def satisfies(self, required: PermissionLevel) -> bool:
        """True when a grant at this level covers ``required``."""
        return self.rank >= PermissionLevel(required).rank


_LEVEL_ORDER: tuple[PermissionLevel, ...] = (
    PermissionLevel.NONE,
    PermissionLevel.READ,
    PermissionLevel.EXECUTE,
    PermissionLevel.WRITE,
    PermissionLevel.ADMIN,
)


class LimitType(StrEnum):
    API_CALLS = "api_calls"
    TOOL_USAGE = "tool_usage"
    COMPUTE_RESOURCES = "compute_resources"
    STORAGE = "storage"
    NETWORK = "network"
    TOKEN_USAGE = "token_usage"


class ContentCategory(StrEnum):
    SAFE = "safe"
    PROFANITY = "profanity"
    HATE_SPEECH = "hate_speech"
    VIOLENCE = "violence"
    SEXUAL = "sexual"
    HARMFUL_INSTRUCTIONS = "harmful_instructions"
    PII = "personally_identifiable_information"
    MALICIOUS_CODE = "malicious_code"
    POTENTIAL_COPYRIGHT = "potential_copyright"


class SandboxLanguage(StrEnum):
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    BASH = "bash"

    @property
    def code_filename(self) -> str:
        return _CODE_FILENAMES[self]

    @property
    def interpreter(self) -> str:
        return _INTERPRETERS[self]

    @classmethod
    def parse(cls, value: object) -> SandboxLanguage:
        """Resolve ``value`` or raise :class:`UnsupportedLanguageError`."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise UnsupportedLanguageError(value)


_CODE_FILENAMES: dict[SandboxLanguage, str] = {
    SandboxLanguage.JAVASCRIPT: "code.js",
    SandboxLanguage.PYTHON: "code.py",
    SandboxLanguage.BASH: "code.sh",
}

_INTERPRETERS: dict[SandboxLanguage, str] = {
    SandboxLanguage.JAVASCRIPT: "node",
    SandboxLanguage.PYTHON: "python3",
    SandboxLanguage.BASH: "bash",
}


class ToolType(StrEnum):
    WEB_BROWSING = "web_browsing"
    CODE_EXECUTION = "code_execution"
    FILE_SYSTEM = "file_system"
    DATABASE = "database"
    EXTERNAL_API = "external_api"
    DATA_PROCESSING = "data_processing"
    MULTI_MODAL = "multi_modal"
    DEPLOYMENT = "deployment"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def weight(self) -> int:
        return {"low": 1, "medium": 2, "high": 3, "urgent": 4}[self.value]


class AuditKind(StrEnum):
    AUTHORIZATION = "authorization"
    SANDBOX_EXECUTION = "sandbox_execution"
    CONTENT_VERDICT = "content_verdict"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _set(instance: object, name: str, value: object) -> None:
    object.__setattr__(instance, name, value)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_str(value: object, path: str, *, min_len: int = 1, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    if len(value.strip()) < min_len:
        _fail(path, f"must be at least {min_len} non-blank character(s)")
    if len(value) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return value


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, min_len=0, max_len=max_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(
    value: object, path: str, *, minimum: int | None = None, maximum: int | None = None
) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    if maximum is not None and value > maximum:
        _fail(path, f"must be <= {maximum}")
    return value


def _as_float(
    value: object, path: str, *, minimum: float | None = None, maximum: float | None = None
) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    if maximum is not None and parsed > maximum:
        _fail(path, f"must be <= {maximum}")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    return None if value is None else _as_datetime(value, path)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_str_tuple(
    value: object,
    path: str,
    *,
    allow_empty: bool = True,
    unique: bool = True,
) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
        _fail(path, f"expected array, got {type(value).__name__}")
    items = sorted(value) if isinstance(value, (set, frozenset)) else list(value)
    if not allow_empty and not items:
        _fail(path, "must not be empty")
    if len(items) > _MAX_JSON_COLLECTION:
        _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")

    parsed = tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(items))
    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return parsed


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, Enum):
        return cast("JSONValue", value.value)
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (list, tuple)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        return {
            item.name: _serialize_value(getattr(value, item.name), f"{path}.{item.name}")
            for item in fields(value)
        }
    _fail(path, f"cannot serialize value of type {type(value).__name__}")


@dataclass(frozen=True, slots=True)
class Principal(CanonicalModel):
    """Identity on whose behalf an action runs; owned by the external account store."""

    id: str
    tier: SubscriptionTier = SubscriptionTier.FREE
    roles: tuple[str, ...] = ("user",)

    def __post_init__(self) -> None:
        _set(self, "id", _as_str(self.id, "Principal.id", max_len=256))
        _set(self, "tier", _as_enum(SubscriptionTier, self.tier, "Principal.tier"))
        _set(self, "roles", _as_str_tuple(self.roles, "Principal.roles"))

    @property
    def multiplier(self) -> int:
        return self.tier.multiplier

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Principal:
        parsed = _expect_object(data, "Principal", required={"id"}, optional={"tier", "roles"})
        return cls(
            id=_as_str(parsed["id"], "Principal.id"),
            tier=_as_enum(
                SubscriptionTier, parsed.get("tier", SubscriptionTier.FREE), "Principal.tier"
            ),
            roles=_as_str_tuple(parsed.get("roles", ("user",)), "Principal.roles"),
        )


@dataclass(frozen=True, slots=True)
class ResourceRef(CanonicalModel):
    resource_type: ResourceType
    resource_id: str = WILDCARD_RESOURCE_ID

    def __post_init__(self) -> None:
        _set(
            self,
            "resource_type",
            _as_enum(ResourceType, self.resource_type, "ResourceRef.resource_type"),
        )
        _set(self, "resource_id", _as_str(self.resource_id, "ResourceRef.resource_id"))

    @property
    def is_wildcard(self) -> bool:
        return self.resource_id == WILDCARD_RESOURCE_ID

    def __str__(self) -> str:
        return f"{self.resource_type.value}:{self.resource_id}"


@dataclass(frozen=True, slots=True)
class Permission(CanonicalModel):
    """Explicit per-principal grant on one resource."""

    id: str
    principal_id: str
    resource_type: ResourceType
    resource_id: str
    level: PermissionLevel
    conditions: dict[str, JSONValue] = field(default_factory=dict)
    granted_by: str | None = None
    expires_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        _set(self, "id", _as_str(self.id, "Permission.id"))
        _set(self, "principal_id", _as_str(self.principal_id, "Permission.principal_id"))
        _set(
            self,
            "resource_type",
            _as_enum(ResourceType, self.resource_type, "Permission.resource_type"),
        )
        _set(self, "resource_id", _as_str(self.resource_id, "Permission.resource_id"))
        _set(self, "level", _as_enum(PermissionLevel, self.level, "Permission.level"))
        _set(self, "conditions", _as_json_object(self.conditions, "Permission.conditions"))
        _set(self, "granted_by", _as_optional_str(self.granted_by, "Permission.granted_by"))
        _set(self, "expires_at", _as_optional_datetime(self.expires_at, "Permission.expires_at"))
        _set(self, "created_at", _as_datetime(self.created_at, "Permission.created_at"))

    @property
    def resource(self) -> ResourceRef:
        return ResourceRef(self.resource_type, self.resource_id)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Permission:
        parsed = _expect_object(
            data,
            "Permission",
            required={"id", "principal_id", "resource_type", "resource_id", "level"},
            optional={"conditions", "granted_by", "expires_at", "created_at"},
        )
        return cls(
            id=_as_str(parsed["id"], "Permission.id"),
            principal_id=_as_str(parsed["principal_id"], "Permission.principal_id"),
            resource_type=_as_enum(
                ResourceType, parsed["resource_type"], "Permission.resource_type"
            ),
            resource_id=_as_str(parsed["resource_id"], "Permission.resource_id"),
            level=_as_enum(PermissionLevel, parsed["level"], "Permission.level"),
            conditions=_as_json_object(parsed.get("conditions", {}), "Permission.conditions"),
            granted_by=_as_optional_str(parsed.get("granted_by"), "Permission.granted_by"),
            expires_at=_as_optional_datetime(parsed.get("expires_at"), "Permission.expires_at"),
            created_at=_as_datetime(
                parsed.get("created_at", utc_now()), "Permission.created_at"
            ),
        )


@dataclass(frozen=True, slots=True)
class RateLimitPolicy(CanonicalModel):
    limit: int
    window_seconds: int

    def __post_init__(self) -> None:
        _set(self, "limit", _as_int(self.limit, "RateLimitPolicy.limit", minimum=0))
        _set(
            self,
            "window_seconds",
            _as_int(self.window_seconds, "RateLimitPolicy.window_seconds", minimum=1),
        )


@dataclass(frozen=True, slots=True)
class RateLimitCounter(CanonicalModel):
    principal_id: str
    limit_type: LimitType
    resource_id: str
    count: int
    window_expiry: datetime

    def __post_init__(self) -> None:
        _set(self, "principal_id", _as_str(self.principal_id, "RateLimitCounter.principal_id"))
        _set(
            self,
            "limit_type",
            _as_enum(LimitType, self.limit_type, "RateLimitCounter.limit_type"),
        )
        _set(self, "resource_id", _as_str(self.resource_id, "RateLimitCounter.resource_id"))
        _set(self, "count", _as_int(self.count, "RateLimitCounter.count", minimum=0))
        _set(
            self,
            "window_expiry",
            _as_datetime(self.window_expiry, "RateLimitCounter.window_expiry"),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.window_expiry <= now

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RateLimitCounter:
        parsed = _expect_object(
            data,
            "RateLimitCounter",
            required={"principal_id", "limit_type", "resource_id", "count", "window_expiry"},
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class UsageMetrics(CanonicalModel):
    current: int
    limit: int
    remaining: int
    reset_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ResourceQuota(CanonicalModel):
    """Tier-scaled resource allowance for one principal."""

    principal_id: str
    compute_time_seconds: int
    memory_mb: int
    storage_bytes: int
    api_calls: int
    token_usage: int
    network_mb: int


@dataclass(frozen=True, slots=True)
class CategoryScore(CanonicalModel):
    category: ContentCategory
    confidence: float

    def __post_init__(self) -> None:
        _set(
            self,
            "category",
            _as_enum(ContentCategory, self.category, "CategoryScore.category"),
        )
        _set(
            self,
            "confidence",
            _as_float(self.confidence, "CategoryScore.confidence", minimum=0.0, maximum=1.0),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CategoryScore:
        parsed = _expect_object(data, "CategoryScore", required={"category", "confidence"})
        return cls(
            category=_as_enum(ContentCategory, parsed["category"], "CategoryScore.category"),
            confidence=_as_float(parsed["confidence"], "CategoryScore.confidence"),
        )


def _as_category_scores(value: object, path: str) -> tuple[CategoryScore, ...]:
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {type(value).__name__}")
    return tuple(
        item if isinstance(item, CategoryScore) else CategoryScore.from_dict(
            _expect_object(item, f"{path}[{index}]", required={"category", "confidence"})
        )
        for index, item in enumerate(value)
    )


@dataclass(frozen=True, slots=True)
class ContentSafetyResult(CanonicalModel):
    """Verdict of one content scan; produced fresh per scan."""

    id: str
    is_allowed: bool
    categories: tuple[CategoryScore, ...] = ()
    redacted_content: str | None = None
    reason: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        _set(self, "id", _as_str(self.id, "ContentSafetyResult.id"))
        _set(self, "is_allowed", _as_bool(self.is_allowed, "ContentSafetyResult.is_allowed"))
        _set(
            self,
            "categories",
            _as_category_scores(self.categories, "ContentSafetyResult.categories"),
        )
        _set(self, "timestamp", _as_datetime(self.timestamp, "ContentSafetyResult.timestamp"))

    def confidence_for(self, category: ContentCategory) -> float:
        return max(
            (item.confidence for item in self.categories if item.category == category),
            default=0.0,
        )


@dataclass(frozen=True, slots=True)
class SandboxConfig(CanonicalModel):
    """Per-execution isolation limits; the process default comes from configuration."""

    memory_limit_mb: int = 256
    cpu_limit_fraction: float = 0.25
    timeout_ms: int = 30_000
    network_access: bool = False
    allowed_commands: tuple[str, ...] = ("node", "python3", "bash")
    allowed_file_paths: tuple[str, ...] = ("/tmp/sandbox",)
    allowed_tool_ids: tuple[str, ...] = ()
    pids_limit: int = 50

    def __post_init__(self) -> None:
        _set(
            self,
            "memory_limit_mb",
            _as_int(self.memory_limit_mb, "SandboxConfig.memory_limit_mb", minimum=1),
        )
        _set(
            self,
            "cpu_limit_fraction",
            _as_float(
                self.cpu_limit_fraction, "SandboxConfig.cpu_limit_fraction", minimum=0.01
            ),
        )
        _set(self, "timeout_ms", _as_int(self.timeout_ms, "SandboxConfig.timeout_ms", minimum=1))
        _set(
            self,
            "network_access",
            _as_bool(self.network_access, "SandboxConfig.network_access"),
        )
        for name in ("allowed_commands", "allowed_file_paths", "allowed_tool_ids"):
            _set(self, name, _as_str_tuple(getattr(self, name), f"SandboxConfig.{name}"))
        _set(self, "pids_limit", _as_int(self.pids_limit, "SandboxConfig.pids_limit", minimum=1))

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    def with_overrides(self, **changes: object) -> SandboxConfig:
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SandboxConfig:
        names = {item.name for item in fields(cls)}
        parsed = _expect_object(data, "SandboxConfig", required=set(), optional=names)
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class ResourceUsage(CanonicalModel):
    peak_memory_bytes: int | None = None
    cpu_time_seconds: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ResourceUsage:
        parsed = _expect_object(
            data,
            "ResourceUsage",
            required=set(),
            optional={"peak_memory_bytes", "cpu_time_seconds"},
        )
        memory = parsed.get("peak_memory_bytes")
        cpu = parsed.get("cpu_time_seconds")
        return cls(
            peak_memory_bytes=(
                None
                if memory is None
                else _as_int(memory, "ResourceUsage.peak_memory_bytes", minimum=0)
            ),
            cpu_time_seconds=(
                None
                if cpu is None
                else _as_float(cpu, "ResourceUsage.cpu_time_seconds", minimum=0.0)
            ),
        )


@dataclass(frozen=True, slots=True)
class ExecutionResult(CanonicalModel):
    execution_id: str
    success: bool
    output: str
    error: str | None = None
    error_code: ErrorCode | None = None
    execution_time_ms: int = 0
    resource_usage: ResourceUsage | None = None

    def __post_init__(self) -> None:
        _set(self, "execution_id", _as_str(self.execution_id, "ExecutionResult.execution_id"))
        _set(self, "success", _as_bool(self.success, "ExecutionResult.success"))
        _set(
            self,
            "output",
            _as_str(self.output, "ExecutionResult.output", min_len=0, max_len=10 * _MAX_TEXT),
        )
        _set(self, "error", _as_optional_str(self.error, "ExecutionResult.error"))
        if self.error_code is not None:
            _set(
                self,
                "error_code",
                _as_enum(ErrorCode, self.error_code, "ExecutionResult.error_code"),
            )
        _set(
            self,
            "execution_time_ms",
            _as_int(self.execution_time_ms, "ExecutionResult.execution_time_ms", minimum=0),
        )
        if self.success and self.error_code is not None:
            _fail("ExecutionResult.error_code", "must be empty for a successful execution")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ExecutionResult:
        parsed = _expect_object(
            data,
            "ExecutionResult",
            required={"execution_id", "success", "output"},
            optional={"error", "error_code", "execution_time_ms", "resource_usage"},
        )
        usage_raw = parsed.get("resource_usage")
        return cls(
            execution_id=_as_str(parsed["execution_id"], "ExecutionResult.execution_id"),
            success=_as_bool(parsed["success"], "ExecutionResult.success"),
            output=_as_str(
                parsed["output"], "ExecutionResult.output", min_len=0, max_len=10 * _MAX_TEXT
            ),
            error=_as_optional_str(parsed.get("error"), "ExecutionResult.error"),
            error_code=(
                None
                if parsed.get("error_code") is None
                else _as_enum(ErrorCode, parsed["error_code"], "ExecutionResult.error_code")
            ),
            execution_time_ms=_as_int(
                parsed.get("execution_time_ms", 0), "ExecutionResult.execution_time_ms"
            ),
            resource_usage=(
                None
                if usage_raw is None
                else ResourceUsage.from_dict(cast("Mapping[str, object]", usage_raw))
            ),
        )


@dataclass(frozen=True, slots=True)
class TaskResult(CanonicalModel):
    """What a worker returns for one dispatched task."""

    success: bool
    message: str
    data: dict[str, JSONValue] | None = None

    def __post_init__(self) -> None:
        _set(self, "success", _as_bool(self.success, "TaskResult.success"))
        _set(self, "message", _as_str(self.message, "TaskResult.message", min_len=0))
        if self.data is not None:
            _set(self, "data", _as_json_object(self.data, "TaskResult.data"))


@dataclass(slots=True)
class Task(CanonicalModel):
    id: str
    title: str
    description: str
    owner_id: str
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    parent_task_id: str | None = None
    dependencies: tuple[str, ...] = ()
    subtasks: tuple[str, ...] = ()
    assigned_agent_role: str | None = None
    result: dict[str, JSONValue] | None = None
    progress: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "Task.id")
        self.title = _as_str(self.title, "Task.title", max_len=512)
        self.description = _as_str(self.description, "Task.description", min_len=0)
        self.owner_id = _as_str(self.owner_id, "Task.owner_id")
        self.status = _as_enum(TaskStatus, self.status, "Task.status")
        self.priority = _as_enum(TaskPriority, self.priority, "Task.priority")
        self.parent_task_id = _as_optional_str(self.parent_task_id, "Task.parent_task_id")
        self.dependencies = _as_str_tuple(self.dependencies, "Task.dependencies")
        self.subtasks = _as_str_tuple(self.subtasks, "Task.subtasks")
        if self.id in self.dependencies:
            _fail("Task.dependencies", "a task cannot depend on itself")
        self.assigned_agent_role = _as_optional_str(
            self.assigned_agent_role, "Task.assigned_agent_role"
        )
        if self.result is not None:
            self.result = _as_json_object(self.result, "Task.result")
        self.progress = _as_int(self.progress, "Task.progress", minimum=0, maximum=100)
        self.created_at = _as_datetime(self.created_at, "Task.created_at")
        self.updated_at = _as_datetime(self.updated_at, "Task.updated_at")
        self.started_at = _as_optional_datetime(self.started_at, "Task.started_at")
        self.completed_at = _as_optional_datetime(self.completed_at, "Task.completed_at")

    @property
    def is_root(self) -> bool:
        return self.parent_task_id is None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Task:
        names = {item.name for item in fields(cls)}
        parsed = _expect_object(
            data,
            "Task",
            required={"id", "title", "description", "owner_id"},
            optional=names,
        )
        payload = dict(parsed)
        for key in ("dependencies", "subtasks"):
            if key in payload:
                payload[key] = _as_str_tuple(payload[key], f"Task.{key}")
        return cls(**payload)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class AuditRecord(CanonicalModel):
    """Immutable record of one authorization, sandbox, or content decision."""

    id: str
    kind: AuditKind
    decision: str
    principal_id: str | None = None
    reason: str | None = None
    correlation_id: str | None = None
    details: dict[str, JSONValue] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        _set(self, "id", _as_str(self.id, "AuditRecord.id"))
        _set(self, "kind", _as_enum(AuditKind, self.kind, "AuditRecord.kind"))
        _set(self, "decision", _as_str(self.decision, "AuditRecord.decision", max_len=64))
        _set(
            self, "principal_id", _as_optional_str(self.principal_id, "AuditRecord.principal_id")
        )
        _set(self, "reason", _as_optional_str(self.reason, "AuditRecord.reason"))
        _set(
            self,
            "correlation_id",
            _as_optional_str(self.correlation_id, "AuditRecord.correlation_id"),
        )
        _set(self, "details", _as_json_object(self.details, "AuditRecord.details"))
        _set(self, "timestamp", _as_datetime(self.timestamp, "AuditRecord.timestamp"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AuditRecord:
        names = {item.name for item in fields(cls)}
        parsed = _expect_object(
            data, "AuditRecord", required={"id", "kind", "decision"}, optional=names
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class ModerationLog(CanonicalModel):
    """Privacy-preserving record of a content verdict; stores a hash, never the content."""

    id: str
    is_allowed: bool
    categories: tuple[CategoryScore, ...]
    content_hash: str
    reason: str | None = None
    principal_id: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        _set(self, "id", _as_str(self.id, "ModerationLog.id"))
        _set(self, "is_allowed", _as_bool(self.is_allowed, "ModerationLog.is_allowed"))
        _set(self, "categories", _as_category_scores(self.categories, "ModerationLog.categories"))
        _set(self, "content_hash", _as_str(self.content_hash, "ModerationLog.content_hash"))
        _set(self, "timestamp", _as_datetime(self.timestamp, "ModerationLog.timestamp"))

    @classmethod
    def from_result(
        cls, result: ContentSafetyResult, *, content_hash: str, principal_id: str | None
    ) -> ModerationLog:
        return cls(
            id=result.id,
            is_allowed=result.is_allowed,
            categories=result.categories,
            content_hash=content_hash,
            reason=result.reason,
            principal_id=principal_id,
            timestamp=result.timestamp,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ModerationLog:
        names = {item.name for item in fields(cls)}
        parsed = _expect_object(
            data,
            "ModerationLog",
            required={"id", "is_allowed", "categories", "content_hash"},
            optional=names,
        )
        return cls(**parsed)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class UsageLogEntry(CanonicalModel):
    id: str
    principal_id: str
    limit_type: LimitType
    resource_id: str
    amount: int
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        _set(self, "id", _as_str(self.id, "UsageLogEntry.id"))
        _set(self, "principal_id", _as_str(self.principal_id, "UsageLogEntry.principal_id"))
        _set(self, "limit_type", _as_enum(LimitType, self.limit_type, "UsageLogEntry.limit_type"))
        _set(self, "resource_id", _as_str(self.resource_id, "UsageLogEntry.resource_id"))
        _set(self, "amount", _as_int(self.amount, "UsageLogEntry.amount", minimum=1))
        _set(self, "timestamp", _as_datetime(self.timestamp, "UsageLogEntry.timestamp"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> UsageLogEntry:
        parsed = _expect_object(
            data,
            "UsageLogEntry",
            required={"id", "principal_id", "limit_type", "resource_id", "amount"},
            optional={"timestamp"},
        )
        return cls(**parsed)  # type: ignore[arg-type]


__all__ = [
    "OWN_RESOURCE_ID",
    "WILDCARD_RESOURCE_ID",
    "AuditKind",
    "AuditRecord",
    "CanonicalModel",
    "CategoryScore",
    "ContentCategory",
    "ContentSafetyResult",
    "ExecutionResult",
    "JSONValue",
    "LimitType",
    "ModerationLog",
    "Permission",
    "PermissionLevel",
    "Principal",
    "RateLimitCounter",
    "RateLimitPolicy",
    "ResourceQuota",
    "ResourceRef",
    "ResourceType",
    "ResourceUsage",
    "SandboxConfig",
    "SandboxLanguage",
    "SubscriptionTier",
    "Task",
    "TaskPriority",
    "TaskResult",
    "TaskStatus",
    "ToolType",
    "UsageLogEntry",
    "UsageMetrics",
    "utc_now",
]
