"""
bastion-orchestrator — permission checker

File: src/bastion_orchestrator/security/permissions.py
Last updated: 2026-10-19

Purpose
- Answer "does principal P hold level L on resource (type, id)?" from explicit grants,
  role defaults, and ownership.

Functional requirements
- Resolution order: an unexpired explicit grant on the exact ``(type, id)`` decides
  alone; otherwise the ``admin`` role passes; otherwise role defaults match on the exact
  id, on ``"*"``, or on ``"own"`` when the ownership lookup confirms the principal owns
  the resource. First sufficient match wins. No match denies.
- Ownership is only meaningful for workspace, file, and deployment resources.
- Any store failure denies.

Non-functional requirements
- Stores are synchronous and keyed by principal; the in-memory store is thread-safe.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from bastion_orchestrator.domain.ids import generate_permission_id
from bastion_orchestrator.domain.models import (
    OWN_RESOURCE_ID,
    WILDCARD_RESOURCE_ID,
    JSONValue,
    Permission,
    PermissionLevel,
    Principal,
    ResourceType,
    ToolType,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import datetime


class PermissionStore(Protocol):
    def find(
        self, principal_id: str, resource_type: ResourceType, resource_id: str
    ) -> Permission | None: ...

    def upsert(self, permission: Permission) -> Permission: ...

    def delete(
        self, principal_id: str, resource_type: ResourceType, resource_id: str
    ) -> bool: ...

    def list_for_principal(self, principal_id: str) -> list[Permission]: ...


class OwnershipLookup(Protocol):
    def is_owner(
        self, principal_id: str, resource_type: ResourceType, resource_id: str
    ) -> bool: ...


class _ToolLike(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def type(self) -> ToolType: ...


@dataclass(frozen=True, slots=True)
class RoleGrant:
    resource_type: ResourceType
    resource_id: str
    level: PermissionLevel


ADMIN_ROLE: Final[str] = "admin"

DEFAULT_ROLE_GRANTS: Final[Mapping[str, tuple[RoleGrant, ...]]] = {
    "admin": (RoleGrant(ResourceType.SYSTEM, WILDCARD_RESOURCE_ID, PermissionLevel.ADMIN),),
    "user": (
        RoleGrant(ResourceType.TOOL, "basic-tools", PermissionLevel.EXECUTE),
        RoleGrant(ResourceType.WORKSPACE, OWN_RESOURCE_ID, PermissionLevel.WRITE),
        RoleGrant(ResourceType.TOOL, "code-execution", PermissionLevel.EXECUTE),
        RoleGrant(ResourceType.FILE, OWN_RESOURCE_ID, PermissionLevel.WRITE),
    ),
    "guest": (RoleGrant(ResourceType.TOOL, "basic-tools", PermissionLevel.READ),),
}

TOOL_TYPE_LEVELS: Final[Mapping[ToolType, PermissionLevel]] = {
    ToolType.CODE_EXECUTION: PermissionLevel.EXECUTE,
    ToolType.FILE_SYSTEM: PermissionLevel.WRITE,
    ToolType.WEB_BROWSING: PermissionLevel.EXECUTE,
    ToolType.MULTI_MODAL: PermissionLevel.EXECUTE,
    ToolType.DEPLOYMENT: PermissionLevel.ADMIN,
}

OWNABLE_RESOURCE_TYPES: Final[frozenset[ResourceType]] = frozenset(
    {ResourceType.WORKSPACE, ResourceType.FILE, ResourceType.DEPLOYMENT}
)


class InMemoryPermissionStore:
    """Grant store keyed by ``(principal, resource_type, resource_id)``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._grants: dict[tuple[str, ResourceType, str], Permission] = {}

    def find(
        self, principal_id: str, resource_type: ResourceType, resource_id: str
    ) -> Permission | None:
        with self._lock:
            return self._grants.get((principal_id, ResourceType(resource_type), resource_id))

    def upsert(self, permission: Permission) -> Permission:
        key = (permission.principal_id, permission.resource_type, permission.resource_id)
        with self._lock:
            self._grants[key] = permission
        return permission

    def delete(self, principal_id: str, resource_type: ResourceType, resource_id: str) -> bool:
        with self._lock:
            return (
                self._grants.pop((principal_id, ResourceType(resource_type), resource_id), None)
                is not None
            )

    def list_for_principal(self, principal_id: str) -> list[Permission]:
        with self._lock:
            items = [grant for key, grant in self._grants.items() if key[0] == principal_id]
        return sorted(items, key=lambda grant: (grant.resource_type.value, grant.resource_id))


class InMemoryOwnershipLookup:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owners: dict[tuple[ResourceType, str], str] = {}

    def set_owner(self, resource_type: ResourceType, resource_id: str, owner_id: str) -> None:
        with self._lock:
            self._owners[(ResourceType(resource_type), resource_id)] = owner_id

    def is_owner(self, principal_id: str, resource_type: ResourceType, resource_id: str) -> bool:
        with self._lock:
            return self._owners.get((ResourceType(resource_type), resource_id)) == principal_id


class PermissionChecker:
    """Resolve permission requests against grants, role defaults, and ownership."""

    def __init__(
        self,
        store: PermissionStore,
        *,
        ownership: OwnershipLookup | None = None,
        role_grants: Mapping[str, tuple[RoleGrant, ...]] | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._ownership = ownership
        self._role_grants = dict(DEFAULT_ROLE_GRANTS if role_grants is None else role_grants)
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def store(self) -> PermissionStore:
        return self._store

    def has_permission(
        self,
        principal: Principal,
        resource_type: ResourceType,
        resource_id: str,
        required: PermissionLevel,
    ) -> bool:
        kind = ResourceType(resource_type)
        level = PermissionLevel(required)
        try:
            granted = self._resolve(principal, kind, resource_id, level)
        except Exception as exc:  # noqa: BLE001 - store failures deny
            self._logger.error(
                "permission_check_failed",
                principal_id=principal.id,
                resource_type=kind.value,
                resource_id=resource_id,
                error=str(exc),
            )
            return False

        if not granted:
            self._logger.info(
                "permission_denied",
                principal_id=principal.id,
                resource_type=kind.value,
                resource_id=resource_id,
                required_level=level.value,
            )
        return granted

    def can_use_tool(self, principal: Principal, tool: _ToolLike) -> bool:
        required = TOOL_TYPE_LEVELS.get(tool.type, PermissionLevel.EXECUTE)
        return self.has_permission(principal, ResourceType.TOOL, tool.id, required)

    def grant_permission(
        self,
        principal_id: str,
        resource_type: ResourceType,
        resource_id: str,
        level: PermissionLevel,
        *,
        conditions: Mapping[str, JSONValue] | None = None,
        granted_by: str | None = None,
        expires_at: datetime | None = None,
    ) -> Permission:
        """Create or replace the explicit grant for ``(principal, type, id)``."""

        existing = self._store.find(principal_id, ResourceType(resource_type), resource_id)
        permission = Permission(
            id=existing.id if existing is not None else generate_permission_id(),
            principal_id=principal_id,
            resource_type=resource_type,
            resource_id=resource_id,
            level=level,
            conditions=dict(conditions or {}),
            granted_by=granted_by,
            expires_at=expires_at,
        )
        self._store.upsert(permission)
        self._logger.info(
            "permission_granted",
            principal_id=principal_id,
            resource_type=permission.resource_type.value,
            resource_id=resource_id,
            level=permission.level.value,
            granted_by=granted_by,
        )
        return permission

    def revoke_permission(
        self, principal_id: str, resource_type: ResourceType, resource_id: str
    ) -> bool:
        removed = self._store.delete(principal_id, ResourceType(resource_type), resource_id)
        self._logger.info(
            "permission_revoked",
            principal_id=principal_id,
            resource_type=ResourceType(resource_type).value,
            resource_id=resource_id,
            removed=removed,
        )
        return removed

    def _resolve(
        self,
        principal: Principal,
        resource_type: ResourceType,
        resource_id: str,
        required: PermissionLevel,
    ) -> bool:
        explicit = self._store.find(principal.id, resource_type, resource_id)
        if explicit is not None and not explicit.is_expired(self._clock()):
            return explicit.level.satisfies(required)

        if principal.has_role(ADMIN_ROLE):
            return True

        for role in principal.roles:
            for grant in self._role_grants.get(role, ()):
                if grant.resource_type != resource_type or not grant.level.satisfies(required):
                    continue
                if grant.resource_id in (resource_id, WILDCARD_RESOURCE_ID):
                    return True
                if grant.resource_id == OWN_RESOURCE_ID and self._owns(
                    principal, resource_type, resource_id
                ):
                    return True
        return False

    def _owns(self, principal: Principal, resource_type: ResourceType, resource_id: str) -> bool:
        if self._ownership is None or resource_type not in OWNABLE_RESOURCE_TYPES:
            return False
        return self._ownership.is_owner(principal.id, resource_type, resource_id)


__all__ = [
    "ADMIN_ROLE",
    "DEFAULT_ROLE_GRANTS",
    "OWNABLE_RESOURCE_TYPES",
    "TOOL_TYPE_LEVELS",
    "InMemoryOwnershipLookup",
    "InMemoryPermissionStore",
    "OwnershipLookup",
    "PermissionChecker",
    "PermissionStore",
    "RoleGrant",
]
