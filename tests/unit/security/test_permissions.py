"""Unit tests for permission resolution: explicit grants, role defaults, and ownership."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from bastion_orchestrator.domain.models import (
    PermissionLevel,
    Principal,
    ResourceType,
    SubscriptionTier,
    ToolType,
)
from bastion_orchestrator.security.permissions import (
    InMemoryOwnershipLookup,
    InMemoryPermissionStore,
    PermissionChecker,
    RoleGrant,
)

if TYPE_CHECKING:
    from conftest import RecordingLogger

_NOW = datetime(2026, 10, 19, 9, 30, tzinfo=UTC)


@dataclass(frozen=True)
class _Tool:
    id: str
    type: ToolType


class _BrokenStore(InMemoryPermissionStore):
    def find(self, principal_id, resource_type, resource_id):  # type: ignore[no-untyped-def]
        raise OSError("permission store unavailable")


def _checker(
    recording_logger: RecordingLogger,
    *,
    store: InMemoryPermissionStore | None = None,
    ownership: InMemoryOwnershipLookup | None = None,
) -> PermissionChecker:
    return PermissionChecker(
        store or InMemoryPermissionStore(),
        ownership=ownership,
        clock=lambda: _NOW,
        logger=recording_logger,
    )


def test_user_role_defaults(recording_logger: RecordingLogger) -> None:
    checker = _checker(recording_logger)
    alice = Principal(id="alice")

    assert checker.has_permission(
        alice, ResourceType.TOOL, "code-execution", PermissionLevel.EXECUTE
    )
    assert checker.has_permission(alice, ResourceType.TOOL, "basic-tools", PermissionLevel.READ)
    assert not checker.has_permission(
        alice, ResourceType.TOOL, "code-execution", PermissionLevel.WRITE
    )
    assert not checker.has_permission(alice, ResourceType.SYSTEM, "*", PermissionLevel.READ)
    assert "permission_denied" in recording_logger.names()


def test_guest_cannot_execute_code(recording_logger: RecordingLogger) -> None:
    checker = _checker(recording_logger)
    guest = Principal(id="visitor", roles=("guest",))

    assert checker.has_permission(guest, ResourceType.TOOL, "basic-tools", PermissionLevel.READ)
    assert not checker.has_permission(
        guest, ResourceType.TOOL, "code-execution", PermissionLevel.EXECUTE
    )


def test_admin_role_passes_everything(recording_logger: RecordingLogger) -> None:
    checker = _checker(recording_logger)
    root = Principal(id="root", tier=SubscriptionTier.ENTERPRISE, roles=("admin",))

    for resource_type in ResourceType:
        assert checker.has_permission(root, resource_type, "anything", PermissionLevel.ADMIN)


def test_explicit_grant_overrides_role_defaults(recording_logger: RecordingLogger) -> None:
    checker = _checker(recording_logger)
    alice = Principal(id="alice")

    checker.grant_permission(alice.id, ResourceType.TOOL, "code-execution", PermissionLevel.READ)

    assert not checker.has_permission(
        alice, ResourceType.TOOL, "code-execution", PermissionLevel.EXECUTE
    )
    assert checker.has_permission(alice, ResourceType.TOOL, "code-execution", PermissionLevel.READ)


def test_expired_grant_falls_back_to_role_defaults(recording_logger: RecordingLogger) -> None:
    checker = _checker(recording_logger)
    bob = Principal(id="bob", roles=("guest",))

    checker.grant_permission(
        bob.id,
        ResourceType.TOOL,
        "code-execution",
        PermissionLevel.EXECUTE,
        expires_at=_NOW - timedelta(minutes=1),
    )
    assert not checker.has_permission(
        bob, ResourceType.TOOL, "code-execution", PermissionLevel.EXECUTE
    )

    checker.grant_permission(
        bob.id,
        ResourceType.TOOL,
        "code-execution",
        PermissionLevel.EXECUTE,
        expires_at=_NOW + timedelta(minutes=1),
    )
    assert checker.has_permission(bob, ResourceType.TOOL, "code-execution", PermissionLevel.EXECUTE)


def test_own_grant_requires_confirmed_ownership(recording_logger: RecordingLogger) -> None:
    ownership = InMemoryOwnershipLookup()
    ownership.set_owner(ResourceType.WORKSPACE, "ws-1", "alice")
    checker = _checker(recording_logger, ownership=ownership)

    alice = Principal(id="alice")
    mallory = Principal(id="mallory")

    assert checker.has_permission(alice, ResourceType.WORKSPACE, "ws-1", PermissionLevel.WRITE)
    assert not checker.has_permission(
        mallory, ResourceType.WORKSPACE, "ws-1", PermissionLevel.READ
    )
    assert not checker.has_permission(alice, ResourceType.WORKSPACE, "ws-1", PermissionLevel.ADMIN)


def test_own_grant_without_ownership_lookup_denies(recording_logger: RecordingLogger) -> None:
    checker = _checker(recording_logger)
    assert not checker.has_permission(
        Principal(id="alice"), ResourceType.FILE, "notes.txt", PermissionLevel.READ
    )


def test_grant_is_an_upsert_that_keeps_the_id(recording_logger: RecordingLogger) -> None:
    store = InMemoryPermissionStore()
    checker = _checker(recording_logger, store=store)

    first = checker.grant_permission("alice", ResourceType.FILE, "a.txt", PermissionLevel.READ)
    second = checker.grant_permission(
        "alice", ResourceType.FILE, "a.txt", PermissionLevel.WRITE, granted_by="root"
    )

    assert second.id == first.id
    assert store.list_for_principal("alice") == [second]
    assert second.granted_by == "root"


def test_revoke_reports_whether_a_grant_was_removed(recording_logger: RecordingLogger) -> None:
    checker = _checker(recording_logger)
    checker.grant_permission("alice", ResourceType.NETWORK, "*", PermissionLevel.EXECUTE)

    assert checker.revoke_permission("alice", ResourceType.NETWORK, "*") is True
    assert checker.revoke_permission("alice", ResourceType.NETWORK, "*") is False


def test_store_failure_denies_and_logs(recording_logger: RecordingLogger) -> None:
    checker = _checker(recording_logger, store=_BrokenStore())

    assert not checker.has_permission(
        Principal(id="root", roles=("admin",)), ResourceType.SYSTEM, "*", PermissionLevel.READ
    )
    assert "permission_check_failed" in recording_logger.names()


@pytest.mark.parametrize(
    ("tool_type", "roles", "expected"),
    [
        (ToolType.CODE_EXECUTION, ("user",), True),
        (ToolType.CODE_EXECUTION, ("guest",), False),
        (ToolType.DEPLOYMENT, ("user",), False),
        (ToolType.DEPLOYMENT, ("admin",), True),
    ],
)
def test_can_use_tool_maps_tool_type_to_level(
    recording_logger: RecordingLogger,
    tool_type: ToolType,
    roles: tuple[str, ...],
    expected: bool,
) -> None:
    checker = _checker(recording_logger)
    tool = _Tool(id="code-execution", type=tool_type)

    assert checker.can_use_tool(Principal(id="p", roles=roles), tool) is expected


_LEVELS = st.sampled_from(list(PermissionLevel))


@settings(max_examples=60, deadline=None)
@given(granted=_LEVELS, required=_LEVELS, weaker=_LEVELS)
def test_explicit_grant_is_monotonic_in_level(
    granted: PermissionLevel, required: PermissionLevel, weaker: PermissionLevel
) -> None:
    checker = PermissionChecker(InMemoryPermissionStore(), clock=lambda: _NOW)
    guest = Principal(id="visitor", roles=("guest",))
    checker.grant_permission(guest.id, ResourceType.DEPLOYMENT, "d-1", granted)

    allowed = checker.has_permission(guest, ResourceType.DEPLOYMENT, "d-1", required)

    assert allowed is (granted.rank >= required.rank)
    if allowed and weaker.rank <= required.rank:
        assert checker.has_permission(guest, ResourceType.DEPLOYMENT, "d-1", weaker)


@settings(max_examples=60, deadline=None)
@given(granted=_LEVELS, required=_LEVELS, weaker=_LEVELS)
def test_role_grant_is_monotonic_in_level(
    granted: PermissionLevel, required: PermissionLevel, weaker: PermissionLevel
) -> None:
    checker = PermissionChecker(
        InMemoryPermissionStore(),
        role_grants={"analyst": (RoleGrant(ResourceType.DEPLOYMENT, "*", granted),)},
        clock=lambda: _NOW,
    )
    analyst = Principal(id="ana", roles=("analyst",))

    allowed = checker.has_permission(analyst, ResourceType.DEPLOYMENT, "d-1", required)

    assert allowed is (granted.rank >= required.rank)
    if allowed and weaker.rank <= required.rank:
        assert checker.has_permission(analyst, ResourceType.DEPLOYMENT, "d-1", weaker)
