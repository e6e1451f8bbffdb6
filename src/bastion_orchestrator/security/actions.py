"""Gate actions and the table mapping each one to the permission and quota it needs."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Final

from bastion_orchestrator.domain.models import LimitType, PermissionLevel, ResourceType


class GateAction(StrEnum):
    EXECUTE_TOOL = "execute_tool"
    CODE_EXECUTION = "code_execution"
    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    DEPLOY_APP = "deploy_app"
    ADMIN_ACTION = "admin_action"


@dataclass(frozen=True, slots=True)
class ActionRequirement:
    resource_type: ResourceType
    level: PermissionLevel
    limit_type: LimitType


ACTION_REQUIREMENTS: Final[dict[GateAction, ActionRequirement]] = {
    GateAction.EXECUTE_TOOL: ActionRequirement(
        ResourceType.TOOL, PermissionLevel.EXECUTE, LimitType.TOOL_USAGE
    ),
    GateAction.CODE_EXECUTION: ActionRequirement(
        ResourceType.TOOL, PermissionLevel.EXECUTE, LimitType.TOOL_USAGE
    ),
    GateAction.READ_FILE: ActionRequirement(
        ResourceType.FILE, PermissionLevel.READ, LimitType.API_CALLS
    ),
    GateAction.WRITE_FILE: ActionRequirement(
        ResourceType.FILE, PermissionLevel.WRITE, LimitType.STORAGE
    ),
    GateAction.DEPLOY_APP: ActionRequirement(
        ResourceType.DEPLOYMENT, PermissionLevel.WRITE, LimitType.COMPUTE_RESOURCES
    ),
    GateAction.ADMIN_ACTION: ActionRequirement(
        ResourceType.SYSTEM, PermissionLevel.ADMIN, LimitType.API_CALLS
    ),
}

UNKNOWN_ACTION_REQUIREMENT: Final[ActionRequirement] = ActionRequirement(
    ResourceType.SYSTEM, PermissionLevel.READ, LimitType.API_CALLS
)

_missing = set(GateAction) - set(ACTION_REQUIREMENTS)
if _missing:
    raise RuntimeError(f"gate actions without requirements: {sorted(_missing)}")
del _missing


def requirement_for(action: GateAction | str) -> ActionRequirement:
    """Map an action to its requirement; unknown action strings need system read."""

    try:
        return ACTION_REQUIREMENTS[GateAction(action)]
    except ValueError:
        return UNKNOWN_ACTION_REQUIREMENT


__all__ = [
    "ACTION_REQUIREMENTS",
    "UNKNOWN_ACTION_REQUIREMENT",
    "ActionRequirement",
    "GateAction",
    "requirement_for",
]
