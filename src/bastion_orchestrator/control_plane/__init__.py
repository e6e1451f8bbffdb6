"""
bastion-orchestrator — control plane

File: src/bastion_orchestrator/control_plane/__init__.py
Last updated: 2026-10-19

Purpose
- Task decomposition, dependency-aware dispatch to workers, and the task lifecycle.
"""

from bastion_orchestrator.control_plane.controller import (
    Controller,
    ControllerResult,
    SubtaskOutcome,
    SubtaskStatus,
)
from bastion_orchestrator.control_plane.plan import (
    PlannedSubtask,
    TaskPlan,
    extract_json_text,
    parse_plan,
)
from bastion_orchestrator.control_plane.tasks import (
    InMemoryTaskStore,
    TaskNotFoundError,
    TaskService,
    TaskStore,
)

__all__ = [
    "Controller",
    "ControllerResult",
    "InMemoryTaskStore",
    "PlannedSubtask",
    "SubtaskOutcome",
    "SubtaskStatus",
    "TaskNotFoundError",
    "TaskPlan",
    "TaskService",
    "TaskStore",
    "extract_json_text",
    "parse_plan",
]
