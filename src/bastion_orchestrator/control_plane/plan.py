"""
bastion-orchestrator — decomposition plan parsing

File: src/bastion_orchestrator/control_plane/plan.py
Last updated: 2026-10-19

Purpose
- Turn the reasoning model's decomposition answer into a validated subtask DAG.

Functional requirements
- JSON is taken from the first ```json (or bare ```) fence, otherwise from the outermost
  ``{...}`` object in the text.
- Shape: ``{plan: {name, description}, subtasks: [{id, description, assignedTo,
  priority, dependencies}]}``; ``priority`` defaults to medium, ``dependencies`` to none.
- Duplicate ids, unknown or self dependencies, and cycles are rejected.
- Every failure raises ``PlanParseError``; nothing is repaired or retried.

Non-functional requirements
- Dispatch order is deterministic for a given plan.
"""

from __future__ import annotations

import heapq
import json
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from bastion_orchestrator.domain.errors import PlanParseError
from bastion_orchestrator.domain.models import TaskPriority

if TYPE_CHECKING:
    from collections.abc import Mapping

    from bastion_orchestrator.domain.models import JSONValue

_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\n?(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class PlannedSubtask:
    id: str
    description: str
    assigned_to: str
    priority: TaskPriority
    dependencies: tuple[str, ...]

    @property
    def is_independent(self) -> bool:
        return not self.dependencies

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "description": self.description,
            "assignedTo": self.assigned_to,
            "priority": self.priority.value,
            "dependencies": list(self.dependencies),
        }


@dataclass(frozen=True, slots=True)
class TaskPlan:
    name: str
    description: str
    subtasks: tuple[PlannedSubtask, ...]

    @property
    def independent(self) -> tuple[PlannedSubtask, ...]:
        return tuple(item for item in self.subtasks if item.is_independent)

    def dependents_in_dispatch_order(self) -> tuple[PlannedSubtask, ...]:
        """Dependent subtasks, fewest dependencies first, never ahead of a dependency.

        Ties keep plan order.
        """

        index = {item.id: position for position, item in enumerate(self.subtasks)}
        dependents = {item.id: item for item in self.subtasks if not item.is_independent}
        waiting = {
            item.id: sum(1 for dep in item.dependencies if dep in dependents)
            for item in dependents.values()
        }
        children: dict[str, list[str]] = {key: [] for key in dependents}
        for item in dependents.values():
            for dep in item.dependencies:
                if dep in dependents:
                    children[dep].append(item.id)

        ready = [
            (len(dependents[key].dependencies), index[key], key)
            for key, count in waiting.items()
            if count == 0
        ]
        heapq.heapify(ready)
        ordered: list[PlannedSubtask] = []
        while ready:
            _, _, key = heapq.heappop(ready)
            ordered.append(dependents[key])
            for child in children[key]:
                waiting[child] -= 1
                if waiting[child] == 0:
                    heapq.heappush(
                        ready, (len(dependents[child].dependencies), index[child], child)
                    )
        return tuple(ordered)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "plan": {"name": self.name, "description": self.description},
            "subtasks": [item.to_dict() for item in self.subtasks],
        }


def extract_json_text(text: str) -> str:
    fenced = _FENCE_RE.search(text)
    if fenced is not None:
        return fenced.group(1).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise PlanParseError("Failed to parse task plan: no JSON object found")
    return text[start : end + 1]


def parse_plan(text: str) -> TaskPlan:
    try:
        payload = json.loads(extract_json_text(text))
    except json.JSONDecodeError as exc:
        raise PlanParseError(f"Failed to parse task plan: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise PlanParseError("Failed to parse task plan: top level must be an object")
    return plan_from_dict(payload)


def plan_from_dict(payload: Mapping[str, object]) -> TaskPlan:
    header = payload.get("plan")
    if not isinstance(header, dict):
        raise PlanParseError("plan: expected an object with name and description")
    name = _text(header.get("name"), "plan.name")
    description = _text(header.get("description", ""), "plan.description", allow_empty=True)

    raw_subtasks = payload.get("subtasks")
    if not isinstance(raw_subtasks, list) or not raw_subtasks:
        raise PlanParseError("subtasks: expected a non-empty list")
    subtasks = tuple(
        _parse_subtask(raw, f"subtasks[{position}]") for position, raw in enumerate(raw_subtasks)
    )
    validate_plan_graph(subtasks)
    return TaskPlan(name=name, description=description, subtasks=subtasks)


def validate_plan_graph(subtasks: tuple[PlannedSubtask, ...]) -> None:
    ids: set[str] = set()
    for item in subtasks:
        if item.id in ids:
            raise PlanParseError(f"duplicate subtask id {item.id!r}")
        ids.add(item.id)
    for item in subtasks:
        for dep in item.dependencies:
            if dep == item.id:
                raise PlanParseError(f"subtask {item.id!r} depends on itself")
            if dep not in ids:
                raise PlanParseError(f"subtask {item.id!r} depends on unknown subtask {dep!r}")

    remaining = {item.id: len(set(item.dependencies)) for item in subtasks}
    children: dict[str, list[str]] = {item.id: [] for item in subtasks}
    for item in subtasks:
        for dep in set(item.dependencies):
            children[dep].append(item.id)
    ready = [key for key, count in remaining.items() if count == 0]
    visited = 0
    while ready:
        key = ready.pop()
        visited += 1
        for child in children[key]:
            remaining[child] -= 1
            if remaining[child] == 0:
                ready.append(child)
    if visited != len(subtasks):
        cyclic = sorted(key for key, count in remaining.items() if count > 0)
        raise PlanParseError(f"subtask dependencies contain a cycle: {', '.join(cyclic)}")


def _parse_subtask(raw: object, path: str) -> PlannedSubtask:
    if not isinstance(raw, dict):
        raise PlanParseError(f"{path}: expected an object")
    subtask_id = _text(raw.get("id"), f"{path}.id")
    description = _text(raw.get("description"), f"{path}.description")
    assigned_to = _text(raw.get("assignedTo"), f"{path}.assignedTo").lower()

    raw_priority = raw.get("priority", TaskPriority.MEDIUM.value)
    try:
        priority = TaskPriority(_text(raw_priority, f"{path}.priority").lower())
    except ValueError as exc:
        raise PlanParseError(f"{path}.priority: unknown priority {raw_priority!r}") from exc

    raw_dependencies = raw.get("dependencies") or []
    if not isinstance(raw_dependencies, list):
        raise PlanParseError(f"{path}.dependencies: expected a list")
    dependencies = tuple(
        _text(dep, f"{path}.dependencies[{position}]")
        for position, dep in enumerate(raw_dependencies)
    )
    return PlannedSubtask(
        id=subtask_id,
        description=description,
        assigned_to=assigned_to,
        priority=priority,
        dependencies=dependencies,
    )


def _text(value: object, path: str, *, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        raise PlanParseError(f"{path}: expected a string")
    stripped = value.strip()
    if not stripped and not allow_empty:
        raise PlanParseError(f"{path}: must not be empty")
    return stripped


__all__ = [
    "PlannedSubtask",
    "TaskPlan",
    "extract_json_text",
    "parse_plan",
    "plan_from_dict",
    "validate_plan_graph",
]
