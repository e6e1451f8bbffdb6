"""
bastion-orchestrator — task management service

File: src/bastion_orchestrator/control_plane/tasks.py
Last updated: 2026-10-19

Purpose
- Own the lifecycle of root tasks and their subtasks: creation, assignment, status
  transitions, dependency checks, decomposition, parent progress, and cancellation.

Functional requirements
- Status transitions follow ``PENDING -> IN_PROGRESS -> {COMPLETED | FAILED}``;
  ``CANCELLED`` is reachable from PENDING or IN_PROGRESS only. Anything else raises
  ``InvalidTaskTransitionError``.
- ``started_at`` is set once on first entry into IN_PROGRESS; ``completed_at`` once on
  entry into COMPLETED or FAILED.
- Subtasks are created only through a parent; cancelling a parent cancels every
  non-terminal subtask.

Non-functional requirements
- Storage is pluggable: the SQLite ``TaskRepo`` and ``InMemoryTaskStore`` satisfy the
  same protocol.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from bastion_orchestrator.domain.errors import InvalidTaskTransitionError
from bastion_orchestrator.domain.ids import generate_task_id
from bastion_orchestrator.domain.models import Task, TaskPriority, TaskStatus, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from datetime import datetime

    from bastion_orchestrator.control_plane.plan import TaskPlan
    from bastion_orchestrator.domain.models import JSONValue

_ALLOWED_TRANSITIONS: Final[Mapping[TaskStatus, frozenset[TaskStatus]]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}
_LIST_PAGE_SIZE: Final[int] = 1000
_TITLE_LIMIT: Final[int] = 120


class TaskNotFoundError(LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskStore(Protocol):
    def save(self, task: Task) -> Task: ...

    def get(self, task_id: str) -> Task | None: ...

    def list_roots(self, owner_id: str, *, limit: int = 100, offset: int = 0) -> list[Task]: ...

    def list_children(self, parent_task_id: str) -> list[Task]: ...


class InMemoryTaskStore:
    """Process-local task store; hands out copies so callers never share instances."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}

    def save(self, task: Task) -> Task:
        task.updated_at = utc_now()
        with self._lock:
            self._tasks[task.id] = _copy(task)
        return task

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            stored = self._tasks.get(task_id)
        return None if stored is None else _copy(stored)

    def list_roots(self, owner_id: str, *, limit: int = 100, offset: int = 0) -> list[Task]:
        with self._lock:
            roots = [
                task
                for task in self._tasks.values()
                if task.owner_id == owner_id and task.parent_task_id is None
            ]
        roots.sort(key=lambda task: (task.created_at, task.id), reverse=True)
        return [_copy(task) for task in roots[offset : offset + limit]]

    def list_children(self, parent_task_id: str) -> list[Task]:
        with self._lock:
            children = [
                task for task in self._tasks.values() if task.parent_task_id == parent_task_id
            ]
        children.sort(key=lambda task: (task.created_at, task.id))
        return [_copy(task) for task in children]


class TaskService:
    def __init__(
        self,
        store: TaskStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def create_task(
        self,
        owner_id: str,
        title: str,
        description: str,
        *,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        parent_task_id: str | None = None,
        dependencies: Iterable[str] = (),
        task_id: str | None = None,
    ) -> Task:
        parent = self._require(parent_task_id) if parent_task_id is not None else None
        now = self._clock()
        task = Task(
            id=task_id or generate_task_id(),
            title=title,
            description=description,
            owner_id=owner_id,
            priority=TaskPriority(priority),
            parent_task_id=parent_task_id,
            dependencies=tuple(dependencies),
            created_at=now,
            updated_at=now,
        )
        self._store.save(task)
        if parent is not None:
            parent.subtasks = (*parent.subtasks, task.id)
            self._touch_and_save(parent)
        self._logger.info(
            "task_created",
            task_id=task.id,
            owner_id=owner_id,
            parent_task_id=parent_task_id,
            priority=task.priority.value,
        )
        return task

    def get_task(self, task_id: str) -> Task | None:
        return self._store.get(task_id)

    def get_user_tasks(self, owner_id: str, status: TaskStatus | str | None = None) -> list[Task]:
        """Root tasks of ``owner_id``, highest priority first, then most recently updated."""

        roots = self._store.list_roots(owner_id, limit=_LIST_PAGE_SIZE)
        if status is not None:
            wanted = TaskStatus(status)
            roots = [task for task in roots if task.status is wanted]
        return _by_priority(roots)

    def get_subtasks(self, parent_task_id: str) -> list[Task]:
        return _by_priority(self._store.list_children(parent_task_id))

    def assign_task_to_agent(self, task_id: str, agent_role: str) -> Task:
        task = self._require(task_id)
        task.assigned_agent_role = agent_role
        return self._touch_and_save(task)

    def update_task_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        result: Mapping[str, JSONValue] | None = None,
    ) -> Task:
        task = self._require(task_id)
        target = TaskStatus(status)
        if target not in _ALLOWED_TRANSITIONS[task.status]:
            raise InvalidTaskTransitionError(
                f"Task {task_id} cannot move from {task.status.value} to {target.value}"
            )
        now = self._clock()
        if target is TaskStatus.IN_PROGRESS and task.started_at is None:
            task.started_at = now
        if target in (TaskStatus.COMPLETED, TaskStatus.FAILED) and task.completed_at is None:
            task.completed_at = now
        if target is TaskStatus.COMPLETED:
            task.progress = 100
        previous = task.status
        task.status = target
        if result is not None:
            task.result = dict(result)
        self._touch_and_save(task)
        self._logger.info(
            "task_status_changed",
            task_id=task_id,
            from_status=previous.value,
            to_status=target.value,
        )
        return task

    def are_dependencies_met(self, task_id: str) -> bool:
        task = self._require(task_id)
        for dependency_id in task.dependencies:
            dependency = self._store.get(dependency_id)
            if dependency is None or dependency.status is not TaskStatus.COMPLETED:
                return False
        return True

    def decompose_task(self, task_id: str, plan: TaskPlan) -> list[Task]:
        """Create one subtask per planned subtask, in plan order.

        Plan-local dependency ids are rewritten to the created task ids.
        """

        parent = self._require(task_id)
        ids = {item.id: generate_task_id() for item in plan.subtasks}
        created: list[Task] = []
        for item in plan.subtasks:
            subtask = self.create_task(
                parent.owner_id,
                _title(item.id, item.description),
                item.description,
                priority=item.priority,
                parent_task_id=task_id,
                dependencies=tuple(ids[dep] for dep in item.dependencies),
                task_id=ids[item.id],
            )
            created.append(self.assign_task_to_agent(subtask.id, item.assigned_to))
        return created

    def update_parent_progress(self, parent_task_id: str) -> Task:
        """Recompute progress; once every subtask is terminal the parent completes or fails."""

        parent = self._require(parent_task_id)
        children = self._store.list_children(parent_task_id)
        if not children:
            raise ValueError(f"Invalid parent task: {parent_task_id}")

        total = len(children)
        completed = sum(1 for child in children if child.status is TaskStatus.COMPLETED)
        failed = sum(1 for child in children if child.status is TaskStatus.FAILED)
        cancelled = sum(1 for child in children if child.status is TaskStatus.CANCELLED)
        progress_data: dict[str, JSONValue] = {
            "completed_subtasks": completed,
            "failed_subtasks": failed,
            "cancelled_subtasks": cancelled,
            "total_subtasks": total,
        }
        result: dict[str, JSONValue] = {**(parent.result or {}), "progress": progress_data}
        parent.progress = (completed * 100) // total

        if parent.status.is_terminal:
            parent.result = result
            return self._touch_and_save(parent)

        if completed + failed + cancelled == total:
            target = TaskStatus.COMPLETED if completed == total else TaskStatus.FAILED
            self._touch_and_save(parent)
            if parent.status is TaskStatus.PENDING:
                self.update_task_status(parent_task_id, TaskStatus.IN_PROGRESS)
            return self.update_task_status(parent_task_id, target, result)

        in_flight = any(child.status is TaskStatus.IN_PROGRESS for child in children)
        if in_flight and parent.status is TaskStatus.PENDING:
            self._touch_and_save(parent)
            return self.update_task_status(parent_task_id, TaskStatus.IN_PROGRESS, result)
        parent.result = result
        return self._touch_and_save(parent)

    def cancel_task(self, task_id: str) -> Task:
        """Cancel ``task_id`` and every non-terminal subtask beneath it."""

        task = self._require(task_id)
        for child in self._store.list_children(task_id):
            if not child.status.is_terminal:
                self.cancel_task(child.id)
        if task.status.is_terminal:
            return task
        return self.update_task_status(task_id, TaskStatus.CANCELLED)

    def _require(self, task_id: str) -> Task:
        task = self._store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _touch_and_save(self, task: Task) -> Task:
        task.updated_at = self._clock()
        return self._store.save(task)


def _by_priority(tasks: list[Task]) -> list[Task]:
    return sorted(tasks, key=lambda task: (task.priority.weight, task.updated_at), reverse=True)


def _title(plan_id: str, description: str) -> str:
    first_line = description.splitlines()[0] if description else ""
    title = f"{plan_id}: {first_line}".strip()
    if len(title) > _TITLE_LIMIT:
        title = title[: _TITLE_LIMIT - 3].rstrip() + "..."
    return title


def _copy(task: Task) -> Task:
    return Task.from_json(task.to_json())


__all__ = ["InMemoryTaskStore", "TaskNotFoundError", "TaskService", "TaskStore"]
