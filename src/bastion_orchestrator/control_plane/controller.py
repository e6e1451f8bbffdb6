"""
bastion-orchestrator — task controller

File: src/bastion_orchestrator/control_plane/controller.py
Last updated: 2026-10-19

Purpose
- Decompose a user task into a subtask DAG with one reasoning call, dispatch each subtask
  to the worker for its role, and synthesize a final answer from the outcomes.

Functional requirements
- Independent subtasks run first, concurrently, bounded by ``max_concurrency``.
- Dependents follow, fewest dependencies first; one is dispatched only when every
  dependency completed successfully, otherwise it is recorded as skipped with
  ``dependency_failed`` and its worker is never called.
- A missing worker fails only that subtask (``worker_not_found``).
- Dispatches and results are appended to the controller history as system messages.
- ``PlanParseError`` aborts the task before any dispatch.
- Cancellation stops dispatch of subtasks that have not started; running ones finish.
  Cancelling the parent task or a subtask record through the ``TaskService`` counts
  too: the persisted status is checked before every dispatch.
- Status writes skip records that are already terminal.
- When a ``TaskService`` and parent task id are supplied, subtasks are persisted and
  their statuses tracked alongside the in-memory outcomes.

Non-functional requirements
- Overall success holds iff every subtask completed; partial success still synthesizes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from bastion_orchestrator.agents.base import BaseAgent
from bastion_orchestrator.agents.prompts import (
    CONTROLLER_SYSTEM_TEMPLATE,
    PLAN_TEMPLATE,
    SYNTHESIS_TEMPLATE,
    PromptLibrary,
)
from bastion_orchestrator.agents.reasoning import MessageRole, ModelMessage
from bastion_orchestrator.agents.roles import AgentRole
from bastion_orchestrator.control_plane.plan import parse_plan
from bastion_orchestrator.domain.errors import (
    BastionError,
    DependencyFailedError,
    ErrorCode,
    WorkerNotFoundError,
)
from bastion_orchestrator.domain.ids import generate_task_id
from bastion_orchestrator.domain.models import TaskResult, TaskStatus, utc_now
from bastion_orchestrator.observability.logging import correlation_scope
from bastion_orchestrator.utils.concurrency import CancellationToken, WorkerPool

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Mapping

    from bastion_orchestrator.agents.reasoning import ReasoningModel
    from bastion_orchestrator.agents.worker import WorkerAgent
    from bastion_orchestrator.control_plane.plan import PlannedSubtask, TaskPlan
    from bastion_orchestrator.control_plane.tasks import TaskService
    from bastion_orchestrator.domain.models import JSONValue

CONTROLLER_NAME = "Controller"


class SubtaskStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class SubtaskOutcome:
    subtask_id: str
    role: str
    status: SubtaskStatus
    message: str
    error_code: ErrorCode | None = None
    data: dict[str, JSONValue] | None = None

    @property
    def success(self) -> bool:
        return self.status is SubtaskStatus.COMPLETED

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "subtask_id": self.subtask_id,
            "role": self.role,
            "status": self.status.value,
            "success": self.success,
            "message": self.message,
            "error_code": None if self.error_code is None else self.error_code.value,
            "data": self.data,
        }


@dataclass(frozen=True, slots=True)
class ControllerResult:
    success: bool
    message: str
    plan: TaskPlan
    outcomes: tuple[SubtaskOutcome, ...]
    synthesis: str | None

    def outcome_for(self, subtask_id: str) -> SubtaskOutcome:
        for outcome in self.outcomes:
            if outcome.subtask_id == subtask_id:
                return outcome
        raise KeyError(subtask_id)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "success": self.success,
            "message": self.message,
            "plan": self.plan.to_dict(),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "synthesis": self.synthesis,
        }


class Controller(BaseAgent):
    """Orchestrates one worker per role; holds no tools of its own."""

    def __init__(
        self,
        model: ReasoningModel,
        *,
        workers: Iterable[WorkerAgent] = (),
        prompts: PromptLibrary | None = None,
        max_concurrency: int = 4,
        temperature: float = 0.7,
        tasks: TaskService | None = None,
        logger: Any | None = None,
    ) -> None:
        library = prompts if prompts is not None else PromptLibrary()
        super().__init__(
            CONTROLLER_NAME,
            AgentRole.CONTROLLER.value,
            "Orchestrates and coordinates specialized agents",
            library.render(CONTROLLER_SYSTEM_TEMPLATE, {}),
            model,
            temperature=temperature,
            logger=logger,
        )
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._prompts = library
        self._max_concurrency = max_concurrency
        self._tasks = tasks
        self._workers: dict[str, WorkerAgent] = {}
        for worker in workers:
            self.register_worker(worker)

    @property
    def workers(self) -> Mapping[str, WorkerAgent]:
        return dict(self._workers)

    def register_worker(self, worker: WorkerAgent) -> None:
        self._workers[worker.role] = worker

    def get_worker(self, role: str) -> WorkerAgent | None:
        return self._workers.get(role)

    async def assign_task(self, description: str, role: str) -> TaskResult:
        outcome = await self._dispatch(generate_task_id(), description, role)
        return TaskResult(success=outcome.success, message=outcome.message, data=outcome.data)

    async def decompose(self, task: str) -> TaskPlan:
        prompt = self._prompts.render(
            PLAN_TEMPLATE,
            {
                "task": task,
                "workers": [
                    {"name": worker.name, "role": role, "description": worker.description}
                    for role, worker in sorted(self._workers.items())
                ],
            },
        )
        response = await self.process(prompt)
        return parse_plan(response.content)

    async def process_task(
        self,
        task: str,
        *,
        parent_task_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ControllerResult:
        token = cancel_token or CancellationToken()
        with correlation_scope(task_id=parent_task_id):
            self._mirror_status(parent_task_id, TaskStatus.IN_PROGRESS)
            try:
                plan = await self.decompose(task)
            except BastionError as exc:
                self._logger.error(
                    "decomposition_failed", error=str(exc), error_code=exc.code.value
                )
                self._mirror_status(
                    parent_task_id,
                    TaskStatus.FAILED,
                    {"error_code": exc.code.value, "message": str(exc)},
                )
                raise
            self._logger.info(
                "plan_created",
                plan_name=plan.name,
                subtask_count=len(plan.subtasks),
                independent_count=len(plan.independent),
            )

            records = self._persist_plan(parent_task_id, plan)
            outcomes = await self._execute_plan(plan, records, token, parent_task_id)
            ordered = tuple(outcomes[item.id] for item in plan.subtasks)
            if parent_task_id is not None and self._tasks is not None:
                self._tasks.update_parent_progress(parent_task_id)
            if self._record_cancelled(parent_task_id):
                token.cancel()

            if token.is_cancelled:
                self._logger.warning("task_cancelled", plan_name=plan.name)
                return ControllerResult(
                    success=False,
                    message="Task cancelled",
                    plan=plan,
                    outcomes=ordered,
                    synthesis=None,
                )

            synthesis = await self._synthesize(task, plan, ordered)
            success = all(outcome.success for outcome in ordered)
            self._logger.info(
                "task_processed",
                plan_name=plan.name,
                success=success,
                succeeded=sum(1 for outcome in ordered if outcome.success),
                total=len(ordered),
            )
            return ControllerResult(
                success=success,
                message="Task processed with controller agent",
                plan=plan,
                outcomes=ordered,
                synthesis=synthesis,
            )

    async def _execute_plan(
        self,
        plan: TaskPlan,
        records: Mapping[str, str],
        token: CancellationToken,
        parent_task_id: str | None = None,
    ) -> dict[str, SubtaskOutcome]:
        outcomes: dict[str, SubtaskOutcome] = {}
        independent = plan.independent
        pool: WorkerPool[SubtaskOutcome] = WorkerPool(self._max_concurrency, token)
        factories = [
            self._dispatch_factory(item, records, token, parent_task_id) for item in independent
        ]
        async for index, outcome in pool.run(factories):
            outcomes[independent[index].id] = outcome
        for item in independent:
            if item.id not in outcomes:
                outcomes[item.id] = self._cancelled(item, records)

        for item in plan.dependents_in_dispatch_order():
            if token.is_cancelled:
                outcomes[item.id] = self._cancelled(item, records)
                continue
            failed = tuple(dep for dep in item.dependencies if not outcomes[dep].success)
            if failed:
                outcomes[item.id] = self._skipped(item, failed, records)
                continue
            outcomes[item.id] = await self._run_subtask(item, records, token, parent_task_id)
        return outcomes

    def _dispatch_factory(
        self,
        item: PlannedSubtask,
        records: Mapping[str, str],
        token: CancellationToken,
        parent_task_id: str | None,
    ) -> Callable[[], Awaitable[SubtaskOutcome]]:
        async def run() -> SubtaskOutcome:
            return await self._run_subtask(item, records, token, parent_task_id)

        return run

    async def _run_subtask(
        self,
        item: PlannedSubtask,
        records: Mapping[str, str],
        token: CancellationToken,
        parent_task_id: str | None = None,
    ) -> SubtaskOutcome:
        record_id = records.get(item.id)
        with correlation_scope(subtask_id=item.id):
            if self._record_cancelled(parent_task_id):
                token.cancel()
            if token.is_cancelled or self._record_cancelled(record_id):
                return self._cancelled(item, records)
            self._mirror_status(record_id, TaskStatus.IN_PROGRESS)
            outcome = await self._dispatch(item.id, item.description, item.assigned_to)
            self._mirror_status(
                record_id,
                TaskStatus.COMPLETED if outcome.success else TaskStatus.FAILED,
                outcome.to_dict(),
            )
        return outcome

    async def _dispatch(self, subtask_id: str, description: str, role: str) -> SubtaskOutcome:
        worker = self.get_worker(role)
        if worker is None:
            error = WorkerNotFoundError(role)
            self._logger.warning("worker_not_found", subtask_id=subtask_id, worker_role=role)
            return SubtaskOutcome(
                subtask_id=subtask_id,
                role=role,
                status=SubtaskStatus.FAILED,
                message=error.message,
                error_code=error.code,
            )

        self.add_message(
            ModelMessage(
                role=MessageRole.SYSTEM,
                content=f"Assigned task to {worker.name} ({role}): {description}",
                metadata={"subtask_id": subtask_id, "worker_role": role},
            )
        )
        self._logger.info("subtask_dispatched", subtask_id=subtask_id, worker_role=role)
        try:
            result = await worker.execute_task(
                {
                    "id": subtask_id,
                    "description": description,
                    "assigned_by": self.name,
                    "timestamp": utc_now().isoformat(),
                }
            )
        except Exception as exc:  # noqa: BLE001 - subtask errors stay in that subtask
            self._logger.error(
                "subtask_dispatch_failed",
                subtask_id=subtask_id,
                worker_role=role,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            result = TaskResult(success=False, message=f"Error assigning task: {exc}")

        self.add_message(
            ModelMessage(
                role=MessageRole.SYSTEM,
                content=(
                    f"Received result from {worker.name} ({role}): "
                    f"{'Success' if result.success else 'Failure'} - {result.message}"
                ),
                metadata={"subtask_id": subtask_id, "worker_role": role},
            )
        )
        self._logger.info(
            "subtask_finished", subtask_id=subtask_id, worker_role=role, success=result.success
        )
        return SubtaskOutcome(
            subtask_id=subtask_id,
            role=role,
            status=SubtaskStatus.COMPLETED if result.success else SubtaskStatus.FAILED,
            message=result.message,
            error_code=None if result.success else ErrorCode.WORKER_FAILED,
            data=result.data,
        )

    def _skipped(
        self, item: PlannedSubtask, failed: tuple[str, ...], records: Mapping[str, str]
    ) -> SubtaskOutcome:
        error = DependencyFailedError(item.id, failed)
        self._logger.info(
            "subtask_skipped", subtask_id=item.id, failed_dependencies=list(failed)
        )
        outcome = SubtaskOutcome(
            subtask_id=item.id,
            role=item.assigned_to,
            status=SubtaskStatus.SKIPPED,
            message=error.message,
            error_code=error.code,
        )
        self._close_record(records.get(item.id), outcome)
        return outcome

    def _cancelled(self, item: PlannedSubtask, records: Mapping[str, str]) -> SubtaskOutcome:
        outcome = SubtaskOutcome(
            subtask_id=item.id,
            role=item.assigned_to,
            status=SubtaskStatus.CANCELLED,
            message="Cancelled before dispatch",
            error_code=ErrorCode.TASK_CANCELLED,
        )
        self._close_record(records.get(item.id), outcome)
        return outcome

    def _close_record(self, record_id: str | None, outcome: SubtaskOutcome) -> None:
        self._mirror_status(record_id, TaskStatus.CANCELLED, outcome.to_dict())

    def _record_cancelled(self, record_id: str | None) -> bool:
        if record_id is None or self._tasks is None:
            return False
        record = self._tasks.get_task(record_id)
        return record is not None and record.status is TaskStatus.CANCELLED

    def _mirror_status(
        self,
        record_id: str | None,
        status: TaskStatus,
        result: Mapping[str, JSONValue] | None = None,
    ) -> None:
        if record_id is None or self._tasks is None:
            return
        record = self._tasks.get_task(record_id)
        if record is None or record.status.is_terminal:
            # Cancelled (or otherwise closed) from outside while the plan was running.
            self._logger.info(
                "task_record_already_closed",
                task_id=record_id,
                status=None if record is None else record.status.value,
                wanted=status.value,
            )
            return
        self._tasks.update_task_status(record_id, status, result)

    def _persist_plan(self, parent_task_id: str | None, plan: TaskPlan) -> dict[str, str]:
        if parent_task_id is None or self._tasks is None:
            return {}
        created = self._tasks.decompose_task(parent_task_id, plan)
        return {item.id: record.id for item, record in zip(plan.subtasks, created, strict=True)}

    async def _synthesize(
        self, task: str, plan: TaskPlan, outcomes: tuple[SubtaskOutcome, ...]
    ) -> str:
        prompt = self._prompts.render(
            SYNTHESIS_TEMPLATE,
            {
                "task": task,
                "plan_name": plan.name,
                "plan_description": plan.description,
                "total": len(outcomes),
                "succeeded": sum(1 for outcome in outcomes if outcome.success),
                "outcomes": [
                    {
                        "subtask_id": outcome.subtask_id,
                        "status": outcome.status.value,
                        "message": outcome.message,
                    }
                    for outcome in outcomes
                ],
            },
        )
        response = await self.process(prompt)
        return response.content


__all__ = [
    "CONTROLLER_NAME",
    "Controller",
    "ControllerResult",
    "SubtaskOutcome",
    "SubtaskStatus",
]
