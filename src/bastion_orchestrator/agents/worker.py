"""Specialized worker agent: turns one dispatched task into a ``TaskResult``."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from bastion_orchestrator.agents.base import BaseAgent
from bastion_orchestrator.agents.prompts import WORKER_TASK_TEMPLATE, PromptLibrary
from bastion_orchestrator.domain.models import TaskResult

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from bastion_orchestrator.agents.reasoning import ReasoningModel
    from bastion_orchestrator.tools.base import Tool

_DEFAULT_ASSIGNER = "Controller Agent"


class WorkerAgent(BaseAgent):
    def __init__(
        self,
        name: str,
        role: str,
        description: str,
        system_prompt: str,
        model: ReasoningModel,
        *,
        specialization: str,
        capabilities: Iterable[str] = (),
        tools: Iterable[Tool] = (),
        prompts: PromptLibrary | None = None,
        temperature: float = 0.7,
        logger: Any | None = None,
    ) -> None:
        super().__init__(
            name,
            role,
            description,
            system_prompt,
            model,
            tools=tools,
            temperature=temperature,
            logger=logger,
        )
        self.specialization = specialization
        self.capabilities = tuple(capabilities)
        self._prompts = prompts if prompts is not None else PromptLibrary()

    async def execute_task(self, task: Mapping[str, object] | str) -> TaskResult:
        task_id = task.get("id") if not isinstance(task, str) else None
        try:
            prompt = self._task_prompt(task)
            response = await self.process(prompt)
        except Exception as exc:  # noqa: BLE001 - worker failures stay in the task result
            self._logger.warning(
                "worker_task_failed",
                agent_role=self.role,
                task_id=task_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return TaskResult(
                success=False,
                message=f"Error executing task: {exc}",
                data={"task_id": None if task_id is None else str(task_id)},
            )
        return TaskResult(
            success=True,
            message="Task executed successfully",
            data={
                "task_id": None if task_id is None else str(task_id),
                "response": response.content,
            },
        )

    def _task_prompt(self, task: Mapping[str, object] | str) -> str:
        if isinstance(task, str):
            return task
        return self._prompts.render(
            WORKER_TASK_TEMPLATE,
            {
                "task_id": task.get("id") or "unknown",
                "assigned_by": task.get("assigned_by") or _DEFAULT_ASSIGNER,
                "description": task.get("description") or "",
                "specialization": self.specialization,
            },
        )


__all__ = ["WorkerAgent"]
