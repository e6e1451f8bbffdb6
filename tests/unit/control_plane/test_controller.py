"""
bastion-orchestrator — unit tests for the task controller

File: tests/unit/control_plane/test_controller.py
Last updated: 2026-10-19

Purpose
- Pin dispatch semantics: decomposition, dependency gating, concurrency bounds,
  cancellation, and synthesis over a scripted controller model and fake workers.

What this test file should cover
- A coder -> security chain runs in dependency order and synthesizes.
- A failed dependency skips its dependents without ever calling their worker.
- Missing workers and raising workers fail only their own subtask.
- Independent subtasks respect ``max_concurrency``.
- Cancellation stops undispatched subtasks; parse failures abort before dispatch.
- With a task service, subtask records mirror the in-memory outcomes.
- Cancelling the parent or a subtask record mid-run stops later dispatches cleanly.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pytest

from bastion_orchestrator.agents.reasoning import MessageRole, ScriptedReasoningModel
from bastion_orchestrator.control_plane.controller import Controller, SubtaskStatus
from bastion_orchestrator.control_plane.tasks import InMemoryTaskStore, TaskService
from bastion_orchestrator.domain.errors import ErrorCode, PlanParseError, ProviderError
from bastion_orchestrator.domain.models import TaskResult, TaskStatus
from bastion_orchestrator.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from conftest import RecordingLogger


@dataclass
class _FakeWorker:
    role: str
    succeed: bool = True
    raises: Exception | None = None
    delay: float = 0.0
    on_call: Callable[[], None] | None = None
    calls: list[Mapping[str, object]] = field(default_factory=list)

    @property
    def name(self) -> str:
        return f"{self.role.title()} Agent"

    @property
    def description(self) -> str:
        return f"Handles {self.role} work"

    async def execute_task(self, task: Mapping[str, object]) -> TaskResult:
        self.calls.append(task)
        if self.on_call is not None:
            self.on_call()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        if not self.succeed:
            return TaskResult(success=False, message=f"{self.role} gave up")
        return TaskResult(
            success=True,
            message="Task executed successfully",
            data={"task_id": str(task["id"]), "response": f"{self.role} done"},
        )


def _plan_json(*subtasks: tuple[str, str, list[str]]) -> str:
    body = {
        "plan": {"name": "Plan", "description": "Approach"},
        "subtasks": [
            {
                "id": subtask_id,
                "description": f"Work on {subtask_id}",
                "assignedTo": role,
                "priority": "medium",
                "dependencies": deps,
            }
            for subtask_id, role, deps in subtasks
        ],
    }
    return f"Here is my plan:\n```json\n{json.dumps(body)}\n```"


def _controller(
    model: ScriptedReasoningModel,
    *workers: _FakeWorker,
    max_concurrency: int = 4,
    tasks: TaskService | None = None,
    logger: RecordingLogger | None = None,
) -> Controller:
    return Controller(
        model,
        workers=workers,  # type: ignore[arg-type]
        max_concurrency=max_concurrency,
        tasks=tasks,
        logger=logger,
    )


async def test_coder_then_security_runs_in_order_and_synthesizes(
    recording_logger: RecordingLogger,
) -> None:
    model = ScriptedReasoningModel(
        [_plan_json(("task-1", "coder", []), ("task-2", "security", ["task-1"])), "All done."]
    )
    order: list[str] = []
    coder = _FakeWorker("coder", on_call=lambda: order.append("coder"))
    security = _FakeWorker("security", on_call=lambda: order.append("security"))
    controller = _controller(model, coder, security, logger=recording_logger)

    result = await controller.process_task("Write and audit a parser")

    assert result.success
    assert result.message == "Task processed with controller agent"
    assert result.synthesis == "All done."
    assert order == ["coder", "security"]
    assert [outcome.status for outcome in result.outcomes] == [SubtaskStatus.COMPLETED] * 2
    assert coder.calls[0]["assigned_by"] == "Controller"
    assert coder.calls[0]["description"] == "Work on task-1"

    plan_prompt = model.calls[0][0][-1].content
    assert "- Coder Agent (coder): Handles coder work" in plan_prompt
    assert "Task: Write and audit a parser" in plan_prompt
    synthesis_prompt = model.calls[1][0][-1].content
    assert "2 subtasks were completed successfully and 0 did not." in synthesis_prompt

    system_notes = [
        message.content
        for message in controller.get_history()[1:]
        if message.role is MessageRole.SYSTEM
    ]
    assert system_notes[0] == "Assigned task to Coder Agent (coder): Work on task-1"
    assert system_notes[1].startswith("Received result from Coder Agent (coder): Success")
    assert "plan_created" in recording_logger.names()
    assert "task_processed" in recording_logger.names()


async def test_failed_dependency_skips_dependents_without_calling_them() -> None:
    model = ScriptedReasoningModel(
        [
            _plan_json(
                ("build", "coder", []),
                ("review", "security", ["build"]),
                ("docs", "writer", ["review"]),
            ),
            "Partial answer.",
        ]
    )
    coder = _FakeWorker("coder", succeed=False)
    security = _FakeWorker("security")
    writer = _FakeWorker("writer")
    controller = _controller(model, coder, security, writer)

    result = await controller.process_task("Ship it")

    assert not result.success
    assert result.synthesis == "Partial answer."
    assert result.outcome_for("build").status is SubtaskStatus.FAILED
    assert result.outcome_for("build").error_code is ErrorCode.WORKER_FAILED
    review = result.outcome_for("review")
    assert review.status is SubtaskStatus.SKIPPED
    assert review.error_code is ErrorCode.DEPENDENCY_FAILED
    assert review.message == "Skipped because dependencies did not succeed: build"
    assert result.outcome_for("docs").status is SubtaskStatus.SKIPPED
    assert security.calls == []
    assert writer.calls == []


async def test_missing_and_raising_workers_fail_only_their_subtask() -> None:
    model = ScriptedReasoningModel(
        [
            _plan_json(
                ("design", "designer", []),
                ("infra", "devops", []),
                ("code", "coder", []),
            ),
            "Summary.",
        ]
    )
    devops = _FakeWorker("devops", raises=RuntimeError("kubectl exploded"))
    coder = _FakeWorker("coder")
    controller = _controller(model, devops, coder)

    result = await controller.process_task("Launch")

    design = result.outcome_for("design")
    assert design.status is SubtaskStatus.FAILED
    assert design.error_code is ErrorCode.WORKER_NOT_FOUND
    assert design.message == 'Worker agent with role "designer" not found'
    infra = result.outcome_for("infra")
    assert infra.status is SubtaskStatus.FAILED
    assert infra.message == "Error assigning task: kubectl exploded"
    assert result.outcome_for("code").success
    assert not result.success
    assert result.synthesis == "Summary."


async def test_independent_subtasks_respect_max_concurrency() -> None:
    active = 0
    peak = 0

    class _TrackingWorker(_FakeWorker):
        async def execute_task(self, task: Mapping[str, object]) -> TaskResult:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                return await super().execute_task(task)
            finally:
                active -= 1

    subtasks = [(f"t{index}", f"role{index}", []) for index in range(5)]
    model = ScriptedReasoningModel([_plan_json(*subtasks), "done"])
    workers = [_TrackingWorker(f"role{index}", delay=0.01) for index in range(5)]
    controller = _controller(model, *workers, max_concurrency=2)

    result = await controller.process_task("Parallel work")

    assert result.success
    assert peak == 2
    assert all(len(worker.calls) == 1 for worker in workers)


async def test_cancellation_stops_undispatched_subtasks() -> None:
    token = CancellationToken()
    model = ScriptedReasoningModel(
        [
            _plan_json(
                ("first", "coder", []),
                ("second", "writer", []),
                ("after", "security", ["first"]),
            ),
            "never used",
        ]
    )
    coder = _FakeWorker("coder", on_call=token.cancel)
    writer = _FakeWorker("writer")
    security = _FakeWorker("security")
    controller = _controller(model, coder, writer, security, max_concurrency=1)

    result = await controller.process_task("Stop halfway", cancel_token=token)

    assert not result.success
    assert result.message == "Task cancelled"
    assert result.synthesis is None
    assert result.outcome_for("first").success
    assert result.outcome_for("second").status is SubtaskStatus.CANCELLED
    after = result.outcome_for("after")
    assert after.status is SubtaskStatus.CANCELLED
    assert after.error_code is ErrorCode.TASK_CANCELLED
    assert writer.calls == []
    assert security.calls == []
    assert len(model.calls) == 1


async def test_plan_parse_failure_aborts_before_dispatch(
    recording_logger: RecordingLogger,
) -> None:
    tasks = TaskService(InMemoryTaskStore())
    parent = tasks.create_task("alice", "Root", "Do something")
    coder = _FakeWorker("coder")
    controller = _controller(
        ScriptedReasoningModel(["I would rather not plan."]),
        coder,
        tasks=tasks,
        logger=recording_logger,
    )

    with pytest.raises(PlanParseError):
        await controller.process_task("Do something", parent_task_id=parent.id)

    assert coder.calls == []
    failed = tasks.get_task(parent.id)
    assert failed is not None
    assert failed.status is TaskStatus.FAILED
    assert failed.result is not None
    assert failed.result["error_code"] == "plan_parse_error"
    assert "decomposition_failed" in recording_logger.names()


async def test_provider_failure_during_decomposition_propagates() -> None:
    controller = _controller(ScriptedReasoningModel(), _FakeWorker("coder"))

    with pytest.raises(ProviderError):
        await controller.process_task("Anything")


async def test_subtask_records_mirror_outcomes() -> None:
    tasks = TaskService(InMemoryTaskStore())
    parent = tasks.create_task("alice", "Root", "Ship it")
    model = ScriptedReasoningModel(
        [
            _plan_json(
                ("build", "coder", []),
                ("review", "security", ["build"]),
                ("notes", "writer", []),
            ),
            "Synthesized.",
        ]
    )
    controller = _controller(
        model,
        _FakeWorker("coder", succeed=False),
        _FakeWorker("security"),
        _FakeWorker("writer"),
        tasks=tasks,
    )

    result = await controller.process_task("Ship it", parent_task_id=parent.id)

    assert not result.success
    children = {child.assigned_agent_role: child for child in tasks.get_subtasks(parent.id)}
    assert children["coder"].status is TaskStatus.FAILED
    assert children["security"].status is TaskStatus.CANCELLED
    assert children["security"].result is not None
    assert children["security"].result["status"] == "skipped"
    assert children["writer"].status is TaskStatus.COMPLETED
    assert children["writer"].started_at is not None
    reloaded = tasks.get_task(parent.id)
    assert reloaded is not None
    assert reloaded.status is TaskStatus.FAILED
    assert reloaded.progress == 33


async def test_parent_cancelled_through_task_service_mid_run(
    recording_logger: RecordingLogger,
) -> None:
    tasks = TaskService(InMemoryTaskStore())
    parent = tasks.create_task("alice", "Root", "Stop from outside")
    model = ScriptedReasoningModel(
        [
            _plan_json(
                ("first", "coder", []),
                ("second", "writer", []),
                ("after", "security", ["first"]),
            ),
            "never used",
        ]
    )
    coder = _FakeWorker("coder", on_call=lambda: tasks.cancel_task(parent.id))
    writer = _FakeWorker("writer")
    security = _FakeWorker("security")
    controller = _controller(
        model, coder, writer, security, max_concurrency=1, tasks=tasks, logger=recording_logger
    )

    result = await controller.process_task("Stop from outside", parent_task_id=parent.id)

    assert not result.success
    assert result.message == "Task cancelled"
    assert result.synthesis is None
    assert result.outcome_for("second").status is SubtaskStatus.CANCELLED
    assert result.outcome_for("after").status is SubtaskStatus.CANCELLED
    assert writer.calls == []
    assert security.calls == []
    assert len(model.calls) == 1
    reloaded = tasks.get_task(parent.id)
    assert reloaded is not None
    assert reloaded.status is TaskStatus.CANCELLED
    children = tasks.get_subtasks(parent.id)
    assert {child.status for child in children} == {TaskStatus.CANCELLED}
    assert "task_record_already_closed" in recording_logger.names()


async def test_cancelled_subtask_record_is_not_dispatched() -> None:
    tasks = TaskService(InMemoryTaskStore())
    parent = tasks.create_task("alice", "Root", "Skip the notes")
    model = ScriptedReasoningModel(
        [_plan_json(("build", "coder", []), ("notes", "writer", [])), "Synthesized."]
    )

    def cancel_notes() -> None:
        for child in tasks.get_subtasks(parent.id):
            if child.assigned_agent_role == "writer":
                tasks.cancel_task(child.id)

    coder = _FakeWorker("coder", on_call=cancel_notes)
    writer = _FakeWorker("writer")
    controller = _controller(model, coder, writer, max_concurrency=1, tasks=tasks)

    result = await controller.process_task("Skip the notes", parent_task_id=parent.id)

    assert not result.success
    assert result.synthesis == "Synthesized."
    assert result.outcome_for("build").success
    notes = result.outcome_for("notes")
    assert notes.status is SubtaskStatus.CANCELLED
    assert notes.error_code is ErrorCode.TASK_CANCELLED
    assert writer.calls == []
    children = {child.assigned_agent_role: child for child in tasks.get_subtasks(parent.id)}
    assert children["coder"].status is TaskStatus.COMPLETED
    assert children["writer"].status is TaskStatus.CANCELLED
    reloaded = tasks.get_task(parent.id)
    assert reloaded is not None
    assert reloaded.status is TaskStatus.FAILED


async def test_assign_task_and_registry_helpers() -> None:
    coder = _FakeWorker("coder")
    controller = _controller(ScriptedReasoningModel(), coder)

    direct = await controller.assign_task("Fix the bug", "coder")
    missing = await controller.assign_task("Draw a logo", "designer")

    assert direct.success
    assert direct.data is not None
    assert direct.data["response"] == "coder done"
    assert not missing.success
    assert controller.get_worker("coder") is coder  # type: ignore[comparison-overlap]
    assert list(controller.workers) == ["coder"]
    with pytest.raises(ValueError, match="max_concurrency"):
        _controller(ScriptedReasoningModel(), max_concurrency=0)
