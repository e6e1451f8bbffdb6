"""
bastion-orchestrator — integration tests for controller runs over the state DB

File: tests/integration/test_controller_persistence.py
Last updated: 2026-10-19

Purpose
- Run the controller built by the application context and verify that the task tree it
  leaves behind in SQLite matches the in-memory outcomes.

What this test file should cover
- Root task and subtasks survive a reopen of the state DB with statuses and results.
- Skipped subtasks are persisted as cancelled and the root task fails.
- The coder worker's code execution tool goes through the security gate.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from bastion_orchestrator.agents.reasoning import ScriptedReasoningModel, ScriptRule
from bastion_orchestrator.config import load_config
from bastion_orchestrator.context import AppContext
from bastion_orchestrator.control_plane.tasks import TaskService
from bastion_orchestrator.domain.models import LimitType, Principal, TaskStatus
from bastion_orchestrator.persistence.repositories import TaskRepo
from bastion_orchestrator.persistence.state_db import StateDB
from bastion_orchestrator.tools.code_execution import CODE_EXECUTION_TOOL_ID

if TYPE_CHECKING:
    from pathlib import Path

_ALICE = Principal(id="alice", roles=("user",))


def _plan(*subtasks: tuple[str, str, list[str]]) -> str:
    return json.dumps(
        {
            "plan": {"name": "Release", "description": "Build, secure, document"},
            "subtasks": [
                {"id": sid, "description": f"{sid} work", "assignedTo": role, "dependencies": deps}
                for sid, role, deps in subtasks
            ],
        }
    )


def _model(plan: str, *, worker_reply: str | None = "worker ok") -> ScriptedReasoningModel:
    rules = [
        ScriptRule(match="break down the following task", response=plan),
        ScriptRule(match="synthesize these results", response="Final report."),
    ]
    if worker_reply is not None:
        rules.append(ScriptRule(match="Task ID:", response=worker_reply))
    return ScriptedReasoningModel(rules=rules)


@pytest.fixture
def ctx(tmp_path: Path) -> AppContext:
    path = tmp_path / "bastion.toml"
    path.write_text('[sandbox]\nbackend = "none"\nmemory_limit_mb = 512\n', encoding="utf-8")
    return AppContext.from_config(load_config(path, environ={}))


def _reopened(ctx: AppContext) -> TaskService:
    return TaskService(TaskRepo(StateDB(ctx.db.path)))


async def test_task_tree_survives_reopen(ctx: AppContext) -> None:
    plan = _plan(
        ("build", "coder", []), ("audit", "security", ["build"]), ("docs", "writer", [])
    )
    controller = ctx.build_controller(_ALICE, _model(plan))
    root = ctx.tasks.create_task("alice", "Release", "Ship version 2")

    result = await controller.process_task("Ship version 2", parent_task_id=root.id)

    assert result.success
    tasks = _reopened(ctx)
    stored_root = tasks.get_task(root.id)
    assert stored_root is not None
    assert stored_root.status is TaskStatus.COMPLETED
    assert stored_root.progress == 100
    children = tasks.get_subtasks(root.id)
    assert {child.assigned_agent_role for child in children} == {"coder", "security", "writer"}
    assert all(child.status is TaskStatus.COMPLETED for child in children)
    by_role = {child.assigned_agent_role: child for child in children}
    assert by_role["security"].dependencies == (by_role["coder"].id,)
    assert by_role["writer"].result is not None
    assert by_role["writer"].result["data"] == {"task_id": "docs", "response": "worker ok"}
    assert [task.id for task in tasks.get_user_tasks("alice")] == [root.id]


async def test_failed_worker_cascades_to_persisted_skips(ctx: AppContext) -> None:
    plan = _plan(("build", "coder", []), ("audit", "security", ["build"]))
    # No worker rule: every worker call exhausts the script and fails.
    controller = ctx.build_controller(_ALICE, _model(plan, worker_reply=None))
    root = ctx.tasks.create_task("alice", "Release", "Ship version 3")

    result = await controller.process_task("Ship version 3", parent_task_id=root.id)

    assert not result.success
    assert result.synthesis == "Final report."
    tasks = _reopened(ctx)
    by_role = {child.assigned_agent_role: child for child in tasks.get_subtasks(root.id)}
    assert by_role["coder"].status is TaskStatus.FAILED
    assert by_role["security"].status is TaskStatus.CANCELLED
    stored_root = tasks.get_task(root.id)
    assert stored_root is not None
    assert stored_root.status is TaskStatus.FAILED


@pytest.mark.usefixtures("needs_python3")
async def test_coder_worker_executes_code_through_the_gate(ctx: AppContext) -> None:
    controller = ctx.build_controller(_ALICE, _model(_plan(("build", "coder", []))))
    coder = controller.get_worker("coder")
    writer = controller.get_worker("writer")
    assert coder is not None
    assert writer is not None
    assert [tool.id for tool in coder.tools] == [CODE_EXECUTION_TOOL_ID]
    assert writer.tools == ()

    result = await coder.use_tool(
        CODE_EXECUTION_TOOL_ID, {"language": "python", "code": "print(7)"}
    )

    assert result.content == "7\n"
    assert ctx.rate_limiter.get_usage_metrics(_ALICE, LimitType.TOOL_USAGE).current == 1
