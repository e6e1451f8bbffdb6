"""Unit tests for the packaged prompt templates."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from bastion_orchestrator.agents.prompts import (
    CONTROLLER_SYSTEM_TEMPLATE,
    PLAN_TEMPLATE,
    SYNTHESIS_TEMPLATE,
    WORKER_SYSTEM_TEMPLATE,
    WORKER_TASK_TEMPLATE,
    PromptLibrary,
    PromptTemplateError,
)

if TYPE_CHECKING:
    from pathlib import Path


def test_all_packaged_templates_render() -> None:
    library = PromptLibrary()

    controller = library.render(CONTROLLER_SYSTEM_TEMPLATE, {})
    plan = library.render(
        PLAN_TEMPLATE,
        {
            "task": "Build a landing page",
            "workers": [{"name": "Coder Agent", "role": "coder", "description": "Writes code"}],
        },
    )
    synthesis = library.render(
        SYNTHESIS_TEMPLATE,
        {
            "task": "Build a landing page",
            "plan_name": "Launch",
            "plan_description": "Ship it",
            "total": 2,
            "succeeded": 1,
            "outcomes": [
                {"subtask_id": "task-1", "status": "completed", "message": "done"},
                {"subtask_id": "task-2", "status": "failed", "message": "boom"},
            ],
        },
    )

    assert controller.startswith("You are the Controller Agent")
    assert "- Coder Agent (coder): Writes code" in plan
    assert '"assignedTo": "agent role"' in plan
    assert "1 subtasks were completed successfully and 1 did not." in synthesis
    assert "- Subtask task-2: failed - boom" in synthesis


def test_worker_templates_are_deterministic_and_stripped() -> None:
    library = PromptLibrary()
    variables = {
        "name": "Coder Agent",
        "description": "Writes, debugs, and executes code",
        "specialization": "Software Development",
        "capabilities": ("Code generation", "Code debugging"),
    }

    first = library.render(WORKER_SYSTEM_TEMPLATE, variables)
    second = library.render(WORKER_SYSTEM_TEMPLATE, variables)
    task = library.render(
        WORKER_TASK_TEMPLATE,
        {
            "task_id": "task-7",
            "assigned_by": "Controller Agent",
            "description": "Write a parser",
            "specialization": "Software Development",
        },
    )

    assert first == second
    assert first.startswith("You are the Coder Agent, a specialist in software development.")
    assert "- Code debugging" in first
    assert first == first.strip()
    assert task.splitlines()[0] == "Task ID: task-7"


def test_missing_template_and_variable_raise(tmp_path: Path) -> None:
    library = PromptLibrary()

    with pytest.raises(PromptTemplateError, match="template not found"):
        library.render("nope.j2", {})
    with pytest.raises(PromptTemplateError, match=WORKER_TASK_TEMPLATE):
        library.render(WORKER_TASK_TEMPLATE, {"task_id": "t"})
    with pytest.raises(PromptTemplateError, match="template root does not exist"):
        PromptLibrary(tmp_path / "absent")


def test_custom_template_root(tmp_path: Path) -> None:
    (tmp_path / "greet.j2").write_text("Hello {{ who }}!\r\n\r\n", encoding="utf-8")

    library = PromptLibrary(tmp_path)

    assert library.template_root == tmp_path
    assert library.render("greet.j2", {"who": "world"}) == "Hello world!"
