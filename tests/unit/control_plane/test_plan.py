"""
bastion-orchestrator — unit tests for decomposition plan parsing

File: tests/unit/control_plane/test_plan.py
Last updated: 2026-10-19

Purpose
- Validate JSON extraction from model answers and the subtask DAG checks.

What this test file should cover
- Fenced, bare-fenced, and unfenced JSON are all found.
- Defaults for priority and dependencies; role names are normalized.
- Duplicate ids, unknown and self dependencies, and cycles are rejected.
- Dependent dispatch order: fewest dependencies first, never ahead of a dependency.
"""

from __future__ import annotations

import json

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from bastion_orchestrator.control_plane.plan import (
    PlannedSubtask,
    TaskPlan,
    extract_json_text,
    parse_plan,
    plan_from_dict,
)
from bastion_orchestrator.domain.errors import PlanParseError
from bastion_orchestrator.domain.models import TaskPriority


def _subtask(subtask_id: str, *deps: str, role: str = "coder") -> dict[str, object]:
    return {
        "id": subtask_id,
        "description": f"Do {subtask_id}",
        "assignedTo": role,
        "priority": "medium",
        "dependencies": list(deps),
    }


def _payload(*subtasks: dict[str, object]) -> dict[str, object]:
    return {"plan": {"name": "Plan", "description": "Approach"}, "subtasks": list(subtasks)}


def test_fenced_json_is_extracted_from_prose() -> None:
    text = (
        "Here is the plan:\n```json\n"
        + json.dumps(_payload(_subtask("task-1")))
        + "\n```\nLet me know."
    )

    plan = parse_plan(text)

    assert plan.name == "Plan"
    assert [item.id for item in plan.subtasks] == ["task-1"]


def test_bare_fence_and_unfenced_object_are_accepted() -> None:
    body = json.dumps(_payload(_subtask("task-1")))

    assert extract_json_text(f"```\n{body}\n```") == body
    assert extract_json_text(f"Sure! {body} Done.") == body
    with pytest.raises(PlanParseError, match="no JSON object found"):
        extract_json_text("I cannot help with that.")


def test_defaults_and_normalization() -> None:
    plan = plan_from_dict(
        {
            "plan": {"name": " Launch "},
            "subtasks": [{"id": "a", "description": "Write code", "assignedTo": "Coder"}],
        }
    )

    (item,) = plan.subtasks
    assert plan.name == "Launch"
    assert plan.description == ""
    assert item.assigned_to == "coder"
    assert item.priority is TaskPriority.MEDIUM
    assert item.dependencies == ()
    assert item.is_independent


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("```json\n{not json}\n```", "Failed to parse task plan"),
        ("```json\n[1, 2]\n```", "top level must be an object"),
        (json.dumps({"subtasks": []}), "plan: expected an object"),
        (json.dumps({"plan": {"name": "p"}, "subtasks": []}), "expected a non-empty list"),
        (
            json.dumps(_payload({"id": "a", "description": "", "assignedTo": "coder"})),
            r"subtasks\[0\].description: must not be empty",
        ),
        (
            json.dumps(_payload({**_subtask("a"), "priority": "asap"})),
            "unknown priority 'asap'",
        ),
        (
            json.dumps(_payload({**_subtask("a"), "dependencies": "b"})),
            "dependencies: expected a list",
        ),
        (json.dumps(_payload(_subtask("a"), _subtask("a"))), "duplicate subtask id 'a'"),
        (json.dumps(_payload(_subtask("a", "a"))), "depends on itself"),
        (json.dumps(_payload(_subtask("a", "ghost"))), "unknown subtask 'ghost'"),
        (
            json.dumps(_payload(_subtask("a", "c"), _subtask("b", "a"), _subtask("c", "b"))),
            "contain a cycle: a, b, c",
        ),
    ],
)
def test_invalid_plans_raise_plan_parse_error(text: str, message: str) -> None:
    with pytest.raises(PlanParseError, match=message):
        parse_plan(text)


def test_dependents_follow_fewest_dependencies_first() -> None:
    plan = plan_from_dict(
        _payload(
            _subtask("root"),
            _subtask("other"),
            _subtask("wide", "root", "other"),
            _subtask("narrow", "root"),
            _subtask("tail", "narrow"),
            _subtask("late", "wide", "tail"),
        )
    )

    assert [item.id for item in plan.independent] == ["root", "other"]
    assert [item.id for item in plan.dependents_in_dispatch_order()] == [
        "narrow",
        "tail",
        "wide",
        "late",
    ]


def test_plan_serializes_with_wire_field_names() -> None:
    plan = plan_from_dict(_payload(_subtask("a"), _subtask("b", "a", role="security")))

    assert plan.to_dict()["subtasks"] == [
        _subtask("a"),
        _subtask("b", "a", role="security"),
    ]


@st.composite
def _dags(draw: st.DrawFn) -> TaskPlan:
    size = draw(st.integers(min_value=1, max_value=8))
    subtasks: list[PlannedSubtask] = []
    for position in range(size):
        earlier = [f"t{index}" for index in range(position)]
        deps = draw(st.lists(st.sampled_from(earlier), unique=True)) if earlier else []
        subtasks.append(
            PlannedSubtask(
                id=f"t{position}",
                description="work",
                assigned_to="coder",
                priority=TaskPriority.MEDIUM,
                dependencies=tuple(deps),
            )
        )
    return TaskPlan(name="generated", description="", subtasks=tuple(subtasks))


@settings(max_examples=50, deadline=None)
@given(_dags())
def test_dispatch_order_never_precedes_a_dependency(plan: TaskPlan) -> None:
    seen = {item.id for item in plan.independent}
    ordered = plan.dependents_in_dispatch_order()

    assert len(ordered) + len(plan.independent) == len(plan.subtasks)
    for item in ordered:
        assert set(item.dependencies) <= seen
        seen.add(item.id)
