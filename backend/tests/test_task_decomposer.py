from __future__ import annotations

import json

import pytest

from app.services.plan_models import GoalDescriptor
from app.services.task_decomposer import (
    MAX_TASKS,
    calculate_total_hours,
    decompose_goal,
    fallback_tasks,
    normalize_hours,
    sort_tasks,
    tasks_by_priority,
)


def _goal(complexity: str = "medium") -> GoalDescriptor:
    return GoalDescriptor(original_goal="Learn SQL joins", subject="SQL", complexity=complexity)


def test_generated_entries_are_normalized(scripted_generator) -> None:
    raw = json.dumps(
        [
            {"description": "Read the docs", "estimatedHours": "3.3", "priority": "HIGH", "order": 2},
            {"estimatedHours": -1, "priority": "urgent"},
            {"description": "Build a project", "estimatedHours": 100, "priority": "low", "order": 3},
        ]
    )
    generator = scripted_generator([raw])

    tasks = decompose_goal(_goal(), generator)

    assert [task.description for task in tasks] == ["Read the docs", "Task 2", "Build a project"]
    assert [task.estimated_hours for task in tasks] == [3.5, 2.0, 40.0]
    assert [task.priority for task in tasks] == ["high", "medium", "low"]
    assert [task.order for task in tasks] == [2, 2, 3]
    assert all(task.status == "pending" for task in tasks)
    assert all(task.goal_reference == "Learn SQL joins" for task in tasks)
    assert len({task.id for task in tasks}) == 3
    assert generator.kwargs[0]["max_tokens"] == 1000


def test_wrapped_task_list_and_string_entries_are_accepted(scripted_generator) -> None:
    raw = '{"tasks": ["Install PostgreSQL", {"description": "Practice INNER JOIN", "estimatedHours": 1}]}'

    tasks = decompose_goal(_goal(), scripted_generator([raw]))

    assert [task.description for task in tasks] == ["Install PostgreSQL", "Practice INNER JOIN"]
    assert tasks[0].estimated_hours == 2.0
    assert tasks[1].estimated_hours == 1.0


def test_long_lists_are_truncated(scripted_generator) -> None:
    raw = json.dumps([{"description": f"Step {i}", "estimatedHours": 1} for i in range(14)])

    tasks = decompose_goal(_goal(), scripted_generator([raw]))

    assert len(tasks) == MAX_TASKS


@pytest.mark.parametrize("raw", ["[]", '{"message": "no tasks"}', "not json"])
def test_unusable_output_falls_back_to_template(scripted_generator, raw) -> None:
    tasks = decompose_goal(_goal("medium"), scripted_generator([raw]))

    assert len(tasks) == 4
    assert all(task.note == "Auto-generated fallback task" for task in tasks)


@pytest.mark.parametrize(
    "complexity, expected_count, expected_hours",
    [
        ("low", 3, [1.5, 2.0, 2.5]),
        ("medium", 4, [2.0, 2.5, 3.0, 3.5]),
        ("high", 5, [3.0, 3.5, 4.0, 4.5, 5.0]),
    ],
)
def test_fallback_table(complexity, expected_count, expected_hours) -> None:
    tasks = fallback_tasks(_goal(complexity))

    assert len(tasks) == expected_count
    assert [task.estimated_hours for task in tasks] == expected_hours
    assert [task.order for task in tasks] == list(range(1, expected_count + 1))
    assert tasks[0].priority == "high"
    assert tasks[1].priority == "high"
    assert all(task.priority == "medium" for task in tasks[2:])
    assert tasks[0].description == "Step 1: Work on Learn SQL joins"


def test_generation_failure_still_yields_tasks(failing_generator) -> None:
    tasks = decompose_goal(_goal("high"), failing_generator)

    assert len(tasks) == 5
    assert all(0 < task.estimated_hours <= 40 for task in tasks)


@pytest.mark.parametrize(
    "raw, expected",
    [(None, 2.0), ("abc", 2.0), (0, 2.0), (0.1, 0.5), (1.24, 1.0), (1.26, 1.5), (41, 40.0), ("6", 6.0)],
)
def test_normalize_hours(raw, expected) -> None:
    assert normalize_hours(raw) == expected


def test_helpers() -> None:
    tasks = fallback_tasks(_goal("low"))
    reversed_tasks = list(reversed(tasks))

    assert calculate_total_hours(tasks) == 6.0
    assert [task.order for task in sort_tasks(reversed_tasks)] == [1, 2, 3]
    assert len(tasks_by_priority(tasks, "high")) == 2
