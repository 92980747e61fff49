"""Task decomposition stage: goal descriptor to an ordered list of atomic tasks."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from app.core.errors import EmptyDecomposition, GenerationError, UnparsableOutput
from app.llm.client import TextGenerator
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.plan_models import PRIORITIES, GoalDescriptor, PlanTask, Priority
from app.services.stage_contract import (
    coerce_choice,
    coerce_float,
    coerce_positive_int,
    coerce_text,
    extract_json,
    round_half,
    unwrap_list,
)

logger = logging.getLogger(__name__)

DECOMPOSITION_MAX_TOKENS = 1000
MAX_TASKS = 10
DEFAULT_TASK_HOURS = 2.0
MAX_TASK_HOURS = 40.0

# complexity -> (task count, base hours)
FALLBACK_TABLE: Dict[str, tuple[int, float]] = {
    "high": (5, 3.0),
    "medium": (4, 2.0),
    "low": (3, 1.5),
}


def decompose_goal(
    goal: GoalDescriptor,
    generator: TextGenerator,
    *,
    request_id: Optional[str] = None,
) -> List[PlanTask]:
    """Break ``goal`` into tasks; never returns an empty list."""
    metadata = {"complexity": goal.complexity, "goal_source": goal.source}
    with trace("stage.task_decomposition", metadata=metadata, request_id=request_id):
        try:
            raw = generator.generate(_build_prompt(goal), max_tokens=DECOMPOSITION_MAX_TOKENS)
            entries = unwrap_list(extract_json(raw).unwrap(), keys=("tasks",))
            if not entries:
                raise UnparsableOutput("decomposition must be a non-empty JSON array", raw_text=raw)
            tasks = [_normalize_entry(entry, index, goal) for index, entry in enumerate(entries[:MAX_TASKS])]
        except (GenerationError, UnparsableOutput) as exc:
            logger.warning("Task decomposition falling back to template tasks: %s", exc)
            log_metric("task_decomposition.fallback.used", 1, {"complexity": goal.complexity})
            tasks = fallback_tasks(goal)

    if not tasks:
        raise EmptyDecomposition(f"No tasks synthesized for goal: {goal.original_goal!r}")
    log_metric("task_decomposition.count", len(tasks), metadata)
    return tasks


def normalize_hours(value: Any) -> float:
    """Parse an hour estimate into (0, 40], rounded to the nearest half hour."""
    hours = coerce_float(value)
    if hours is None or hours <= 0:
        return DEFAULT_TASK_HOURS
    if hours > MAX_TASK_HOURS:
        return MAX_TASK_HOURS
    return max(0.5, round_half(hours))


def _normalize_entry(entry: Any, index: int, goal: GoalDescriptor) -> PlanTask:
    if isinstance(entry, str):
        entry = {"description": entry}
    elif not isinstance(entry, dict):
        entry = {}
    priority: Priority = coerce_choice(entry.get("priority"), PRIORITIES, "medium")
    return PlanTask(
        description=coerce_text(entry.get("description"), f"Task {index + 1}"),
        estimated_hours=normalize_hours(entry.get("estimatedHours")),
        priority=priority,
        order=coerce_positive_int(entry.get("order")) or index + 1,
        goal_reference=goal.original_goal,
    )


def fallback_tasks(goal: GoalDescriptor) -> List[PlanTask]:
    count, base_hours = FALLBACK_TABLE.get(goal.complexity, FALLBACK_TABLE["medium"])
    return [
        PlanTask(
            description=f"Step {index + 1}: Work on {goal.original_goal}",
            estimated_hours=normalize_hours(base_hours + index * 0.5),
            priority="high" if index < 2 else "medium",
            order=index + 1,
            goal_reference=goal.original_goal,
            note="Auto-generated fallback task",
        )
        for index in range(count)
    ]


def calculate_total_hours(tasks: List[PlanTask]) -> float:
    return sum(task.estimated_hours for task in tasks)


def tasks_by_priority(tasks: List[PlanTask], priority: Priority) -> List[PlanTask]:
    return [task for task in tasks if task.priority == priority]


def sort_tasks(tasks: List[PlanTask]) -> List[PlanTask]:
    return sorted(tasks, key=lambda task: task.order)


def _build_prompt(goal: GoalDescriptor) -> str:
    return (
        "You are a task planning assistant. Break the goal below into 3-10 concrete, actionable tasks.\n\n"
        f'Goal: "{goal.original_goal}"\n'
        f"Subject: {goal.subject}\n"
        f"Deadline: {goal.parsed_deadline}\n"
        f"Complexity: {goal.complexity}\n"
        f"Recommended approach: {goal.recommended_approach}\n\n"
        "Respond with ONLY a JSON array in which every element has:\n"
        '  "description": what to do,\n'
        '  "estimatedHours": realistic hours as a number,\n'
        '  "priority": "high" | "medium" | "low",\n'
        '  "order": position in the logical sequence starting at 1\n'
        "Order tasks so prerequisites come first."
    )
