"""Priority scoring stage: annotate tasks with an integer 1-10 urgency score."""
from __future__ import annotations

import json
import logging
import re
from typing import Dict, List, Optional

from app.core.errors import GenerationError, UnparsableOutput
from app.llm.client import TextGenerator
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.plan_models import NOT_SPECIFIED, PlanTask, UserContext, utcnow
from app.services.stage_contract import clamp_score, coerce_index, coerce_score, coerce_text, extract_json, unwrap_list

logger = logging.getLogger(__name__)

_URGENT_DEADLINE_RE = re.compile(r"(\d+\s*(day|week)|tomorrow|urgent)", re.IGNORECASE)
HIGH_PRIORITY_THRESHOLD = 7


def score_tasks(
    tasks: List[PlanTask],
    context: UserContext,
    generator: TextGenerator,
    *,
    request_id: Optional[str] = None,
) -> List[PlanTask]:
    """Return copies of ``tasks`` carrying ``priority_score`` and ``score_reasoning``."""
    if not tasks:
        return []

    with trace("stage.priority_scoring", metadata={"task_count": len(tasks)}, request_id=request_id):
        try:
            raw = generator.generate(_build_prompt(tasks, context))
            entries = unwrap_list(extract_json(raw).unwrap(), keys=("scores", "tasks"))
            if entries is None:
                raise UnparsableOutput("priority scores must be a JSON array", raw_text=raw)
        except (GenerationError, UnparsableOutput) as exc:
            logger.warning("Priority scoring falling back to rules: %s", exc)
            log_metric("priority_scoring.fallback.used", 1, {"task_count": len(tasks)})
            return fallback_scores(tasks, context)

    by_index: Dict[int, dict] = {}
    for entry in entries:
        if isinstance(entry, dict):
            index = coerce_index(entry.get("taskIndex"))
            if index is not None and index not in by_index:
                by_index[index] = entry

    scored: List[PlanTask] = []
    unmatched = 0
    for index, task in enumerate(tasks):
        entry = by_index.get(index)
        if entry is None:
            unmatched += 1
            score, reasoning = _per_task_heuristic(task, index), "Fallback scoring applied"
        else:
            score = coerce_score(entry.get("score"))
            reasoning = coerce_text(entry.get("reasoning"), "No reasoning provided")
        scored.append(task.model_copy(update={"priority_score": score, "score_reasoning": reasoning}))
    if unmatched:
        log_metric("priority_scoring.unmatched", unmatched, {"task_count": len(tasks)})
    return scored


def _per_task_heuristic(task: PlanTask, index: int) -> int:
    score = 5
    if task.priority == "high":
        score += 2
    elif task.priority == "low":
        score -= 1
    if index < 2:
        score += 1
    return clamp_score(score)


def fallback_scores(tasks: List[PlanTask], context: UserContext) -> List[PlanTask]:
    """Rule-based scoring used when no usable model output exists."""
    deadline = context.deadline or NOT_SPECIFIED
    urgent = deadline != NOT_SPECIFIED and bool(_URGENT_DEADLINE_RE.search(deadline))
    scored: List[PlanTask] = []
    for index, task in enumerate(tasks):
        score = 5.0
        if task.priority == "high":
            score += 3
        elif task.priority == "low":
            score -= 2
        score += max(0.0, 3 - index * 0.5)
        if urgent:
            score += 2
        if context.user_tendency == "procrastinator" and index < 2:
            score += 1
        scored.append(
            task.model_copy(
                update={"priority_score": clamp_score(score), "score_reasoning": "Rule-based scoring (fallback)"}
            )
        )
    return scored


def sort_by_priority(tasks: List[PlanTask]) -> List[PlanTask]:
    return sorted(tasks, key=lambda task: task.priority_score or 0, reverse=True)


def high_priority_tasks(tasks: List[PlanTask], threshold: int = HIGH_PRIORITY_THRESHOLD) -> List[PlanTask]:
    return [task for task in tasks if (task.priority_score or 0) >= threshold]


def average_score(tasks: List[PlanTask]) -> float:
    if not tasks:
        return 0.0
    return round(sum(task.priority_score or 0 for task in tasks) / len(tasks), 1)


def next_pending_task(tasks: List[PlanTask]) -> Optional[PlanTask]:
    pending = [task for task in tasks if task.status == "pending"]
    if not pending:
        return None
    return sort_by_priority(pending)[0]


def update_user_context(context: UserContext, completed_task: PlanTask, *, completed_late: bool = False) -> UserContext:
    """Fold one completed task into the scoring context."""
    return context.model_copy(
        update={
            "completed_tasks_count": context.completed_tasks_count + 1,
            "overdue_history": context.overdue_history + (1 if completed_late else 0),
            "last_completed_task": completed_task.description,
            "last_completed_at": utcnow(),
        }
    )


def _build_prompt(tasks: List[PlanTask], context: UserContext) -> str:
    listing = json.dumps(
        [
            {
                "taskIndex": index,
                "description": task.description,
                "estimatedHours": task.estimated_hours,
                "priority": task.priority,
                "order": task.order,
            }
            for index, task in enumerate(tasks)
        ],
        indent=2,
    )
    return (
        "You are a prioritization assistant. Score each task from 1 (can wait) to 10 (do first).\n\n"
        f"Deadline: {context.deadline or NOT_SPECIFIED}\n"
        f"User tendency: {context.user_tendency or 'balanced'}\n"
        f"Tasks completed so far: {context.completed_tasks_count}\n"
        f"Tasks finished late so far: {context.overdue_history}\n\n"
        f"Tasks:\n{listing}\n\n"
        "Weigh urgency, dependencies and importance. Respond with ONLY a JSON array of objects with "
        '"taskIndex" (the index above), "score" (integer 1-10) and "reasoning" (one sentence).'
    )
