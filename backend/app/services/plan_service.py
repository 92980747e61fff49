"""Persistence and lifecycle operations for goals, plans and task progress."""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import asc, desc, nulls_last
from sqlalchemy.orm import Session

from app.core.errors import PlanningError
from app.db.models.agent_action_log import AgentActionLog
from app.db.models.goal import Goal
from app.db.models.plan import Plan as PlanRow
from app.db.models.task import Task
from app.observability.metrics import log_metric
from app.services.memory_store import load_memory, mutate_memory
from app.services.orchestrator import AdjustmentResult, PlanningOrchestrator, PlanRunResult
from app.services.plan_models import (
    TASK_STATUSES,
    GoalDescriptor,
    Plan,
    PlanMetadata,
    PlanTask,
    Schedule,
    SchedulingPreferences,
    TaskProgress,
    UserContext,
    UserMemory,
)
from app.services.user_service import touch_user

logger = logging.getLogger(__name__)

GOAL_STATUSES = ("active", "completed", "abandoned")
OUTCOME_STATUSES = ("completed", "missed")


class GoalNotFoundError(LookupError):
    pass


class PlanNotFoundError(LookupError):
    pass


class TaskNotFoundError(LookupError):
    pass


class OwnershipError(PermissionError):
    pass


class NoProgressError(ValueError):
    pass


@dataclass
class ProgressCounts:
    total: int = 0
    completed: int = 0
    missed: int = 0
    in_progress: int = 0
    pending: int = 0

    @property
    def completion_rate(self) -> float:
        return round(self.completed / self.total * 100, 1) if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "missed": self.missed,
            "in_progress": self.in_progress,
            "pending": self.pending,
            "completion_rate": self.completion_rate,
        }


@dataclass
class ReflectionOutcome:
    result: AdjustmentResult
    memory: UserMemory
    observations: int


def create_goal_plan(
    db: Session,
    orchestrator: PlanningOrchestrator,
    *,
    user_id: UUID,
    goal_text: str,
    user_context: Optional[UserContext] = None,
    preferences: Optional[SchedulingPreferences] = None,
    request_id: Optional[str] = None,
) -> Tuple[PlanRunResult, Optional[Goal]]:
    """Run the planning pipeline and store its artefacts in one transaction."""
    result = orchestrator.create_plan(
        goal_text,
        user_context=user_context,
        scheduling_preferences=preferences,
        request_id=request_id,
    )
    if not result.success or result.plan is None:
        return result, None
    goal = persist_plan(db, user_id=user_id, plan=result.plan, request_id=request_id)
    return result, goal


def persist_plan(db: Session, *, user_id: UUID, plan: Plan, request_id: Optional[str] = None) -> Goal:
    touch_user(db, user_id)
    descriptor = plan.goal
    goal = Goal(
        user_id=user_id,
        original_goal=descriptor.original_goal,
        parsed_deadline=descriptor.parsed_deadline,
        subject=descriptor.subject,
        complexity=descriptor.complexity,
        recommended_approach=descriptor.recommended_approach,
        status="active",
        metadata_json={
            "analyzedAt": descriptor.analyzed_at.isoformat(),
            "source": descriptor.source,
            "note": descriptor.note,
        },
    )
    db.add(goal)
    db.flush()

    for task in plan.tasks:
        db.add(
            Task(
                id=UUID(task.id),
                user_id=user_id,
                goal_id=goal.id,
                description=task.description,
                estimated_hours=task.estimated_hours,
                priority=task.priority,
                order=task.order,
                status=task.status,
                priority_score=task.priority_score,
                score_reasoning=task.score_reasoning,
                metadata_json={"note": task.note} if task.note else None,
            )
        )

    db.add(
        PlanRow(
            user_id=user_id,
            goal_id=goal.id,
            **_schedule_columns(plan.schedule),
            metadata_json={**plan.metadata.to_payload(), "scheduleSource": plan.schedule.source},
            adjustments=[],
        )
    )
    db.add(
        AgentActionLog(
            user_id=user_id,
            goal_id=goal.id,
            action_type="plan_created",
            action_payload={
                "task_count": len(plan.tasks),
                "total_hours": plan.schedule.summary.total_hours,
                "schedule_source": plan.schedule.source,
                "goal_source": descriptor.source,
                "request_id": request_id,
            },
        )
    )
    db.commit()
    db.refresh(goal)
    log_metric("plan.persisted", 1, {"user_id": str(user_id), "tasks": len(plan.tasks)})
    return goal


def get_goal_for_user(db: Session, goal_id: UUID, user_id: UUID) -> Goal:
    goal = db.get(Goal, goal_id)
    if goal is None:
        raise GoalNotFoundError(f"Goal {goal_id} not found")
    if goal.user_id != user_id:
        raise OwnershipError("Goal does not belong to user")
    return goal


def list_goals(db: Session, user_id: UUID) -> List[Goal]:
    return db.query(Goal).filter(Goal.user_id == user_id).order_by(desc(Goal.created_at)).all()


def goal_tasks(db: Session, goal_id: UUID) -> List[Task]:
    """Tasks for a goal, highest score first, then by order."""
    return (
        db.query(Task)
        .filter(Task.goal_id == goal_id)
        .order_by(nulls_last(desc(Task.priority_score)), asc(Task.order))
        .all()
    )


def count_progress(tasks: Sequence[Task]) -> ProgressCounts:
    counts = ProgressCounts(total=len(tasks))
    for task in tasks:
        if task.status == "completed":
            counts.completed += 1
        elif task.status == "missed":
            counts.missed += 1
        elif task.status == "in-progress":
            counts.in_progress += 1
        else:
            counts.pending += 1
    return counts


def update_goal_status(db: Session, goal: Goal, status: str) -> Goal:
    if status not in GOAL_STATUSES:
        raise ValueError(f"Invalid goal status: {status}")
    goal.status = status
    db.commit()
    db.refresh(goal)
    return goal


def get_plan_row(db: Session, goal_id: UUID) -> PlanRow:
    row = db.query(PlanRow).filter(PlanRow.goal_id == goal_id).one_or_none()
    if row is None:
        raise PlanNotFoundError(f"Plan for goal {goal_id} not found")
    return row


def load_plan(db: Session, goal: Goal) -> Plan:
    """Rebuild the domain plan from stored rows, with current task statuses."""
    row = get_plan_row(db, goal.id)
    meta = goal.metadata_json or {}
    descriptor = GoalDescriptor(
        original_goal=goal.original_goal,
        parsed_deadline=goal.parsed_deadline,
        subject=goal.subject,
        complexity=goal.complexity,
        recommended_approach=goal.recommended_approach or "Break down into smaller tasks",
        analyzed_at=meta.get("analyzedAt") or goal.created_at,
        source=meta.get("source") or "generated",
        note=meta.get("note"),
    )
    rows = db.query(Task).filter(Task.goal_id == goal.id).order_by(asc(Task.order)).all()
    tasks = [task_to_domain(task, descriptor.original_goal) for task in rows]
    return Plan(
        goal=descriptor,
        tasks=tasks,
        schedule=schedule_from_row(row),
        metadata=PlanMetadata.model_validate(row.metadata_json or {}),
    )


def schedule_from_row(row: PlanRow) -> Schedule:
    meta = row.metadata_json or {}
    return Schedule.model_validate(
        {
            "days": row.schedule or [],
            "summary": row.summary,
            "preferences": row.preferences,
            "source": meta.get("scheduleSource") or "generated",
            "lastAdjusted": meta.get("lastAdjusted"),
        }
    )


def task_to_domain(task: Task, goal_reference: Optional[str] = None) -> PlanTask:
    return PlanTask(
        id=str(task.id),
        description=task.description,
        estimated_hours=task.estimated_hours,
        priority=task.priority,
        order=task.order,
        status=task.status,
        priority_score=task.priority_score,
        score_reasoning=task.score_reasoning,
        goal_reference=goal_reference,
        created_at=task.created_at,
        note=(task.metadata_json or {}).get("note"),
    )


def update_task_status(
    db: Session,
    *,
    task_id: UUID,
    user_id: UUID,
    status: str,
    request_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Task:
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid task status: {status}")
    task = db.get(Task, task_id)
    if task is None:
        raise TaskNotFoundError(f"Task {task_id} not found")
    if task.user_id != user_id:
        raise OwnershipError("Task does not belong to user")

    stamp = now or datetime.now(timezone.utc)
    previous = task.status
    task.status = status
    if status == "completed":
        task.completed_at = stamp
        scheduled = scheduled_date_for(db, task)
        task.completed_late = bool(scheduled and stamp.date() > scheduled)
    else:
        task.completed_at = None
        task.completed_late = False

    touch_user(db, user_id)
    if previous != status:
        db.add(
            AgentActionLog(
                user_id=user_id,
                goal_id=task.goal_id,
                action_type="task_status_updated",
                action_payload={
                    "task_id": str(task.id),
                    "from": previous,
                    "to": status,
                    "completed_late": task.completed_late,
                    "request_id": request_id,
                },
            )
        )
    db.commit()
    db.refresh(task)
    return task


def scheduled_date_for(db: Session, task: Task) -> Optional[date]:
    row = db.query(PlanRow).filter(PlanRow.goal_id == task.goal_id).one_or_none()
    if row is None:
        return None
    located = _locate_instances(schedule_from_row(row)).get(str(task.id))
    return located[0] if located else None


def build_progress(tasks: Sequence[Task], schedule: Schedule) -> List[TaskProgress]:
    """Observations for every task with a recorded outcome."""
    located = _locate_instances(schedule)
    progress: List[TaskProgress] = []
    for task in tasks:
        if task.status not in OUTCOME_STATUSES:
            continue
        slot = located.get(str(task.id))
        progress.append(
            TaskProgress(
                task_id=str(task.id),
                status=task.status,
                scheduled_time=f"{slot[0].isoformat()}T{slot[1]}" if slot else None,
                completed_time=task.completed_at.strftime("%H:%M") if task.completed_at else None,
                completed_on_time=task.status == "completed" and not task.completed_late,
                task_description=task.description,
                priority_score=task.priority_score,
            )
        )
    return progress


def _locate_instances(schedule: Schedule) -> Dict[str, Tuple[date, str]]:
    return {instance.task_id: (day.date, instance.start_time) for day in schedule.days for instance in day.tasks}


def trigger_reflection(
    db: Session,
    orchestrator: PlanningOrchestrator,
    *,
    goal: Goal,
    user_id: UUID,
    progress: Optional[Sequence[TaskProgress]] = None,
    request_id: Optional[str] = None,
) -> ReflectionOutcome:
    """Reflect on a goal's outcomes and persist the adjusted plan and memory."""
    plan = load_plan(db, goal)
    plan_row = get_plan_row(db, goal.id)
    task_rows = db.query(Task).filter(Task.goal_id == goal.id).all()
    observations = list(progress) if progress else build_progress(task_rows, plan.schedule)
    if not observations:
        raise NoProgressError("No completed or missed tasks to reflect on")

    def _adjust(memory: UserMemory) -> Tuple[AdjustmentResult, UserMemory]:
        result = orchestrator.adjust_plan(plan, observations, memory, request_id=request_id)
        if not result.success or result.adjusted_plan is None or result.user_memory is None:
            raise PlanningError(result.error or "Plan adjustment failed")
        return result, result.user_memory

    result, memory = mutate_memory(db, user_id, _adjust)
    adjusted = result.adjusted_plan

    scores = {task.id: task for task in adjusted.tasks}
    for row in task_rows:
        updated = scores.get(str(row.id))
        if updated is not None and updated.priority_score != row.priority_score:
            row.priority_score = updated.priority_score
            row.score_reasoning = updated.score_reasoning

    for column, value in _schedule_columns(adjusted.schedule).items():
        setattr(plan_row, column, value)
    meta = dict(plan_row.metadata_json or {})
    meta["lastAdjusted"] = adjusted.metadata.adjusted_at.isoformat()
    meta["scheduleSource"] = adjusted.schedule.source
    plan_row.metadata_json = meta
    reflection_payload = adjusted.reflection.to_payload()
    plan_row.adjustments = [
        *(plan_row.adjustments or []),
        {
            "adjustedAt": adjusted.metadata.adjusted_at.isoformat(),
            "analysis": reflection_payload["analysis"],
            "insights": reflection_payload["insights"],
            "changes": reflection_payload["adjustments"],
            "replanned": result.replanned,
            "fallbackUsed": adjusted.reflection.fallback_used,
            "observations": len(observations),
            "outcomeDigest": outcome_digest(task_rows),
        },
    ]

    touch_user(db, user_id)
    db.add(
        AgentActionLog(
            user_id=user_id,
            goal_id=goal.id,
            action_type="reflection_applied",
            action_payload={
                "observations": len(observations),
                "replanned": result.replanned,
                "fallback_used": adjusted.reflection.fallback_used,
                "memory_version": memory.version,
                "request_id": request_id,
            },
        )
    )
    db.commit()
    log_metric("reflection.applied", 1, {"user_id": str(user_id), "replanned": result.replanned})
    return ReflectionOutcome(result=result, memory=memory, observations=len(observations))


def outcome_digest(tasks: Sequence[Task]) -> str:
    """Fingerprint of every (task id, status) pair that counts as an outcome."""
    pairs = sorted(f"{task.id}:{task.status}" for task in tasks if task.status in OUTCOME_STATUSES)
    return hashlib.sha256("\n".join(pairs).encode("utf-8")).hexdigest()


def has_new_outcomes(db: Session, goal: Goal) -> bool:
    """True when the recorded outcomes differ from what the last reflection saw."""
    row = db.query(PlanRow).filter(PlanRow.goal_id == goal.id).one_or_none()
    if row is None:
        return False
    outcomes = (
        db.query(Task)
        .filter(Task.goal_id == goal.id, Task.status.in_(OUTCOME_STATUSES))
        .all()
    )
    if not outcomes:
        return False
    history = row.adjustments or []
    if not history:
        return True
    last = history[-1]
    if "outcomeDigest" in last:
        return outcome_digest(outcomes) != last["outcomeDigest"]
    return len(outcomes) > last.get("observations", 0)


def mark_overdue_tasks(db: Session, *, today: Optional[date] = None) -> int:
    """Mark unfinished tasks whose scheduled day has passed as missed."""
    cutoff = today or datetime.now(timezone.utc).date()
    marked = 0
    active_goals = db.query(Goal).filter(Goal.status == "active").all()
    for goal in active_goals:
        row = db.query(PlanRow).filter(PlanRow.goal_id == goal.id).one_or_none()
        if row is None:
            continue
        located = _locate_instances(schedule_from_row(row))
        open_tasks = (
            db.query(Task)
            .filter(Task.goal_id == goal.id, Task.status.in_(("pending", "in-progress")))
            .all()
        )
        for task in open_tasks:
            slot = located.get(str(task.id))
            if slot and slot[0] < cutoff:
                task.status = "missed"
                marked += 1
                db.add(
                    AgentActionLog(
                        user_id=task.user_id,
                        goal_id=goal.id,
                        action_type="task_status_updated",
                        action_payload={"task_id": str(task.id), "to": "missed", "reason": "overdue"},
                        reason="Scheduled day passed without a recorded outcome",
                    )
                )
    if marked:
        db.commit()
        logger.info("Marked %s overdue tasks as missed", marked)
    return marked


def user_statistics(db: Session, user_id: UUID) -> ProgressCounts:
    tasks = db.query(Task).filter(Task.user_id == user_id).all()
    return count_progress(tasks)


def get_user_memory(db: Session, user_id: UUID) -> UserMemory:
    return load_memory(db, user_id)


def _schedule_columns(schedule: Schedule) -> Dict[str, Any]:
    payload = schedule.to_payload()
    return {
        "schedule": payload["days"],
        "summary": payload["summary"],
        "preferences": payload["preferences"],
    }
