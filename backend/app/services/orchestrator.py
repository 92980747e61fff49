"""Sequences the planning stages and the reflection loop for one run."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from time import perf_counter
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from app.core.config import settings
from app.core.context import run_id_ctx_var
from app.core.errors import PlanningError
from app.llm.client import TextGenerator
from app.observability.metrics import log_metric
from app.services.goal_analyzer import analyze_goal
from app.services.plan_models import (
    AdjustedPlan,
    AdjustmentMetadata,
    GoalDescriptor,
    Plan,
    PlanMetadata,
    PlanReflection,
    PlanTask,
    SchedulingPreferences,
    TaskProgress,
    UserContext,
    UserMemory,
    utcnow,
)
from app.services.priority_scorer import score_tasks
from app.services.reflection import needs_replanning, reflect
from app.services.scheduler import create_schedule
from app.services.task_decomposer import decompose_goal

logger = logging.getLogger(__name__)

URGENT_KEYWORDS = ("tomorrow", "today", "urgent", "asap", "1 day", "2 day")
SHORT_DEADLINE_KEYWORDS = ("week", "7 day", "5 day")


@dataclass
class TraceEntry:
    step: str
    message: str
    timestamp: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {**self.payload, "step": self.step, "message": self.message, "timestamp": self.timestamp.isoformat()}


class ExecutionTrace:
    """Append-only record of one orchestration run."""

    def __init__(self) -> None:
        self._entries: List[TraceEntry] = []

    def log(self, step: str, message: str, **payload: Any) -> None:
        self._entries.append(TraceEntry(step=step, message=message, timestamp=utcnow(), payload=payload))
        logger.info("[orchestrator] %s: %s", step, message)

    @property
    def entries(self) -> List[TraceEntry]:
        return list(self._entries)

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    def last_completed_step(self) -> str:
        for entry in reversed(self._entries):
            if "COMPLETE" in entry.step:
                return entry.step
        return "NONE"

    def stats(self) -> Dict[str, Any]:
        steps = len(self._entries)
        completed = sum(1 for entry in self._entries if "COMPLETE" in entry.step)
        errors = sum(1 for entry in self._entries if "ERROR" in entry.step)
        return {
            "total_steps": steps,
            "completed_steps": completed,
            "errors": errors,
            "success_rate": f"{completed / steps * 100:.1f}%" if steps else "N/A",
        }

    def format(self) -> str:
        lines = ["Orchestrator execution log", ""]
        for index, entry in enumerate(self._entries, start=1):
            lines.append(f"[{index}] {entry.step}")
            lines.append(f"    {entry.message}")
            if "COMPLETE" in entry.step and entry.payload:
                extras = ", ".join(f"{key}: {value}" for key, value in entry.payload.items())
                lines.append(f"    {extras}")
        return "\n".join(lines)


@dataclass
class PlanRunResult:
    success: bool
    plan: Optional[Plan] = None
    error: Optional[str] = None
    failed_at: Optional[str] = None
    execution_log: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AdjustmentResult:
    success: bool
    adjusted_plan: Optional[AdjustedPlan] = None
    user_memory: Optional[UserMemory] = None
    replanned: bool = False
    error: Optional[str] = None
    execution_log: List[Dict[str, Any]] = field(default_factory=list)


class PlanningOrchestrator:
    """Runs the four synthesis stages in order and the reflection loop on demand."""

    def __init__(self, generator: TextGenerator) -> None:
        self.generator = generator
        self.last_trace: Optional[ExecutionTrace] = None

    def create_plan(
        self,
        goal_text: str,
        *,
        user_context: Optional[UserContext] = None,
        scheduling_preferences: Optional[SchedulingPreferences] = None,
        request_id: Optional[str] = None,
    ) -> PlanRunResult:
        trace = ExecutionTrace()
        self.last_trace = trace
        token = run_id_ctx_var.set(str(uuid4()))
        started = perf_counter()
        try:
            trace.log("ORCHESTRATION_START", "Starting plan creation", goal=goal_text)

            trace.log("STEP_1_START", "Analyzing goal")
            goal = analyze_goal(goal_text, self.generator, request_id=request_id)
            trace.log(
                "STEP_1_COMPLETE",
                "Goal analyzed",
                complexity=goal.complexity,
                deadline=goal.parsed_deadline,
                source=goal.source,
            )

            trace.log("STEP_2_START", "Decomposing goal into tasks")
            tasks = decompose_goal(goal, self.generator, request_id=request_id)
            trace.log("STEP_2_COMPLETE", "Tasks created", task_count=len(tasks))

            trace.log("STEP_3_START", "Scoring task priorities")
            context = build_user_context(goal, user_context)
            tasks = score_tasks(tasks, context, self.generator, request_id=request_id)
            trace.log(
                "STEP_3_COMPLETE",
                "Tasks scored",
                average_score=round(sum(t.priority_score or 0 for t in tasks) / len(tasks), 1),
            )

            trace.log("STEP_4_START", "Building schedule")
            preferences = build_scheduling_preferences(goal, scheduling_preferences)
            schedule = create_schedule(tasks, preferences, self.generator, request_id=request_id)
            trace.log(
                "STEP_4_COMPLETE",
                "Schedule created",
                total_days=schedule.summary.total_days,
                source=schedule.source,
            )

            elapsed_ms = int((perf_counter() - started) * 1000)
            total_hours = schedule.summary.total_hours
            plan = Plan(
                goal=goal,
                tasks=tasks,
                schedule=schedule,
                metadata=PlanMetadata(
                    execution_time_ms=elapsed_ms,
                    total_tasks=len(tasks),
                    total_hours=total_hours,
                    estimated_days=math.ceil(total_hours / preferences.available_hours_per_day),
                ),
            )
            trace.log("ORCHESTRATION_COMPLETE", "Plan created", execution_time_ms=elapsed_ms)
            log_metric("orchestrator.create_plan.latency_ms", elapsed_ms, {"tasks": len(tasks)})
            return PlanRunResult(success=True, plan=plan, execution_log=trace.to_list())
        except PlanningError as exc:
            failed_at = trace.last_completed_step()
            trace.log("ORCHESTRATION_ERROR", str(exc), error_type=type(exc).__name__, failed_at=failed_at)
            log_metric("orchestrator.create_plan.failed", 1, {"failed_at": failed_at})
            return PlanRunResult(success=False, error=str(exc), failed_at=failed_at, execution_log=trace.to_list())
        finally:
            run_id_ctx_var.reset(token)

    def adjust_plan(
        self,
        plan: Plan,
        progress: Sequence[TaskProgress],
        memory: UserMemory,
        *,
        request_id: Optional[str] = None,
    ) -> AdjustmentResult:
        trace = ExecutionTrace()
        self.last_trace = trace
        token = run_id_ctx_var.set(str(uuid4()))
        started = perf_counter()
        try:
            trace.log("REFLECTION_START", "Reflecting on progress", observations=len(progress))
            reflection = reflect(plan.schedule, progress, memory, self.generator, request_id=request_id)
            trace.log(
                "REFLECTION_COMPLETE",
                "Reflection finished",
                insights=len(reflection.insights),
                fallback=reflection.fallback_used,
            )

            tasks = [task.model_copy() for task in plan.tasks]
            changes = {change.task_id: change for change in reflection.adjustments.priority_changes}
            rescored = 0
            if changes:
                trace.log("RESCORE_START", "Applying priority changes", changes=len(changes))
                for index, task in enumerate(tasks):
                    change = changes.get(task.id)
                    if change is not None:
                        tasks[index] = task.model_copy(
                            update={
                                "priority_score": change.new_priority,
                                "score_reasoning": change.reason or task.score_reasoning,
                            }
                        )
                        rescored += 1
                trace.log("RESCORE_COMPLETE", "Priorities updated", rescored=rescored)

            schedule = reflection.adjusted_schedule
            replanned = False
            if needs_replanning(reflection):
                done = completed_task_ids(tasks, progress)
                remaining = [task for task in tasks if task.id not in done]
                if remaining:
                    trace.log("RESCHEDULE_START", "Rescheduling incomplete tasks", remaining=len(remaining))
                    preferences = schedule.preferences.model_copy(update={"start_date": utcnow().date()})
                    buffer_pct = reflection.adjustments.recommended_buffer_percent
                    if buffer_pct is not None:
                        preferences = preferences.model_copy(update={"buffer_time_percent": buffer_pct})
                    schedule = create_schedule(remaining, preferences, self.generator, request_id=request_id)
                    replanned = True
                    trace.log("RESCHEDULE_COMPLETE", "Schedule rebuilt", total_days=schedule.summary.total_days)

            elapsed_ms = int((perf_counter() - started) * 1000)
            adjusted = AdjustedPlan(
                goal=plan.goal,
                tasks=tasks,
                schedule=schedule,
                reflection=PlanReflection(
                    analysis=reflection.analysis,
                    insights=reflection.insights,
                    memory_updates=reflection.memory_updates,
                    adjustments=reflection.adjustments,
                    fallback_used=reflection.fallback_used,
                    reflected_at=reflection.reflected_at,
                ),
                metadata=AdjustmentMetadata(
                    execution_time_ms=elapsed_ms,
                    original_plan_created_at=plan.metadata.created_at,
                    replanned=replanned,
                    rescored_tasks=rescored,
                ),
            )
            trace.log("ADJUSTMENT_COMPLETE", "Plan adjusted", replanned=replanned)
            log_metric("orchestrator.adjust_plan.latency_ms", elapsed_ms, {"replanned": replanned})
            return AdjustmentResult(
                success=True,
                adjusted_plan=adjusted,
                user_memory=reflection.updated_memory,
                replanned=replanned,
                execution_log=trace.to_list(),
            )
        except PlanningError as exc:
            trace.log("ADJUSTMENT_ERROR", str(exc), error_type=type(exc).__name__)
            return AdjustmentResult(success=False, error=str(exc), execution_log=trace.to_list())
        finally:
            run_id_ctx_var.reset(token)

    def analyze_goal_only(self, goal_text: str, *, request_id: Optional[str] = None) -> GoalDescriptor:
        return analyze_goal(goal_text, self.generator, request_id=request_id)


def get_next_task(plan: Plan, completed_ids: Iterable[str] = ()) -> Optional[PlanTask]:
    """Highest-scoring task not yet completed; earlier tasks win ties."""
    done = set(completed_ids)
    candidates = [task for task in plan.tasks if task.id not in done and task.status != "completed"]
    if not candidates:
        return None
    return sorted(candidates, key=lambda task: task.priority_score or 0, reverse=True)[0]


def completed_task_ids(tasks: Sequence[PlanTask], progress: Sequence[TaskProgress]) -> set[str]:
    done = {task.id for task in tasks if task.status == "completed"}
    done.update(item.task_id for item in progress if item.status == "completed" and item.task_id)
    return done


def build_user_context(goal: GoalDescriptor, context: Optional[UserContext]) -> UserContext:
    base = context or UserContext()
    if base.deadline and base.deadline != "not specified":
        return base
    return base.model_copy(update={"deadline": goal.parsed_deadline})


def build_scheduling_preferences(
    goal: GoalDescriptor,
    preferences: Optional[SchedulingPreferences],
) -> SchedulingPreferences:
    """Fill in whatever the caller left unset: hours from the deadline, buffer from settings."""
    base = preferences or SchedulingPreferences()
    updates: Dict[str, Any] = {}
    if "available_hours_per_day" not in base.model_fields_set:
        updates["available_hours_per_day"] = estimate_available_hours(goal.parsed_deadline)
    if "buffer_time_percent" not in base.model_fields_set:
        updates["buffer_time_percent"] = settings.default_buffer_percent
    return base.model_copy(update=updates) if updates else base


def estimate_available_hours(deadline: str) -> float:
    """Daily hours implied by how close the deadline sounds."""
    lowered = (deadline or "").lower()
    if any(keyword in lowered for keyword in URGENT_KEYWORDS):
        return 6.0
    if any(keyword in lowered for keyword in SHORT_DEADLINE_KEYWORDS):
        return 5.0
    return settings.default_hours_per_day
