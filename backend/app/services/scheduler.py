"""Schedule construction stage: scored tasks to a day-by-day calendar."""
from __future__ import annotations

import json
import logging
import math
import re
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Set

from app.core.errors import GenerationError, UnparsableOutput
from app.llm.client import TextGenerator
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.plan_models import (
    TIMES_OF_DAY,
    FeasibilityReport,
    PlanTask,
    Schedule,
    ScheduleDay,
    ScheduledTaskInstance,
    SchedulingPreferences,
    ScheduleSummary,
    TimeOfDay,
)
from app.services.stage_contract import coerce_choice, coerce_positive_int, extract_json

logger = logging.getLogger(__name__)

SCHEDULE_MAX_TOKENS = 1200
DEFAULT_SCORE = 5
BASE_HOURS: Dict[str, int] = {"morning": 9, "afternoon": 14, "evening": 18}
_CLOCK_RE = re.compile(r"^\s*([01]?\d|2[0-3]):([0-5]\d)\s*$")


def create_schedule(
    tasks: List[PlanTask],
    preferences: SchedulingPreferences,
    generator: TextGenerator,
    *,
    request_id: Optional[str] = None,
) -> Schedule:
    """Place every task into a day, preferring the model's layout and falling back to bin-packing."""
    if not tasks:
        return _assemble([], tasks, preferences, source="fallback", note="No tasks to schedule")

    metadata = {"task_count": len(tasks), "hours_per_day": preferences.available_hours_per_day}
    with trace("stage.schedule_construction", metadata=metadata, request_id=request_id):
        try:
            raw = generator.generate(_build_prompt(tasks, preferences), max_tokens=SCHEDULE_MAX_TOKENS)
            payload = extract_json(raw).unwrap()
            days = _normalize_generated(payload, tasks, preferences)
        except (GenerationError, UnparsableOutput) as exc:
            logger.warning("Schedule construction falling back to bin-packing: %s", exc)
            log_metric("schedule.fallback.used", 1, metadata)
            return fallback_schedule(tasks, preferences)

    return _assemble(days, tasks, preferences, source="generated")


def fallback_schedule(tasks: List[PlanTask], preferences: SchedulingPreferences) -> Schedule:
    """First-fit placement by descending score against the daily hour cap.

    A task whose buffered duration alone exceeds the cap still gets a day of its own;
    feasibility analysis reports such days as overloaded.
    """
    cap = preferences.available_hours_per_day
    pct = preferences.buffer_time_percent
    time_of_day = _primary_time_of_day(preferences)
    ordered = sorted(tasks, key=lambda task: (-(task.priority_score or DEFAULT_SCORE), task.order))

    days: List[ScheduleDay] = []
    current: List[ScheduledTaskInstance] = []
    current_hours = 0.0
    for task in ordered:
        duration = task.estimated_hours
        buffer = duration * pct / 100
        if current_hours + duration + buffer > cap and current:
            days.append(_close_day(len(days), current, current_hours, time_of_day, preferences.start_date))
            current = []
            current_hours = 0.0
        current.append(
            ScheduledTaskInstance(
                task_description=task.description,
                task_id=task.id,
                priority_score=task.priority_score or DEFAULT_SCORE,
                start_time=format_start_time(time_of_day, current_hours),
                duration=duration,
                buffer_after=round(buffer, 1),
            )
        )
        current_hours += duration + buffer
    if current:
        days.append(_close_day(len(days), current, current_hours, time_of_day, preferences.start_date))

    return _assemble(days, tasks, preferences, source="fallback", note="Fallback schedule generated")


def _close_day(
    position: int,
    instances: List[ScheduledTaskInstance],
    hours: float,
    time_of_day: TimeOfDay,
    start_date: date,
) -> ScheduleDay:
    return ScheduleDay(
        day=position + 1,
        date=start_date + timedelta(days=position),
        tasks=instances,
        total_hours=round(hours, 1),
        time_of_day=time_of_day,
    )


def format_start_time(time_of_day: str, hours_elapsed: float) -> str:
    """Clock time ``hours_elapsed`` after the base hour of ``time_of_day``."""
    base = BASE_HOURS.get(time_of_day, 9)
    total_minutes = base * 60 + math.floor(hours_elapsed) * 60 + round((hours_elapsed % 1) * 60)
    total_minutes %= 24 * 60
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


def _primary_time_of_day(preferences: SchedulingPreferences) -> TimeOfDay:
    if preferences.preferred_study_times:
        return preferences.preferred_study_times[0]
    return "morning"


def _normalize_generated(
    payload: Any,
    tasks: List[PlanTask],
    preferences: SchedulingPreferences,
) -> List[ScheduleDay]:
    if not isinstance(payload, dict) or not isinstance(payload.get("schedule"), list):
        raise UnparsableOutput("schedule payload must contain a 'schedule' array")

    by_id = {task.id: task for task in tasks}
    by_description = {task.description.strip().lower(): task for task in tasks}
    placed: Set[str] = set()
    pct = preferences.buffer_time_percent

    raw_days: List[tuple[Dict[str, Any], TimeOfDay, List[ScheduledTaskInstance]]] = []
    for raw_day in payload["schedule"]:
        if not isinstance(raw_day, dict):
            continue
        time_of_day = coerce_choice(raw_day.get("timeOfDay"), TIMES_OF_DAY, "morning")
        instances: List[ScheduledTaskInstance] = []
        elapsed = 0.0
        for raw_instance in raw_day.get("tasks") or []:
            task = _resolve_task(raw_instance, by_id, by_description)
            if task is None or task.id in placed:
                continue
            placed.add(task.id)
            buffer = round(task.estimated_hours * pct / 100, 1)
            instances.append(
                ScheduledTaskInstance(
                    task_description=task.description,
                    task_id=task.id,
                    priority_score=task.priority_score or DEFAULT_SCORE,
                    start_time=_clock_or_default(raw_instance.get("startTime"), time_of_day, elapsed),
                    duration=task.estimated_hours,
                    buffer_after=buffer,
                )
            )
            elapsed += task.estimated_hours + buffer
        if instances:
            raw_days.append((raw_day, time_of_day, instances))

    if len(placed) != len(tasks):
        raise UnparsableOutput(f"schedule placed {len(placed)} of {len(tasks)} tasks")

    days: List[ScheduleDay] = []
    for position, (raw_day, time_of_day, instances) in enumerate(raw_days):
        days.append(
            ScheduleDay(
                day=coerce_positive_int(raw_day.get("day")) or position + 1,
                date=_parse_date(raw_day.get("date")) or preferences.start_date + timedelta(days=position),
                tasks=instances,
                total_hours=round(sum(item.duration + item.buffer_after for item in instances), 1),
                time_of_day=time_of_day,
            )
        )
    return days


def _resolve_task(
    raw_instance: Any,
    by_id: Dict[str, PlanTask],
    by_description: Dict[str, PlanTask],
) -> Optional[PlanTask]:
    if not isinstance(raw_instance, dict):
        return None
    task_id = raw_instance.get("taskId")
    if task_id is not None and str(task_id) in by_id:
        return by_id[str(task_id)]
    description = raw_instance.get("taskDescription") or raw_instance.get("description")
    if isinstance(description, str):
        return by_description.get(description.strip().lower())
    return None


def _clock_or_default(value: Any, time_of_day: str, elapsed: float) -> str:
    if isinstance(value, str):
        match = _CLOCK_RE.match(value)
        if match:
            return f"{int(match.group(1)):02d}:{match.group(2)}"
    return format_start_time(time_of_day, elapsed)


def _parse_date(value: Any) -> Optional[date]:
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def _assemble(
    days: List[ScheduleDay],
    tasks: List[PlanTask],
    preferences: SchedulingPreferences,
    *,
    source: str,
    note: Optional[str] = None,
) -> Schedule:
    total_hours = calculate_total_hours(tasks)
    summary = ScheduleSummary(
        total_days=len(days),
        total_hours=total_hours,
        average_hours_per_day=round(total_hours / len(days), 1) if days else 0.0,
        tasks_scheduled=sum(len(day.tasks) for day in days),
        note=note,
    )
    return Schedule(days=days, summary=summary, preferences=preferences, source=source)


def calculate_total_hours(tasks: List[PlanTask]) -> float:
    return round(sum(task.estimated_hours for task in tasks), 1)


def analyze_feasibility(schedule: Schedule) -> FeasibilityReport:
    """Flag days whose booked hours exceed the daily cap."""
    cap = schedule.preferences.available_hours_per_day or 4.0
    overloaded = [day for day in schedule.days if day.total_hours > cap]
    average = schedule.summary.average_hours_per_day
    if overloaded:
        recommendation = "Consider extending deadline or reducing scope"
    elif average > cap * 0.8:
        recommendation = "Schedule is tight but achievable"
    else:
        recommendation = "Schedule has comfortable margins"
    return FeasibilityReport(
        is_feasible=not overloaded,
        overloaded_days=len(overloaded),
        load_percentage=f"{average / cap * 100:.0f}%",
        recommendation=recommendation,
        average_hours_per_day=average,
        available_hours_per_day=cap,
    )


def get_todays_tasks(schedule: Schedule, today: Optional[date] = None) -> List[ScheduledTaskInstance]:
    target = today or date.today()
    for day in schedule.days:
        if day.date == target:
            return list(day.tasks)
    return []


def get_upcoming_tasks(schedule: Schedule, days: int = 3, today: Optional[date] = None) -> List[ScheduleDay]:
    start = today or date.today()
    end = start + timedelta(days=days)
    return [day for day in schedule.days if start <= day.date < end]


def _build_prompt(tasks: List[PlanTask], preferences: SchedulingPreferences) -> str:
    ordered = sorted(tasks, key=lambda task: (-(task.priority_score or DEFAULT_SCORE), task.order))
    total = sum(task.estimated_hours for task in tasks)
    days_needed = math.ceil(total / preferences.available_hours_per_day)
    listing = json.dumps(
        [
            {
                "taskId": task.id,
                "description": task.description,
                "estimatedHours": task.estimated_hours,
                "priorityScore": task.priority_score,
                "order": task.order,
            }
            for task in ordered
        ],
        indent=2,
    )
    return (
        "You are a study scheduling assistant. Build a day-by-day schedule for these tasks.\n\n"
        f"Tasks (highest priority first):\n{listing}\n\n"
        f"Total hours: {total}\n"
        f"Available hours per day: {preferences.available_hours_per_day}\n"
        f"Preferred study times: {', '.join(preferences.preferred_study_times) or 'morning'}\n"
        f"Buffer between tasks: {preferences.buffer_time_percent}% of each task\n"
        f"Start date: {preferences.start_date.isoformat()}\n"
        f"Estimated days needed: {days_needed}\n\n"
        "Rules: schedule higher scores earlier, never exceed the daily hours, keep the load even, "
        "use order to break ties, and place every task exactly once.\n"
        "Respond with ONLY a JSON object:\n"
        '{"schedule": [{"day": 1, "date": "YYYY-MM-DD", "timeOfDay": "morning", '
        '"tasks": [{"taskId": "...", "taskDescription": "...", "startTime": "HH:MM"}]}]}'
    )
