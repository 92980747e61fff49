"""Reflection stage: learn from task outcomes, adjust the schedule and user memory."""
from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Union

from app.core.errors import GenerationError, UnparsableOutput
from app.llm.client import TextGenerator
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.plan_models import (
    Adjustments,
    MemoryPattern,
    MemoryStats,
    MemoryUpdate,
    PlanReflection,
    PriorityChange,
    ProgressAnalyzed,
    ReflectionAnalysis,
    ReflectionResult,
    Schedule,
    ScheduleChange,
    TaskProgress,
    UserMemory,
    utcnow,
)
from app.services.stage_contract import coerce_float, coerce_score, coerce_text, extract_json

logger = logging.getLogger(__name__)

REFLECTION_MAX_TOKENS = 1200
MISSED_STATUSES = ("missed", "incomplete")
MAX_MEMORY_INSIGHTS = 10
_HOUR_RE = re.compile(r"(\d{1,2}):\d{2}")


def reflect(
    schedule: Schedule,
    progress: Sequence[TaskProgress],
    memory: UserMemory,
    generator: TextGenerator,
    *,
    today: Optional[date] = None,
    request_id: Optional[str] = None,
) -> ReflectionResult:
    """Analyse completed and missed work, then return an adjusted schedule and memory."""
    analyzed = summarize_progress(progress)
    metadata = {"total_tasks": analyzed.total_tasks, "completed": analyzed.completed, "missed": analyzed.missed}

    with trace("stage.reflection", metadata=metadata, request_id=request_id):
        try:
            raw = generator.generate(
                _build_prompt(schedule, progress, memory, analyzed, today or date.today()),
                max_tokens=REFLECTION_MAX_TOKENS,
            )
            payload = extract_json(raw).unwrap()
            if not isinstance(payload, dict):
                raise UnparsableOutput("reflection must be a JSON object", raw_text=raw)
        except (GenerationError, UnparsableOutput) as exc:
            logger.warning("Reflection falling back to rule-based analysis: %s", exc)
            log_metric("reflection.fallback.used", 1, metadata)
            return fallback_reflection(schedule, progress, memory)

    analysis = _parse_analysis(payload.get("analysis"))
    adjustments = _parse_adjustments(payload.get("adjustments"))
    memory_updates = _parse_memory_updates(payload.get("memoryUpdates"))
    insights = _string_list(payload.get("insights"))

    return ReflectionResult(
        adjusted_schedule=apply_adjustments(schedule, adjustments),
        analysis=analysis,
        adjustments=adjustments,
        memory_updates=memory_updates,
        insights=insights,
        updated_memory=update_memory(memory, memory_updates, progress, insights=insights),
        progress_analyzed=analyzed,
    )


def summarize_progress(progress: Sequence[TaskProgress]) -> ProgressAnalyzed:
    return ProgressAnalyzed(
        total_tasks=len(progress),
        completed=sum(1 for item in progress if item.status == "completed"),
        missed=sum(1 for item in progress if item.status in MISSED_STATUSES),
    )


def apply_adjustments(schedule: Schedule, adjustments: Adjustments, *, now: Optional[datetime] = None) -> Schedule:
    """Return a copy of ``schedule`` with priority and buffer adjustments applied."""
    buffer_pct = adjustments.recommended_buffer_percent
    if not adjustments.priority_changes and buffer_pct is None:
        return schedule.model_copy(deep=True)

    changes: Dict[str, PriorityChange] = {change.task_id: change for change in adjustments.priority_changes}
    days = []
    for day in schedule.days:
        instances = []
        for instance in day.tasks:
            change = changes.get(instance.task_id)
            if change is not None:
                instance = instance.model_copy(
                    update={"priority_score": change.new_priority, "adjustment_reason": change.reason}
                )
            elif buffer_pct is not None:
                instance = instance.model_copy(
                    update={"buffer_after": round(instance.duration * buffer_pct / 100, 1), "buffer_adjusted": True}
                )
            else:
                instance = instance.model_copy()
            instances.append(instance)
        total = round(sum(item.duration + item.buffer_after for item in instances), 1)
        days.append(day.model_copy(update={"tasks": instances, "total_hours": total, "adjusted": True}))

    preferences = schedule.preferences
    if buffer_pct is not None:
        preferences = preferences.model_copy(update={"buffer_time_percent": buffer_pct})
    return schedule.model_copy(
        update={"days": days, "preferences": preferences, "last_adjusted": now or utcnow()}
    )


def update_memory(
    memory: UserMemory,
    updates: Sequence[MemoryUpdate],
    progress: Sequence[TaskProgress],
    *,
    insights: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> UserMemory:
    """Upsert patterns by key and recompute rolled-up stats from ``progress``.

    Each pattern key is bumped at most once per call.
    """
    stamp = now or utcnow()
    patterns: List[MemoryPattern] = [pattern.model_copy() for pattern in memory.patterns]
    positions = {pattern.pattern: index for index, pattern in enumerate(patterns)}

    latest: Dict[str, MemoryUpdate] = {}
    for update in updates:
        latest[update.pattern] = update

    for key, update in latest.items():
        if key in positions:
            existing = patterns[positions[key]]
            patterns[positions[key]] = existing.model_copy(
                update={
                    "description": update.description or existing.description,
                    "confidence": update.confidence if update.confidence is not None else existing.confidence,
                    "occurrences": existing.occurrences + 1,
                    "last_updated": stamp,
                }
            )
        else:
            positions[key] = len(patterns)
            patterns.append(
                MemoryPattern(
                    pattern=key,
                    description=update.description,
                    confidence=update.confidence,
                    occurrences=1,
                    first_identified=stamp,
                    last_updated=stamp,
                )
            )

    analyzed = summarize_progress(progress)
    rate = round(analyzed.completed / analyzed.total_tasks * 100, 1) if analyzed.total_tasks else 0.0
    stats = MemoryStats(
        total_tasks_attempted=analyzed.total_tasks,
        total_tasks_completed=analyzed.completed,
        overall_completion_rate=rate,
        last_updated=stamp,
    )
    update_fields: Dict[str, Any] = {"patterns": patterns, "stats": stats}
    if analyzed.total_tasks:
        update_fields["completion_rate"] = rate
    if insights:
        update_fields["insights"] = list(insights)[:MAX_MEMORY_INSIGHTS]
    return memory.model_copy(update=update_fields)


def fallback_reflection(
    schedule: Schedule,
    progress: Sequence[TaskProgress],
    memory: UserMemory,
) -> ReflectionResult:
    """Rule-based reflection; leaves the schedule untouched."""
    analyzed = summarize_progress(progress)
    rate = analyzed.completed / analyzed.total_tasks * 100 if analyzed.total_tasks else 0.0

    insights: List[str] = []
    if rate < 50:
        insights.append("Completion rate is low - consider reducing daily workload")
    if analyzed.missed > analyzed.completed:
        insights.append("More tasks missed than completed - time estimates may be too optimistic")
    completed = [item for item in progress if item.status == "completed"]
    evening = [item for item in completed if (_completion_hour(item.completed_time) or 0) >= 18]
    if len(evening) > len(completed) * 0.6:
        insights.append("User tends to complete tasks in the evening")

    if rate < 60:
        buffer_pct = 30.0
    elif rate < 80:
        buffer_pct = 20.0
    else:
        buffer_pct = 15.0

    if rate > 80:
        tendency = "realistic"
    elif rate > 50:
        tendency = "slightly optimistic"
    else:
        tendency = "overly optimistic"

    analysis = ReflectionAnalysis(
        why_tasks_missed=(
            "Likely due to time underestimation or scheduling conflicts"
            if analyzed.missed > 0
            else "No significant issues detected"
        ),
        identified_patterns=["Pattern detection limited in fallback mode"],
        user_tendency=tendency,
    )
    adjustments = Adjustments(
        schedule_changes=[ScheduleChange(change=insight) for insight in insights],
        recommended_buffer_percent=buffer_pct,
    )
    return ReflectionResult(
        adjusted_schedule=schedule.model_copy(deep=True),
        analysis=analysis,
        adjustments=adjustments,
        memory_updates=[],
        insights=insights,
        updated_memory=update_memory(memory, [], progress, insights=insights),
        progress_analyzed=analyzed,
        fallback_used=True,
        note="Fallback reflection used",
    )


def needs_replanning(reflection: ReflectionResult) -> bool:
    """True when completion is below half or the model proposed sweeping changes."""
    if reflection.progress_analyzed.completion_rate < 50:
        return True
    if len(reflection.adjustments.schedule_changes) > 3:
        return True
    return len(reflection.adjustments.priority_changes) > 2


def get_recommendations(reflection: Union[ReflectionResult, PlanReflection]) -> List[str]:
    recommendations: List[str] = []
    for text in [*reflection.insights, *(change.change for change in reflection.adjustments.schedule_changes)]:
        if text not in recommendations:
            recommendations.append(text)
    return recommendations


def _completion_hour(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = _HOUR_RE.search(value)
    return int(match.group(1)) if match else None


def _parse_analysis(value: Any) -> ReflectionAnalysis:
    data = value if isinstance(value, dict) else {}
    return ReflectionAnalysis(
        why_tasks_missed=coerce_text(data.get("whyTasksMissed"), "No analysis provided"),
        identified_patterns=_string_list(data.get("identifiedPatterns")),
        user_tendency=coerce_text(data.get("userTendency"), "unknown"),
    )


def _parse_adjustments(value: Any) -> Adjustments:
    data = value if isinstance(value, dict) else {}
    schedule_changes: List[ScheduleChange] = []
    for entry in _entries(data.get("scheduleChanges")):
        if isinstance(entry, str) and entry.strip():
            schedule_changes.append(ScheduleChange(change=entry.strip()))
        elif isinstance(entry, dict):
            text = coerce_text(entry.get("change") or entry.get("description"), "")
            if text:
                schedule_changes.append(ScheduleChange(change=text, reason=coerce_text(entry.get("reason"), "") or None))

    priority_changes: List[PriorityChange] = []
    for entry in _entries(data.get("priorityChanges")):
        if not isinstance(entry, dict) or entry.get("taskId") in (None, ""):
            continue
        priority_changes.append(
            PriorityChange(
                task_id=str(entry["taskId"]),
                new_priority=coerce_score(entry.get("newPriority")),
                reason=coerce_text(entry.get("reason"), "Adjusted after reflection"),
            )
        )

    buffer_pct = coerce_float(data.get("recommendedBufferPercent"))
    if buffer_pct is not None:
        buffer_pct = max(0.0, min(100.0, buffer_pct))
    return Adjustments(
        schedule_changes=schedule_changes,
        priority_changes=priority_changes,
        recommended_buffer_percent=buffer_pct,
    )


def _parse_memory_updates(value: Any) -> List[MemoryUpdate]:
    updates: List[MemoryUpdate] = []
    for entry in _entries(value):
        if not isinstance(entry, dict):
            continue
        pattern = coerce_text(entry.get("pattern"), "")
        if pattern:
            updates.append(
                MemoryUpdate(
                    pattern=pattern,
                    description=coerce_text(entry.get("description"), ""),
                    confidence=entry.get("confidence"),
                )
            )
    return updates


def _entries(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _build_prompt(
    schedule: Schedule,
    progress: Sequence[TaskProgress],
    memory: UserMemory,
    analyzed: ProgressAnalyzed,
    today: date,
) -> str:
    completed = [item for item in progress if item.status == "completed"]
    missed = [item for item in progress if item.status in MISSED_STATUSES]
    on_time = [item for item in completed if item.completed_on_time]
    rate = analyzed.completed / analyzed.total_tasks * 100 if analyzed.total_tasks else 0.0
    on_time_rate = len(on_time) / len(completed) * 100 if completed else 0.0
    remaining = [day for day in schedule.days if day.date >= today][:3]

    completed_lines = [
        f"- {item.task_description or item.task_id} (scheduled {item.scheduled_time or 'n/a'}, "
        f"done {item.completed_time or 'n/a'}, on time: {item.completed_on_time})"
        for item in completed[:5]
    ]
    missed_lines = [
        f"- [{item.task_id}] {item.task_description or 'Unnamed task'} (priority {item.priority_score or 'n/a'})"
        for item in missed
    ]
    patterns = [{"pattern": p.pattern, "occurrences": p.occurrences} for p in memory.patterns]
    remaining_digest = [
        {
            "day": day.day,
            "date": day.date.isoformat(),
            "tasks": [{"taskId": item.task_id, "taskDescription": item.task_description} for item in day.tasks],
        }
        for day in remaining
    ]
    return (
        "You are a reflective study coach. Review the user's progress and adjust the plan.\n\n"
        f"Progress: {analyzed.completed} of {analyzed.total_tasks} tasks completed ({rate:.0f}%), "
        f"{analyzed.missed} missed, {on_time_rate:.0f}% of completed tasks on time.\n"
        f"Completed tasks:\n{chr(10).join(completed_lines) or '- none'}\n"
        f"Missed tasks:\n{chr(10).join(missed_lines) or '- none'}\n"
        f"Known patterns: {json.dumps(patterns)}\n"
        f"Historical completion rate: {memory.completion_rate}%\n"
        f"Remaining schedule: {json.dumps(remaining_digest)}\n\n"
        "Respond with ONLY a JSON object:\n"
        '{"analysis": {"whyTasksMissed": "...", "identifiedPatterns": ["..."], "userTendency": "..."},\n'
        ' "adjustments": {"scheduleChanges": ["..."], '
        '"priorityChanges": [{"taskId": "...", "newPriority": 1-10, "reason": "..."}], '
        '"recommendedBufferPercent": 20},\n'
        ' "memoryUpdates": [{"pattern": "...", "description": "...", "confidence": "low|medium|high"}],\n'
        ' "insights": ["..."]}'
    )
