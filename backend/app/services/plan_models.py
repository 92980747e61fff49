"""Domain models shared by the planning stages.

Attributes are snake_case in Python and serialise to camelCase so stored plans and API
payloads keep the same shape.
"""
from __future__ import annotations

import datetime as dt
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Complexity = Literal["low", "medium", "high"]
Priority = Literal["low", "medium", "high"]
TaskStatus = Literal["pending", "in-progress", "completed", "missed"]
TimeOfDay = Literal["morning", "afternoon", "evening"]

COMPLEXITIES: tuple[Complexity, ...] = ("low", "medium", "high")
PRIORITIES: tuple[Priority, ...] = ("high", "medium", "low")
TASK_STATUSES: tuple[TaskStatus, ...] = ("pending", "in-progress", "completed", "missed")
TIMES_OF_DAY: tuple[TimeOfDay, ...] = ("morning", "afternoon", "evening")
NOT_SPECIFIED = "not specified"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict using the camelCase field names."""
        return self.model_dump(mode="json", by_alias=True)


class GoalDescriptor(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    original_goal: str
    parsed_deadline: str = NOT_SPECIFIED
    subject: str = "General task"
    complexity: Complexity = "medium"
    recommended_approach: str = "Break down into smaller tasks"
    analyzed_at: datetime = Field(default_factory=utcnow)
    source: Literal["generated", "heuristic"] = "generated"
    note: Optional[str] = None

    @property
    def has_deadline(self) -> bool:
        return bool(self.parsed_deadline) and self.parsed_deadline != NOT_SPECIFIED


class PlanTask(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    description: str
    estimated_hours: float = Field(gt=0, le=40)
    priority: Priority = "medium"
    order: int = Field(ge=1)
    status: TaskStatus = "pending"
    priority_score: Optional[int] = Field(default=None, ge=1, le=10)
    score_reasoning: Optional[str] = None
    goal_reference: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None


class ScheduledTaskInstance(CamelModel):
    task_description: str
    task_id: str
    priority_score: int = Field(default=5, ge=1, le=10)
    start_time: str
    duration: float
    buffer_after: float = Field(default=0.0, ge=0)
    adjustment_reason: Optional[str] = None
    buffer_adjusted: bool = False


class ScheduleDay(CamelModel):
    day: int = Field(ge=1)
    date: dt.date
    tasks: List[ScheduledTaskInstance] = Field(default_factory=list)
    total_hours: float = 0.0
    time_of_day: TimeOfDay = "morning"
    adjusted: bool = False


class ScheduleSummary(CamelModel):
    total_days: int
    total_hours: float
    average_hours_per_day: float
    tasks_scheduled: int
    generated_at: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None


class SchedulingPreferences(CamelModel):
    available_hours_per_day: float = Field(default=4.0, gt=0, le=24)
    preferred_study_times: List[TimeOfDay] = Field(default_factory=lambda: ["morning", "afternoon"])
    buffer_time_percent: float = Field(default=20.0, ge=0, le=100)
    start_date: date = Field(default_factory=date.today)


class Schedule(CamelModel):
    days: List[ScheduleDay] = Field(default_factory=list)
    summary: ScheduleSummary
    preferences: SchedulingPreferences
    source: Literal["generated", "fallback"] = "generated"
    last_adjusted: Optional[datetime] = None


class PlanMetadata(CamelModel):
    created_at: datetime = Field(default_factory=utcnow)
    execution_time_ms: int = 0
    agents_involved: int = 4
    total_tasks: int = 0
    total_hours: float = 0.0
    estimated_days: int = 0


class Plan(CamelModel):
    goal: GoalDescriptor
    tasks: List[PlanTask]
    schedule: Schedule
    metadata: PlanMetadata = Field(default_factory=PlanMetadata)


class UserContext(CamelModel):
    deadline: str = NOT_SPECIFIED
    user_tendency: str = "balanced"
    completed_tasks_count: int = 0
    overdue_history: int = 0
    preferred_times: List[TimeOfDay] = Field(default_factory=lambda: ["morning"])
    last_completed_task: Optional[str] = None
    last_completed_at: Optional[datetime] = None


class TaskProgress(CamelModel):
    task_id: Optional[str] = None
    status: str
    scheduled_time: Optional[str] = None
    completed_time: Optional[str] = None
    completed_on_time: bool = False
    task_description: Optional[str] = None
    priority_score: Optional[int] = None


class MemoryPattern(CamelModel):
    pattern: str
    description: str = ""
    confidence: Any = None
    occurrences: int = 1
    first_identified: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)


class MemoryStats(CamelModel):
    total_tasks_attempted: int = 0
    total_tasks_completed: int = 0
    overall_completion_rate: float = 0.0
    last_updated: datetime = Field(default_factory=utcnow)


class UserMemory(CamelModel):
    completion_rate: float = Field(default=0.0, ge=0, le=100)
    preferred_times: List[str] = Field(default_factory=list)
    patterns: List[MemoryPattern] = Field(default_factory=list)
    stats: Optional[MemoryStats] = None
    insights: List[str] = Field(default_factory=list)
    version: int = 0


class ReflectionAnalysis(CamelModel):
    why_tasks_missed: str = ""
    identified_patterns: List[str] = Field(default_factory=list)
    user_tendency: str = "unknown"


class ScheduleChange(CamelModel):
    change: str
    reason: Optional[str] = None


class PriorityChange(CamelModel):
    task_id: str
    new_priority: int = Field(ge=1, le=10)
    reason: Optional[str] = None


class Adjustments(CamelModel):
    schedule_changes: List[ScheduleChange] = Field(default_factory=list)
    priority_changes: List[PriorityChange] = Field(default_factory=list)
    recommended_buffer_percent: Optional[float] = None


class MemoryUpdate(CamelModel):
    pattern: str
    description: str = ""
    confidence: Any = None


class ProgressAnalyzed(CamelModel):
    total_tasks: int
    completed: int
    missed: int

    @property
    def completion_rate(self) -> float:
        if self.total_tasks == 0:
            return 100.0
        return self.completed / self.total_tasks * 100


class ReflectionResult(CamelModel):
    adjusted_schedule: Schedule
    analysis: ReflectionAnalysis
    adjustments: Adjustments
    memory_updates: List[MemoryUpdate] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    updated_memory: UserMemory
    progress_analyzed: ProgressAnalyzed
    reflected_at: datetime = Field(default_factory=utcnow)
    fallback_used: bool = False
    note: Optional[str] = None


class FeasibilityReport(CamelModel):
    is_feasible: bool
    overloaded_days: int
    load_percentage: str
    recommendation: str
    average_hours_per_day: float = 0.0
    available_hours_per_day: float = 4.0


class PlanReflection(CamelModel):
    analysis: ReflectionAnalysis
    insights: List[str] = Field(default_factory=list)
    memory_updates: List[MemoryUpdate] = Field(default_factory=list)
    adjustments: Adjustments
    fallback_used: bool = False
    reflected_at: datetime = Field(default_factory=utcnow)


class AdjustmentMetadata(CamelModel):
    adjusted_at: datetime = Field(default_factory=utcnow)
    execution_time_ms: int = 0
    original_plan_created_at: Optional[datetime] = None
    replanned: bool = False
    rescored_tasks: int = 0


class AdjustedPlan(CamelModel):
    goal: GoalDescriptor
    tasks: List[PlanTask]
    schedule: Schedule
    reflection: PlanReflection
    metadata: AdjustmentMetadata = Field(default_factory=AdjustmentMetadata)
