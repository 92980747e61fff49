"""Schemas for stored plans, reflection and schedule views."""
from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel

from app.services.plan_models import (
    AdjustedPlan,
    FeasibilityReport,
    Plan,
    PlanTask,
    ScheduleDay,
    ScheduledTaskInstance,
    TaskProgress,
    UserMemory,
)


class PlanResponse(BaseModel):
    goal_id: UUID
    plan: Plan
    adjustments: List[Dict[str, Any]]
    request_id: str


class NextTaskResponse(BaseModel):
    goal_id: UUID
    task: Optional[PlanTask]
    remaining: int
    request_id: str


class FeasibilityResponse(BaseModel):
    goal_id: UUID
    feasibility: FeasibilityReport
    request_id: str


class TodayResponse(BaseModel):
    goal_id: UUID
    date: dt.date
    tasks: List[ScheduledTaskInstance]
    upcoming: List[ScheduleDay]
    request_id: str


class ReflectRequest(BaseModel):
    user_id: UUID
    progress: Optional[List[TaskProgress]] = None


class ReflectResponse(BaseModel):
    goal_id: UUID
    adjusted_plan: AdjustedPlan
    memory: UserMemory
    replanned: bool
    recommendations: List[str]
    observations: int
    execution_log: List[Dict[str, Any]]
    request_id: str
