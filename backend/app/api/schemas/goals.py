"""Schemas for goal intake and progress."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.services.plan_models import FeasibilityReport, GoalDescriptor, Plan, SchedulingPreferences, UserContext


class GoalAnalyzeRequest(BaseModel):
    goal: str = Field(..., min_length=1, max_length=500)

    @field_validator("goal")
    @classmethod
    def strip_goal(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("goal must not be blank")
        return cleaned


class GoalCreateRequest(GoalAnalyzeRequest):
    user_id: UUID
    user_context: Optional[UserContext] = None
    scheduling_preferences: Optional[SchedulingPreferences] = None


class ProgressPayload(BaseModel):
    total: int
    completed: int
    missed: int
    in_progress: int
    pending: int
    completion_rate: float


class GoalSummary(BaseModel):
    id: UUID
    user_id: UUID
    original_goal: str
    parsed_deadline: str
    subject: str
    complexity: str
    recommended_approach: Optional[str]
    status: str
    created_at: datetime
    progress: ProgressPayload


class GoalAnalyzeResponse(BaseModel):
    goal: GoalDescriptor
    request_id: str


class GoalCreateResponse(BaseModel):
    goal: GoalSummary
    plan: Plan
    feasibility: FeasibilityReport
    execution_log: List[Dict[str, Any]]
    request_id: str


class GoalStatusUpdateRequest(BaseModel):
    user_id: UUID
    status: Literal["active", "completed", "abandoned"]
