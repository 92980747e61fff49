"""Schemas for planned tasks."""
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel


class TaskPayload(BaseModel):
    id: UUID
    goal_id: UUID
    description: str
    estimated_hours: float
    priority: str
    order: int
    status: str
    priority_score: Optional[int]
    score_reasoning: Optional[str]
    completed_at: Optional[datetime]
    completed_late: bool


class TaskStatusUpdateRequest(BaseModel):
    user_id: UUID
    status: Literal["pending", "in-progress", "completed", "missed"]


class TaskStatusUpdateResponse(BaseModel):
    task: TaskPayload
    request_id: str
