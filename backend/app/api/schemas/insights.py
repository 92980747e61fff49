"""Schemas for the user insights view."""
from __future__ import annotations

from typing import List
from uuid import UUID

from pydantic import BaseModel

from app.api.schemas.goals import ProgressPayload
from app.services.plan_models import UserMemory


class InsightsResponse(BaseModel):
    user_id: UUID
    memory: UserMemory
    recommendations: List[str]
    statistics: ProgressPayload
    request_id: str
