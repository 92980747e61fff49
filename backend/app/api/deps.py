"""Shared FastAPI dependencies for the planning routes."""
from __future__ import annotations

from uuid import UUID

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.db.models.goal import Goal
from app.llm.client import TextGenerator, get_text_generator
from app.services.orchestrator import PlanningOrchestrator
from app.services.plan_service import GoalNotFoundError, OwnershipError, get_goal_for_user


def get_orchestrator(generator: TextGenerator = Depends(get_text_generator)) -> PlanningOrchestrator:
    return PlanningOrchestrator(generator)


def load_owned_goal(db: Session, goal_id: UUID, user_id: UUID) -> Goal:
    """Fetch a goal or raise the matching HTTP error."""
    try:
        return get_goal_for_user(db, goal_id, user_id)
    except GoalNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Goal not found")
    except OwnershipError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Goal does not belong to user")
