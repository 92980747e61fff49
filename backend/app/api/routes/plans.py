"""Stored plan, schedule view and reflection API routes."""
from __future__ import annotations

from datetime import date
from time import perf_counter
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.api.deps import get_orchestrator, load_owned_goal
from app.api.schemas.plans import (
    FeasibilityResponse,
    NextTaskResponse,
    PlanResponse,
    ReflectRequest,
    ReflectResponse,
    TodayResponse,
)
from app.core.errors import MemoryConflict, PlanningError
from app.db.deps import get_db
from app.db.models.goal import Goal
from app.observability.metrics import log_latency
from app.observability.tracing import trace
from app.services.orchestrator import PlanningOrchestrator, get_next_task
from app.services.plan_models import Plan
from app.services.plan_service import NoProgressError, PlanNotFoundError, get_plan_row, load_plan, trigger_reflection
from app.services.reflection import get_recommendations
from app.services.scheduler import analyze_feasibility, get_todays_tasks, get_upcoming_tasks

router = APIRouter()


@router.get("/plans/{goal_id}", response_model=PlanResponse, tags=["plans"])
def get_plan_endpoint(
    goal_id: UUID,
    http_request: Request,
    user_id: UUID = Query(..., description="User ID owning the goal"),
    db: Session = Depends(get_db),
) -> PlanResponse:
    request_id = getattr(http_request.state, "request_id", None)
    goal = load_owned_goal(db, goal_id, user_id)
    with trace("plan.get", metadata={"goal_id": str(goal_id)}, user_id=str(user_id), request_id=request_id):
        plan = _load_plan_or_404(db, goal)
        adjustments = get_plan_row(db, goal.id).adjustments or []
    return PlanResponse(goal_id=goal.id, plan=plan, adjustments=adjustments, request_id=request_id or "")


@router.get("/plans/{goal_id}/next-task", response_model=NextTaskResponse, tags=["plans"])
def next_task_endpoint(
    goal_id: UUID,
    http_request: Request,
    user_id: UUID = Query(..., description="User ID owning the goal"),
    db: Session = Depends(get_db),
) -> NextTaskResponse:
    """Highest-priority task that is not completed yet."""
    request_id = getattr(http_request.state, "request_id", None)
    goal = load_owned_goal(db, goal_id, user_id)
    plan = _load_plan_or_404(db, goal)
    completed = [task.id for task in plan.tasks if task.status == "completed"]
    task = get_next_task(plan, completed)
    return NextTaskResponse(
        goal_id=goal.id,
        task=task,
        remaining=len(plan.tasks) - len(completed),
        request_id=request_id or "",
    )


@router.get("/plans/{goal_id}/feasibility", response_model=FeasibilityResponse, tags=["plans"])
def feasibility_endpoint(
    goal_id: UUID,
    http_request: Request,
    user_id: UUID = Query(..., description="User ID owning the goal"),
    db: Session = Depends(get_db),
) -> FeasibilityResponse:
    request_id = getattr(http_request.state, "request_id", None)
    goal = load_owned_goal(db, goal_id, user_id)
    plan = _load_plan_or_404(db, goal)
    return FeasibilityResponse(
        goal_id=goal.id,
        feasibility=analyze_feasibility(plan.schedule),
        request_id=request_id or "",
    )


@router.get("/plans/{goal_id}/today", response_model=TodayResponse, tags=["plans"])
def today_endpoint(
    goal_id: UUID,
    http_request: Request,
    user_id: UUID = Query(..., description="User ID owning the goal"),
    on: Optional[date] = Query(default=None, description="Day to show; defaults to today"),
    days: int = Query(default=3, ge=1, le=14),
    db: Session = Depends(get_db),
) -> TodayResponse:
    """Tasks scheduled for one day plus the next few days."""
    request_id = getattr(http_request.state, "request_id", None)
    goal = load_owned_goal(db, goal_id, user_id)
    plan = _load_plan_or_404(db, goal)
    target = on or date.today()
    return TodayResponse(
        goal_id=goal.id,
        date=target,
        tasks=get_todays_tasks(plan.schedule, target),
        upcoming=get_upcoming_tasks(plan.schedule, days, target),
        request_id=request_id or "",
    )


@router.post("/plans/{goal_id}/reflect", response_model=ReflectResponse, tags=["plans"])
def reflect_endpoint(
    goal_id: UUID,
    payload: ReflectRequest,
    http_request: Request,
    db: Session = Depends(get_db),
    orchestrator: PlanningOrchestrator = Depends(get_orchestrator),
) -> ReflectResponse:
    """Reflect on recorded outcomes and adjust the stored plan."""
    request_id = getattr(http_request.state, "request_id", None)
    goal = load_owned_goal(db, goal_id, payload.user_id)
    metadata: Dict[str, Any] = {
        "route": f"/plans/{goal_id}/reflect",
        "goal_id": str(goal_id),
        "user_id": str(payload.user_id),
        "explicit_progress": payload.progress is not None,
        "request_id": request_id,
    }

    start = perf_counter()
    try:
        with trace("plan.reflect", metadata=metadata, user_id=str(payload.user_id), request_id=request_id):
            outcome = trigger_reflection(
                db,
                orchestrator,
                goal=goal,
                user_id=payload.user_id,
                progress=payload.progress,
                request_id=request_id,
            )
    except PlanNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found")
    except NoProgressError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except MemoryConflict as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except PlanningError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    log_latency("plan.reflect.latency_ms", start, {"replanned": outcome.result.replanned})
    adjusted = outcome.result.adjusted_plan
    recommendations = get_recommendations(adjusted.reflection)
    return ReflectResponse(
        goal_id=goal.id,
        adjusted_plan=adjusted,
        memory=outcome.memory,
        replanned=outcome.result.replanned,
        recommendations=recommendations,
        observations=outcome.observations,
        execution_log=outcome.result.execution_log,
        request_id=request_id or "",
    )


def _load_plan_or_404(db: Session, goal: Goal) -> Plan:
    try:
        return load_plan(db, goal)
    except PlanNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found")
