"""Goal intake and progress API routes."""
from __future__ import annotations

from time import perf_counter
from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.api.deps import get_orchestrator, load_owned_goal
from app.api.schemas.goals import (
    GoalAnalyzeRequest,
    GoalAnalyzeResponse,
    GoalCreateRequest,
    GoalCreateResponse,
    GoalStatusUpdateRequest,
    GoalSummary,
    ProgressPayload,
)
from app.api.schemas.tasks import TaskPayload
from app.api.routes.tasks import serialize_task
from app.core.errors import InvalidInput
from app.db.deps import get_db
from app.db.models.goal import Goal
from app.observability.metrics import log_latency, log_metric
from app.observability.tracing import trace
from app.services.orchestrator import PlanningOrchestrator
from app.services.plan_service import count_progress, create_goal_plan, goal_tasks, list_goals, update_goal_status
from app.services.scheduler import analyze_feasibility

router = APIRouter()


@router.post("/goals/analyze", response_model=GoalAnalyzeResponse, tags=["goals"])
def analyze_goal_endpoint(
    payload: GoalAnalyzeRequest,
    http_request: Request,
    orchestrator: PlanningOrchestrator = Depends(get_orchestrator),
) -> GoalAnalyzeResponse:
    """Analyze a goal without building a plan."""
    request_id = getattr(http_request.state, "request_id", None)
    with trace("goal.analyze", metadata={"route": "/goals/analyze", "request_id": request_id}, request_id=request_id):
        try:
            descriptor = orchestrator.analyze_goal_only(payload.goal, request_id=request_id)
        except InvalidInput as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return GoalAnalyzeResponse(goal=descriptor, request_id=request_id or "")


@router.post("/goals", response_model=GoalCreateResponse, status_code=status.HTTP_201_CREATED, tags=["goals"])
def create_goal_endpoint(
    payload: GoalCreateRequest,
    http_request: Request,
    db: Session = Depends(get_db),
    orchestrator: PlanningOrchestrator = Depends(get_orchestrator),
) -> GoalCreateResponse:
    """Turn a free-text goal into a stored, scheduled plan."""
    request_id = getattr(http_request.state, "request_id", None)
    metadata: Dict[str, Any] = {
        "route": "/goals",
        "user_id": str(payload.user_id),
        "goal_length": len(payload.goal),
        "request_id": request_id,
    }

    start = perf_counter()
    with trace("goal.create", metadata=metadata, user_id=str(payload.user_id), request_id=request_id):
        result, goal = create_goal_plan(
            db,
            orchestrator,
            user_id=payload.user_id,
            goal_text=payload.goal,
            user_context=payload.user_context,
            preferences=payload.scheduling_preferences,
            request_id=request_id,
        )

    if not result.success or goal is None or result.plan is None:
        log_metric("goal.create.failed", 1, {"failed_at": result.failed_at})
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": result.error or "Plan creation failed",
                "failed_at": result.failed_at,
                "execution_log": result.execution_log,
            },
        )

    log_metric("goal.create.success", 1, {"user_id": str(payload.user_id)})
    log_latency("goal.create.latency_ms", start, {"user_id": str(payload.user_id)})
    return GoalCreateResponse(
        goal=_serialize_goal(goal, goal_tasks(db, goal.id)),
        plan=result.plan,
        feasibility=analyze_feasibility(result.plan.schedule),
        execution_log=result.execution_log,
        request_id=request_id or "",
    )


@router.get("/goals", response_model=List[GoalSummary], tags=["goals"])
def list_goals_endpoint(
    http_request: Request,
    user_id: UUID = Query(..., description="User ID owning the goals"),
    db: Session = Depends(get_db),
) -> List[GoalSummary]:
    request_id = getattr(http_request.state, "request_id", None)
    with trace("goal.list", metadata={"route": "/goals", "user_id": str(user_id)}, user_id=str(user_id), request_id=request_id):
        goals = list_goals(db, user_id)
        summaries = [_serialize_goal(goal, goal_tasks(db, goal.id)) for goal in goals]
    log_metric("goal.list.count", len(summaries), {"user_id": str(user_id)})
    return summaries


@router.get("/goals/{goal_id}", response_model=GoalSummary, tags=["goals"])
def get_goal_endpoint(
    goal_id: UUID,
    user_id: UUID = Query(..., description="User ID owning the goal"),
    db: Session = Depends(get_db),
) -> GoalSummary:
    """Return a goal with its task progress counts."""
    goal = load_owned_goal(db, goal_id, user_id)
    return _serialize_goal(goal, goal_tasks(db, goal.id))


@router.get("/goals/{goal_id}/tasks", response_model=List[TaskPayload], tags=["goals"])
def list_goal_tasks_endpoint(
    goal_id: UUID,
    user_id: UUID = Query(..., description="User ID owning the goal"),
    db: Session = Depends(get_db),
) -> List[TaskPayload]:
    """Tasks ordered by priority score, then by sequence."""
    goal = load_owned_goal(db, goal_id, user_id)
    return [serialize_task(task) for task in goal_tasks(db, goal.id)]


@router.patch("/goals/{goal_id}", response_model=GoalSummary, tags=["goals"])
def update_goal_endpoint(
    goal_id: UUID,
    payload: GoalStatusUpdateRequest,
    http_request: Request,
    db: Session = Depends(get_db),
) -> GoalSummary:
    request_id = getattr(http_request.state, "request_id", None)
    goal = load_owned_goal(db, goal_id, payload.user_id)
    with trace(
        "goal.update_status",
        metadata={"goal_id": str(goal_id), "status": payload.status},
        user_id=str(payload.user_id),
        request_id=request_id,
    ):
        goal = update_goal_status(db, goal, payload.status)
    return _serialize_goal(goal, goal_tasks(db, goal.id))


def _serialize_goal(goal: Goal, tasks) -> GoalSummary:
    counts = count_progress(tasks)
    return GoalSummary(
        id=goal.id,
        user_id=goal.user_id,
        original_goal=goal.original_goal,
        parsed_deadline=goal.parsed_deadline,
        subject=goal.subject,
        complexity=goal.complexity,
        recommended_approach=goal.recommended_approach,
        status=goal.status,
        created_at=goal.created_at,
        progress=ProgressPayload(**counts.to_dict()),
    )
