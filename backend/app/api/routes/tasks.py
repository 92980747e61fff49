"""Task progress API routes."""
from __future__ import annotations

from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.api.schemas.tasks import TaskPayload, TaskStatusUpdateRequest, TaskStatusUpdateResponse
from app.db.deps import get_db
from app.db.models.task import Task
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.plan_service import OwnershipError, TaskNotFoundError, update_task_status

router = APIRouter()


@router.patch("/tasks/{task_id}", response_model=TaskStatusUpdateResponse, tags=["tasks"])
def update_task_status_endpoint(
    task_id: UUID,
    payload: TaskStatusUpdateRequest,
    http_request: Request,
    db: Session = Depends(get_db),
) -> TaskStatusUpdateResponse:
    """Record a task outcome reported by the user."""
    request_id = getattr(http_request.state, "request_id", None)
    metadata: Dict[str, Any] = {
        "route": f"/tasks/{task_id}",
        "task_id": str(task_id),
        "user_id": str(payload.user_id),
        "status": payload.status,
        "request_id": request_id,
    }

    try:
        with trace("task.update_status", metadata=metadata, user_id=str(payload.user_id), request_id=request_id):
            task = update_task_status(
                db,
                task_id=task_id,
                user_id=payload.user_id,
                status=payload.status,
                request_id=request_id,
            )
    except TaskNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    except OwnershipError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task does not belong to user")

    log_metric("task.update_status.success", 1, {"status": payload.status})
    return TaskStatusUpdateResponse(task=serialize_task(task), request_id=request_id or "")


def serialize_task(task: Task) -> TaskPayload:
    return TaskPayload(
        id=task.id,
        goal_id=task.goal_id,
        description=task.description,
        estimated_hours=task.estimated_hours,
        priority=task.priority,
        order=task.order,
        status=task.status,
        priority_score=task.priority_score,
        score_reasoning=task.score_reasoning,
        completed_at=task.completed_at,
        completed_late=bool(task.completed_late),
    )
