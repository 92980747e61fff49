"""User insights API route."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.api.schemas.goals import ProgressPayload
from app.api.schemas.insights import InsightsResponse
from app.db.deps import get_db
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.plan_service import get_user_memory, user_statistics

router = APIRouter()


@router.get("/insights", response_model=InsightsResponse, tags=["insights"])
def get_insights_endpoint(
    http_request: Request,
    user_id: UUID = Query(..., description="User ID to summarize"),
    db: Session = Depends(get_db),
) -> InsightsResponse:
    """Return learned patterns alongside live task statistics."""
    request_id = getattr(http_request.state, "request_id", None)
    with trace("insights.get", metadata={"route": "/insights"}, user_id=str(user_id), request_id=request_id):
        memory = get_user_memory(db, user_id)
        counts = user_statistics(db, user_id)

    log_metric("insights.patterns", len(memory.patterns), {"user_id": str(user_id)})
    return InsightsResponse(
        user_id=user_id,
        memory=memory,
        recommendations=list(memory.insights),
        statistics=ProgressPayload(**counts.to_dict()),
        request_id=request_id or "",
    )
