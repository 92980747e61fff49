"""Stored schedule for a goal."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Index, func
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base
from app.db.types import JSONBCompat


class Plan(Base):
    __tablename__ = "plans"
    __table_args__ = (
        Index("ix_plans_user_id", "user_id"),
        Index("ix_plans_goal_id", "goal_id", unique=True),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    goal_id = Column(UUID(as_uuid=True), ForeignKey("goals.id", ondelete="CASCADE"), nullable=False)
    schedule = Column(JSONBCompat, nullable=False, default=list)
    summary = Column(JSONBCompat, nullable=False, default=dict)
    preferences = Column(JSONBCompat, nullable=False, default=dict)
    metadata_json = Column("metadata", JSONBCompat, nullable=True)
    adjustments = Column(JSONBCompat, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
