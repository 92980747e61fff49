"""Planned task ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, func, text as sa_text
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base
from app.db.types import JSONBCompat


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_user_id", "user_id"),
        Index("ix_tasks_goal_id", "goal_id"),
        Index("ix_tasks_status", "status"),
    )

    # Primary key reuses the id minted during decomposition so schedules and progress agree.
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    goal_id = Column(UUID(as_uuid=True), ForeignKey("goals.id", ondelete="CASCADE"), nullable=False)
    description = Column(Text, nullable=False)
    estimated_hours = Column(Float, nullable=False)
    priority = Column(String(20), nullable=False, server_default=sa_text("'medium'"))
    order = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, server_default=sa_text("'pending'"))
    priority_score = Column(Integer, nullable=True)
    score_reasoning = Column(Text, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    completed_late = Column(Boolean, nullable=False, server_default=sa_text("false"))
    metadata_json = Column("metadata", JSONBCompat, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
