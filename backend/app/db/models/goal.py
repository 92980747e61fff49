"""Goal ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text, func, text as sa_text
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base
from app.db.types import JSONBCompat


class Goal(Base):
    __tablename__ = "goals"
    __table_args__ = (
        Index("ix_goals_user_id", "user_id"),
        Index("ix_goals_status", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    original_goal = Column(Text, nullable=False)
    parsed_deadline = Column(Text, nullable=False, server_default=sa_text("'not specified'"))
    subject = Column(Text, nullable=False)
    complexity = Column(String(20), nullable=False, server_default=sa_text("'medium'"))
    recommended_approach = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, server_default=sa_text("'active'"))
    # Column named "metadata" but attribute renamed to avoid Base.metadata collisions.
    metadata_json = Column("metadata", JSONBCompat, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
