"""Long-lived per-user behavioural memory."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, func, text as sa_text
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base
from app.db.types import JSONBCompat


class UserMemory(Base):
    __tablename__ = "user_memories"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    completion_rate = Column(Float, nullable=False, server_default=sa_text("0"))
    preferred_times = Column(JSONBCompat, nullable=False, default=list)
    patterns = Column(JSONBCompat, nullable=False, default=list)
    stats = Column(JSONBCompat, nullable=True)
    insights = Column(JSONBCompat, nullable=False, default=list)
    version = Column(Integer, nullable=False, server_default=sa_text("0"))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
