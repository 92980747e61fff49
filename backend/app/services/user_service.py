"""Helpers for working with users."""
from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.models.user import User


def get_or_create_user(db: Session, user_id: UUID) -> User:
    """Fetch an existing user or create a new row safely."""
    user = db.get(User, user_id)
    if user:
        return user

    user = User(id=user_id)
    db.add(user)
    try:
        db.flush()
        return user
    except IntegrityError:
        db.rollback()
        existing = db.get(User, user_id)
        if existing:
            return existing
        raise


def touch_user(db: Session, user_id: UUID) -> User:
    """Ensure the user exists and record activity now."""
    user = get_or_create_user(db, user_id)
    user.last_active_at = datetime.now(timezone.utc)
    return user
