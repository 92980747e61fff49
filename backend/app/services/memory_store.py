"""Atomic read-modify-write access to per-user memory.

Reflections for one user are serialised by an in-process lock; the ``version`` column
rejects writers from other processes that read a stale copy.
"""
from __future__ import annotations

import logging
from threading import Lock
from typing import Callable, Tuple, TypeVar
from uuid import UUID
from weakref import WeakValueDictionary

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import MemoryConflict
from app.db.models.user_memory import UserMemory as UserMemoryRow
from app.services.plan_models import UserMemory

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Entries vanish once no caller holds the lock.
_locks: "WeakValueDictionary[UUID, Lock]" = WeakValueDictionary()
_registry_lock = Lock()


def user_lock(user_id: UUID) -> Lock:
    with _registry_lock:
        lock = _locks.get(user_id)
        if lock is None:
            lock = Lock()
            _locks[user_id] = lock
        return lock


def load_memory(db: Session, user_id: UUID) -> UserMemory:
    row = db.query(UserMemoryRow).filter(UserMemoryRow.user_id == user_id).one_or_none()
    if row is None:
        return UserMemory()
    db.refresh(row)
    return UserMemory.model_validate(
        {
            "completionRate": row.completion_rate or 0.0,
            "preferredTimes": row.preferred_times or [],
            "patterns": row.patterns or [],
            "stats": row.stats,
            "insights": row.insights or [],
            "version": row.version or 0,
        }
    )


def save_memory(db: Session, user_id: UUID, memory: UserMemory, *, expected_version: int) -> UserMemory:
    """Persist ``memory`` if the stored version still equals ``expected_version``."""
    payload = memory.to_payload()
    values = {
        "completion_rate": payload["completionRate"],
        "preferred_times": payload["preferredTimes"],
        "patterns": payload["patterns"],
        "stats": payload["stats"],
        "insights": payload["insights"],
        "version": expected_version + 1,
    }

    if expected_version == 0 and _row_missing(db, user_id):
        db.add(UserMemoryRow(user_id=user_id, **values))
        try:
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            raise MemoryConflict(f"Memory for user {user_id} was created concurrently") from exc
    else:
        result = db.execute(
            update(UserMemoryRow)
            .where(UserMemoryRow.user_id == user_id, UserMemoryRow.version == expected_version)
            .values(**values)
        )
        if result.rowcount != 1:
            raise MemoryConflict(f"Memory for user {user_id} changed since version {expected_version}")

    logger.debug("Saved memory for user %s at version %s", user_id, expected_version + 1)
    return memory.model_copy(update={"version": expected_version + 1})


def mutate_memory(
    db: Session,
    user_id: UUID,
    mutate: Callable[[UserMemory], Tuple[T, UserMemory]],
) -> Tuple[T, UserMemory]:
    """Run ``mutate`` on the current memory and store its result atomically.

    ``mutate`` returns ``(result, new_memory)``; the caller commits the session.
    """
    with user_lock(user_id):
        current = load_memory(db, user_id)
        result, updated = mutate(current)
        saved = save_memory(db, user_id, updated, expected_version=current.version)
        return result, saved


def _row_missing(db: Session, user_id: UUID) -> bool:
    return db.query(UserMemoryRow.id).filter(UserMemoryRow.user_id == user_id).first() is None
