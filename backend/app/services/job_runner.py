"""Batch jobs for overdue sweeps and scheduled reflections."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.errors import MemoryConflict
from app.db.models.goal import Goal
from app.llm.client import TextGenerator
from app.services.orchestrator import PlanningOrchestrator
from app.services.plan_service import NoProgressError, has_new_outcomes, mark_overdue_tasks, trigger_reflection

logger = logging.getLogger(__name__)


@dataclass
class JobRunResult:
    users_processed: int
    reflections_written: int
    goals_skipped: int = 0


def run_overdue_sweep(db: Session, *, today: Optional[date] = None) -> int:
    return mark_overdue_tasks(db, today=today)


def run_reflection_for_user(
    db: Session,
    user_id: UUID,
    generator: TextGenerator,
    *,
    force: bool = False,
) -> tuple[int, int]:
    """Reflect every active goal of ``user_id`` that has new outcomes.

    Returns ``(reflections_written, goals_skipped)``.
    """
    orchestrator = PlanningOrchestrator(generator)
    written = 0
    skipped = 0
    goals = db.query(Goal).filter(Goal.user_id == user_id, Goal.status == "active").all()
    for goal in goals:
        if not force and not has_new_outcomes(db, goal):
            skipped += 1
            continue
        try:
            trigger_reflection(db, orchestrator, goal=goal, user_id=user_id)
        except NoProgressError:
            skipped += 1
            continue
        except MemoryConflict:
            db.rollback()
            logger.warning("Memory conflict reflecting goal %s; will retry next run", goal.id)
            skipped += 1
            continue
        written += 1
    return written, skipped


def run_reflection_for_all_users(
    db: Session,
    generator: TextGenerator,
    *,
    user_ids: Optional[Iterable[UUID]] = None,
    force: bool = False,
) -> JobRunResult:
    ids = _normalize_user_ids(user_ids, db)
    users_processed = 0
    reflections_written = 0
    skipped = 0
    for uid in ids:
        try:
            written, goal_skips = run_reflection_for_user(db, uid, generator, force=force)
        except Exception:  # pragma: no cover
            db.rollback()
            logger.exception("Reflection job failed for user %s", uid)
            continue
        users_processed += 1
        reflections_written += written
        skipped += goal_skips
    return JobRunResult(
        users_processed=users_processed,
        reflections_written=reflections_written,
        goals_skipped=skipped,
    )


def _active_user_ids(db: Session) -> List[UUID]:
    rows = db.query(Goal.user_id).filter(Goal.status == "active").distinct().all()
    return [row[0] for row in rows]


def _normalize_user_ids(user_ids: Optional[Iterable[UUID]], db: Session) -> List[UUID]:
    if user_ids is None:
        return _active_user_ids(db)
    return list(dict.fromkeys(user_ids))
