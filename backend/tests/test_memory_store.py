from __future__ import annotations

import gc
from uuid import uuid4

import pytest

from app.core.errors import MemoryConflict
from app.db.models.user import User
from app.services import memory_store
from app.services.memory_store import load_memory, mutate_memory, save_memory, user_lock
from app.services.plan_models import MemoryUpdate, TaskProgress
from app.services.reflection import update_memory


def _user(db):
    user = User(id=uuid4())
    db.add(user)
    db.commit()
    return user.id


def _learn(pattern: str):
    progress = [TaskProgress(task_id="t1", status="completed"), TaskProgress(task_id="t2", status="missed")]

    def _mutate(memory):
        updated = update_memory(memory, [MemoryUpdate(pattern=pattern, description="seen")], progress)
        return pattern, updated

    return _mutate


def test_missing_memory_loads_as_empty(db_session) -> None:
    memory = load_memory(db_session, uuid4())

    assert memory.version == 0
    assert memory.patterns == []
    assert memory.completion_rate == 0.0


def test_mutations_bump_version_and_persist(db_session) -> None:
    user_id = _user(db_session)

    result, first = mutate_memory(db_session, user_id, _learn("night_owl"))
    db_session.commit()
    _, second = mutate_memory(db_session, user_id, _learn("night_owl"))
    db_session.commit()

    assert result == "night_owl"
    assert first.version == 1
    assert second.version == 2
    stored = load_memory(db_session, user_id)
    assert stored.version == 2
    assert len(stored.patterns) == 1
    assert stored.patterns[0].occurrences == 2
    assert stored.completion_rate == 50.0
    assert stored.stats.total_tasks_attempted == 2


def test_stale_writer_is_rejected(db_session) -> None:
    user_id = _user(db_session)
    mutate_memory(db_session, user_id, _learn("a"))
    db_session.commit()
    stale = load_memory(db_session, user_id)
    mutate_memory(db_session, user_id, _learn("b"))
    db_session.commit()

    with pytest.raises(MemoryConflict):
        save_memory(db_session, user_id, stale, expected_version=stale.version)

    assert load_memory(db_session, user_id).version == 2


def test_first_write_conflicts_when_row_already_exists(db_session) -> None:
    user_id = _user(db_session)
    mutate_memory(db_session, user_id, _learn("a"))
    db_session.commit()

    with pytest.raises(MemoryConflict):
        save_memory(db_session, user_id, load_memory(db_session, user_id), expected_version=0)


def test_user_lock_is_shared_per_user() -> None:
    user_id = uuid4()

    assert user_lock(user_id) is user_lock(user_id)
    assert user_lock(user_id) is not user_lock(uuid4())


def test_unused_user_locks_are_released() -> None:
    user_id = uuid4()
    lock = user_lock(user_id)
    with lock:
        assert user_id in memory_store._locks

    del lock
    gc.collect()

    assert user_id not in memory_store._locks
