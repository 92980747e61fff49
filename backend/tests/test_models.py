from app.db.base import Base
from app.db import models  # noqa: F401  ensure models are loaded


def test_metadata_contains_core_tables() -> None:
    table_names = set(Base.metadata.tables.keys())
    expected = {
        "users",
        "goals",
        "tasks",
        "plans",
        "user_memories",
        "agent_actions_log",
    }

    assert expected.issubset(table_names)


def test_one_plan_and_one_memory_row_per_owner() -> None:
    plans = Base.metadata.tables["plans"]
    memories = Base.metadata.tables["user_memories"]

    assert any(index.unique and [col.name for col in index.columns] == ["goal_id"] for index in plans.indexes)
    assert memories.c.user_id.unique
    assert "version" in memories.c
