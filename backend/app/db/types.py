"""Column types shared by the planning tables."""
from __future__ import annotations

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON, TypeDecorator


class JSONBCompat(TypeDecorator):
    """Stores schedules, memory and audit payloads.

    Uses JSONB on PostgreSQL and the generic JSON type everywhere else, which keeps the
    in-memory SQLite test database working.
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())  # pragma: no cover - non-postgres dialects
