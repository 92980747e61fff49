from __future__ import annotations

from typing import Callable, List, Sequence, Union

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.errors import AllBackendsExhausted
from app.db.base import Base
from app.db import models  # noqa: F401  ensure models are loaded
from app.db.deps import get_db
from app.llm.client import get_text_generator
from app.main import app


class FailingGenerator:
    """Generator stand-in whose every call exhausts all backends."""

    def __init__(self) -> None:
        self.calls = 0

    def generate(self, prompt: str, **kwargs) -> str:
        self.calls += 1
        raise AllBackendsExhausted("All models failed. Last error: backend unavailable")


class ScriptedGenerator:
    """Replays canned responses in order; exceptions in the script are raised."""

    def __init__(self, responses: Sequence[Union[str, Exception]]) -> None:
        self.responses: List[Union[str, Exception]] = list(responses)
        self.prompts: List[str] = []
        self.kwargs: List[dict] = []

    def generate(self, prompt: str, **kwargs) -> str:
        self.prompts.append(prompt)
        self.kwargs.append(kwargs)
        if not self.responses:
            raise AllBackendsExhausted("script exhausted")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture()
def failing_generator() -> FailingGenerator:
    return FailingGenerator()


@pytest.fixture()
def scripted_generator() -> Callable[[Sequence[Union[str, Exception]]], ScriptedGenerator]:
    return ScriptedGenerator


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):  # pragma: no cover - sqlite setup
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    yield TestingSessionLocal
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory, failing_generator):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_text_generator] = lambda: failing_generator
    with TestClient(app) as test_client:
        yield test_client, session_factory
    app.dependency_overrides.clear()
