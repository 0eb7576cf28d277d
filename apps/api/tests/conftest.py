"""
Pytest configuration and fixtures

Every test gets a fresh in-memory SQLite schema built from the models, so
nothing leaks between tests. Services commit freely; the schema is dropped
afterwards.
"""
import os
import sys

# Must be set before core.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["INTERNAL_API_TOKEN"] = "test-internal-token"
os.environ.setdefault("LOG_FORMAT", "text")

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from itertools import count  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from core.database import Base  # noqa: E402
import models  # noqa: E402,F401
from models import ContentItem, User  # noqa: E402
from services import settings_service  # noqa: E402
from services.messaging import set_messenger  # noqa: E402
from tests.helpers import RecordingMessenger  # noqa: E402

_telegram_ids = count(100000)


@pytest.fixture(scope="function")
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = Session()

    yield session

    session.close()
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    settings_service._default_cache.invalidate()
    yield
    settings_service._default_cache.invalidate()


@pytest.fixture
def messenger():
    recorder = RecordingMessenger()
    set_messenger(recorder)
    yield recorder
    set_messenger(None)


@pytest.fixture(autouse=True)
def enqueued(monkeypatch):
    """Day-1 hand-offs to the worker, captured instead of sent to the broker."""
    calls = []
    from services import payment_reconciler

    monkeypatch.setattr(payment_reconciler, "enqueue_first_content", lambda user_id: calls.append(user_id))
    return calls


@pytest.fixture
def client(db_session, messenger):
    from fastapi.testclient import TestClient

    from core.auth import get_messenger_dep
    from core.database import get_db
    from main import app

    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_messenger_dep] = lambda: messenger
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session):
    def _make(**overrides):
        values = {
            "telegram_id": next(_telegram_ids),
            "first_name": "Anna",
            "timezone": "UTC",
        }
        values.update(overrides)
        user = User(**values)
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def seed_content(db_session):
    def _seed(days=10):
        for day in range(1, days + 1):
            db_session.add(ContentItem(
                day=day,
                title=f"Principle {day}",
                declaration=f"Declaration {day}",
                description=f"Description {day}",
                task=f"Task {day}",
            ))
        db_session.commit()

    return _seed
