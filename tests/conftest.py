"""Shared pytest fixtures for RSVP Desk."""

from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from rsvpdesk import api, database, storage
from rsvpdesk.errors import NotificationError
from rsvpdesk.models import Base
from rsvpdesk.users import create_user
from rsvpdesk.utils import utctoday


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    database.SessionLocal.remove()
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield
    database.SessionLocal.remove()


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


class RecordingNotifier:
    """Stands in for SMTP; remembers every batch or fails on demand."""

    def __init__(self):
        self.sent: list[tuple[object, list[str]]] = []
        self.fail = False

    def send_invitation(self, invitation, recipients):
        if self.fail:
            raise NotificationError()
        self.sent.append((invitation, list(recipients)))

    @property
    def recipients(self) -> list[str]:
        return [email for _, batch in self.sent for email in batch]


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def make_user(session):
    counter = {"value": 0}

    def _make(*, role: str = "user", name: str | None = None, notify: bool = True):
        counter["value"] += 1
        number = counter["value"]
        user = create_user(
            session,
            name=name or f"Person {number}",
            email=f"person{number}@example.com",
            password="secret123",
            role=role,
            receive_email_notifications=notify,
        )
        session.commit()
        return user

    return _make


@pytest.fixture()
def user(make_user):
    return make_user(name="Regular User")


@pytest.fixture()
def other_user(make_user):
    return make_user(name="Other User")


@pytest.fixture()
def admin(make_user):
    return make_user(role="admin", name="Admin User")


@pytest.fixture()
def event_fields():
    def _fields(**overrides):
        fields = {
            "title": "Community Picnic",
            "description": "Bring a blanket",
            "date": utctoday() + timedelta(days=7),
            "time": "12:00",
            "location": "Riverside Park",
            "capacity": 10,
        }
        fields.update(overrides)
        return fields

    return _fields
