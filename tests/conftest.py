import pytest
import os
import tempfile
from datetime import datetime, timedelta, timezone
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from account_security.models.base import Base
from account_security.models.user import User
from account_security.auth.security import PasswordHasher
from account_security.services.audit_logging_service import AuditLoggingService


class FixedClock:
    """Deterministic time source that tests move forward by hand."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 15, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAuditTrail:
    """In-memory audit collaborator."""

    def __init__(self):
        self.events = []

    def append(self, event):
        self.events.append(event)
        return event.event_id

    def actions(self):
        return [event.action.value for event in self.events]


class RecordingDelivery:
    """Delivery collaborator that remembers every code it was given."""

    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.sent = []

    def send(self, channel, destination, code, action_context=None):
        if self.error is not None:
            raise self.error
        self.sent.append({
            "channel": channel,
            "destination": destination,
            "code": code,
            "action_context": action_context,
        })
        return self.result

    @property
    def last_code(self):
        return self.sent[-1]["code"]


@pytest.fixture(scope="function")
def db_engine():
    """Create a temporary database for testing"""
    # Create a temporary file for the test database
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    test_database_url = f"sqlite:///{db_path}"

    engine = create_engine(test_database_url, connect_args={"check_same_thread": False, "timeout": 30})
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    engine.dispose()
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Session on the temporary database"""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def audit_trail():
    return RecordingAuditTrail()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def db_audit_trail(session_factory):
    """Audit service writing to the temporary database"""
    return AuditLoggingService(session_factory)


@pytest.fixture(scope="session")
def hasher():
    """Low-cost hasher so the suite stays fast"""
    return PasswordHasher(rounds=4)


@pytest.fixture
def test_user(test_db, hasher):
    """A subject with a phone number for SMS challenges"""
    user = User(
        email="manager@example.com",
        phone="+213555000000",
        hashed_password=hasher.hash("Tr7#mK9$qLp2"),
    )
    test_db.add(user)
    test_db.commit()
    test_db.refresh(user)
    return user
