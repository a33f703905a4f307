"""
Shared fixtures for the membership registration test suite.

All tests run against an in-memory SQLite database shared through a
StaticPool, so every session (and every TestClient worker thread) sees the
same data. SQLite ignores FOR UPDATE, so the lock clause is checked by
compiling the statement for the PostgreSQL dialect.
"""

from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.pool import StaticPool

from database.connection import DatabaseSessionProvider, create_test_provider
from database.models import Base, StaffRole
from database.records import StaffRecord
from database.repositories import StaffRepository


class FixedClock:
    """Deterministic clock for transition timestamps."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def as_naive_utc(value: datetime) -> datetime:
    """SQLite returns naive datetimes; compare everything as naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def count_rows(provider: DatabaseSessionProvider, model) -> int:
    """Count rows of a model in a fresh session."""
    with provider.session_scope() as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def provider(engine) -> Generator[DatabaseSessionProvider, None, None]:
    """Initialized session provider bound to the test engine."""
    provider = create_test_provider(engine=engine)
    provider.init()
    yield provider


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def reviewer(provider) -> StaffRecord:
    """Active staff member acting on applications."""
    with provider.session_scope() as session:
        return StaffRepository(session).create(
            username="averdi",
            email="anna.verdi@example.org",
            full_name="Anna Verdi",
            role=StaffRole.ADMIN,
        )


@pytest.fixture
def colleague(provider) -> StaffRecord:
    """Second active staff member, target of assignments."""
    with provider.session_scope() as session:
        return StaffRepository(session).create(
            username="lbianchi",
            email="luca.bianchi@example.org",
            full_name="Luca Bianchi",
        )


@pytest.fixture
def inactive_staff(provider) -> StaffRecord:
    """Deactivated staff account."""
    with provider.session_scope() as session:
        return StaffRepository(session).create(
            username="mrossi",
            email="mario.rossi@example.org",
            full_name="Mario Rossi",
            is_active=False,
        )


@pytest.fixture
def applicant_data():
    """Factory for submission payloads."""
    def make(**overrides):
        data = {
            "email": "a@x.com",
            "fiscal_code": "ABC123",
            "full_name": "Giulia Neri",
            "phone": "+39 333 1234567",
            "city": "Bologna",
            "postal_code": "40100",
        }
        data.update(overrides)
        return data
    return make
