"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from beacon.database.models import Base
from beacon.services.event_service import EventAdmissionService


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Beacon tables.

    Uses StaticPool so all threads share the same in-memory database
    (background flushes run through ``asyncio.to_thread``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session for assertions against the test database."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def admission(db_engine: Engine) -> EventAdmissionService:
    """Admission service with no scheduler attached (tests rebuild by hand)."""
    return EventAdmissionService(db_engine)
