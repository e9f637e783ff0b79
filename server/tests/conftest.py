"""Shared pytest fixtures: in-memory DB, test users, GPS points."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import GpsPoint, User


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test."""
    # StaticPool: sessions opened by background jobs see the same database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    """Provide a DB session, closed after each test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_user(db):
    """Create a test user."""
    user = User(username="testuser", email="test@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def other_user(db):
    user = User(username="otheruser", email="other@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def add_points(db):
    """Store fixture point dicts as GPS points for a user."""

    def _add(user_id, points):
        for pt in points:
            db.add(GpsPoint(
                user_id=user_id,
                latitude=pt["latitude"],
                longitude=pt["longitude"],
                accuracy=pt.get("accuracy"),
                velocity=pt.get("velocity"),
                timestamp=pt["timestamp"],
                source="test",
            ))
        db.commit()

    return _add


@pytest.fixture
def populated_user(db, test_user, add_points):
    """A user populated with the full GPS trace fixture data."""
    from tests.gps_test_fixtures import GPS_TRACE

    add_points(test_user.id, GPS_TRACE)
    return test_user
