"""Tests for REST API endpoints using the ASGI test client."""

from unittest.mock import Mock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db as original_get_db
from errors import ProviderUnavailable
from geocoding_providers import GeocodingResult, get_provider_chain
from invalidation import TimelineInvalidationService, get_invalidation_service
from models import GeocodingLocation, GpsPoint, TimelineStay, User
from timeline_service import build_processor
from tests.gps_test_fixtures import GPS_TRACE, HOME_CENTER

DAY_START = "2024-01-15T00:00:00"
DAY_END = "2024-01-15T23:59:59.999999"


# ---------------------------------------------------------------------------
# Test setup: override get_db, the provider chain and the invalidation service
# ---------------------------------------------------------------------------

@pytest.fixture
def app_and_db():
    """Create a test FastAPI app with an in-memory database."""
    # Use StaticPool so all threads/connections share the same in-memory DB
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestSession = sessionmaker(bind=engine)

    def test_get_db():
        session = TestSession()
        try:
            yield session
        finally:
            session.close()

    chain = Mock()
    chain.reverse_geocode.side_effect = ProviderUnavailable("offline")
    invalidation = TimelineInvalidationService(TestSession, lambda db: build_processor(db))

    from api import router

    app = FastAPI()
    app.dependency_overrides[original_get_db] = test_get_db
    app.dependency_overrides[get_provider_chain] = lambda: chain
    app.dependency_overrides[get_invalidation_service] = lambda: invalidation
    app.include_router(router)

    # Seed two users; the first carries the commute trace
    session = TestSession()
    user = User(username="testuser", email="test@example.com")
    other = User(username="otheruser", email="other@example.com")
    session.add_all([user, other])
    session.commit()
    for pt in GPS_TRACE:
        session.add(GpsPoint(
            user_id=user.id,
            latitude=pt["latitude"],
            longitude=pt["longitude"],
            accuracy=pt["accuracy"],
            velocity=pt["velocity"],
            timestamp=pt["timestamp"],
        ))
    session.commit()
    ids = {"user": user.id, "other": other.id}
    session.close()

    client = TestClient(app)
    return client, ids, TestSession, chain, invalidation


@pytest.fixture
def client(app_and_db):
    return app_and_db[0]


@pytest.fixture
def ids(app_and_db):
    return app_and_db[1]


@pytest.fixture
def db(app_and_db):
    TestSession = app_and_db[2]
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def chain(app_and_db):
    return app_and_db[3]


@pytest.fixture
def invalidation(app_and_db):
    return app_and_db[4]


@pytest.fixture
def original(db):
    row = GeocodingLocation(
        request_latitude=HOME_CENTER["latitude"], request_longitude=HOME_CENTER["longitude"],
        display_name="19 Dolores St", city="San Francisco", country="United States",
        provider_name="nominatim",
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


# ---------------------------------------------------------------------------
# Timeline endpoints
# ---------------------------------------------------------------------------

class TestTimelineEndpoints:
    def test_past_day(self, client, ids):
        resp = client.get(f"/api/users/{ids['user']}/timeline", params={"start": DAY_START, "end": DAY_END})
        assert resp.status_code == 200
        data = resp.json()
        assert data["data_source"] == "CACHED"
        assert len(data["stays"]) == 3
        assert len(data["trips"]) == 2
        assert data["data_gaps"] == []
        assert data["trips"][0]["movement_type"] == "WALK"
        assert len(data["trips"][0]["path"]) > 2

    def test_stays_named_from_coordinates_when_geocoders_are_down(self, client, ids):
        resp = client.get(f"/api/users/{ids['user']}/timeline", params={"start": DAY_START, "end": DAY_END})
        stay = resp.json()["stays"][0]
        assert stay["location_name"].startswith("Location unavailable (37.76")
        assert stay["geocoding_id"] is None

    def test_stays_use_cached_geocoding(self, client, ids, original):
        resp = client.get(f"/api/users/{ids['user']}/timeline", params={"start": DAY_START, "end": DAY_END})
        stay = resp.json()["stays"][0]
        assert stay["location_name"] == "19 Dolores St"
        assert stay["geocoding_id"] == original.id

    def test_start_after_end_is_400(self, client, ids):
        resp = client.get(f"/api/users/{ids['user']}/timeline", params={"start": DAY_END, "end": DAY_START})
        assert resp.status_code == 400

    def test_range_too_long_is_400(self, client, ids):
        resp = client.get(
            f"/api/users/{ids['user']}/timeline",
            params={"start": "2023-01-01T00:00:00", "end": "2024-06-01T00:00:00"},
        )
        assert resp.status_code == 400
        assert "366 days" in resp.json()["detail"]

    def test_unknown_user_is_404(self, client):
        resp = client.get("/api/users/999/timeline", params={"start": DAY_START, "end": DAY_END})
        assert resp.status_code == 404

    def test_regenerate(self, client, ids, db):
        client.get(f"/api/users/{ids['user']}/timeline", params={"start": DAY_START, "end": DAY_END})
        resp = client.post(
            f"/api/users/{ids['user']}/timeline/regenerate", json={"start": DAY_START, "end": DAY_END},
        )
        assert resp.status_code == 200
        assert len(resp.json()["stays"]) == 3
        assert db.query(TimelineStay).count() == 3

    def test_update_config_queues_regeneration(self, client, ids, invalidation):
        client.get(f"/api/users/{ids['user']}/timeline", params={"start": DAY_START, "end": DAY_END})
        resp = client.put(
            f"/api/users/{ids['user']}/timeline/config", json={"staypoint_min_duration_minutes": 10},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["settings"]["staypoint_min_duration_minutes"] == 10.0
        assert data["jobs_queued"] == 1
        assert invalidation.store.stats()["QUEUED"] == 1

    def test_invalid_config_is_400(self, client, ids):
        resp = client.put(f"/api/users/{ids['user']}/timeline/config", json={"staypoint_min_accuracy_ratio": 3})
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Geocoding endpoints
# ---------------------------------------------------------------------------

class TestGeocodingEndpoints:
    def test_edit_original_creates_copy(self, client, ids, original, db):
        resp = client.put(
            f"/api/users/{ids['user']}/geocoding/{original.id}",
            json={"display_name": "My Home", "city": "San Francisco"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["was_copied"] is True
        assert data["original_id"] == original.id
        assert data["location"]["user_id"] == ids["user"]
        assert data["location"]["display_name"] == "My Home"

        db.refresh(original)
        assert original.display_name == "19 Dolores St"

    def test_edit_other_users_copy_is_403(self, client, ids, original):
        copy_id = client.put(
            f"/api/users/{ids['user']}/geocoding/{original.id}", json={"display_name": "My Home"},
        ).json()["location"]["id"]
        resp = client.put(f"/api/users/{ids['other']}/geocoding/{copy_id}", json={"display_name": "Mine"})
        assert resp.status_code == 403

    def test_edit_missing_location_is_404(self, client, ids):
        resp = client.put(f"/api/users/{ids['user']}/geocoding/12345", json={"display_name": "Nowhere"})
        assert resp.status_code == 404

    def test_reconcile_without_providers_is_503(self, client, ids, original):
        resp = client.post(f"/api/users/{ids['user']}/geocoding/{original.id}/reconcile")
        assert resp.status_code == 503

    def test_reconcile_with_new_answer(self, client, ids, original, chain):
        chain.reverse_geocode.side_effect = None
        chain.reverse_geocode.return_value = GeocodingResult(
            display_name="Dolores Park", latitude=HOME_CENTER["latitude"], longitude=HOME_CENTER["longitude"],
            city="San Francisco", country="United States", provider_name="photon",
        )
        resp = client.post(f"/api/users/{ids['user']}/geocoding/{original.id}/reconcile")
        assert resp.status_code == 200
        data = resp.json()
        assert data["changed"] is True
        assert data["was_copied"] is True
        assert data["location"]["display_name"] == "Dolores Park"


# ---------------------------------------------------------------------------
# Job status
# ---------------------------------------------------------------------------

class TestJobEndpoints:
    def test_unknown_job_is_404(self, client):
        assert client.get("/api/jobs/does-not-exist").status_code == 404

    def test_job_status(self, client, ids, invalidation):
        client.get(f"/api/users/{ids['user']}/timeline", params={"start": DAY_START, "end": DAY_END})
        client.put(f"/api/users/{ids['user']}/timeline/config", json={"is_merge_enabled": False})
        job_id = next(iter(invalidation.store._jobs))

        resp = client.get(f"/api/jobs/{job_id}")
        assert resp.status_code == 200
        assert resp.json()["status"] == "QUEUED"
        assert resp.json()["day"] == "2024-01-15"

        invalidation.process_pending()
        assert client.get(f"/api/jobs/{job_id}").json()["status"] == "COMPLETED"
