#!/usr/bin/env python3
"""Seed the database with GPS test fixture data for development and web UI testing.

Usage:
    python seed_test_data.py

This creates a demo user, stores the 50-point San Francisco commute trace
as raw GPS points, then runs the overnight processor for that day so the
timeline page has persisted stays and trips to show.
"""

from unittest.mock import Mock

from database import init_db, SessionLocal
from geocoding import build_resolver
from geocoding_providers import GeocodingResult
from models import GpsPoint, User
from timeline_service import build_processor
from timeline_types import end_of_day
from tests.gps_test_fixtures import COFFEE_SHOP_CENTER, GPS_TRACE, HOME_CENTER, OFFICE_CENTER, TRACE_DAY


def _canned(name, center):
    return GeocodingResult(
        display_name=name, latitude=center["latitude"], longitude=center["longitude"],
        city="San Francisco", country="United States", provider_name="seed",
    )


def seed():
    init_db()
    db = SessionLocal()

    existing = db.query(User).filter(User.username == "demo").first()
    if existing:
        print("Demo user already exists. Skipping seed.")
        db.close()
        return

    user = User(username="demo", email="demo@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    print(f"Created user: demo (id={user.id})")

    for pt in GPS_TRACE:
        db.add(GpsPoint(
            user_id=user.id,
            latitude=pt["latitude"],
            longitude=pt["longitude"],
            accuracy=pt.get("accuracy"),
            velocity=pt.get("velocity"),
            timestamp=pt["timestamp"],
            source="seed",
        ))
    db.commit()
    print(f"Inserted {len(GPS_TRACE)} GPS points")

    # Canned provider answers so seeding never hits a real geocoder
    chain = Mock()
    chain.reverse_geocode.side_effect = [
        _canned("742 Valencia St, Mission District, San Francisco, CA 94110", HOME_CENTER),
        _canned("Ritual Coffee Roasters, 1026 Valencia St, San Francisco, CA 94110", COFFEE_SHOP_CENTER),
        _canned("Mission District Office, 2100 18th St, San Francisco, CA 94107", OFFICE_CENTER),
    ]
    processor = build_processor(db, build_resolver(db, chain))
    timeline = processor.process_time_range(user.id, TRACE_DAY, end_of_day(TRACE_DAY))
    print(f"Detected {len(timeline.stays)} stays, {len(timeline.trips)} trips")

    for s in timeline.stays:
        print(f"  - {s.location_name or 'Unknown'}: {int(s.duration_seconds) // 60}m "
              f"({s.start.strftime('%H:%M')}-{s.end.strftime('%H:%M')})")

    db.close()
    print(f"\nDone! Open the timeline page and pick user demo, day {TRACE_DAY.date()}")


if __name__ == "__main__":
    seed()
