"""Persistence of timeline events and access to raw GPS points.

Events are queried by ``(user_id, kind, time range)``. Every function takes
the session first and leaves committing to the caller, except ``commit``
which turns write conflicts into PersistenceConflict.
"""

import datetime
import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from errors import PersistenceConflict
from models import GpsPoint, TimelineDataGap, TimelineStay, TimelineTrip
from timeline_types import (
    DataGapEvent,
    DataSource,
    EventKind,
    MovementTimeline,
    StayEvent,
    TrackPoint,
    TripEvent,
    utcnow,
)

logger = logging.getLogger(__name__)

EVENT_MODELS = {
    EventKind.STAY: TimelineStay,
    EventKind.TRIP: TimelineTrip,
    EventKind.DATA_GAP: TimelineDataGap,
}


# ---------------------------------------------------------------------------
# Row <-> event conversion
# ---------------------------------------------------------------------------

def _path_to_json(path) -> list[dict]:
    return [
        {
            "timestamp": p.timestamp.isoformat(),
            "latitude": p.latitude,
            "longitude": p.longitude,
            "accuracy": p.accuracy,
            "velocity": p.velocity,
        }
        for p in path
    ]


def _path_from_json(raw) -> tuple:
    return tuple(
        TrackPoint(
            timestamp=datetime.datetime.fromisoformat(p["timestamp"]),
            latitude=p["latitude"],
            longitude=p["longitude"],
            accuracy=p.get("accuracy"),
            velocity=p.get("velocity"),
        )
        for p in (raw or [])
    )


def row_to_event(row):
    duration = row.end_time - row.start_time
    if isinstance(row, TimelineStay):
        return StayEvent(
            start=row.start_time,
            duration=duration,
            latitude=row.latitude,
            longitude=row.longitude,
            location_name=row.location_name,
            favorite_id=row.favorite_id,
            geocoding_id=row.geocoding_id,
            id=row.id,
        )
    if isinstance(row, TimelineTrip):
        return TripEvent(
            start=row.start_time,
            duration=duration,
            path=_path_from_json(row.path),
            distance_meters=row.distance_meters or 0.0,
            movement_type=row.movement_type or "UNKNOWN",
            id=row.id,
        )
    return DataGapEvent(start=row.start_time, duration=duration, id=row.id)


def _event_to_row(user_id: int, event):
    common = dict(user_id=user_id, start_time=event.start, end_time=event.end, last_updated=utcnow())
    if event.kind is EventKind.STAY:
        return TimelineStay(
            latitude=event.latitude,
            longitude=event.longitude,
            location_name=event.location_name,
            favorite_id=event.favorite_id,
            geocoding_id=event.geocoding_id,
            **common,
        )
    if event.kind is EventKind.TRIP:
        return TimelineTrip(
            path=_path_to_json(event.path),
            distance_meters=event.distance_meters,
            movement_type=event.movement_type,
            **common,
        )
    return TimelineDataGap(**common)


# ---------------------------------------------------------------------------
# Point source
# ---------------------------------------------------------------------------

def list_points(
    db: Session, user_id: int, start: datetime.datetime, end: datetime.datetime,
) -> list[TrackPoint]:
    rows = (
        db.query(GpsPoint)
        .filter(GpsPoint.user_id == user_id, GpsPoint.timestamp >= start, GpsPoint.timestamp <= end)
        .order_by(GpsPoint.timestamp.asc())
        .all()
    )
    return [
        TrackPoint(
            timestamp=r.timestamp,
            latitude=r.latitude,
            longitude=r.longitude,
            accuracy=r.accuracy,
            velocity=r.velocity,
        )
        for r in rows
    ]


def latest_gps_timestamp(
    db: Session, user_id: int, start: datetime.datetime, end: datetime.datetime,
) -> Optional[datetime.datetime]:
    return (
        db.query(func.max(GpsPoint.timestamp))
        .filter(GpsPoint.user_id == user_id, GpsPoint.timestamp >= start, GpsPoint.timestamp <= end)
        .scalar()
    )


# ---------------------------------------------------------------------------
# Event queries
# ---------------------------------------------------------------------------

def _collect(user_id: int, rows_by_kind: dict) -> MovementTimeline:
    timeline = MovementTimeline(user_id=user_id, data_source=DataSource.CACHED, last_updated=utcnow())
    for rows in rows_by_kind.values():
        for row in rows:
            timeline.add(row_to_event(row))
    timeline.sort()
    return timeline


def find_events_in_range(
    db: Session, user_id: int, start: datetime.datetime, end: datetime.datetime,
) -> MovementTimeline:
    """Events that start inside ``[start, end]``."""
    return _collect(user_id, {
        kind: db.query(model)
        .filter(model.user_id == user_id, model.start_time >= start, model.start_time <= end)
        .all()
        for kind, model in EVENT_MODELS.items()
    })


def find_events_with_boundary_expansion(
    db: Session, user_id: int, start: datetime.datetime, end: datetime.datetime,
) -> MovementTimeline:
    """Events starting inside the range plus any that began earlier and run into it."""
    return _collect(user_id, {
        kind: db.query(model)
        .filter(model.user_id == user_id, model.start_time <= end, model.end_time > start)
        .all()
        for kind, model in EVENT_MODELS.items()
    })


def has_complete_data(db: Session, user_id: int, start: datetime.datetime, end: datetime.datetime) -> bool:
    for model in EVENT_MODELS.values():
        hit = (
            db.query(model.id)
            .filter(model.user_id == user_id, model.start_time <= end, model.end_time > start)
            .first()
        )
        if hit is not None:
            return True
    return False


def find_latest_event_before(db: Session, user_id: int, ts: datetime.datetime):
    """The event with the latest end time among those that end at or before ``ts``."""
    best = None
    for model in EVENT_MODELS.values():
        row = (
            db.query(model)
            .filter(model.user_id == user_id, model.end_time <= ts)
            .order_by(model.end_time.desc())
            .first()
        )
        if row is not None and (best is None or row.end_time > best.end_time):
            best = row
    return row_to_event(best) if best is not None else None


def find_crossing_event(db: Session, user_id: int, ts: datetime.datetime):
    """The latest-starting event that began before ``ts`` and is still running at it."""
    best = None
    for model in EVENT_MODELS.values():
        row = (
            db.query(model)
            .filter(model.user_id == user_id, model.start_time < ts, model.end_time > ts)
            .order_by(model.start_time.desc())
            .first()
        )
        if row is not None and (best is None or row.start_time > best.start_time):
            best = row
    return row_to_event(best) if best is not None else None


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def delete_events_in_range(db: Session, user_id: int, start: datetime.datetime, end: datetime.datetime) -> int:
    """Delete every event that starts inside ``[start, end]``. Safe when nothing matches."""
    deleted = 0
    for model in EVENT_MODELS.values():
        deleted += (
            db.query(model)
            .filter(model.user_id == user_id, model.start_time >= start, model.start_time <= end)
            .delete(synchronize_session=False)
        )
    if deleted:
        logger.debug("Deleted %d timeline events for user=%d in [%s, %s]", deleted, user_id, start, end)
    return deleted


def persist(db: Session, user_id: int, event) -> int:
    row = _event_to_row(user_id, event)
    db.add(row)
    db.flush()
    return row.id


def update_event_end(db: Session, event, new_end: datetime.datetime) -> None:
    model = EVENT_MODELS[event.kind]
    db.query(model).filter(model.id == event.id).update(
        {model.end_time: new_end, model.last_updated: utcnow(), model.is_stale: False},
        synchronize_session=False,
    )


def commit(db: Session) -> None:
    try:
        db.commit()
    except (IntegrityError, OperationalError) as e:
        db.rollback()
        raise PersistenceConflict(f"Timeline write conflicted with another transaction: {e}") from e
