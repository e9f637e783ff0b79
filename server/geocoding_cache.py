"""Geocoding cache with copy-on-write edits.

Originals (``user_id`` NULL) are shared by every user and only change through
provider refreshes or an admin edit. A user who edits an original gets a
private copy and their stays are repointed to it; everyone else keeps seeing
the original.

Update functions return the affected row plus a list of stay commands.
``apply_commands`` runs those commands against the stays table.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from errors import NotFound, PermissionDenied
from geo import haversine_m
from geocoding_providers import GeocodingResult
from models import GeocodingLocation, TimelineStay

logger = logging.getLogger(__name__)

METERS_PER_DEGREE_LAT = 111_320.0


# ---------------------------------------------------------------------------
# Stay commands
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RepointStays:
    """Move one user's stays from one geocoding row to another."""

    user_id: int
    from_id: int
    to_id: int
    display_name: str


@dataclass(frozen=True)
class SyncStayNames:
    """Copy a display name onto stays; ``user_id`` None means every user."""

    geocoding_id: int
    display_name: str
    user_id: Optional[int] = None


StayCommand = Union[RepointStays, SyncStayNames]


@dataclass
class UpdateResult:
    location: GeocodingLocation
    was_copied: bool
    original_id: Optional[int] = None
    commands: list = field(default_factory=list)


@dataclass
class ReconciliationResult:
    location: GeocodingLocation
    changed: bool
    was_copied: bool = False
    original_id: Optional[int] = None
    commands: list = field(default_factory=list)


def apply_commands(db: Session, commands: list) -> int:
    """Run stay commands in order; returns the number of stay rows touched."""
    touched = 0
    for cmd in commands:
        if isinstance(cmd, RepointStays):
            count = (
                db.query(TimelineStay)
                .filter(TimelineStay.user_id == cmd.user_id, TimelineStay.geocoding_id == cmd.from_id)
                .update(
                    {TimelineStay.geocoding_id: cmd.to_id, TimelineStay.location_name: cmd.display_name},
                    synchronize_session=False,
                )
            )
            logger.info("Repointed %d stays of user=%d from geocoding %d to %d", count, cmd.user_id, cmd.from_id, cmd.to_id)
        elif isinstance(cmd, SyncStayNames):
            query = db.query(TimelineStay).filter(TimelineStay.geocoding_id == cmd.geocoding_id)
            if cmd.user_id is not None:
                query = query.filter(TimelineStay.user_id == cmd.user_id)
            count = query.update({TimelineStay.location_name: cmd.display_name}, synchronize_session=False)
            logger.debug("Synced name on %d stays for geocoding %d", count, cmd.geocoding_id)
        else:
            raise TypeError(f"Unknown stay command {cmd!r}")
        touched += count
    return touched


# ---------------------------------------------------------------------------
# Lookup and storage
# ---------------------------------------------------------------------------

def find_nearby(
    db: Session, user_id: Optional[int], lat: float, lon: float, tolerance_m: float,
) -> Optional[GeocodingLocation]:
    """Closest cached fact within ``tolerance_m``; the user's own copies win over originals."""
    dlat = tolerance_m / METERS_PER_DEGREE_LAT
    dlon = tolerance_m / (METERS_PER_DEGREE_LAT * max(math.cos(math.radians(lat)), 0.01))
    owner_filter = GeocodingLocation.user_id.is_(None)
    if user_id is not None:
        owner_filter = or_(owner_filter, GeocodingLocation.user_id == user_id)

    candidates = (
        db.query(GeocodingLocation)
        .filter(
            owner_filter,
            GeocodingLocation.request_latitude.between(lat - dlat, lat + dlat),
            GeocodingLocation.request_longitude.between(lon - dlon, lon + dlon),
        )
        .all()
    )
    best = None
    best_key = None
    for row in candidates:
        d = haversine_m(lat, lon, row.request_latitude, row.request_longitude)
        if d > tolerance_m:
            continue
        key = (row.user_id is None, d)
        if best_key is None or key < best_key:
            best, best_key = row, key
    return best


def _apply_result(row: GeocodingLocation, result: GeocodingResult):
    row.display_name = result.display_name
    row.result_latitude = result.latitude
    row.result_longitude = result.longitude
    row.city = result.city
    row.country = result.country
    row.provider_name = result.provider_name
    if result.bounding_box:
        (row.bbox_min_latitude, row.bbox_max_latitude,
         row.bbox_min_longitude, row.bbox_max_longitude) = result.bounding_box


def store_original(db: Session, lat: float, lon: float, result: GeocodingResult) -> GeocodingLocation:
    """Cache a provider answer as a shared original, updating one at the exact same coordinates."""
    row = (
        db.query(GeocodingLocation)
        .filter(
            GeocodingLocation.user_id.is_(None),
            GeocodingLocation.request_latitude == lat,
            GeocodingLocation.request_longitude == lon,
        )
        .first()
    )
    if row is None:
        row = GeocodingLocation(request_latitude=lat, request_longitude=lon)
        db.add(row)
    _apply_result(row, result)
    db.flush()
    return row


def _get(db: Session, location_id: int) -> GeocodingLocation:
    row = db.query(GeocodingLocation).filter(GeocodingLocation.id == location_id).first()
    if row is None:
        raise NotFound(f"Geocoding location {location_id} not found")
    return row


def _copy_for_user(db: Session, original: GeocodingLocation, user_id: int) -> GeocodingLocation:
    existing = (
        db.query(GeocodingLocation)
        .filter(GeocodingLocation.user_id == user_id, GeocodingLocation.original_id == original.id)
        .first()
    )
    if existing is not None:
        return existing
    copy = GeocodingLocation(
        user_id=user_id,
        original_id=original.id,
        request_latitude=original.request_latitude,
        request_longitude=original.request_longitude,
        result_latitude=original.result_latitude,
        result_longitude=original.result_longitude,
        bbox_min_latitude=original.bbox_min_latitude,
        bbox_max_latitude=original.bbox_max_latitude,
        bbox_min_longitude=original.bbox_min_longitude,
        bbox_max_longitude=original.bbox_max_longitude,
        display_name=original.display_name,
        city=original.city,
        country=original.country,
        provider_name=original.provider_name,
    )
    db.add(copy)
    db.flush()
    logger.info("Created geocoding copy %d of original %d for user=%d", copy.id, original.id, user_id)
    return copy


# ---------------------------------------------------------------------------
# Copy-on-write protocol
# ---------------------------------------------------------------------------

def handle_user_update(
    db: Session, user_id: int, location_id: int,
    display_name: str, city: Optional[str] = None, country: Optional[str] = None,
) -> UpdateResult:
    row = _get(db, location_id)

    if row.user_id == user_id:
        row.display_name, row.city, row.country = display_name, city, country
        db.flush()
        return UpdateResult(row, was_copied=False, commands=[SyncStayNames(row.id, display_name, user_id)])

    if row.user_id is not None:
        raise PermissionDenied(f"Geocoding location {location_id} belongs to another user")

    copy = _copy_for_user(db, row, user_id)
    copy.display_name, copy.city, copy.country = display_name, city, country
    db.flush()
    return UpdateResult(
        copy,
        was_copied=True,
        original_id=row.id,
        commands=[
            RepointStays(user_id, row.id, copy.id, display_name),
            SyncStayNames(copy.id, display_name, user_id),
        ],
    )


def handle_reconciliation(
    db: Session, user_id: int, location_id: int, fresh: GeocodingResult,
) -> ReconciliationResult:
    row = _get(db, location_id)
    if row.user_id is not None and row.user_id != user_id:
        raise PermissionDenied(f"Geocoding location {location_id} belongs to another user")

    if (row.display_name, row.city, row.country) == (fresh.display_name, fresh.city, fresh.country):
        return ReconciliationResult(row, changed=False)

    if row.user_id == user_id:
        _apply_result(row, fresh)
        db.flush()
        return ReconciliationResult(
            row, changed=True, commands=[SyncStayNames(row.id, fresh.display_name, user_id)],
        )

    copy = _copy_for_user(db, row, user_id)
    _apply_result(copy, fresh)
    db.flush()
    return ReconciliationResult(
        copy,
        changed=True,
        was_copied=True,
        original_id=row.id,
        commands=[
            RepointStays(user_id, row.id, copy.id, fresh.display_name),
            SyncStayNames(copy.id, fresh.display_name, user_id),
        ],
    )


def admin_update_original(
    db: Session, location_id: int,
    display_name: str, city: Optional[str] = None, country: Optional[str] = None,
) -> UpdateResult:
    """Edit a shared original in place; every user's stays pick up the new name."""
    row = _get(db, location_id)
    if row.user_id is not None:
        raise PermissionDenied(f"Geocoding location {location_id} is a user copy, not an original")
    row.display_name, row.city, row.country = display_name, city, country
    db.flush()
    return UpdateResult(row, was_copied=False, commands=[SyncStayNames(row.id, display_name)])


def update_location(
    db: Session, user_id: int, location_id: int,
    display_name: str, city: Optional[str] = None, country: Optional[str] = None,
) -> UpdateResult:
    """User edit: copy-on-write, run the stay commands, commit."""
    result = handle_user_update(db, user_id, location_id, display_name, city, country)
    apply_commands(db, result.commands)
    db.commit()
    return result


def reconcile_with_provider(db: Session, chain, user_id: int, location_id: int) -> ReconciliationResult:
    """Re-query the providers for a cached fact and fold in any change.

    ProviderUnavailable propagates; there is nothing to reconcile against.
    """
    row = _get(db, location_id)
    fresh = chain.reverse_geocode(row.request_latitude, row.request_longitude)
    result = handle_reconciliation(db, user_id, location_id, fresh)
    if result.changed:
        apply_commands(db, result.commands)
        db.commit()
    return result
