"""REST API endpoints: timelines, regeneration, geocoding edits, job status."""

import dataclasses
import datetime
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

import geocoding_cache
from config import save_user_overrides
from database import get_db
from errors import NotFound, PermissionDenied, PersistenceConflict, ProviderUnavailable, ValidationError
from geocoding import build_resolver
from geocoding_providers import GeocodingProviderChain, get_provider_chain
from invalidation import TimelineInvalidationService, get_invalidation_service
from models import User
from timeline_service import TimelineRequestRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class StayResponse(BaseModel):
    id: Optional[int] = None
    start_time: str
    end_time: str
    duration_seconds: float
    latitude: float
    longitude: float
    location_name: Optional[str] = None
    favorite_id: Optional[int] = None
    geocoding_id: Optional[int] = None


class TripResponse(BaseModel):
    id: Optional[int] = None
    start_time: str
    end_time: str
    duration_seconds: float
    distance_meters: float
    movement_type: str
    path: list[list[float]] = []


class DataGapResponse(BaseModel):
    id: Optional[int] = None
    start_time: str
    end_time: str
    duration_seconds: float


class TimelineResponse(BaseModel):
    user_id: int
    data_source: str
    last_updated: Optional[str] = None
    stays: list[StayResponse]
    trips: list[TripResponse]
    data_gaps: list[DataGapResponse]


class TimeRange(BaseModel):
    start: datetime.datetime
    end: datetime.datetime


class GeocodingUpdateRequest(BaseModel):
    display_name: str
    city: Optional[str] = None
    country: Optional[str] = None


class GeocodingLocationResponse(BaseModel):
    id: int
    user_id: Optional[int] = None
    original_id: Optional[int] = None
    request_latitude: float
    request_longitude: float
    display_name: str
    city: Optional[str] = None
    country: Optional[str] = None
    provider_name: Optional[str] = None

    class Config:
        from_attributes = True


class GeocodingUpdateResponse(BaseModel):
    location: GeocodingLocationResponse
    was_copied: bool
    original_id: Optional[int] = None


class ReconcileResponse(GeocodingUpdateResponse):
    changed: bool


class JobResponse(BaseModel):
    job_id: str
    user_id: int
    day: str
    status: str
    attempts: int
    error_message: Optional[str] = None
    finished_at: Optional[str] = None


class ConfigUpdateResponse(BaseModel):
    settings: dict[str, Any]
    jobs_queued: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _timeline_response(timeline) -> TimelineResponse:
    return TimelineResponse(
        user_id=timeline.user_id,
        data_source=timeline.data_source.value,
        last_updated=timeline.last_updated.isoformat() if timeline.last_updated else None,
        stays=[
            StayResponse(
                id=s.id,
                start_time=s.start.isoformat(),
                end_time=s.end.isoformat(),
                duration_seconds=s.duration_seconds,
                latitude=s.latitude,
                longitude=s.longitude,
                location_name=s.location_name,
                favorite_id=s.favorite_id,
                geocoding_id=s.geocoding_id,
            )
            for s in timeline.stays
        ],
        trips=[
            TripResponse(
                id=t.id,
                start_time=t.start.isoformat(),
                end_time=t.end.isoformat(),
                duration_seconds=t.duration_seconds,
                distance_meters=t.distance_meters,
                movement_type=t.movement_type,
                path=[[p.latitude, p.longitude] for p in t.path],
            )
            for t in timeline.trips
        ],
        data_gaps=[
            DataGapResponse(
                id=g.id,
                start_time=g.start.isoformat(),
                end_time=g.end.isoformat(),
                duration_seconds=g.duration_seconds,
            )
            for g in timeline.data_gaps
        ],
    )


def _require_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _job_response(job) -> JobResponse:
    return JobResponse(
        job_id=job.job_id,
        user_id=job.user_id,
        day=job.day_start.date().isoformat(),
        status=job.status,
        attempts=job.attempts,
        error_message=job.error_message,
        finished_at=job.finished_at.isoformat() if job.finished_at else None,
    )


def get_timeline_router(
    db: Session = Depends(get_db),
    chain: GeocodingProviderChain = Depends(get_provider_chain),
) -> TimelineRequestRouter:
    return TimelineRequestRouter(db, build_resolver(db, chain))


# ---------------------------------------------------------------------------
# Timeline endpoints
# ---------------------------------------------------------------------------

@router.get("/users/{user_id}/timeline", response_model=TimelineResponse)
def get_timeline(
    user_id: int,
    start: datetime.datetime,
    end: datetime.datetime,
    db: Session = Depends(get_db),
    timeline_router: TimelineRequestRouter = Depends(get_timeline_router),
):
    _require_user(db, user_id)
    try:
        timeline = timeline_router.get_timeline(user_id, start, end)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _timeline_response(timeline)


@router.post("/users/{user_id}/timeline/regenerate", response_model=TimelineResponse)
def regenerate_timeline(
    user_id: int,
    req: TimeRange,
    db: Session = Depends(get_db),
    timeline_router: TimelineRequestRouter = Depends(get_timeline_router),
):
    _require_user(db, user_id)
    try:
        timeline = timeline_router.force_regenerate(user_id, req.start, req.end)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceConflict as e:
        logger.warning("Regeneration conflict for user=%d: %s", user_id, e)
        raise HTTPException(status_code=409, detail=str(e))
    logger.info("User %d regenerated timeline %s .. %s", user_id, req.start, req.end)
    return _timeline_response(timeline)


@router.put("/users/{user_id}/timeline/config", response_model=ConfigUpdateResponse)
def update_timeline_config(
    user_id: int,
    overrides: dict[str, Any],
    db: Session = Depends(get_db),
    invalidation: TimelineInvalidationService = Depends(get_invalidation_service),
):
    _require_user(db, user_id)
    try:
        config = save_user_overrides(db, user_id, overrides)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    jobs = invalidation.on_config_changed(db, user_id)
    return ConfigUpdateResponse(settings=dataclasses.asdict(config), jobs_queued=len(jobs))


# ---------------------------------------------------------------------------
# Geocoding endpoints
# ---------------------------------------------------------------------------

@router.put("/users/{user_id}/geocoding/{location_id}", response_model=GeocodingUpdateResponse)
def update_geocoding(
    user_id: int,
    location_id: int,
    req: GeocodingUpdateRequest,
    db: Session = Depends(get_db),
):
    _require_user(db, user_id)
    try:
        result = geocoding_cache.update_location(db, user_id, location_id, req.display_name, req.city, req.country)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    return GeocodingUpdateResponse(
        location=GeocodingLocationResponse.model_validate(result.location),
        was_copied=result.was_copied,
        original_id=result.original_id,
    )


@router.post("/users/{user_id}/geocoding/{location_id}/reconcile", response_model=ReconcileResponse)
def reconcile_geocoding(
    user_id: int,
    location_id: int,
    db: Session = Depends(get_db),
    chain: GeocodingProviderChain = Depends(get_provider_chain),
):
    _require_user(db, user_id)
    try:
        result = geocoding_cache.reconcile_with_provider(db, chain, user_id, location_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ProviderUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return ReconcileResponse(
        location=GeocodingLocationResponse.model_validate(result.location),
        changed=result.changed,
        was_copied=result.was_copied,
        original_id=result.original_id,
    )


# ---------------------------------------------------------------------------
# Job status
# ---------------------------------------------------------------------------

@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, invalidation: TimelineInvalidationService = Depends(get_invalidation_service)):
    job = invalidation.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)
