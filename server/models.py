"""SQLAlchemy models for users, GPS points, timeline events, and geocoding cache."""

import datetime
from sqlalchemy import Column, Integer, Float, String, DateTime, ForeignKey, Boolean, Text, JSON
from sqlalchemy.orm import relationship

from database import Base


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    is_active = Column(Boolean, default=True)

    points = relationship("GpsPoint", back_populates="owner", cascade="all, delete-orphan")
    stays = relationship("TimelineStay", cascade="all, delete-orphan")
    trips = relationship("TimelineTrip", cascade="all, delete-orphan")
    data_gaps = relationship("TimelineDataGap", cascade="all, delete-orphan")
    favorites = relationship("Favorite", cascade="all, delete-orphan")
    geocoding_copies = relationship("GeocodingLocation", cascade="all, delete-orphan")
    timeline_settings = relationship("UserTimelineSettings", cascade="all, delete-orphan", uselist=False)


class GpsPoint(Base):
    __tablename__ = "gps_points"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)   # metres
    velocity = Column(Float, nullable=True)   # km/h
    source = Column(String, nullable=True)
    received_at = Column(DateTime, default=_utcnow)

    owner = relationship("User", back_populates="points")


class Favorite(Base):
    """A named place the user saved; stays inside its radius take its name."""

    __tablename__ = "favorites"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    radius_m = Column(Float, default=50.0)
    created_at = Column(DateTime, default=_utcnow)


class GeocodingLocation(Base):
    """A coordinate -> display name fact.

    Rows with ``user_id`` NULL are shared originals fetched from a provider.
    Rows with a ``user_id`` are that user's private copy, created when they
    edit an original; ``original_id`` points back at the row it was copied from.
    """

    __tablename__ = "geocoding_locations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    original_id = Column(Integer, ForeignKey("geocoding_locations.id"), nullable=True)
    request_latitude = Column(Float, nullable=False, index=True)
    request_longitude = Column(Float, nullable=False, index=True)
    result_latitude = Column(Float, nullable=True)
    result_longitude = Column(Float, nullable=True)
    bbox_min_latitude = Column(Float, nullable=True)
    bbox_max_latitude = Column(Float, nullable=True)
    bbox_min_longitude = Column(Float, nullable=True)
    bbox_max_longitude = Column(Float, nullable=True)
    display_name = Column(Text, nullable=False)
    city = Column(String, nullable=True)
    country = Column(String, nullable=True)
    provider_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class TimelineStay(Base):
    __tablename__ = "timeline_stays"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_name = Column(Text, nullable=True)
    favorite_id = Column(Integer, ForeignKey("favorites.id"), nullable=True)
    geocoding_id = Column(Integer, ForeignKey("geocoding_locations.id"), nullable=True)
    is_stale = Column(Boolean, default=False)
    last_updated = Column(DateTime, default=_utcnow)


class TimelineTrip(Base):
    __tablename__ = "timeline_trips"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False, index=True)
    path = Column(JSON, nullable=True)
    distance_meters = Column(Float, default=0.0)
    movement_type = Column(String, default="UNKNOWN")
    is_stale = Column(Boolean, default=False)
    last_updated = Column(DateTime, default=_utcnow)


class TimelineDataGap(Base):
    __tablename__ = "timeline_data_gaps"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False, index=True)
    is_stale = Column(Boolean, default=False)
    last_updated = Column(DateTime, default=_utcnow)


class Config(Base):
    """Global key/value properties (timeline algorithm defaults)."""

    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


class UserTimelineSettings(Base):
    __tablename__ = "user_timeline_settings"

    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    overrides = Column(Text, nullable=True)  # JSON object of setting key -> value
    updated_at = Column(DateTime, default=_utcnow)
