"""Resolve a coordinate to a display name for stay assembly.

Order: the user's favorites, then the spatial geocoding cache, then the
provider chain. A total provider failure yields a name built from the raw
coordinates; resolution never raises for provider trouble.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

import geocoding_cache
from errors import ProviderUnavailable
from geo import haversine_m
from geocoding_providers import GeocodingProviderChain
from models import Favorite

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TOLERANCE_M = float(os.environ.get("GEOCODING_CACHE_TOLERANCE_M", "25"))
FALLBACK_PROVIDER_NAME = "fallback-error"


def fallback_name(lat: float, lon: float) -> str:
    return "Location unavailable (%.6f, %.6f)" % (lat, lon)


@dataclass(frozen=True)
class ResolvedLocation:
    name: str
    geocoding_id: Optional[int] = None
    favorite_id: Optional[int] = None
    provider_name: Optional[str] = None


class GeocodingService:
    def __init__(self, db: Session, chain: GeocodingProviderChain, tolerance_m: float = DEFAULT_CACHE_TOLERANCE_M):
        self.db = db
        self.chain = chain
        self.tolerance_m = tolerance_m

    def resolve(self, user_id: Optional[int], lat: float, lon: float) -> ResolvedLocation:
        cached = geocoding_cache.find_nearby(self.db, user_id, lat, lon, self.tolerance_m)
        if cached is not None:
            return ResolvedLocation(cached.display_name, geocoding_id=cached.id, provider_name=cached.provider_name)

        try:
            result = self.chain.reverse_geocode(lat, lon)
        except ProviderUnavailable as e:
            logger.warning("All geocoders failed for (%.6f, %.6f): %s", lat, lon, e)
            return ResolvedLocation(fallback_name(lat, lon), provider_name=FALLBACK_PROVIDER_NAME)

        row = geocoding_cache.store_original(self.db, lat, lon, result)
        logger.debug("Geocoded (%.6f, %.6f) via %s -> %s", lat, lon, result.provider_name, result.display_name)
        return ResolvedLocation(row.display_name, geocoding_id=row.id, provider_name=row.provider_name)


class StayLocationResolver:
    """Names stays: a favorite whose radius contains the point, else geocoding."""

    def __init__(self, db: Session, geocoding: GeocodingService):
        self.db = db
        self.geocoding = geocoding

    def resolve(self, user_id: int, lat: float, lon: float) -> ResolvedLocation:
        favorites = self.db.query(Favorite).filter(Favorite.user_id == user_id).all()
        best, best_dist = None, float("inf")
        for fav in favorites:
            d = haversine_m(lat, lon, fav.latitude, fav.longitude)
            if d <= (fav.radius_m or 0) and d < best_dist:
                best, best_dist = fav, d
        if best is not None:
            return ResolvedLocation(best.name, favorite_id=best.id)
        return self.geocoding.resolve(user_id, lat, lon)


def build_resolver(db: Session, chain: GeocodingProviderChain) -> StayLocationResolver:
    return StayLocationResolver(db, GeocodingService(db, chain))
