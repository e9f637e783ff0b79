"""Reverse-geocoding providers, each behind its own rate limit and circuit breaker.

Supported providers (closed set): Nominatim and Photon (OpenStreetMap data,
free), Google Maps and Mapbox (API key required). One primary and an optional
fallback are chosen by configuration.
"""

import enum
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

import requests

from errors import InvalidConfig, ProviderUnavailable
from validation import (
    FALLBACK_PROVIDER_KEY,
    PRIMARY_PROVIDER_KEY,
    provider_enabled_key,
    validate_geocoding_changes,
)

logger = logging.getLogger(__name__)

USER_AGENT = "TimelineServer/1.0"
REQUEST_TIMEOUT_S = 10
SLOT_WAIT_S = 15  # how long a caller queues for a free provider slot


class ProviderName(str, enum.Enum):
    NOMINATIM = "nominatim"
    GOOGLE_MAPS = "googlemaps"
    MAPBOX = "mapbox"
    PHOTON = "photon"


@dataclass(frozen=True)
class GeocodingResult:
    display_name: str
    latitude: float
    longitude: float
    city: Optional[str] = None
    country: Optional[str] = None
    bounding_box: Optional[tuple] = None  # (min_lat, max_lat, min_lon, max_lon)
    provider_name: str = ""


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

class CircuitBreaker:
    """Failure-ratio breaker over a rolling window of the last N calls.

    CLOSED: calls pass; opens once the window is full and the failure ratio
    reaches the limit. OPEN: calls are refused until the cooldown elapses.
    HALF_OPEN: a single trial call decides between CLOSED and OPEN.
    """

    CLOSED, OPEN, HALF_OPEN = "closed", "open", "half_open"

    def __init__(
        self, failure_ratio: float, request_volume: int, cooldown_s: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_ratio = failure_ratio
        self.request_volume = request_volume
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._lock = threading.Lock()
        self._window: deque = deque(maxlen=request_volume)
        self._state = self.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self):
        if self._state == self.OPEN and self._clock() - self._opened_at >= self.cooldown_s:
            self._state = self.HALF_OPEN
            self._trial_in_flight = False

    def allow_request(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            if self._state == self.CLOSED:
                return True
            if self._state == self.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def record_success(self):
        with self._lock:
            if self._state == self.HALF_OPEN:
                self._state = self.CLOSED
                self._window.clear()
            self._window.append(True)

    def record_failure(self):
        with self._lock:
            if self._state == self.HALF_OPEN:
                self._open()
                return
            self._window.append(False)
            if len(self._window) == self.request_volume:
                failures = sum(1 for ok in self._window if not ok)
                if failures / self.request_volume >= self.failure_ratio:
                    self._open()

    def _open(self):
        self._state = self.OPEN
        self._opened_at = self._clock()
        self._window.clear()


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class GeocodingProvider:
    """Base class: slot limiting, pacing, and breaker bookkeeping around ``_fetch``."""

    name: ProviderName
    max_concurrent = 1
    min_interval_s = 0.0
    breaker_failure_ratio = 0.5
    breaker_request_volume = 4
    breaker_cooldown_s = 30.0

    def __init__(self, enabled: bool = True, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.enabled = enabled
        self.base_url = base_url
        self.api_key = api_key
        self.breaker = CircuitBreaker(
            self.breaker_failure_ratio, self.breaker_request_volume, self.breaker_cooldown_s,
        )
        self._slots = threading.BoundedSemaphore(self.max_concurrent)
        self._pace_lock = threading.Lock()
        self._last_call = 0.0

    def is_enabled(self) -> bool:
        return self.enabled

    def reverse_geocode(self, lat: float, lon: float) -> GeocodingResult:
        if not self.is_enabled():
            raise ProviderUnavailable(f"{self.name.value} is disabled")
        if not self.breaker.allow_request():
            raise ProviderUnavailable(f"{self.name.value} circuit is open")
        if not self._slots.acquire(timeout=SLOT_WAIT_S):
            raise ProviderUnavailable(f"{self.name.value} is busy")
        try:
            self._pace()
            result = self._fetch(lat, lon)
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError) as e:
            self.breaker.record_failure()
            logger.warning("%s reverse geocode failed for (%.6f, %.6f): %s", self.name.value, lat, lon, e)
            raise ProviderUnavailable(f"{self.name.value} request failed: {e}") from e
        finally:
            self._slots.release()

        self.breaker.record_success()
        if result is None:
            raise ProviderUnavailable(f"{self.name.value} returned no result for ({lat:.6f}, {lon:.6f})")
        return result

    def _pace(self):
        if not self.min_interval_s:
            return
        with self._pace_lock:
            elapsed = time.monotonic() - self._last_call
            if elapsed < self.min_interval_s:
                time.sleep(self.min_interval_s - elapsed)
            self._last_call = time.monotonic()

    def _get(self, url: str, params: dict) -> dict:
        resp = requests.get(url, params=params, headers={"User-Agent": USER_AGENT}, timeout=REQUEST_TIMEOUT_S)
        resp.raise_for_status()
        return resp.json()

    def _fetch(self, lat: float, lon: float) -> Optional[GeocodingResult]:
        raise NotImplementedError


class NominatimProvider(GeocodingProvider):
    name = ProviderName.NOMINATIM
    max_concurrent = 1
    min_interval_s = 1.1  # OSM usage policy: max 1 req/s
    breaker_failure_ratio = 0.5
    breaker_request_volume = 4
    breaker_cooldown_s = 30.0

    def _fetch(self, lat, lon):
        data = self._get(
            f"{self.base_url or 'https://nominatim.openstreetmap.org'}/reverse",
            {"lat": lat, "lon": lon, "format": "jsonv2", "zoom": 18, "addressdetails": 1},
        )
        if not data or "error" in data:
            return None
        address = data.get("address") or {}
        bbox = data.get("boundingbox")
        return GeocodingResult(
            display_name=data["display_name"],
            latitude=float(data.get("lat", lat)),
            longitude=float(data.get("lon", lon)),
            city=address.get("city") or address.get("town") or address.get("village"),
            country=address.get("country"),
            bounding_box=tuple(float(v) for v in bbox) if bbox else None,
            provider_name=self.name.value,
        )


class PhotonProvider(GeocodingProvider):
    name = ProviderName.PHOTON
    max_concurrent = 2
    breaker_failure_ratio = 0.5
    breaker_request_volume = 4
    breaker_cooldown_s = 30.0

    def _fetch(self, lat, lon):
        data = self._get(f"{self.base_url or 'https://photon.komoot.io'}/reverse", {"lat": lat, "lon": lon})
        features = data.get("features") or []
        if not features:
            return None
        feature = features[0]
        props = feature.get("properties") or {}
        result_lon, result_lat = feature["geometry"]["coordinates"][:2]

        street = " ".join(v for v in (props.get("street"), props.get("housenumber")) if v)
        name = props.get("name")
        if name and street:
            display = f"{name} ({street})"
        else:
            display = name or street or props.get("city") or "Unknown location"

        extent = props.get("extent")  # [min_lon, max_lat, max_lon, min_lat]
        bbox = (extent[3], extent[1], extent[0], extent[2]) if extent and len(extent) == 4 else None
        return GeocodingResult(
            display_name=display,
            latitude=float(result_lat),
            longitude=float(result_lon),
            city=props.get("city"),
            country=props.get("country"),
            bounding_box=bbox,
            provider_name=self.name.value,
        )


class GoogleMapsProvider(GeocodingProvider):
    name = ProviderName.GOOGLE_MAPS
    max_concurrent = 5
    breaker_failure_ratio = 0.6
    breaker_request_volume = 10
    breaker_cooldown_s = 60.0

    def is_enabled(self) -> bool:
        return self.enabled and bool(self.api_key)

    def _fetch(self, lat, lon):
        data = self._get(
            self.base_url or "https://maps.googleapis.com/maps/api/geocode/json",
            {"latlng": f"{lat},{lon}", "key": self.api_key},
        )
        status = data.get("status")
        if status == "ZERO_RESULTS":
            return None
        if status != "OK":
            raise ValueError(f"Google Maps status {status}: {data.get('error_message', '')}")

        first = data["results"][0]
        components = first.get("address_components") or []

        def component(kind):
            return next((c["long_name"] for c in components if kind in c.get("types", [])), None)

        geometry = first.get("geometry") or {}
        location = geometry.get("location") or {}
        viewport = geometry.get("viewport")
        bbox = None
        if viewport:
            bbox = (
                viewport["southwest"]["lat"], viewport["northeast"]["lat"],
                viewport["southwest"]["lng"], viewport["northeast"]["lng"],
            )
        return GeocodingResult(
            display_name=first.get("formatted_address") or "Unknown location",
            latitude=float(location.get("lat", lat)),
            longitude=float(location.get("lng", lon)),
            city=component("locality") or component("postal_town"),
            country=component("country"),
            bounding_box=bbox,
            provider_name=self.name.value,
        )


class MapboxProvider(GeocodingProvider):
    name = ProviderName.MAPBOX
    max_concurrent = 3
    breaker_failure_ratio = 0.55
    breaker_request_volume = 6
    breaker_cooldown_s = 45.0

    def is_enabled(self) -> bool:
        return self.enabled and bool(self.api_key)

    def _fetch(self, lat, lon):
        base = self.base_url or "https://api.mapbox.com/geocoding/v5/mapbox.places"
        data = self._get(f"{base}/{lon},{lat}.json", {"access_token": self.api_key, "limit": 1})
        features = data.get("features") or []
        if not features:
            return None
        feature = features[0]
        text = feature.get("text") or feature.get("place_name") or "Unknown location"
        street = (feature.get("properties") or {}).get("address")
        if feature.get("address"):
            display = f"{feature['address']} {text}"
        elif street:
            display = f"{text} ({street})"
        else:
            display = text

        def context(prefix):
            return next(
                (c.get("text") for c in feature.get("context") or [] if c.get("id", "").startswith(prefix)),
                None,
            )

        result_lon, result_lat = feature["center"][:2]
        raw_bbox = feature.get("bbox")  # [min_lon, min_lat, max_lon, max_lat]
        bbox = (raw_bbox[1], raw_bbox[3], raw_bbox[0], raw_bbox[2]) if raw_bbox else None
        return GeocodingResult(
            display_name=display,
            latitude=float(result_lat),
            longitude=float(result_lon),
            city=context("place."),
            country=context("country."),
            bounding_box=bbox,
            provider_name=self.name.value,
        )


PROVIDER_CLASSES: Mapping[ProviderName, type] = {
    ProviderName.NOMINATIM: NominatimProvider,
    ProviderName.GOOGLE_MAPS: GoogleMapsProvider,
    ProviderName.MAPBOX: MapboxProvider,
    ProviderName.PHOTON: PhotonProvider,
}


# ---------------------------------------------------------------------------
# Settings and the failover chain
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GeocodingSettings:
    primary: ProviderName = ProviderName.NOMINATIM
    fallback: Optional[ProviderName] = None
    enabled: Mapping[ProviderName, bool] = field(default_factory=lambda: {
        ProviderName.NOMINATIM: True,
        ProviderName.GOOGLE_MAPS: False,
        ProviderName.MAPBOX: False,
        ProviderName.PHOTON: False,
    })
    base_urls: Mapping[ProviderName, str] = field(default_factory=dict)
    api_keys: Mapping[ProviderName, str] = field(default_factory=dict)

    def as_properties(self) -> dict[str, str]:
        props = {
            PRIMARY_PROVIDER_KEY: self.primary.value,
            FALLBACK_PROVIDER_KEY: self.fallback.value if self.fallback else "",
        }
        for name in ProviderName:
            props[provider_enabled_key(name.value)] = str(bool(self.enabled.get(name))).lower()
        return props


def _env_flag(name: str, default: bool) -> bool:
    return os.environ.get(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


def _provider_from_env(var: str, default: Optional[str]) -> Optional[ProviderName]:
    raw = os.environ.get(var, default or "").strip().lower()
    if not raw:
        return None
    try:
        return ProviderName(raw)
    except ValueError:
        raise InvalidConfig(f"{var}: unknown geocoding provider {raw!r}")


def load_geocoding_settings() -> GeocodingSettings:
    """Read provider settings from the environment and validate them as one batch."""
    settings = GeocodingSettings(
        primary=_provider_from_env("GEOCODING_PRIMARY_PROVIDER", ProviderName.NOMINATIM.value),
        fallback=_provider_from_env("GEOCODING_FALLBACK_PROVIDER", None),
        enabled={
            name: _env_flag(f"GEOCODING_{name.name}_ENABLED", name is ProviderName.NOMINATIM)
            for name in ProviderName
        },
        base_urls={
            name: os.environ[f"{name.name}_URL"]
            for name in ProviderName if os.environ.get(f"{name.name}_URL")
        },
        api_keys={
            ProviderName.GOOGLE_MAPS: os.environ.get("GOOGLE_MAPS_API_KEY", ""),
            ProviderName.MAPBOX: os.environ.get("MAPBOX_ACCESS_TOKEN", ""),
        },
    )
    validate_provider_setup(settings)
    return settings


def validate_provider_setup(settings: GeocodingSettings) -> None:
    props = settings.as_properties()
    errors = validate_geocoding_changes(props, {}, [name.value for name in ProviderName])
    if errors:
        raise InvalidConfig("; ".join(errors))


class GeocodingProviderChain:
    """Primary provider, then the fallback when one is configured and distinct."""

    def __init__(self, primary: GeocodingProvider, fallback: Optional[GeocodingProvider] = None):
        self.primary = primary
        self.fallback = fallback if fallback is not None and fallback is not primary else None

    @classmethod
    def from_settings(cls, settings: GeocodingSettings) -> "GeocodingProviderChain":
        def build(name: ProviderName) -> GeocodingProvider:
            return PROVIDER_CLASSES[name](
                enabled=bool(settings.enabled.get(name)),
                base_url=settings.base_urls.get(name),
                api_key=settings.api_keys.get(name),
            )

        primary = build(settings.primary)
        fallback = build(settings.fallback) if settings.fallback and settings.fallback != settings.primary else None
        return cls(primary, fallback)

    def enabled_providers(self) -> list[GeocodingProvider]:
        return [p for p in (self.primary, self.fallback) if p is not None and p.is_enabled()]

    def reverse_geocode(self, lat: float, lon: float) -> GeocodingResult:
        try:
            return self.primary.reverse_geocode(lat, lon)
        except ProviderUnavailable as e:
            if self.fallback is None:
                raise
            logger.warning("Primary geocoder failed (%s), trying %s", e, self.fallback.name.value)
        return self.fallback.reverse_geocode(lat, lon)


_chain: Optional[GeocodingProviderChain] = None
_chain_lock = threading.Lock()


def get_provider_chain() -> GeocodingProviderChain:
    """Process-wide chain so breakers and slot limits are shared by all requests."""
    global _chain
    with _chain_lock:
        if _chain is None:
            settings = load_geocoding_settings()
            _chain = GeocodingProviderChain.from_settings(settings)
            logger.info(
                "Geocoding: primary=%s fallback=%s",
                settings.primary.value, settings.fallback.value if settings.fallback else "-",
            )
        return _chain
