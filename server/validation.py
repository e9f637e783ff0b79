"""Guards for timeline settings, input points, time ranges, and geocoding settings.

Each guard raises InvalidConfig / InvalidInput naming the offending field.
The heuristics at the bottom tell the detector whether a window has enough
trustworthy data to run automatic stay detection on.
"""

import datetime
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence

from errors import InvalidConfig, InvalidInput
from velocity import median_velocity

MAX_TIMELINE_DAYS = 366
MIN_POINTS_FOR_RELIABLE_DETECTION = 3
MIN_ACCURATE_POINTS_FOR_ANALYSIS = 2

STAYPOINT_ALGORITHMS = ("original", "enhanced")


# ---------------------------------------------------------------------------
# Primitive checks
# ---------------------------------------------------------------------------

def is_valid_coordinate(latitude: Optional[float], longitude: Optional[float]) -> bool:
    return (
        latitude is not None
        and longitude is not None
        and -90.0 <= latitude <= 90.0
        and -180.0 <= longitude <= 180.0
    )


def is_between_inclusive(value: float, low: float, high: float) -> bool:
    return low <= value <= high


def validate_algorithm_name(name: Optional[str], allowed: Sequence[str]) -> None:
    if not name or name not in allowed:
        raise InvalidConfig(f"Unknown algorithm {name!r}; expected one of {', '.join(allowed)}")


def validate_user_id(user_id) -> None:
    if user_id is None or isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
        raise InvalidInput(f"Invalid user id: {user_id!r}")


# ---------------------------------------------------------------------------
# Timeline configuration
# ---------------------------------------------------------------------------

_NON_NEGATIVE_FIELDS = {
    "staypoint_velocity_threshold": "Stay point velocity threshold",
    "staypoint_min_duration_minutes": "Stay point minimum duration",
    "trip_min_distance_meters": "Trip minimum distance",
    "trip_min_duration_minutes": "Trip minimum duration",
    "merge_max_distance_meters": "Merge maximum distance",
    "merge_max_time_gap_minutes": "Merge maximum time gap",
    "data_gap_threshold_seconds": "Data gap threshold",
    "data_gap_min_duration_seconds": "Data gap minimum duration",
}


def validate_timeline_config(config) -> None:
    if config is None:
        raise InvalidConfig("Timeline configuration must not be null")

    validate_algorithm_name(config.staypoint_detection_algorithm, STAYPOINT_ALGORITHMS)

    for attr, label in _NON_NEGATIVE_FIELDS.items():
        value = getattr(config, attr)
        if value is None or value < 0:
            raise InvalidConfig(f"{label} must be non-negative (got {value})")

    if config.staypoint_max_accuracy_threshold is None or config.staypoint_max_accuracy_threshold <= 0:
        raise InvalidConfig(
            f"Stay point max accuracy threshold must be positive (got {config.staypoint_max_accuracy_threshold})"
        )
    ratio = config.staypoint_min_accuracy_ratio
    if ratio is None or not is_between_inclusive(ratio, 0.0, 1.0):
        raise InvalidConfig(f"Stay point min accuracy ratio must be between 0 and 1 (got {ratio})")


# ---------------------------------------------------------------------------
# Input points and ranges
# ---------------------------------------------------------------------------

def validate_track_points(points) -> None:
    if points is None:
        raise InvalidInput("Track points must not be null")
    for index, point in enumerate(points):
        if point is None:
            raise InvalidInput(f"Track point {index} is null")
        if point.timestamp is None:
            raise InvalidInput(f"Track point {index} has no timestamp")
        if not is_valid_coordinate(point.latitude, point.longitude):
            raise InvalidInput(
                f"Track point {index} has invalid coordinates ({point.latitude}, {point.longitude})"
            )


def validate_time_range(start: Optional[datetime.datetime], end: Optional[datetime.datetime]) -> None:
    if start is None or end is None:
        raise InvalidInput("Start and end times are required")
    if start > end:
        raise InvalidInput(f"Start time {start.isoformat()} is after end time {end.isoformat()}")
    if end - start > datetime.timedelta(days=MAX_TIMELINE_DAYS):
        raise InvalidInput(f"Time range exceeds {MAX_TIMELINE_DAYS} days")


# ---------------------------------------------------------------------------
# Detection heuristics
# ---------------------------------------------------------------------------

def _is_accurate(point, max_accuracy: float) -> bool:
    return point.accuracy is None or point.accuracy <= max_accuracy


def passes_point_checks(point, config) -> bool:
    """Whether a single point is usable as a stay anchor."""
    if not is_valid_coordinate(point.latitude, point.longitude):
        return False
    if config.use_velocity_accuracy:
        if not _is_accurate(point, config.staypoint_max_accuracy_threshold):
            return False
        if point.velocity is not None and point.velocity > config.staypoint_velocity_threshold:
            return False
    return True


def accuracy_ratio(points, max_accuracy: float) -> float:
    if not points:
        return 0.0
    return sum(1 for p in points if _is_accurate(p, max_accuracy)) / len(points)


def passes_cluster_checks(cluster, config) -> bool:
    """Enhanced detection only trusts clusters that are mostly accurate and slow."""
    if not cluster:
        return False
    if accuracy_ratio(cluster, config.staypoint_max_accuracy_threshold) < config.staypoint_min_accuracy_ratio:
        return False
    return median_velocity(cluster) < config.staypoint_velocity_threshold or all(
        p.velocity is None for p in cluster
    )


def has_sufficient_data(points, config) -> bool:
    if len(points) < MIN_POINTS_FOR_RELIABLE_DETECTION:
        return False
    accurate = sum(1 for p in points if _is_accurate(p, config.staypoint_max_accuracy_threshold))
    return accurate >= MIN_ACCURATE_POINTS_FOR_ANALYSIS


# ---------------------------------------------------------------------------
# Geocoding settings (batch validation)
# ---------------------------------------------------------------------------

PRIMARY_PROVIDER_KEY = "geocoding.primary_provider"
FALLBACK_PROVIDER_KEY = "geocoding.fallback_provider"


def provider_enabled_key(provider: str) -> str:
    return f"geocoding.{provider}.enabled"


@dataclass
class ValidationContext:
    """Pending changes layered over persisted settings for one validation pass."""

    pending: Mapping[str, Any] = field(default_factory=dict)
    persisted: Mapping[str, Any] = field(default_factory=dict)

    def get_value(self, key: str) -> Any:
        if key in self.pending:
            return self.pending[key]
        return self.persisted.get(key)

    def is_enabled(self, provider: str) -> bool:
        value = self.get_value(provider_enabled_key(provider))
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)


def validate_geocoding_changes(
    changes: Mapping[str, Any], persisted: Mapping[str, Any], providers: Iterable[str],
) -> list[str]:
    """Return every error the batch would introduce; empty means it can be applied."""
    ctx = ValidationContext(pending=dict(changes), persisted=dict(persisted))
    providers = list(providers)
    errors = []

    primary = ctx.get_value(PRIMARY_PROVIDER_KEY)
    fallback = ctx.get_value(FALLBACK_PROVIDER_KEY) or None

    for provider in providers:
        key = provider_enabled_key(provider)
        if key not in changes or ctx.is_enabled(provider):
            continue
        if not any(ctx.is_enabled(other) for other in providers):
            errors.append(f"Cannot disable {provider}: at least one geocoding provider must stay enabled")
        if provider == primary:
            errors.append(f"Cannot disable {provider}: it is the primary provider")
        if provider == fallback:
            errors.append(f"Cannot disable {provider}: it is the fallback provider")

    if not primary:
        errors.append("Primary geocoding provider must be set")
    elif primary not in providers:
        errors.append(f"Unknown primary geocoding provider {primary!r}")
    elif not ctx.is_enabled(primary):
        errors.append(f"Primary geocoding provider {primary} is not enabled")

    if fallback:
        if fallback not in providers:
            errors.append(f"Unknown fallback geocoding provider {fallback!r}")
        elif fallback == primary:
            errors.append("Fallback geocoding provider must differ from the primary provider")
        elif not ctx.is_enabled(fallback):
            errors.append(f"Fallback geocoding provider {fallback} is not enabled")

    return errors
