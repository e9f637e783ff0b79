"""Timeline algorithm settings: defaults, global properties, per-user overrides.

Resolution order is built-in default, then the global ``config`` table, then
the user's stored overrides. Each lookup returns a fresh frozen snapshot.
"""

import json
import logging
from dataclasses import dataclass, fields
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from errors import InvalidConfig
from models import Config, UserTimelineSettings
from timeline_types import utcnow
from validation import validate_timeline_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimelineConfig:
    staypoint_detection_algorithm: str = "enhanced"
    use_velocity_accuracy: bool = True
    staypoint_velocity_threshold: float = 2.0       # km/h
    staypoint_max_accuracy_threshold: float = 60.0  # metres
    staypoint_min_accuracy_ratio: float = 0.5
    staypoint_min_duration_minutes: float = 7.0
    trip_min_distance_meters: float = 50.0
    trip_min_duration_minutes: float = 1.0
    is_merge_enabled: bool = True
    merge_max_distance_meters: float = 150.0
    merge_max_time_gap_minutes: float = 10.0
    data_gap_threshold_seconds: float = 10800.0
    data_gap_min_duration_seconds: float = 1800.0

    def is_significant_gap(self, seconds: float) -> bool:
        """True when a hole in the data is long enough to show as a DataGap."""
        return seconds > self.data_gap_threshold_seconds and seconds >= self.data_gap_min_duration_seconds


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "on"):
        return True
    if text in ("false", "0", "no", "off"):
        return False
    raise InvalidConfig(f"Expected a boolean, got {value!r}")


def _parse_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidConfig(f"Expected a number, got {value!r}")


_PARSERS: dict[type, Callable[[Any], Any]] = {bool: _parse_bool, float: _parse_float, str: str}

# Setting key -> parser. Keys match TimelineConfig field names.
CONFIG_FIELDS: Mapping[str, Callable[[Any], Any]] = MappingProxyType({
    f.name: _PARSERS[f.type]
    for f in fields(TimelineConfig)
})

# Stored as strings in the config table, like every other global property
TIMELINE_DEFAULTS: Mapping[str, str] = MappingProxyType({
    f.name: str(f.default).lower() if isinstance(f.default, bool) else str(f.default)
    for f in fields(TimelineConfig)
})


def resolve_config(*layers: Optional[Mapping[str, Any]]) -> TimelineConfig:
    """Fold setting layers left to right over the defaults; unknown keys are ignored."""
    values: dict[str, Any] = {}
    for layer in layers:
        for key, raw in (layer or {}).items():
            parser = CONFIG_FIELDS.get(key)
            if parser is None:
                continue
            try:
                values[key] = parser(raw)
            except InvalidConfig as e:
                raise InvalidConfig(f"{key}: {e}")
    config = TimelineConfig(**values)
    validate_timeline_config(config)
    return config


def _global_properties(db: Session) -> dict[str, str]:
    rows = db.query(Config).filter(Config.key.in_(list(CONFIG_FIELDS.keys()))).all()
    return {row.key: row.value for row in rows}


def _user_overrides(db: Session, user_id: int) -> dict[str, Any]:
    row = db.query(UserTimelineSettings).filter(UserTimelineSettings.user_id == user_id).first()
    if row is None or not row.overrides:
        return {}
    return json.loads(row.overrides)


def get_effective_config(db: Session, user_id: int) -> TimelineConfig:
    return resolve_config(_global_properties(db), _user_overrides(db, user_id))


def save_user_overrides(db: Session, user_id: int, overrides: Mapping[str, Any]) -> TimelineConfig:
    """Validate and store a user's overrides, merged over any already stored.

    Raises InvalidConfig for unknown keys or values that break an invariant;
    nothing is written in that case.
    """
    unknown = sorted(set(overrides) - set(CONFIG_FIELDS))
    if unknown:
        raise InvalidConfig(f"Unknown timeline settings: {', '.join(unknown)}")

    merged = {**_user_overrides(db, user_id), **overrides}
    config = resolve_config(_global_properties(db), merged)

    row = db.query(UserTimelineSettings).filter(UserTimelineSettings.user_id == user_id).first()
    if row is None:
        row = UserTimelineSettings(user_id=user_id)
        db.add(row)
    row.overrides = json.dumps(merged)
    row.updated_at = utcnow()
    db.commit()
    logger.info("Saved timeline overrides for user=%d: %s", user_id, sorted(overrides))
    return config
