"""Stay / trip / data-gap detection over a user's raw GPS points.

Pipeline for one window:
1. Load points and drop fixes with impossible coordinates
2. Split the stream wherever the data goes silent for longer than the gap threshold
3. Grow stay clusters around anchor points; whatever lies between stays is movement
4. Turn movement runs into trips, dropping ones too short to matter
5. Optionally merge consecutive stays at the same place
6. Name each stay (favorite first, then reverse geocoding)
"""

import datetime
import logging
from typing import Optional, Protocol, Sequence

from sqlalchemy.orm import Session

import repository
from config import TimelineConfig, get_effective_config
from geo import find_cluster_end_index, haversine_m, path_distance_m, weighted_centroid
from timeline_types import DataGapEvent, DataSource, MovementTimeline, StayEvent, TrackPoint, TripEvent, utcnow
from validation import has_sufficient_data, is_valid_coordinate, passes_cluster_checks, passes_point_checks
from velocity import calculate_speeds, filter_unrealistic_speeds

logger = logging.getLogger(__name__)

MAX_REASONABLE_SPEED_KMH = 250.0
WALK_MAX_MEDIAN_KMH = 7.0
BICYCLE_MAX_MEDIAN_KMH = 25.0


class LocationResolver(Protocol):
    def resolve(self, user_id: int, latitude: float, longitude: float): ...


# ---------------------------------------------------------------------------
# Segmenting on data gaps
# ---------------------------------------------------------------------------

def split_on_gaps(
    points: Sequence[TrackPoint], config: TimelineConfig,
) -> tuple[list[list[TrackPoint]], list[DataGapEvent]]:
    """Cut the stream at silences longer than the gap threshold.

    Returns the contiguous segments and a DataGap for each significant silence.
    """
    if not points:
        return [], []

    segments = [[points[0]]]
    gaps = []
    for prev, cur in zip(points, points[1:]):
        silence = (cur.timestamp - prev.timestamp).total_seconds()
        if silence > config.data_gap_threshold_seconds:
            if config.is_significant_gap(silence):
                gaps.append(DataGapEvent.spanning(prev.timestamp, cur.timestamp))
            segments.append([cur])
        else:
            segments[-1].append(cur)
    return segments, gaps


# ---------------------------------------------------------------------------
# Stay and trip detection inside one segment
# ---------------------------------------------------------------------------

def _is_stay(cluster: Sequence[TrackPoint], config: TimelineConfig) -> bool:
    if len(cluster) < 2:
        return False
    duration = (cluster[-1].timestamp - cluster[0].timestamp).total_seconds()
    if duration < config.staypoint_min_duration_minutes * 60:
        return False
    if config.staypoint_detection_algorithm == "enhanced":
        return passes_cluster_checks(cluster, config)
    return True


def classify_movement(path: Sequence[TrackPoint]) -> str:
    speeds = filter_unrealistic_speeds(calculate_speeds(path), MAX_REASONABLE_SPEED_KMH)
    if not speeds:
        return "UNKNOWN"
    speeds.sort()
    n = len(speeds)
    median = speeds[n // 2] if n % 2 else (speeds[n // 2 - 1] + speeds[n // 2]) / 2.0
    if median <= WALK_MAX_MEDIAN_KMH:
        return "WALK"
    if median <= BICYCLE_MAX_MEDIAN_KMH:
        return "BICYCLE"
    return "CAR"


def _build_trip(path: Sequence[TrackPoint], config: TimelineConfig) -> Optional[TripEvent]:
    if len(path) < 2:
        return None
    duration = path[-1].timestamp - path[0].timestamp
    distance = path_distance_m(path)
    if distance < config.trip_min_distance_meters:
        return None
    if duration.total_seconds() < config.trip_min_duration_minutes * 60:
        return None
    return TripEvent(
        start=path[0].timestamp,
        duration=duration,
        path=tuple(path),
        distance_meters=distance,
        movement_type=classify_movement(path),
    )


def detect_segment(points: Sequence[TrackPoint], config: TimelineConfig) -> tuple[list[StayEvent], list[TripEvent]]:
    stays = []
    stay_spans = []  # (first index, last index) of each stay cluster
    i = 0
    while i < len(points):
        if not passes_point_checks(points[i], config):
            i += 1
            continue
        j = find_cluster_end_index(points, i, config)
        cluster = points[i:j]
        if _is_stay(cluster, config):
            lat, lon = weighted_centroid(cluster)
            stays.append(StayEvent.spanning(cluster[0].timestamp, cluster[-1].timestamp, latitude=lat, longitude=lon))
            stay_spans.append((i, j - 1))
            i = j
        else:
            i += 1

    # Movement runs: from the last point of one stay to the first point of the next,
    # plus the leading and trailing stretches of the segment.
    bounds = [0] + [idx for span in stay_spans for idx in span] + [len(points) - 1]
    trips = []
    for k in range(0, len(bounds), 2):
        run_start, run_end = bounds[k], bounds[k + 1]
        trip = _build_trip(points[run_start:run_end + 1], config)
        if trip is not None:
            trips.append(trip)
    return stays, trips


def merge_stays(
    stays: list[StayEvent], trips: list[TripEvent], config: TimelineConfig,
) -> tuple[list[StayEvent], list[TripEvent]]:
    """Fuse consecutive stays at the same place separated by a short hop."""
    if not stays:
        return stays, trips

    max_gap = datetime.timedelta(minutes=config.merge_max_time_gap_minutes)
    merged = [stays[0]]
    for stay in stays[1:]:
        last = merged[-1]
        close = haversine_m(last.latitude, last.longitude, stay.latitude, stay.longitude) <= config.merge_max_distance_meters
        if close and stay.start - last.end <= max_gap:
            a, b = last.duration_seconds or 1.0, stay.duration_seconds or 1.0
            merged[-1] = StayEvent.spanning(
                last.start,
                max(last.end, stay.end),
                latitude=(last.latitude * a + stay.latitude * b) / (a + b),
                longitude=(last.longitude * a + stay.longitude * b) / (a + b),
            )
        else:
            merged.append(stay)

    kept_trips = [
        t for t in trips
        if not any(s.start <= t.start and t.end <= s.end for s in merged)
    ]
    return merged, kept_trips


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class TimelineGenerator:
    """Produces a LIVE timeline for a window straight from the raw points."""

    def __init__(self, db: Session, resolver: Optional[LocationResolver] = None):
        self.db = db
        self.resolver = resolver

    def generate(self, user_id: int, start: datetime.datetime, end: datetime.datetime) -> MovementTimeline:
        config = get_effective_config(self.db, user_id)
        points = [
            p for p in repository.list_points(self.db, user_id, start, end)
            if is_valid_coordinate(p.latitude, p.longitude)
        ]
        timeline = MovementTimeline(user_id=user_id, data_source=DataSource.LIVE, last_updated=utcnow())
        if not has_sufficient_data(points, config):
            logger.debug("Not enough data for user=%d in [%s, %s]: %d points", user_id, start, end, len(points))
            return timeline

        segments, gaps = split_on_gaps(points, config)
        stays, trips = [], []
        for segment in segments:
            seg_stays, seg_trips = detect_segment(segment, config)
            stays.extend(seg_stays)
            trips.extend(seg_trips)

        if config.is_merge_enabled:
            stays, trips = merge_stays(stays, trips, config)

        timeline.stays = [self._name(user_id, s) for s in stays]
        timeline.trips = trips
        timeline.data_gaps = gaps
        timeline.sort()
        logger.debug(
            "Generated user=%d [%s, %s]: %d stays, %d trips, %d gaps from %d points",
            user_id, start, end, len(timeline.stays), len(trips), len(gaps), len(points),
        )
        return timeline

    def _name(self, user_id: int, stay: StayEvent) -> StayEvent:
        if self.resolver is None:
            return stay
        resolved = self.resolver.resolve(user_id, stay.latitude, stay.longitude)
        return StayEvent(
            start=stay.start,
            duration=stay.duration,
            latitude=stay.latitude,
            longitude=stay.longitude,
            location_name=resolved.name,
            favorite_id=resolved.favorite_id,
            geocoding_id=resolved.geocoding_id,
        )
