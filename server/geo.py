"""Spatial helpers over TrackPoint sequences: distance, centroids, clustering."""

import math
from typing import Sequence

from errors import InvalidArgument
from timeline_types import TrackPoint

EARTH_RADIUS_M = 6_371_000
DEFAULT_ACCURACY_M = 10.0  # assumed when a point carries no accuracy


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(p1: TrackPoint, p2: TrackPoint) -> float:
    if p1 is None or p2 is None:
        raise InvalidArgument("Points must not be null")
    return haversine_m(p1.latitude, p1.longitude, p2.latitude, p2.longitude)


def within_distance(p1: TrackPoint, p2: TrackPoint, max_distance_m: float) -> bool:
    return distance_between(p1, p2) <= max_distance_m


def weighted_centroid(points: Sequence[TrackPoint]) -> tuple[float, float]:
    """Accuracy-weighted mean position; precise fixes pull harder than sloppy ones."""
    if not points:
        raise InvalidArgument("Cannot compute centroid of an empty point list")

    total_weight = lat_sum = lon_sum = 0.0
    for p in points:
        accuracy = p.accuracy if p.accuracy is not None else DEFAULT_ACCURACY_M
        weight = 1.0 / max(1.0, accuracy)
        lat_sum += p.latitude * weight
        lon_sum += p.longitude * weight
        total_weight += weight
    return lat_sum / total_weight, lon_sum / total_weight


def center_point(points: Sequence[TrackPoint]) -> tuple[float, float]:
    if not points:
        raise InvalidArgument("Cannot compute center of an empty point list")
    n = len(points)
    return (
        sum(p.latitude for p in points) / n,
        sum(p.longitude for p in points) / n,
    )


def path_distance_m(path: Sequence[TrackPoint]) -> float:
    """Sum of leg distances along an ordered path, in metres."""
    if path is None:
        raise InvalidArgument("Path must not be null")
    return sum(distance_between(a, b) for a, b in zip(path, path[1:]))


def trip_distance_km(path: Sequence[TrackPoint]) -> float:
    return path_distance_m(path) / 1000.0


def find_cluster_end_index(points: Sequence[TrackPoint], i: int, config) -> int:
    """Return the exclusive end index of the stay cluster anchored at ``points[i]``.

    The cluster grows while each following point stays closer than
    ``trip_min_distance_meters`` of the anchor and moves slower than
    ``staypoint_velocity_threshold``. With accuracy filtering on, points
    whose accuracy exceeds ``staypoint_max_accuracy_threshold`` are passed
    over rather than ending the cluster.
    """
    if not points:
        raise InvalidArgument("Cannot cluster an empty point list")
    anchor = points[i]
    j = i + 1
    while j < len(points):
        candidate = points[j]
        if (
            config.use_velocity_accuracy
            and candidate.accuracy is not None
            and candidate.accuracy > config.staypoint_max_accuracy_threshold
        ):
            j += 1
            continue
        if distance_between(anchor, candidate) >= config.trip_min_distance_meters:
            break
        if candidate.velocity is not None and candidate.velocity >= config.staypoint_velocity_threshold:
            break
        j += 1
    return j
