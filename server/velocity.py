"""Speed statistics over point windows and repair of implausible speed samples."""

from dataclasses import dataclass
from typing import Optional, Sequence

from geo import distance_between
from timeline_types import TrackPoint

WALKING_MAX_SPEED_KMH = 6.0
VELOCITY_WINDOW_SIZE = 10


@dataclass(frozen=True)
class VelocityWindow:
    start_index: int
    median: float
    p95: float
    max: float
    average: float


def _median(sorted_values: Sequence[float]) -> float:
    n = len(sorted_values)
    mid = n // 2
    if n % 2 == 0:
        return (sorted_values[mid - 1] + sorted_values[mid]) / 2.0
    return sorted_values[mid]


def median_velocity(points: Sequence[TrackPoint]) -> float:
    velocities = sorted(p.velocity for p in points if p.velocity is not None)
    if not velocities:
        return 0.0
    return _median(velocities)


def analyze_velocity_window(
    points: Sequence[TrackPoint], start_index: int = 0, window_size: int = VELOCITY_WINDOW_SIZE,
) -> VelocityWindow:
    window = points[start_index:start_index + window_size]
    velocities = sorted(p.velocity for p in window if p.velocity is not None)
    if not velocities:
        return VelocityWindow(start_index, 0.0, 0.0, 0.0, 0.0)

    n = len(velocities)
    return VelocityWindow(
        start_index=start_index,
        median=_median(velocities),
        p95=velocities[int(n * 0.95)],
        max=velocities[-1],
        average=sum(velocities) / n,
    )


def instant_speed_kmh(p1: TrackPoint, p2: TrackPoint) -> float:
    """Speed implied by two fixes; zero when they share a timestamp."""
    seconds = abs((p2.timestamp - p1.timestamp).total_seconds())
    if seconds == 0:
        return 0.0
    return distance_between(p1, p2) / seconds * 3.6


def calculate_speeds(points: Sequence[TrackPoint]) -> list[float]:
    return [instant_speed_kmh(a, b) for a, b in zip(points, points[1:])]


def moving_average(speeds: Sequence[float], window: int = 3) -> list[float]:
    if window < 1:
        raise ValueError("window must be at least 1")
    result = []
    for i in range(len(speeds)):
        chunk = speeds[max(0, i - window + 1):i + 1]
        result.append(sum(chunk) / len(chunk))
    return result


def is_speed_reasonable(speed: Optional[float], max_reasonable_kmh: float) -> bool:
    return speed is not None and 0 <= speed <= max_reasonable_kmh


def filter_unrealistic_speeds(speeds: Sequence[Optional[float]], max_reasonable_kmh: float) -> list[float]:
    """Replace out-of-range samples using their nearest plausible neighbours.

    Both neighbours found: their mean. One found: that one. None: walking pace.
    """
    result = []
    for i, speed in enumerate(speeds):
        if is_speed_reasonable(speed, max_reasonable_kmh):
            result.append(speed)
            continue

        prev_ok = next(
            (speeds[k] for k in range(i - 1, -1, -1) if is_speed_reasonable(speeds[k], max_reasonable_kmh)),
            None,
        )
        next_ok = next(
            (speeds[k] for k in range(i + 1, len(speeds)) if is_speed_reasonable(speeds[k], max_reasonable_kmh)),
            None,
        )
        if prev_ok is not None and next_ok is not None:
            result.append((prev_ok + next_ok) / 2.0)
        elif prev_ok is not None:
            result.append(prev_ok)
        elif next_ok is not None:
            result.append(next_ok)
        else:
            result.append(WALKING_MAX_SPEED_KMH)
    return result
