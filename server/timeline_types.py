"""Value types shared by detection, persistence, and assembly.

All timestamps are naive UTC datetimes, matching how the database stores
them. Events hold a start and a duration; ``end`` is derived.
"""

import dataclasses
import datetime
import enum
from dataclasses import dataclass, field
from typing import ClassVar, Optional

ONE_DAY = datetime.timedelta(days=1)
ONE_MICROSECOND = datetime.timedelta(microseconds=1)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def start_of_day(ts: datetime.datetime) -> datetime.datetime:
    return datetime.datetime.combine(ts.date(), datetime.time.min)


def end_of_day(ts: datetime.datetime) -> datetime.datetime:
    """Last representable instant of the UTC day containing ``ts``."""
    return start_of_day(ts) + ONE_DAY - ONE_MICROSECOND


def to_naive_utc(ts: datetime.datetime) -> datetime.datetime:
    if ts is None or ts.tzinfo is None:
        return ts
    return ts.astimezone(datetime.timezone.utc).replace(tzinfo=None)


class DataSource(str, enum.Enum):
    LIVE = "LIVE"
    CACHED = "CACHED"
    MIXED = "MIXED"


class EventKind(str, enum.Enum):
    STAY = "stay"
    TRIP = "trip"
    DATA_GAP = "data_gap"


@dataclass(frozen=True)
class TrackPoint:
    timestamp: datetime.datetime
    latitude: float
    longitude: float
    accuracy: Optional[float] = None  # metres
    velocity: Optional[float] = None  # km/h


class _Event:
    kind: ClassVar[EventKind]

    @property
    def end(self) -> datetime.datetime:
        return self.start + self.duration

    @property
    def duration_seconds(self) -> float:
        return self.duration.total_seconds()

    @classmethod
    def spanning(cls, start: datetime.datetime, end: datetime.datetime, **kwargs):
        return cls(start=start, duration=end - start, **kwargs)

    def with_end(self, end: datetime.datetime):
        return dataclasses.replace(self, duration=end - self.start)


@dataclass(frozen=True)
class StayEvent(_Event):
    start: datetime.datetime
    duration: datetime.timedelta
    latitude: float
    longitude: float
    location_name: Optional[str] = None
    favorite_id: Optional[int] = None
    geocoding_id: Optional[int] = None
    id: Optional[int] = None

    kind: ClassVar[EventKind] = EventKind.STAY


@dataclass(frozen=True)
class TripEvent(_Event):
    start: datetime.datetime
    duration: datetime.timedelta
    path: tuple = ()
    distance_meters: float = 0.0
    movement_type: str = "UNKNOWN"
    id: Optional[int] = None

    kind: ClassVar[EventKind] = EventKind.TRIP


@dataclass(frozen=True)
class DataGapEvent(_Event):
    start: datetime.datetime
    duration: datetime.timedelta
    id: Optional[int] = None

    kind: ClassVar[EventKind] = EventKind.DATA_GAP


@dataclass
class MovementTimeline:
    """Stays, trips and data gaps for one user over one requested window."""

    user_id: int
    stays: list = field(default_factory=list)
    trips: list = field(default_factory=list)
    data_gaps: list = field(default_factory=list)
    data_source: DataSource = DataSource.LIVE
    last_updated: Optional[datetime.datetime] = None

    @classmethod
    def empty(cls, user_id: int, data_source: DataSource) -> "MovementTimeline":
        return cls(user_id=user_id, data_source=data_source, last_updated=utcnow())

    def is_empty_of_activity(self) -> bool:
        return not self.stays and not self.trips

    def events(self) -> list:
        """All events in chronological order."""
        return sorted(self.stays + self.trips + self.data_gaps, key=lambda e: e.start)

    def sort(self):
        self.stays.sort(key=lambda e: e.start)
        self.trips.sort(key=lambda e: e.start)
        self.data_gaps.sort(key=lambda e: e.start)

    def add(self, event):
        if event.kind is EventKind.STAY:
            self.stays.append(event)
        elif event.kind is EventKind.TRIP:
            self.trips.append(event)
        else:
            self.data_gaps.append(event)

    def retag(self, data_source: DataSource) -> "MovementTimeline":
        return dataclasses.replace(
            self,
            stays=list(self.stays),
            trips=list(self.trips),
            data_gaps=list(self.data_gaps),
            data_source=data_source,
            last_updated=utcnow(),
        )
