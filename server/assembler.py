"""Final shaping of timelines before they are returned.

Two jobs: prepend the event that was in progress before the requested window
(so the view does not start in a void), and stitch a cached past timeline to
a live one for today, including the gap between them.
"""

import datetime
import logging
from typing import Optional

from sqlalchemy.orm import Session

import repository
from config import TimelineConfig
from timeline_types import ONE_MICROSECOND, DataGapEvent, DataSource, MovementTimeline, utcnow

logger = logging.getLogger(__name__)

# Gaps closer than this count as touching. Timestamps are microsecond precision.
GAP_TOUCH_TOLERANCE = ONE_MICROSECOND


def merge_adjacent_gaps(gaps: list) -> list:
    """Merge overlapping or touching gaps; input need not be sorted."""
    if not gaps:
        return []
    ordered = sorted(gaps, key=lambda g: g.start)
    merged = [ordered[0]]
    for gap in ordered[1:]:
        current = merged[-1]
        if gap.start <= current.end + GAP_TOUCH_TOLERANCE:
            merged[-1] = DataGapEvent.spanning(current.start, max(current.end, gap.end))
        else:
            merged.append(gap)
    return merged


def detect_cross_day_gap(
    past: MovementTimeline, today: MovementTimeline, config: TimelineConfig,
) -> Optional[DataGapEvent]:
    past_events = past.stays + past.trips + past.data_gaps
    today_events = today.stays + today.trips + today.data_gaps
    if not past_events or not today_events:
        return None

    last_past_end = max(e.end for e in past_events)
    first_today_start = min(e.start for e in today_events)
    seconds = (first_today_start - last_past_end).total_seconds()
    if not config.is_significant_gap(seconds):
        return None
    return DataGapEvent.spanning(last_past_end, first_today_start)


class TimelineAssembler:
    def __init__(self, db: Session):
        self.db = db

    def enhance_timeline(
        self, timeline: MovementTimeline, user_id: int, start: datetime.datetime, end: datetime.datetime,
    ) -> MovementTimeline:
        """Prepend a stretched copy of the event that preceded ``start``.

        The copy only exists in the response; the persisted row is untouched.
        """
        if timeline.is_empty_of_activity():
            return timeline
        events = timeline.events()
        if any(e.start < start for e in events):
            # Boundary expansion already brought in the event running at ``start``
            return timeline

        previous = repository.find_latest_event_before(self.db, user_id, start)
        if previous is None:
            return timeline

        first_start = min((e.start for e in events if e.start >= start), default=start)
        stretched = previous.with_end(first_start)
        enhanced = timeline.retag(timeline.data_source)
        enhanced.add(stretched)
        enhanced.sort()
        logger.debug("Prepended %s from %s to timeline for user=%d", previous.kind.value, previous.start, user_id)
        return enhanced

    def combine_timelines(
        self, past: MovementTimeline, today: MovementTimeline, user_id: int, config: TimelineConfig,
    ) -> MovementTimeline:
        combined = MovementTimeline(
            user_id=user_id,
            stays=past.stays + today.stays,
            trips=past.trips + today.trips,
            data_gaps=past.data_gaps + today.data_gaps,
            data_source=DataSource.MIXED,
            last_updated=utcnow(),
        )
        cross_day = detect_cross_day_gap(past, today, config)
        if cross_day is not None:
            logger.debug("Cross-day gap for user=%d: %s -> %s", user_id, cross_day.start, cross_day.end)
            combined.data_gaps.append(cross_day)
        combined.sort()
        combined.data_gaps = merge_adjacent_gaps(combined.data_gaps)
        return combined
