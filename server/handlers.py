"""Strategies behind the request router: past ranges and ranges touching today."""

import datetime
import logging

from sqlalchemy.orm import Session

import repository
from assembler import TimelineAssembler
from config import get_effective_config
from detection import TimelineGenerator
from errors import PersistenceConflict
from overnight import OvernightProcessor
from timeline_types import (
    ONE_DAY,
    ONE_MICROSECOND,
    DataGapEvent,
    DataSource,
    MovementTimeline,
    start_of_day,
)

logger = logging.getLogger(__name__)

LIVE_TAIL_OFFSET = datetime.timedelta(seconds=1)


def generate_live(
    db: Session, generator: TimelineGenerator, user_id: int,
    start: datetime.datetime, end: datetime.datetime, now: datetime.datetime,
) -> MovementTimeline:
    """Generate without persisting events; the tail after the last event up to now is a gap.

    Geocoding answers cached while naming the stays are committed.
    """
    horizon = min(end, now)
    timeline = generator.generate(user_id, start, end)
    repository.commit(db)
    timeline.data_source = DataSource.LIVE

    if timeline.is_empty_of_activity():
        timeline.data_gaps = [DataGapEvent.spanning(start, horizon)] if horizon > start else []
        return timeline

    last_end = max(e.end for e in timeline.events())
    tail_start = last_end + LIVE_TAIL_OFFSET
    config = get_effective_config(db, user_id)
    if tail_start < horizon and config.is_significant_gap((horizon - tail_start).total_seconds()):
        timeline.data_gaps.append(DataGapEvent.spanning(tail_start, horizon))
    return timeline


class PastRequestHandler:
    """Serve a range that ended before today: cached rows, or regenerate them."""

    def __init__(
        self, db: Session, processor: OvernightProcessor, assembler: TimelineAssembler,
        generator: TimelineGenerator,
    ):
        self.db = db
        self.processor = processor
        self.assembler = assembler
        self.generator = generator

    def handle(self, user_id: int, start: datetime.datetime, end: datetime.datetime) -> MovementTimeline:
        if repository.has_complete_data(self.db, user_id, start, end):
            timeline = repository.find_events_with_boundary_expansion(self.db, user_id, start, end)
            logger.debug("Serving cached timeline for user=%d [%s, %s]", user_id, start, end)
        else:
            timeline = self.regenerate(user_id, start, end)
        return self.assembler.enhance_timeline(timeline, user_id, start, end)

    def regenerate(self, user_id: int, start: datetime.datetime, end: datetime.datetime) -> MovementTimeline:
        """Delete leftovers and rebuild; one retry on a write conflict, then serve live data."""
        for attempt in (1, 2):
            try:
                repository.delete_events_in_range(self.db, user_id, start, end)
                return self.processor.process_time_range(user_id, start, end)
            except PersistenceConflict as e:
                self.db.rollback()
                logger.warning(
                    "Regeneration conflict for user=%d [%s, %s] (attempt %d): %s",
                    user_id, start, end, attempt, e,
                )
        logger.error("Giving up persisting timeline for user=%d [%s, %s], serving live result", user_id, start, end)
        return self.generator.generate(user_id, start, end)


class MixedRequestHandler:
    """Serve a range that includes today: past from cache, today always live."""

    def __init__(
        self, db: Session, past_handler: PastRequestHandler, assembler: TimelineAssembler,
        generator: TimelineGenerator,
    ):
        self.db = db
        self.past_handler = past_handler
        self.assembler = assembler
        self.generator = generator

    def handle(
        self, user_id: int, start: datetime.datetime, end: datetime.datetime, now: datetime.datetime,
    ) -> MovementTimeline:
        today_start = start_of_day(now)
        today_end = min(end, today_start + ONE_DAY - ONE_MICROSECOND)

        if start >= today_start:
            return generate_live(self.db, self.generator, user_id, start, today_end, now)

        past = self.past_handler.handle(user_id, start, today_start - ONE_MICROSECOND)
        today = generate_live(self.db, self.generator, user_id, today_start, today_end, now)
        combined = self.assembler.combine_timelines(
            past, today, user_id, get_effective_config(self.db, user_id),
        )
        logger.debug(
            "Mixed timeline for user=%d: %d past events + %d live events",
            user_id, len(past.events()), len(today.events()),
        )
        return combined
