"""Entry point for timeline requests.

Classify the requested window against today (UTC) and hand it to the right
strategy:
- PAST_ONLY   -> cache or regenerate
- MIXED       -> cached past stitched to a live today
- FUTURE_ONLY -> empty LIVE timeline
"""

import datetime
import enum
import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import repository
from assembler import TimelineAssembler
from detection import LocationResolver, TimelineGenerator
from errors import PersistenceConflict
from handlers import MixedRequestHandler, PastRequestHandler
from overnight import OvernightProcessor
from timeline_types import DataSource, MovementTimeline, to_naive_utc, utcnow
from validation import validate_time_range, validate_user_id

logger = logging.getLogger(__name__)


class RequestType(str, enum.Enum):
    PAST_ONLY = "PAST_ONLY"
    MIXED = "MIXED"
    FUTURE_ONLY = "FUTURE_ONLY"


def classify_request(start: datetime.datetime, end: datetime.datetime, today: datetime.date) -> RequestType:
    if end.date() < today:
        return RequestType.PAST_ONLY
    if start.date() > today:
        return RequestType.FUTURE_ONLY
    return RequestType.MIXED


_FALLBACK_SOURCE = {
    RequestType.PAST_ONLY: DataSource.CACHED,
    RequestType.MIXED: DataSource.MIXED,
    RequestType.FUTURE_ONLY: DataSource.LIVE,
}


def build_processor(db: Session, resolver: Optional[LocationResolver] = None) -> OvernightProcessor:
    return OvernightProcessor(db, TimelineGenerator(db, resolver))


class TimelineRequestRouter:
    def __init__(
        self,
        db: Session,
        resolver: Optional[LocationResolver] = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.generator = TimelineGenerator(db, resolver)
        self.processor = OvernightProcessor(db, self.generator)
        self.assembler = TimelineAssembler(db)
        self.past_handler = PastRequestHandler(db, self.processor, self.assembler, self.generator)
        self.mixed_handler = MixedRequestHandler(db, self.past_handler, self.assembler, self.generator)

    def get_timeline(self, user_id: int, start: datetime.datetime, end: datetime.datetime) -> MovementTimeline:
        """Return the user's timeline for ``[start, end]``.

        Raises InvalidInput for a bad user id or range. Storage failures are
        logged and produce an empty timeline instead of an error.
        """
        validate_user_id(user_id)
        start, end = to_naive_utc(start), to_naive_utc(end)
        validate_time_range(start, end)
        now = self.clock()
        request_type = classify_request(start, end, now.date())
        logger.debug("Timeline request user=%d [%s, %s] classified %s", user_id, start, end, request_type.value)

        if request_type is RequestType.FUTURE_ONLY:
            return MovementTimeline.empty(user_id, DataSource.LIVE)

        try:
            if request_type is RequestType.PAST_ONLY:
                return self.past_handler.handle(user_id, start, end)
            return self.mixed_handler.handle(user_id, start, end, now)
        except (SQLAlchemyError, PersistenceConflict) as e:
            self.db.rollback()
            logger.error("Timeline request failed for user=%d [%s, %s]: %s", user_id, start, end, e)
            return MovementTimeline.empty(user_id, _FALLBACK_SOURCE[request_type])

    def force_regenerate(self, user_id: int, start: datetime.datetime, end: datetime.datetime) -> MovementTimeline:
        """Drop whatever is stored for the range and rebuild it from the points.

        A write conflict is retried once; a second one propagates.
        """
        validate_user_id(user_id)
        start, end = to_naive_utc(start), to_naive_utc(end)
        validate_time_range(start, end)

        for attempt in (1, 2):
            try:
                deleted = repository.delete_events_in_range(self.db, user_id, start, end)
                timeline = self.processor.process_time_range(user_id, start, end)
                break
            except PersistenceConflict as e:
                self.db.rollback()
                if attempt == 2:
                    raise
                logger.warning(
                    "Forced regeneration conflict for user=%d [%s, %s], retrying: %s", user_id, start, end, e,
                )
        logger.info(
            "Force-regenerated user=%d [%s, %s]: removed %d, now %d events",
            user_id, start, end, deleted, len(timeline.events()),
        )
        return self.assembler.enhance_timeline(timeline, user_id, start, end)
