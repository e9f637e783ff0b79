"""Day-boundary processing: turn raw points into persisted timeline events.

A full UTC day goes through the overnight algorithm, which carries the last
event before midnight forward instead of starting fresh:

1. Find the persisted event running into the day (or the last one before it)
2. No such event: generate the day on its own
3. Otherwise regenerate from that event's original start through the day's end
4. Stretch the persisted event to its newly computed end and persist only
   the generated events that start inside the day

Without step 4, a stay across midnight would be cut into two shorter stays
every night.

Partial days and multi-day ranges are generated in one pass from any event
crossing the range start, with a trailing DataGap where the GPS data stops
early.
"""

import datetime
import logging
from typing import Optional

from sqlalchemy.orm import Session

import repository
from detection import TimelineGenerator
from timeline_types import (
    ONE_DAY,
    DataGapEvent,
    EventKind,
    MovementTimeline,
    end_of_day,
    start_of_day,
)

logger = logging.getLogger(__name__)

# A regenerated event matching a persisted one may start this far apart
MATCH_TOLERANCE = datetime.timedelta(seconds=1)
TRAILING_GAP_OFFSET = datetime.timedelta(seconds=1)


def is_whole_day(start: datetime.datetime, end: datetime.datetime) -> bool:
    day_start = start_of_day(start)
    return start == day_start and end in (end_of_day(start), day_start + ONE_DAY)


def _same_event(candidate, persisted) -> bool:
    return candidate.kind is persisted.kind and abs(candidate.start - persisted.start) <= MATCH_TOLERANCE


class OvernightProcessor:
    def __init__(self, db: Session, generator: TimelineGenerator):
        self.db = db
        self.generator = generator

    def process_time_range(
        self, user_id: int, start: datetime.datetime, end: datetime.datetime,
    ) -> MovementTimeline:
        """Generate, persist, and return the CACHED timeline for ``[start, end]``.

        Callers delete stale events in the range first; running this twice
        over the same range converges to the same rows.
        """
        if is_whole_day(start, end):
            self._process_whole_day(user_id, start, end_of_day(start))
        else:
            self._process_range(user_id, start, end)
        repository.commit(self.db)
        return repository.find_events_with_boundary_expansion(self.db, user_id, start, end)

    # -----------------------------------------------------------------------
    # Whole day
    # -----------------------------------------------------------------------

    def _process_whole_day(self, user_id: int, day_start: datetime.datetime, day_end: datetime.datetime):
        prior = (
            repository.find_crossing_event(self.db, user_id, day_start)
            or repository.find_latest_event_before(self.db, user_id, day_start)
        )
        if prior is None:
            logger.debug("No prior event for user=%d before %s, generating day independently", user_id, day_start)
            self._generate_independently(user_id, day_start, day_end)
            return

        generated = self.generator.generate(user_id, prior.start, day_end)
        if generated.is_empty_of_activity():
            self._generate_independently(user_id, day_start, day_end)
            return

        extended = self._extend_prior(prior, generated)
        covered_until = extended.end if extended is not None else prior.end

        persisted = 0
        for event in generated.events():
            if event.start >= day_start and not _same_event(event, prior):
                repository.persist(self.db, user_id, event)
                persisted += 1

        if persisted == 0 and covered_until < day_start:
            repository.persist(self.db, user_id, DataGapEvent.spanning(day_start, day_end))
            persisted = 1

        logger.info(
            "Overnight processing user=%d day=%s: prior %s %s, %d new events",
            user_id, day_start.date(), prior.kind.value, "extended" if extended else "kept", persisted,
        )

    def _generate_independently(self, user_id: int, start: datetime.datetime, end: datetime.datetime):
        generated = self.generator.generate(user_id, start, end)
        events = generated.events()
        if not events:
            events = [DataGapEvent.spanning(start, end)]
        for event in events:
            repository.persist(self.db, user_id, event)

    def _extend_prior(self, prior, generated: MovementTimeline):
        """Stretch the persisted prior event to match its regenerated twin.

        Returns the regenerated twin, or None when there is none.
        """
        if prior.kind is EventKind.DATA_GAP:
            return None
        candidates = generated.stays if prior.kind is EventKind.STAY else generated.trips
        twin: Optional[object] = next((e for e in candidates if _same_event(e, prior)), None)
        if twin is None:
            return None
        if twin.end != prior.end:
            repository.update_event_end(self.db, prior, twin.end)
            logger.debug("Extended %s id=%s from %s to %s", prior.kind.value, prior.id, prior.end, twin.end)
        return twin

    # -----------------------------------------------------------------------
    # Partial and multi-day ranges
    # -----------------------------------------------------------------------

    def _process_range(self, user_id: int, start: datetime.datetime, end: datetime.datetime):
        latest_gps = repository.latest_gps_timestamp(self.db, user_id, start, end)
        if latest_gps is None:
            repository.persist(self.db, user_id, DataGapEvent.spanning(start, end))
            logger.info("No GPS data for user=%d in [%s, %s], stored one data gap", user_id, start, end)
            return

        boundary = repository.find_crossing_event(self.db, user_id, start)
        generated = self.generator.generate(user_id, boundary.start if boundary else start, end)
        if boundary is not None:
            self._extend_prior(boundary, generated)

        persisted = 0
        for event in generated.events():
            if event.start < start or (boundary is not None and _same_event(event, boundary)):
                continue
            repository.persist(self.db, user_id, event)
            persisted += 1

        if latest_gps < end:
            tail_start = latest_gps + TRAILING_GAP_OFFSET
            if tail_start < end:
                repository.persist(self.db, user_id, DataGapEvent.spanning(tail_start, end))
                persisted += 1

        logger.info("Processed user=%d range [%s, %s]: %d events stored", user_id, start, end, persisted)
