"""Tests for day-boundary processing: midnight continuity, idempotence, data gaps."""

import datetime

import pytest

from models import TimelineDataGap, TimelineStay, TimelineTrip
from overnight import TRAILING_GAP_OFFSET, is_whole_day
from timeline_service import TimelineRequestRouter, build_processor
from timeline_types import ONE_DAY, DataSource, end_of_day
from tests.gps_test_fixtures import OFFICE_CENTER, overnight_stay

DAY_N = datetime.datetime(2024, 3, 10)
DAY_N1 = DAY_N + ONE_DAY


def _at(day, hour, minute=0):
    return day + datetime.timedelta(hours=hour, minutes=minute)


@pytest.fixture
def processor(db):
    return build_processor(db)


@pytest.fixture
def router(db):
    return TimelineRequestRouter(db, clock=lambda: datetime.datetime(2024, 6, 1, 12, 0))


# =====================================================================
# Whole days
# =====================================================================

class TestWholeDay:
    def test_helper(self):
        assert is_whole_day(DAY_N, end_of_day(DAY_N))
        assert is_whole_day(DAY_N, DAY_N1)
        assert not is_whole_day(_at(DAY_N, 1), end_of_day(DAY_N))
        assert not is_whole_day(DAY_N, _at(DAY_N, 18))

    def test_stay_across_midnight_is_one_event(self, db, test_user, add_points, processor):
        add_points(test_user.id, overnight_stay(_at(DAY_N, 20), _at(DAY_N1, 13)))

        processor.process_time_range(test_user.id, DAY_N, end_of_day(DAY_N))
        timeline = processor.process_time_range(test_user.id, DAY_N1, end_of_day(DAY_N1))

        stays = db.query(TimelineStay).all()
        assert len(stays) == 1
        assert stays[0].start_time == _at(DAY_N, 20)
        assert stays[0].end_time == _at(DAY_N1, 13)
        assert timeline.data_source is DataSource.CACHED
        assert [(s.start, s.end) for s in timeline.stays] == [(_at(DAY_N, 20), _at(DAY_N1, 13))]

    def test_only_events_starting_in_the_day_are_added(self, db, test_user, add_points, processor):
        add_points(test_user.id, overnight_stay(_at(DAY_N, 20), _at(DAY_N1, 8)))
        add_points(test_user.id, overnight_stay(
            _at(DAY_N1, 9), _at(DAY_N1, 12), OFFICE_CENTER["latitude"], OFFICE_CENTER["longitude"],
        ))

        processor.process_time_range(test_user.id, DAY_N, end_of_day(DAY_N))
        timeline = processor.process_time_range(test_user.id, DAY_N1, end_of_day(DAY_N1))

        assert db.query(TimelineStay).count() == 2
        assert db.query(TimelineTrip).count() == 1
        assert [s.start for s in timeline.stays] == [_at(DAY_N, 20), _at(DAY_N1, 9)]
        assert timeline.stays[0].end == _at(DAY_N1, 8)
        assert timeline.trips[0].start == _at(DAY_N1, 8)

    def test_regenerating_twice_is_idempotent(self, db, test_user, add_points, router):
        add_points(test_user.id, overnight_stay(_at(DAY_N, 20), _at(DAY_N1, 13)))
        router.get_timeline(test_user.id, DAY_N, end_of_day(DAY_N))

        first = router.force_regenerate(test_user.id, DAY_N1, end_of_day(DAY_N1))
        second = router.force_regenerate(test_user.id, DAY_N1, end_of_day(DAY_N1))

        assert db.query(TimelineStay).count() == 1
        assert db.query(TimelineTrip).count() == 0
        assert db.query(TimelineDataGap).count() == 0
        assert [(s.start, s.end) for s in first.stays] == [(s.start, s.end) for s in second.stays]

    def test_day_without_data_is_one_gap(self, db, test_user, processor):
        timeline = processor.process_time_range(test_user.id, DAY_N, end_of_day(DAY_N))

        assert timeline.is_empty_of_activity()
        assert len(timeline.data_gaps) == 1
        assert timeline.data_gaps[0].start == DAY_N
        assert timeline.data_gaps[0].end == end_of_day(DAY_N)

    def test_silent_day_after_a_stay_is_one_gap(self, db, test_user, add_points, processor):
        add_points(test_user.id, overnight_stay(_at(DAY_N, 20), _at(DAY_N, 23, 50)))
        processor.process_time_range(test_user.id, DAY_N, end_of_day(DAY_N))

        timeline = processor.process_time_range(test_user.id, DAY_N1, end_of_day(DAY_N1))

        gaps = db.query(TimelineDataGap).all()
        assert len(gaps) == 1
        assert (gaps[0].start_time, gaps[0].end_time) == (DAY_N1, end_of_day(DAY_N1))
        assert timeline.stays == []
        assert db.query(TimelineStay).one().end_time == _at(DAY_N, 23, 50)


# =====================================================================
# Partial and multi-day ranges
# =====================================================================

class TestRanges:
    def test_trailing_gap_after_last_fix(self, db, test_user, add_points, processor):
        add_points(test_user.id, overnight_stay(_at(DAY_N, 8), _at(DAY_N, 10)))
        end = _at(DAY_N + 2 * ONE_DAY, 12)

        timeline = processor.process_time_range(test_user.id, DAY_N, end)

        assert len(timeline.stays) == 1
        assert len(timeline.data_gaps) == 1
        gap = timeline.data_gaps[0]
        assert gap.start == _at(DAY_N, 10) + TRAILING_GAP_OFFSET
        assert gap.end == end

    def test_range_without_gps_is_one_gap(self, db, test_user, processor):
        start, end = _at(DAY_N, 6), _at(DAY_N, 18)
        timeline = processor.process_time_range(test_user.id, start, end)

        assert timeline.is_empty_of_activity()
        assert [(g.start, g.end) for g in timeline.data_gaps] == [(start, end)]

    def test_range_starting_inside_a_stay_extends_it(self, db, test_user, add_points, processor):
        add_points(test_user.id, overnight_stay(_at(DAY_N, 6), _at(DAY_N, 14)))
        processor.process_time_range(test_user.id, _at(DAY_N, 0), _at(DAY_N, 10))

        processor.process_time_range(test_user.id, _at(DAY_N, 9, 30), _at(DAY_N, 14))

        stays = db.query(TimelineStay).all()
        assert len(stays) == 1
        assert stays[0].end_time == _at(DAY_N, 14)
