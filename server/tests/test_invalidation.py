"""Tests for stale-event invalidation, the regeneration worker, and the bounded job store."""

import datetime
from unittest.mock import Mock

import pytest

from errors import PersistenceConflict
from invalidation import JobStatus, JobStore, RegenerationJob, TimelineInvalidationService
from models import Favorite, TimelineDataGap, TimelineStay, TimelineTrip
from timeline_service import build_processor
from timeline_types import ONE_DAY, end_of_day
from tests.gps_test_fixtures import HOME_CENTER, OFFICE_CENTER, overnight_stay

NOW = datetime.datetime(2025, 6, 15, 12, 0)
DAY = datetime.datetime(2025, 6, 10)


def _job(job_id, user_id=1, day=DAY):
    return RegenerationJob(job_id=job_id, user_id=user_id, day_start=day, day_end=end_of_day(day))


def _finish(store, job, finished_at):
    job.status = JobStatus.COMPLETED
    job.finished_at = finished_at
    store.mark_terminal(job)


def _stay(db, user_id, start, hours=2, center=HOME_CENTER, favorite_id=None):
    row = TimelineStay(
        user_id=user_id, start_time=start, end_time=start + datetime.timedelta(hours=hours),
        latitude=center["latitude"], longitude=center["longitude"], favorite_id=favorite_id,
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def service(session_factory):
    return TimelineInvalidationService(session_factory, lambda db: build_processor(db))


# =====================================================================
# Job store
# =====================================================================

class TestJobStore:
    def test_evicts_oldest_terminal_job_over_capacity(self):
        store = JobStore(max_jobs=2, clock=lambda: NOW)
        old, newer, fresh = _job("old"), _job("newer"), _job("fresh")
        store.add(old)
        store.add(newer)
        _finish(store, newer, NOW - datetime.timedelta(minutes=5))
        _finish(store, old, NOW - datetime.timedelta(minutes=10))

        store.add(fresh)

        assert store.get("old") is None
        assert store.get("newer") is newer
        assert store.get("fresh") is fresh

    def test_active_jobs_are_never_evicted(self):
        store = JobStore(max_jobs=2, clock=lambda: NOW)
        for i in range(4):
            store.add(_job(f"job-{i}"))
        assert len(store) == 4

    def test_expired_terminal_jobs_dropped_under_capacity(self):
        store = JobStore(max_jobs=100, retention=datetime.timedelta(hours=24), clock=lambda: NOW)
        stale, recent = _job("stale"), _job("recent")
        store.add(stale)
        store.add(recent)
        _finish(store, stale, NOW - datetime.timedelta(hours=25))
        _finish(store, recent, NOW - datetime.timedelta(hours=1))

        assert store.get("stale") is None
        assert store.get("recent") is recent

    def test_stats(self):
        store = JobStore(clock=lambda: NOW)
        store.add(_job("a"))
        done = _job("b")
        store.add(done)
        _finish(store, done, NOW)
        assert store.stats() == {"QUEUED": 1, "RUNNING": 0, "COMPLETED": 1, "FAILED": 0}


# =====================================================================
# Producers
# =====================================================================

class TestMarkStale:
    def test_one_job_per_user_day(self, db, test_user, service):
        rows = [
            _stay(db, test_user.id, DAY + datetime.timedelta(hours=8)),
            _stay(db, test_user.id, DAY + datetime.timedelta(hours=14)),
            _stay(db, test_user.id, DAY + ONE_DAY + datetime.timedelta(hours=9)),
        ]
        jobs = service.mark_stale_and_queue(db, rows)

        assert len(jobs) == 2
        assert {j.day_start for j in jobs} == {DAY, DAY + ONE_DAY}
        assert all(j.status == JobStatus.QUEUED for j in jobs)
        assert all(r.is_stale for r in db.query(TimelineStay).all())

    def test_already_queued_day_is_not_duplicated(self, db, test_user, service):
        row = _stay(db, test_user.id, DAY + datetime.timedelta(hours=8))
        first = service.mark_stale_and_queue(db, [row])
        second = service.mark_stale_and_queue(db, [row])

        assert [j.job_id for j in first] == [j.job_id for j in second]
        assert len(service.store) == 1

    def test_nothing_to_invalidate(self, db, service):
        assert service.mark_stale_and_queue(db, []) == []

    def test_favorite_change_hits_stays_in_radius(self, db, test_user, service):
        fav = Favorite(user_id=test_user.id, name="Home", latitude=HOME_CENTER["latitude"],
                       longitude=HOME_CENTER["longitude"], radius_m=50)
        db.add(fav)
        db.commit()
        _stay(db, test_user.id, DAY + datetime.timedelta(hours=8))
        _stay(db, test_user.id, DAY + ONE_DAY + datetime.timedelta(hours=8), center=OFFICE_CENTER)

        jobs = service.on_favorite_changed(db, fav)

        assert [j.day_start for j in jobs] == [DAY]

    def test_config_change_hits_every_event(self, db, test_user, service):
        _stay(db, test_user.id, DAY + datetime.timedelta(hours=8))
        db.add(TimelineTrip(user_id=test_user.id, start_time=DAY + 2 * ONE_DAY,
                            end_time=DAY + 2 * ONE_DAY + datetime.timedelta(minutes=20)))
        db.commit()

        jobs = service.on_config_changed(db, test_user.id)

        assert {j.day_start for j in jobs} == {DAY, DAY + 2 * ONE_DAY}


# =====================================================================
# Worker
# =====================================================================

class TestProcessPending:
    def test_job_regenerates_the_day(self, db, test_user, add_points, service):
        add_points(test_user.id, overnight_stay(DAY + datetime.timedelta(hours=8),
                                                DAY + datetime.timedelta(hours=11)))
        row = _stay(db, test_user.id, DAY + datetime.timedelta(hours=7), hours=6)
        job = service.mark_stale_and_queue(db, [row])[0]

        assert service.process_pending() == 1

        assert service.get_job(job.job_id).status == JobStatus.COMPLETED
        assert job.attempts == 1
        assert job.error_message is None
        db.expire_all()
        stays = db.query(TimelineStay).all()
        assert len(stays) == 1
        assert stays[0].start_time == DAY + datetime.timedelta(hours=8)
        assert not stays[0].is_stale

    def test_failure_is_recorded_on_the_job(self, db, test_user, session_factory):
        processor = Mock()
        processor.process_time_range.side_effect = RuntimeError("detector exploded")
        service = TimelineInvalidationService(session_factory, lambda _db: processor)
        row = _stay(db, test_user.id, DAY + datetime.timedelta(hours=8))
        job = service.mark_stale_and_queue(db, [row])[0]

        service.process_pending()

        assert job.status == JobStatus.FAILED
        assert "detector exploded" in job.error_message
        assert job.finished_at is not None

    def test_conflict_is_retried_once(self, db, test_user, session_factory):
        processor = Mock()
        processor.process_time_range.side_effect = PersistenceConflict("database is locked")
        service = TimelineInvalidationService(session_factory, lambda _db: processor)
        row = _stay(db, test_user.id, DAY + datetime.timedelta(hours=8))
        job = service.mark_stale_and_queue(db, [row])[0]

        service.process_pending()

        assert job.status == JobStatus.FAILED
        assert job.attempts == 2
        assert processor.process_time_range.call_count == 2

    def test_day_can_be_queued_again_after_it_ran(self, db, test_user, service):
        row = _stay(db, test_user.id, DAY + datetime.timedelta(hours=8))
        first = service.mark_stale_and_queue(db, [row])[0]
        service.process_pending()

        rows = db.query(TimelineStay).all() + db.query(TimelineTrip).all() + db.query(TimelineDataGap).all()
        second = service.mark_stale_and_queue(db, rows)

        assert second
        assert second[0].job_id != first.job_id

    def test_overnight_stay_rebuilt_across_both_days(self, db, test_user, add_points, service):
        next_day = DAY + ONE_DAY
        add_points(test_user.id, overnight_stay(DAY + datetime.timedelta(hours=20),
                                                next_day + datetime.timedelta(hours=13)))
        processor = build_processor(db)
        processor.process_time_range(test_user.id, DAY, end_of_day(DAY))
        processor.process_time_range(test_user.id, next_day, end_of_day(next_day))
        fav = Favorite(user_id=test_user.id, name="Home", latitude=HOME_CENTER["latitude"],
                       longitude=HOME_CENTER["longitude"], radius_m=50)
        db.add(fav)
        db.commit()

        jobs = service.on_favorite_changed(db, fav)
        assert [j.day_start for j in jobs] == [DAY, next_day]

        service.process_pending()

        db.expire_all()
        stays = db.query(TimelineStay).all()
        assert [(s.start_time, s.end_time) for s in stays] == [
            (DAY + datetime.timedelta(hours=20), next_day + datetime.timedelta(hours=13)),
        ]

    def test_row_spanning_midnight_queues_both_days(self, db, test_user, service):
        row = _stay(db, test_user.id, DAY + datetime.timedelta(hours=22), hours=4)
        jobs = service.mark_stale_and_queue(db, [row])
        assert [j.day_start for j in jobs] == [DAY, DAY + ONE_DAY]

    def test_max_jobs_limits_a_pass(self, db, test_user, service):
        rows = [_stay(db, test_user.id, DAY + i * ONE_DAY) for i in range(3)]
        service.mark_stale_and_queue(db, rows)

        assert service.process_pending(max_jobs=2) == 2
        assert service.process_pending() == 1
