"""Background regeneration of timeline days whose inputs changed.

When a favorite or a user's timeline settings change, the affected events
are flagged stale and one job per (user, UTC day) is queued. A worker thread
drains the queue: delete the day's events, run the overnight processor, and
record the outcome on the job. Job records live in a bounded in-memory store.
"""

import datetime
import heapq
import itertools
import logging
import threading
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

import repository
from errors import PersistenceConflict
from geo import haversine_m
from models import TimelineDataGap, TimelineStay, TimelineTrip
from timeline_types import ONE_DAY, end_of_day, start_of_day, utcnow

logger = logging.getLogger(__name__)

MAX_JOBS_IN_MEMORY = 1000
JOB_RETENTION = datetime.timedelta(hours=24)
WORKER_POLL_S = 5.0


class JobStatus:
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    TERMINAL = (COMPLETED, FAILED)


@dataclass
class RegenerationJob:
    job_id: str
    user_id: int
    day_start: datetime.datetime
    day_end: datetime.datetime
    status: str = JobStatus.QUEUED
    created_at: Optional[datetime.datetime] = None
    started_at: Optional[datetime.datetime] = None
    finished_at: Optional[datetime.datetime] = None
    attempts: int = 0
    error_message: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.user_id, self.day_start)


class JobStore:
    """Bounded job map: insertion-ordered by id, plus a min-heap of terminal jobs.

    Terminal jobs past the retention window are dropped on every insert; when
    the store is still over capacity the oldest-finished terminal job goes
    next. Active jobs are never evicted.
    """

    def __init__(
        self, max_jobs: int = MAX_JOBS_IN_MEMORY, retention: datetime.timedelta = JOB_RETENTION,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.max_jobs = max_jobs
        self.retention = retention
        self.clock = clock
        self._jobs: "OrderedDict[str, RegenerationJob]" = OrderedDict()
        self._terminal: list = []  # (finished_at, seq, job_id)
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._jobs)

    def get(self, job_id: str) -> Optional[RegenerationJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def add(self, job: RegenerationJob):
        with self._lock:
            self._jobs[job.job_id] = job
            self._evict()

    def mark_terminal(self, job: RegenerationJob):
        with self._lock:
            heapq.heappush(self._terminal, (job.finished_at, next(self._seq), job.job_id))
            self._evict()

    def _evict(self):
        cutoff = self.clock() - self.retention
        while self._terminal:
            finished_at, _, job_id = self._terminal[0]
            over_capacity = len(self._jobs) > self.max_jobs
            if finished_at >= cutoff and not over_capacity:
                break
            heapq.heappop(self._terminal)
            if self._jobs.pop(job_id, None) is not None:
                logger.debug("Evicted job %s (finished %s)", job_id, finished_at)
        if len(self._jobs) > self.max_jobs:
            logger.warning("Job store holds %d active jobs, above limit %d", len(self._jobs), self.max_jobs)

    def stats(self) -> dict:
        with self._lock:
            counts = {status: 0 for status in (JobStatus.QUEUED, JobStatus.RUNNING, *JobStatus.TERMINAL)}
            for job in self._jobs.values():
                counts[job.status] += 1
            return counts


class TimelineInvalidationService:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        processor_factory: Callable[[Session], object],
        store: Optional[JobStore] = None,
    ):
        self.session_factory = session_factory
        self.processor_factory = processor_factory
        self.store = store or JobStore()
        self._pending: deque = deque()
        self._queued_keys: dict = {}
        self._lock = threading.Lock()
        self._wakeup = threading.Event()

    # -----------------------------------------------------------------------
    # Producers
    # -----------------------------------------------------------------------

    def mark_stale_and_queue(self, db: Session, events: Iterable) -> list[RegenerationJob]:
        """Flag event rows stale and queue one regeneration job per (user, day).

        A row spanning midnight queues every day it touches. Jobs are queued
        oldest day first so a later day can re-extend the event that crosses
        into it.
        """
        now = utcnow()
        keys = set()
        for row in events:
            row.is_stale = True
            row.last_updated = now
            day = start_of_day(row.start_time)
            while day <= row.end_time:
                keys.add((row.user_id, day))
                day += ONE_DAY
        db.commit()

        jobs = []
        with self._lock:
            for user_id, day_start in sorted(keys):
                existing = self._queued_keys.get((user_id, day_start))
                if existing is not None:
                    jobs.append(existing)
                    continue
                job = RegenerationJob(
                    job_id=str(uuid.uuid4()),
                    user_id=user_id,
                    day_start=day_start,
                    day_end=end_of_day(day_start),
                    created_at=now,
                )
                self.store.add(job)
                self._pending.append(job)
                self._queued_keys[job.key] = job
                jobs.append(job)
        if jobs:
            logger.info("Queued %d timeline regeneration job(s)", len(jobs))
            self._wakeup.set()
        return jobs

    def on_favorite_changed(self, db: Session, favorite) -> list[RegenerationJob]:
        """Invalidate stays named after the favorite or lying inside its radius."""
        stays = db.query(TimelineStay).filter(TimelineStay.user_id == favorite.user_id).all()
        affected = [
            s for s in stays
            if s.favorite_id == favorite.id
            or haversine_m(s.latitude, s.longitude, favorite.latitude, favorite.longitude) <= (favorite.radius_m or 0)
        ]
        return self.mark_stale_and_queue(db, affected)

    def on_config_changed(self, db: Session, user_id: int) -> list[RegenerationJob]:
        rows = []
        for model in (TimelineStay, TimelineTrip, TimelineDataGap):
            rows.extend(db.query(model).filter(model.user_id == user_id).all())
        return self.mark_stale_and_queue(db, rows)

    def get_job(self, job_id: str) -> Optional[RegenerationJob]:
        return self.store.get(job_id)

    # -----------------------------------------------------------------------
    # Worker
    # -----------------------------------------------------------------------

    def process_pending(self, max_jobs: Optional[int] = None) -> int:
        """Run queued jobs until the queue is empty (or ``max_jobs`` ran)."""
        ran = 0
        while max_jobs is None or ran < max_jobs:
            with self._lock:
                if not self._pending:
                    break
                job = self._pending.popleft()
                self._queued_keys.pop(job.key, None)
            self._run(job)
            ran += 1
        return ran

    def _run(self, job: RegenerationJob):
        job.status = JobStatus.RUNNING
        job.started_at = utcnow()
        db = self.session_factory()
        try:
            for attempt in (1, 2):
                job.attempts = attempt
                try:
                    repository.delete_events_in_range(db, job.user_id, job.day_start, job.day_end)
                    self.processor_factory(db).process_time_range(job.user_id, job.day_start, job.day_end)
                    job.status = JobStatus.COMPLETED
                    break
                except PersistenceConflict as e:
                    db.rollback()
                    job.error_message = str(e)
                    logger.warning("Job %s conflict on attempt %d: %s", job.job_id, attempt, e)
            else:
                job.status = JobStatus.FAILED
        except Exception as e:
            db.rollback()
            job.status = JobStatus.FAILED
            job.error_message = str(e)
            logger.exception("Regeneration job %s failed", job.job_id)
        finally:
            db.close()

        if job.status == JobStatus.COMPLETED:
            job.error_message = None
        job.finished_at = utcnow()
        self.store.mark_terminal(job)
        logger.info(
            "Job %s user=%d day=%s finished %s", job.job_id, job.user_id, job.day_start.date(), job.status,
        )

    def run_forever(self, stop: threading.Event):
        while not stop.is_set():
            self.process_pending()
            self._wakeup.wait(WORKER_POLL_S)
            self._wakeup.clear()

    def start_worker(self) -> threading.Event:
        stop = threading.Event()
        threading.Thread(target=self.run_forever, args=(stop,), name="timeline-invalidation", daemon=True).start()
        return stop


_service: Optional[TimelineInvalidationService] = None
_service_lock = threading.Lock()


def get_invalidation_service() -> TimelineInvalidationService:
    global _service
    with _service_lock:
        if _service is None:
            from database import SessionLocal
            from geocoding import build_resolver
            from geocoding_providers import get_provider_chain
            from timeline_service import build_processor

            _service = TimelineInvalidationService(
                SessionLocal, lambda db: build_processor(db, build_resolver(db, get_provider_chain())),
            )
        return _service
