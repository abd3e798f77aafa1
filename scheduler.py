import logging
import threading
import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from services import OfficialCPIService, PersonalCPIService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


@dataclass
class RecomputeTask:
    """Status of one background whole-history recompute."""

    job_id: str
    user_id: int
    state: str = "pending"
    months_processed: Optional[int] = None
    error: Optional[str] = None
    submitted_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def _finish(self, state: str, error: Optional[str] = None) -> None:
        self.state = state
        self.error = error
        self.finished_at = datetime.utcnow()
        self._done.set()


class SchedulerManager:
    def __init__(
        self,
        session_factory: SessionFactory = session_scope,
        *,
        max_workers: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(
            timezone=settings.timezone,
            executors={
                "default": ThreadPoolExecutor(
                    max_workers or settings.recompute_workers
                )
            },
        )
        self.scheduler.add_listener(
            self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED
        )
        self._lock = threading.Lock()
        self._user_locks: dict[int, threading.Lock] = {}
        self._tasks: dict[str, RecomputeTask] = {}
        self._latest: dict[int, str] = {}

    def _user_lock(self, user_id: int) -> threading.Lock:
        with self._lock:
            return self._user_locks.setdefault(user_id, threading.Lock())

    def submit_recompute(self, user_id: int) -> RecomputeTask:
        job_id = f"recompute:{user_id}:{uuid.uuid4().hex[:12]}"
        task = RecomputeTask(job_id=job_id, user_id=user_id)
        with self._lock:
            self._tasks[job_id] = task
            self._latest[user_id] = job_id
            self._prune_finished(user_id)
        self.scheduler.add_job(
            self._run_recompute,
            args=[task],
            id=job_id,
            name=f"recompute user {user_id}",
            misfire_grace_time=None,
        )
        logger.info(f"recompute_submitted: user_id={user_id} job_id={job_id}")
        return task

    def _prune_finished(self, user_id: int) -> None:
        # only the latest task of a user stays visible once the older ones finish;
        # caller holds self._lock
        latest = self._latest.get(user_id)
        stale = [
            job_id
            for job_id, task in self._tasks.items()
            if task.user_id == user_id and job_id != latest and task.done
        ]
        for job_id in stale:
            del self._tasks[job_id]

    def latest_recompute(self, user_id: int) -> Optional[RecomputeTask]:
        with self._lock:
            job_id = self._latest.get(user_id)
            return self._tasks.get(job_id) if job_id else None

    def get_task(self, job_id: str) -> Optional[RecomputeTask]:
        with self._lock:
            return self._tasks.get(job_id)

    def _run_recompute(self, task: RecomputeTask) -> None:
        # one recompute per user at a time; others queue behind the lock
        with self._user_lock(task.user_id):
            task.state = "running"
            task.started_at = datetime.utcnow()
            with self.session_factory() as session:
                months = PersonalCPIService(session).recalculate_all_for_user(
                    task.user_id
                )
            task.months_processed = months

    def _run_ingest(self, source: str = "manual") -> None:
        logger.info(f"official_ingest_run: source={source}")
        with self.session_factory() as session:
            summary = OfficialCPIService(session).fetch_and_store_latest_data()
            logger.info(
                f"official_ingest_run: source={source} "
                f"points_upserted={summary.points_upserted}"
            )

    def _on_job_event(self, event: JobExecutionEvent) -> None:
        task = self.get_task(event.job_id)
        if task is None:
            if event.exception is not None:
                logger.error(f"scheduler_job_failed: job_id={event.job_id}")
            return
        if event.code == EVENT_JOB_EXECUTED:
            state, error = "succeeded", None
            logger.info(
                f"recompute_finished: user_id={task.user_id} "
                f"months={task.months_processed}"
            )
        elif event.code == EVENT_JOB_MISSED:
            state, error = "failed", "job missed its run time"
            logger.error(f"recompute_missed: user_id={task.user_id}")
        else:
            # the executor has already logged the traceback
            state, error = "failed", repr(event.exception)
            logger.error(
                f"recompute_failed: user_id={task.user_id} error={event.exception!r}"
            )
        # finish and prune as one step for concurrent get_task callers
        with self._lock:
            task._finish(state, error)
            self._prune_finished(task.user_id)

    def start(self) -> None:
        settings = get_settings()
        if settings.ingest_schedule_enabled:
            # BLS publishes mid-month; re-ingesting daily is idempotent
            trigger = CronTrigger(hour=6, minute=30)
            self.scheduler.add_job(
                self._run_ingest,
                trigger,
                args=["daily_06:30"],
                id="official_ingest_daily",
                replace_existing=True,
                misfire_grace_time=3600,
            )
        self.scheduler.start()
        logger.info(
            f"Scheduler started: ingest_schedule={settings.ingest_schedule_enabled}"
        )

    def stop(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")
