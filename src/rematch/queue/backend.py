from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rematch.db.base import as_utc, utcnow
from rematch.db.models import QueueJob
from rematch.db.session import SessionLocal
from rematch.errors import NotFoundError

logger = logging.getLogger(__name__)

WORKFLOW_QUEUE = "rematch-workflow"
INDEXING_QUEUE = "rematch-indexing"


class QueueBackend:
    """Durable job queue stored in the ``queue_jobs`` table.

    The job id is the primary key, so enqueuing an id that already exists returns the
    existing row untouched. ``claim`` flips one due row to ``active`` with a guarded
    UPDATE; a worker that loses the race simply tries the next row. Rows left ``active``
    longer than ``stalled_after_sec`` belong to a dead worker and are reclaimed by
    ``recover_stalled``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        backoff_ms: int = 2000,
        keep_completed: int = 100,
        keep_completed_age_sec: int = 3600 * 24 * 7,
        keep_failed: int = 500,
        stalled_after_sec: float = 600.0,
    ):
        self.session_factory = session_factory
        self.backoff_ms = backoff_ms
        self.keep_completed = keep_completed
        self.keep_completed_age_sec = keep_completed_age_sec
        self.keep_failed = keep_failed
        self.stalled_after_sec = stalled_after_sec
        self._listeners: list[Callable[[str], None]] = []
        self._lock = threading.Lock()

    def add_listener(self, callback: Callable[[str], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[str], None]) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def enqueue(
        self,
        queue: str,
        job_id: str,
        payload: dict[str, Any],
        *,
        name: str = "",
        priority: int = 1,
        max_attempts: int = 3,
        delay_ms: int = 0,
    ) -> tuple[QueueJob, bool]:
        """Returns the row and whether it was newly created."""
        with self.session_factory() as session:
            existing = session.get(QueueJob, job_id)
            if existing is not None:
                logger.info("Queue job already exists queue=%s id=%s status=%s", queue, job_id, existing.status)
                return existing, False

            job = QueueJob(
                id=job_id,
                queue=queue,
                name=name,
                payload_json=payload,
                priority=priority,
                status="delayed" if delay_ms > 0 else "waiting",
                attempts=0,
                max_attempts=max(1, max_attempts),
                available_at=utcnow() + timedelta(milliseconds=delay_ms),
                result_json={},
            )
            session.add(job)
            try:
                session.commit()
            except IntegrityError:
                # Lost an insert race for the same id.
                session.rollback()
                existing = session.get(QueueJob, job_id)
                if existing is None:
                    raise
                return existing, False
            session.refresh(job)

        logger.info("Enqueued job queue=%s id=%s priority=%s", queue, job_id, priority)
        self._notify(queue)
        return job, True

    def claim(self, queue: str) -> QueueJob | None:
        now = utcnow()
        with self.session_factory() as session:
            statement = (
                select(QueueJob.id)
                .where(
                    and_(
                        QueueJob.queue == queue,
                        QueueJob.status.in_(("waiting", "delayed")),
                        QueueJob.available_at <= now,
                    )
                )
                .order_by(QueueJob.priority.asc(), QueueJob.available_at.asc(), QueueJob.created_at.asc())
                .limit(5)
            )
            for job_id in session.scalars(statement).all():
                result = session.execute(
                    update(QueueJob)
                    .where(and_(QueueJob.id == job_id, QueueJob.status.in_(("waiting", "delayed"))))
                    .values(status="active", attempts=QueueJob.attempts + 1, started_at=now)
                )
                session.commit()
                if result.rowcount == 1:
                    job = session.get(QueueJob, job_id)
                    session.refresh(job)
                    logger.debug("Claimed job queue=%s id=%s attempt=%s", queue, job_id, job.attempts)
                    return job
        return None

    def complete(self, job_id: str, result: dict[str, Any] | None = None) -> QueueJob:
        with self.session_factory() as session:
            job = self._require(session, job_id)
            job.status = "completed"
            job.result_json = result or {}
            job.last_error = None
            job.finished_at = utcnow()
            session.commit()
            session.refresh(job)
        self.prune(job.queue)
        return job

    def fail(self, job_id: str, error: str) -> QueueJob:
        """Record a failed attempt: schedule a retry with exponential backoff or give up."""
        with self.session_factory() as session:
            job = self._require(session, job_id)
            job.last_error = error
            if job.attempts < job.max_attempts:
                delay = self.backoff_delay_ms(job.attempts)
                job.status = "delayed"
                job.available_at = utcnow() + timedelta(milliseconds=delay)
                logger.warning(
                    "Job attempt failed queue=%s id=%s attempt=%s/%s retry_in_ms=%s error=%s",
                    job.queue,
                    job.id,
                    job.attempts,
                    job.max_attempts,
                    delay,
                    error,
                )
            else:
                job.status = "failed"
                job.finished_at = utcnow()
                logger.error(
                    "Job failed permanently queue=%s id=%s attempts=%s error=%s",
                    job.queue,
                    job.id,
                    job.attempts,
                    error,
                )
            session.commit()
            session.refresh(job)

        if job.status == "failed":
            self.prune(job.queue)
        return job

    def recover_stalled(self, queue: str, *, now: datetime | None = None) -> list[QueueJob]:
        """Reschedule or fail active jobs whose worker stopped reporting.

        Returns the jobs that were failed because no attempts remain.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.stalled_after_sec)
        exhausted: list[QueueJob] = []
        with self.session_factory() as session:
            stalled = session.scalars(
                select(QueueJob).where(
                    and_(QueueJob.queue == queue, QueueJob.status == "active", QueueJob.started_at < cutoff)
                )
            ).all()
            for job in stalled:
                job.last_error = f"stalled: no result within {self.stalled_after_sec:g}s"
                if job.attempts < job.max_attempts:
                    job.status = "delayed"
                    job.available_at = now + timedelta(milliseconds=self.backoff_delay_ms(job.attempts))
                    logger.warning(
                        "Stalled job rescheduled queue=%s id=%s attempt=%s/%s",
                        queue,
                        job.id,
                        job.attempts,
                        job.max_attempts,
                    )
                else:
                    job.status = "failed"
                    job.finished_at = now
                    exhausted.append(job)
                    logger.error(
                        "Stalled job failed permanently queue=%s id=%s attempts=%s", queue, job.id, job.attempts
                    )
            session.commit()

        if exhausted:
            self.prune(queue)
        return exhausted

    def backoff_delay_ms(self, attempts: int) -> int:
        return self.backoff_ms * 2 ** max(0, attempts - 1)

    def next_due_in(self, queue: str) -> float | None:
        """Seconds until the earliest delayed job becomes claimable."""
        with self.session_factory() as session:
            earliest = session.scalar(
                select(func.min(QueueJob.available_at)).where(
                    and_(QueueJob.queue == queue, QueueJob.status.in_(("waiting", "delayed")))
                )
            )
        if earliest is None:
            return None
        return max(0.0, (as_utc(earliest) - utcnow()).total_seconds())

    def get(self, job_id: str) -> QueueJob | None:
        with self.session_factory() as session:
            return session.get(QueueJob, job_id)

    def counts(self, queue: str) -> dict[str, int]:
        with self.session_factory() as session:
            rows = session.execute(
                select(QueueJob.status, func.count(QueueJob.id)).where(QueueJob.queue == queue).group_by(QueueJob.status)
            ).all()
        counts = {"waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 0}
        counts.update({status: count for status, count in rows})
        return counts

    def prune(self, queue: str, *, now: datetime | None = None) -> int:
        """Apply retention: newest N completed (within max age) and newest M failed survive."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.keep_completed_age_sec)
        removed = 0
        with self.session_factory() as session:
            removed += session.execute(
                delete(QueueJob).where(
                    and_(QueueJob.queue == queue, QueueJob.status == "completed", QueueJob.finished_at < cutoff)
                )
            ).rowcount or 0
            for status, keep in (("completed", self.keep_completed), ("failed", self.keep_failed)):
                stale = session.scalars(
                    select(QueueJob.id)
                    .where(and_(QueueJob.queue == queue, QueueJob.status == status))
                    .order_by(QueueJob.finished_at.desc(), QueueJob.id.desc())
                    .offset(keep)
                ).all()
                if stale:
                    removed += session.execute(delete(QueueJob).where(QueueJob.id.in_(stale))).rowcount or 0
            session.commit()

        if removed:
            logger.debug("Pruned queue=%s rows=%s", queue, removed)
        return removed

    def _require(self, session: Session, job_id: str) -> QueueJob:
        job = session.get(QueueJob, job_id)
        if job is None:
            raise NotFoundError(f"queue job {job_id} not found")
        return job

    def _notify(self, queue: str) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(queue)
            except Exception:
                logger.exception("Queue listener failed queue=%s", queue)
