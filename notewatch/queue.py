"""Durable work queues stored in the relational database.

Jobs live in ``queue_jobs`` and recurring triggers in ``queue_schedules``.
The runtime gives at-least-once delivery: a job is claimed by flipping its
state from ``waiting`` to ``active`` in a single conditional ``UPDATE``, so
only one worker ever runs a given attempt.  Failures are retried with
exponential backoff until ``max_attempts`` is reached.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from notewatch.db.models import JobState, QueueJob, QueueSchedule
from notewatch.db.session import session_scope
from notewatch.payloads import JobPayload, validate_payload
from notewatch.time_utils import Clock, ensure_utc, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 5.0
KEEP_COMPLETED = 10
KEEP_FAILED = 50

_PENDING_STATES = (JobState.WAITING.value, JobState.ACTIVE.value)
_CLAIM_RETRIES = 5


@dataclass(slots=True)
class Job:
    """Snapshot of a queued job."""

    id: str
    queue_name: str
    name: str
    payload: Dict[str, Any]
    state: str
    attempt: int
    max_attempts: int
    backoff_seconds: float
    scheduled_at: datetime
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def typed_payload(self) -> JobPayload:
        return validate_payload(self.queue_name, self.payload)


def _snapshot(row: QueueJob) -> Job:
    return Job(
        id=row.id,
        queue_name=row.queue_name,
        name=row.name,
        payload=dict(row.payload or {}),
        state=row.state,
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        backoff_seconds=row.backoff_seconds,
        scheduled_at=ensure_utc(row.scheduled_at),
        created_at=ensure_utc(row.created_at),
        started_at=ensure_utc(row.started_at) if row.started_at else None,
        finished_at=ensure_utc(row.finished_at) if row.finished_at else None,
        last_error=row.last_error,
        result=row.result,
    )


def backoff_delay(base_seconds: float, attempt: int) -> float:
    """Delay before the attempt following ``attempt`` (1-based)."""

    return base_seconds * (2 ** max(attempt - 1, 0))


class QueueRuntime:
    """Enqueue, claim, settle and schedule jobs for named queues."""

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Clock = utc_now,
        default_attempts: int = DEFAULT_ATTEMPTS,
        default_backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        keep_completed: int = KEEP_COMPLETED,
        keep_failed: int = KEEP_FAILED,
    ) -> None:
        self.engine = engine
        self.clock = clock
        self.default_attempts = default_attempts
        self.default_backoff_seconds = default_backoff_seconds
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        queue: str,
        payload: Any,
        *,
        job_id: Optional[str] = None,
        name: Optional[str] = None,
        delay_seconds: float = 0,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> Job:
        """Add a job to ``queue``.

        The payload is validated against the queue's tagged type before
        anything is written.  When ``job_id`` names a job that is still
        waiting or active, that job is returned instead of a new one; a
        forced request upgrades a waiting job to ``force`` and pulls it
        forward to the earlier of both schedules.  A finished job with the
        same id is reset and queued again.
        """

        typed = validate_payload(queue, payload)
        job_id = job_id or uuid.uuid4().hex
        now = self.clock()
        values = dict(
            queue_name=queue,
            name=name or typed.kind,
            payload=typed.model_dump(mode="json"),
            state=JobState.WAITING.value,
            attempt=0,
            max_attempts=max_attempts or self.default_attempts,
            backoff_seconds=self.default_backoff_seconds if backoff_seconds is None else backoff_seconds,
            scheduled_at=now + timedelta(seconds=max(delay_seconds, 0)),
            created_at=now,
            started_at=None,
            finished_at=None,
            last_error=None,
            result=None,
        )
        try:
            with session_scope(self.engine) as session:
                row = session.get(QueueJob, job_id)
                if row is not None and row.state in _PENDING_STATES:
                    if row.state == JobState.WAITING.value and getattr(typed, "force", False):
                        self._escalate(row, values["scheduled_at"])
                    logger.debug("job_deduplicated", queue=queue, job_id=job_id, state=row.state)
                    return _snapshot(row)
                if row is None:
                    row = QueueJob(id=job_id, **values)
                    session.add(row)
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
                session.flush()
                job = _snapshot(row)
        except IntegrityError:
            # Another producer inserted the same id between our read and write.
            existing = self.get_job(job_id)
            if existing is None:
                raise
            return existing
        logger.info("job_enqueued", queue=queue, job_id=job_id, delay_seconds=delay_seconds)
        return job

    @staticmethod
    def _escalate(row: QueueJob, scheduled_at: datetime) -> None:
        payload = dict(row.payload or {})
        if not payload.get("force"):
            payload["force"] = True
            row.payload = payload
        if scheduled_at < ensure_utc(row.scheduled_at):
            row.scheduled_at = scheduled_at
        logger.info(
            "job_escalated", queue=row.queue_name, job_id=row.id, scheduled_at=ensure_utc(row.scheduled_at).isoformat()
        )

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def claim(self, queue: str) -> Optional[Job]:
        """Move the oldest due waiting job of ``queue`` to ``active``."""

        for _ in range(_CLAIM_RETRIES):
            now = self.clock()
            with session_scope(self.engine) as session:
                candidate = session.execute(
                    sa.select(QueueJob.id)
                    .where(
                        QueueJob.queue_name == queue,
                        QueueJob.state == JobState.WAITING.value,
                        QueueJob.scheduled_at <= now,
                    )
                    .order_by(QueueJob.scheduled_at, QueueJob.created_at)
                    .limit(1)
                ).scalar_one_or_none()
                if candidate is None:
                    return None
                result = session.execute(
                    sa.update(QueueJob)
                    .where(QueueJob.id == candidate, QueueJob.state == JobState.WAITING.value)
                    .values(
                        state=JobState.ACTIVE.value,
                        attempt=QueueJob.attempt + 1,
                        started_at=now,
                    )
                )
                if result.rowcount == 1:
                    row = session.get(QueueJob, candidate, populate_existing=True)
                    return _snapshot(row)
        return None

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> Job:
        with session_scope(self.engine) as session:
            row = self._active_row(session, job_id)
            row.state = JobState.COMPLETED.value
            row.finished_at = self.clock()
            row.result = result
            row.last_error = None
            session.flush()
            job = _snapshot(row)
        self._prune(job.queue_name)
        return job

    def fail(self, job_id: str, error: str, *, retryable: bool = True) -> Job:
        """Record a failed attempt and either reschedule or fail the job."""

        with session_scope(self.engine) as session:
            row = self._active_row(session, job_id)
            row.last_error = error
            now = self.clock()
            if retryable and row.attempt < row.max_attempts:
                row.state = JobState.WAITING.value
                row.scheduled_at = now + timedelta(seconds=backoff_delay(row.backoff_seconds, row.attempt))
            else:
                row.state = JobState.FAILED.value
                row.finished_at = now
            session.flush()
            job = _snapshot(row)
        if job.state == JobState.FAILED.value:
            logger.warning("job_failed", queue=job.queue_name, job_id=job.id, attempt=job.attempt, error=error)
            self._prune(job.queue_name)
        else:
            logger.info(
                "job_retry_scheduled",
                queue=job.queue_name,
                job_id=job.id,
                attempt=job.attempt,
                scheduled_at=job.scheduled_at.isoformat(),
            )
        return job

    @staticmethod
    def _active_row(session: Any, job_id: str) -> QueueJob:
        row = session.get(QueueJob, job_id)
        if row is None:
            raise KeyError(f"Unknown job {job_id!r}")
        if row.state != JobState.ACTIVE.value:
            raise ValueError(f"Job {job_id!r} is {row.state}, not active")
        return row

    def _prune(self, queue: str) -> None:
        for state, keep in ((JobState.COMPLETED.value, self.keep_completed), (JobState.FAILED.value, self.keep_failed)):
            with session_scope(self.engine) as session:
                stale = session.execute(
                    sa.select(QueueJob.id)
                    .where(QueueJob.queue_name == queue, QueueJob.state == state)
                    .order_by(QueueJob.finished_at.desc(), QueueJob.created_at.desc())
                    .offset(keep)
                ).scalars().all()
                if stale:
                    session.execute(sa.delete(QueueJob).where(QueueJob.id.in_(stale)))

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def add_schedule(
        self,
        name: str,
        queue: str,
        payload: Any,
        every_seconds: float,
        *,
        run_immediately: bool = True,
    ) -> None:
        """Create or replace the recurring trigger ``name``."""

        if every_seconds <= 0:
            raise ValueError("every_seconds must be positive")
        typed = validate_payload(queue, payload)
        now = self.clock()
        next_run = now if run_immediately else now + timedelta(seconds=every_seconds)
        with session_scope(self.engine) as session:
            row = session.get(QueueSchedule, name)
            if row is None:
                row = QueueSchedule(name=name)
                session.add(row)
            row.queue_name = queue
            row.payload = typed.model_dump(mode="json")
            row.every_seconds = every_seconds
            row.next_run_at = next_run
        logger.info("schedule_registered", schedule=name, queue=queue, every_seconds=every_seconds)

    def enqueue_due_schedules(self) -> List[Job]:
        """Enqueue every trigger whose next run time has passed."""

        now = self.clock()
        with session_scope(self.engine) as session:
            due = session.execute(
                sa.select(QueueSchedule).where(QueueSchedule.next_run_at <= now)
            ).scalars().all()
            triggers = [(row.name, row.queue_name, dict(row.payload or {})) for row in due]
            for row in due:
                row.next_run_at = now + timedelta(seconds=row.every_seconds)
        return [
            self.enqueue(queue, payload, job_id=f"schedule:{name}", name=name)
            for name, queue, payload in triggers
        ]

    # ------------------------------------------------------------------
    # Inspection and maintenance
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Job]:
        with session_scope(self.engine) as session:
            row = session.get(QueueJob, job_id)
            return _snapshot(row) if row is not None else None

    def list_jobs(self, queue: str, state: Optional[str] = None, limit: int = 50) -> List[Job]:
        with session_scope(self.engine) as session:
            query = sa.select(QueueJob).where(QueueJob.queue_name == queue)
            if state:
                query = query.where(QueueJob.state == state)
            rows = session.execute(query.order_by(QueueJob.created_at.desc()).limit(limit)).scalars()
            return [_snapshot(row) for row in rows]

    def stats(self, queue: str) -> Dict[str, int]:
        """Return waiting/active/completed/failed counts for ``queue``."""

        counts = {state.value: 0 for state in JobState}
        with session_scope(self.engine) as session:
            rows = session.execute(
                sa.select(QueueJob.state, sa.func.count())
                .where(QueueJob.queue_name == queue)
                .group_by(QueueJob.state)
            ).all()
        for state, count in rows:
            counts[state] = int(count)
        return counts

    def all_stats(self, queues: Iterable[str]) -> Dict[str, Dict[str, int]]:
        return {queue: self.stats(queue) for queue in queues}

    def is_idle(self, queues: Iterable[str]) -> bool:
        """``True`` when no job in ``queues`` is active or due to run."""

        now = self.clock()
        with session_scope(self.engine) as session:
            busy = session.execute(
                sa.select(sa.func.count())
                .select_from(QueueJob)
                .where(
                    QueueJob.queue_name.in_(list(queues)),
                    sa.or_(
                        QueueJob.state == JobState.ACTIVE.value,
                        sa.and_(QueueJob.state == JobState.WAITING.value, QueueJob.scheduled_at <= now),
                    ),
                )
            ).scalar_one()
        return busy == 0

    def obliterate(self, queue: str) -> int:
        """Delete every job and schedule of ``queue``; returns the job count removed."""

        with session_scope(self.engine) as session:
            result = session.execute(sa.delete(QueueJob).where(QueueJob.queue_name == queue))
            session.execute(sa.delete(QueueSchedule).where(QueueSchedule.queue_name == queue))
            removed = int(result.rowcount or 0)
        logger.info("queue_obliterated", queue=queue, removed=removed)
        return removed


__all__ = [
    "Job",
    "QueueRuntime",
    "backoff_delay",
    "DEFAULT_ATTEMPTS",
    "DEFAULT_BACKOFF_SECONDS",
    "KEEP_COMPLETED",
    "KEEP_FAILED",
]
