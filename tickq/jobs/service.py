from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from tickq.core.clock import Clock, coerce_utc, utc_now
from tickq.core.config import Settings
from tickq.core.logging import get_logger
from tickq.db.models import ACTIVE_JOB_STATUSES, JobLogLevel, JobRun, JobRunLog, JobRunStatus
from tickq.jobs.errors import InvalidJobStateError, JobConflictError, JobNotFoundError
from tickq.jobs.sanitize import sanitize_payload
from tickq.jobs.types import EnqueueResult, JobListResult, JobLogSnapshot, JobSnapshot, JobSummary

logger = get_logger(__name__)

REQUEUEABLE_STATUSES: frozenset[JobRunStatus] = frozenset(
    {JobRunStatus.DEAD_LETTER, JobRunStatus.FAILED, JobRunStatus.CANCELED}
)


def add_job_log(
    session: Session,
    job_id: str,
    level: JobLogLevel,
    message: str,
    meta: dict[str, Any] | None = None,
    *,
    now: datetime,
) -> None:
    session.add(
        JobRunLog(
            job_run_id=job_id,
            level=level,
            message=message,
            meta=sanitize_payload(meta),
            created_at=now,
        )
    )


def job_to_snapshot(job: JobRun) -> JobSnapshot:
    return JobSnapshot(
        id=job.id,
        job_type=job.job_type,
        payload=dict(job.payload or {}),
        priority=job.priority,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        run_after=coerce_utc(job.run_after),
        timeout_seconds=job.timeout_seconds,
        locked_at=coerce_utc(job.locked_at),
        lock_owner=job.lock_owner,
        heartbeat_at=coerce_utc(job.heartbeat_at),
        started_at=coerce_utc(job.started_at),
        finished_at=coerce_utc(job.finished_at),
        cancel_requested_at=coerce_utc(job.cancel_requested_at),
        canceled_at=coerce_utc(job.canceled_at),
        dead_lettered_at=coerce_utc(job.dead_lettered_at),
        dedupe_key=job.dedupe_key,
        result=job.result,
        error_code=job.error_code,
        error_message=job.error_message,
        last_error_at=coerce_utc(job.last_error_at),
        source_type=job.source_type,
        source_id=job.source_id,
        created_by_user_id=job.created_by_user_id,
        created_at=coerce_utc(job.created_at),
        updated_at=coerce_utc(job.updated_at),
    )


class JobService:
    """Enqueue service plus the inspection and manual operations on job rows."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        clock: Clock | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return coerce_utc(self._clock())

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        priority: int | None = None,
        max_attempts: int | None = None,
        timeout_seconds: int | None = None,
        run_after: datetime | None = None,
        dedupe_key: str | None = None,
        source_type: str | None = None,
        source_id: str | None = None,
        created_by_user_id: str | None = None,
    ) -> EnqueueResult:
        normalized_type = job_type.strip()
        if not normalized_type:
            raise ValueError("job_type cannot be blank")
        effective_max_attempts = self._settings.job_default_max_attempts if max_attempts is None else max_attempts
        if effective_max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if timeout_seconds is not None and timeout_seconds < 1:
            raise ValueError("timeout_seconds must be >= 1")
        normalized_dedupe_key = dedupe_key.strip() if dedupe_key else None

        now = self._now()
        with self._session_factory() as session:
            if normalized_dedupe_key:
                existing = self._find_active_by_dedupe_key(session, normalized_dedupe_key)
                if existing is not None:
                    logger.info(
                        "job_deduplicated",
                        job_id=existing.id,
                        job_type=normalized_type,
                        dedupe_key=normalized_dedupe_key,
                    )
                    return EnqueueResult(id=existing.id, status=existing.status, created=False)

            job = JobRun(
                id=str(uuid4()),
                job_type=normalized_type,
                payload=dict(payload or {}),
                priority=self._settings.job_default_priority if priority is None else priority,
                status=JobRunStatus.QUEUED,
                attempts=0,
                max_attempts=effective_max_attempts,
                run_after=coerce_utc(run_after) or now,
                timeout_seconds=timeout_seconds,
                dedupe_key=normalized_dedupe_key,
                source_type=source_type,
                source_id=source_id,
                created_by_user_id=created_by_user_id,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            try:
                session.flush()
                add_job_log(
                    session,
                    job.id,
                    JobLogLevel.INFO,
                    "Job enqueued",
                    {"source_type": source_type, "source_id": source_id},
                    now=now,
                )
                session.commit()
            except IntegrityError:
                session.rollback()
                if not normalized_dedupe_key:
                    raise
                # A concurrent enqueue won the partial unique index; report its row.
                existing = self._find_active_by_dedupe_key(session, normalized_dedupe_key)
                if existing is None:
                    raise
                logger.info(
                    "job_deduplicated",
                    job_id=existing.id,
                    job_type=normalized_type,
                    dedupe_key=normalized_dedupe_key,
                    race=True,
                )
                return EnqueueResult(id=existing.id, status=existing.status, created=False)

            logger.info(
                "job_enqueued",
                job_id=job.id,
                job_type=job.job_type,
                priority=job.priority,
                run_after=job.run_after.isoformat(),
                dedupe_key=normalized_dedupe_key,
            )
            return EnqueueResult(id=job.id, status=JobRunStatus.QUEUED, created=True)

    def _find_active_by_dedupe_key(self, session: Session, dedupe_key: str) -> JobRun | None:
        return session.scalar(
            select(JobRun)
            .where(
                JobRun.dedupe_key == dedupe_key,
                JobRun.status.in_(ACTIVE_JOB_STATUSES),
            )
            .limit(1)
        )

    def get_job(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            job = session.get(JobRun, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return job_to_snapshot(job)

    def list_jobs(
        self,
        *,
        limit: int | None = None,
        cursor: str | None = None,
        status: JobRunStatus | None = None,
        job_type: str | None = None,
    ) -> JobListResult:
        requested = self._settings.default_page_size if limit is None else limit
        bounded_limit = max(1, min(requested, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = select(JobRun).order_by(JobRun.created_at.desc(), JobRun.id.desc()).limit(bounded_limit + 1)
            if status is not None:
                stmt = stmt.where(JobRun.status == status)
            if job_type:
                stmt = stmt.where(JobRun.job_type == job_type)
            if cursor:
                anchor_exists = session.scalar(select(JobRun.id).where(JobRun.id == cursor))
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_created_at = select(JobRun.created_at).where(JobRun.id == cursor).scalar_subquery()
                stmt = stmt.where(
                    or_(
                        JobRun.created_at < anchor_created_at,
                        and_(JobRun.created_at == anchor_created_at, JobRun.id < cursor),
                    )
                )
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return JobListResult(items=[job_to_snapshot(row) for row in items], next_cursor=next_cursor)

    def list_job_logs(self, job_id: str) -> list[JobLogSnapshot]:
        with self._session_factory() as session:
            if session.get(JobRun, job_id) is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            rows = session.scalars(
                select(JobRunLog)
                .where(JobRunLog.job_run_id == job_id)
                .order_by(JobRunLog.created_at.asc(), JobRunLog.id.asc())
            ).all()
            return [
                JobLogSnapshot(
                    id=row.id,
                    job_run_id=row.job_run_id,
                    level=row.level,
                    message=row.message,
                    meta=row.meta,
                    created_at=coerce_utc(row.created_at),
                )
                for row in rows
            ]

    def summary(self) -> JobSummary:
        now = self._now()
        with self._session_factory() as session:
            counts = dict(session.execute(select(JobRun.status, func.count()).group_by(JobRun.status)).all())
            due_now = session.scalar(
                select(func.count())
                .select_from(JobRun)
                .where(JobRun.status == JobRunStatus.QUEUED, JobRun.run_after <= now)
            )
        by_status = {item.value: int(counts.get(item, 0)) for item in JobRunStatus}
        return JobSummary(
            by_status=by_status,
            queue_depth=by_status[JobRunStatus.QUEUED.value] + by_status[JobRunStatus.RUNNING.value],
            due_now=int(due_now or 0),
        )

    def requeue(self, job_id: str) -> JobSnapshot:
        """Return a terminal failed, dead-lettered or canceled row to the queue with a clean error state."""
        now = self._now()
        with self._session_factory() as session:
            job = session.get(JobRun, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            previous_status = job.status
            if previous_status not in REQUEUEABLE_STATUSES:
                raise InvalidJobStateError(f"Job {job_id} cannot be requeued from {previous_status.value}")

            try:
                result = session.execute(
                    update(JobRun)
                    .where(JobRun.id == job_id, JobRun.status == previous_status)
                    .values(
                        status=JobRunStatus.QUEUED,
                        run_after=now,
                        locked_at=None,
                        lock_owner=None,
                        heartbeat_at=None,
                        finished_at=None,
                        dead_lettered_at=None,
                        cancel_requested_at=None,
                        canceled_at=None,
                        error_code=None,
                        error_message=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError as exc:
                session.rollback()
                raise JobConflictError(
                    f"Another active job already holds dedupe key {job.dedupe_key!r}"
                ) from exc
            if result.rowcount != 1:
                session.rollback()
                raise JobConflictError(f"Job {job_id} changed state concurrently")

            add_job_log(
                session,
                job_id,
                JobLogLevel.INFO,
                "Job requeued manually",
                {"previous_status": previous_status.value, "attempts": job.attempts},
                now=now,
            )
            session.commit()
            session.refresh(job)
            logger.info("job_requeued", job_id=job_id, previous_status=previous_status.value)
            return job_to_snapshot(job)

    def request_cancel(self, job_id: str) -> JobSnapshot:
        """Cancel a queued row outright, or flag a running row for its handler to observe."""
        now = self._now()
        with self._session_factory() as session:
            job = session.get(JobRun, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")

            if job.status == JobRunStatus.QUEUED:
                stmt = (
                    update(JobRun)
                    .where(JobRun.id == job_id, JobRun.status == JobRunStatus.QUEUED)
                    .values(status=JobRunStatus.CANCELED, canceled_at=now, finished_at=now, updated_at=now)
                )
                message = "Job canceled before execution"
            elif job.status == JobRunStatus.RUNNING:
                stmt = (
                    update(JobRun)
                    .where(JobRun.id == job_id, JobRun.status == JobRunStatus.RUNNING)
                    .values(cancel_requested_at=now, updated_at=now)
                )
                message = "Cancellation requested"
            else:
                raise InvalidJobStateError(f"Job {job_id} is already {job.status.value}")

            result = session.execute(stmt.execution_options(synchronize_session=False))
            if result.rowcount != 1:
                session.rollback()
                raise JobConflictError(f"Job {job_id} changed state concurrently")
            add_job_log(session, job_id, JobLogLevel.INFO, message, now=now)
            session.commit()
            session.refresh(job)
            logger.info("job_cancel_requested", job_id=job_id, status=job.status.value)
            return job_to_snapshot(job)


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "job_type": snapshot.job_type,
        "payload": snapshot.payload,
        "priority": snapshot.priority,
        "status": snapshot.status.value,
        "attempts": snapshot.attempts,
        "max_attempts": snapshot.max_attempts,
        "run_after": snapshot.run_after,
        "timeout_seconds": snapshot.timeout_seconds,
        "locked_at": snapshot.locked_at,
        "lock_owner": snapshot.lock_owner,
        "heartbeat_at": snapshot.heartbeat_at,
        "started_at": snapshot.started_at,
        "finished_at": snapshot.finished_at,
        "cancel_requested_at": snapshot.cancel_requested_at,
        "canceled_at": snapshot.canceled_at,
        "dead_lettered_at": snapshot.dead_lettered_at,
        "dedupe_key": snapshot.dedupe_key,
        "result": snapshot.result,
        "error_code": snapshot.error_code,
        "error_message": snapshot.error_message,
        "last_error_at": snapshot.last_error_at,
        "source_type": snapshot.source_type,
        "source_id": snapshot.source_id,
        "created_by_user_id": snapshot.created_by_user_id,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
    }
