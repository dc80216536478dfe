from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session, sessionmaker

from tickq.core.clock import Clock, coerce_utc, utc_now
from tickq.core.config import Settings
from tickq.core.logging import get_logger
from tickq.db.models import JobLogLevel, JobRun, JobRunStatus
from tickq.jobs.service import add_job_log
from tickq.jobs.types import RecoveryResult

logger = get_logger(__name__)

STALE_LOCK_ERROR_CODE = "STALE_LOCK"
STALE_LOCK_MESSAGE = "Stale lock recovered: runner stopped heartbeating"


class StaleLockRecovery:
    """Returns abandoned ``running`` rows to the queue, or dead-letters them when out of attempts."""

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

    def _stale_predicate(self, cutoff: datetime):
        # A fresh heartbeat keeps a long job alive past its lock age.
        return and_(
            JobRun.status == JobRunStatus.RUNNING,
            or_(JobRun.heartbeat_at.is_(None), JobRun.heartbeat_at < cutoff),
            or_(
                JobRun.locked_at < cutoff,
                and_(
                    JobRun.locked_at.is_(None),
                    or_(JobRun.started_at.is_(None), JobRun.started_at < cutoff),
                ),
            ),
        )

    def recover_stale(self, stale_after_minutes: int | None = None) -> RecoveryResult:
        minutes = stale_after_minutes if stale_after_minutes is not None else self._settings.stale_after_minutes
        if minutes < 1:
            raise ValueError("stale_after_minutes must be >= 1")
        now = self._now()
        cutoff = now - timedelta(minutes=minutes)
        stale = self._stale_predicate(cutoff)

        with self._session_factory() as session:
            requeued_ids = list(
                session.scalars(
                    update(JobRun)
                    .where(stale, JobRun.attempts < JobRun.max_attempts)
                    .values(
                        status=JobRunStatus.QUEUED,
                        run_after=now,
                        locked_at=None,
                        lock_owner=None,
                        heartbeat_at=None,
                        error_code=STALE_LOCK_ERROR_CODE,
                        error_message=STALE_LOCK_MESSAGE,
                        last_error_at=now,
                        updated_at=now,
                    )
                    .returning(JobRun.id)
                    .execution_options(synchronize_session=False)
                ).all()
            )
            dead_lettered_ids = list(
                session.scalars(
                    update(JobRun)
                    .where(stale, JobRun.attempts >= JobRun.max_attempts)
                    .values(
                        status=JobRunStatus.DEAD_LETTER,
                        dead_lettered_at=now,
                        finished_at=now,
                        locked_at=None,
                        lock_owner=None,
                        heartbeat_at=None,
                        error_code=STALE_LOCK_ERROR_CODE,
                        error_message=STALE_LOCK_MESSAGE,
                        last_error_at=now,
                        updated_at=now,
                    )
                    .returning(JobRun.id)
                    .execution_options(synchronize_session=False)
                ).all()
            )
            for job_id in requeued_ids:
                add_job_log(
                    session,
                    job_id,
                    JobLogLevel.WARN,
                    "Stale lock recovered; job requeued",
                    {"stale_after_minutes": minutes},
                    now=now,
                )
            for job_id in dead_lettered_ids:
                add_job_log(
                    session,
                    job_id,
                    JobLogLevel.ERROR,
                    "Stale lock recovered; job dead-lettered (max attempts)",
                    {"stale_after_minutes": minutes},
                    now=now,
                )
            session.commit()

        job_ids = sorted(requeued_ids + dead_lettered_ids)
        if job_ids:
            logger.warning(
                "stale_jobs_recovered",
                requeued=len(requeued_ids),
                dead_lettered=len(dead_lettered_ids),
                job_ids=job_ids,
                stale_after_minutes=minutes,
            )
        return RecoveryResult(
            count=len(job_ids),
            requeued=len(requeued_ids),
            dead_lettered=len(dead_lettered_ids),
            job_ids=job_ids,
        )
