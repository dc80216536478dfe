"""Claim & execute runner.

A run is a short-lived pass: claim up to ``limit`` due rows, execute each one
against its registered handler, and resolve the row. Every status change is a
conditional update on the row's current status and lease owner, so concurrent
runners never share a row and a runner that lost its lease cannot overwrite the
state recovery or another runner has written since.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import socket
import threading
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from tickq.core.clock import Clock, coerce_utc, utc_now
from tickq.core.config import Settings
from tickq.core.logging import get_logger
from tickq.db.models import JobLogLevel, JobRun, JobRunStatus
from tickq.jobs.backoff import next_run_after
from tickq.jobs.errors import JobCanceledError, JobTimeoutError
from tickq.jobs.registry import HandlerRegistry, JobContext, JobHandler, job_registry
from tickq.jobs.sanitize import error_code_for, sanitize_error_message, sanitize_payload
from tickq.jobs.service import add_job_log
from tickq.jobs.types import ClaimedJob, JobOutcome, RunResult

logger = get_logger(__name__)


def generate_runner_id(prefix: str | None = None) -> str:
    base = f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"
    return f"{prefix}-{base}" if prefix else base


class JobRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        registry: HandlerRegistry | None = None,
        clock: Clock | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._registry = registry if registry is not None else job_registry
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return coerce_utc(self._clock())

    def _bounded_limit(self, limit: int | None) -> int:
        requested = self._settings.run_default_limit if limit is None else limit
        return max(0, min(requested, self._settings.run_max_limit))

    def run_once(self, limit: int | None = None, runner_id: str | None = None) -> RunResult:
        effective_runner_id = (runner_id or "").strip() or generate_runner_id()
        result = RunResult(runner_id=effective_runner_id)
        bounded_limit = self._bounded_limit(limit)
        if bounded_limit == 0:
            return result

        claimed = self.claim(bounded_limit, effective_runner_id)
        result.claimed = len(claimed)
        for job in claimed:
            try:
                outcome = self.execute(job, effective_runner_id)
            except Exception:
                # The row stays running until stale-lock recovery; the rest of the batch still runs.
                logger.exception("job_resolution_failed", job_id=job.id, job_type=job.job_type)
                outcome = JobOutcome.LOST
            result.record(outcome)

        logger.info(
            "run_once_finished",
            runner_id=effective_runner_id,
            claimed=result.claimed,
            succeeded=result.succeeded,
            retried=result.retried,
            dead_lettered=result.dead_lettered,
            canceled=result.canceled,
            failed=result.failed,
        )
        return result

    def claim(self, limit: int, runner_id: str) -> list[ClaimedJob]:
        """Claim up to ``limit`` due rows, one compare-and-swap on ``status='queued'`` per row."""
        now = self._now()
        with self._session_factory() as session:
            candidate_ids = list(
                session.scalars(
                    select(JobRun.id)
                    .where(JobRun.status == JobRunStatus.QUEUED, JobRun.run_after <= now)
                    .order_by(JobRun.priority.desc(), JobRun.created_at.asc(), JobRun.id.asc())
                    .limit(limit * 2)
                ).all()
            )

        claimed: list[ClaimedJob] = []
        for job_id in candidate_ids:
            if len(claimed) >= limit:
                break
            job = self._claim_one(job_id, runner_id, now)
            if job is not None:
                claimed.append(job)

        if claimed:
            logger.info(
                "jobs_claimed",
                runner_id=runner_id,
                job_count=len(claimed),
                job_ids=[job.id for job in claimed],
            )
        return claimed

    def _claim_one(self, job_id: str, runner_id: str, now: datetime) -> ClaimedJob | None:
        with self._session_factory() as session:
            row = session.execute(
                update(JobRun)
                .where(
                    JobRun.id == job_id,
                    JobRun.status == JobRunStatus.QUEUED,
                    JobRun.run_after <= now,
                )
                .values(
                    status=JobRunStatus.RUNNING,
                    locked_at=now,
                    lock_owner=runner_id,
                    heartbeat_at=None,
                    started_at=now,
                    finished_at=None,
                    attempts=JobRun.attempts + 1,
                    updated_at=now,
                )
                .returning(
                    JobRun.id,
                    JobRun.job_type,
                    JobRun.payload,
                    JobRun.attempts,
                    JobRun.max_attempts,
                    JobRun.timeout_seconds,
                    JobRun.cancel_requested_at,
                )
                .execution_options(synchronize_session=False)
            ).one_or_none()
            if row is None:
                # Another runner claimed it, or it was canceled, since the candidate read.
                session.rollback()
                return None
            add_job_log(
                session,
                job_id,
                JobLogLevel.INFO,
                f"Claimed (attempt {row.attempts}/{row.max_attempts})",
                {"runner_id": runner_id},
                now=now,
            )
            session.commit()
            return ClaimedJob(
                id=row.id,
                job_type=row.job_type,
                payload=dict(row.payload or {}),
                attempts=row.attempts,
                max_attempts=row.max_attempts,
                timeout_seconds=row.timeout_seconds,
                cancel_requested_at=coerce_utc(row.cancel_requested_at),
            )

    def execute(self, job: ClaimedJob, runner_id: str) -> JobOutcome:
        """Run one claimed job and resolve its row; handler errors never propagate."""
        job_logger = logger.bind(job_id=job.id, job_type=job.job_type, runner_id=runner_id)

        if job.cancel_requested_at is not None:
            return self._resolve_canceled(job, runner_id, "Job canceled (requested before start)")

        context = JobContext(
            job_id=job.id,
            job_type=job.job_type,
            payload=job.payload,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            runner_id=runner_id,
            _heartbeat=lambda: self._heartbeat(job.id, runner_id),
            _cancel_check=lambda: self._is_cancel_requested(job.id),
        )
        timeout_seconds = job.timeout_seconds or self._settings.job_default_timeout_seconds

        try:
            handler = self._registry.get(job.job_type)
            job_logger.info("job_started", attempt=job.attempts, timeout_seconds=timeout_seconds)
            outcome_value = self._invoke(handler, context, timeout_seconds)
        except JobCanceledError as exc:
            job_logger.info("job_canceled_by_handler")
            return self._resolve_canceled(job, runner_id, sanitize_error_message(exc))
        except (KeyboardInterrupt, SystemExit):
            raise
        except BaseException as exc:
            # Includes asyncio.CancelledError raised from handler code.
            job_logger.warning("job_failed", error=sanitize_error_message(exc), error_code=error_code_for(exc))
            return self._resolve_failure(job, runner_id, exc)

        return self._resolve_success(job, runner_id, outcome_value)

    def _invoke(self, handler: JobHandler, context: JobContext, timeout_seconds: int) -> Any:
        if inspect.iscoroutinefunction(handler):
            return asyncio.run(self._invoke_async(handler, context, timeout_seconds))

        # Sync handlers cannot be interrupted; on timeout the daemon thread is abandoned and the row resolved.
        outcome: dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["value"] = handler(context)
            except BaseException as exc:
                outcome["error"] = exc

        thread = threading.Thread(target=target, name=f"tickq-job-{context.job_id[:8]}", daemon=True)
        thread.start()
        thread.join(timeout_seconds)
        if thread.is_alive():
            raise JobTimeoutError(f"Job timed out after {timeout_seconds}s")
        if "error" in outcome:
            raise outcome["error"]
        value = outcome.get("value")
        if inspect.isawaitable(value):
            return asyncio.run(self._await_with_timeout(value, timeout_seconds))
        return value

    async def _invoke_async(self, handler: JobHandler, context: JobContext, timeout_seconds: int) -> Any:
        return await self._await_with_timeout(handler(context), timeout_seconds)

    async def _await_with_timeout(self, awaitable: Any, timeout_seconds: int) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
        except asyncio.TimeoutError:
            raise JobTimeoutError(f"Job timed out after {timeout_seconds}s") from None

    def _owned(self, job_id: str, runner_id: str) -> Any:
        return (
            update(JobRun)
            .where(
                JobRun.id == job_id,
                JobRun.status == JobRunStatus.RUNNING,
                JobRun.lock_owner == runner_id,
            )
            .execution_options(synchronize_session=False)
        )

    def _lost_lease(self, session: Session, job: ClaimedJob, runner_id: str, intended: str) -> JobOutcome:
        session.rollback()
        logger.warning(
            "job_lease_lost",
            job_id=job.id,
            job_type=job.job_type,
            runner_id=runner_id,
            intended_outcome=intended,
        )
        return JobOutcome.LOST

    def _resolve_success(self, job: ClaimedJob, runner_id: str, value: Any) -> JobOutcome:
        now = self._now()
        result_json = sanitize_payload(value)
        with self._session_factory() as session:
            result = session.execute(
                self._owned(job.id, runner_id).values(
                    status=JobRunStatus.SUCCEEDED,
                    finished_at=now,
                    result=result_json,
                    locked_at=None,
                    lock_owner=None,
                    heartbeat_at=now,
                    error_code=None,
                    error_message=None,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                return self._lost_lease(session, job, runner_id, JobOutcome.SUCCEEDED.value)
            add_job_log(
                session,
                job.id,
                JobLogLevel.INFO,
                "Job succeeded",
                {"result_keys": sorted(result_json) if result_json else []},
                now=now,
            )
            session.commit()
        logger.info("job_succeeded", job_id=job.id, job_type=job.job_type, attempt=job.attempts)
        return JobOutcome.SUCCEEDED

    def _resolve_canceled(self, job: ClaimedJob, runner_id: str, message: str) -> JobOutcome:
        now = self._now()
        with self._session_factory() as session:
            result = session.execute(
                self._owned(job.id, runner_id).values(
                    status=JobRunStatus.CANCELED,
                    canceled_at=now,
                    finished_at=now,
                    locked_at=None,
                    lock_owner=None,
                    heartbeat_at=None,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                return self._lost_lease(session, job, runner_id, JobOutcome.CANCELED.value)
            add_job_log(session, job.id, JobLogLevel.INFO, message, now=now)
            session.commit()
        logger.info("job_canceled", job_id=job.id, job_type=job.job_type)
        return JobOutcome.CANCELED

    def _resolve_failure(self, job: ClaimedJob, runner_id: str, error: BaseException) -> JobOutcome:
        now = self._now()
        error_message = sanitize_error_message(error)
        error_code = error_code_for(error)

        if job.attempts < job.max_attempts:
            run_after = next_run_after(
                now,
                job.attempts,
                base_seconds=self._settings.job_retry_base_seconds,
                max_seconds=self._settings.job_retry_max_seconds,
                jitter_ratio=self._settings.job_retry_jitter_ratio,
            )
            values: dict[str, Any] = {
                "status": JobRunStatus.QUEUED,
                "run_after": run_after,
                "locked_at": None,
                "lock_owner": None,
                "heartbeat_at": None,
            }
            outcome = JobOutcome.RETRIED
            level = JobLogLevel.WARN
            message = f"Retry scheduled (attempt {job.attempts}/{job.max_attempts})"
            meta: dict[str, Any] = {"error": error_message, "run_after": run_after.isoformat()}
        else:
            values = {
                "status": JobRunStatus.DEAD_LETTER,
                "dead_lettered_at": now,
                "finished_at": now,
                "locked_at": None,
                "lock_owner": None,
                "heartbeat_at": None,
            }
            outcome = JobOutcome.DEAD_LETTERED
            level = JobLogLevel.ERROR
            message = "Job dead-lettered (max attempts)"
            meta = {"error": error_message}

        values.update(error_message=error_message, error_code=error_code, last_error_at=now, updated_at=now)
        with self._session_factory() as session:
            result = session.execute(self._owned(job.id, runner_id).values(**values))
            if result.rowcount != 1:
                return self._lost_lease(session, job, runner_id, outcome.value)
            add_job_log(session, job.id, level, message, meta, now=now)
            session.commit()

        logger.info(
            "job_failure_resolved",
            job_id=job.id,
            job_type=job.job_type,
            outcome=outcome.value,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            error_code=error_code,
        )
        return outcome

    def _heartbeat(self, job_id: str, runner_id: str) -> bool:
        now = self._now()
        with self._session_factory() as session:
            result = session.execute(self._owned(job_id, runner_id).values(heartbeat_at=now, updated_at=now))
            session.commit()
            return result.rowcount == 1

    def _is_cancel_requested(self, job_id: str) -> bool:
        with self._session_factory() as session:
            row = session.execute(
                select(JobRun.status, JobRun.cancel_requested_at).where(JobRun.id == job_id)
            ).one_or_none()
        if row is None:
            return True
        return row.cancel_requested_at is not None or row.status == JobRunStatus.CANCELED
