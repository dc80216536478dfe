from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from tickq.core.clock import Clock, coerce_utc, utc_now
from tickq.core.config import Settings
from tickq.core.logging import get_logger
from tickq.db.models import CadenceType, JobSchedule
from tickq.jobs.service import JobService
from tickq.schedules.cadence import Cadence, compute_next_run_at, validate_cadence
from tickq.schedules.types import EnqueueDueResult, ScheduleSnapshot

logger = get_logger(__name__)

SCHEDULE_SOURCE_TYPE = "schedule"

_CADENCE_FIELDS = frozenset(
    {"cadence_type", "interval_minutes", "day_of_week", "day_of_month", "hour", "minute", "timezone"}
)
_UPDATABLE_FIELDS = _CADENCE_FIELDS | {
    "title",
    "description",
    "job_type",
    "is_enabled",
    "payload_template",
    "priority",
    "max_attempts",
    "timeout_seconds",
}


class ScheduleNotFoundError(RuntimeError):
    pass


class ScheduleConflictError(RuntimeError):
    pass


def schedule_dedupe_key(key: str, due_at: datetime) -> str:
    return f"schedule:{key}:{coerce_utc(due_at).isoformat()}"


def schedule_to_snapshot(schedule: JobSchedule) -> ScheduleSnapshot:
    return ScheduleSnapshot(
        id=schedule.id,
        key=schedule.key,
        title=schedule.title,
        description=schedule.description,
        job_type=schedule.job_type,
        is_enabled=schedule.is_enabled,
        cadence_type=CadenceType(schedule.cadence_type),
        interval_minutes=schedule.interval_minutes,
        day_of_week=schedule.day_of_week,
        day_of_month=schedule.day_of_month,
        hour=schedule.hour,
        minute=schedule.minute,
        timezone=schedule.timezone,
        payload_template=schedule.payload_template,
        priority=schedule.priority,
        max_attempts=schedule.max_attempts,
        timeout_seconds=schedule.timeout_seconds,
        next_run_at=coerce_utc(schedule.next_run_at),
        last_due_at=coerce_utc(schedule.last_due_at),
        last_enqueued_at=coerce_utc(schedule.last_enqueued_at),
        last_run_job_id=schedule.last_run_job_id,
        created_at=coerce_utc(schedule.created_at),
        updated_at=coerce_utc(schedule.updated_at),
    )


class ScheduleService:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        clock: Clock | None = None,
        job_service: JobService | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._clock = clock or utc_now
        self._job_service = job_service or JobService(settings, session_factory, clock=self._clock)

    def _now(self) -> datetime:
        return coerce_utc(self._clock())

    def _validate_job_fields(self, *, job_type: str, max_attempts: int, timeout_seconds: int | None) -> None:
        if not job_type.strip():
            raise ValueError("job_type cannot be blank")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if timeout_seconds is not None and timeout_seconds < 1:
            raise ValueError("timeout_seconds must be >= 1")

    def create_schedule(
        self,
        *,
        key: str,
        title: str,
        job_type: str,
        cadence_type: CadenceType,
        description: str | None = None,
        is_enabled: bool = True,
        interval_minutes: int | None = None,
        day_of_week: int | None = None,
        day_of_month: int | None = None,
        hour: int | None = None,
        minute: int | None = None,
        timezone: str | None = None,
        payload_template: dict[str, Any] | None = None,
        priority: int | None = None,
        max_attempts: int | None = None,
        timeout_seconds: int | None = None,
    ) -> ScheduleSnapshot:
        normalized_key = key.strip()
        if not normalized_key:
            raise ValueError("key cannot be blank")
        effective_max_attempts = self._settings.job_default_max_attempts if max_attempts is None else max_attempts
        self._validate_job_fields(
            job_type=job_type, max_attempts=effective_max_attempts, timeout_seconds=timeout_seconds
        )
        cadence = validate_cadence(
            Cadence(
                cadence_type=CadenceType(cadence_type),
                interval_minutes=interval_minutes,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                hour=hour,
                minute=minute,
                timezone=timezone,
            )
        )

        now = self._now()
        schedule = JobSchedule(
            id=str(uuid4()),
            key=normalized_key,
            title=title.strip() or normalized_key,
            description=description,
            job_type=job_type.strip(),
            is_enabled=is_enabled,
            cadence_type=cadence.cadence_type,
            interval_minutes=interval_minutes,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
            hour=hour,
            minute=minute,
            timezone=timezone,
            payload_template=dict(payload_template) if payload_template else None,
            priority=self._settings.job_default_priority if priority is None else priority,
            max_attempts=effective_max_attempts,
            timeout_seconds=timeout_seconds,
            next_run_at=compute_next_run_at(cadence, now) if is_enabled else None,
            created_at=now,
            updated_at=now,
        )
        with self._session_factory() as session:
            session.add(schedule)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ScheduleConflictError(f"Schedule key already exists: {normalized_key}") from exc
            session.refresh(schedule)
            logger.info(
                "schedule_created",
                schedule_id=schedule.id,
                schedule_key=schedule.key,
                cadence_type=cadence.cadence_type.value,
                next_run_at=schedule.next_run_at.isoformat() if schedule.next_run_at else None,
            )
            return schedule_to_snapshot(schedule)

    def update_schedule(self, schedule_id: str, **changes: Any) -> ScheduleSnapshot:
        """Apply a partial update; only keys present in ``changes`` are written."""
        unknown = sorted(set(changes) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown schedule fields: {', '.join(unknown)}")

        now = self._now()
        with self._session_factory() as session:
            schedule = session.get(JobSchedule, schedule_id)
            if schedule is None:
                raise ScheduleNotFoundError(f"Schedule not found: {schedule_id}")
            was_enabled = schedule.is_enabled

            for name, value in changes.items():
                if name in ("job_type", "title"):
                    if value is None or not str(value).strip():
                        raise ValueError(f"{name} cannot be blank")
                    value = str(value).strip()
                elif name == "is_enabled" and value is None:
                    raise ValueError("is_enabled cannot be null")
                elif name == "cadence_type":
                    if value is None:
                        raise ValueError("cadence_type cannot be null")
                    value = CadenceType(value)
                elif name == "priority" and value is None:
                    value = self._settings.job_default_priority
                elif name == "max_attempts" and value is None:
                    value = self._settings.job_default_max_attempts
                setattr(schedule, name, value)

            self._validate_job_fields(
                job_type=schedule.job_type,
                max_attempts=schedule.max_attempts,
                timeout_seconds=schedule.timeout_seconds,
            )
            cadence = validate_cadence(Cadence.from_schedule(schedule))

            cadence_changed = bool(_CADENCE_FIELDS & set(changes))
            re_enabled = schedule.is_enabled and not was_enabled
            if schedule.is_enabled and (cadence_changed or re_enabled or schedule.next_run_at is None):
                schedule.next_run_at = compute_next_run_at(cadence, now)
            schedule.updated_at = now

            session.commit()
            session.refresh(schedule)
            logger.info(
                "schedule_updated",
                schedule_id=schedule.id,
                schedule_key=schedule.key,
                fields=sorted(changes),
                is_enabled=schedule.is_enabled,
                next_run_at=schedule.next_run_at.isoformat() if schedule.next_run_at else None,
            )
            return schedule_to_snapshot(schedule)

    def get_schedule(self, schedule_id: str) -> ScheduleSnapshot:
        with self._session_factory() as session:
            schedule = session.get(JobSchedule, schedule_id)
            if schedule is None:
                raise ScheduleNotFoundError(f"Schedule not found: {schedule_id}")
            return schedule_to_snapshot(schedule)

    def list_schedules(self, *, enabled: bool | None = None) -> list[ScheduleSnapshot]:
        with self._session_factory() as session:
            stmt = select(JobSchedule).order_by(JobSchedule.key.asc())
            if enabled is not None:
                stmt = stmt.where(JobSchedule.is_enabled.is_(enabled))
            return [schedule_to_snapshot(row) for row in session.scalars(stmt).all()]

    def enabled_job_types(self) -> set[str]:
        with self._session_factory() as session:
            return set(
                session.scalars(select(JobSchedule.job_type).where(JobSchedule.is_enabled.is_(True))).all()
            )

    def _advance_from(self, cadence: Cadence, due: datetime, now: datetime) -> datetime:
        if cadence.cadence_type == CadenceType.INTERVAL:
            step = timedelta(minutes=cadence.interval_minutes)
            skipped = int((now - due) // step)
            next_run_at = due + step * (skipped + 1)
            while next_run_at <= now:
                next_run_at += step
            return next_run_at
        next_run_at = compute_next_run_at(cadence, due)
        if next_run_at <= now:
            next_run_at = compute_next_run_at(cadence, now)
        return next_run_at

    def _claim_window(self, schedule: ScheduleSnapshot, next_run_at: datetime, now: datetime) -> bool:
        """Move ``next_run_at`` past ``due`` and stamp ``last_due_at``; only one pass per window wins."""
        due_at = schedule.next_run_at
        with self._session_factory() as session:
            claimed = session.execute(
                update(JobSchedule)
                .where(
                    JobSchedule.id == schedule.id,
                    JobSchedule.is_enabled.is_(True),
                    JobSchedule.next_run_at == due_at,
                    or_(JobSchedule.last_due_at.is_(None), JobSchedule.last_due_at < due_at),
                )
                .values(next_run_at=next_run_at, last_due_at=due_at, last_enqueued_at=now, updated_at=now)
                .returning(JobSchedule.id)
                .execution_options(synchronize_session=False)
            ).one_or_none()
            if claimed is None:
                # The window was already claimed but next_run_at points back at it; move it forward only.
                session.execute(
                    update(JobSchedule)
                    .where(
                        JobSchedule.id == schedule.id,
                        JobSchedule.next_run_at == due_at,
                        JobSchedule.last_due_at >= due_at,
                    )
                    .values(next_run_at=next_run_at, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            session.commit()
        return claimed is not None

    def _release_window(self, schedule: ScheduleSnapshot, next_run_at: datetime, now: datetime) -> None:
        with self._session_factory() as session:
            session.execute(
                update(JobSchedule)
                .where(
                    JobSchedule.id == schedule.id,
                    JobSchedule.next_run_at == next_run_at,
                    JobSchedule.last_due_at == schedule.next_run_at,
                )
                .values(
                    next_run_at=schedule.next_run_at,
                    last_due_at=schedule.last_due_at,
                    last_enqueued_at=schedule.last_enqueued_at,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def enqueue_due_schedules(self, now: datetime | None = None, limit: int | None = None) -> EnqueueDueResult:
        """Enqueue one job per due enabled schedule and advance each schedule's clock.

        Each due window is claimed on the schedule row before anything is
        enqueued: the claim is a conditional update on ``next_run_at`` that also
        records the window in ``last_due_at``. A pass that loses the claim, or
        replays a window already recorded there, enqueues nothing.
        """
        effective_now = coerce_utc(now) if now is not None else self._now()
        requested = self._settings.schedule_default_limit if limit is None else limit
        bounded_limit = max(0, min(requested, self._settings.schedule_max_limit))
        if bounded_limit == 0:
            return EnqueueDueResult(due_schedules=0, jobs_enqueued=0, job_ids=[])

        with self._session_factory() as session:
            due_schedules = [
                schedule_to_snapshot(row)
                for row in session.scalars(
                    select(JobSchedule)
                    .where(
                        JobSchedule.is_enabled.is_(True),
                        JobSchedule.next_run_at.is_not(None),
                        JobSchedule.next_run_at <= effective_now,
                    )
                    .order_by(JobSchedule.next_run_at.asc(), JobSchedule.key.asc())
                    .limit(bounded_limit)
                ).all()
            ]

        job_ids: list[str] = []
        for schedule in due_schedules:
            due_at = schedule.next_run_at
            cadence = Cadence.from_schedule(schedule)
            next_run_at = self._advance_from(cadence, due_at, effective_now)
            schedule_logger = logger.bind(
                schedule_id=schedule.id,
                schedule_key=schedule.key,
                due_at=due_at.isoformat(),
                next_run_at=next_run_at.isoformat(),
            )

            if not self._claim_window(schedule, next_run_at, effective_now):
                schedule_logger.info("schedule_window_already_claimed")
                continue

            try:
                enqueued = self._job_service.enqueue(
                    schedule.job_type,
                    dict(schedule.payload_template or {}),
                    priority=schedule.priority,
                    max_attempts=schedule.max_attempts,
                    timeout_seconds=schedule.timeout_seconds,
                    dedupe_key=schedule_dedupe_key(schedule.key, due_at),
                    source_type=SCHEDULE_SOURCE_TYPE,
                    source_id=schedule.id,
                )
            except Exception:
                self._release_window(schedule, next_run_at, effective_now)
                schedule_logger.exception("schedule_enqueue_failed")
                raise

            with self._session_factory() as session:
                session.execute(
                    update(JobSchedule)
                    .where(JobSchedule.id == schedule.id, JobSchedule.last_due_at == due_at)
                    .values(last_run_job_id=enqueued.id)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            if enqueued.created:
                job_ids.append(enqueued.id)
            schedule_logger.info("schedule_advanced", job_id=enqueued.id, created=enqueued.created)

        return EnqueueDueResult(due_schedules=len(due_schedules), jobs_enqueued=len(job_ids), job_ids=job_ids)
