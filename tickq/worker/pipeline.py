from __future__ import annotations

from typing import Any

from tickq.core.config import get_settings
from tickq.db.session import get_session_factory
from tickq.jobs.recovery import StaleLockRecovery
from tickq.jobs.registry import HandlerRegistry
from tickq.jobs.runner import JobRunner
from tickq.jobs.service import JobService
from tickq.jobs.types import EnqueueResult, RecoveryResult, RunResult
from tickq.schedules.service import ScheduleService
from tickq.schedules.types import EnqueueDueResult
from tickq.tick import TickOrchestrator, TickResult


def enqueue_job(job_type: str, payload: dict[str, Any] | None = None, **options: Any) -> EnqueueResult:
    settings = get_settings()
    job_service = JobService(settings=settings, session_factory=get_session_factory())
    return job_service.enqueue(job_type, payload, **options)


def run_jobs_once(
    *,
    limit: int | None = None,
    runner_id: str | None = None,
    registry: HandlerRegistry | None = None,
) -> RunResult:
    settings = get_settings()
    runner = JobRunner(settings=settings, session_factory=get_session_factory(), registry=registry)
    return runner.run_once(limit=limit, runner_id=runner_id)


def recover_stale_jobs(*, stale_after_minutes: int | None = None) -> RecoveryResult:
    settings = get_settings()
    recovery = StaleLockRecovery(settings=settings, session_factory=get_session_factory())
    return recovery.recover_stale(stale_after_minutes)


def enqueue_due_schedules(*, limit: int | None = None) -> EnqueueDueResult:
    settings = get_settings()
    schedule_service = ScheduleService(settings=settings, session_factory=get_session_factory())
    return schedule_service.enqueue_due_schedules(limit=limit)


def run_tick(
    *,
    run: bool = True,
    enqueue_schedules: bool = True,
    recover_stale: bool = True,
    limit: int | None = None,
    runner_id: str | None = None,
    registry: HandlerRegistry | None = None,
) -> TickResult:
    settings = get_settings()
    orchestrator = TickOrchestrator(settings=settings, session_factory=get_session_factory(), registry=registry)
    return orchestrator.tick(
        run=run,
        enqueue_schedules=enqueue_schedules,
        recover_stale=recover_stale,
        limit=limit,
        runner_id=runner_id,
    )
