from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from tickq.core.clock import Clock, coerce_utc, utc_now
from tickq.core.config import Settings
from tickq.core.logging import get_logger
from tickq.jobs.recovery import StaleLockRecovery
from tickq.jobs.registry import HandlerRegistry
from tickq.jobs.runner import JobRunner, generate_runner_id
from tickq.jobs.service import JobService
from tickq.jobs.types import RecoveryResult, RunResult
from tickq.schedules.service import ScheduleService
from tickq.schedules.types import EnqueueDueResult

logger = get_logger(__name__)


@dataclass(frozen=True)
class TickResult:
    recovered: RecoveryResult | None
    scheduled: EnqueueDueResult | None
    run: RunResult | None


class TickOrchestrator:
    """One externally triggered pass: recover stale rows, enqueue due schedules, then run due jobs.

    Holds no state between calls, so a trigger can fire it as often as it likes.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        registry: HandlerRegistry | None = None,
        clock: Clock | None = None,
    ):
        self._clock = clock or utc_now
        self._recovery = StaleLockRecovery(settings, session_factory, clock=self._clock)
        self._schedules = ScheduleService(
            settings,
            session_factory,
            clock=self._clock,
            job_service=JobService(settings, session_factory, clock=self._clock),
        )
        self._runner = JobRunner(settings, session_factory, registry=registry, clock=self._clock)

    def _now(self) -> datetime:
        return coerce_utc(self._clock())

    def tick(
        self,
        *,
        run: bool = True,
        enqueue_schedules: bool = True,
        recover_stale: bool = True,
        limit: int | None = None,
        runner_id: str | None = None,
    ) -> TickResult:
        effective_runner_id = (runner_id or "").strip() or generate_runner_id("tick")
        tick_logger = logger.bind(runner_id=effective_runner_id)

        recovered = self._recovery.recover_stale() if recover_stale else None
        scheduled = self._schedules.enqueue_due_schedules(now=self._now()) if enqueue_schedules else None
        run_result = self._runner.run_once(limit=limit, runner_id=effective_runner_id) if run else None

        tick_logger.info(
            "tick_finished",
            recovered=recovered.count if recovered is not None else None,
            schedules_due=scheduled.due_schedules if scheduled is not None else None,
            jobs_enqueued=scheduled.jobs_enqueued if scheduled is not None else None,
            claimed=run_result.claimed if run_result is not None else None,
        )
        return TickResult(recovered=recovered, scheduled=scheduled, run=run_result)
