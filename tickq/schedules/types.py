from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tickq.db.models import CadenceType


@dataclass(frozen=True)
class ScheduleSnapshot:
    id: str
    key: str
    title: str
    description: str | None
    job_type: str
    is_enabled: bool
    cadence_type: CadenceType
    interval_minutes: int | None
    day_of_week: int | None
    day_of_month: int | None
    hour: int | None
    minute: int | None
    timezone: str | None
    payload_template: dict[str, Any] | None
    priority: int
    max_attempts: int
    timeout_seconds: int | None
    next_run_at: datetime | None
    last_due_at: datetime | None
    last_enqueued_at: datetime | None
    last_run_job_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class EnqueueDueResult:
    due_schedules: int
    jobs_enqueued: int
    job_ids: list[str] = field(default_factory=list)
