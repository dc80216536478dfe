from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from tickq.db.models import JobLogLevel, JobRunStatus


@dataclass(frozen=True)
class JobSnapshot:
    id: str
    job_type: str
    payload: dict[str, Any]
    priority: int
    status: JobRunStatus
    attempts: int
    max_attempts: int
    run_after: datetime
    timeout_seconds: int | None
    locked_at: datetime | None
    lock_owner: str | None
    heartbeat_at: datetime | None
    started_at: datetime | None
    finished_at: datetime | None
    cancel_requested_at: datetime | None
    canceled_at: datetime | None
    dead_lettered_at: datetime | None
    dedupe_key: str | None
    result: dict[str, Any] | None
    error_code: str | None
    error_message: str | None
    last_error_at: datetime | None
    source_type: str | None
    source_id: str | None
    created_by_user_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class JobLogSnapshot:
    id: int
    job_run_id: str
    level: JobLogLevel
    message: str
    meta: dict[str, Any] | None
    created_at: datetime


@dataclass(frozen=True)
class EnqueueResult:
    id: str
    status: JobRunStatus
    created: bool


@dataclass(frozen=True)
class JobListResult:
    items: list[JobSnapshot]
    next_cursor: str | None


@dataclass(frozen=True)
class JobSummary:
    by_status: dict[str, int]
    queue_depth: int
    due_now: int


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    job_type: str
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    timeout_seconds: int | None
    cancel_requested_at: datetime | None


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    CANCELED = "canceled"
    LOST = "lost"


@dataclass(slots=True)
class RunResult:
    runner_id: str
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    dead_lettered: int = 0
    canceled: int = 0

    def record(self, outcome: JobOutcome) -> None:
        if outcome == JobOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome == JobOutcome.RETRIED:
            self.retried += 1
        elif outcome == JobOutcome.DEAD_LETTERED:
            self.dead_lettered += 1
        elif outcome == JobOutcome.CANCELED:
            self.canceled += 1
        else:
            self.failed += 1


@dataclass(frozen=True)
class RecoveryResult:
    count: int
    requeued: int
    dead_lettered: int
    job_ids: list[str] = field(default_factory=list)
