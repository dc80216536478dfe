from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tickq.db.models import JobRunStatus


class EnqueueJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_type: str = Field(min_length=1, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=100)
    timeout_seconds: int | None = Field(default=None, ge=1)
    run_after: datetime | None = None
    dedupe_key: str | None = Field(default=None, max_length=255)
    source_type: str | None = Field(default=None, max_length=64)
    source_id: str | None = Field(default=None, max_length=128)
    created_by_user_id: str | None = Field(default=None, max_length=128)


class EnqueueJobResponse(BaseModel):
    id: str
    status: JobRunStatus
    created: bool


class RunJobsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: int | None = Field(default=None, ge=0)
    runner_id: str | None = Field(default=None, max_length=128)


class RecoverStaleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stale_after_minutes: int | None = Field(default=None, ge=1)


class TickRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run: bool = True
    enqueue_schedules: bool = True
    recover_stale: bool = True
    limit: int | None = Field(default=None, ge=0)
    runner_id: str | None = Field(default=None, max_length=128)


class RunResultResponse(BaseModel):
    runner_id: str
    claimed: int
    succeeded: int
    retried: int
    failed: int
    dead_lettered: int
    canceled: int


class RecoveryResponse(BaseModel):
    count: int
    requeued: int
    dead_lettered: int


class EnqueueDueResponse(BaseModel):
    due_schedules: int
    jobs_enqueued: int


class TickResponse(BaseModel):
    recovered: RecoveryResponse | None
    scheduled: EnqueueDueResponse | None
    run: RunResultResponse | None


class JobSummaryResponse(BaseModel):
    by_status: dict[str, int]
    queue_depth: int
    due_now: int


class JobLogResponse(BaseModel):
    id: int
    level: str
    message: str
    meta: dict[str, Any] | None
    created_at: datetime


class JobListResponse(BaseModel):
    items: list["JobResponse"]
    next_cursor: str | None


class JobResponse(BaseModel):
    id: str
    job_type: str
    payload: dict[str, Any]
    priority: int
    status: str
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
