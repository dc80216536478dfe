from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tickq.db.models import CadenceType


class CreateScheduleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str = Field(min_length=1, max_length=128)
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    job_type: str = Field(min_length=1, max_length=128)
    is_enabled: bool = True
    cadence_type: CadenceType
    interval_minutes: int | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    hour: int | None = None
    minute: int | None = None
    timezone: str | None = Field(default=None, max_length=64)
    payload_template: dict[str, Any] | None = None
    priority: int | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=100)
    timeout_seconds: int | None = Field(default=None, ge=1)


class UpdateScheduleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    job_type: str | None = Field(default=None, min_length=1, max_length=128)
    is_enabled: bool | None = None
    cadence_type: CadenceType | None = None
    interval_minutes: int | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    hour: int | None = None
    minute: int | None = None
    timezone: str | None = Field(default=None, max_length=64)
    payload_template: dict[str, Any] | None = None
    priority: int | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=100)
    timeout_seconds: int | None = Field(default=None, ge=1)


class EnqueueDueRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: int | None = Field(default=None, ge=0)


class ScheduleResponse(BaseModel):
    id: str
    key: str
    title: str
    description: str | None
    job_type: str
    is_enabled: bool
    cadence_type: str
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


class ScheduleListResponse(BaseModel):
    items: list[ScheduleResponse]
