from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from tickq.api.schemas.jobs import EnqueueDueResponse
from tickq.api.schemas.schedules import (
    CreateScheduleRequest,
    EnqueueDueRequest,
    ScheduleListResponse,
    ScheduleResponse,
    UpdateScheduleRequest,
)
from tickq.api.security import require_trigger_token
from tickq.core.config import get_settings
from tickq.db.session import get_session_factory
from tickq.schedules.cadence import CadenceError
from tickq.schedules.service import ScheduleConflictError, ScheduleNotFoundError, ScheduleService
from tickq.schedules.types import ScheduleSnapshot

router = APIRouter(prefix="/job-schedules", tags=["schedules"])


def get_schedule_service() -> ScheduleService:
    return ScheduleService(settings=get_settings(), session_factory=get_session_factory())


def _to_response(snapshot: ScheduleSnapshot) -> ScheduleResponse:
    payload = asdict(snapshot)
    payload["cadence_type"] = snapshot.cadence_type.value
    return ScheduleResponse.model_validate(payload)


@router.get("", response_model=ScheduleListResponse)
def list_schedules(
    enabled: bool | None = None,
    service: ScheduleService = Depends(get_schedule_service),
) -> ScheduleListResponse:
    return ScheduleListResponse(items=[_to_response(item) for item in service.list_schedules(enabled=enabled)])


@router.post("", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
def create_schedule(
    request: CreateScheduleRequest,
    service: ScheduleService = Depends(get_schedule_service),
) -> ScheduleResponse:
    try:
        schedule = service.create_schedule(**request.model_dump())
    except ScheduleConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (CadenceError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _to_response(schedule)


@router.post("/enqueue-due", response_model=EnqueueDueResponse, dependencies=[Depends(require_trigger_token)])
def enqueue_due_schedules(
    request: EnqueueDueRequest | None = None,
    service: ScheduleService = Depends(get_schedule_service),
) -> EnqueueDueResponse:
    request = request or EnqueueDueRequest()
    result = service.enqueue_due_schedules(limit=request.limit)
    return EnqueueDueResponse(due_schedules=result.due_schedules, jobs_enqueued=result.jobs_enqueued)


@router.get("/{schedule_id}", response_model=ScheduleResponse)
def get_schedule(schedule_id: str, service: ScheduleService = Depends(get_schedule_service)) -> ScheduleResponse:
    try:
        schedule = service.get_schedule(schedule_id)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _to_response(schedule)


@router.patch("/{schedule_id}", response_model=ScheduleResponse)
def update_schedule(
    schedule_id: str,
    request: UpdateScheduleRequest,
    service: ScheduleService = Depends(get_schedule_service),
) -> ScheduleResponse:
    try:
        schedule = service.update_schedule(schedule_id, **request.model_dump(exclude_unset=True))
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (CadenceError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _to_response(schedule)
