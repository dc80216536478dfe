from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from tickq.api.schemas.jobs import (
    EnqueueJobRequest,
    EnqueueJobResponse,
    JobListResponse,
    JobLogResponse,
    JobResponse,
    JobSummaryResponse,
    RecoverStaleRequest,
    RecoveryResponse,
    RunJobsRequest,
    RunResultResponse,
    TickRequest,
    TickResponse,
)
from tickq.api.security import require_trigger_token
from tickq.core.config import get_settings
from tickq.db.models import JobRunStatus
from tickq.db.session import get_session_factory
from tickq.jobs.errors import InvalidJobStateError, JobConflictError, JobNotFoundError
from tickq.jobs.recovery import StaleLockRecovery
from tickq.jobs.runner import JobRunner
from tickq.jobs.service import JobService, snapshot_to_dict
from tickq.tick import TickOrchestrator

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_service() -> JobService:
    return JobService(settings=get_settings(), session_factory=get_session_factory())


def get_job_runner() -> JobRunner:
    return JobRunner(settings=get_settings(), session_factory=get_session_factory())


def get_stale_recovery() -> StaleLockRecovery:
    return StaleLockRecovery(settings=get_settings(), session_factory=get_session_factory())


def get_tick_orchestrator() -> TickOrchestrator:
    return TickOrchestrator(settings=get_settings(), session_factory=get_session_factory())


@router.post("", response_model=EnqueueJobResponse, status_code=status.HTTP_201_CREATED)
def enqueue_job(
    request: EnqueueJobRequest,
    response: Response,
    service: JobService = Depends(get_job_service),
) -> EnqueueJobResponse:
    try:
        result = service.enqueue(
            request.job_type,
            request.payload,
            priority=request.priority,
            max_attempts=request.max_attempts,
            timeout_seconds=request.timeout_seconds,
            run_after=request.run_after,
            dedupe_key=request.dedupe_key,
            source_type=request.source_type,
            source_id=request.source_id,
            created_by_user_id=request.created_by_user_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return EnqueueJobResponse(id=result.id, status=result.status, created=result.created)


@router.get("", response_model=JobListResponse)
def list_jobs(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = None,
    job_status: JobRunStatus | None = Query(default=None, alias="status"),
    job_type: str | None = None,
    service: JobService = Depends(get_job_service),
) -> JobListResponse:
    try:
        result = service.list_jobs(limit=limit, cursor=cursor, status=job_status, job_type=job_type)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return JobListResponse(
        items=[JobResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/summary", response_model=JobSummaryResponse)
def get_job_summary(service: JobService = Depends(get_job_service)) -> JobSummaryResponse:
    summary = service.summary()
    return JobSummaryResponse(by_status=summary.by_status, queue_depth=summary.queue_depth, due_now=summary.due_now)


@router.post("/run", response_model=RunResultResponse, dependencies=[Depends(require_trigger_token)])
def run_jobs(
    request: RunJobsRequest | None = None,
    runner: JobRunner = Depends(get_job_runner),
) -> RunResultResponse:
    request = request or RunJobsRequest()
    result = runner.run_once(limit=request.limit, runner_id=request.runner_id)
    return RunResultResponse.model_validate(asdict(result))


@router.post("/recover-stale", response_model=RecoveryResponse, dependencies=[Depends(require_trigger_token)])
def recover_stale_jobs(
    request: RecoverStaleRequest | None = None,
    recovery: StaleLockRecovery = Depends(get_stale_recovery),
) -> RecoveryResponse:
    request = request or RecoverStaleRequest()
    result = recovery.recover_stale(request.stale_after_minutes)
    return RecoveryResponse(count=result.count, requeued=result.requeued, dead_lettered=result.dead_lettered)


@router.post("/tick", response_model=TickResponse, dependencies=[Depends(require_trigger_token)])
def tick(
    request: TickRequest | None = None,
    orchestrator: TickOrchestrator = Depends(get_tick_orchestrator),
) -> TickResponse:
    request = request or TickRequest()
    result = orchestrator.tick(
        run=request.run,
        enqueue_schedules=request.enqueue_schedules,
        recover_stale=request.recover_stale,
        limit=request.limit,
        runner_id=request.runner_id,
    )
    return TickResponse.model_validate(
        {
            "recovered": asdict(result.recovered) if result.recovered is not None else None,
            "scheduled": asdict(result.scheduled) if result.scheduled is not None else None,
            "run": asdict(result.run) if result.run is not None else None,
        }
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:
    try:
        job = service.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}/logs", response_model=list[JobLogResponse])
def get_job_logs(job_id: str, service: JobService = Depends(get_job_service)) -> list[JobLogResponse]:
    try:
        logs = service.list_job_logs(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return [
        JobLogResponse(id=log.id, level=log.level.value, message=log.message, meta=log.meta, created_at=log.created_at)
        for log in logs
    ]


@router.post("/{job_id}/requeue", response_model=JobResponse)
def requeue_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:
    try:
        job = service.requeue(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvalidJobStateError, JobConflictError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:
    try:
        job = service.request_cancel(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvalidJobStateError, JobConflictError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))
