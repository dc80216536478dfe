from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from tickq.api.routes.health import router as health_router
from tickq.api.routes.jobs import router as jobs_router
from tickq.api.routes.schedules import router as schedules_router
from tickq.core.config import get_settings
from tickq.core.logging import configure_logging, get_logger
from tickq.db.init_db import initialize_database
from tickq.db.session import get_session_factory
from tickq.jobs.registry import HandlerRegistry, job_registry
from tickq.schedules.service import ScheduleService

logger = get_logger(__name__)


def validate_schedule_handlers(registry: HandlerRegistry | None = None) -> None:
    """Fail startup when an enabled schedule names a job type with no registered handler."""
    registry = registry if registry is not None else job_registry
    settings = get_settings()
    schedule_service = ScheduleService(settings=settings, session_factory=get_session_factory())
    registry.validate(schedule_service.enabled_job_types())


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.json_logs and not settings.is_development)
    initialize_database()
    if settings.validate_handlers_on_startup:
        validate_schedule_handlers()
    if not settings.is_development:
        job_registry.freeze()
    logger.info("app_started", environment=settings.environment, job_types=job_registry.list())
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(schedules_router, prefix="/api/v1")
    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
