from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter

from tickq.core.config import get_settings
from tickq.jobs.registry import job_registry

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health() -> dict[str, object]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "job_types": job_registry.list(),
        "timestamp": datetime.now(tz=timezone.utc),
    }
