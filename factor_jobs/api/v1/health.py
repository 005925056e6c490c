"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from factor_jobs.api.v1 import jobs as jobs_api
from factor_jobs.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health, backends and locally running jobs."""
    service = jobs_api._service
    return {
        "status": "healthy" if service is not None else "starting",
        "job_store_backend": settings.job_store_backend,
        "artifact_backend": settings.artifact_backend,
        "running_jobs": len(service.executor.running_jobs()) if service else 0,
        "subscribers": service.notifier.subscriber_count() if service else 0,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
