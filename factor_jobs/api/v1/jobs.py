"""Job API: submit work, read job rows, stream changes."""

import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from factor_jobs.jobs.cache import content_key
from factor_jobs.jobs.errors import InvalidInputError, PreconditionFailedError
from factor_jobs.jobs.models import JobRecord, TaskType
from factor_jobs.jobs.submitter import (
    gcode_analysis_resource_key,
    generation_resource_key,
    slicing_resource_key,
)

router = APIRouter()

# Set by main.py during lifespan
_service = None


def set_service(service):
    global _service
    _service = service


def _require_service():
    if _service is None:
        raise HTTPException(status_code=503, detail="Job service not initialized")
    return _service


class JobSubmitRequest(BaseModel):
    task_type: TaskType
    resource_key: Optional[str] = None
    user_id: Optional[str] = None
    input_url: Optional[str] = None
    input_params: Dict[str, Any] = {}
    max_retries: Optional[int] = None
    # Params whose values change the output; narrows the cache key
    cache_fields: Optional[List[str]] = None


class JobSubmitResponse(BaseModel):
    job_id: Optional[str] = None
    cached: bool = False
    deduplicated: bool = False
    output_url: Optional[str] = None
    output_metadata: Optional[Dict[str, Any]] = None
    message: str


def derive_resource_key(request: JobSubmitRequest) -> str:
    """Resource key for a request that did not name one."""
    if request.resource_key:
        return request.resource_key
    params = request.input_params
    if request.task_type == TaskType.SLICING:
        return slicing_resource_key(params.get("model_id"), params.get("printer_model_id"))
    if request.task_type == TaskType.MODEL_GENERATION:
        return generation_resource_key(
            params.get("mode", "text_to_3d"),
            prompt=params.get("prompt"),
            image_url=params.get("image_url") or request.input_url,
            options=params.get("options"),
            user_id=request.user_id,
        )
    return gcode_analysis_resource_key(params.get("gcode_url") or request.input_url)


def job_to_dict(job: JobRecord) -> Dict[str, Any]:
    response = {
        "job_id": job.id,
        "resource_key": job.resource_key,
        "task_type": job.task_type.value,
        "status": job.status.value,
        "progress": {
            "percent": job.progress_percent,
            "message": job.progress_message,
        },
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "updated_at": job.updated_at.isoformat(),
    }
    if job.output_url:
        response["output_url"] = job.output_url
        response["output_metadata"] = job.output_metadata
    if job.error_message:
        response["error"] = job.error_message
    return response


@router.post("/jobs", response_model=JobSubmitResponse)
async def submit_job(request: JobSubmitRequest):
    """Submit a job, or get the cached artifact / the already running job."""
    service = _require_service()
    try:
        resource_key = derive_resource_key(request)
        cache_key = None
        if request.cache_fields:
            cache_key = content_key(resource_key, request.input_params, request.cache_fields)
        result = await service.submitter.submit(
            resource_key,
            request.input_params,
            task_type=request.task_type,
            user_id=request.user_id,
            input_url=request.input_url,
            max_retries=request.max_retries,
            cache_key=cache_key,
        )
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PreconditionFailedError as exc:
        raise HTTPException(status_code=403, detail=exc.reason)

    if result.is_cached:
        return JobSubmitResponse(
            cached=True,
            output_url=result.cached.url,
            output_metadata=result.cached.metadata,
            message="Result already available.",
        )
    return JobSubmitResponse(
        job_id=result.job_id,
        deduplicated=result.deduplicated,
        message=(
            "Joined the job already running for this resource."
            if result.deduplicated
            else "Job submitted. Poll GET /api/v1/jobs/{id} or stream /api/v1/jobs/{id}/events."
        ),
    )


@router.get("/jobs")
async def list_jobs(user_id: str = Query(...), limit: int = Query(50, ge=1, le=200)):
    """Jobs of one user, newest first."""
    service = _require_service()
    jobs = await service.store.list_for_user(user_id, limit=limit)
    return {"jobs": [job_to_dict(job) for job in jobs]}


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Current state of a job."""
    service = _require_service()
    job = await service.store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_to_dict(job)


@router.get("/jobs/{job_id}/events")
async def stream_job_events(job_id: str):
    """Server-sent events with the job row on every change, until terminal."""
    service = _require_service()
    if await service.store.get(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")

    async def events():
        async for job in service.notifier.stream(job_id):
            yield f"event: job\ndata: {json.dumps(job_to_dict(job))}\n\n"

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
