"""Job submitter: the entry point callers use to request work."""

import hashlib
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from factor_jobs.jobs.cache import CacheIndex
from factor_jobs.jobs.errors import InvalidInputError, PreconditionFailedError
from factor_jobs.jobs.executor import JobExecutor
from factor_jobs.jobs.models import JobRecord, SubmitResult, TaskType
from factor_jobs.jobs.store import JobStore

logger = logging.getLogger(__name__)

# Called with (task_type, user_id, input_params). A falsy result (or raising
# PreconditionFailedError) refuses the submission.
Precondition = Callable[[TaskType, Optional[str], Dict[str, Any]], Union[bool, Awaitable[bool]]]


def slicing_resource_key(model_id: str, printer_model_id: str) -> str:
    """One slicing result per (model, printer model) pair."""
    if not model_id or not printer_model_id:
        raise InvalidInputError("slicing needs model_id and printer_model_id")
    return f"slicing:{model_id}:{printer_model_id}"


def generation_resource_key(
    mode: str,
    prompt: Optional[str] = None,
    image_url: Optional[str] = None,
    options: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
) -> str:
    """Key for a model-generation request, derived from what it asks for."""
    if not prompt and not image_url:
        raise InvalidInputError("model generation needs a prompt or an image")
    body = json.dumps(
        {
            "mode": mode,
            "prompt": (prompt or "").strip(),
            "image_url": image_url,
            "options": options or {},
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(body.encode("utf-8")).hexdigest()[:32]
    return f"model_generation:{user_id or 'anonymous'}:{digest}"


def gcode_analysis_resource_key(gcode_url: str) -> str:
    if not gcode_url:
        raise InvalidInputError("G-code analysis needs a gcode_url")
    digest = hashlib.sha256(gcode_url.encode("utf-8")).hexdigest()[:32]
    return f"gcode_analysis:{digest}"


class JobSubmitter:
    """Checks the cache, deduplicates against active jobs and starts new ones.

    The only errors a caller sees are ``PreconditionFailedError`` and
    ``InvalidInputError`` for a malformed request. Everything that happens
    after the job row exists is reported through the job store.
    """

    def __init__(
        self,
        store: JobStore,
        cache: CacheIndex,
        executor: JobExecutor,
        precondition: Optional[Precondition] = None,
        default_max_retries: int = 3,
    ):
        self._store = store
        self._cache = cache
        self._executor = executor
        self._precondition = precondition
        self._default_max_retries = default_max_retries

    async def _check_precondition(
        self, task_type: TaskType, user_id: Optional[str], input_params: Dict[str, Any]
    ) -> None:
        if self._precondition is None:
            return
        allowed = self._precondition(task_type, user_id, input_params)
        if inspect.isawaitable(allowed):
            allowed = await allowed
        if not allowed:
            raise PreconditionFailedError(f"{task_type.value} is not allowed for this user")

    @staticmethod
    def _validate(resource_key: str, input_params: Any, max_retries: int) -> None:
        if not isinstance(resource_key, str) or not resource_key.strip():
            raise InvalidInputError("resource_key must be a non-empty string")
        if not isinstance(input_params, dict):
            raise InvalidInputError("input_params must be an object")
        try:
            json.dumps(input_params)
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(f"input_params is not serializable: {exc}")
        if max_retries < 0:
            raise InvalidInputError("max_retries must be >= 0")

    async def submit(
        self,
        resource_key: str,
        input_params: Dict[str, Any],
        *,
        task_type: TaskType,
        user_id: Optional[str] = None,
        input_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        cache_key: Optional[str] = None,
    ) -> SubmitResult:
        if max_retries is None:
            max_retries = self._default_max_retries
        self._validate(resource_key, input_params, max_retries)
        await self._check_precondition(task_type, user_id, input_params)

        lookup_key = cache_key or resource_key
        cached = await self._cache.lookup(lookup_key)
        if cached is not None:
            logger.info("Cache hit for %s", lookup_key)
            return SubmitResult(cached=cached)

        job, created = await self._store.create_if_absent(
            JobRecord(
                resource_key=resource_key,
                cache_key=cache_key,
                task_type=task_type,
                user_id=user_id,
                input_url=input_url,
                input_params=input_params,
                max_retries=max_retries,
            )
        )
        if not created:
            logger.info("Joining active job %s for %s", job.id, resource_key)
            return SubmitResult(job_id=job.id, deduplicated=True)

        logger.info("Created %s job %s for %s", task_type.value, job.id, resource_key)
        self._executor.execute(job)
        return SubmitResult(job_id=job.id)
