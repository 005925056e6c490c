"""Job store interface and in-process implementation.

The store is the single source of truth for job state. All status changes go
through ``transition`` / ``record_retry``, which enforce the state machine in
``factor_jobs.jobs.models.TRANSITIONS``. Writes aimed at a job that is already
terminal are silent no-ops, so a stale writer can never reopen a finished job.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from factor_jobs.jobs.errors import InvalidTransitionError, JobNotFoundError
from factor_jobs.jobs.models import (
    ACTIVE_STATUSES,
    JobRecord,
    JobStatus,
    can_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

Listener = Callable[[JobRecord], None]

# Fields a transition may set besides status and timestamps
TRANSITION_FIELDS = ("output_url", "output_metadata", "error_message", "provider_job_id")


def next_updated_at(previous: Optional[datetime]) -> datetime:
    """A timestamp strictly after ``previous`` (clocks can repeat within a tick)."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def apply_transition(job: JobRecord, target: JobStatus, fields: Dict[str, Any]) -> JobRecord:
    """Return a new row with ``target`` applied to ``job``.

    Raises InvalidTransitionError for edges outside the state machine and for
    terminal states missing their required field.
    """
    unknown = set(fields) - set(TRANSITION_FIELDS)
    if unknown:
        raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")
    if not can_transition(job.status, target):
        raise InvalidTransitionError(job.id, job.status.value, target.value)

    updated = job.model_copy(deep=True)
    for name, value in fields.items():
        setattr(updated, name, value)
    updated.status = target
    now = next_updated_at(job.updated_at)

    if target == JobStatus.PROCESSING and updated.started_at is None:
        updated.started_at = now
    if target == JobStatus.COMPLETED:
        if not updated.output_url:
            raise InvalidTransitionError(job.id, job.status.value, "completed (no output_url)")
        updated.error_message = None
        updated.progress_percent = 100.0
    if target == JobStatus.FAILED:
        if not updated.error_message:
            raise InvalidTransitionError(job.id, job.status.value, "failed (no error_message)")
        updated.output_url = None
        updated.output_metadata = None
    if target.is_terminal:
        updated.completed_at = now
    updated.updated_at = now
    return updated


def _is_recoverable(job: JobRecord, stale_before: Optional[datetime]) -> bool:
    if job.status == JobStatus.PENDING:
        return True
    return (
        job.status == JobStatus.PROCESSING
        and stale_before is not None
        and job.updated_at <= stale_before
    )


class JobStore(ABC):
    """Abstract interface for durable job records."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a callback fired with the new row after every mutation.

        Listeners run synchronously on the writer's task and must not block.
        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _publish(self, job: JobRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(job.model_copy(deep=True))
            except Exception:
                logger.exception("Job store listener failed for job %s", job.id)

    @abstractmethod
    async def create_if_absent(self, job: JobRecord) -> Tuple[JobRecord, bool]:
        """Insert ``job`` unless an active job exists for its resource key.

        Returns (row, created). When an active job already exists it is
        returned with created=False and nothing is written.
        """
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def find_active(self, resource_key: str) -> Optional[JobRecord]:
        """Return the pending/processing job for a resource key, if any."""
        ...

    @abstractmethod
    async def list_for_user(self, user_id: str, limit: int = 50) -> List[JobRecord]:
        """Jobs owned by a user, newest first."""
        ...

    @abstractmethod
    async def find_latest(self, resource_key: str) -> Optional[JobRecord]:
        """The active job for a resource key, else its most recent one."""
        ...

    @abstractmethod
    async def list_pending(
        self, limit: int = 10, stale_before: Optional[datetime] = None
    ) -> List[JobRecord]:
        """Oldest unfinished jobs left behind by a previous process.

        Pending jobs are always listed. Processing jobs are listed only when
        ``stale_before`` is given and their last write is not after it.
        """
        ...

    @abstractmethod
    async def transition(self, job_id: str, target: JobStatus, **fields: Any) -> JobRecord:
        """Move a job along the state machine. No-op if the job is terminal."""
        ...

    @abstractmethod
    async def record_retry(self, job_id: str) -> JobRecord:
        """Take the processing -> processing retry edge (retry_count += 1)."""
        ...

    @abstractmethod
    async def update_progress(
        self,
        job_id: str,
        percent: float,
        message: str,
        provider_job_id: Optional[str] = None,
    ) -> JobRecord:
        """Record normalized progress on an active job. No-op if terminal."""
        ...


class InMemoryJobStore(JobStore):
    """Process-local job store. Rows live in a dict guarded by an asyncio lock."""

    def __init__(self):
        super().__init__()
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()

    def _require(self, job_id: str) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _find_active_unlocked(self, resource_key: str) -> Optional[JobRecord]:
        for job in self._jobs.values():
            if job.resource_key == resource_key and job.status in ACTIVE_STATUSES:
                return job
        return None

    def _save(self, job: JobRecord) -> JobRecord:
        self._jobs[job.id] = job
        self._publish(job)
        return job.model_copy(deep=True)

    async def create_if_absent(self, job: JobRecord) -> Tuple[JobRecord, bool]:
        async with self._lock:
            existing = self._find_active_unlocked(job.resource_key)
            if existing is not None:
                return existing.model_copy(deep=True), False
            if job.id in self._jobs:
                raise ValueError(f"Job id {job.id} already exists")
            row = job.model_copy(deep=True)
            row.status = JobStatus.PENDING
            row.updated_at = next_updated_at(row.created_at)
            return self._save(row), True

    async def get(self, job_id: str) -> Optional[JobRecord]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def find_active(self, resource_key: str) -> Optional[JobRecord]:
        job = self._find_active_unlocked(resource_key)
        return job.model_copy(deep=True) if job else None

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[JobRecord]:
        jobs = [j for j in self._jobs.values() if j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def find_latest(self, resource_key: str) -> Optional[JobRecord]:
        job = self._find_active_unlocked(resource_key)
        if job is None:
            jobs = [j for j in self._jobs.values() if j.resource_key == resource_key]
            job = max(jobs, key=lambda j: j.created_at, default=None)
        return job.model_copy(deep=True) if job else None

    async def list_pending(
        self, limit: int = 10, stale_before: Optional[datetime] = None
    ) -> List[JobRecord]:
        jobs = [j for j in self._jobs.values() if _is_recoverable(j, stale_before)]
        jobs.sort(key=lambda j: j.created_at)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def transition(self, job_id: str, target: JobStatus, **fields: Any) -> JobRecord:
        async with self._lock:
            job = self._require(job_id)
            if job.is_terminal:
                logger.debug(
                    "Ignoring %s write to terminal job %s (%s)",
                    target.value, job_id, job.status.value,
                )
                return job.model_copy(deep=True)
            return self._save(apply_transition(job, target, fields))

    async def record_retry(self, job_id: str) -> JobRecord:
        async with self._lock:
            job = self._require(job_id)
            if job.is_terminal:
                return job.model_copy(deep=True)
            if job.status != JobStatus.PROCESSING or job.retry_count >= job.max_retries:
                raise InvalidTransitionError(job_id, job.status.value, "processing (retry)")
            updated = apply_transition(job, JobStatus.PROCESSING, {})
            updated.retry_count = job.retry_count + 1
            return self._save(updated)

    async def update_progress(
        self,
        job_id: str,
        percent: float,
        message: str,
        provider_job_id: Optional[str] = None,
    ) -> JobRecord:
        async with self._lock:
            job = self._require(job_id)
            if job.is_terminal:
                return job.model_copy(deep=True)
            updated = job.model_copy(deep=True)
            updated.progress_percent = max(0.0, min(100.0, float(percent)))
            updated.progress_message = message
            if provider_job_id is not None:
                updated.provider_job_id = provider_job_id
            updated.updated_at = next_updated_at(job.updated_at)
            return self._save(updated)
