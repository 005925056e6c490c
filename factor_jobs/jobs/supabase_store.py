"""Job store backed by the Supabase ``background_tasks`` table.

State changes are conditional updates: the UPDATE only matches while the row
is still pending/processing, so a write racing a terminal transition is
dropped by the database rather than overwriting the finished row. Creation
goes through the ``create_background_task_if_absent`` function (see
``sql/background_tasks.sql``), which inserts only when no active task exists
for the resource key.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from factor_jobs.db.supabase_client import run_blocking
from factor_jobs.jobs.errors import InvalidTransitionError, JobNotFoundError
from factor_jobs.jobs.models import ACTIVE_STATUSES, JobRecord, JobStatus
from factor_jobs.jobs.store import JobStore, apply_transition, next_updated_at

logger = logging.getLogger(__name__)

_ACTIVE = [s.value for s in ACTIVE_STATUSES]


class SupabaseJobStore(JobStore):
    """JobStore implementation over a Supabase (PostgREST) table."""

    def __init__(self, client, table: str = "background_tasks"):
        super().__init__()
        self._client = client
        self._table = table

    def _query(self):
        return self._client.table(self._table)

    async def _fetch(self, job_id: str) -> Optional[JobRecord]:
        response = await run_blocking(
            self._query().select("*").eq("id", job_id).limit(1).execute
        )
        if not response.data:
            return None
        return JobRecord.from_row(response.data[0])

    async def _require(self, job_id: str) -> JobRecord:
        job = await self._fetch(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _conditional_update(self, current: JobRecord, changes: Dict[str, Any]) -> JobRecord:
        """Write ``changes`` only while the row is still active.

        Returns the stored row; if the row went terminal in the meantime the
        write is skipped and the terminal row is returned unchanged.
        """
        response = await run_blocking(
            self._query()
            .update(changes)
            .eq("id", current.id)
            .in_("status", _ACTIVE)
            .execute
        )
        if not response.data:
            latest = await self._require(current.id)
            logger.info(
                "Conditional update on job %s skipped; row is %s",
                current.id, latest.status.value,
            )
            return latest
        row = JobRecord.from_row(response.data[0])
        self._publish(row)
        return row

    async def create_if_absent(self, job: JobRecord) -> Tuple[JobRecord, bool]:
        row = job.to_row()
        row["status"] = JobStatus.PENDING.value
        response = await run_blocking(
            self._client.rpc(
                "create_background_task_if_absent", {"p_task": row}
            ).execute
        )
        payload = response.data
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not payload or "job" not in payload:
            raise RuntimeError(f"Unexpected response from create_background_task_if_absent: {payload!r}")
        stored = JobRecord.from_row(payload["job"])
        created = bool(payload.get("created"))
        if created:
            self._publish(stored)
        return stored, created

    async def get(self, job_id: str) -> Optional[JobRecord]:
        return await self._fetch(job_id)

    async def find_active(self, resource_key: str) -> Optional[JobRecord]:
        response = await run_blocking(
            self._query()
            .select("*")
            .eq("resource_key", resource_key)
            .in_("status", _ACTIVE)
            .order("created_at")
            .limit(1)
            .execute
        )
        if not response.data:
            return None
        return JobRecord.from_row(response.data[0])

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[JobRecord]:
        response = await run_blocking(
            self._query()
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute
        )
        return [JobRecord.from_row(r) for r in response.data or []]

    async def find_latest(self, resource_key: str) -> Optional[JobRecord]:
        job = await self.find_active(resource_key)
        if job is not None:
            return job
        response = await run_blocking(
            self._query()
            .select("*")
            .eq("resource_key", resource_key)
            .order("created_at", desc=True)
            .limit(1)
            .execute
        )
        if not response.data:
            return None
        return JobRecord.from_row(response.data[0])

    async def list_pending(
        self, limit: int = 10, stale_before: Optional[datetime] = None
    ) -> List[JobRecord]:
        params = {
            "p_limit": limit,
            "p_stale_before": stale_before.isoformat() if stale_before else None,
        }
        response = await run_blocking(
            self._client.rpc("get_pending_tasks", params).execute
        )
        ids = [r["id"] for r in response.data or []]
        jobs = []
        for job_id in ids:
            job = await self._fetch(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def transition(self, job_id: str, target: JobStatus, **fields: Any) -> JobRecord:
        current = await self._require(job_id)
        if current.is_terminal:
            return current
        updated = apply_transition(current, target, fields)
        changes = {
            "status": updated.status.value,
            "output_url": updated.output_url,
            "output_metadata": updated.output_metadata,
            "error_message": updated.error_message,
            "provider_job_id": updated.provider_job_id,
            "progress_percent": updated.progress_percent,
            "started_at": updated.started_at.isoformat() if updated.started_at else None,
            "completed_at": updated.completed_at.isoformat() if updated.completed_at else None,
            "updated_at": updated.updated_at.isoformat(),
        }
        return await self._conditional_update(current, changes)

    async def record_retry(self, job_id: str) -> JobRecord:
        current = await self._require(job_id)
        if current.is_terminal:
            return current
        if current.status != JobStatus.PROCESSING or current.retry_count >= current.max_retries:
            raise InvalidTransitionError(job_id, current.status.value, "processing (retry)")
        changes = {
            "retry_count": current.retry_count + 1,
            "updated_at": next_updated_at(current.updated_at).isoformat(),
        }
        return await self._conditional_update(current, changes)

    async def update_progress(
        self,
        job_id: str,
        percent: float,
        message: str,
        provider_job_id: Optional[str] = None,
    ) -> JobRecord:
        current = await self._require(job_id)
        if current.is_terminal:
            return current
        changes: Dict[str, Any] = {
            "progress_percent": max(0.0, min(100.0, float(percent))),
            "progress_message": message,
            "updated_at": next_updated_at(current.updated_at).isoformat(),
        }
        if provider_job_id is not None:
            changes["provider_job_id"] = provider_job_id
        return await self._conditional_update(current, changes)
