"""Best-effort user notifications for jobs that finish with nobody watching."""

import logging
from abc import ABC, abstractmethod
from typing import List

from factor_jobs.db.supabase_client import run_blocking
from factor_jobs.jobs.models import JobRecord, JobStatus, PushNotification, TaskType

logger = logging.getLogger(__name__)

_TITLES = {
    (TaskType.SLICING, JobStatus.COMPLETED): "Slicing complete",
    (TaskType.SLICING, JobStatus.FAILED): "Slicing failed",
    (TaskType.MODEL_GENERATION, JobStatus.COMPLETED): "Model ready",
    (TaskType.MODEL_GENERATION, JobStatus.FAILED): "Model generation failed",
    (TaskType.GCODE_ANALYSIS, JobStatus.COMPLETED): "G-code analysis complete",
    (TaskType.GCODE_ANALYSIS, JobStatus.FAILED): "G-code analysis failed",
}


def build_notification(job: JobRecord) -> PushNotification:
    """Summarize a terminal job for the user."""
    title = _TITLES.get((job.task_type, job.status), f"Job {job.status.value}")
    if job.status == JobStatus.COMPLETED:
        summary = f"{title}. Your file is ready."
        metadata = {"output_url": job.output_url}
    else:
        summary = f"{title}: {job.error_message}"
        metadata = {"error": job.error_message}
    metadata.update({"task_type": job.task_type.value, "resource_key": job.resource_key})
    return PushNotification(
        job_id=job.id,
        status=job.status,
        summary=summary,
        title=title,
        user_id=job.user_id,
        metadata=metadata,
    )


class PushNotifier(ABC):
    """Delivers a notification; delivery failures are the caller's to log."""

    @abstractmethod
    async def send(self, notification: PushNotification) -> None:
        ...


class LoggingPushNotifier(PushNotifier):
    """Writes notifications to the log; used when no transport is configured."""

    async def send(self, notification: PushNotification) -> None:
        logger.info(
            "Notify user %s: job %s %s - %s",
            notification.user_id, notification.job_id,
            notification.status.value, notification.summary,
        )


class InMemoryPushNotifier(PushNotifier):
    def __init__(self):
        self.sent: List[PushNotification] = []

    async def send(self, notification: PushNotification) -> None:
        self.sent.append(notification)


class SupabasePushNotifier(PushNotifier):
    """Inserts a row into the ``notifications`` table, which the apps listen to."""

    def __init__(self, client, table: str = "notifications"):
        self._client = client
        self._table = table

    async def send(self, notification: PushNotification) -> None:
        if not notification.user_id:
            logger.debug("Job %s has no owner; skipping notification", notification.job_id)
            return
        await run_blocking(
            self._client.table(self._table).insert({
                "user_id": notification.user_id,
                "title": notification.title or notification.summary,
                "message": notification.summary,
                "type": "success" if notification.status == JobStatus.COMPLETED else "error",
                "related_id": notification.job_id,
                "related_type": "background_task",
                "metadata": {"task_id": notification.job_id, **notification.metadata},
            }).execute
        )
