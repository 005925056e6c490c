"""Job executor: drives a job from pending to a terminal state.

Each job runs as its own asyncio task. The executor's only externally visible
effects are job store writes (and the cache record / push notification that
follow a terminal write); nothing it raises reaches the submitter.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from factor_jobs.jobs.cache import CacheIndex
from factor_jobs.jobs.errors import JobError, classify
from factor_jobs.jobs.models import ArtifactRef, JobRecord, JobStatus, utcnow
from factor_jobs.jobs.notifier import ChangeNotifier
from factor_jobs.jobs.poller import PollOptions, ProgressPoller
from factor_jobs.jobs.retry import RetryPolicy
from factor_jobs.jobs.store import JobStore
from factor_jobs.notifications.push import PushNotifier, build_notification
from factor_jobs.processors.base import ProcessorMode, RemoteProcessor
from factor_jobs.processors.registry import ProcessorRegistry
from factor_jobs.storage.artifacts import ArtifactStorage

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

GENERIC_FAILURE = "Processing failed unexpectedly. Please try again."


class JobExecutor:
    """Runs jobs as independent background tasks with retry and backoff."""

    def __init__(
        self,
        store: JobStore,
        cache: CacheIndex,
        processors: ProcessorRegistry,
        artifacts: ArtifactStorage,
        notifier: Optional[ChangeNotifier] = None,
        push: Optional[PushNotifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        poll_options: Optional[PollOptions] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._store = store
        self._cache = cache
        self._processors = processors
        self._artifacts = artifacts
        self._notifier = notifier
        self._push = push
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._poll_options = poll_options
        self._sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}

    def execute(self, job: JobRecord) -> asyncio.Task:
        """Start running ``job`` in the background and return immediately."""
        existing = self._tasks.get(job.id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self.run(job.id), name=f"job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda t, job_id=job.id: self._forget(job_id, t))
        return task

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    def running_jobs(self) -> List[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def wait(self, job_id: str) -> None:
        """Wait for the local task of a job, if one is running."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def resume_pending(self, limit: int = 50, stale_after: Optional[float] = 0.0) -> int:
        """Start jobs a previous process left unfinished (e.g. after a restart).

        Pending jobs are always resumed. A processing job is resumed once its
        row has gone ``stale_after`` seconds without a write; with None only
        pending jobs are picked up.
        """
        stale_before = None
        if stale_after is not None:
            stale_before = utcnow() - timedelta(seconds=stale_after)
        jobs = await self._store.list_pending(limit=limit, stale_before=stale_before)
        jobs = [job for job in jobs if job.id not in self.running_jobs()]
        for job in jobs:
            self.execute(job)
        if jobs:
            logger.info("Resumed %d pending job(s)", len(jobs))
        return len(jobs)

    async def shutdown(self) -> None:
        """Cancel local tasks. Remote work continues; rows stay non-terminal."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    async def run(self, job_id: str) -> Optional[JobRecord]:
        """Run one job to a terminal state. Never raises (except cancellation)."""
        try:
            return await self._run(job_id)
        except asyncio.CancelledError:
            logger.info("Local task for job %s cancelled; row left as is", job_id)
            raise
        except Exception:
            logger.exception("Executor crashed while running job %s", job_id)
            try:
                job = await self._store.transition(job_id, JobStatus.FAILED, error_message=GENERIC_FAILURE)
            except Exception:
                logger.exception("Could not mark job %s failed", job_id)
                return None
            await self._after_terminal(job)
            return job

    async def _run(self, job_id: str) -> Optional[JobRecord]:
        job = await self._store.get(job_id)
        if job is None:
            logger.warning("Job %s not found; nothing to execute", job_id)
            return None
        if job.is_terminal:
            return job
        if job.status == JobStatus.PENDING:
            job = await self._store.transition(job.id, JobStatus.PROCESSING)
            if job.is_terminal:
                return job
        logger.info("Processing job %s (%s, %s)", job.id, job.task_type.value, job.resource_key)

        while True:
            try:
                return await self._attempt(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify(exc)
                logger.warning(
                    "Job %s attempt %d/%d failed (%s, retryable=%s): %s",
                    job.id, job.retry_count + 1, job.max_retries + 1,
                    type(error).__name__, error.retryable, exc,
                    exc_info=not isinstance(exc, JobError),
                )

            current = await self._store.get(job.id)
            if current is None or current.is_terminal:
                return current
            if error.retryable and current.retry_count < current.max_retries:
                job = await self._store.record_retry(job.id)
                if job.is_terminal:
                    return job
                delay = self._retry_policy.delay(job.retry_count, getattr(error, "retry_after", None))
                logger.info("Retrying job %s in %.1fs (retry %d/%d)", job.id, delay, job.retry_count, job.max_retries)
                await self._sleep(delay)
                continue

            job = await self._store.transition(job.id, JobStatus.FAILED, error_message=error.user_message)
            logger.error("Job %s failed: %s", job.id, error)
            await self._after_terminal(job)
            return job

    async def _invoke(self, job: JobRecord, processor: RemoteProcessor, staged):
        if processor.mode == ProcessorMode.SYNC:
            return await processor.run(job, staged)

        provider_job_id = await processor.submit(job, staged)
        await self._store.update_progress(job.id, 0.0, "Submitted", provider_job_id=provider_job_id)

        async def on_progress(percent: float, status_text: str) -> None:
            await self._store.update_progress(job.id, percent, status_text)

        poller = ProgressPoller(processor.get_status, processor.progress_adapter(), sleep=self._sleep)
        result = await poller.poll(provider_job_id, on_progress, self._poll_options)
        return processor.parse_result(result.result)

    async def _attempt(self, job: JobRecord) -> JobRecord:
        processor = self._processors.require(job.task_type)

        staged = None
        if processor.stages_input and job.input_url:
            staged = await self._artifacts.stage_input(job, as_url=processor.input_as_url)

        output = await self._invoke(job, processor, staged)

        primary = output.primary
        output_url = await self._artifacts.persist_output(
            job, primary.name, source_url=primary.url, content=primary.content,
            content_type=primary.content_type,
        )
        metadata = {k: v for k, v in output.metadata.items() if v is not None}
        for name, extra in output.secondary.items():
            try:
                metadata[f"{name}_url"] = await self._artifacts.persist_output(
                    job, extra.name, source_url=extra.url, content=extra.content,
                    content_type=extra.content_type,
                )
            except Exception as exc:
                logger.warning("Optional artifact %s for job %s unavailable: %s", name, job.id, exc)

        done = await self._store.transition(
            job.id, JobStatus.COMPLETED, output_url=output_url, output_metadata=metadata
        )
        if done.status == JobStatus.COMPLETED and done.output_url == output_url:
            try:
                await self._cache.record(
                    done.effective_cache_key, ArtifactRef(url=output_url, metadata=metadata)
                )
            except Exception:
                logger.exception("Could not cache result of job %s", job.id)
            logger.info("Job %s completed: %s", job.id, output_url)
            await self._after_terminal(done)
        return done

    async def _after_terminal(self, job: JobRecord) -> None:
        if self._push is None:
            return
        if self._notifier is not None and self._notifier.has_observers(job):
            return
        try:
            await self._push.send(build_notification(job))
        except Exception:
            logger.exception("Push notification for job %s failed", job.id)
