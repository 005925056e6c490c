"""Wiring for the job subsystem: picks backends from settings."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from factor_jobs.config import Settings, settings as default_settings
from factor_jobs.jobs.cache import CacheIndex, InMemoryCacheIndex, SupabaseCacheIndex
from factor_jobs.jobs.executor import JobExecutor
from factor_jobs.jobs.notifier import ChangeNotifier
from factor_jobs.jobs.poller import PollOptions
from factor_jobs.jobs.retry import RetryPolicy
from factor_jobs.jobs.store import InMemoryJobStore, JobStore
from factor_jobs.jobs.submitter import JobSubmitter, Precondition
from factor_jobs.jobs.supabase_store import SupabaseJobStore
from factor_jobs.notifications.push import LoggingPushNotifier, PushNotifier, SupabasePushNotifier
from factor_jobs.processors.registry import ProcessorRegistry, default_registry
from factor_jobs.storage.artifacts import ArtifactStorage
from factor_jobs.storage.local_artifacts import LocalArtifactStore
from factor_jobs.storage.supabase_artifacts import SupabaseArtifactStore

logger = logging.getLogger(__name__)


@dataclass
class JobService:
    store: JobStore
    cache: CacheIndex
    notifier: ChangeNotifier
    executor: JobExecutor
    submitter: JobSubmitter
    artifacts: ArtifactStorage
    http_client: Optional[httpx.AsyncClient] = None
    resume_stale_after: Optional[float] = 0.0

    async def start(self) -> None:
        await self.executor.resume_pending(stale_after=self.resume_stale_after)

    async def stop(self) -> None:
        await self.executor.shutdown()
        await self.notifier.close()
        if self.http_client is not None:
            await self.http_client.aclose()


def build_job_service(
    config: Optional[Settings] = None,
    *,
    supabase_client=None,
    http_client: Optional[httpx.AsyncClient] = None,
    processors: Optional[ProcessorRegistry] = None,
    push: Optional[PushNotifier] = None,
    precondition: Optional[Precondition] = None,
) -> JobService:
    """Build the store, cache, executor and submitter described by ``config``."""
    config = config or default_settings
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=config.ai_request_timeout_seconds)

    def client():
        nonlocal supabase_client
        if supabase_client is None:
            from factor_jobs.db.supabase_client import get_supabase
            supabase_client = get_supabase()
        return supabase_client

    if config.job_store_backend == "supabase":
        store: JobStore = SupabaseJobStore(client(), table=config.jobs_table)
        cache: CacheIndex = SupabaseCacheIndex(client(), table=config.cache_table)
    elif config.job_store_backend == "memory":
        store = InMemoryJobStore()
        cache = InMemoryCacheIndex()
    else:
        raise ValueError(f"Unknown job_store_backend '{config.job_store_backend}'")

    if config.artifact_backend == "supabase":
        artifacts: ArtifactStorage = SupabaseArtifactStore(
            client(), bucket=config.artifact_bucket, http_client=http_client
        )
    elif config.artifact_backend == "local":
        artifacts = LocalArtifactStore(
            base_dir=config.artifact_dir,
            ttl_hours=config.artifact_ttl_hours,
            public_base_url=config.artifact_public_base_url,
            http_client=http_client,
        )
    else:
        raise ValueError(f"Unknown artifact_backend '{config.artifact_backend}'")

    if push is None:
        if config.job_store_backend == "supabase":
            push = SupabasePushNotifier(client(), table=config.notifications_table)
        else:
            push = LoggingPushNotifier()

    notifier = ChangeNotifier(store)
    executor = JobExecutor(
        store,
        cache,
        processors or default_registry(http_client),
        artifacts,
        notifier=notifier,
        push=push,
        retry_policy=RetryPolicy(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
        ),
        poll_options=PollOptions(
            interval=config.poll_interval_seconds,
            min_interval=config.poll_min_interval_seconds,
            max_interval=config.poll_max_interval_seconds,
            max_duration=config.poll_max_duration_seconds,
            max_attempts=config.poll_max_attempts,
            max_consecutive_errors=config.poll_max_consecutive_errors,
        ),
    )
    submitter = JobSubmitter(
        store, cache, executor,
        precondition=precondition,
        default_max_retries=config.job_max_retries,
    )
    logger.info(
        "Job service ready (store=%s, artifacts=%s)",
        config.job_store_backend, config.artifact_backend,
    )
    return JobService(
        store=store,
        cache=cache,
        notifier=notifier,
        executor=executor,
        submitter=submitter,
        artifacts=artifacts,
        http_client=http_client,
        resume_stale_after=config.resume_stale_after_seconds,
    )
