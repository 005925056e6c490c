import pytest

from factor_jobs.jobs.cache import InMemoryCacheIndex
from factor_jobs.jobs.executor import JobExecutor
from factor_jobs.jobs.notifier import ChangeNotifier
from factor_jobs.jobs.poller import PollOptions
from factor_jobs.jobs.retry import NO_DELAY
from factor_jobs.jobs.store import InMemoryJobStore
from factor_jobs.jobs.submitter import JobSubmitter
from factor_jobs.notifications.push import InMemoryPushNotifier
from factor_jobs.processors.registry import ProcessorRegistry

from fakes import MemoryArtifactStore


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def cache():
    return InMemoryCacheIndex()


@pytest.fixture
def artifacts():
    return MemoryArtifactStore()


@pytest.fixture
def push():
    return InMemoryPushNotifier()


@pytest.fixture
def notifier(store):
    return ChangeNotifier(store)


@pytest.fixture
def make_executor(store, cache, artifacts, notifier, push):
    """Build an executor around the given processors with no backoff waits."""

    def factory(*processors):
        registry = ProcessorRegistry()
        for processor in processors:
            registry.register(processor)
        return JobExecutor(
            store,
            cache,
            registry,
            artifacts,
            notifier=notifier,
            push=push,
            retry_policy=NO_DELAY,
            poll_options=PollOptions(interval=0.0, min_interval=0.0, max_duration=None),
            sleep=_no_sleep,
        )

    return factory


@pytest.fixture
def make_submitter(store, cache):
    def factory(executor, precondition=None):
        return JobSubmitter(store, cache, executor, precondition=precondition)

    return factory
