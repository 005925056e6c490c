"""Fan-out of job store mutations to live observers.

Observers subscribe by job id or by resource key. Each subscription owns a
queue drained by its own task, so a slow callback never delays the store or
other observers. Subscribing and unsubscribing have no effect on the job.
"""

import asyncio
import inspect
import itertools
import logging
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Union

from factor_jobs.jobs.models import JobRecord
from factor_jobs.jobs.store import JobStore

logger = logging.getLogger(__name__)

Callback = Callable[[JobRecord], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


class _Subscription:
    def __init__(self, sub_id: int, target: str, callback: Callback):
        self.id = sub_id
        self.target = target
        self.callback = callback
        self.queue: "asyncio.Queue[JobRecord]" = asyncio.Queue()
        self.last_seen: Optional[datetime] = None
        self.task: Optional[asyncio.Task] = None

    def matches(self, job: JobRecord) -> bool:
        return self.target == job.id or self.target == job.resource_key


class ChangeNotifier:
    """Delivers the full current job row to subscribers on every mutation."""

    def __init__(self, store: JobStore):
        self._store = store
        self._subs: Dict[int, _Subscription] = {}
        self._ids = itertools.count(1)
        self._remove_listener = store.add_listener(self._on_change)

    def _on_change(self, job: JobRecord) -> None:
        for sub in list(self._subs.values()):
            if sub.matches(job):
                sub.queue.put_nowait(job)

    async def _drain(self, sub: _Subscription) -> None:
        while True:
            job = await sub.queue.get()
            # Drop states older than what this subscriber already saw
            if sub.last_seen is not None and job.updated_at < sub.last_seen:
                continue
            sub.last_seen = job.updated_at
            try:
                result = sub.callback(job)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Subscriber %s callback failed for job %s", sub.id, job.id
                )

    async def _current_state(self, target: str) -> Optional[JobRecord]:
        job = await self._store.get(target)
        if job is None:
            job = await self._store.find_latest(target)
        return job

    async def subscribe(self, target: str, callback: Callback) -> Unsubscribe:
        """Subscribe to a job id or resource key.

        The current state (if the target exists) is delivered right away, so
        an observer that attaches late still sees a terminal result.
        """
        sub = _Subscription(next(self._ids), target, callback)
        # Register before reading so no mutation can fall between the two
        self._subs[sub.id] = sub
        sub.task = asyncio.create_task(self._drain(sub))

        current = await self._current_state(target)
        if current is not None:
            sub.queue.put_nowait(current)

        def unsubscribe() -> None:
            removed = self._subs.pop(sub.id, None)
            if removed is not None and removed.task is not None:
                removed.task.cancel()

        return unsubscribe

    async def stream(self, target: str) -> AsyncIterator[JobRecord]:
        """Yield job states for ``target`` until a terminal state is seen."""
        queue: "asyncio.Queue[JobRecord]" = asyncio.Queue()
        unsubscribe = await self.subscribe(target, queue.put_nowait)
        try:
            while True:
                job = await queue.get()
                yield job
                if job.is_terminal:
                    return
        finally:
            unsubscribe()

    def has_observers(self, job: JobRecord) -> bool:
        return any(sub.matches(job) for sub in self._subs.values())

    def subscriber_count(self) -> int:
        return len(self._subs)

    async def close(self) -> None:
        self._remove_listener()
        subs = list(self._subs.values())
        self._subs.clear()
        for sub in subs:
            if sub.task is not None:
                sub.task.cancel()
        for sub in subs:
            if sub.task is not None:
                try:
                    await sub.task
                except asyncio.CancelledError:
                    pass
