"""Progress polling for providers with a "submit, then poll by id" contract.

Providers report progress in incompatible shapes. A per-provider
``ProgressAdapter`` turns each status payload into a ``ProviderSnapshot``;
the poller keeps the canonical ``(percent, status_text)`` pair, reports it
when it changes, and stops on the first terminal snapshot, on its time or
attempt cap, or when the local observer cancels.
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

from factor_jobs.config import settings
from factor_jobs.jobs.errors import (
    PollCancelledError,
    PollTimeoutError,
    ProviderFailedError,
    classify,
)
from factor_jobs.jobs.models import PollState

logger = logging.getLogger(__name__)

RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

ProgressCallback = Callable[[float, str], Union[None, Awaitable[None]]]
StatusFetcher = Callable[[str], Awaitable[Dict[str, Any]]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class ProviderSnapshot:
    """One provider status response in canonical form.

    ``percent`` is None when the provider said nothing usable about progress;
    the poller then keeps the previous value.
    """
    outcome: str = RUNNING
    percent: Optional[float] = None
    status_text: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    retryable: bool = False
    retry_after: Optional[float] = None


def _eta_hint(data: Dict[str, Any]) -> Optional[float]:
    for key in ("retry_after", "poll_after", "eta_seconds"):
        value = data.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ProgressAdapter(ABC):
    """Maps a provider-specific status payload to a ProviderSnapshot."""

    @abstractmethod
    def normalize(self, payload: Dict[str, Any]) -> ProviderSnapshot:
        ...


class ModellingProgressAdapter(ProgressAdapter):
    """3D-model generation: ``{status, data: {status: PENDING|...|SUCCEEDED|FAILED, progress}}``."""

    RUNNING_STATES = {"PENDING": "Queued", "IN_PROGRESS": "Generating model", "PROCESSING": "Generating model"}

    def normalize(self, payload: Dict[str, Any]) -> ProviderSnapshot:
        data = payload.get("data") or {}
        if payload.get("status") == "error":
            return ProviderSnapshot(
                outcome=FAILED,
                error=payload.get("error") or payload.get("message") or "Task failed",
            )
        state = str(data.get("status") or "").upper()
        percent = _as_float(data.get("progress"))
        if state == "SUCCEEDED":
            return ProviderSnapshot(outcome=SUCCEEDED, percent=100.0, status_text="Completed", result=data)
        if state in ("FAILED", "EXPIRED", "CANCELED"):
            return ProviderSnapshot(
                outcome=FAILED,
                status_text="Failed",
                error=data.get("error") or payload.get("error") or payload.get("message") or f"Task {state.lower()}",
                # Expired tasks were dropped by the provider, not rejected
                retryable=state == "EXPIRED",
            )
        if state in self.RUNNING_STATES:
            return ProviderSnapshot(
                percent=percent,
                status_text=data.get("message") or self.RUNNING_STATES[state],
                retry_after=_eta_hint(data),
            )
        return ProviderSnapshot(status_text=data.get("message") or state.title() or None)


class AnalysisProgressAdapter(ProgressAdapter):
    """G-code analysis: ``{status, progress: 0..1, progress_message, result, error}``."""

    DONE = {"completed", "done", "finished"}
    FAILED_STATES = {"failed", "error"}
    RUNNING_STATES = {"pending", "queued", "running", "processing", "analyzing"}

    def normalize(self, payload: Dict[str, Any]) -> ProviderSnapshot:
        status = str(payload.get("status") or "").lower()
        fraction = _as_float(payload.get("progress"))
        percent = fraction * 100.0 if fraction is not None else None
        message = payload.get("progress_message")
        if status in self.DONE:
            if payload.get("result") is None:
                return ProviderSnapshot(outcome=FAILED, error="Analysis finished without a result")
            return ProviderSnapshot(
                outcome=SUCCEEDED, percent=100.0, status_text=message or "Analysis complete",
                result=payload["result"],
            )
        if status in self.FAILED_STATES:
            return ProviderSnapshot(outcome=FAILED, error=payload.get("error") or "Unknown analysis error")
        if status in self.RUNNING_STATES:
            return ProviderSnapshot(percent=percent, status_text=message or status.title(), retry_after=_eta_hint(payload))
        return ProviderSnapshot(status_text=message or status or None)


class StepProgressAdapter(ProgressAdapter):
    """Providers that only name the current step.

    Percent is derived from the step's position in ``steps``: the first step
    maps to 0 and each later step to its share of the sequence.
    """

    def __init__(
        self,
        steps: Sequence[str],
        success_states: Sequence[str] = ("completed",),
        failure_states: Sequence[str] = ("failed",),
    ):
        self._steps = [s.lower() for s in steps]
        self._success = {s.lower() for s in success_states}
        self._failure = {s.lower() for s in failure_states}

    def normalize(self, payload: Dict[str, Any]) -> ProviderSnapshot:
        state = str(payload.get("state") or payload.get("status") or "").lower()
        step = str(payload.get("step") or payload.get("current_step") or "").lower()
        if state in self._success:
            return ProviderSnapshot(outcome=SUCCEEDED, percent=100.0, status_text="Completed", result=payload.get("result"))
        if state in self._failure:
            return ProviderSnapshot(outcome=FAILED, error=payload.get("error") or f"Failed during {step or 'processing'}")
        if step in self._steps:
            percent = 100.0 * self._steps.index(step) / len(self._steps)
            return ProviderSnapshot(percent=percent, status_text=step.replace("_", " ").title())
        return ProviderSnapshot(status_text=step.replace("_", " ").title() or None)


class PercentProgressAdapter(ProgressAdapter):
    """Providers that report a raw percentage plus a simple state word."""

    def normalize(self, payload: Dict[str, Any]) -> ProviderSnapshot:
        state = str(payload.get("state") or payload.get("status") or "").lower()
        percent = _as_float(payload.get("percent", payload.get("progress")))
        if state in ("succeeded", "success", "completed", "done"):
            return ProviderSnapshot(outcome=SUCCEEDED, percent=100.0, status_text="Completed", result=payload.get("result"))
        if state in ("failed", "error"):
            return ProviderSnapshot(
                outcome=FAILED, error=payload.get("error") or "Task failed",
                retryable=bool(payload.get("retryable", False)),
            )
        return ProviderSnapshot(percent=percent, status_text=payload.get("message") or state or None,
                                retry_after=_eta_hint(payload))


@dataclass
class PollOptions:
    interval: float = 5.0
    min_interval: float = 0.5
    max_interval: float = 30.0
    max_duration: Optional[float] = 1800.0
    max_attempts: Optional[int] = None
    max_consecutive_errors: int = 3

    @classmethod
    def from_settings(cls) -> "PollOptions":
        return cls(
            interval=settings.poll_interval_seconds,
            min_interval=settings.poll_min_interval_seconds,
            max_interval=settings.poll_max_interval_seconds,
            max_duration=settings.poll_max_duration_seconds,
            max_attempts=settings.poll_max_attempts,
            max_consecutive_errors=settings.poll_max_consecutive_errors,
        )


@dataclass
class PollResult:
    provider_job_id: str
    result: Any
    percent: float
    status_text: str
    attempts: int


class PollHandle:
    """Lets a caller stop a running poll. The provider task is left alone."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ProgressPoller:
    """Polls one provider through ``fetch_status`` and an adapter."""

    def __init__(
        self,
        fetch_status: StatusFetcher,
        adapter: ProgressAdapter,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch_status = fetch_status
        self._adapter = adapter
        self._sleep = sleep
        self._clock = clock

    async def _notify(self, on_progress: Optional[ProgressCallback], percent: float, text: str) -> None:
        if on_progress is None:
            return
        try:
            result = on_progress(percent, text)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Progress callback failed")

    async def _wait(self, seconds: float, handle: Optional[PollHandle]) -> None:
        if handle is None:
            await self._sleep(seconds)
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(handle.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, waiter):
                if not fut.done():
                    fut.cancel()

    def _next_wait(self, snapshot: Optional[ProviderSnapshot], options: PollOptions) -> float:
        if snapshot is not None and snapshot.retry_after is not None:
            return min(options.max_interval, max(options.min_interval, snapshot.retry_after))
        return options.interval

    async def poll(
        self,
        provider_job_id: str,
        on_progress: Optional[ProgressCallback] = None,
        options: Optional[PollOptions] = None,
        handle: Optional[PollHandle] = None,
    ) -> PollResult:
        """Poll until the provider reports a terminal state.

        Raises PollTimeoutError when the duration or attempt cap is hit,
        ProviderFailedError when the provider reports failure, and
        PollCancelledError when ``handle`` is cancelled.
        """
        options = options or PollOptions.from_settings()
        state = PollState(provider_job_id=provider_job_id)
        started = self._clock()
        last_reported = None
        consecutive_errors = 0

        while True:
            if handle is not None and handle.cancelled:
                raise PollCancelledError(provider_job_id)
            elapsed = self._clock() - started
            if options.max_duration is not None and elapsed >= options.max_duration:
                raise PollTimeoutError(
                    f"Polling {provider_job_id} exceeded {options.max_duration}s after {state.attempts} attempts"
                )
            if options.max_attempts is not None and state.attempts >= options.max_attempts:
                raise PollTimeoutError(
                    f"Polling {provider_job_id} exceeded {options.max_attempts} attempts"
                )

            state.attempts += 1
            snapshot = None
            try:
                payload = await self._fetch_status(provider_job_id)
            except Exception as exc:
                error = classify(exc)
                consecutive_errors += 1
                if not error.retryable or consecutive_errors >= options.max_consecutive_errors:
                    if error is exc:
                        raise
                    raise error from exc
                logger.warning(
                    "Status fetch for %s failed (%d/%d): %s",
                    provider_job_id, consecutive_errors, options.max_consecutive_errors, exc,
                )
            else:
                consecutive_errors = 0
                snapshot = self._adapter.normalize(payload or {})
                percent = state.percent
                if snapshot.percent is not None:
                    percent = max(state.percent, min(100.0, max(0.0, snapshot.percent)))
                state.percent = percent
                state.status_text = snapshot.status_text or state.status_text

                if (state.percent, state.status_text) != last_reported:
                    last_reported = (state.percent, state.status_text)
                    await self._notify(on_progress, state.percent, state.status_text)

                if snapshot.outcome == SUCCEEDED:
                    return PollResult(
                        provider_job_id=provider_job_id,
                        result=snapshot.result,
                        percent=state.percent,
                        status_text=state.status_text,
                        attempts=state.attempts,
                    )
                if snapshot.outcome == FAILED:
                    raise ProviderFailedError(
                        f"Provider task {provider_job_id} failed: {snapshot.error}",
                        retryable=snapshot.retryable,
                    )

            wait = self._next_wait(snapshot, options)
            if options.max_duration is not None:
                remaining = options.max_duration - (self._clock() - started)
                wait = max(0.0, min(wait, remaining))
            await self._wait(wait, handle)
