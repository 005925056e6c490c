"""Remote processor interface.

A processor wraps one endpoint family of the AI server. Two invocation shapes
exist: SYNC processors return the final result from ``run``; SUBMIT_POLL
processors return a provider task id from ``submit`` and expose
``get_status`` plus a progress adapter for the poller.
"""

from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from factor_jobs.jobs.errors import InvalidInputError, error_for_status
from factor_jobs.jobs.models import JobRecord, TaskType
from factor_jobs.jobs.poller import ProgressAdapter
from factor_jobs.storage.artifacts import StagedInput


class ProcessorMode(str, Enum):
    SYNC = "sync"
    SUBMIT_POLL = "submit_poll"


@dataclass
class OutputFile:
    """One file produced by a processor, either hosted remotely or inline."""
    name: str
    url: Optional[str] = None
    content: Optional[bytes] = None
    content_type: Optional[str] = None


@dataclass
class ProcessorOutput:
    primary: OutputFile
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Optional artifacts (thumbnail, alternate formats); failures are tolerated
    secondary: Dict[str, OutputFile] = field(default_factory=dict)


class RemoteProcessor(ABC):
    """Base class for AI server clients."""

    task_type: TaskType
    mode: ProcessorMode = ProcessorMode.SYNC
    # Whether the job's input_url must be fetched before invocation, and if so
    # whether the processor wants a storage URL instead of raw bytes
    stages_input: bool = False
    input_as_url: bool = False

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 120.0):
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    def absolute_url(self, url: Optional[str]) -> Optional[str]:
        """The AI server returns paths like ``/files/x.glb``; make them absolute."""
        if not url:
            return None
        if url.startswith("/"):
            return f"{self._base_url}{url}"
        return url

    async def _request(self, method: str, path: str, timeout: Optional[float] = None, **kwargs) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        timeout = timeout or self._timeout
        if self._client is not None:
            response = await self._client.request(method, url, timeout=timeout, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(method, url, **kwargs)
        if response.status_code >= 400:
            raise error_for_status(response, context=f"{method} {path}")
        try:
            return response.json()
        except ValueError:
            raise InvalidInputError(f"{method} {path} returned non-JSON body: {response.text[:200]}")

    async def run(self, job: JobRecord, staged: Optional[StagedInput]) -> ProcessorOutput:
        raise NotImplementedError(f"{type(self).__name__} does not support synchronous runs")

    async def submit(self, job: JobRecord, staged: Optional[StagedInput]) -> str:
        raise NotImplementedError(f"{type(self).__name__} does not support submit/poll")

    async def get_status(self, provider_job_id: str) -> Dict[str, Any]:
        raise NotImplementedError(f"{type(self).__name__} does not support submit/poll")

    def progress_adapter(self) -> ProgressAdapter:
        raise NotImplementedError(f"{type(self).__name__} does not support submit/poll")

    def parse_result(self, result: Any) -> ProcessorOutput:
        """Turn a poller's terminal result into outputs (SUBMIT_POLL only)."""
        raise NotImplementedError(f"{type(self).__name__} does not support submit/poll")
