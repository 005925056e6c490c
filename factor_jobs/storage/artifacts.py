"""Artifact storage: staging job inputs and persisting processor outputs.

Processors return URLs on their own server; those files are copied into
storage the application controls so the job's ``output_url`` stays valid
after the processor cleans up.
"""

import logging
import mimetypes
import posixpath
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx

from factor_jobs.jobs.errors import error_for_status
from factor_jobs.jobs.models import JobRecord

logger = logging.getLogger(__name__)


@dataclass
class StagedInput:
    """A job input made reachable for a processor: raw bytes and/or a URL."""
    filename: str
    content_type: str
    data: Optional[bytes] = None
    url: Optional[str] = None


def safe_name(name: str, default: str = "artifact") -> str:
    """Storage-safe file name: ASCII letters, digits, dot, dash, underscore."""
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return cleaned or default


def filename_from_url(url: str, default: str = "input.bin") -> str:
    name = posixpath.basename(urlparse(url).path)
    return name or default


def guess_content_type(filename: str) -> str:
    if filename.endswith(".gcode"):
        return "text/x-gcode"
    if filename.endswith(".glb"):
        return "model/gltf-binary"
    if filename.endswith(".stl"):
        return "model/stl"
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"


class ArtifactStorage(ABC):
    """Stores artifacts under per-job paths and hands out public URLs."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, fetch_timeout: float = 120.0):
        self._http = http_client
        self._fetch_timeout = fetch_timeout

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str) -> str:
        """Write ``data`` at ``path`` and return its public URL."""
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Remove every stored artifact under ``prefix``."""
        ...

    async def fetch(self, url: str) -> bytes:
        """Download a file. Transport errors propagate for the caller to classify."""
        if self._http is not None:
            response = await self._http.get(url, timeout=self._fetch_timeout, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=self._fetch_timeout, follow_redirects=True) as client:
                response = await client.get(url)
        if response.status_code >= 400:
            raise error_for_status(response, context=f"download {url}")
        return response.content

    async def stage_input(self, job: JobRecord, as_url: bool = False) -> Optional[StagedInput]:
        """Fetch the job's source artifact; re-upload it when a URL is required."""
        if not job.input_url:
            return None
        filename = job.input_params.get("input_filename") or filename_from_url(job.input_url)
        content_type = guess_content_type(filename)
        data = await self.fetch(job.input_url)
        logger.info("Staged input for job %s: %s (%d bytes)", job.id, filename, len(data))
        staged = StagedInput(filename=filename, content_type=content_type, data=data)
        if as_url:
            staged.url = await self.put(f"staging/{job.id}/{safe_name(filename)}", data, content_type)
        return staged

    async def persist_output(
        self,
        job: JobRecord,
        name: str,
        source_url: Optional[str] = None,
        content: Optional[bytes] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """Copy one output artifact into storage and return its public URL."""
        if content is None:
            if not source_url:
                raise ValueError(f"Output {name} has neither content nor a source URL")
            content = await self.fetch(source_url)
        path = f"{job.user_id or 'anonymous'}/{job.id}/{safe_name(name)}"
        url = await self.put(path, content, content_type or guess_content_type(name))
        logger.info("Persisted %s for job %s (%d bytes)", name, job.id, len(content))
        return url
