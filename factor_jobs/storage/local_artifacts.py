"""Local-disk artifact storage with TTL-based cleanup for development."""

import asyncio
import os
import shutil
import tempfile
import time
from typing import Optional

import httpx

from factor_jobs.storage.artifacts import ArtifactStorage


class LocalArtifactStore(ArtifactStorage):
    """Writes artifacts under a base directory; URLs are served by the API."""

    def __init__(
        self,
        base_dir: Optional[str] = None,
        ttl_hours: int = 24,
        public_base_url: str = "/artifacts",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(http_client=http_client)
        if base_dir:
            self._base_dir = base_dir
        else:
            self._base_dir = os.path.join(tempfile.gettempdir(), "factor_artifacts")
        os.makedirs(self._base_dir, exist_ok=True)
        self._ttl_seconds = ttl_hours * 3600
        self._public_base_url = public_base_url.rstrip("/")

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def resolve(self, path: str) -> str:
        """Absolute filesystem path for a storage path; refuses escapes."""
        full = os.path.realpath(os.path.join(self._base_dir, path))
        root = os.path.realpath(self._base_dir)
        if os.path.commonpath([full, root]) != root:
            raise ValueError(f"Path escapes artifact dir: {path}")
        return full

    def file_exists(self, path: str) -> bool:
        try:
            return os.path.isfile(self.resolve(path))
        except ValueError:
            return False

    def _write(self, path: str, data: bytes) -> None:
        full = self.resolve(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "wb") as dst:
            dst.write(data)

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write, path, data)
        return f"{self._public_base_url}/{path}"

    async def delete_prefix(self, prefix: str) -> int:
        target = self.resolve(prefix)
        if os.path.isdir(target):
            count = sum(len(files) for _, _, files in os.walk(target))
            shutil.rmtree(target, ignore_errors=True)
            return count
        if os.path.isfile(target):
            os.remove(target)
            return 1
        return 0

    def cleanup_expired(self) -> int:
        """Remove top-level directories older than TTL. Returns count of removed dirs."""
        now = time.time()
        removed = 0
        if not os.path.exists(self._base_dir):
            return 0
        for entry in os.listdir(self._base_dir):
            entry_dir = os.path.join(self._base_dir, entry)
            if not os.path.isdir(entry_dir):
                continue
            if now - os.path.getmtime(entry_dir) > self._ttl_seconds:
                shutil.rmtree(entry_dir, ignore_errors=True)
                removed += 1
        return removed
