"""Supabase Storage backend for job artifacts."""

from typing import Optional

import httpx

from factor_jobs.db.supabase_client import run_blocking
from factor_jobs.storage.artifacts import ArtifactStorage


class SupabaseArtifactStore(ArtifactStorage):
    """Uploads artifacts to a Supabase Storage bucket and returns public URLs."""

    def __init__(self, client, bucket: str, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(http_client=http_client)
        self._client = client
        self._bucket = bucket

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        bucket = self._client.storage.from_(self._bucket)
        await run_blocking(
            bucket.upload,
            path,
            data,
            {"content-type": content_type, "cache-control": "3600", "upsert": "true"},
        )
        return bucket.get_public_url(path)

    async def delete_prefix(self, prefix: str) -> int:
        bucket = self._client.storage.from_(self._bucket)
        listing = await run_blocking(bucket.list, prefix.rstrip("/"))
        paths = [f"{prefix.rstrip('/')}/{item['name']}" for item in listing or [] if item.get("id")]
        if paths:
            await run_blocking(bucket.remove, paths)
        return len(paths)
