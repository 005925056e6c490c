"""Cache index: resource key -> artifact produced by a completed job.

Consulted by the submitter before any job is created, written by the
executor right after a job completes. Entries are never invalidated except
by explicit deletion when the owning resource (e.g. a model) is deleted.
"""

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

from factor_jobs.db.supabase_client import run_blocking
from factor_jobs.jobs.models import ArtifactRef, CacheEntry, utcnow

logger = logging.getLogger(__name__)


def content_key(
    resource_key: str,
    input_params: Dict[str, Any],
    fields: Optional[Iterable[str]] = None,
) -> str:
    """Derive a cache key from the resource key and the output-affecting params.

    ``fields`` selects which top-level params influence the output (e.g.
    slicer settings and printer definition, but not display names). With no
    ``fields`` the resource key alone is the cache key.
    """
    if fields is None:
        return resource_key
    subset = {name: input_params.get(name) for name in sorted(set(fields))}
    blob = json.dumps(subset, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(f"{resource_key}\n{blob}".encode("utf-8")).hexdigest()
    return f"{resource_key}#{digest[:32]}"


class CacheIndex(ABC):
    """Abstract interface for the artifact cache."""

    @abstractmethod
    async def lookup(self, resource_key: str) -> Optional[ArtifactRef]:
        """Return the cached artifact for a key, or None. No side effects on miss."""
        ...

    @abstractmethod
    async def record(self, resource_key: str, artifact_ref: ArtifactRef) -> None:
        """Store an artifact for a key. Recording an existing key overwrites it."""
        ...

    @abstractmethod
    async def delete(self, resource_key: str) -> bool:
        """Remove one entry. Returns True if something was removed."""
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with ``prefix``. Returns the count."""
        ...


class InMemoryCacheIndex(CacheIndex):
    """Process-local cache index for development and tests."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def lookup(self, resource_key: str) -> Optional[ArtifactRef]:
        entry = self._entries.get(resource_key)
        return entry.artifact_ref.model_copy(deep=True) if entry else None

    async def record(self, resource_key: str, artifact_ref: ArtifactRef) -> None:
        async with self._lock:
            if resource_key in self._entries:
                logger.info("Overwriting cache entry for %s", resource_key)
            self._entries[resource_key] = CacheEntry(
                resource_key=resource_key,
                artifact_ref=artifact_ref.model_copy(deep=True),
            )

    async def delete(self, resource_key: str) -> bool:
        async with self._lock:
            return self._entries.pop(resource_key, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def entries(self) -> Dict[str, CacheEntry]:
        return dict(self._entries)


class SupabaseCacheIndex(CacheIndex):
    """Cache index persisted in a Supabase table keyed by ``resource_key``."""

    def __init__(self, client, table: str = "job_artifact_cache"):
        self._client = client
        self._table = table

    async def lookup(self, resource_key: str) -> Optional[ArtifactRef]:
        response = await run_blocking(
            self._client.table(self._table)
            .select("resource_key, artifact_ref, metadata, created_at")
            .eq("resource_key", resource_key)
            .limit(1)
            .execute
        )
        if not response.data:
            return None
        row = response.data[0]
        return ArtifactRef(url=row["artifact_ref"], metadata=row.get("metadata") or {})

    async def record(self, resource_key: str, artifact_ref: ArtifactRef) -> None:
        await run_blocking(
            self._client.table(self._table)
            .upsert(
                {
                    "resource_key": resource_key,
                    "artifact_ref": artifact_ref.url,
                    "metadata": artifact_ref.metadata,
                    "created_at": utcnow().isoformat(),
                },
                on_conflict="resource_key",
            )
            .execute
        )

    async def delete(self, resource_key: str) -> bool:
        response = await run_blocking(
            self._client.table(self._table)
            .delete()
            .eq("resource_key", resource_key)
            .execute
        )
        return bool(response.data)

    async def delete_prefix(self, prefix: str) -> int:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        response = await run_blocking(
            self._client.table(self._table)
            .delete()
            .like("resource_key", f"{escaped}%")
            .execute
        )
        return len(response.data or [])
