"""Download endpoint for artifacts kept on local disk."""

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from factor_jobs.storage.artifacts import guess_content_type
from factor_jobs.storage.local_artifacts import LocalArtifactStore

router = APIRouter()

# Set by main.py during lifespan; only a LocalArtifactStore is served here
_local_store = None


def set_local_store(store):
    global _local_store
    _local_store = store if isinstance(store, LocalArtifactStore) else None


@router.get("/artifacts/{path:path}")
async def get_artifact(path: str):
    """Download a stored job artifact (e.g. sliced G-code)."""
    if _local_store is None:
        raise HTTPException(status_code=404, detail="Artifacts are not served by this instance")

    if not _local_store.file_exists(path):
        raise HTTPException(status_code=404, detail="Artifact not found")

    filename = path.rsplit("/", 1)[-1]
    return FileResponse(
        _local_store.resolve(path), media_type=guess_content_type(filename), filename=filename
    )
