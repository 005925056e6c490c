"""Factor background job service - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from factor_jobs.config import settings
from factor_jobs.api.v1.router import v1_router
from factor_jobs.api.v1.health import router as health_root_router
from factor_jobs.api.v1.artifacts import router as artifacts_router
from factor_jobs.api.v1 import artifacts as artifacts_api
from factor_jobs.api.v1 import jobs as jobs_api
from factor_jobs.jobs.service import build_job_service
from factor_jobs.storage.local_artifacts import LocalArtifactStore

logger = logging.getLogger("factor_jobs")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting Factor job service on port %s", settings.compute_port)
    logger.info("Job store: %s, artifacts: %s", settings.job_store_backend, settings.artifact_backend)
    logger.info("AI server: %s", settings.ai_server_url)

    service = build_job_service(settings)
    jobs_api.set_service(service)
    artifacts_api.set_local_store(service.artifacts)

    # Jobs left pending by a previous process
    await service.start()

    yield

    logger.info("Shutting down Factor job service")
    await service.stop()
    if isinstance(service.artifacts, LocalArtifactStore):
        service.artifacts.cleanup_expired()
    jobs_api.set_service(None)
    artifacts_api.set_local_store(None)


app = FastAPI(
    title="Factor Job Service",
    description="Background slicing, model generation and G-code analysis jobs",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the web and mobile dev servers and any configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
app.include_router(artifacts_router, tags=["artifacts"])  # /artifacts/* for local storage
