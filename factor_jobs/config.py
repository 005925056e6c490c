"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # Job store / cache backend
    job_store_backend: str = "memory"  # "memory" or "supabase"
    jobs_table: str = "background_tasks"
    cache_table: str = "job_artifact_cache"
    notifications_table: str = "notifications"

    # AI processing server (modelling, slicing, G-code analysis)
    ai_server_url: str = "http://127.0.0.1:7000"
    ai_request_timeout_seconds: float = 120.0
    ai_slicing_timeout_seconds: float = 180.0
    ai_status_timeout_seconds: float = 10.0

    # Retry policy
    job_max_retries: int = 3
    retry_base_delay_seconds: float = 2.0
    retry_max_delay_seconds: float = 60.0
    # Processing jobs with no write for this long are resumed at startup.
    # 0 resumes all of them (single worker); None leaves them to their owner.
    resume_stale_after_seconds: Optional[float] = 0.0

    # Progress polling
    poll_interval_seconds: float = 5.0
    poll_min_interval_seconds: float = 0.5
    poll_max_interval_seconds: float = 30.0
    poll_max_duration_seconds: float = 1800.0
    poll_max_attempts: Optional[int] = None
    poll_max_consecutive_errors: int = 3

    # Artifact storage
    artifact_backend: str = "local"  # "local" or "supabase"
    artifact_dir: Optional[str] = None
    artifact_ttl_hours: int = 24
    artifact_public_base_url: str = "/artifacts"
    artifact_bucket: str = "ai-models"

    # Server
    compute_port: int = 8001
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
