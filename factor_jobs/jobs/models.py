"""Job record data model and state machine for background processing."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple
from pydantic import BaseModel, Field
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class TaskType(str, Enum):
    SLICING = "slicing"
    MODEL_GENERATION = "model_generation"
    GCODE_ANALYSIS = "gcode_analysis"


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED}
)
ACTIVE_STATUSES: Tuple[JobStatus, ...] = (JobStatus.PENDING, JobStatus.PROCESSING)

# Allowed (from, to) edges. processing -> processing is the retry edge.
TRANSITIONS: FrozenSet[Tuple[JobStatus, JobStatus]] = frozenset(
    {
        (JobStatus.PENDING, JobStatus.PROCESSING),
        (JobStatus.PROCESSING, JobStatus.PROCESSING),
        (JobStatus.PROCESSING, JobStatus.COMPLETED),
        (JobStatus.PROCESSING, JobStatus.FAILED),
    }
)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return (current, target) in TRANSITIONS


class JobRecord(BaseModel):
    """Tracks the lifecycle of a background processing job.

    Rows are treated as values: the store hands out copies and every
    mutation produces a new row with a fresh ``updated_at``.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resource_key: str
    # Narrower content key used for the artifact cache; defaults to resource_key
    cache_key: Optional[str] = None
    task_type: TaskType = TaskType.SLICING
    status: JobStatus = JobStatus.PENDING
    user_id: Optional[str] = None
    input_url: Optional[str] = None
    input_params: Dict[str, Any] = Field(default_factory=dict)
    provider_job_id: Optional[str] = None
    progress_percent: float = 0.0
    progress_message: str = ""
    output_url: Optional[str] = None
    output_metadata: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def effective_cache_key(self) -> str:
        return self.cache_key or self.resource_key

    @property
    def retries_remaining(self) -> int:
        return max(0, self.max_retries - self.retry_count)

    def to_row(self) -> Dict[str, Any]:
        """Serialize to a JSON-safe dict (the persisted row shape)."""
        return self.model_dump(mode="json")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobRecord":
        data = dict(row)
        # Rows written before progress columns existed come back as NULL
        if data.get("progress_percent") is None:
            data["progress_percent"] = 0.0
        if data.get("progress_message") is None:
            data["progress_message"] = ""
        if data.get("input_params") is None:
            data["input_params"] = {}
        return cls.model_validate(data)


class ArtifactRef(BaseModel):
    """Reference to a produced artifact (public URL plus descriptive metadata)."""
    url: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CacheEntry(BaseModel):
    resource_key: str
    artifact_ref: ArtifactRef
    created_at: datetime = Field(default_factory=utcnow)


class SubmitResult(BaseModel):
    """Outcome of a submission: either a cached artifact or a job to observe."""
    cached: Optional[ArtifactRef] = None
    job_id: Optional[str] = None
    deduplicated: bool = False

    @property
    def is_cached(self) -> bool:
        return self.cached is not None


class PollState(BaseModel):
    """Ephemeral state of one progress-polling session. Never persisted."""
    provider_job_id: str
    percent: float = 0.0
    status_text: str = ""
    attempts: int = 0
    started_at: datetime = Field(default_factory=utcnow)


class PushNotification(BaseModel):
    job_id: str
    status: JobStatus
    summary: str
    title: str = ""
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
