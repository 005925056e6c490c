"""Processor registry: task type -> remote processor."""

from typing import Dict, List, Optional

import httpx

from factor_jobs.config import settings
from factor_jobs.jobs.models import TaskType
from factor_jobs.processors.base import RemoteProcessor
from factor_jobs.processors.gcode_analysis import GcodeAnalysisProcessor
from factor_jobs.processors.modelling import ModelGenerationProcessor
from factor_jobs.processors.slicing import SlicingProcessor


class ProcessorRegistry:
    """Holds one processor per task type."""

    def __init__(self):
        self._processors: Dict[TaskType, RemoteProcessor] = {}

    def register(self, processor: RemoteProcessor) -> None:
        self._processors[processor.task_type] = processor

    def get(self, task_type: TaskType) -> Optional[RemoteProcessor]:
        return self._processors.get(task_type)

    def require(self, task_type: TaskType) -> RemoteProcessor:
        processor = self._processors.get(task_type)
        if processor is None:
            raise ValueError(f"No processor registered for task type '{task_type.value}'")
        return processor

    def task_types(self) -> List[TaskType]:
        return list(self._processors)


def default_registry(client: Optional[httpx.AsyncClient] = None) -> ProcessorRegistry:
    """Registry wired to the configured AI server."""
    registry = ProcessorRegistry()
    registry.register(
        SlicingProcessor(
            settings.ai_server_url, client=client, timeout=settings.ai_slicing_timeout_seconds
        )
    )
    registry.register(
        ModelGenerationProcessor(
            settings.ai_server_url,
            client=client,
            timeout=settings.ai_request_timeout_seconds,
            status_timeout=settings.ai_status_timeout_seconds,
        )
    )
    registry.register(
        GcodeAnalysisProcessor(
            settings.ai_server_url,
            client=client,
            timeout=settings.ai_request_timeout_seconds,
            status_timeout=settings.ai_status_timeout_seconds,
        )
    )
    return registry
