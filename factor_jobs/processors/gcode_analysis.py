"""G-code analysis: start an analysis, poll its status, keep the report."""

import json
import logging
from typing import Any, Dict, Optional

from factor_jobs.jobs.errors import InvalidInputError, ProcessingRejectedError
from factor_jobs.jobs.models import JobRecord, TaskType
from factor_jobs.jobs.poller import AnalysisProgressAdapter, ProgressAdapter
from factor_jobs.processors.base import OutputFile, ProcessorMode, ProcessorOutput, RemoteProcessor
from factor_jobs.storage.artifacts import StagedInput

logger = logging.getLogger(__name__)


class GcodeAnalysisProcessor(RemoteProcessor):
    """POST /api/v1/gcode/analyze -> {analysis_id}; GET /api/v1/gcode/analysis/{id}."""

    task_type = TaskType.GCODE_ANALYSIS
    mode = ProcessorMode.SUBMIT_POLL

    def __init__(self, base_url: str, client=None, timeout: float = 120.0, status_timeout: float = 10.0):
        super().__init__(base_url, client=client, timeout=timeout)
        self._status_timeout = status_timeout

    async def submit(self, job: JobRecord, staged: Optional[StagedInput]) -> str:
        params = job.input_params
        request: Dict[str, Any] = {
            k: params[k]
            for k in ("gcode_content", "printer_info", "filament_type", "analysis_mode", "user_id")
            if k in params
        }
        if job.input_url:
            request["gcode_url"] = job.input_url
        if "gcode_content" not in request and "gcode_url" not in request:
            raise InvalidInputError("G-code analysis needs gcode_content or an input URL")

        body = await self._request("POST", "/api/v1/gcode/analyze", json=request)
        analysis_id = body.get("analysis_id")
        if not analysis_id:
            raise ProcessingRejectedError(f"Analysis response has no analysis_id: {str(body)[:200]}")
        logger.info("Started G-code analysis %s for job %s", analysis_id, job.id)
        return str(analysis_id)

    async def get_status(self, provider_job_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET", f"/api/v1/gcode/analysis/{provider_job_id}", timeout=self._status_timeout
        )

    def progress_adapter(self) -> ProgressAdapter:
        return AnalysisProgressAdapter()

    def parse_result(self, result: Any) -> ProcessorOutput:
        report = result or {}
        summary = report.get("final_summary") or {}
        return ProcessorOutput(
            primary=OutputFile(
                name="analysis_report.json",
                content=json.dumps(report, ensure_ascii=False).encode("utf-8"),
                content_type="application/json",
            ),
            metadata={
                "overall_quality_score": summary.get("overall_quality_score"),
                "total_issues_found": summary.get("total_issues_found"),
                "critical_issues": summary.get("critical_issues"),
            },
        )
