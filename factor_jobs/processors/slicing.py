"""G-code slicing: upload a model file and slice it in one request."""

import json
import logging
from typing import Optional

from factor_jobs.jobs.errors import InvalidInputError, ProcessingRejectedError
from factor_jobs.jobs.models import JobRecord, TaskType
from factor_jobs.processors.base import OutputFile, ProcessorMode, ProcessorOutput, RemoteProcessor
from factor_jobs.storage.artifacts import StagedInput

logger = logging.getLogger(__name__)

SLICE_PATH = "/v1/process/upload-stl-and-slice"


class SlicingProcessor(RemoteProcessor):
    """POST /v1/process/upload-stl-and-slice (multipart) -> {status, data: {gcode_url, gcode_metadata}}."""

    task_type = TaskType.SLICING
    mode = ProcessorMode.SYNC
    stages_input = True

    async def run(self, job: JobRecord, staged: Optional[StagedInput]) -> ProcessorOutput:
        if staged is None or staged.data is None:
            raise InvalidInputError(f"Slicing job {job.id} has no model file to slice")

        params = job.input_params
        files = {"model_file": (staged.filename, staged.data, staged.content_type)}
        form = {}
        if params.get("cura_settings"):
            form["cura_settings_json"] = json.dumps(params["cura_settings"])
        if params.get("printer_definition"):
            form["printer_definition_json"] = json.dumps(params["printer_definition"])

        logger.info("Slicing %s (%d bytes) for job %s", staged.filename, len(staged.data), job.id)
        body = await self._request("POST", SLICE_PATH, files=files, data=form)

        data = body.get("data") or {}
        if body.get("status") == "error" or not data.get("gcode_url"):
            raise ProcessingRejectedError(
                f"Slicing failed: {body.get('error') or body.get('message') or 'no gcode_url in response'}"
            )

        model_name = params.get("model_name") or staged.filename.rsplit(".", 1)[0] or job.id[:8]
        return ProcessorOutput(
            primary=OutputFile(
                name=f"{model_name}.gcode",
                url=self.absolute_url(data["gcode_url"]),
                content_type="text/x-gcode",
            ),
            metadata={
                "gcode_metadata": data.get("gcode_metadata") or {},
                "provider_task_id": data.get("task_id"),
                "printer_model_id": params.get("printer_model_id"),
            },
        )
