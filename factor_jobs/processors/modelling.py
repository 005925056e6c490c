"""Text/image to 3D model generation (submit, then poll by task id)."""

import logging
from typing import Any, Dict, Optional

from factor_jobs.jobs.errors import InvalidInputError, ProcessingRejectedError
from factor_jobs.jobs.models import JobRecord, TaskType
from factor_jobs.jobs.poller import ModellingProgressAdapter, ProgressAdapter
from factor_jobs.processors.base import OutputFile, ProcessorMode, ProcessorOutput, RemoteProcessor
from factor_jobs.storage.artifacts import StagedInput

logger = logging.getLogger(__name__)

MODELLING_PATH = "/v1/process/modelling"


class ModelGenerationProcessor(RemoteProcessor):
    """POST /v1/process/modelling?async_mode=true, then GET /v1/process/modelling/{task_id}.

    ``input_params``:
        generation_type: "text_to_3d" | "image_to_3d"
        prompt: text prompt (text_to_3d)
        model, quality, style: generation options passed through
    For image_to_3d the source image is the job's ``input_url``.
    """

    task_type = TaskType.MODEL_GENERATION
    mode = ProcessorMode.SUBMIT_POLL
    stages_input = True
    input_as_url = True

    def __init__(self, base_url: str, client=None, timeout: float = 120.0, status_timeout: float = 10.0):
        super().__init__(base_url, client=client, timeout=timeout)
        self._status_timeout = status_timeout

    def _options(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {k: params[k] for k in ("model", "quality", "style", "output", "metadata") if k in params}

    async def submit(self, job: JobRecord, staged: Optional[StagedInput]) -> str:
        params = job.input_params
        generation_type = params.get("generation_type", "text_to_3d")

        if generation_type == "text_to_3d":
            prompt = (params.get("prompt") or "").strip()
            if not prompt:
                raise InvalidInputError("text_to_3d requires a prompt", user_message="Please enter a prompt.")
            body = await self._request(
                "POST",
                MODELLING_PATH,
                params={"async_mode": "true"},
                json={"type": "text_to_3d", "prompt": prompt, **self._options(params)},
            )
        elif generation_type == "image_to_3d":
            if staged is None:
                raise InvalidInputError("image_to_3d requires an input image")
            form = {"type": "image_to_3d"}
            for key, value in self._options(params).items():
                if isinstance(value, str):
                    form[key] = value
            files = None
            if staged.url:
                form["image_url"] = staged.url
            else:
                files = {"image": (staged.filename, staged.data, staged.content_type)}
            body = await self._request(
                "POST", MODELLING_PATH, params={"async_mode": "true"}, data=form, files=files
            )
        else:
            raise InvalidInputError(f"Unknown generation_type {generation_type!r}")

        if body.get("status") == "error":
            raise ProcessingRejectedError(
                f"Modelling rejected: {body.get('error') or body.get('message')}"
            )
        task_id = (body.get("data") or {}).get("task_id") or body.get("task_id")
        if not task_id:
            raise ProcessingRejectedError(f"Modelling response has no task_id: {str(body)[:200]}")
        logger.info("Submitted %s for job %s as task %s", generation_type, job.id, task_id)
        return str(task_id)

    async def get_status(self, provider_job_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET", f"{MODELLING_PATH}/{provider_job_id}", timeout=self._status_timeout
        )

    def progress_adapter(self) -> ProgressAdapter:
        return ModellingProgressAdapter()

    def parse_result(self, result: Any) -> ProcessorOutput:
        data = result or {}
        # Preference order: explicit GLB download, legacy download path, remote fallback
        glb_url = (
            data.get("glb_download_url")
            or data.get("download_url")
            or data.get("result_glb_url")
        )
        if not glb_url:
            raise ProcessingRejectedError(
                f"Modelling finished without a model URL; keys: {sorted(data)}"
            )

        secondary = {}
        stl_url = data.get("stl_download_url")
        if stl_url:
            secondary["stl"] = OutputFile(name="model.stl", url=self.absolute_url(stl_url))
        thumb_url = data.get("thumbnail_download_url") or data.get("thumbnail_url")
        if thumb_url:
            secondary["thumbnail"] = OutputFile(
                name="thumbnail.png", url=self.absolute_url(thumb_url), content_type="image/png"
            )

        return ProcessorOutput(
            primary=OutputFile(name="model.glb", url=self.absolute_url(glb_url)),
            metadata={
                "provider_task_id": data.get("task_id"),
                "remesh_task_id": data.get("remesh_task_id"),
                "glb_file_size": data.get("glb_file_size"),
            },
            secondary=secondary,
        )
