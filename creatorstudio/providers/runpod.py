"""
Creator Studio — providers/runpod.py
─────────────────────────────────────────────────────────────────
RunPod Serverless — poll mode, cancellable.

    POST /v2/{endpoint}/run          → {"id", "status"}
    GET  /v2/{endpoint}/status/{id}  → IN_QUEUE | IN_PROGRESS | COMPLETED | FAILED ...
    POST /v2/{endpoint}/cancel/{id}

.env:
    RUNPOD_API_KEY=...
    RUNPOD_ENDPOINT_ID=...   (from the RunPod dashboard)
─────────────────────────────────────────────────────────────────
"""

import logging
from typing import Optional

from creatorstudio.models.job import Job
from creatorstudio.providers.base import (
    ProviderAdapter, ProviderMode, ProviderState, ProviderStatus,
    SubmitResult, PermanentProviderError,
)

logger = logging.getLogger("creatorstudio.providers.runpod")

RUNPOD_API = "https://api.runpod.ai/v2"

_STATUS_MAP = {
    "IN_QUEUE":    ProviderState.PENDING,
    "IN_PROGRESS": ProviderState.PROCESSING,
    "EXECUTING":   ProviderState.PROCESSING,
    "COMPLETED":   ProviderState.COMPLETED,
    "FAILED":      ProviderState.FAILED,
    "CANCELLED":   ProviderState.FAILED,
    "TIMED_OUT":   ProviderState.FAILED,
}


def _parse_resolution(resolution: str) -> tuple:
    """'1024×1024' or '1024x1024' → (1024, 1024)"""
    try:
        w, h = resolution.lower().replace("×", "x").split("x")
        return int(w), int(h)
    except ValueError:
        return 1024, 1024


def _extract_output_url(output) -> Optional[str]:
    """Output is a list of URLs or a dict with 'images' / 'image_url' / 'url'."""
    if isinstance(output, list) and output:
        first = output[0]
        return first if isinstance(first, str) else _extract_output_url(first)
    if isinstance(output, dict):
        found = output.get("images") or output.get("image_url") or output.get("video_url") or output.get("url")
        if isinstance(found, list) and found:
            return found[0] if isinstance(found[0], str) else _extract_output_url(found[0])
        if isinstance(found, str):
            return found
    if isinstance(output, str):
        return output
    return None


class RunPodAdapter(ProviderAdapter):
    name              = "runpod"
    mode              = ProviderMode.POLL
    supports_cancel   = True
    poll_max_interval = 10.0

    def __init__(self, api_key: str, endpoint_id: str, **kwargs):
        super().__init__(api_key, **kwargs)
        self.endpoint_id = endpoint_id

    @property
    def base_url(self) -> str:
        return f"{RUNPOD_API}/{self.endpoint_id}"

    async def submit(self, job: Job, callback_url: Optional[str] = None) -> SubmitResult:
        config = job.payload.get("api_config", {})
        params = job.payload.get("params", {})

        if "resolution" in params:
            width, height = _parse_resolution(params["resolution"])
        else:
            width  = int(params.get("width", config.get("width", 1024)))
            height = int(params.get("height", config.get("height", 1024)))

        # Adjust 'input' fields to the worker template on the endpoint
        payload = {
            "input": {
                "prompt":        job.prompt,
                "width":         width,
                "height":        height,
                "num_outputs":   1,
                "output_format": config.get("output_format", "png"),
            }
        }

        resp = await self._request("POST", f"{self.base_url}/run", json=payload)
        data = self._json(resp)

        runpod_id = data.get("id")
        if not runpod_id:
            raise PermanentProviderError(f"RunPod returned no job ID: {data}")

        logger.info(f"RunPod job submitted: {runpod_id} for job {job.id}")
        if data.get("status") == "COMPLETED":
            url = _extract_output_url(data.get("output"))
            if url:
                return SubmitResult(task_ref=runpod_id, result_url=url)
        return SubmitResult(task_ref=runpod_id)

    async def poll_status(self, task_ref: str) -> ProviderStatus:
        resp = await self._request("GET", f"{self.base_url}/status/{task_ref}")
        data = self._json(resp)

        raw   = data.get("status", "")
        state = _STATUS_MAP.get(raw)
        if state is None:
            logger.warning(f"Unknown RunPod status: {raw}, continuing to wait...")
            return ProviderStatus(state=ProviderState.PROCESSING, task_ref=task_ref)

        if state == ProviderState.COMPLETED:
            url = _extract_output_url(data.get("output"))
            if not url:
                return ProviderStatus(
                    state    = ProviderState.FAILED,
                    error    = "RunPod completed but returned no output.",
                    task_ref = task_ref,
                )
            return ProviderStatus(state=state, result_url=url, task_ref=task_ref)

        if state == ProviderState.FAILED:
            error = data.get("error") or f"RunPod job {raw.lower()}"
            return ProviderStatus(state=state, error=str(error), task_ref=task_ref)

        return ProviderStatus(state=state, task_ref=task_ref)

    async def cancel(self, job: Job) -> bool:
        if not job.task_ref:
            return False
        await self._request("POST", f"{self.base_url}/cancel/{job.task_ref}")
        logger.info(f"RunPod job {job.task_ref} cancelled (job {job.id})")
        return True
