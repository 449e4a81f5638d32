"""
Creator Studio — providers/runware.py
─────────────────────────────────────────────────────────────────
Runware — webhook mode, not cancellable.

    POST https://api.runware.ai/v1
    [
      {"taskType": "authentication", "apiKey": "..."},
      {"taskType": "imageInference", "taskUUID": <job id>, "model": ...,
       "positivePrompt": ..., "width": ..., "height": ...,
       "webhookURL": ".../api/webhooks/runware?job_id=...&token=..."}
    ]

The taskUUID is the job id, so the callback can always be
matched back to its row. Runware echoes our webhook URL, so the
shared secret is checked as ?token=.
─────────────────────────────────────────────────────────────────
"""

import logging
import uuid
from typing import Optional, Mapping, Dict, Tuple

from creatorstudio.core.security import verify_token
from creatorstudio.models.job import Job
from creatorstudio.providers.base import (
    ProviderAdapter, ProviderMode, ProviderState, ProviderStatus,
    SubmitResult, PermanentProviderError, InvalidCallbackError,
)

logger = logging.getLogger("creatorstudio.providers.runware")

RUNWARE_API = "https://api.runware.ai/v1"

# Runware only accepts exact sizes per model family
SIZE_TABLES: Dict[str, Dict[str, Tuple[int, int]]] = {
    "nano-banana": {
        "1:1": (1024, 1024), "4:3": (1184, 864), "3:4": (864, 1184),
        "9:16": (768, 1344), "16:9": (1344, 768),
    },
    "midjourney-v7": {
        "1:1": (1024, 1024), "4:3": (1232, 928), "3:4": (928, 1232),
        "9:16": (816, 1456), "16:9": (1456, 816),
    },
    "seedream40": {
        "1:1": (1024, 1024), "4:3": (1184, 880), "3:4": (880, 1184),
        "9:16": (752, 1392), "16:9": (1392, 752),
    },
    "z-image-turbo": {
        "1:1": (1024, 1024), "4:3": (1152, 896), "3:4": (896, 1152),
        "9:16": (768, 1344), "16:9": (1344, 768),
    },
}
DEFAULT_SIZES = "nano-banana"


def allowed_size(table: Optional[str], aspect_ratio: Optional[str]) -> Tuple[int, int]:
    sizes = SIZE_TABLES.get(table or DEFAULT_SIZES, SIZE_TABLES[DEFAULT_SIZES])
    return sizes.get(aspect_ratio or "1:1", sizes["1:1"])


def task_uuid_for(job_id: str) -> str:
    """Job ids are UUIDs already; derive a stable one for anything else."""
    try:
        return str(uuid.UUID(job_id))
    except ValueError:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, job_id))


class RunwareAdapter(ProviderAdapter):
    name            = "runware"
    mode            = ProviderMode.WEBHOOK
    supports_cancel = False

    async def submit(self, job: Job, callback_url: Optional[str] = None) -> SubmitResult:
        config = job.payload.get("api_config", {})
        params = job.payload.get("params", {})
        model  = config.get("model")
        if not model:
            raise PermanentProviderError(f"No Runware model configured for {job.model}")

        width, height = allowed_size(config.get("sizes"), params.get("aspect_ratio"))
        task_uuid     = task_uuid_for(job.id)

        task = {
            "taskType":       "videoInference" if job.kind.value == "video" else "imageInference",
            "taskUUID":       task_uuid,
            "model":          model,
            "positivePrompt": job.prompt,
            "numberResults":  1,
            "includeCost":    True,
        }
        if width and height:
            task["width"]  = width
            task["height"] = height
        if callback_url:
            task["webhookURL"]     = callback_url
            task["deliveryMethod"] = "async"
        if params.get("reference_images"):
            task["referenceImages"] = list(params["reference_images"])

        body = [{"taskType": "authentication", "apiKey": self.api_key}, task]
        resp = await self._request(
            "POST", RUNWARE_API, json=body, headers={"Content-Type": "application/json"}
        )
        data = self._json(resp)

        if data.get("errors"):
            first = data["errors"][0]
            raise PermanentProviderError(f"Runware error: {first.get('message') or first}")

        logger.info(f"Runware task {task_uuid} accepted for job {job.id}")

        # Some models answer inline even when a webhook is set
        for item in data.get("data") or []:
            url = item.get("imageURL") or item.get("videoURL")
            if item.get("taskUUID") == task_uuid and url:
                return SubmitResult(task_ref=task_uuid, result_url=url)
        return SubmitResult(task_ref=task_uuid)

    def verify_callback(
        self,
        headers: Mapping[str, str],
        query:   Mapping[str, str],
        body:    bytes,
        secret:  str,
    ) -> bool:
        return verify_token(secret, query.get("token"))

    def parse_callback(self, payload) -> ProviderStatus:
        if isinstance(payload, list):
            items = payload
            error = None
        elif isinstance(payload, dict):
            data  = payload.get("data", payload)
            items = data if isinstance(data, list) else [data]
            error = payload.get("error")
            if payload.get("errors"):
                first = payload["errors"][0]
                error = first.get("message") if isinstance(first, dict) else str(first)
        else:
            raise InvalidCallbackError("Runware callback must be JSON")

        item = next((i for i in items if isinstance(i, dict) and i.get("taskUUID")), None)
        if item is None:
            if error:
                return ProviderStatus(state=ProviderState.FAILED, error=str(error))
            raise InvalidCallbackError("Runware callback has no taskUUID")

        task_ref = item["taskUUID"]
        url      = item.get("videoURL") or item.get("imageURL")
        error    = error or item.get("error")

        if url:
            return ProviderStatus(state=ProviderState.COMPLETED, result_url=url, task_ref=task_ref)
        if error or str(item.get("status", "")).lower() in ("error", "failed"):
            return ProviderStatus(
                state    = ProviderState.FAILED,
                error    = str(error or "Runware task failed."),
                task_ref = task_ref,
            )
        return ProviderStatus(state=ProviderState.PROCESSING, task_ref=task_ref)
