"""
Creator Studio — providers/falai.py
─────────────────────────────────────────────────────────────────
fal.ai queue — webhook mode, cancellable while queued/running.

    POST https://queue.fal.run/{endpoint}?fal_webhook=<url>
         Authorization: Key <FAL_KEY>
         → {"request_id", "status": "IN_QUEUE", ...}
    PUT  https://queue.fal.run/{app}/requests/{request_id}/cancel

Callback body:
    {"request_id", "gateway_request_id", "status": "OK" | "ERROR",
     "payload": {"video": {"url"}} | {"images": [{"url"}]}, "error"}
─────────────────────────────────────────────────────────────────
"""

import logging
from typing import Optional, Mapping

from creatorstudio.core.security import verify_token
from creatorstudio.models.job import Job
from creatorstudio.providers.base import (
    ProviderAdapter, ProviderMode, ProviderState, ProviderStatus,
    SubmitResult, PermanentProviderError, InvalidCallbackError,
)

logger = logging.getLogger("creatorstudio.providers.falai")

FAL_QUEUE = "https://queue.fal.run"


def _app_id(endpoint: str) -> str:
    """'fal-ai/kling-video/v2.6/standard/motion-control' → 'fal-ai/kling-video'"""
    return "/".join(endpoint.strip("/").split("/")[:2])


def _result_url(payload) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ("video", "image"):
        item = payload.get(key)
        if isinstance(item, dict) and item.get("url"):
            return item["url"]
    images = payload.get("images") or payload.get("videos")
    if isinstance(images, list) and images and isinstance(images[0], dict):
        return images[0].get("url")
    return None


class FalAdapter(ProviderAdapter):
    name            = "falai"
    mode            = ProviderMode.WEBHOOK
    supports_cancel = True

    def _headers(self) -> dict:
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type":  "application/json",
        }

    async def submit(self, job: Job, callback_url: Optional[str] = None) -> SubmitResult:
        config   = job.payload.get("api_config", {})
        endpoint = config.get("endpoint")
        if not endpoint:
            raise PermanentProviderError(f"No fal.ai endpoint configured for {job.model}")

        body = {k: v for k, v in config.items() if k != "endpoint"}
        body.update(job.payload.get("params", {}))
        if job.prompt:
            body["prompt"] = job.prompt

        params = {"fal_webhook": callback_url} if callback_url else {}
        resp = await self._request("POST", f"{FAL_QUEUE}/{endpoint}", json=body, params=params)
        data = self._json(resp)

        request_id = data.get("request_id")
        if not request_id:
            raise PermanentProviderError(f"fal.ai returned no request_id: {data}")

        logger.info(f"fal.ai request {request_id} queued for job {job.id}")
        return SubmitResult(task_ref=request_id)

    async def cancel(self, job: Job) -> bool:
        endpoint = job.payload.get("api_config", {}).get("endpoint")
        if not job.task_ref or not endpoint:
            return False
        url = f"{FAL_QUEUE}/{_app_id(endpoint)}/requests/{job.task_ref}/cancel"
        try:
            await self._request("PUT", url)
        except PermanentProviderError as e:
            # 400 ALREADY_COMPLETED: too late to cancel
            logger.info(f"fal.ai cancel refused for {job.task_ref}: {e}")
            return False
        logger.info(f"fal.ai request {job.task_ref} cancelled (job {job.id})")
        return True

    def verify_callback(
        self,
        headers: Mapping[str, str],
        query:   Mapping[str, str],
        body:    bytes,
        secret:  str,
    ) -> bool:
        return verify_token(secret, query.get("token"))

    def parse_callback(self, payload) -> ProviderStatus:
        if not isinstance(payload, dict):
            raise InvalidCallbackError("fal.ai callback must be a JSON object")

        inner    = payload.get("payload")
        task_ref = (
            payload.get("request_id")
            or payload.get("gateway_request_id")
            or (inner.get("request_id") if isinstance(inner, dict) else None)
        )
        status = str(payload.get("status", "")).upper()
        if not task_ref or status not in ("OK", "ERROR"):
            raise InvalidCallbackError("fal.ai callback missing request_id/status")

        if status == "ERROR":
            error = payload.get("error")
            if isinstance(inner, dict) and inner.get("detail"):
                error = error or str(inner["detail"])
            return ProviderStatus(
                state    = ProviderState.FAILED,
                error    = str(error or "fal.ai generation failed."),
                task_ref = task_ref,
            )

        url = _result_url(inner)
        if not url:
            # OK without a file yet: treat as still running
            return ProviderStatus(state=ProviderState.PROCESSING, task_ref=task_ref)
        return ProviderStatus(state=ProviderState.COMPLETED, result_url=url, task_ref=task_ref)
