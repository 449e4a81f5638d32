"""
Creator Studio — providers/wavespeed.py
─────────────────────────────────────────────────────────────────
WaveSpeed AI — poll mode by default, webhook mode when
WAVESPEED_USE_WEBHOOK=true. Not cancellable.

    POST /api/v3/{endpoint}[?webhook=...]   → data.id, data.status
    GET  /api/v3/predictions/{id}/result    → created | processing | completed | failed

Webhook signature:
    webhook-id, webhook-timestamp, webhook-signature: "v3,<hex>"
    hex = HMAC-SHA256(secret, f"{id}.{timestamp}.{raw_body}")
─────────────────────────────────────────────────────────────────
"""

import hashlib
import hmac
import logging
from typing import Optional, Mapping

from creatorstudio.models.job import Job
from creatorstudio.providers.base import (
    ProviderAdapter, ProviderMode, ProviderState, ProviderStatus,
    SubmitResult, PermanentProviderError, InvalidCallbackError,
)

logger = logging.getLogger("creatorstudio.providers.wavespeed")

WAVESPEED_API = "https://api.wavespeed.ai/api/v3"

_STATUS_MAP = {
    "created":    ProviderState.PENDING,
    "processing": ProviderState.PROCESSING,
    "completed":  ProviderState.COMPLETED,
    "failed":     ProviderState.FAILED,
}


def _to_status(data: dict) -> ProviderStatus:
    task_ref = data.get("id")
    state    = _STATUS_MAP.get(str(data.get("status", "")).lower(), ProviderState.PROCESSING)
    outputs  = data.get("outputs") or []

    if state == ProviderState.COMPLETED:
        if not outputs:
            return ProviderStatus(
                state    = ProviderState.FAILED,
                error    = "WaveSpeed returned no outputs.",
                task_ref = task_ref,
            )
        return ProviderStatus(state=state, result_url=outputs[0], task_ref=task_ref)

    if state == ProviderState.FAILED:
        return ProviderStatus(
            state    = state,
            error    = data.get("error") or "WaveSpeed job failed.",
            task_ref = task_ref,
        )
    return ProviderStatus(state=state, task_ref=task_ref)


class WaveSpeedAdapter(ProviderAdapter):
    name              = "wavespeed"
    supports_cancel   = False
    poll_max_interval = 5.0    # results are polled every ~5s

    def __init__(self, api_key: str, use_webhook: bool = False, **kwargs):
        super().__init__(api_key, **kwargs)
        self.mode = ProviderMode.WEBHOOK if use_webhook else ProviderMode.POLL

    async def submit(self, job: Job, callback_url: Optional[str] = None) -> SubmitResult:
        config   = job.payload.get("api_config", {})
        endpoint = config.get("endpoint")
        if not endpoint:
            raise PermanentProviderError(f"No WaveSpeed endpoint configured for {job.model}")

        body = {k: v for k, v in config.items() if k != "endpoint"}
        body.update(job.payload.get("params", {}))
        body["enable_sync_mode"]     = False
        body["enable_base64_output"] = False
        if job.prompt:
            body["prompt"] = job.prompt

        params = {}
        if self.mode == ProviderMode.WEBHOOK and callback_url:
            params["webhook"] = callback_url

        resp = await self._request("POST", f"{WAVESPEED_API}/{endpoint}", json=body, params=params)
        data = self._json(resp).get("data") or {}

        status = _to_status(data)
        if not status.task_ref:
            raise PermanentProviderError(f"WaveSpeed returned no prediction id: {data}")

        logger.info(f"WaveSpeed prediction {status.task_ref} for job {job.id} ({status.state.value})")
        if status.state == ProviderState.COMPLETED:
            return SubmitResult(task_ref=status.task_ref, result_url=status.result_url)
        if status.state == ProviderState.FAILED:
            raise PermanentProviderError(status.error)
        return SubmitResult(task_ref=status.task_ref)

    async def poll_status(self, task_ref: str) -> ProviderStatus:
        resp = await self._request("GET", f"{WAVESPEED_API}/predictions/{task_ref}/result")
        data = self._json(resp).get("data") or {}
        data.setdefault("id", task_ref)
        return _to_status(data)

    def verify_callback(
        self,
        headers: Mapping[str, str],
        query:   Mapping[str, str],
        body:    bytes,
        secret:  str,
    ) -> bool:
        webhook_id = headers.get("webhook-id")
        timestamp  = headers.get("webhook-timestamp")
        signature  = headers.get("webhook-signature")
        if not (secret and webhook_id and timestamp and signature):
            return False

        _, _, supplied = signature.partition(",")
        signed   = f"{webhook_id}.{timestamp}.".encode() + body
        expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, supplied.strip())

    def parse_callback(self, payload) -> ProviderStatus:
        if not isinstance(payload, dict):
            raise InvalidCallbackError("WaveSpeed callback must be a JSON object")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        if not data.get("id") or "status" not in data:
            raise InvalidCallbackError("WaveSpeed callback missing id/status")
        return _to_status(data)
