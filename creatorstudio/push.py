"""
Creator Studio — push.py
─────────────────────────────────────────────────────────────────
Device push when a job settles.

Jobs started from the mobile app carry a device_token. When the
coordinator wins the settlement claim for such a job it calls
PushNotifier.send(job) once. The push gateway (PUSH_ENDPOINT) turns
the message into an APNs/FCM notification.

    POST {PUSH_ENDPOINT}
    Authorization: Bearer {PUSH_API_KEY}
    {
      "device_token": "...",
      "job_id":       "...",
      "job_type":     "image" | "video",
      "state":        "completed" | "failed" | "timed_out",
      "title":        "Image Ready!",
      "body":         "Your AI generation is complete. Tap to view."
    }

Delivery is at-most-once: settlement is claimed before the push,
and a failed push is logged, never retried.
─────────────────────────────────────────────────────────────────
"""

import logging
from typing import Optional

import httpx

from creatorstudio.core.config import cfg
from creatorstudio.models.job import Job, JobKind, JobState, NO_CHARGE_NOTE

logger = logging.getLogger("creatorstudio.push")

READY_BODY = "Your AI generation is complete. Tap to view."


def build_message(job: Job) -> dict:
    """Push body for a settled job."""
    if job.state == JobState.COMPLETED:
        title = "Video Ready!" if job.kind == JobKind.VIDEO else "Image Ready!"
        body  = READY_BODY
    else:
        title = "Generation failed"
        body  = f"{job.error or 'Something went wrong.'} {NO_CHARGE_NOTE}"

    return {
        "device_token": job.device_token,
        "job_id":       job.id,
        "job_type":     job.kind.value,
        "state":        job.state.value,
        "title":        title,
        "body":         body,
    }


class PushNotifier:

    def __init__(
        self,
        endpoint: str = None,
        api_key:  str = None,
        timeout:  float = None,
        client:   Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = cfg.PUSH_ENDPOINT if endpoint is None else endpoint
        self.api_key  = cfg.PUSH_API_KEY if api_key is None else api_key
        self.timeout  = cfg.PUSH_TIMEOUT if timeout is None else timeout
        self._client  = client
        self.sent     = 0

    async def _post(self, message: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self._client is not None:
            return await self._client.post(self.endpoint, json=message, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.endpoint, json=message, headers=headers)

    async def send(self, job: Job) -> bool:
        """
        Push the job's final state to its device.
        Returns False when there is nothing to send or the gateway
        refused. Errors are logged; settlement never depends on them.
        """
        if not job.device_token or not self.endpoint:
            return False

        try:
            resp = await self._post(build_message(job))
        except httpx.HTTPError as e:
            logger.warning(f"⚠️  Push for job {job.id} failed: {e}")
            return False

        if not resp.is_success:
            logger.warning(f"⚠️  Push gateway rejected job {job.id} [{resp.status_code}]: {resp.text[:200]}")
            return False

        self.sent += 1
        logger.info(f"📲 Push sent for job {job.id} ({job.state.value})")
        return True
