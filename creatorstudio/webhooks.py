"""
Creator Studio — webhooks.py
─────────────────────────────────────────────────────────────────
Webhook receiver for webhook-mode providers.

    POST /api/webhooks/{provider}?job_id=<id>[&token=<secret>]

  1. Verify the request (adapter-specific: HMAC header or ?token=)
     → 401, nothing written
  2. Parse the provider body → ProviderStatus
  3. Find the job (job_id query, else provider task_ref) → 404
  4. Already terminal → 200 {"status": "already_final"}
  5. Write the row (compare-and-set). That's all.

Charging and notifications happen later, when the change-feed
listener sees the row go terminal and hands it to the coordinator.
─────────────────────────────────────────────────────────────────
"""

import json
import logging

from fastapi import APIRouter, Request, HTTPException

from creatorstudio.providers.base import InvalidCallbackError

logger = logging.getLogger("creatorstudio.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/{provider}")
async def receive_webhook(provider: str, request: Request):
    services = request.app.state.services
    adapter  = services.providers.get(provider)
    if adapter is None:
        raise HTTPException(404, f"Unknown provider: {provider}")

    raw_body = await request.body()
    secret   = services.webhook_secret

    # ── Signature verification ────────────────
    if not adapter.verify_callback(request.headers, request.query_params, raw_body, secret):
        logger.warning(f"Rejected {provider} webhook: bad signature")
        raise HTTPException(401, "Invalid webhook signature")

    try:
        status = adapter.parse_callback(json.loads(raw_body))
    except json.JSONDecodeError:
        raise HTTPException(400, "Webhook body is not valid JSON")
    except InvalidCallbackError as e:
        raise HTTPException(400, str(e))

    # ── Find our job ──────────────────────────
    store  = services.store
    job_id = request.query_params.get("job_id")
    job    = await store.find_job(job_id) if job_id else None
    if job is None and status.task_ref:
        job = await store.find_by_task_ref(adapter.name, status.task_ref)
    if job is None or job.provider != adapter.name:
        logger.warning(f"{provider} webhook for unknown job (job_id={job_id}, ref={status.task_ref})")
        raise HTTPException(404, "Job not found")

    if job.is_terminal:
        # Delivered twice, or the reaper got there first
        return {"status": "already_final", "job_id": job.id, "state": job.state.value}

    if status.is_terminal:
        written = await store.apply_callback(job.id, status.to_outcome())
    else:
        written = await store.apply_callback(job.id, task_ref=status.task_ref)
        if status.progress is not None:
            services.hub.update_progress(job.id, 0.2 + 0.6 * min(max(status.progress, 0.0), 1.0))

    logger.info(f"{provider} webhook → job {job.id} {status.state.value} (written={written})")
    return {"status": "ok" if written else "already_final", "job_id": job.id}
