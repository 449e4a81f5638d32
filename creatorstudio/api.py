"""
Creator Studio — api.py
─────────────────────────────────────────────────────────────────
Client-facing routes. Every route needs a session (JWT cookie or
Bearer header) and only ever sees the caller's own jobs.

    POST /api/jobs                 start a generation → 202 {job_id}
    GET  /api/jobs                 history (paginated, ?state=)
    GET  /api/jobs/{id}            one job
    POST /api/jobs/{id}/cancel     best-effort cancel (409 if refused)
    POST /api/jobs/{id}/retry      new job from a finished one
    GET  /api/credits              balance + recent transactions
    GET  /api/notifications        live notifications + badge counts

Error mapping:
    InsufficientFundsError → 402
    JobNotFoundError       → 404
    InvalidRequestError    → 422
─────────────────────────────────────────────────────────────────
"""

import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from creatorstudio.coordinator import GenerationRequest, InvalidRequestError
from creatorstudio.core.security import get_current_user
from creatorstudio.jobs import JobNotFoundError
from creatorstudio.models.job import Job, JobKind, JobState
from creatorstudio.services import Services
from creatorstudio.wallet import InsufficientFundsError

logger = logging.getLogger("creatorstudio.api")

router = APIRouter(prefix="/api", tags=["jobs"])


def get_services(request: Request) -> Services:
    return request.app.state.services


# ─────────────────────────────────────────────
# Request / Response models
# ─────────────────────────────────────────────
class StartJobRequest(BaseModel):
    model:        str
    prompt:       str = ""
    params:       Dict[str, Any] = Field(default_factory=dict)
    kind:         Optional[JobKind] = None
    job_id:       Optional[str] = None   # idempotency key
    device_token: Optional[str] = None   # push target (mobile app)


class JobResponse(BaseModel):
    job_id:       str
    kind:         str
    model:        str
    provider:     str
    state:        str
    cost:         float
    result_url:   Optional[str] = None
    error:        Optional[str] = None
    created_at:   str
    completed_at: Optional[str] = None
    settled:      bool = False

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            job_id       = job.id,
            kind         = job.kind.value,
            model        = job.model,
            provider     = job.provider,
            state        = job.state.value,
            cost         = job.cost,
            result_url   = job.result_ref,
            error        = job.error,
            created_at   = job.created_at,
            completed_at = job.completed_at,
            settled      = job.is_settled,
        )


class TransactionResponse(BaseModel):
    id:             str
    delta:          float
    type:           str
    related_job_id: Optional[str] = None
    source:         Optional[str] = None
    balance_after:  float
    created_at:     str


class CreditsResponse(BaseModel):
    balance:      float
    transactions: List[TransactionResponse]


async def _own_job(services: Services, job_id: str, owner: str) -> Job:
    try:
        job = await services.store.get_job(job_id)
    except JobNotFoundError:
        raise HTTPException(404, f"Job {job_id} not found.")
    if job.owner != owner:
        # Someone else's job looks exactly like a missing one
        raise HTTPException(404, f"Job {job_id} not found.")
    return job


# ─────────────────────────────────────────────
# Jobs
# ─────────────────────────────────────────────
@router.post("/jobs", status_code=202)
async def start_job(
    body:     StartJobRequest,
    owner:    str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Accept a generation request. The job runs in the background."""
    try:
        job_id = await services.coordinator.start(GenerationRequest(
            owner        = owner,
            model        = body.model,
            prompt       = body.prompt,
            params       = body.params,
            kind         = body.kind,
            job_id       = body.job_id,
            device_token = body.device_token,
        ))
    except InsufficientFundsError as e:
        raise HTTPException(402, str(e))
    except InvalidRequestError as e:
        raise HTTPException(422, str(e))

    return {"job_id": job_id, "state": JobState.PENDING.value}


@router.get("/jobs", response_model=List[JobResponse])
async def list_jobs(
    limit:    int = Query(20, ge=1, le=100),
    offset:   int = Query(0, ge=0),
    state:    Optional[JobState] = None,
    owner:    str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    jobs = await services.store.list_for_owner(owner, limit=limit, offset=offset, state=state)
    return [JobResponse.from_job(j) for j in jobs]


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id:   str,
    owner:    str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Frontend polls this for live status."""
    return JobResponse.from_job(await _own_job(services, job_id, owner))


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id:   str,
    owner:    str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await _own_job(services, job_id, owner)
    if not await services.coordinator.cancel(job_id, owner=owner):
        raise HTTPException(409, "This generation can no longer be cancelled.")
    return {"job_id": job_id, "cancel_requested": True}


@router.post("/jobs/{job_id}/retry", status_code=202)
async def retry_job(
    job_id:   str,
    owner:    str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await _own_job(services, job_id, owner)
    try:
        new_id = await services.coordinator.retry(job_id, owner=owner)
    except InsufficientFundsError as e:
        raise HTTPException(402, str(e))
    except InvalidRequestError as e:
        raise HTTPException(422, str(e))
    return {"job_id": new_id, "retry_of": job_id, "state": JobState.PENDING.value}


# ─────────────────────────────────────────────
# Credits / Notifications
# ─────────────────────────────────────────────
@router.get("/credits", response_model=CreditsResponse, tags=["credits"])
async def get_credits(
    limit:    int = Query(50, ge=1, le=200),
    owner:    str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    balance = await services.ledger.balance(owner)
    history = await services.ledger.history(owner, limit=limit)
    return CreditsResponse(
        balance      = balance,
        transactions = [
            TransactionResponse(
                id             = tx.id,
                delta          = tx.delta,
                type           = tx.type.value,
                related_job_id = tx.related_job_id,
                source         = tx.source,
                balance_after  = tx.balance_after,
                created_at     = tx.created_at,
            )
            for tx in history
        ],
    )


@router.get("/notifications", tags=["notifications"])
async def get_notifications(
    owner:    str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    hub = services.hub
    return {
        "notifications": [n.to_dict() for n in hub.for_owner(owner)],
        "badges":        hub.badges(),
    }
