"""
Creator Studio — providers/base.py
─────────────────────────────────────────────────────────────────
Uniform interface over the generation back-ends.

Capabilities:
    mode               POLL (we ask until it's done) | WEBHOOK (it calls us)
    supports_cancel    can a submitted job still be cancelled?
    poll_max_interval  backoff ceiling between polls (None → POLL_MAX_INTERVAL)

Contract:
    submit(job, callback_url)  → SubmitResult(result_url | task_ref)
    poll_status(task_ref)      → ProviderStatus
    cancel(job)                → bool
    verify_callback(...)       → bool     (webhook authenticity)
    parse_callback(payload)    → ProviderStatus

Errors:
    TransientProviderError  → network, timeouts, 429, 5xx (retry)
    PermanentProviderError  → other 4xx, bad payload       (fail now)
─────────────────────────────────────────────────────────────────
"""

import logging
from dataclasses import dataclass
from typing import Optional, Mapping
from enum import Enum

import httpx

from creatorstudio.core.config import cfg
from creatorstudio.core.security import verify_hmac
from creatorstudio.models.job import Job, Outcome

logger = logging.getLogger("creatorstudio.providers")

SIGNATURE_HEADER = "X-Webhook-Signature"


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class ProviderError(Exception):
    """Base provider exception."""

class TransientProviderError(ProviderError):
    """Temporary failure. Safe to retry with backoff."""

class PermanentProviderError(ProviderError):
    """Request will never succeed as sent. Don't retry."""

class InvalidCallbackError(ProviderError):
    """Webhook payload couldn't be understood."""


# ─────────────────────────────────────────────
# Enums / results
# ─────────────────────────────────────────────
class ProviderMode(str, Enum):
    POLL    = "poll"
    WEBHOOK = "webhook"


class ProviderState(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


@dataclass(frozen=True)
class SubmitResult:
    task_ref:   Optional[str] = None
    result_url: Optional[str] = None   # provider answered synchronously

    @property
    def is_immediate(self) -> bool:
        return self.result_url is not None


@dataclass(frozen=True)
class ProviderStatus:
    state:      ProviderState
    result_url: Optional[str] = None
    error:      Optional[str] = None
    progress:   Optional[float] = None
    task_ref:   Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (ProviderState.COMPLETED, ProviderState.FAILED)

    def to_outcome(self) -> Outcome:
        if self.state == ProviderState.COMPLETED:
            return Outcome.success(self.result_url)
        if self.state == ProviderState.FAILED:
            return Outcome.failure(self.error or "Generation failed at provider.")
        raise ValueError(f"{self.state.value} is not a terminal provider status")


def raise_for_provider(resp: httpx.Response, provider: str):
    """Map a non-2xx response onto the retry taxonomy."""
    if resp.is_success:
        return
    detail = resp.text[:300]
    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientProviderError(f"{provider} returned {resp.status_code}: {detail}")
    raise PermanentProviderError(f"{provider} rejected the request [{resp.status_code}]: {detail}")


# ─────────────────────────────────────────────
# ProviderAdapter
# ─────────────────────────────────────────────
class ProviderAdapter:
    name:              str = "provider"
    mode:              ProviderMode = ProviderMode.POLL
    supports_cancel:   bool = False
    poll_max_interval: Optional[float] = None

    def __init__(
        self,
        api_key: str = "",
        timeout: float = None,
        client:  Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.timeout = cfg.PROVIDER_TIMEOUT if timeout is None else timeout
        self._client = client

    def __repr__(self):
        return f"<{type(self).__name__} mode={self.mode.value} cancel={self.supports_cancel}>"

    # ─── HTTP ─────────────────────────────────

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type":  "application/json",
        }

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        kwargs.setdefault("headers", self._headers())
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{self.name} timed out: {e}")
        except httpx.TransportError as e:
            raise TransientProviderError(f"{self.name} unreachable: {e}")

        raise_for_provider(resp, self.name)
        return resp

    def _json(self, resp: httpx.Response) -> dict:
        try:
            return resp.json()
        except ValueError:
            raise PermanentProviderError(f"{self.name} returned non-JSON: {resp.text[:200]}")

    # ─── Contract ─────────────────────────────

    async def submit(self, job: Job, callback_url: Optional[str] = None) -> SubmitResult:
        raise NotImplementedError

    async def poll_status(self, task_ref: str) -> ProviderStatus:
        raise PermanentProviderError(f"{self.name} does not support polling")

    async def cancel(self, job: Job) -> bool:
        return False

    def verify_callback(
        self,
        headers: Mapping[str, str],
        query:   Mapping[str, str],
        body:    bytes,
        secret:  str,
    ) -> bool:
        """Default: hex HMAC-SHA256 of the raw body in X-Webhook-Signature."""
        return verify_hmac(secret, body, headers.get(SIGNATURE_HEADER))

    def parse_callback(self, payload) -> ProviderStatus:
        raise InvalidCallbackError(f"{self.name} does not send callbacks")
