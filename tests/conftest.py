"""Shared fixtures: temp database, fake providers, recording notification sink, push gateway."""

import asyncio
import json
from typing import List, Optional

import httpx
import pytest

from creatorstudio.catalog import StaticCatalog
from creatorstudio.core.database import init_all_tables
from creatorstudio.models.job import Job
from creatorstudio.notifications import NotificationSink
from creatorstudio.providers.base import (
    ProviderAdapter, ProviderMode, ProviderState, ProviderStatus, SubmitResult,
    InvalidCallbackError,
)
from creatorstudio.push import PushNotifier
from creatorstudio.services import build_services
from creatorstudio.storage.s3 import UploadError

WEBHOOK_SECRET = "whsec_test"
PUSH_ENDPOINT  = "https://push.test/send"

TEST_MODELS = {
    "fake-image": {"provider": "fake", "kind": "image", "cost": 0.04, "title": "Fake Image"},
    "fake-video": {"provider": "fake", "kind": "video", "cost": 0.50, "title": "Fake Video"},
    "hook-image": {"provider": "hook", "kind": "image", "cost": 0.04, "title": "Hook Image"},
    "hook-video": {"provider": "hook", "kind": "video", "cost": 0.50, "title": "Hook Video"},
}


@pytest.fixture
def anyio_backend():
    return "asyncio"


# ─────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────
class FakePollAdapter(ProviderAdapter):
    """
    Poll-mode provider driven by a script of statuses.
    Once the script runs out it keeps answering `processing`.
    """
    name = "fake"
    mode = ProviderMode.POLL

    def __init__(self, statuses: Optional[List] = None, supports_cancel: bool = True):
        super().__init__(api_key="test")
        self.statuses        = list(statuses or [])
        self.supports_cancel = supports_cancel
        self.submit_errors: List[Exception] = []
        self.immediate_url: Optional[str] = None
        self.submitted: List[str] = []
        self.polls     = 0
        self.cancelled: List[str] = []
        self.gate: Optional[asyncio.Event] = None    # hold submit until set

    async def submit(self, job: Job, callback_url: Optional[str] = None) -> SubmitResult:
        if self.gate is not None:
            await self.gate.wait()
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submitted.append(job.id)
        if self.immediate_url:
            return SubmitResult(task_ref=f"ref-{job.id}", result_url=self.immediate_url)
        return SubmitResult(task_ref=f"ref-{job.id}")

    async def poll_status(self, task_ref: str) -> ProviderStatus:
        self.polls += 1
        if self.statuses:
            item = self.statuses.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return ProviderStatus(state=ProviderState.PROCESSING, task_ref=task_ref)

    async def cancel(self, job: Job) -> bool:
        self.cancelled.append(job.task_ref)
        return True


class FakeWebhookAdapter(ProviderAdapter):
    """Webhook-mode provider. Body: {"id", "status", "url"?, "error"?}."""
    name            = "hook"
    mode            = ProviderMode.WEBHOOK
    supports_cancel = False

    def __init__(self):
        super().__init__(api_key="test")
        self.submitted: List[str] = []
        self.callback_urls: List[Optional[str]] = []

    async def submit(self, job: Job, callback_url: Optional[str] = None) -> SubmitResult:
        self.submitted.append(job.id)
        self.callback_urls.append(callback_url)
        return SubmitResult(task_ref=f"hook-{job.id}")

    def parse_callback(self, payload) -> ProviderStatus:
        if not isinstance(payload, dict) or "id" not in payload:
            raise InvalidCallbackError("missing id")
        status = payload.get("status")
        if status == "done":
            return ProviderStatus(state=ProviderState.COMPLETED, result_url=payload["url"], task_ref=payload["id"])
        if status == "error":
            return ProviderStatus(state=ProviderState.FAILED, error=payload.get("error"), task_ref=payload["id"])
        return ProviderStatus(
            state    = ProviderState.PROCESSING,
            progress = payload.get("progress"),
            task_ref = payload["id"],
        )


class RecordingSink(NotificationSink):

    def __init__(self):
        self.calls = []

    def show(self, notification):
        self.calls.append(("show", notification.id))

    def update_progress(self, notification):
        self.calls.append(("progress", notification.id))

    def mark_completed(self, notification):
        self.calls.append(("completed", notification.id))

    def mark_failed(self, notification):
        self.calls.append(("failed", notification.id))

    def dismiss(self, notification):
        self.calls.append(("dismiss", notification.id))

    def count(self, kind: str, job_id: str) -> int:
        return sum(1 for c in self.calls if c == (kind, job_id))


class FakeStorage:

    def __init__(self):
        self.fail    = False
        self.stored: List[str] = []

    async def persist_result(self, job, source_url: str) -> str:
        if self.fail:
            raise UploadError("bucket unavailable")
        self.stored.append(job.id)
        ext = "mp4" if job.kind.value == "video" else "png"
        return f"https://cdn.test/generated/{job.owner}/{job.kind.value}/{job.id}.{ext}"


# ─────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────
@pytest.fixture
async def db_path(tmp_path):
    path = str(tmp_path / "test.db")
    await init_all_tables(path)
    return path


@pytest.fixture
def poll_adapter():
    return FakePollAdapter()


@pytest.fixture
def webhook_adapter():
    return FakeWebhookAdapter()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def pushes():
    """Bodies the push gateway received."""
    return []


@pytest.fixture
async def push(pushes):
    def handler(request: httpx.Request) -> httpx.Response:
        pushes.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "ok"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield PushNotifier(endpoint=PUSH_ENDPOINT, api_key="push-key", client=client)


@pytest.fixture
def catalog():
    return StaticCatalog.from_dict(TEST_MODELS)


@pytest.fixture
async def services(db_path, poll_adapter, webhook_adapter, sink, storage, catalog, push):
    svc = build_services(
        db_path           = db_path,
        providers         = {"fake": poll_adapter, "hook": webhook_adapter},
        storage           = storage,
        catalog           = catalog,
        sink              = sink,
        webhook_secret    = WEBHOOK_SECRET,
        webhook_base_url  = "http://test",
        poll_interval     = 0,
        poll_max_interval = 0.01,
        max_attempts      = 3,
        reconnect_base    = 0.01,
        reconnect_max     = 0.05,
        image_timeout     = 300,
        video_timeout     = 600,
        reaper_interval   = 0,
        push              = push,
    )
    yield svc
    await svc.coordinator.shutdown()


@pytest.fixture
def coordinator(services):
    return services.coordinator


async def wait_for_job(store, job_id: str, settled: bool = True, timeout: float = 5.0) -> Job:
    """Poll the store until the job is settled (or just terminal)."""
    async def _wait():
        while True:
            job = await store.get_job(job_id)
            if (job.is_settled if settled else job.is_terminal):
                return job
            await asyncio.sleep(0.01)
    return await asyncio.wait_for(_wait(), timeout)


async def wait_until(predicate, timeout: float = 5.0):
    async def _wait():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_wait(), timeout)

