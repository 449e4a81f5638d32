import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from creatorstudio.catalog import StaticCatalog
from creatorstudio.coordinator import GenerationRequest, InvalidRequestError
from creatorstudio.models.credit import TransactionType
from creatorstudio.models.job import JobKind, JobState, Outcome, CANCELLED_MESSAGE
from creatorstudio.providers.base import ProviderState, ProviderStatus
from creatorstudio.storage.s3 import StorageError
from creatorstudio.wallet import InsufficientFundsError

from conftest import wait_for_job, wait_until


def _done(url="https://provider.test/out.png"):
    return ProviderStatus(state=ProviderState.COMPLETED, result_url=url)


async def _deductions(ledger, owner="u1"):
    return [tx for tx in await ledger.history(owner) if tx.type == TransactionType.DEDUCTION]


# ─────────────────────────────────────────────
# Happy path / charging
# ─────────────────────────────────────────────
@pytest.mark.anyio
async def test_image_job_charges_once_on_success(services, poll_adapter, sink):
    await services.ledger.add("u1", 5.00, source="pack_small")
    poll_adapter.statuses = [ProviderStatus(state=ProviderState.PROCESSING), _done()]

    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-image", "a red fox"))
    job = await wait_for_job(services.store, job_id)

    assert job.state == JobState.COMPLETED
    assert job.result_ref == f"https://cdn.test/generated/u1/image/{job_id}.png"
    assert job.provider_result_url == "https://provider.test/out.png"
    assert await services.ledger.balance("u1") == 4.96
    assert len(await _deductions(services.ledger)) == 1
    assert sink.count("completed", job_id) == 1

    # A late duplicate completion changes nothing
    again = await services.coordinator.finalize(job_id, Outcome.success("https://provider.test/dup.png"))
    assert not again.won and not again.settled
    assert again.balance == 4.96
    assert await services.ledger.balance("u1") == 4.96
    assert len(await _deductions(services.ledger)) == 1
    assert sink.count("completed", job_id) == 1


@pytest.mark.anyio
async def test_terminal_state_is_never_overwritten(services, poll_adapter):
    await services.ledger.add("u1", 1.00, source="promo")
    poll_adapter.statuses = [_done()]
    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-image", "a cat"))
    await wait_for_job(services.store, job_id)

    result = await services.coordinator.finalize(job_id, Outcome.timeout(JobKind.IMAGE))

    assert not result.won
    assert result.job.state == JobState.COMPLETED
    assert result.job.error is None


@pytest.mark.anyio
async def test_failed_job_is_not_charged(services, poll_adapter, sink):
    await services.ledger.add("u1", 1.00, source="promo")
    poll_adapter.statuses = [ProviderStatus(state=ProviderState.FAILED, error="Content policy")]

    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-image", "a cat"))
    job = await wait_for_job(services.store, job_id)

    assert job.state == JobState.FAILED
    assert job.error == "Content policy"
    assert await services.ledger.balance("u1") == 1.00
    assert await _deductions(services.ledger) == []
    assert sink.count("failed", job_id) == 1


@pytest.mark.anyio
async def test_storage_failure_on_direct_path_fails_the_job(services, poll_adapter, storage):
    await services.ledger.add("u1", 1.00, source="promo")
    storage.fail = True
    poll_adapter.statuses = [_done()]

    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-image", "a cat"))
    job = await wait_for_job(services.store, job_id)

    assert job.state == JobState.FAILED
    assert job.error == "Couldn't save the generated file."
    assert await services.ledger.balance("u1") == 1.00


# ─────────────────────────────────────────────
# Start validation
# ─────────────────────────────────────────────
@pytest.mark.anyio
async def test_preflight_rejects_before_any_row_or_provider_call(services, poll_adapter):
    await services.ledger.add("u1", 0.03, source="promo")

    with pytest.raises(InsufficientFundsError):
        await services.coordinator.start(GenerationRequest("u1", "fake-image", "a cat"))

    assert await services.store.list_for_owner("u1") == []
    assert poll_adapter.submitted == []
    assert len(services.hub) == 0


@pytest.mark.anyio
@pytest.mark.parametrize("request_kwargs", [
    {"model": "no-such-model", "prompt": "a cat"},
    {"model": "fake-image", "prompt": "   "},
    {"model": "fake-image", "prompt": "x" * 4001},
    {"model": "fake-image", "prompt": "a cat", "kind": JobKind.VIDEO},
])
async def test_invalid_requests_rejected(services, request_kwargs):
    await services.ledger.add("u1", 5.00, source="pack_small")
    with pytest.raises(InvalidRequestError):
        await services.coordinator.start(GenerationRequest(owner="u1", **request_kwargs))
    assert await services.store.list_for_owner("u1") == []


@pytest.mark.anyio
async def test_image_only_request_may_skip_prompt(services, poll_adapter):
    await services.ledger.add("u1", 5.00, source="pack_small")
    job_id = await services.coordinator.start(GenerationRequest(
        "u1", "fake-video", "", params={"image_url": "https://in.test/ref.png"},
    ))
    assert (await services.store.get_job(job_id)).kind == JobKind.VIDEO


@pytest.mark.anyio
async def test_start_is_idempotent_on_job_id(services, poll_adapter):
    await services.ledger.add("u1", 5.00, source="pack_small")
    request = GenerationRequest("u1", "fake-image", "a cat", job_id="client-key-1")

    first  = await services.coordinator.start(request)
    second = await services.coordinator.start(request)

    assert first == second == "client-key-1"
    assert len(await services.store.list_for_owner("u1")) == 1

    with pytest.raises(InvalidRequestError):
        await services.coordinator.start(GenerationRequest("u2", "fake-image", "a cat", job_id="client-key-1"))


# ─────────────────────────────────────────────
# Timeouts / races
# ─────────────────────────────────────────────
@pytest.mark.anyio
async def test_video_timeout_notifies_once_and_charges_nothing(services, poll_adapter, sink):
    await services.ledger.add("u1", 5.00, source="pack_small")
    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-video", "waves"))
    await wait_until(lambda: poll_adapter.polls >= 1)

    later  = datetime.now(timezone.utc) + timedelta(seconds=601)
    report = await services.reaper.sweep(now=later)
    assert report.timed_out == 1

    job = await services.store.get_job(job_id)
    assert job.state == JobState.TIMED_OUT
    assert job.error == "Video generation timed out."
    assert job.is_settled
    assert await services.ledger.balance("u1") == 5.00
    assert sink.count("failed", job_id) == 1

    # Polling stops and the provider job is cancelled
    await wait_until(lambda: poll_adapter.cancelled == [f"ref-{job_id}"])
    await wait_until(lambda: job_id not in services.coordinator.registry)

    again = await services.reaper.sweep(now=later)
    assert again.timed_out == 0
    assert sink.count("failed", job_id) == 1


@pytest.mark.anyio
async def test_image_not_timed_out_before_deadline(services, poll_adapter):
    await services.ledger.add("u1", 5.00, source="pack_small")
    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-image", "a cat"))

    report = await services.reaper.sweep(now=datetime.now(timezone.utc) + timedelta(seconds=200))

    assert report.timed_out == 0
    assert not (await services.store.get_job(job_id)).is_terminal


@pytest.mark.anyio
async def test_webhook_beats_reaper(services, webhook_adapter, sink):
    await services.ledger.add("u1", 5.00, source="pack_small")
    job_id = await services.coordinator.start(GenerationRequest("u1", "hook-image", "a cat"))
    await wait_until(lambda: webhook_adapter.submitted == [job_id])

    await services.store.apply_callback(job_id, Outcome.success("https://provider.test/hook.png"))
    result = await services.coordinator.finalize(job_id, Outcome.timeout(JobKind.IMAGE))

    assert not result.won
    assert result.settled
    assert result.job.state == JobState.COMPLETED
    assert result.job.result_ref.startswith("https://cdn.test/")
    assert await services.ledger.balance("u1") == 4.96
    assert sink.count("completed", job_id) == 1
    assert sink.count("failed", job_id) == 0


@pytest.mark.anyio
async def test_reaper_beats_webhook(services, webhook_adapter):
    await services.ledger.add("u1", 5.00, source="pack_small")
    job_id = await services.coordinator.start(GenerationRequest("u1", "hook-image", "a cat"))
    await wait_until(lambda: webhook_adapter.submitted == [job_id])

    await services.reaper.sweep(now=datetime.now(timezone.utc) + timedelta(seconds=301))
    written = await services.store.apply_callback(job_id, Outcome.success("https://provider.test/late.png"))

    assert not written
    job = await services.store.get_job(job_id)
    assert job.state == JobState.TIMED_OUT
    assert job.provider_result_url is None
    assert await services.ledger.balance("u1") == 5.00


@pytest.mark.anyio
async def test_concurrent_finalizes_settle_once(services, webhook_adapter, sink):
    await services.ledger.add("u1", 5.00, source="pack_small")
    job_id = await services.coordinator.start(GenerationRequest("u1", "hook-video", "waves"))
    await wait_until(lambda: webhook_adapter.submitted == [job_id])
    await services.store.apply_callback(job_id, Outcome.success("https://provider.test/v.mp4"))

    results = await asyncio.gather(*[services.coordinator.finalize(job_id) for _ in range(4)])

    assert sum(r.settled for r in results) == 1
    assert await services.ledger.balance("u1") == 4.50
    assert len(await _deductions(services.ledger)) == 1
    assert sink.count("completed", job_id) == 1


# ─────────────────────────────────────────────
# Webhook path through the change feed
# ─────────────────────────────────────────────
@pytest.mark.anyio
async def test_external_completion_is_settled_via_change_feed(services, webhook_adapter, sink):
    await services.ledger.add("u1", 5.00, source="pack_small")
    await services.coordinator.start_background()

    job_id = await services.coordinator.start(GenerationRequest("u1", "hook-image", "a cat"))
    await wait_until(lambda: webhook_adapter.submitted == [job_id])
    assert webhook_adapter.callback_urls[0] == (
        f"http://test/api/webhooks/hook?job_id={job_id}&token=whsec_test"
    )

    await services.store.apply_callback(job_id, Outcome.success("https://provider.test/hook.png"))
    job = await wait_for_job(services.store, job_id)

    assert job.state == JobState.COMPLETED
    assert job.result_ref == f"https://cdn.test/generated/u1/image/{job_id}.png"
    assert await services.ledger.balance("u1") == 4.96
    assert sink.count("completed", job_id) == 1


@pytest.mark.anyio
async def test_storage_failure_on_webhook_path_retries_later(services, webhook_adapter, storage):
    await services.ledger.add("u1", 5.00, source="pack_small")
    job_id = await services.coordinator.start(GenerationRequest("u1", "hook-image", "a cat"))
    await wait_until(lambda: webhook_adapter.submitted == [job_id])
    await services.store.apply_callback(job_id, Outcome.success("https://provider.test/hook.png"))

    storage.fail = True
    with pytest.raises(StorageError):
        await services.coordinator.finalize(job_id)
    job = await services.store.get_job(job_id)
    assert job.state == JobState.COMPLETED and not job.is_settled
    assert await services.ledger.balance("u1") == 5.00

    storage.fail = False
    result = await services.coordinator.finalize(job_id)
    assert result.settled
    assert result.job.result_ref is not None
    assert await services.ledger.balance("u1") == 4.96


# ─────────────────────────────────────────────
# Cancel / retry
# ─────────────────────────────────────────────
@pytest.mark.anyio
async def test_cancel_before_provider_accepts(services, poll_adapter, sink):
    await services.ledger.add("u1", 5.00, source="pack_small")
    poll_adapter.gate = asyncio.Event()

    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-image", "a cat"))
    assert await services.coordinator.cancel(job_id, owner="u1")
    poll_adapter.gate.set()

    job = await wait_for_job(services.store, job_id)
    assert job.state == JobState.FAILED
    assert job.error == CANCELLED_MESSAGE
    assert await services.ledger.balance("u1") == 5.00
    assert sink.count("failed", job_id) == 1


@pytest.mark.anyio
async def test_cancel_during_submit_to_uncancellable_provider(services, poll_adapter, sink):
    await services.ledger.add("u1", 5.00, source="pack_small")
    poll_adapter.supports_cancel = False
    poll_adapter.statuses = [_done()]
    poll_adapter.gate = asyncio.Event()

    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-image", "a cat"))
    await wait_until(lambda: services.coordinator.registry._handles[job_id].running)
    await asyncio.sleep(0.01)    # task is now parked inside submit()

    assert await services.coordinator.cancel(job_id, owner="u1")
    poll_adapter.gate.set()

    job = await wait_for_job(services.store, job_id)
    assert poll_adapter.submitted == [job_id]
    assert job.state == JobState.FAILED
    assert job.error == CANCELLED_MESSAGE
    assert await services.ledger.balance("u1") == 5.00
    assert await _deductions(services.ledger) == []
    assert sink.count("failed", job_id) == 1


@pytest.mark.anyio
async def test_cancel_refused_once_uncancellable_provider_accepted(services, webhook_adapter):
    await services.ledger.add("u1", 5.00, source="pack_small")
    job_id = await services.coordinator.start(GenerationRequest("u1", "hook-image", "a cat"))
    await wait_until(lambda: webhook_adapter.submitted == [job_id])
    await wait_until(lambda: not services.coordinator.registry._handles[job_id].running)

    assert not await services.coordinator.cancel(job_id, owner="u1")
    assert not (await services.store.get_job(job_id)).is_terminal


@pytest.mark.anyio
async def test_cancel_finished_job_refused(services, poll_adapter):
    await services.ledger.add("u1", 5.00, source="pack_small")
    poll_adapter.statuses = [_done()]
    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-image", "a cat"))
    await wait_for_job(services.store, job_id)

    assert not await services.coordinator.cancel(job_id)


@pytest.mark.anyio
async def test_retry_creates_new_job_from_snapshot(services, poll_adapter):
    await services.ledger.add("u1", 5.00, source="pack_small")
    poll_adapter.statuses = [ProviderStatus(state=ProviderState.FAILED, error="GPU fell over")]
    job_id = await services.coordinator.start(GenerationRequest(
        "u1", "fake-image", "a cat", params={"resolution": "768x768"},
    ))
    await wait_for_job(services.store, job_id)

    poll_adapter.statuses = [_done()]
    new_id = await services.coordinator.retry(job_id, owner="u1")
    new_job = await wait_for_job(services.store, new_id)

    assert new_id != job_id
    assert new_job.state == JobState.COMPLETED
    assert new_job.prompt == "a cat"
    assert new_job.payload["params"] == {"resolution": "768x768"}
    assert (await services.store.get_job(job_id)).state == JobState.FAILED



@pytest.mark.anyio
async def test_retry_uses_snapshot_not_current_catalog(services, poll_adapter):
    await services.ledger.add("u1", 5.00, source="pack_small")
    services.coordinator.catalog = StaticCatalog.from_dict({
        "fake-image": {"provider": "fake", "cost": 0.04, "title": "Fake", "api_config": {"steps": 4}},
    })
    poll_adapter.statuses = [ProviderStatus(state=ProviderState.FAILED, error="GPU fell over")]
    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-image", "a cat"))
    await wait_for_job(services.store, job_id)

    # Price and config changed since; the model is even gone from the menu
    services.coordinator.catalog = StaticCatalog.from_dict({
        "other": {"provider": "fake", "cost": 0.10, "api_config": {"steps": 8}},
    })
    poll_adapter.statuses = [_done()]
    new_id = await services.coordinator.retry(job_id, owner="u1")
    new_job = await wait_for_job(services.store, new_id)

    assert new_job.model == "fake-image"
    assert new_job.cost == 0.04
    assert new_job.payload["api_config"] == {"steps": 4}
    assert new_job.title == "Fake"
    assert await services.ledger.balance("u1") == 4.96


@pytest.mark.anyio
async def test_retry_of_running_job_rejected(services, poll_adapter):
    await services.ledger.add("u1", 5.00, source="pack_small")
    job_id = await services.coordinator.start(GenerationRequest("u1", "fake-image", "a cat"))
    with pytest.raises(InvalidRequestError):
        await services.coordinator.retry(job_id)


# ─────────────────────────────────────────────
# Rehydration
# ─────────────────────────────────────────────
@pytest.mark.anyio
async def test_rehydrate_after_restart(services, poll_adapter, webhook_adapter, sink):
    store = services.store
    await services.ledger.add("u1", 5.00, source="pack_small")
    payload = {"prompt": "a cat", "params": {}, "title": "Fake Image", "api_config": {}}

    # Rows as a crashed process left them
    fresh = await store.create_job("u1", JobKind.IMAGE, "fake", "fake-image", payload, 0.04)
    polling = await store.create_job("u1", JobKind.IMAGE, "fake", "fake-image", payload, 0.04)
    await store.mark_processing(polling.id, "ref-before-crash")
    hooked = await store.create_job("u1", JobKind.IMAGE, "hook", "hook-image", payload, 0.04)
    await store.mark_processing(hooked.id, "hook-before-crash")
    finished = await store.create_job("u1", JobKind.IMAGE, "fake", "fake-image", payload, 0.04)
    await store.complete(finished.id, Outcome.success("https://provider.test/done.png"))

    poll_adapter.statuses = [_done(), _done()]
    resumed = await services.coordinator.rehydrate()
    assert resumed == 3

    # Terminal-but-unsettled row is settled immediately
    done = await store.get_job(finished.id)
    assert done.is_settled and done.result_ref.startswith("https://cdn.test/")

    await wait_for_job(store, fresh.id)
    await wait_for_job(store, polling.id)

    assert poll_adapter.submitted == [fresh.id]          # resubmitted
    assert webhook_adapter.submitted == []               # still waiting for its callback
    assert hooked.id in services.coordinator.registry
    assert await services.ledger.balance("u1") == round(5.00 - 3 * 0.04, 4)
    assert sink.count("completed", finished.id) == 1


@pytest.mark.anyio
async def test_settled_after_restart_notifies_owner(services):
    payload = {"prompt": "a cat", "params": {}, "title": "Fake Image", "api_config": {}}
    job = await services.store.create_job("u1", JobKind.IMAGE, "fake", "fake-image", payload, 0.0)
    await services.store.complete(job.id, Outcome.failure("GPU fell over"))

    # Nothing was shown in this process before the job settles
    await services.coordinator.finalize(job.id)

    assert [n.id for n in services.hub.for_owner("u1")] == [job.id]
    assert services.hub.for_owner("u1")[0].title == "Fake Image"
