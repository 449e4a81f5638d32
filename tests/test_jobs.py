from datetime import datetime, timedelta, timezone

import pytest

from creatorstudio.feed import ChangeFeed, ChangeOperation
from creatorstudio.jobs import (
    JobStore, JobNotFoundError, DuplicateJobError, InvalidTransitionError,
)
from creatorstudio.models.job import JobKind, JobState, Outcome


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(db_path, feed):
    return JobStore(db_path, feed=feed)


async def _new_job(store, kind=JobKind.IMAGE, owner="u1", job_id=None):
    return await store.create_job(
        owner    = owner,
        kind     = kind,
        provider = "fake",
        model    = "fake-image",
        payload  = {"prompt": "a cat", "title": "Fake Image"},
        cost     = 0.04,
        job_id   = job_id,
    )


@pytest.mark.anyio
async def test_create_job_starts_pending(store):
    job = await _new_job(store)

    assert job.state == JobState.PENDING
    assert job.version == 1
    assert job.prompt == "a cat"
    assert job.title == "Fake Image"
    assert not job.is_terminal and not job.is_settled


@pytest.mark.anyio
async def test_duplicate_job_id_rejected(store):
    await _new_job(store, job_id="job-1")
    with pytest.raises(DuplicateJobError):
        await _new_job(store, job_id="job-1")


@pytest.mark.anyio
async def test_get_job_missing(store):
    with pytest.raises(JobNotFoundError):
        await store.get_job("missing")
    assert await store.find_job("missing") is None


@pytest.mark.anyio
async def test_first_terminal_write_wins(store):
    job = await _new_job(store)

    assert await store.mark_processing(job.id, "ref-1")
    assert await store.complete(job.id, Outcome.success("https://p/1.png"))
    assert not await store.complete(job.id, Outcome.timeout(JobKind.IMAGE))
    assert not await store.mark_processing(job.id)

    job = await store.get_job(job.id)
    assert job.state == JobState.COMPLETED
    assert job.task_ref == "ref-1"
    assert job.provider_result_url == "https://p/1.png"
    assert job.error is None


@pytest.mark.anyio
async def test_version_bumps_on_every_write(store):
    job = await _new_job(store)
    await store.mark_processing(job.id, "ref-1")
    await store.complete(job.id, Outcome.failure("boom"))
    await store.claim_settlement(job.id)

    assert (await store.get_job(job.id)).version == 4


@pytest.mark.anyio
async def test_complete_rejects_non_terminal_outcome(store):
    job = await _new_job(store)
    with pytest.raises(InvalidTransitionError):
        await store.complete(job.id, Outcome(state=JobState.PROCESSING))


@pytest.mark.anyio
async def test_settlement_claimed_once_and_only_when_terminal(store):
    job = await _new_job(store)
    assert not await store.claim_settlement(job.id)

    await store.complete(job.id, Outcome.failure("boom"))
    assert await store.claim_settlement(job.id)
    assert not await store.claim_settlement(job.id)


@pytest.mark.anyio
async def test_set_result_ref_only_once(store):
    job = await _new_job(store)
    await store.complete(job.id, Outcome.success("https://p/1.png"))

    assert await store.set_result_ref(job.id, "https://cdn/1.png")
    assert not await store.set_result_ref(job.id, "https://cdn/other.png")
    assert (await store.get_job(job.id)).result_ref == "https://cdn/1.png"


@pytest.mark.anyio
async def test_apply_callback_progress_never_leaves_terminal(store):
    job = await _new_job(store)

    assert await store.apply_callback(job.id, task_ref="ref-1")
    assert (await store.get_job(job.id)).state == JobState.PROCESSING

    assert await store.apply_callback(job.id, Outcome.success("https://p/1.png"))
    assert not await store.apply_callback(job.id, task_ref="ref-1")
    assert (await store.get_job(job.id)).state == JobState.COMPLETED


@pytest.mark.anyio
async def test_find_by_task_ref(store):
    job = await _new_job(store)
    await store.mark_processing(job.id, "ref-xyz")

    found = await store.find_by_task_ref("fake", "ref-xyz")
    assert found.id == job.id
    assert await store.find_by_task_ref("other", "ref-xyz") is None


@pytest.mark.anyio
async def test_list_for_owner_filters_and_paginates(store):
    for _ in range(3):
        await _new_job(store)
    other = await _new_job(store, owner="u2")
    done  = await _new_job(store)
    await store.complete(done.id, Outcome.failure("boom"))

    assert len(await store.list_for_owner("u1")) == 4
    assert len(await store.list_for_owner("u1", limit=2)) == 2
    failed = await store.list_for_owner("u1", state=JobState.FAILED)
    assert [j.id for j in failed] == [done.id]
    assert [j.id for j in await store.list_for_owner("u2")] == [other.id]


@pytest.mark.anyio
async def test_list_unsettled_and_stale(store):
    image = await _new_job(store)
    video = await _new_job(store, kind=JobKind.VIDEO)
    done  = await _new_job(store)
    await store.complete(done.id, Outcome.failure("boom"))
    await store.claim_settlement(done.id)

    unsettled = {j.id for j in await store.list_unsettled()}
    assert unsettled == {image.id, video.id}

    future = (datetime.now(timezone.utc) + timedelta(seconds=1)).isoformat()
    assert [j.id for j in await store.list_stale(JobKind.VIDEO, future)] == [video.id]
    assert [j.id for j in await store.list_stale(JobKind.IMAGE, future)] == [image.id]

    past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    assert await store.list_stale(JobKind.IMAGE, past) == []


@pytest.mark.anyio
async def test_purge_settled_removes_only_old_settled_rows(store, feed):
    sub  = feed.subscribe("u1")
    keep = await _new_job(store)
    old  = await _new_job(store)
    await store.complete(old.id, Outcome.failure("boom"))
    await store.claim_settlement(old.id)

    future = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    assert await store.purge_settled(future) == 1

    assert await store.find_job(old.id) is None
    assert await store.find_job(keep.id) is not None

    operations = []
    while not sub._queue.empty():
        operations.append((await sub.__anext__()).operation)
    assert operations[-1] == ChangeOperation.DELETE
    sub.close()


@pytest.mark.anyio
async def test_writes_are_published(store, feed):
    sub = feed.subscribe("u1")
    job = await _new_job(store)
    await store.complete(job.id, Outcome.success("https://p/1.png"))

    first  = await sub.__anext__()
    second = await sub.__anext__()
    assert first.operation == ChangeOperation.INSERT
    assert second.operation == ChangeOperation.UPDATE
    assert second.job.state == JobState.COMPLETED
    assert second.job.version > first.job.version
    sub.close()
