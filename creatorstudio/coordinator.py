"""
Creator Studio — coordinator.py
─────────────────────────────────────────────────────────────────
Task Coordinator — owns every live generation job in this process.

- start()     validate → pre-flight credits → Job row (pending)
              → notification → spawn GenerationTask → return id
- cancel()    best-effort, per provider capability
- finalize()  the ONE completion path (task, change feed, reaper):
                1. persist artifact (success only)
                2. compare-and-set the terminal state
                3. charge (idempotent on job id, completed only)
                4. claim settlement → update the Notification Hub
                   and push to the device (winner only)
              Safe to call any number of times, from any path.
- retry()     new job from a terminal job's payload snapshot
- rehydrate() rebuild the in-memory registry from the Job Store
              after a restart

The registry is in memory only; the Job Store is the truth.
Completion events from the change-feed listeners arrive on
self.events (an asyncio.Queue) and are consumed by run().

Usage:
    coordinator = TaskCoordinator(store, ledger, hub, catalog, providers, storage, feed)
    await coordinator.start_background()
    job_id = await coordinator.start(GenerationRequest(owner, "flux-schnell", prompt))
    ...
    await coordinator.shutdown()
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, List, Any
from urllib.parse import urlencode

from creatorstudio.catalog import CatalogEntry, UnknownModelError
from creatorstudio.core.config import cfg
from creatorstudio.feed import ChangeFeed, ChangeFeedListener, CompletionEvent
from creatorstudio.jobs import JobStore, JobNotFoundError, DuplicateJobError
from creatorstudio.models.job import Job, JobKind, JobState, Outcome, FinalizeResult
from creatorstudio.notifications import NotificationHub
from creatorstudio.providers.base import (
    ProviderAdapter, ProviderMode, TransientProviderError, PermanentProviderError,
)
from creatorstudio.push import PushNotifier
from creatorstudio.storage.s3 import StorageError
from creatorstudio.wallet import CreditLedger
from creatorstudio.worker.generator import GenerationTask, JobHandle

logger = logging.getLogger("creatorstudio.coordinator")

MAX_PROMPT_LENGTH = 4000


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class CoordinatorError(Exception):
    """Base coordinator exception."""

class InvalidRequestError(CoordinatorError):
    """Request can't be turned into a job (bad model, prompt, kind...)."""


# ─────────────────────────────────────────────
# Request
# ─────────────────────────────────────────────
@dataclass
class GenerationRequest:
    owner:        str
    model:        str
    prompt:       str = ""
    params:       Dict[str, Any] = field(default_factory=dict)
    job_id:       Optional[str] = None         # caller-chosen idempotency key
    kind:         Optional[JobKind] = None     # what the caller expects back
    device_token: Optional[str] = None         # push target, mobile clients only


# ─────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────
class JobRegistry:
    """job id → JobHandle, shared by tasks, listeners and the reaper."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._handles: Dict[str, JobHandle] = {}

    async def add(self, handle: JobHandle) -> bool:
        async with self._lock:
            if handle.job_id in self._handles:
                return False
            self._handles[handle.job_id] = handle
            return True

    async def get(self, job_id: str) -> Optional[JobHandle]:
        async with self._lock:
            return self._handles.get(job_id)

    async def pop(self, job_id: str) -> Optional[JobHandle]:
        async with self._lock:
            return self._handles.pop(job_id, None)

    async def snapshot(self) -> List[JobHandle]:
        async with self._lock:
            return list(self._handles.values())

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._handles

    def __len__(self):
        return len(self._handles)


# ─────────────────────────────────────────────
# TaskCoordinator
# ─────────────────────────────────────────────
class TaskCoordinator:

    def __init__(
        self,
        store:             JobStore,
        ledger:            CreditLedger,
        hub:               NotificationHub,
        catalog,
        providers:         Dict[str, ProviderAdapter],
        storage=None,
        feed:              Optional[ChangeFeed] = None,
        webhook_base_url:  str = None,
        webhook_secret:    str = None,
        poll_interval:     float = None,
        poll_max_interval: float = None,
        max_attempts:      int = None,
        reconnect_base:    float = None,
        reconnect_max:     float = None,
        push:              Optional[PushNotifier] = None,
    ):
        self.store             = store
        self.ledger            = ledger
        self.hub               = hub
        self.catalog           = catalog
        self.providers         = providers
        self.storage           = storage
        self.feed              = feed if feed is not None else (store.feed or ChangeFeed())
        self.webhook_base_url  = (webhook_base_url or cfg.PUBLIC_BASE_URL).rstrip("/")
        self.webhook_secret    = cfg.WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.poll_interval     = poll_interval
        self.poll_max_interval = poll_max_interval
        self.max_attempts      = max_attempts
        self.reconnect_base    = reconnect_base
        self.reconnect_max     = reconnect_max
        self.push              = push

        self.registry = JobRegistry()
        self.events: asyncio.Queue = asyncio.Queue()

        self._listeners: Dict[str, ChangeFeedListener] = {}
        self._listener_tasks: Dict[str, asyncio.Task] = {}
        self._listener_lock = asyncio.Lock()
        self._consumer: Optional[asyncio.Task] = None

        if self.storage is None:
            logger.warning("⚠️  No storage configured — provider URLs are kept as result refs")

    # ─── Start ─────────────────────────────────

    def _validate(self, request: GenerationRequest, entry: CatalogEntry):
        if not request.owner:
            raise InvalidRequestError("Missing owner.")
        if request.kind is not None and request.kind != entry.kind:
            raise InvalidRequestError(
                f"Model '{entry.model}' generates {entry.kind.value}, not {request.kind.value}."
            )
        if not request.prompt.strip() and not request.params.get("image_url"):
            raise InvalidRequestError("Prompt can't be empty.")
        if len(request.prompt) > MAX_PROMPT_LENGTH:
            raise InvalidRequestError(f"Prompt is longer than {MAX_PROMPT_LENGTH} characters.")

    async def start(self, request: GenerationRequest) -> str:
        """
        Accept a generation request. Returns the job id immediately.

        Raises:
            InvalidRequestError     bad model / prompt / kind
            InsufficientFundsError  balance below the model's cost
        Neither leaves a Job row behind or contacts a provider.
        """
        if request.job_id:
            existing = await self.store.find_job(request.job_id)
            if existing is not None:
                if existing.owner != request.owner:
                    raise InvalidRequestError("Job id already in use.")
                logger.info(f"Start replayed for existing job {existing.id}")
                return existing.id

        try:
            entry = self.catalog.resolve(request.model)
        except UnknownModelError as e:
            raise InvalidRequestError(str(e))
        return await self._open(request, entry)

    async def _open(self, request: GenerationRequest, entry: CatalogEntry) -> str:
        """Check, write the pending row and launch. Shared by start and retry."""
        self._validate(request, entry)

        adapter = self.providers.get(entry.provider)
        if adapter is None:
            raise InvalidRequestError(f"Provider '{entry.provider}' is not available right now.")

        # Pre-flight only: nothing is reserved, the charge happens on success
        await self.ledger.check_funds(request.owner, entry.cost)

        payload = {
            "prompt":     request.prompt,
            "params":     dict(request.params),
            "title":      entry.title,
            "api_config": dict(entry.api_config),
        }
        if request.device_token:
            payload["device_token"] = request.device_token
        try:
            job = await self.store.create_job(
                owner    = request.owner,
                kind     = entry.kind,
                provider = entry.provider,
                model    = entry.model,
                payload  = payload,
                cost     = entry.cost,
                job_id   = request.job_id,
            )
        except DuplicateJobError:
            # Same id raced in from a parallel request
            return request.job_id

        self.hub.show(job.id, entry.title, owner=job.owner)
        await self.ensure_listener(job.owner)
        await self._launch(job, adapter)
        return job.id

    def _callback_url(self, job: Job, adapter: ProviderAdapter) -> Optional[str]:
        if adapter.mode != ProviderMode.WEBHOOK:
            return None
        params = {"job_id": job.id}
        if self.webhook_secret:
            params["token"] = self.webhook_secret
        return f"{self.webhook_base_url}/api/webhooks/{adapter.name}?{urlencode(params)}"

    async def _launch(self, job: Job, adapter: ProviderAdapter, resume_ref: Optional[str] = None):
        handle = JobHandle(job_id=job.id, owner=job.owner, provider=adapter.name)
        if not await self.registry.add(handle):
            logger.debug(f"Job {job.id} already has a live task")
            return

        task = GenerationTask(
            job               = job,
            adapter           = adapter,
            store             = self.store,
            hub               = self.hub,
            handle            = handle,
            callback_url      = self._callback_url(job, adapter),
            resume_ref        = resume_ref,
            poll_interval     = self.poll_interval,
            poll_max_interval = self.poll_max_interval,
            max_attempts      = self.max_attempts,
        )
        handle.task = asyncio.create_task(self._drive(task, handle), name=f"job-{job.id}")

    async def _drive(self, task: GenerationTask, handle: JobHandle):
        try:
            outcome = await task.run()
        except asyncio.CancelledError:
            # Shutdown: the row stays non-terminal and is rehydrated next start
            raise
        except Exception as e:
            logger.error(f"Generation task for job {handle.job_id} crashed: {e}", exc_info=True)
            outcome = Outcome.failure("Generation failed unexpectedly.")

        if outcome is None:
            return
        try:
            await self.finalize(handle.job_id, outcome)
        except StorageError as e:
            logger.error(f"Job {handle.job_id} finished but storing the result failed: {e}")
        except Exception as e:
            logger.error(f"Finalize for job {handle.job_id} failed: {e}", exc_info=True)

    # ─── Cancel ────────────────────────────────

    async def cancel(self, job_id: str, owner: Optional[str] = None) -> bool:
        """
        Best-effort cancel. Honoured while the provider hasn't accepted
        the job yet, or afterwards when the adapter supports_cancel.
        A cancel that lands while submit is in flight always ends the
        job cancelled and uncharged, whatever the provider does with it.
        Returns False when the request can't be honoured.
        """
        job = await self.store.get_job(job_id)
        if owner is not None and job.owner != owner:
            raise JobNotFoundError(f"Job '{job_id}' not found.")
        if job.is_terminal:
            return False

        handle  = await self.registry.get(job_id)
        adapter = self.providers.get(job.provider)

        if handle is not None and not handle.submitted:
            handle.cancel_event.set()
            logger.info(f"Cancel requested for job {job_id} (not yet submitted)")
            return True

        if handle is None and job.task_ref is None and job.state == JobState.PENDING:
            await self.finalize(job_id, Outcome.cancelled())
            return True

        if adapter is None or not adapter.supports_cancel:
            logger.info(f"Job {job_id} can't be cancelled: {job.provider} already accepted it")
            return False

        if handle is not None and handle.running:
            # Poll loop wakes up, cancels at the provider and returns
            handle.cancel_event.set()
            return True

        task_ref = job.task_ref or (handle.task_ref if handle else None)
        if not task_ref:
            return False
        try:
            cancelled = await adapter.cancel(replace(job, task_ref=task_ref))
        except (TransientProviderError, PermanentProviderError) as e:
            logger.warning(f"Cancel at {adapter.name} failed for job {job_id}: {e}")
            return False
        if not cancelled:
            return False

        await self.finalize(job_id, Outcome.cancelled())
        return True

    # ─── Retry ─────────────────────────────────

    async def retry(self, job_id: str, owner: Optional[str] = None) -> str:
        """
        A new job from a finished job's payload snapshot. The old one is
        untouched. Provider, api_config and price come from the snapshot,
        not the current catalogue, so a retry asks for exactly the same
        generation at the price the user first saw.
        """
        job = await self.store.get_job(job_id)
        if owner is not None and job.owner != owner:
            raise JobNotFoundError(f"Job '{job_id}' not found.")
        if not job.is_terminal:
            raise InvalidRequestError("Only finished jobs can be retried.")

        snapshot = CatalogEntry(
            model      = job.model,
            provider   = job.provider,
            kind       = job.kind,
            cost       = job.cost,
            title      = job.title,
            api_config = dict(job.payload.get("api_config", {})),
        )
        return await self._open(GenerationRequest(
            owner        = job.owner,
            model        = job.model,
            prompt       = job.prompt,
            params       = dict(job.payload.get("params", {})),
            kind         = job.kind,
            device_token = job.device_token,
        ), snapshot)

    # ─── Finalize ──────────────────────────────

    async def _persist(self, job: Job, source_url: str) -> str:
        if self.storage is None:
            return source_url
        return await self.storage.persist_result(job, source_url)

    async def finalize(self, job_id: str, outcome: Optional[Outcome] = None) -> FinalizeResult:
        """
        Drive a job to its settled end state.

        outcome=None settles whatever the Job Store already holds
        (used for change-feed events and rehydration).

        Raises StorageError only when a webhook-completed job's
        artifact can't be copied yet; the job stays unsettled and a
        later call (feed resync, reaper, restart) picks it up again.
        """
        job = await self.store.get_job(job_id)
        won = False

        if outcome is not None and not job.is_terminal:
            if outcome.is_success and outcome.result_ref is None:
                try:
                    outcome = outcome.with_ref(await self._persist(job, outcome.result_url))
                except StorageError as e:
                    logger.error(f"Storing result for job {job_id} failed: {e}")
                    outcome = Outcome.failure("Couldn't save the generated file.")

            won = await self.store.complete(job_id, outcome)
            job = await self.store.get_job(job_id)
            if not won:
                logger.info(
                    f"Finalize {job_id}: already {job.state.value}, "
                    f"ignoring {outcome.state.value}"
                )

        if not job.is_terminal:
            return FinalizeResult(job=job)

        if job.state == JobState.COMPLETED and not job.result_ref and job.provider_result_url:
            ref = await self._persist(job, job.provider_result_url)
            await self.store.set_result_ref(job_id, ref)
            job = await self.store.get_job(job_id)

        return await self._settle(job, won)

    async def _settle(self, job: Job, won: bool) -> FinalizeResult:
        balance = None
        if job.state == JobState.COMPLETED and job.cost > 0:
            # Idempotent per job id: repeat calls return the original balance
            balance = await self.ledger.deduct(job.owner, job.cost, related_job_id=job.id)

        settled = await self.store.claim_settlement(job.id)
        if settled:
            if job.state == JobState.COMPLETED:
                self.hub.mark_completed(job.id, job.result_ref, title=job.title, owner=job.owner)
            else:
                self.hub.mark_failed(job.id, job.error or "Generation failed.", title=job.title, owner=job.owner)
            logger.info(
                f"Job {job.id} settled as {job.state.value}"
                + (f" | charged {job.cost} | balance={balance}" if balance is not None else "")
            )
            job = await self.store.get_job(job.id)

            # Only the settlement winner gets here, so at most one push per job
            if self.push is not None and job.device_token:
                await self.push.send(job)

        handle = await self.registry.pop(job.id)
        if handle is not None and handle.running and handle.task is not asyncio.current_task():
            handle.finished = True
            handle.cancel_event.set()

        return FinalizeResult(job=job, won=won, settled=settled, balance=balance)

    # ─── Change feed ───────────────────────────

    async def ensure_listener(self, owner: str) -> ChangeFeedListener:
        """One change-feed listener per owner, started on first use."""
        async with self._listener_lock:
            task = self._listener_tasks.get(owner)
            if task is not None and not task.done():
                return self._listeners[owner]

            listener = ChangeFeedListener(
                owner          = owner,
                feed           = self.feed,
                store          = self.store,
                events         = self.events,
                reconnect_base = self.reconnect_base,
                reconnect_max  = self.reconnect_max,
            )
            self._listeners[owner]      = listener
            self._listener_tasks[owner] = asyncio.create_task(listener.run(), name=f"feed-{owner}")
            return listener

    async def _handle_event(self, event: CompletionEvent):
        try:
            await self.finalize(event.job_id)
        except JobNotFoundError:
            logger.debug(f"Completion for purged job {event.job_id} ignored")
        except StorageError as e:
            logger.error(f"Job {event.job_id} completed but storing the result failed: {e}")

    async def run(self):
        """Consume completion events until cancelled."""
        logger.info("Coordinator consuming completion events")
        while True:
            event = await self.events.get()
            try:
                await self._handle_event(event)
            except Exception as e:
                logger.error(f"Completion event for {event.job_id} failed: {e}", exc_info=True)
            finally:
                self.events.task_done()

    # ─── Rehydration ───────────────────────────

    async def rehydrate(self) -> int:
        """
        Rebuild live state from the Job Store after a restart.

            terminal, unsettled      → settle now
            no task_ref yet          → resubmit from the payload snapshot
            poll provider + task_ref → resume polling
            webhook + task_ref       → wait for the change feed
        """
        jobs = await self.store.list_unsettled()
        resumed = 0

        for job in jobs:
            if job.is_terminal:
                try:
                    await self.finalize(job.id)
                except StorageError as e:
                    logger.error(f"Rehydrate: job {job.id} still can't be stored: {e}")
                continue

            if job.id in self.registry:
                continue

            adapter = self.providers.get(job.provider)
            if adapter is None:
                await self.finalize(job.id, Outcome.failure(f"Provider '{job.provider}' is no longer available."))
                continue

            self.hub.show(job.id, job.title, message="Resuming generation...", owner=job.owner)
            await self.ensure_listener(job.owner)

            if job.task_ref is None:
                await self._launch(job, adapter)
            elif adapter.mode == ProviderMode.POLL:
                await self._launch(job, adapter, resume_ref=job.task_ref)
            else:
                await self.registry.add(JobHandle(
                    job_id    = job.id,
                    owner     = job.owner,
                    provider  = adapter.name,
                    submitted = True,
                    task_ref  = job.task_ref,
                ))
            resumed += 1

        logger.info(f"Rehydrated {resumed} in-flight job(s) from {len(jobs)} unsettled row(s)")
        return resumed

    # ─── Lifecycle ─────────────────────────────

    async def start_background(self):
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self.run(), name="coordinator-events")

    async def shutdown(self):
        tasks: List[asyncio.Task] = []
        if self._consumer is not None:
            tasks.append(self._consumer)
        tasks.extend(self._listener_tasks.values())
        tasks.extend(h.task for h in await self.registry.snapshot() if h.running)

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._consumer = None
        self._listener_tasks.clear()
        self._listeners.clear()
        logger.info(f"Coordinator stopped ({len(tasks)} task(s) cancelled)")
