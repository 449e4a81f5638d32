"""
Creator Studio — worker/generator.py
─────────────────────────────────────────────────────────────────
Generation Task — one per job, run as its own asyncio.Task.

Poll mode:
  1. Check the cancel flag (nothing has been sent yet, and again
     right after submit returns)
  2. Submit (transient errors retried with backoff)
  3. Record task_ref → job is `processing`
  4. Poll with exponential backoff until the provider is done
     (cancel flag checked between polls)
  5. Return an Outcome → coordinator.finalize()

Webhook mode:
  1-3 as above, then return None. The provider calls our webhook,
  the row changes, and the change-feed listener takes it from there.

Progress goes to the Notification Hub only. It is never written
to the Job Store.
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from typing import Optional, Callable

from creatorstudio.core.config import cfg
from creatorstudio.models.job import Job, JobKind, Outcome
from creatorstudio.providers.base import (
    ProviderAdapter, ProviderMode, ProviderState,
    TransientProviderError, PermanentProviderError,
)

logger = logging.getLogger("creatorstudio.generator")

IMAGE_MESSAGES = [
    "Creating your image...",
    "Generating your creation...",
    "Optimizing quality...",
    "Working on your image...",
    "This may take a few minutes...",
]

VIDEO_MESSAGES = [
    "Creating your video...",
    "Rendering video frames...",
    "Processing video sequence...",
    "Finalizing video quality...",
    "This may take a few minutes...",
]


def progress_message(kind: JobKind, step: int) -> str:
    messages = VIDEO_MESSAGES if kind == JobKind.VIDEO else IMAGE_MESSAGES
    return messages[min(step, len(messages) - 1)]


# ─────────────────────────────────────────────
# Handle (shared by coordinator and task)
# ─────────────────────────────────────────────
@dataclass
class JobHandle:
    job_id:       str
    owner:        str
    provider:     str
    task:         Optional[asyncio.Task] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    submitted:    bool = False          # provider has accepted the job
    finished:     bool = False          # finalized elsewhere, stop polling
    task_ref:     Optional[str] = None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


# ─────────────────────────────────────────────
# GenerationTask
# ─────────────────────────────────────────────
class GenerationTask:

    def __init__(
        self,
        job:               Job,
        adapter:           ProviderAdapter,
        store,
        hub,
        handle:            JobHandle,
        callback_url:      Optional[str] = None,
        resume_ref:        Optional[str] = None,
        poll_interval:     float = None,
        poll_max_interval: float = None,
        max_attempts:      int = None,
        sleep:             Callable = asyncio.sleep,
    ):
        if poll_max_interval is None:
            poll_max_interval = adapter.poll_max_interval or cfg.POLL_MAX_INTERVAL

        self.job               = job
        self.adapter           = adapter
        self.store             = store
        self.hub               = hub
        self.handle            = handle
        self.callback_url      = callback_url
        self.resume_ref        = resume_ref
        self.poll_interval     = cfg.POLL_INTERVAL if poll_interval is None else poll_interval
        self.poll_max_interval = poll_max_interval
        self.max_attempts      = cfg.MAX_SUBMIT_ATTEMPTS if max_attempts is None else max_attempts
        self._sleep            = sleep

    # ─── Entry ─────────────────────────────────

    async def run(self) -> Optional[Outcome]:
        """
        Returns the job's Outcome, or None when completion will arrive
        through the webhook path.
        """
        job = self.job
        try:
            if self.resume_ref:
                task_ref = self.resume_ref
                self.handle.submitted = True
                self.handle.task_ref  = task_ref
                logger.info(f"Resuming job {job.id} at {self.adapter.name} ({task_ref})")
            else:
                if self.handle.cancel_requested:
                    logger.info(f"Job {job.id} cancelled before submission")
                    return Outcome.cancelled()

                self.hub.update_progress(job.id, 0.1, "Preparing request...")
                result = await self._submit()
                self.handle.submitted = True
                self.handle.task_ref  = result.task_ref

                # No await between the flag flip and this check: a cancel
                # seen here was accepted by coordinator.cancel() pre-submit
                if self.handle.cancel_requested:
                    return await self._abandon(result.task_ref)

                if result.is_immediate:
                    self.hub.update_progress(job.id, 0.75, "Downloading result...")
                    return Outcome.success(result.result_url)

                task_ref = result.task_ref
                await self.store.mark_processing(job.id, task_ref)
                self.hub.update_progress(job.id, 0.2, progress_message(job.kind, 0))

                if self.handle.cancel_requested:
                    cancelled = await self._cancel_at_provider(task_ref)
                    if cancelled is not None:
                        return cancelled

            if self.adapter.mode == ProviderMode.WEBHOOK:
                logger.info(f"Job {job.id} handed to {self.adapter.name}; waiting for callback")
                return None

            return await self._poll(task_ref)

        except PermanentProviderError as e:
            logger.warning(f"Job {job.id} rejected by {self.adapter.name}: {e}")
            return Outcome.failure(f"Generation failed: {e}")
        except TransientProviderError as e:
            logger.error(f"Job {job.id} gave up after repeated {self.adapter.name} errors: {e}")
            return Outcome.failure(f"{self.adapter.name} is unavailable. Please try again later.")

    # ─── Submit ────────────────────────────────

    async def _submit(self):
        delay = self.poll_interval
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.adapter.submit(self.job, self.callback_url)
            except TransientProviderError as e:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    f"Submit attempt {attempt}/{self.max_attempts} for job {self.job.id} "
                    f"failed: {e}. Retrying in {delay:.1f}s"
                )
                await self._sleep(delay + random.uniform(0, delay / 4))
                delay = min(max(delay * 2, 0.1), self.poll_max_interval)
        raise TransientProviderError(f"{self.adapter.name}: no submit attempts left")

    # ─── Poll ──────────────────────────────────

    async def _wait(self, seconds: float) -> bool:
        """Sleep between polls. Returns True early if cancel is requested."""
        if self.handle.cancel_requested:
            return True
        try:
            await asyncio.wait_for(self.handle.cancel_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _poll(self, task_ref: str) -> Optional[Outcome]:
        interval = self.poll_interval
        failures = 0
        polls    = 0

        while True:
            if await self._wait(interval):
                if self.handle.finished:
                    await self._stop_at_provider(task_ref)
                    return None
                cancelled = await self._cancel_at_provider(task_ref)
                if cancelled is not None:
                    return cancelled

            try:
                status = await self.adapter.poll_status(task_ref)
                failures = 0
            except TransientProviderError as e:
                failures += 1
                if failures >= self.max_attempts:
                    raise
                logger.warning(f"Poll {failures}/{self.max_attempts} for job {self.job.id} failed: {e}")
                interval = min(max(interval * 2, 0.1), self.poll_max_interval)
                continue

            polls += 1
            if status.is_terminal:
                logger.info(f"Job {self.job.id} {status.state.value} at {self.adapter.name} after {polls} poll(s)")
                if status.state == ProviderState.COMPLETED:
                    self.hub.update_progress(self.job.id, 0.75, "Downloading result...")
                return status.to_outcome()

            if status.progress is not None:
                progress = 0.2 + 0.6 * min(max(status.progress, 0.0), 1.0)
            else:
                progress = min(0.8, 0.2 + polls * 0.05)
            self.hub.update_progress(self.job.id, progress, progress_message(self.job.kind, polls // 3))

            interval = min(max(interval * 1.5, 0.1), self.poll_max_interval)

    # ─── Cancel ────────────────────────────────

    async def _cancel_at_provider(self, task_ref: str) -> Optional[Outcome]:
        """
        Returns Outcome.cancelled() if the provider stopped the job,
        None if it can't be stopped and the task should carry on.
        """
        if not self.adapter.supports_cancel:
            logger.info(
                f"Cancel for job {self.job.id} arrived after submission; "
                f"{self.adapter.name} can't cancel, continuing"
            )
            self.handle.cancel_event.clear()
            return None
        try:
            cancelled = await self.adapter.cancel(replace(self.job, task_ref=task_ref))
        except (TransientProviderError, PermanentProviderError) as e:
            logger.warning(f"Cancel at {self.adapter.name} failed for job {self.job.id}: {e}")
            cancelled = False

        if cancelled:
            return Outcome.cancelled()
        self.handle.cancel_event.clear()
        return None

    async def _abandon(self, task_ref: Optional[str]) -> Outcome:
        """
        Cancel arrived while submit was in flight. The user was told yes,
        so the job ends cancelled (uncharged) whatever the provider does
        with the work it already accepted.
        """
        logger.info(f"Job {self.job.id} cancelled during submission to {self.adapter.name}")
        if task_ref and self.adapter.supports_cancel:
            try:
                await self.adapter.cancel(replace(self.job, task_ref=task_ref))
            except (TransientProviderError, PermanentProviderError) as e:
                logger.warning(f"Could not cancel {task_ref} at {self.adapter.name}: {e}")
        return Outcome.cancelled()

    async def _stop_at_provider(self, task_ref: str):
        """Job was finalized elsewhere (e.g. timed out). Free the provider slot if we can."""
        logger.info(f"Job {self.job.id} finalized elsewhere; polling stopped")
        if not self.adapter.supports_cancel:
            return
        try:
            await self.adapter.cancel(replace(self.job, task_ref=task_ref))
        except (TransientProviderError, PermanentProviderError) as e:
            logger.warning(f"Could not cancel {task_ref} at {self.adapter.name}: {e}")
