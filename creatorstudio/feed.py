"""
Creator Studio — feed.py
─────────────────────────────────────────────────────────────────
Change feed over the jobs table + per-owner listener.

ChangeFeed
  - JobStore publishes {operation, row} after every committed write
  - subscribe(owner) → async iterator of that owner's events
  - at-least-once: a subscriber may see the same row version twice
  - disconnect()/set_online() model a dropped transport

ChangeFeedListener
  - one per authenticated owner (not per job)
  - on (re)connect: resync from the owner's unsettled rows
  - emits CompletionEvent only when a row *becomes* terminal
  - drops repeated deliveries by (job_id, version)
  - reconnects with exponential backoff

Completion events go onto an asyncio.Queue owned by the coordinator.

Usage:
    feed = ChangeFeed()
    store = JobStore(db_path, feed=feed)
    listener = ChangeFeedListener(owner, feed, store, events_queue)
    task = asyncio.create_task(listener.run())
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional, Dict, Set
from enum import Enum

from creatorstudio.core.config import cfg
from creatorstudio.models.job import Job, JobState

logger = logging.getLogger("creatorstudio.feed")


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class FeedError(Exception):
    """Base change-feed exception."""

class FeedDisconnectedError(FeedError):
    """Subscription transport dropped. Resubscribe and resync."""


# ─────────────────────────────────────────────
# Events
# ─────────────────────────────────────────────
class ChangeOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    operation: ChangeOperation
    job:       Job

    @property
    def owner(self) -> str:
        return self.job.owner


@dataclass(frozen=True)
class CompletionEvent:
    job_id:  str
    owner:   str
    state:   JobState
    version: int


_CLOSED       = object()
_DISCONNECTED = object()


# ─────────────────────────────────────────────
# Subscription
# ─────────────────────────────────────────────
class Subscription:
    """Async iterator over one owner's change events."""

    def __init__(self, feed: "ChangeFeed", owner: str):
        self.feed   = feed
        self.owner  = owner
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def _deliver(self, item):
        if not self.closed:
            self._queue.put_nowait(item)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _DISCONNECTED:
            raise FeedDisconnectedError(f"Change feed dropped for owner {self.owner}")
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self):
        if self.closed:
            return
        self._queue.put_nowait(_CLOSED)
        self.closed = True
        self.feed.unsubscribe(self)


# ─────────────────────────────────────────────
# ChangeFeed
# ─────────────────────────────────────────────
class ChangeFeed:
    """In-process publish/subscribe of jobs table mutations."""

    def __init__(self):
        self._subs: Dict[str, Set[Subscription]] = defaultdict(set)
        self.online = True

    def subscribe(self, owner: str) -> Subscription:
        if not self.online:
            raise FeedDisconnectedError("Change feed is offline")
        sub = Subscription(self, owner)
        self._subs[owner].add(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        subs = self._subs.get(sub.owner)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subs[sub.owner]

    def publish(self, event: ChangeEvent):
        for sub in list(self._subs.get(event.owner, ())):
            sub._deliver(event)

    def disconnect(self, owner: Optional[str] = None):
        """Drop open subscriptions. Events published meanwhile are lost."""
        owners = [owner] if owner else list(self._subs)
        for o in owners:
            for sub in list(self._subs.pop(o, ())):
                sub._deliver(_DISCONNECTED)
                sub.closed = True

    def set_online(self, online: bool):
        self.online = online
        if not online:
            self.disconnect()


# ─────────────────────────────────────────────
# ChangeFeedListener
# ─────────────────────────────────────────────
class ChangeFeedListener:
    """
    Turns external writes to an owner's job rows into CompletionEvents.

    The store is only used for resync: list_unsettled(owner=...).
    """

    def __init__(
        self,
        owner:          str,
        feed:           ChangeFeed,
        store,
        events:         asyncio.Queue,
        reconnect_base: float = None,
        reconnect_max:  float = None,
    ):
        self.owner          = owner
        self.feed           = feed
        self.store          = store
        self.events         = events
        self.reconnect_base = cfg.FEED_RECONNECT_BASE if reconnect_base is None else reconnect_base
        self.reconnect_max  = cfg.FEED_RECONNECT_MAX if reconnect_max is None else reconnect_max

        self.connected  = asyncio.Event()
        self.reconnects = 0
        self.emitted    = 0
        self._last_state: Dict[str, JobState] = {}
        self._versions:   Dict[str, int] = {}

    # ─── Tracking ─────────────────────────────

    def track(self, job_id: str, state: JobState, version: int = 0):
        """Record the state the coordinator already knows about."""
        self._last_state[job_id] = state
        if version > self._versions.get(job_id, -1):
            self._versions[job_id] = version

    def last_state(self, job_id: str) -> Optional[JobState]:
        return self._last_state.get(job_id)

    # ─── Loop ─────────────────────────────────

    async def run(self):
        delay = self.reconnect_base
        while True:
            try:
                sub = self.feed.subscribe(self.owner)
            except FeedDisconnectedError as e:
                logger.warning(f"Feed subscribe failed for {self.owner}: {e}. Retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.reconnect_max)
                continue

            try:
                # Subscribe first, then scan: anything written between the
                # two shows up twice and is dropped by the version check.
                await self._resync()
                self.connected.set()
                delay = self.reconnect_base
                logger.info(f"Listening for job changes | owner={self.owner}")

                async for event in sub:
                    self._handle(event)

                logger.info(f"Feed subscription closed | owner={self.owner}")
                return

            except FeedDisconnectedError as e:
                self.connected.clear()
                self.reconnects += 1
                logger.warning(f"{e}. Reconnecting in {delay:.1f}s (attempt {self.reconnects})")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.reconnect_max)

            except Exception as e:
                # e.g. "database is locked" during resync; treat like a drop
                self.connected.clear()
                self.reconnects += 1
                logger.error(
                    f"Listener for {self.owner} failed: {e}. "
                    f"Resyncing in {delay:.1f}s (attempt {self.reconnects})",
                    exc_info=True,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.reconnect_max)

            finally:
                self.connected.clear()
                sub.close()

    async def _resync(self):
        """
        Reconcile from the Job Store instead of trusting the stream.
        Rows that went terminal during an outage are emitted here.
        """
        jobs = await self.store.list_unsettled(owner=self.owner)
        emitted = 0
        for job in jobs:
            if job.is_terminal:
                if self._observe(job):
                    emitted += 1
            else:
                self.track(job.id, job.state, job.version)
        logger.info(f"Resync for {self.owner}: {len(jobs)} unsettled, {emitted} completed")

    def _handle(self, event: ChangeEvent):
        job = event.job

        if event.operation == ChangeOperation.DELETE:
            self._last_state.pop(job.id, None)
            self._versions.pop(job.id, None)
            return

        if event.operation == ChangeOperation.INSERT:
            self.track(job.id, job.state, job.version)
            return

        self._observe(job)

    def _observe(self, job: Job) -> bool:
        # Duplicate or stale delivery
        if job.version <= self._versions.get(job.id, -1):
            return False
        self._versions[job.id] = job.version

        previous = self._last_state.get(job.id)
        self._last_state[job.id] = job.state

        if not job.is_terminal or job.state == previous:
            return False

        self.events.put_nowait(CompletionEvent(
            job_id  = job.id,
            owner   = job.owner,
            state   = job.state,
            version = job.version,
        ))
        self.emitted += 1
        logger.debug(f"Completion observed: {job.id} → {job.state.value}")
        return True
