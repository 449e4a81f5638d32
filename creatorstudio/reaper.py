"""
Creator Studio — reaper.py
─────────────────────────────────────────────────────────────────
Timeout Reaper — periodic sweep over the Job Store.

Each sweep:
  1. pending/processing rows past their deadline
       image → IMAGE_TIMEOUT_SECONDS (5 min)
       video → VIDEO_TIMEOUT_SECONDS (10 min)
     are finalized as `timed_out` through coordinator.finalize()
  2. terminal rows nobody settled (missed feed event, crash between
     write and settle) are settled
  3. settled rows older than SETTLED_RETENTION_DAYS are purged
  4. finished notifications past their grace period are retired

A job the webhook finished first stays finished: finalize() loses
the compare-and-set and only settles what is already there.

Usage:
    reaper = TimeoutReaper(store, coordinator)
    task   = asyncio.create_task(reaper.run())
    ...
    reaper.stop()
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from creatorstudio.core.config import cfg
from creatorstudio.jobs import JobStore, JobNotFoundError
from creatorstudio.models.job import JobKind, Outcome
from creatorstudio.storage.s3 import StorageError

logger = logging.getLogger("creatorstudio.reaper")


@dataclass
class SweepReport:
    timed_out: int = 0     # jobs this sweep moved to timed_out
    settled:   int = 0     # orphaned terminal rows settled
    purged:    int = 0     # old settled rows deleted
    retired:   int = 0     # notifications dismissed

    @property
    def is_empty(self) -> bool:
        return not (self.timed_out or self.settled or self.purged or self.retired)


class TimeoutReaper:

    def __init__(
        self,
        store:          JobStore,
        coordinator,
        image_timeout:  float = None,
        video_timeout:  float = None,
        interval:       float = None,
        retention_days: int = None,
    ):
        self.store          = store
        self.coordinator    = coordinator
        self.image_timeout  = cfg.IMAGE_TIMEOUT_SECONDS if image_timeout is None else image_timeout
        self.video_timeout  = cfg.VIDEO_TIMEOUT_SECONDS if video_timeout is None else video_timeout
        self.interval       = cfg.REAPER_INTERVAL_SECONDS if interval is None else interval
        self.retention_days = cfg.SETTLED_RETENTION_DAYS if retention_days is None else retention_days
        self._stop          = asyncio.Event()

    def timeout_for(self, kind: JobKind) -> float:
        return self.video_timeout if kind == JobKind.VIDEO else self.image_timeout

    # ─── Sweep ─────────────────────────────────

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now    = now or datetime.now(timezone.utc)
        report = SweepReport()

        for kind in JobKind:
            cutoff = (now - timedelta(seconds=self.timeout_for(kind))).isoformat()
            for job in await self.store.list_stale(kind, cutoff):
                try:
                    result = await self.coordinator.finalize(job.id, Outcome.timeout(kind))
                except JobNotFoundError:
                    continue
                except StorageError as e:
                    logger.error(f"Reaper: job {job.id} finished but storing failed: {e}")
                    continue
                if result.won:
                    report.timed_out += 1
                    logger.warning(f"⚠️  Job {job.id} ({kind.value}) timed out after {self.timeout_for(kind):.0f}s")

        # Rows finished within the last interval are left to the feed listener
        grace = (now - timedelta(seconds=self.interval)).isoformat()
        for job in await self.store.list_unsettled():
            if not job.is_terminal or (job.completed_at or "") > grace:
                continue
            try:
                result = await self.coordinator.finalize(job.id)
            except JobNotFoundError:
                continue
            except StorageError as e:
                logger.error(f"Reaper: job {job.id} still can't be stored: {e}")
                continue
            if result.settled:
                report.settled += 1
                logger.info(f"Reaper settled orphaned job {job.id} ({job.state.value})")

        retention = (now - timedelta(days=self.retention_days)).isoformat()
        report.purged  = await self.store.purge_settled(retention)
        report.retired = self.coordinator.hub.retire_expired()

        if not report.is_empty:
            logger.info(
                f"Sweep: timed_out={report.timed_out} settled={report.settled} "
                f"purged={report.purged} retired={report.retired}"
            )
        return report

    # ─── Loop ──────────────────────────────────

    async def run(self):
        """Sweep every `interval` seconds until stop() is called."""
        logger.info(
            f"✓ Reaper started | image={self.image_timeout}s video={self.video_timeout}s "
            f"every {self.interval}s"
        )
        while not self._stop.is_set():
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Reaper sweep failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reaper stopped")

    def stop(self):
        self._stop.set()
