"""
Creator Studio — notifications.py
─────────────────────────────────────────────────────────────────
Notification Hub — per-job, UI-facing progress state.

    in_progress(progress, message) ──▶ completed(result_ref)
                                   └─▶ failed(error)

- Forward-only: a terminal notification never goes back to
  in_progress, and a second terminal update is ignored
- Progress is clamped to 0..1 and never decreases
- Badge counters for new completed / failed generations
- Every accepted change is pushed to a NotificationSink
  (LoggingSink by default; the app can plug a push/WebSocket sink)

Not persisted. After a restart the coordinator re-shows
notifications for the jobs it rehydrates.

Usage:
    hub = NotificationHub()
    hub.show(job.id, "Flux Schnell", owner=job.owner)
    hub.update_progress(job.id, 0.4, "Rendering details...")
    hub.mark_completed(job.id, result_url)
─────────────────────────────────────────────────────────────────
"""

import logging
import time
from typing import Optional, Dict, List

from creatorstudio.core.config import cfg
from creatorstudio.models.job import NO_CHARGE_NOTE
from creatorstudio.models.notification import Notification, NotificationState

logger = logging.getLogger("creatorstudio.notifications")


# ─────────────────────────────────────────────
# Sinks
# ─────────────────────────────────────────────
class NotificationSink:
    """Receives every accepted notification change. Override what you need."""

    def show(self, notification: Notification):
        pass

    def update_progress(self, notification: Notification):
        pass

    def mark_completed(self, notification: Notification):
        pass

    def mark_failed(self, notification: Notification):
        pass

    def dismiss(self, notification: Notification):
        pass


class LoggingSink(NotificationSink):

    def show(self, notification: Notification):
        logger.info(f"🔔 [{notification.id}] {notification.title}: {notification.message}")

    def update_progress(self, notification: Notification):
        logger.debug(f"[{notification.id}] {notification.progress:.0%} {notification.message}")

    def mark_completed(self, notification: Notification):
        logger.info(f"✅ [{notification.id}] {notification.message}")

    def mark_failed(self, notification: Notification):
        logger.info(f"❌ [{notification.id}] {notification.message}")


# ─────────────────────────────────────────────
# NotificationHub
# ─────────────────────────────────────────────
class NotificationHub:

    def __init__(self, sink: Optional[NotificationSink] = None, grace_seconds: float = None):
        self.sink            = sink or LoggingSink()
        self.grace_seconds   = cfg.NOTIFICATION_GRACE_SECONDS if grace_seconds is None else grace_seconds
        self.completed_count = 0
        self.failed_count    = 0
        self._items: Dict[str, Notification] = {}

    # ─── Read ─────────────────────────────────

    def get(self, job_id: str) -> Optional[Notification]:
        return self._items.get(job_id)

    def for_owner(self, owner: str) -> List[Notification]:
        return [n for n in self._items.values() if n.owner == owner]

    def __len__(self):
        return len(self._items)

    # ─── Write ────────────────────────────────

    def show(
        self,
        job_id:  str,
        title:   str,
        message: str = "Starting generation...",
        owner:   Optional[str] = None,
    ) -> Notification:
        """Create the notification for a job. Existing ones are returned unchanged."""
        existing = self._items.get(job_id)
        if existing is not None:
            return existing

        notification = Notification(
            id          = job_id,
            owner       = owner,
            title       = title,
            message     = message,
            progress    = 0.0,
            state       = NotificationState.IN_PROGRESS,
            result_ref  = None,
            error       = None,
            created_at  = time.monotonic(),
            finished_at = None,
        )
        self._items[job_id] = notification
        self.sink.show(notification)
        return notification

    def update_progress(self, job_id: str, progress: float, message: Optional[str] = None) -> bool:
        """Returns False if the notification is missing or already terminal."""
        notification = self._items.get(job_id)
        if notification is None or notification.is_terminal:
            return False

        progress = min(max(progress, 0.0), 1.0)
        if progress < notification.progress and message is None:
            return False

        notification.progress = max(notification.progress, progress)
        if message:
            notification.message = message
        self.sink.update_progress(notification)
        return True

    def _terminal(self, job_id: str, title: Optional[str], owner: Optional[str]) -> Optional[Notification]:
        notification = self._items.get(job_id)
        if notification is None:
            # Job finished after a restart: nothing was shown in this process
            notification = self.show(job_id, title or "Generation", message="", owner=owner)
        if notification.is_terminal:
            return None
        notification.finished_at = time.monotonic()
        return notification

    def mark_completed(
        self,
        job_id:     str,
        result_ref: Optional[str],
        message:    str = "Your generation is ready!",
        title:      Optional[str] = None,
        owner:      Optional[str] = None,
    ) -> bool:
        notification = self._terminal(job_id, title, owner)
        if notification is None:
            return False

        notification.state      = NotificationState.COMPLETED
        notification.progress   = 1.0
        notification.result_ref = result_ref
        notification.message    = message
        self.completed_count += 1
        self.sink.mark_completed(notification)
        return True

    def mark_failed(
        self,
        job_id: str,
        error:  str,
        title:  Optional[str] = None,
        owner:  Optional[str] = None,
    ) -> bool:
        notification = self._terminal(job_id, title, owner)
        if notification is None:
            return False

        notification.state   = NotificationState.FAILED
        notification.error   = error
        notification.message = f"{error} {NO_CHARGE_NOTE}"
        self.failed_count += 1
        self.sink.mark_failed(notification)
        return True

    def dismiss(self, job_id: str) -> bool:
        notification = self._items.pop(job_id, None)
        if notification is None:
            return False
        self.sink.dismiss(notification)
        return True

    def retire_expired(self, now: Optional[float] = None) -> int:
        """Drop terminal notifications older than the grace period."""
        now = time.monotonic() if now is None else now
        expired = [
            n.id for n in self._items.values()
            if n.is_terminal and n.finished_at is not None
            and now - n.finished_at >= self.grace_seconds
        ]
        for job_id in expired:
            self.dismiss(job_id)
        return len(expired)

    def clear_badges(self):
        self.completed_count = 0
        self.failed_count    = 0

    def badges(self) -> dict:
        return {"completed": self.completed_count, "failed": self.failed_count}
