"""
Creator Studio — models/notification.py
─────────────────────────────────────────────────────────────────
In-memory notification shown for each generation job.
Not persisted: the Job row is the durable record.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from typing import Optional
from enum import Enum


class NotificationState(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"
    FAILED      = "failed"


@dataclass
class Notification:
    id:          str                 # same as the job id
    owner:       Optional[str]
    title:       str
    message:     str
    progress:    float               # 0..1
    state:       NotificationState
    result_ref:  Optional[str]
    error:       Optional[str]
    created_at:  float               # loop clock
    finished_at: Optional[float]

    @property
    def is_terminal(self) -> bool:
        return self.state != NotificationState.IN_PROGRESS

    def to_dict(self) -> dict:
        return {
            "id":         self.id,
            "title":      self.title,
            "message":    self.message,
            "progress":   round(self.progress, 3),
            "state":      self.state.value,
            "result_url": self.result_ref,
            "error":      self.error,
        }
