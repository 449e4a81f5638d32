"""
Creator Studio — models/job.py
─────────────────────────────────────────────────────────────────
Jobs table definition + dataclasses.
No logic here — only structure.

State graph (terminal states are absorbing):

    pending ──▶ processing ──▶ completed | failed | timed_out
       └────────────────────▶ completed | failed | timed_out
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass, replace
from typing import Optional, Dict, Any
from enum import Enum


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────
class JobState(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"
    TIMED_OUT  = "timed_out"


class JobKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


ACTIVE_STATES   = (JobState.PENDING, JobState.PROCESSING)
TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT)

CANCELLED_MESSAGE = "Cancelled by user"
NO_CHARGE_NOTE    = "You won't be charged for failed generations."


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
JOBS_TABLE = """
    CREATE TABLE IF NOT EXISTS jobs (
        id                  TEXT PRIMARY KEY,
        owner               TEXT NOT NULL,
        kind                TEXT NOT NULL CHECK (kind IN ('image', 'video')),
        provider            TEXT NOT NULL,
        model               TEXT NOT NULL,
        state               TEXT NOT NULL DEFAULT 'pending'
                            CHECK (state IN ('pending', 'processing', 'completed', 'failed', 'timed_out')),
        payload_json        TEXT NOT NULL DEFAULT '{}',
        task_ref            TEXT,
        provider_result_url TEXT,
        result_ref          TEXT,
        error               TEXT,
        cost                REAL NOT NULL DEFAULT 0,
        version             INTEGER NOT NULL DEFAULT 1,
        created_at          TEXT NOT NULL,
        updated_at          TEXT NOT NULL,
        completed_at        TEXT,
        settled_at          TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_jobs_owner
        ON jobs(owner, created_at DESC);

    CREATE INDEX IF NOT EXISTS idx_jobs_active
        ON jobs(state, kind, created_at)
        WHERE state IN ('pending', 'processing');

    CREATE INDEX IF NOT EXISTS idx_jobs_unsettled
        ON jobs(owner)
        WHERE settled_at IS NULL;

    CREATE INDEX IF NOT EXISTS idx_jobs_task_ref
        ON jobs(provider, task_ref)
        WHERE task_ref IS NOT NULL;
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class Job:
    id:                  str
    owner:               str
    kind:                JobKind
    provider:            str
    model:               str
    state:               JobState
    payload:             Dict[str, Any]     # immutable snapshot of the request
    task_ref:            Optional[str]      # provider-issued reference
    provider_result_url: Optional[str]      # temporary URL from the provider
    result_ref:          Optional[str]      # permanent URL after persistence
    error:               Optional[str]
    cost:                float
    version:             int
    created_at:          str
    updated_at:          str
    completed_at:        Optional[str]
    settled_at:          Optional[str]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_settled(self) -> bool:
        return self.settled_at is not None

    @property
    def prompt(self) -> str:
        return self.payload.get("prompt", "")

    @property
    def title(self) -> str:
        return self.payload.get("title") or self.model

    @property
    def device_token(self) -> Optional[str]:
        return self.payload.get("device_token")


@dataclass(frozen=True)
class Outcome:
    """
    What a completion signal says about a job.

    result_url is whatever the provider handed back. result_ref is only
    set once the artifact has been copied into our own storage.
    """
    state:      JobState
    result_url: Optional[str] = None
    result_ref: Optional[str] = None
    error:      Optional[str] = None

    @classmethod
    def success(cls, result_url: str) -> "Outcome":
        return cls(state=JobState.COMPLETED, result_url=result_url)

    @classmethod
    def failure(cls, error: str) -> "Outcome":
        return cls(state=JobState.FAILED, error=error)

    @classmethod
    def cancelled(cls) -> "Outcome":
        return cls(state=JobState.FAILED, error=CANCELLED_MESSAGE)

    @classmethod
    def timeout(cls, kind: JobKind = JobKind.IMAGE) -> "Outcome":
        return cls(
            state = JobState.TIMED_OUT,
            error = f"{kind.value.capitalize()} generation timed out.",
        )

    @property
    def is_success(self) -> bool:
        return self.state == JobState.COMPLETED

    def with_ref(self, result_ref: str) -> "Outcome":
        return replace(self, result_ref=result_ref)


@dataclass
class FinalizeResult:
    job:     Job
    won:     bool = False             # this call wrote the terminal state
    settled: bool = False             # this call claimed the settlement
    balance: Optional[float] = None   # balance after the charge, if any
