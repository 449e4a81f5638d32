"""
Creator Studio — jobs.py
─────────────────────────────────────────────────────────────────
Job Store — the durable source of truth for every generation job.

- Row created in `pending` before anything is sent to a provider
- Every state write is a compare-and-set on `state`
  (terminal states are absorbing, so a second writer loses)
- `version` bumps on every write (used to de-dupe feed deliveries)
- `settled_at` is claimed exactly once (charge + notification)
- Every committed write is published on the ChangeFeed

Writers:
    coordinator  → create, mark_processing, complete, settle
    webhooks.py  → apply_callback              (external path)
    reaper.py    → via coordinator.finalize(), purge_settled

Usage:
    store = JobStore(db_path, feed=feed)
    job   = await store.create_job(owner, JobKind.IMAGE, "runware", model, payload, 0.04)
    won   = await store.complete(job.id, Outcome.success(url))
─────────────────────────────────────────────────────────────────
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Any

import aiosqlite

from creatorstudio.core.database import get_db
from creatorstudio.feed import ChangeFeed, ChangeEvent, ChangeOperation
from creatorstudio.models.job import (
    Job, JobKind, JobState, Outcome, ACTIVE_STATES, TERMINAL_STATES,
)

logger = logging.getLogger("creatorstudio.jobs")

_ACTIVE_SQL   = ", ".join(f"'{s.value}'" for s in ACTIVE_STATES)
_TERMINAL_SQL = ", ".join(f"'{s.value}'" for s in TERMINAL_STATES)


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class JobError(Exception):
    """Base job exception."""

class JobNotFoundError(JobError):
    """Job ID does not exist."""

class DuplicateJobError(JobError):
    """A job with this ID already exists."""

class InvalidTransitionError(JobError):
    """Requested state is not reachable from the current one."""


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def new_job_id() -> str:
    # UUIDs double as Runware taskUUIDs
    return str(uuid.uuid4())

def _row_to_job(row) -> Job:
    return Job(
        id                  = row["id"],
        owner               = row["owner"],
        kind                = JobKind(row["kind"]),
        provider            = row["provider"],
        model               = row["model"],
        state               = JobState(row["state"]),
        payload             = json.loads(row["payload_json"]) if row["payload_json"] else {},
        task_ref            = row["task_ref"],
        provider_result_url = row["provider_result_url"],
        result_ref          = row["result_ref"],
        error               = row["error"],
        cost                = float(row["cost"]),
        version             = int(row["version"]),
        created_at          = row["created_at"],
        updated_at          = row["updated_at"],
        completed_at        = row["completed_at"],
        settled_at          = row["settled_at"],
    )


# ─────────────────────────────────────────────
# JobStore
# ─────────────────────────────────────────────
class JobStore:
    """
    All reads and writes of the jobs table.
    Every method opens its own connection.
    """

    def __init__(self, db_path: Optional[str] = None, feed: Optional[ChangeFeed] = None):
        self.db_path = db_path
        self.feed    = feed

    async def _fetch(self, db, job_id: str) -> Optional[Job]:
        async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
        return _row_to_job(row) if row else None

    def _publish(self, operation: ChangeOperation, job: Optional[Job]):
        if self.feed is not None and job is not None:
            self.feed.publish(ChangeEvent(operation=operation, job=job))

    # ─── Create ────────────────────────────────

    async def create_job(
        self,
        owner:    str,
        kind:     JobKind,
        provider: str,
        model:    str,
        payload:  dict,
        cost:     float,
        job_id:   Optional[str] = None,
    ) -> Job:
        """
        Insert a new job in `pending`.
        Raises DuplicateJobError if job_id is already taken.
        """
        job_id = job_id or new_job_id()
        now    = _now()

        async with get_db(self.db_path) as db:
            try:
                await db.execute(
                    """INSERT INTO jobs
                       (id, owner, kind, provider, model, state, payload_json,
                        cost, version, created_at, updated_at)
                       VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
                    (
                        job_id, owner, kind.value, provider, model,
                        JobState.PENDING.value, json.dumps(payload),
                        round(cost, 4), 1, now, now,
                    )
                )
                await db.commit()
            except aiosqlite.IntegrityError:
                raise DuplicateJobError(f"Job '{job_id}' already exists.")

            job = await self._fetch(db, job_id)

        logger.info(f"Job created: {job_id} | owner={owner} | {kind.value} via {provider} | cost={cost}")
        self._publish(ChangeOperation.INSERT, job)
        return job

    # ─── Transitions (compare-and-set) ─────────

    async def mark_processing(self, job_id: str, task_ref: Optional[str] = None) -> bool:
        """
        pending → processing (or record task_ref while processing).
        Returns False if the row is already terminal or missing.
        """
        async with get_db(self.db_path) as db:
            cur = await db.execute(
                f"""UPDATE jobs
                    SET state = ?, task_ref = COALESCE(?, task_ref),
                        version = version + 1, updated_at = ?
                    WHERE id = ? AND state IN ({_ACTIVE_SQL})""",
                (JobState.PROCESSING.value, task_ref, _now(), job_id)
            )
            changed = cur.rowcount == 1
            await db.commit()
            job = await self._fetch(db, job_id) if changed else None

        if changed:
            logger.debug(f"Job {job_id} processing (task_ref={task_ref})")
            self._publish(ChangeOperation.UPDATE, job)
        return changed

    async def complete(self, job_id: str, outcome: Outcome) -> bool:
        """
        Write a terminal state. Only the first writer wins:
        returns True if this call moved the row out of pending/processing.
        """
        if outcome.state not in TERMINAL_STATES:
            raise InvalidTransitionError(f"{outcome.state.value} is not a terminal state.")

        now = _now()
        async with get_db(self.db_path) as db:
            cur = await db.execute(
                f"""UPDATE jobs
                    SET state = ?, provider_result_url = COALESCE(?, provider_result_url),
                        result_ref = ?, error = ?, completed_at = ?,
                        version = version + 1, updated_at = ?
                    WHERE id = ? AND state IN ({_ACTIVE_SQL})""",
                (
                    outcome.state.value, outcome.result_url, outcome.result_ref,
                    outcome.error, now, now, job_id,
                )
            )
            won = cur.rowcount == 1
            await db.commit()
            job = await self._fetch(db, job_id) if won else None

        if won:
            logger.info(f"Job {job_id} → {outcome.state.value}")
            self._publish(ChangeOperation.UPDATE, job)
        return won

    async def set_result_ref(self, job_id: str, result_ref: str) -> bool:
        """Attach the persisted artifact URL to a completed job (once)."""
        async with get_db(self.db_path) as db:
            cur = await db.execute(
                """UPDATE jobs
                   SET result_ref = ?, version = version + 1, updated_at = ?
                   WHERE id = ? AND state = ? AND result_ref IS NULL""",
                (result_ref, _now(), job_id, JobState.COMPLETED.value)
            )
            changed = cur.rowcount == 1
            await db.commit()
            job = await self._fetch(db, job_id) if changed else None

        if changed:
            self._publish(ChangeOperation.UPDATE, job)
        return changed

    async def claim_settlement(self, job_id: str) -> bool:
        """
        Mark a terminal job as settled. Exactly one caller gets True;
        that caller owns the notification update for this job.
        """
        async with get_db(self.db_path) as db:
            cur = await db.execute(
                f"""UPDATE jobs
                    SET settled_at = ?, version = version + 1, updated_at = ?
                    WHERE id = ? AND settled_at IS NULL AND state IN ({_TERMINAL_SQL})""",
                (_now(), _now(), job_id)
            )
            claimed = cur.rowcount == 1
            await db.commit()
            job = await self._fetch(db, job_id) if claimed else None

        if claimed:
            self._publish(ChangeOperation.UPDATE, job)
        return claimed

    async def apply_callback(
        self,
        job_id:   str,
        outcome:  Optional[Outcome] = None,
        task_ref: Optional[str] = None,
    ) -> bool:
        """
        Write from the webhook receiver. A terminal outcome goes through
        complete(); anything else can only move pending → processing.
        """
        if outcome is not None and outcome.state in TERMINAL_STATES:
            return await self.complete(job_id, outcome)
        return await self.mark_processing(job_id, task_ref)

    # ─── Read ──────────────────────────────────

    async def find_job(self, job_id: str) -> Optional[Job]:
        async with get_db(self.db_path) as db:
            return await self._fetch(db, job_id)

    async def get_job(self, job_id: str) -> Job:
        """Fetch single job by ID."""
        job = await self.find_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job '{job_id}' not found.")
        return job

    async def find_by_task_ref(self, provider: str, task_ref: str) -> Optional[Job]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM jobs WHERE provider = ? AND task_ref = ? LIMIT 1",
                (provider, task_ref)
            ) as cur:
                row = await cur.fetchone()
        return _row_to_job(row) if row else None

    async def list_for_owner(
        self,
        owner:  str,
        limit:  int = 20,
        offset: int = 0,
        state:  Optional[JobState] = None,
    ) -> List[Job]:
        """Paginated job history for an owner, optionally filtered by state."""
        query  = "SELECT * FROM jobs WHERE owner = ?"
        params: List[Any] = [owner]

        if state:
            query += " AND state = ?"
            params.append(state.value)

        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with get_db(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [_row_to_job(r) for r in rows]

    async def list_unsettled(self, owner: Optional[str] = None) -> List[Job]:
        """
        Jobs whose lifecycle isn't finished: still running, or terminal
        but not yet charged/notified. Used by rehydration and resync.
        """
        query  = "SELECT * FROM jobs WHERE settled_at IS NULL"
        params: List[Any] = []
        if owner is not None:
            query += " AND owner = ?"
            params.append(owner)
        query += " ORDER BY created_at ASC"

        async with get_db(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [_row_to_job(r) for r in rows]

    async def list_stale(self, kind: JobKind, created_before: str) -> List[Job]:
        """Non-terminal jobs of `kind` created before the given ISO timestamp."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                f"""SELECT * FROM jobs
                    WHERE state IN ({_ACTIVE_SQL}) AND kind = ? AND created_at < ?
                    ORDER BY created_at ASC""",
                (kind.value, created_before)
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_job(r) for r in rows]

    # ─── Cleanup ───────────────────────────────

    async def purge_settled(self, settled_before: str) -> int:
        """Delete settled jobs older than the cutoff. Returns rows deleted."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM jobs WHERE settled_at IS NOT NULL AND settled_at < ?",
                (settled_before,)
            ) as cur:
                rows = await cur.fetchall()
            if not rows:
                return 0

            doomed = [_row_to_job(r) for r in rows]
            await db.executemany(
                "DELETE FROM jobs WHERE id = ? AND settled_at IS NOT NULL",
                [(j.id,) for j in doomed]
            )
            await db.commit()

        for job in doomed:
            self._publish(ChangeOperation.DELETE, job)
        logger.info(f"Purged {len(doomed)} settled job(s) older than {settled_before}")
        return len(doomed)
