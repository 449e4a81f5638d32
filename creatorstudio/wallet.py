"""
Creator Studio — wallet.py
─────────────────────────────────────────────────────────────────
Credit Ledger
- Ledger-first: balance == SUM(delta) of the owner's transactions
- Deduction is idempotent per job (unique index on related_job_id)
- Purchases / refunds always append a new row
- Account row updated in the same transaction (BEGIN IMMEDIATE)
- Rebuild balance from ledger anytime

Charging policy: a job is charged once, after it settles as
`completed`. Failed and timed-out jobs are never charged.

Usage:
    ledger = CreditLedger(db_path)
    await ledger.add(owner, 5.00, source="storekit:txn_123")
    await ledger.check_funds(owner, 0.04)          # pre-flight
    await ledger.deduct(owner, 0.04, related_job_id=job_id)
─────────────────────────────────────────────────────────────────
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Optional, List

import aiosqlite

from creatorstudio.core.database import get_db
from creatorstudio.models.credit import CreditAccount, CreditTransaction, TransactionType

logger = logging.getLogger("creatorstudio.wallet")

# Amounts are stored with 4 decimal places
PRECISION = 4


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class CreditError(Exception):
    """Base credit exception."""

class InsufficientFundsError(CreditError):
    """Owner doesn't have enough credits for this job."""

    def __init__(self, owner: str, required: float, balance: float):
        self.owner    = owner
        self.required = required
        self.balance  = balance
        super().__init__(
            f"Need {required:.2f} credits, balance is {balance:.2f}. Please top up."
        )

class InvalidAmountError(CreditError):
    """Amount is zero or negative."""


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _new_id() -> str:
    return "ctx_" + secrets.token_urlsafe(12)

def _row_to_tx(row) -> CreditTransaction:
    return CreditTransaction(
        id             = row["id"],
        owner          = row["owner"],
        delta          = float(row["delta"]),
        type           = TransactionType(row["type"]),
        related_job_id = row["related_job_id"],
        source         = row["source"],
        balance_after  = float(row["balance_after"]),
        created_at     = row["created_at"],
    )


# ─────────────────────────────────────────────
# CreditLedger
# ─────────────────────────────────────────────
class CreditLedger:
    """
    All credit operations.
    Every method opens its own connection.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    # ─── Read ─────────────────────────────────

    async def balance(self, owner: str) -> float:
        """Current balance. 0.0 if the account doesn't exist yet."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT balance FROM credit_accounts WHERE owner = ?", (owner,)
            ) as cur:
                row = await cur.fetchone()
        return float(row["balance"]) if row else 0.0

    async def account(self, owner: str) -> Optional[CreditAccount]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM credit_accounts WHERE owner = ?", (owner,)
            ) as cur:
                row = await cur.fetchone()
        if not row:
            return None
        return CreditAccount(
            owner      = row["owner"],
            balance    = float(row["balance"]),
            updated_at = row["updated_at"],
        )

    async def history(
        self,
        owner:  str,
        limit:  int = 50,
        offset: int = 0,
    ) -> List[CreditTransaction]:
        """Newest first."""
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT * FROM credit_transactions
                   WHERE owner = ?
                   ORDER BY created_at DESC, rowid DESC
                   LIMIT ? OFFSET ?""",
                (owner, limit, offset)
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_tx(r) for r in rows]

    async def deduction_for(self, job_id: str) -> Optional[CreditTransaction]:
        """The deduction row for a job, if it was charged."""
        async with get_db(self.db_path) as db:
            return await self._find_deduction(db, job_id)

    async def rebuild_balance(self, owner: str) -> float:
        """
        Recalculate balance from the transaction sum.
        Use for auditing or corruption recovery.
        """
        async with get_db(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    "SELECT COALESCE(SUM(delta), 0) AS total FROM credit_transactions WHERE owner = ?",
                    (owner,)
                ) as cur:
                    row = await cur.fetchone()
                total = round(float(row["total"]), PRECISION)
                await self._ensure_account(db, owner)
                await db.execute(
                    "UPDATE credit_accounts SET balance = ?, updated_at = ? WHERE owner = ?",
                    (total, _now(), owner)
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return total

    async def check_funds(self, owner: str, amount: float) -> float:
        """
        Pre-flight check before a job is created.
        Advisory only: nothing is reserved.
        Raises InsufficientFundsError. Returns the current balance.
        """
        current = await self.balance(owner)
        if round(amount, PRECISION) > current:
            raise InsufficientFundsError(owner, round(amount, PRECISION), current)
        return current

    # ─── Write ────────────────────────────────

    async def _ensure_account(self, db, owner: str) -> float:
        """Create account row if missing. Returns current balance."""
        async with db.execute(
            "SELECT balance FROM credit_accounts WHERE owner = ?", (owner,)
        ) as cur:
            row = await cur.fetchone()
        if row is None:
            await db.execute(
                "INSERT INTO credit_accounts (owner, balance, updated_at) VALUES (?,?,?)",
                (owner, 0.0, _now())
            )
            return 0.0
        return float(row[0])

    async def _find_deduction(self, db, job_id: str) -> Optional[CreditTransaction]:
        async with db.execute(
            "SELECT * FROM credit_transactions WHERE related_job_id = ? AND type = ?",
            (job_id, TransactionType.DEDUCTION.value)
        ) as cur:
            row = await cur.fetchone()
        return _row_to_tx(row) if row else None

    async def _apply(
        self,
        db,
        owner:          str,
        delta:          float,
        tx_type:        TransactionType,
        related_job_id: Optional[str],
        source:         Optional[str],
    ) -> float:
        current     = await self._ensure_account(db, owner)
        new_balance = round(current + delta, PRECISION)

        await db.execute(
            "UPDATE credit_accounts SET balance = ?, updated_at = ? WHERE owner = ?",
            (new_balance, _now(), owner)
        )
        await db.execute(
            """INSERT INTO credit_transactions
               (id, owner, delta, type, related_job_id, source, balance_after, created_at)
               VALUES (?,?,?,?,?,?,?,?)""",
            (_new_id(), owner, delta, tx_type.value, related_job_id, source, new_balance, _now())
        )
        return new_balance

    async def add(
        self,
        owner:          str,
        amount:         float,
        source:         str,
        tx_type:        TransactionType = TransactionType.PURCHASE,
        related_job_id: Optional[str] = None,
    ) -> float:
        """
        Purchase / refund. Always a new transaction, never de-duplicated.
        Returns the new balance.
        """
        if amount <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {amount}")
        if tx_type == TransactionType.DEDUCTION:
            raise InvalidAmountError("Use deduct() for deductions")

        amount = round(amount, PRECISION)
        async with get_db(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                new_balance = await self._apply(db, owner, amount, tx_type, related_job_id, source)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(f"+{amount} credits → {owner} ({tx_type.value}: {source}) | balance={new_balance}")
        return new_balance

    async def deduct(self, owner: str, amount: float, related_job_id: str) -> float:
        """
        Charge a job. Idempotent on related_job_id: a repeat call returns
        the balance recorded by the original deduction and writes nothing.

        Not re-validated against the balance (the charge was promised when
        the job was accepted), so the balance may go negative.
        """
        if amount <= 0:
            raise InvalidAmountError(f"Deduction must be positive, got {amount}")
        if not related_job_id:
            raise InvalidAmountError("Deductions must reference a job")

        amount = round(amount, PRECISION)
        async with get_db(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                existing = await self._find_deduction(db, related_job_id)
                if existing is not None:
                    await db.rollback()
                    logger.info(f"Job {related_job_id} already charged — skipping")
                    return existing.balance_after

                new_balance = await self._apply(
                    db, owner, -amount, TransactionType.DEDUCTION, related_job_id, "generation"
                )
                await db.commit()

            except aiosqlite.IntegrityError:
                # Another connection won the unique index
                await db.rollback()
                existing = await self._find_deduction(db, related_job_id)
                if existing is None:
                    raise
                return existing.balance_after

            except Exception:
                await db.rollback()
                raise

        logger.info(f"-{amount} credits ← {owner} for job {related_job_id} | balance={new_balance}")
        return new_balance
