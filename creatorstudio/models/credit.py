"""
Creator Studio — models/credit.py
─────────────────────────────────────────────────────────────────
Credit accounts + transaction ledger tables and dataclasses.
No logic here — only structure.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from typing import Optional
from enum import Enum


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────
class TransactionType(str, Enum):
    PURCHASE  = "purchase"
    DEDUCTION = "deduction"
    REFUND    = "refund"


# ─────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────
CREDIT_TABLES = """
    CREATE TABLE IF NOT EXISTS credit_accounts (
        owner       TEXT PRIMARY KEY,
        balance     REAL NOT NULL DEFAULT 0,
        updated_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS credit_transactions (
        id              TEXT PRIMARY KEY,
        owner           TEXT NOT NULL,
        delta           REAL NOT NULL,
        type            TEXT NOT NULL CHECK (type IN ('purchase', 'deduction', 'refund')),
        related_job_id  TEXT,
        source          TEXT,
        balance_after   REAL NOT NULL,
        created_at      TEXT NOT NULL
    );

    -- One deduction per job: this index is what makes charging idempotent
    CREATE UNIQUE INDEX IF NOT EXISTS idx_credit_tx_job_deduction
        ON credit_transactions(related_job_id)
        WHERE type = 'deduction' AND related_job_id IS NOT NULL;

    CREATE INDEX IF NOT EXISTS idx_credit_tx_owner
        ON credit_transactions(owner, created_at DESC);
"""


# ─────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────
@dataclass
class CreditAccount:
    owner:      str
    balance:    float
    updated_at: str


@dataclass
class CreditTransaction:
    id:             str
    owner:          str
    delta:          float
    type:           TransactionType
    related_job_id: Optional[str]
    source:         Optional[str]
    balance_after:  float
    created_at:     str
