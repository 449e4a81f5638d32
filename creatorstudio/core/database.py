"""
Creator Studio — core/database.py
─────────────────────────────────────────────────────────────────
Schema bootstrap and the aiosqlite connection helper. Every table
the service owns is created by init_all_tables() at startup.

Usage:
    from creatorstudio.core.database import get_db, init_all_tables

    # In main.py startup:
    await init_all_tables()

    # In any service:
    async with get_db(self.db_path) as db:
        await db.execute(...)
─────────────────────────────────────────────────────────────────
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import aiosqlite

from creatorstudio.core.config import cfg
from creatorstudio.models.job import JOBS_TABLE
from creatorstudio.models.credit import CREDIT_TABLES

logger = logging.getLogger("creatorstudio.database")

# Webhook receiver, job tasks and reaper all write to one file.
# A locked database is waited on for up to this many seconds.
BUSY_TIMEOUT_SECONDS = 10.0


# ─────────────────────────────────────────────
# Connection helper
# ─────────────────────────────────────────────
@asynccontextmanager
async def get_db(db_path: Optional[str] = None):
    """
    Use instead of aiosqlite.connect() everywhere.

    async with get_db() as db:
        await db.execute(...)
    """
    async with aiosqlite.connect(db_path or cfg.DB_PATH, timeout=BUSY_TIMEOUT_SECONDS) as db:
        db.row_factory = aiosqlite.Row
        yield db


# ─────────────────────────────────────────────
# Init all tables (call once on startup)
# ─────────────────────────────────────────────
async def init_all_tables(db_path: Optional[str] = None):
    """
    Creates every table if it doesn't exist.
    Safe to call multiple times.
    """
    path = db_path or cfg.DB_PATH
    async with aiosqlite.connect(path, timeout=BUSY_TIMEOUT_SECONDS) as db:
        await db.execute("PRAGMA journal_mode=WAL")

        await db.executescript(JOBS_TABLE)
        logger.info("✓ Job tables ready")

        await db.executescript(CREDIT_TABLES)
        logger.info("✓ Credit tables ready")

        await db.commit()

    logger.info(f"✅ All tables initialized ({path})")
