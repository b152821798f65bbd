import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from config import DB_PATH


SQLITE_BUSY_TIMEOUT_MS = 5000
WRITE_RETRY_ATTEMPTS = 3
WRITE_RETRY_BASE_DELAY_SEC = 0.05
logger = logging.getLogger(__name__)


async def apply_sqlite_pragmas(db: aiosqlite.Connection) -> None:
    """Apply SQLite settings for concurrent access from the bot and the sweeper."""
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")


@asynccontextmanager
async def open_db() -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await apply_sqlite_pragmas(db)
        yield db


async def init_db():
    """Create tables and indexes."""
    async with open_db() as db:
        await db.execute(
            "CREATE TABLE IF NOT EXISTS kv (k TEXT PRIMARY KEY, v TEXT)"
        )
        await db.execute(
            """CREATE TABLE IF NOT EXISTS users (
                telegram_id INTEGER PRIMARY KEY,
                username TEXT DEFAULT NULL,
                first_name TEXT DEFAULT NULL,
                chat_id INTEGER DEFAULT NULL,
                role TEXT NOT NULL DEFAULT 'client',
                credits INTEGER NOT NULL DEFAULT 0,
                plan_id TEXT NOT NULL DEFAULT 'free',
                plan_type TEXT DEFAULT NULL,
                plan_expires_at TEXT DEFAULT NULL,
                plan_credits_per_day INTEGER DEFAULT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT DEFAULT NULL,
                last_active TEXT DEFAULT NULL
            )"""
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_users_username ON users (username COLLATE NOCASE)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_users_role ON users (role)"
        )
        # Purchase orders: one row per client purchase, timestamps kept as a JSON map.
        await db.execute(
            """CREATE TABLE IF NOT EXISTS purchase_orders (
                id TEXT PRIMARY KEY,
                client_id INTEGER NOT NULL,
                client_username TEXT DEFAULT NULL,
                admin_id INTEGER DEFAULT NULL,
                admin_username TEXT DEFAULT NULL,
                plan_json TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                timestamps_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                payment_proof_json TEXT DEFAULT NULL,
                awaiting_payment_proof INTEGER NOT NULL DEFAULT 0,
                rejection_reason TEXT DEFAULT NULL,
                rejected_by INTEGER DEFAULT NULL,
                approved_by INTEGER DEFAULT NULL,
                client_confirmed INTEGER DEFAULT NULL,
                fraud_detected INTEGER NOT NULL DEFAULT 0,
                fraud_reason TEXT DEFAULT NULL,
                auto_completed INTEGER NOT NULL DEFAULT 0,
                reminders_sent INTEGER NOT NULL DEFAULT 0,
                reminders_last_sent_at TEXT DEFAULT NULL,
                reminders_max INTEGER NOT NULL DEFAULT 6,
                commissions_json TEXT DEFAULT NULL
            )"""
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_purchase_orders_client ON purchase_orders (client_id, status)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_purchase_orders_status ON purchase_orders (status, created_at)"
        )
        # Earnings ledger: totals per recipient + monthly buckets.
        await db.execute(
            """CREATE TABLE IF NOT EXISTS earnings (
                recipient_id TEXT PRIMARY KEY,
                total_sales INTEGER NOT NULL DEFAULT 0,
                total_amount REAL NOT NULL DEFAULT 0,
                total_commissions REAL NOT NULL DEFAULT 0,
                paid_commissions REAL NOT NULL DEFAULT 0,
                pending_commissions REAL NOT NULL DEFAULT 0,
                last_updated TEXT DEFAULT NULL
            )"""
        )
        await db.execute(
            """CREATE TABLE IF NOT EXISTS earnings_monthly (
                recipient_id TEXT NOT NULL,
                month_key TEXT NOT NULL,
                sales INTEGER NOT NULL DEFAULT 0,
                amount REAL NOT NULL DEFAULT 0,
                commission REAL NOT NULL DEFAULT 0,
                PRIMARY KEY (recipient_id, month_key)
            )"""
        )
        await db.commit()
    logger.info("Database initialized at %s", DB_PATH)


def utc_now_iso() -> str:
    """Current UTC timestamp in ISO-8601."""
    return datetime.now(timezone.utc).isoformat()


async def execute_write_with_retry(
    db: aiosqlite.Connection,
    query: str,
    params: Sequence[Any] = (),
) -> aiosqlite.Cursor:
    """Execute write query with lightweight retry on lock contention."""
    for attempt in range(WRITE_RETRY_ATTEMPTS):
        try:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor
        except aiosqlite.OperationalError as error:
            if "database is locked" not in str(error).lower():
                raise
            if attempt >= WRITE_RETRY_ATTEMPTS - 1:
                raise
            backoff = WRITE_RETRY_BASE_DELAY_SEC * (2**attempt)
            logger.warning(
                "SQLite locked; retry %s/%s in %.2fs",
                attempt + 1,
                WRITE_RETRY_ATTEMPTS,
                backoff,
            )
            await asyncio.sleep(backoff)
    raise RuntimeError("Unexpected retry loop state")


async def db_set(k: str, v: str):
    """Store a value by key."""
    async with open_db() as db:
        await execute_write_with_retry(
            db,
            "INSERT INTO kv(k,v) VALUES(?,?) ON CONFLICT(k) DO UPDATE SET v=excluded.v",
            (k, v),
        )


async def db_get(k: str) -> str | None:
    """Load a value by key."""
    async with open_db() as db:
        async with db.execute("SELECT v FROM kv WHERE k=?", (k,)) as cur:
            row = await cur.fetchone()
            return row[0] if row else None
