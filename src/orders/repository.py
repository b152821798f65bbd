"""Persistence helpers for purchase orders, users and earnings."""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

from database import execute_write_with_retry, open_db, utc_now_iso
from orders.models import STAFF_ROLES, STATUS_ACCEPTED, STATUS_APPROVED, STATUS_PENDING


# Columns a status transition may touch besides status/timestamps.
TRANSITION_COLUMNS = frozenset(
    {
        "admin_id",
        "admin_username",
        "payment_proof_json",
        "awaiting_payment_proof",
        "rejection_reason",
        "rejected_by",
        "approved_by",
        "client_confirmed",
        "fraud_detected",
        "fraud_reason",
        "auto_completed",
    }
)


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


class OrderRepository:
    """Order, user and earnings persistence."""

    # --- users ---------------------------------------------------------

    async def upsert_user(
        self,
        telegram_id: int,
        *,
        username: str | None,
        first_name: str | None,
        chat_id: int | None,
        role: str,
    ) -> dict[str, Any]:
        now_iso = utc_now_iso()
        async with open_db() as db:
            await execute_write_with_retry(
                db,
                """
                INSERT INTO users(telegram_id, username, first_name, chat_id, role, created_at, updated_at, last_active)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(telegram_id) DO UPDATE SET
                    username=excluded.username,
                    first_name=excluded.first_name,
                    chat_id=COALESCE(excluded.chat_id, users.chat_id),
                    role=excluded.role,
                    updated_at=excluded.updated_at,
                    last_active=excluded.last_active
                """,
                (int(telegram_id), username, first_name, chat_id, role, now_iso, now_iso, now_iso),
            )
        user = await self.get_user(telegram_id)
        if user is None:
            raise RuntimeError("Failed to read user after upsert")
        return user

    async def get_user(self, telegram_id: int) -> dict[str, Any] | None:
        async with open_db() as db:
            async with db.execute("SELECT * FROM users WHERE telegram_id = ?", (int(telegram_id),)) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None

    async def find_user_by_username(self, username: str) -> dict[str, Any] | None:
        cleaned = str(username or "").strip().lstrip("@")
        if not cleaned:
            return None
        async with open_db() as db:
            async with db.execute(
                "SELECT * FROM users WHERE username = ? COLLATE NOCASE LIMIT 1",
                (cleaned,),
            ) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None

    async def list_users(self, *, limit: int = 20) -> list[dict[str, Any]]:
        async with open_db() as db:
            async with db.execute(
                "SELECT * FROM users ORDER BY created_at DESC, telegram_id DESC LIMIT ?",
                (max(1, int(limit)),),
            ) as cur:
                rows = await cur.fetchall()
                return [dict(row) for row in rows]

    async def list_staff_ids(self) -> list[int]:
        placeholders = ",".join("?" for _ in STAFF_ROLES)
        async with open_db() as db:
            async with db.execute(
                f"SELECT telegram_id FROM users WHERE role IN ({placeholders}) ORDER BY telegram_id",
                tuple(sorted(STAFF_ROLES)),
            ) as cur:
                rows = await cur.fetchall()
                return [int(row[0]) for row in rows]

    async def touch_last_active(self, telegram_id: int) -> None:
        async with open_db() as db:
            await execute_write_with_retry(
                db,
                "UPDATE users SET last_active = ? WHERE telegram_id = ?",
                (utc_now_iso(), int(telegram_id)),
            )

    async def add_credits(self, telegram_id: int, delta: int) -> int:
        """Adjust the credit balance (never below zero); returns rows changed."""
        async with open_db() as db:
            cursor = await execute_write_with_retry(
                db,
                """
                UPDATE users
                   SET credits = MAX(0, credits + ?),
                       updated_at = ?
                 WHERE telegram_id = ?
                """,
                (int(delta), utc_now_iso(), int(telegram_id)),
            )
            return int(cursor.rowcount or 0)

    async def set_days_plan(
        self,
        telegram_id: int,
        *,
        plan_id: str,
        plan_type: str,
        expires_at: str,
        credits_per_day: int | None,
    ) -> int:
        async with open_db() as db:
            cursor = await execute_write_with_retry(
                db,
                """
                UPDATE users
                   SET plan_id = ?,
                       plan_type = ?,
                       plan_expires_at = ?,
                       plan_credits_per_day = ?,
                       updated_at = ?
                 WHERE telegram_id = ?
                """,
                (plan_id, plan_type, expires_at, credits_per_day, utc_now_iso(), int(telegram_id)),
            )
            return int(cursor.rowcount or 0)

    async def reset_plan(self, telegram_id: int, *, free_plan_id: str, expires_at: str) -> int:
        async with open_db() as db:
            cursor = await execute_write_with_retry(
                db,
                """
                UPDATE users
                   SET plan_id = ?,
                       plan_type = NULL,
                       plan_expires_at = ?,
                       plan_credits_per_day = NULL,
                       updated_at = ?
                 WHERE telegram_id = ?
                """,
                (free_plan_id, expires_at, utc_now_iso(), int(telegram_id)),
            )
            return int(cursor.rowcount or 0)

    # --- orders --------------------------------------------------------

    async def insert_order(self, order: Mapping[str, Any]) -> None:
        async with open_db() as db:
            await execute_write_with_retry(
                db,
                """
                INSERT INTO purchase_orders(
                    id, client_id, client_username, plan_json, status,
                    timestamps_json, created_at, expires_at, reminders_max
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(order["id"]),
                    int(order["client_id"]),
                    order.get("client_username"),
                    _to_json(order["plan"]),
                    str(order.get("status") or STATUS_PENDING),
                    _to_json(order.get("timestamps") or {}),
                    str(order["created_at"]),
                    str(order["expires_at"]),
                    int(order.get("reminders_max") or 6),
                ),
            )

    async def get_order(self, order_id: str) -> dict[str, Any] | None:
        async with open_db() as db:
            async with db.execute("SELECT * FROM purchase_orders WHERE id = ?", (str(order_id),)) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None

    async def list_client_orders(self, client_id: int, *, limit: int = 10) -> list[dict[str, Any]]:
        safe_limit = max(1, min(int(limit), 50))
        async with open_db() as db:
            async with db.execute(
                """
                SELECT *
                  FROM purchase_orders
                 WHERE client_id = ?
                 ORDER BY created_at DESC, rowid DESC
                 LIMIT ?
                """,
                (int(client_id), safe_limit),
            ) as cur:
                rows = await cur.fetchall()
                return [dict(row) for row in rows]

    async def list_orders(self, *, status: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        safe_limit = max(1, min(int(limit), 100))
        query = "SELECT * FROM purchase_orders"
        params: list[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(str(status))
        query += " ORDER BY created_at DESC, telegram_id DESC LIMIT ?"
        params.append(safe_limit)
        async with open_db() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                return [dict(row) for row in rows]

    async def find_latest_accepted_order(self, client_id: int) -> dict[str, Any] | None:
        async with open_db() as db:
            async with db.execute(
                """
                SELECT *
                  FROM purchase_orders
                 WHERE client_id = ?
                   AND status = ?
                 ORDER BY json_extract(timestamps_json, '$.accepted') DESC, rowid DESC
                 LIMIT 1
                """,
                (int(client_id), STATUS_ACCEPTED),
            ) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None

    async def find_order_awaiting_proof(self, client_id: int) -> dict[str, Any] | None:
        async with open_db() as db:
            async with db.execute(
                """
                SELECT *
                  FROM purchase_orders
                 WHERE client_id = ?
                   AND status = ?
                   AND awaiting_payment_proof = 1
                 ORDER BY rowid DESC
                 LIMIT 1
                """,
                (int(client_id), STATUS_ACCEPTED),
            ) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None

    async def mark_awaiting_payment_proof(self, order_id: str, *, client_id: int, now_iso: str) -> bool:
        """Flag one accepted order for proof, clearing the flag on the client's others."""
        async with open_db() as db:
            await execute_write_with_retry(
                db,
                """
                UPDATE purchase_orders
                   SET awaiting_payment_proof = 0
                 WHERE client_id = ?
                   AND id <> ?
                   AND awaiting_payment_proof = 1
                """,
                (int(client_id), str(order_id)),
            )
            cursor = await execute_write_with_retry(
                db,
                """
                UPDATE purchase_orders
                   SET awaiting_payment_proof = 1,
                       timestamps_json = json_set(timestamps_json, '$.payment_requested', ?)
                 WHERE id = ?
                   AND status = ?
                """,
                (str(now_iso), str(order_id), STATUS_ACCEPTED),
            )
            return int(cursor.rowcount or 0) == 1

    async def transition(
        self,
        order_id: str,
        *,
        from_status: str,
        to_status: str,
        timestamp_key: str | None,
        now_iso: str,
        extra_where: Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> bool:
        """Compare-and-swap the order status; False when the row moved on."""
        unknown = set(fields) - TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"unsupported order columns: {sorted(unknown)}")
        assignments = ["status = ?"]
        params: list[Any] = [str(to_status)]
        if timestamp_key:
            assignments.append("timestamps_json = json_set(timestamps_json, ?, ?)")
            params.extend([f"$.{timestamp_key}", str(now_iso)])
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        where = ["id = ?", "status = ?"]
        params.extend([str(order_id), str(from_status)])
        for column, value in (extra_where or {}).items():
            if column not in TRANSITION_COLUMNS:
                raise ValueError(f"unsupported order column: {column}")
            where.append(f"{column} = ?")
            params.append(value)
        async with open_db() as db:
            cursor = await execute_write_with_retry(
                db,
                f"UPDATE purchase_orders SET {', '.join(assignments)} WHERE {' AND '.join(where)}",
                params,
            )
            return int(cursor.rowcount or 0) == 1

    async def set_commissions(self, order_id: str, commissions: Mapping[str, Any]) -> None:
        async with open_db() as db:
            await execute_write_with_retry(
                db,
                "UPDATE purchase_orders SET commissions_json = ? WHERE id = ?",
                (_to_json(commissions), str(order_id)),
            )

    async def list_unconfirmed_approved_orders(self) -> list[dict[str, Any]]:
        async with open_db() as db:
            async with db.execute(
                """
                SELECT *
                  FROM purchase_orders
                 WHERE status = ?
                   AND client_confirmed IS NULL
                 ORDER BY rowid
                """,
                (STATUS_APPROVED,),
            ) as cur:
                rows = await cur.fetchall()
                return [dict(row) for row in rows]

    async def update_reminders(
        self,
        order_id: str,
        *,
        expected_sent: int,
        sent: int,
        last_sent_at: str,
    ) -> bool:
        """Bump the reminder counter only if nobody else has bumped it."""
        async with open_db() as db:
            cursor = await execute_write_with_retry(
                db,
                """
                UPDATE purchase_orders
                   SET reminders_sent = ?,
                       reminders_last_sent_at = ?
                 WHERE id = ?
                   AND status = ?
                   AND reminders_sent = ?
                """,
                (int(sent), str(last_sent_at), str(order_id), STATUS_APPROVED, int(expected_sent)),
            )
            return int(cursor.rowcount or 0) == 1

    async def list_expirable_orders(self, *, now_iso: str) -> list[dict[str, Any]]:
        async with open_db() as db:
            async with db.execute(
                """
                SELECT *
                  FROM purchase_orders
                 WHERE status IN (?, ?)
                   AND expires_at < ?
                 ORDER BY expires_at
                """,
                (STATUS_PENDING, STATUS_ACCEPTED, str(now_iso)),
            ) as cur:
                rows = await cur.fetchall()
                return [dict(row) for row in rows]

    async def count_orders_by_status(self) -> dict[str, int]:
        async with open_db() as db:
            async with db.execute(
                "SELECT status, COUNT(*) AS cnt FROM purchase_orders GROUP BY status"
            ) as cur:
                rows = await cur.fetchall()
                return {str(row["status"]): int(row["cnt"]) for row in rows}

    async def count_fraud_orders(self) -> int:
        async with open_db() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM purchase_orders WHERE fraud_detected = 1"
            ) as cur:
                row = await cur.fetchone()
                return int(row[0] if row else 0)

    # --- earnings ------------------------------------------------------

    async def record_earnings(
        self,
        entries: Mapping[str, Mapping[str, Any]],
        *,
        month_key: str,
        now_iso: str,
    ) -> None:
        async with open_db() as db:
            for recipient_id, entry in entries.items():
                sales = int(entry.get("sales") or 0)
                amount = float(entry.get("amount") or 0)
                commission = float(entry.get("commission") or 0)
                await execute_write_with_retry(
                    db,
                    """
                    INSERT INTO earnings(
                        recipient_id, total_sales, total_amount, total_commissions,
                        paid_commissions, pending_commissions, last_updated
                    )
                    VALUES(?, ?, ?, ?, 0, ?, ?)
                    ON CONFLICT(recipient_id) DO UPDATE SET
                        total_sales = earnings.total_sales + excluded.total_sales,
                        total_amount = ROUND(earnings.total_amount + excluded.total_amount, 2),
                        total_commissions = ROUND(earnings.total_commissions + excluded.total_commissions, 2),
                        pending_commissions = ROUND(earnings.pending_commissions + excluded.pending_commissions, 2),
                        last_updated = excluded.last_updated
                    """,
                    (str(recipient_id), sales, amount, commission, commission, str(now_iso)),
                )
                await execute_write_with_retry(
                    db,
                    """
                    INSERT INTO earnings_monthly(recipient_id, month_key, sales, amount, commission)
                    VALUES(?, ?, ?, ?, ?)
                    ON CONFLICT(recipient_id, month_key) DO UPDATE SET
                        sales = earnings_monthly.sales + excluded.sales,
                        amount = ROUND(earnings_monthly.amount + excluded.amount, 2),
                        commission = ROUND(earnings_monthly.commission + excluded.commission, 2)
                    """,
                    (str(recipient_id), str(month_key), sales, amount, commission),
                )

    async def get_earnings(self, recipient_id: str) -> dict[str, Any] | None:
        async with open_db() as db:
            async with db.execute("SELECT * FROM earnings WHERE recipient_id = ?", (str(recipient_id),)) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None

    async def list_monthly_earnings(self, recipient_id: str, *, limit: int = 6) -> list[dict[str, Any]]:
        async with open_db() as db:
            async with db.execute(
                """
                SELECT month_key, sales, amount, commission
                  FROM earnings_monthly
                 WHERE recipient_id = ?
                 ORDER BY month_key DESC
                 LIMIT ?
                """,
                (str(recipient_id), max(1, int(limit))),
            ) as cur:
                rows = await cur.fetchall()
                return [dict(row) for row in rows]

    async def list_earnings(self, recipient_ids: Sequence[str] | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM earnings"
        params: list[Any] = []
        if recipient_ids:
            query += f" WHERE recipient_id IN ({','.join('?' for _ in recipient_ids)})"
            params.extend(str(item) for item in recipient_ids)
        query += " ORDER BY total_commissions DESC"
        async with open_db() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                return [dict(row) for row in rows]
