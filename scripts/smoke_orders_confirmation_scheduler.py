#!/usr/bin/env python3
"""
Smoke test: confirmation reminders, auto-completion and expiry sweep.

Validates:
- no prompt before 48h, first prompt at 48h, reminders every 4h up to 6
- repeated sweeps at the same instant change nothing
- auto-completion only once 72h passed AND all 6 reminders were sent
- auto-completed orders carry client_confirmed + auto_completed
- stale pending/accepted orders expire after 24h and the client is told

Run:
  python3 scripts/smoke_orders_confirmation_scheduler.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace


REPO_ROOT = Path(__file__).resolve().parents[1]

CLIENT_ID = 6001
ADMIN_ID = 1


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


class FakeNotifier:
    def __init__(self) -> None:
        self.texts: list[tuple[int, str, object]] = []

    async def send_text(self, chat_id: int, text: str, *, reply_markup=None) -> bool:
        self.texts.append((chat_id, text, reply_markup))
        return True

    async def send_photo(self, chat_id: int, photo: str, *, caption=None, reply_markup=None) -> bool:
        return True

    async def broadcast_text(self, chat_ids, text: str, *, reply_markup=None) -> dict[int, bool]:
        return {chat_id: True for chat_id in chat_ids}


async def _approved_order(service, plan_id: str, at: datetime):
    order = await service.create_order(CLIENT_ID, plan_id, now=at)
    await service.accept_order(order.id, ADMIN_ID, now=at)
    await service.request_payment_proof(CLIENT_ID, now=at)
    await service.attach_payment_proof(CLIENT_ID, b"proof", now=at)
    return await service.approve_payment(order.id, ADMIN_ID, now=at)


def _check_decide_action() -> None:
    from orders.models import ConfirmationReminders  # noqa: WPS433
    from orders.scheduler import (  # noqa: WPS433
        ACTION_AUTO_COMPLETE,
        ACTION_NONE,
        ACTION_REMINDER,
        decide_action,
    )

    approved_at = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)

    def _order(sent: int, last_sent_at: str | None):
        order = SimpleNamespace(
            confirmation_reminders=ConfirmationReminders(sent=sent, last_sent_at=last_sent_at, max=6),
        )
        order.timestamp = lambda key: approved_at if key == "approved" else None
        return order

    late = approved_at + timedelta(hours=100)
    _assert(decide_action(_order(6, approved_at.isoformat()), late) == ACTION_AUTO_COMPLETE, "6 sent + 100h completes")
    _assert(decide_action(_order(5, approved_at.isoformat()), late) == ACTION_REMINDER, "5 sent + 100h reminds")
    _assert(decide_action(_order(3, None), late) == ACTION_NONE, "missing last_sent_at must skip")
    _assert(
        decide_action(_order(6, approved_at.isoformat()), approved_at + timedelta(hours=71, minutes=59)) == ACTION_NONE,
        "6 sent before 72h must wait",
    )
    no_approval = SimpleNamespace(confirmation_reminders=ConfirmationReminders(), timestamp=lambda key: None)
    _assert(decide_action(no_approval, late) == ACTION_NONE, "order without approval time must skip")


async def _run_checks() -> None:
    from database import init_db  # noqa: WPS433
    from orders.scheduler import ConfirmationScheduler  # noqa: WPS433
    from orders.service import OrderService  # noqa: WPS433

    _check_decide_action()

    await init_db()
    notifier = FakeNotifier()
    service = OrderService(notifier=notifier)
    await service.register_user(CLIENT_ID, username="client", chat_id=CLIENT_ID)
    await service.register_user(ADMIN_ID, username="admin", chat_id=ADMIN_ID)
    scheduler = ConfirmationScheduler(service)

    t0 = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(days=10)
    order = await _approved_order(service, "pack_100", t0)
    _assert(order.status == "approved", f"setup must approve the order: {order.status}")

    def _prompts() -> list[tuple[int, str, object]]:
        return [item for item in notifier.texts if item[2] is not None and item[0] == CLIENT_ID]

    stats = await scheduler.sweep(now=t0 + timedelta(hours=47, minutes=59))
    _assert(stats["prompts"] == 0 and not _prompts(), f"no prompt before 48h: {stats}")

    stats = await scheduler.sweep(now=t0 + timedelta(hours=48))
    _assert(stats["prompts"] == 1, f"initial prompt at 48h: {stats}")
    current = await service.get_order(order.id)
    _assert(current.confirmation_reminders.sent == 1, f"sent must be 1: {current.confirmation_reminders}")
    buttons = [b.callback_data for row in _prompts()[-1][2].inline_keyboard for b in row]
    _assert(
        buttons == [f"confirm_received_{order.id}", f"confirm_not_received_{order.id}"],
        f"confirmation buttons mismatch: {buttons}",
    )

    stats = await scheduler.sweep(now=t0 + timedelta(hours=51))
    _assert(stats["reminders"] == 0, f"no reminder before 4h gap: {stats}")

    moment = t0 + timedelta(hours=48)
    for expected_sent in range(2, 7):
        moment += timedelta(hours=4)
        stats = await scheduler.sweep(now=moment)
        _assert(stats["reminders"] == 1, f"reminder {expected_sent} expected at {moment}: {stats}")
        repeat = await scheduler.sweep(now=moment)
        _assert(repeat["reminders"] == 0, f"same-instant sweep must be idempotent: {repeat}")
        current = await service.get_order(order.id)
        _assert(
            current.confirmation_reminders.sent == expected_sent,
            f"sent must be {expected_sent}: {current.confirmation_reminders}",
        )
    _assert(len(_prompts()) == 6, f"exactly 6 prompts expected: {len(_prompts())}")

    # 68h: all reminders out, but auto-completion waits for 72h.
    stats = await scheduler.sweep(now=t0 + timedelta(hours=71, minutes=59))
    _assert(stats["auto_completed"] == 0 and stats["reminders"] == 0, f"nothing before 72h: {stats}")
    _assert((await service.get_order(order.id)).status == "approved", "order must stay approved before 72h")

    stats = await scheduler.sweep(now=t0 + timedelta(hours=72))
    _assert(stats["auto_completed"] == 1, f"auto-completion at 72h: {stats}")
    done = await service.get_order(order.id)
    _assert(done.status == "completed", f"status must be completed: {done.status}")
    _assert(done.client_confirmed is True, f"client_confirmed must be set: {done.client_confirmed}")
    _assert(done.auto_completed is True, f"auto_completed must be set: {done.auto_completed}")
    _assert("completed" in done.timestamps, f"completed timestamp missing: {done.timestamps}")

    stats = await scheduler.sweep(now=t0 + timedelta(hours=100))
    _assert(stats["scanned"] == 0, f"completed orders leave the sweep: {stats}")

    # A confirmed order is never prompted.
    confirmed = await _approved_order(service, "pack_200", t0)
    await service.confirm_received(confirmed.id, CLIENT_ID, now=t0 + timedelta(hours=1))
    stats = await scheduler.sweep(now=t0 + timedelta(hours=48))
    _assert(stats["prompts"] == 0, f"confirmed order must not be prompted: {stats}")

    # Expiry sweep.
    created_at = datetime.now(timezone.utc) - timedelta(hours=30)
    pending = await service.create_order(CLIENT_ID, "one_day", now=created_at)
    accepted = await service.create_order(CLIENT_ID, "weekly", now=created_at)
    await service.accept_order(accepted.id, ADMIN_ID, now=created_at + timedelta(hours=1))
    fresh = await service.create_order(CLIENT_ID, "monthly")
    texts_before = len(notifier.texts)
    result = await scheduler.run_once()
    _assert(result["expired"] == 2, f"two stale orders must expire: {result}")
    _assert((await service.get_order(pending.id)).status == "expired", "pending order must expire")
    _assert((await service.get_order(accepted.id)).status == "expired", "accepted order must expire")
    _assert((await service.get_order(fresh.id)).status == "pending", "fresh order must stay pending")
    _assert(len(notifier.texts) - texts_before == 2, "client must be told about each expiry")
    again = await scheduler.run_once()
    _assert(again["expired"] == 0, f"expiry sweep must be idempotent: {again}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="ordersbot-smoke-scheduler-"))
    try:
        os.environ["DB_PATH"] = str(tmpdir / "state.db")
        os.environ["MEDIA_DIR"] = str(tmpdir / "media")
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
        os.environ["ADMIN_IDS"] = str(ADMIN_ID)
        os.environ["LOG_TO_FILE"] = "0"

        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks())
        print("OK: orders confirmation scheduler smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
