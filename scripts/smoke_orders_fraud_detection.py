#!/usr/bin/env python3
"""
Smoke test: "not received" claims and fraud rollback.

Validates:
- days plan still active -> disputed + fraud flag, plan reset to free
- days plan already lapsed -> disputed without fraud flag, nothing touched
- credits pack with balance >= pack -> fraud, credits removed (clamped at 0)
- credits pack with smaller balance -> legitimate dispute
- an unexpired plan other than the ordered one -> legitimate dispute
- the accepting admin is told which case it was
- the client is told whether the claim was refused or is under review
- a missing user record counts as a legitimate dispute

Run:
  python3 scripts/smoke_orders_fraud_detection.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]

CLIENT_ID = 7001
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

    def last_to(self, chat_id: int) -> str:
        for target, text, _ in reversed(self.texts):
            if target == chat_id:
                return text
        raise AssertionError(f"no message sent to {chat_id}")


async def _approved_order(service, plan_id: str, at: datetime):
    order = await service.create_order(CLIENT_ID, plan_id, now=at)
    await service.accept_order(order.id, ADMIN_ID, now=at)
    await service.request_payment_proof(CLIENT_ID, now=at)
    await service.attach_payment_proof(CLIENT_ID, b"proof", now=at)
    return await service.approve_payment(order.id, ADMIN_ID, now=at)


async def _run_checks() -> None:
    from database import init_db  # noqa: WPS433
    from orders.fraud import evaluate_not_received  # noqa: WPS433
    from orders.service import OrderService  # noqa: WPS433

    await init_db()
    notifier = FakeNotifier()
    service = OrderService(notifier=notifier)
    await service.register_user(CLIENT_ID, username="client", chat_id=CLIENT_ID)
    await service.register_user(ADMIN_ID, username="admin", chat_id=ADMIN_ID)
    now = datetime.now(timezone.utc)

    # Lapsed days plan -> legitimate.
    start = now - timedelta(days=20)
    one_day = await _approved_order(service, "one_day", start)
    user_before = await service.get_user(CLIENT_ID)
    legit = await service.confirm_not_received(one_day.id, CLIENT_ID, now=start + timedelta(days=3))
    _assert(legit.status == "disputed", f"status must be disputed: {legit.status}")
    _assert(not legit.fraud_detected, "lapsed plan claim must not be flagged")
    _assert(legit.fraud_reason is None, f"no fraud reason expected: {legit.fraud_reason}")
    user_after = await service.get_user(CLIENT_ID)
    _assert(user_after.plan_expires_at == user_before.plan_expires_at, "legitimate dispute must not touch the plan")
    _assert("reclamo" in notifier.last_to(ADMIN_ID).lower(), "admin must be told about the complaint")
    _assert("revisará tu caso" in notifier.last_to(CLIENT_ID), "client must be told the claim is under review")

    # Active days plan -> fraud.
    weekly = await _approved_order(service, "weekly", now)
    user = await service.get_user(CLIENT_ID)
    _assert(user.plan_id == "weekly", f"plan must be granted: {user}")
    claim_at = now + timedelta(hours=2)
    disputed = await service.confirm_not_received(weekly.id, CLIENT_ID, now=claim_at)
    _assert(disputed.status == "disputed", f"status must be disputed: {disputed.status}")
    _assert(disputed.fraud_detected, "active plan claim must be flagged")
    _assert(disputed.fraud_reason, "fraud reason must be recorded")
    _assert(disputed.client_confirmed is False, f"client_confirmed must be False: {disputed.client_confirmed}")
    user = await service.get_user(CLIENT_ID)
    _assert(user.plan_id == "free", f"plan must be reset to free: {user}")
    _assert(user.plan_expires_at == claim_at.isoformat(), f"plan expiry must be now: {user.plan_expires_at}")
    _assert("fraude" in notifier.last_to(ADMIN_ID).lower(), "admin must be told about fraud")
    _assert("tu plan ha sido removido" in notifier.last_to(CLIENT_ID), "client must be told the plan was removed")

    # A different days plan still running -> legitimate for this order.
    daily = await _approved_order(service, "one_day", now)
    await service.set_plan(ADMIN_ID, str(CLIENT_ID), "monthly", now=now)
    user = await service.get_user(CLIENT_ID)
    _assert(user.plan_id == "monthly", f"running plan must be the monthly one: {user}")
    other_plan = await service.confirm_not_received(daily.id, CLIENT_ID, now=now + timedelta(hours=3))
    _assert(other_plan.status == "disputed", f"status must be disputed: {other_plan.status}")
    _assert(not other_plan.fraud_detected, "claim on a plan that is not the running one must not be flagged")
    user_after = await service.get_user(CLIENT_ID)
    _assert(user_after.plan_id == "monthly", f"running plan must be kept: {user_after}")
    _assert(user_after.plan_expires_at == user.plan_expires_at, "running plan expiry must be kept")
    _assert("revisará tu caso" in notifier.last_to(CLIENT_ID), "client must be told the claim is under review")

    # Credits pack with full balance -> fraud, balance rolled back.
    pack = await _approved_order(service, "pack_100", now)
    _assert((await service.get_user(CLIENT_ID)).credits == 100, "pack credits must be granted")
    flagged = await service.confirm_not_received(pack.id, CLIENT_ID, now=now)
    _assert(flagged.fraud_detected, "credit balance covering the pack must be flagged")
    _assert((await service.get_user(CLIENT_ID)).credits == 0, "pack credits must be removed")
    _assert("créditos han sido removidos" in notifier.last_to(CLIENT_ID), "client must be told the credits were removed")

    # Credits pack with spent balance -> legitimate.
    pack = await _approved_order(service, "pack_200", now)
    await service.add_credits(ADMIN_ID, str(CLIENT_ID), -150)
    _assert((await service.get_user(CLIENT_ID)).credits == 50, "credits must be spent down")
    legit_pack = await service.confirm_not_received(pack.id, CLIENT_ID, now=now)
    _assert(not legit_pack.fraud_detected, "partially spent pack must not be flagged")
    _assert((await service.get_user(CLIENT_ID)).credits == 50, "legitimate dispute keeps the balance")

    # Missing user record.
    verdict = evaluate_not_received(legit_pack, None, now)
    _assert(not verdict.fraud_detected, f"missing user must be a legitimate dispute: {verdict}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="ordersbot-smoke-fraud-"))
    try:
        os.environ["DB_PATH"] = str(tmpdir / "state.db")
        os.environ["MEDIA_DIR"] = str(tmpdir / "media")
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
        os.environ["ADMIN_IDS"] = str(ADMIN_ID)
        os.environ["LOG_TO_FILE"] = "0"

        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks())
        print("OK: orders fraud detection smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
