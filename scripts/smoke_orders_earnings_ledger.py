#!/usr/bin/env python3
"""
Smoke test: earnings ledger, staff tools and bank config.

Validates:
- approvals accumulate totals and monthly buckets per recipient
- only the seller counts sales; owner/devs see commission only
- /ganancias resolves the owner bucket for the owner role
- staff order/user listing and stats, direct credit and plan grants (by id or @username)
- bank config validation and role restrictions

Run:
  python3 scripts/smoke_orders_earnings_ledger.py
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

CLIENT_ID = 8001
ADMIN_ID = 1
OWNER_ID = 900
DEV_ID = 901


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _expect_error(coro, error_type, label: str):
    try:
        await coro
    except error_type as error:
        return error
    raise AssertionError(f"{label}: expected {error_type.__name__}")


async def _approved_order(service, plan_id: str, seller_id: int, at: datetime):
    order = await service.create_order(CLIENT_ID, plan_id, now=at)
    await service.accept_order(order.id, seller_id, now=at)
    await service.request_payment_proof(CLIENT_ID, now=at)
    await service.attach_payment_proof(CLIENT_ID, b"proof", now=at)
    return await service.approve_payment(order.id, seller_id, now=at)


async def _run_checks() -> None:
    from database import init_db  # noqa: WPS433
    from orders import ui  # noqa: WPS433
    from orders.service import (  # noqa: WPS433
        AccessDeniedError,
        NotFoundError,
        OrderService,
        ValidationError,
        month_key,
    )

    await init_db()
    service = OrderService()
    await service.register_user(CLIENT_ID, username="Client_One", chat_id=CLIENT_ID)
    await service.register_user(ADMIN_ID, username="admin", chat_id=ADMIN_ID)
    await service.register_user(OWNER_ID, username="owner", chat_id=OWNER_ID)
    await service.register_user(DEV_ID, username="dev", chat_id=DEV_ID)

    now = datetime.now(timezone.utc)
    await _approved_order(service, "monthly", ADMIN_ID, now)
    await _approved_order(service, "pack_100", ADMIN_ID, now)
    await _approved_order(service, "weekly", DEV_ID, now)

    repo = service.repository
    seller = await repo.get_earnings(str(ADMIN_ID))
    _assert(seller["total_sales"] == 2, f"seller sales mismatch: {seller}")
    _assert(seller["total_amount"] == 450.0, f"seller amount mismatch: {seller}")
    _assert(seller["total_commissions"] == 90.0, f"seller commission mismatch: {seller}")
    _assert(seller["pending_commissions"] == 90.0, f"pending commission mismatch: {seller}")
    _assert(seller["paid_commissions"] == 0, f"nothing is paid yet: {seller}")

    owner = await repo.get_earnings(str(OWNER_ID))
    _assert(owner["total_sales"] == 0, f"owner must not count sales: {owner}")
    _assert(owner["total_commissions"] == 360.0, f"owner commission mismatch: {owner}")

    # Dev sold one order: seller share + dev share on every order.
    dev = await repo.get_earnings(str(DEV_ID))
    _assert(dev["total_sales"] == 1, f"dev sales mismatch: {dev}")
    _assert(dev["total_commissions"] == 150.0, f"dev commission mismatch: {dev}")

    monthly = await repo.list_monthly_earnings(str(ADMIN_ID))
    _assert(len(monthly) == 1 and monthly[0]["month_key"] == month_key(now), f"monthly bucket: {monthly}")
    _assert(monthly[0]["sales"] == 2 and monthly[0]["commission"] == 90.0, f"monthly totals: {monthly}")

    earnings, buckets = await service.get_earnings(OWNER_ID)
    _assert(earnings["recipient_id"] == str(OWNER_ID), f"owner must see the owner bucket: {earnings}")
    _assert(len(buckets) == 1, f"owner monthly buckets: {buckets}")
    await _expect_error(service.get_earnings(CLIENT_ID), AccessDeniedError, "client earnings")

    # Staff listing and stats.
    approved = await service.list_orders(ADMIN_ID, status="approved")
    _assert(len(approved) == 3, f"approved listing mismatch: {[o.id for o in approved]}")
    await _expect_error(service.list_orders(ADMIN_ID, status="bogus"), ValidationError, "bad status filter")
    await _expect_error(service.list_orders(CLIENT_ID), AccessDeniedError, "client listing")
    stats = await service.order_stats(OWNER_ID)
    _assert(stats["by_status"].get("approved") == 3 and stats["total"] == 3, f"stats mismatch: {stats}")
    _assert(stats["fraud"] == 0, f"no fraud yet: {stats}")

    users = await service.list_users(ADMIN_ID)
    _assert({u.telegram_id for u in users} == {CLIENT_ID, ADMIN_ID, OWNER_ID, DEV_ID}, f"user listing: {users}")
    roles = {u.telegram_id: u.role for u in users}
    _assert(roles[OWNER_ID] == "owner" and roles[DEV_ID] == "dev", f"roles in listing: {roles}")
    _assert(len(await service.list_users(ADMIN_ID, limit=2)) == 2, "user listing must honour the limit")
    await _expect_error(service.list_users(CLIENT_ID), AccessDeniedError, "client user listing")
    listing = ui.render_users(users)
    _assert("@Client_One" in listing and "100 créditos" in listing, f"rendered listing: {listing}")

    # Direct grants.
    user = await service.add_credits(ADMIN_ID, "@client_one", 25)
    _assert(user.credits == 125, f"credits by username: {user}")
    user = await service.add_credits(ADMIN_ID, str(CLIENT_ID), -500)
    _assert(user.credits == 0, f"credits must clamp at zero: {user}")
    await _expect_error(service.add_credits(ADMIN_ID, "@nobody", 5), NotFoundError, "unknown target")
    await _expect_error(service.add_credits(ADMIN_ID, str(CLIENT_ID), 0), ValidationError, "zero credits")
    await _expect_error(service.add_credits(ADMIN_ID, str(CLIENT_ID), "many"), ValidationError, "bad amount")
    await _expect_error(service.add_credits(CLIENT_ID, str(CLIENT_ID), 5), AccessDeniedError, "client grant")

    before = await service.get_user(CLIENT_ID)
    user = await service.set_plan(ADMIN_ID, str(CLIENT_ID), "one_day", now=now)
    _assert(user.plan_id == "one_day", f"set_plan mismatch: {user}")
    expected = datetime.fromisoformat(before.plan_expires_at) + timedelta(days=1)
    _assert(datetime.fromisoformat(user.plan_expires_at) == expected, "plan must extend from the active expiry")
    await _expect_error(service.set_plan(ADMIN_ID, str(CLIENT_ID), "platinum"), ValidationError, "bad plan")

    # Bank config.
    _assert(await service.get_bank_config() is None, "bank config must start empty")
    await _expect_error(
        service.set_bank_config(ADMIN_ID, "BBVA|0123456789|012345678901234567|Ana"),
        AccessDeniedError,
        "admin bank config",
    )
    await _expect_error(service.set_bank_config(OWNER_ID, "BBVA|123|012345678901234567|Ana"), ValidationError, "short account")
    await _expect_error(service.set_bank_config(OWNER_ID, "BBVA|0123456789|0123|Ana"), ValidationError, "short clabe")
    await _expect_error(service.set_bank_config(OWNER_ID, "BBVA|0123456789"), ValidationError, "missing parts")
    saved = await service.set_bank_config(OWNER_ID, " BBVA | 0123 4567 89 | 012345678901234567 | Ana Pérez ")
    _assert(saved["account"] == "0123456789", f"spaces must be stripped: {saved}")
    loaded = await service.get_bank_config()
    _assert(loaded == saved, f"bank config round-trip: {loaded}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="ordersbot-smoke-earnings-"))
    try:
        os.environ["DB_PATH"] = str(tmpdir / "state.db")
        os.environ["MEDIA_DIR"] = str(tmpdir / "media")
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
        os.environ["ADMIN_IDS"] = str(ADMIN_ID)
        os.environ["OWNER_ID"] = str(OWNER_ID)
        os.environ["DEV_IDS"] = str(DEV_ID)
        os.environ["LOG_TO_FILE"] = "0"

        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks())
        print("OK: orders earnings ledger smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
