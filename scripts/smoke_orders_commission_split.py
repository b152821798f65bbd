#!/usr/bin/env python3
"""
Smoke test: commission split for approved sales.

Validates:
- 60/20/20 split (owner/dev pool/seller) always sums back to the price
- dev pool is split evenly, owner absorbs rounding remainder
- empty dev list sends the pool to the owner
- a seller that is also a listed dev is credited both shares in the ledger

Run:
  python3 scripts/smoke_orders_commission_split.py
"""

from __future__ import annotations

import os
import sys
from decimal import Decimal
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _cents(value: float) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def _run_checks() -> None:
    from orders.commissions import OWNER_FALLBACK_ID, compute_commissions, ledger_entries  # noqa: WPS433

    single_dev = compute_commissions(400, seller_id=10, dev_ids=[20], owner_id=30)
    _assert(single_dev.owner.amount == 240.0, f"owner share mismatch: {single_dev}")
    _assert(single_dev.devs_total == 80.0, f"dev pool mismatch: {single_dev}")
    _assert(single_dev.seller.amount == 80.0, f"seller share mismatch: {single_dev}")
    _assert(single_dev.owner.recipient_id == "30", f"owner recipient mismatch: {single_dev.owner}")

    two_devs = compute_commissions(150, seller_id=10, dev_ids=[20, 21], owner_id=30)
    _assert(two_devs.owner.amount == 90.0, f"owner share mismatch: {two_devs}")
    _assert([share.amount for share in two_devs.devs] == [15.0, 15.0], f"dev shares mismatch: {two_devs.devs}")
    _assert(two_devs.seller.amount == 30.0, f"seller share mismatch: {two_devs}")

    # Uneven pool: 100 * 0.20 / 3 = 6.666.. -> 6.66 each, owner takes the extra cent.
    three_devs = compute_commissions(100, seller_id=10, dev_ids=[20, 21, 22], owner_id=30)
    _assert([share.amount for share in three_devs.devs] == [6.66, 6.66, 6.66], f"uneven split: {three_devs.devs}")
    _assert(three_devs.owner.amount == 60.02, f"owner must absorb remainder: {three_devs.owner}")

    for price in (30, 50, 90, 99, 150, 200, 250, 350, 400, 1, 7):
        for devs in ([], [20], [20, 21], [20, 21, 22], [20, 21, 22, 23, 24, 25, 26]):
            split = compute_commissions(price, seller_id=10, dev_ids=devs, owner_id=30)
            total = _cents(split.owner.amount) + sum(_cents(s.amount) for s in split.devs) + _cents(split.seller.amount)
            _assert(total == _cents(price), f"split of {price} with {len(devs)} devs sums to {total}")
            _assert(all(s.amount >= 0 for s in split.shares()), f"negative share: {split}")

    no_devs = compute_commissions(400, seller_id=10, dev_ids=[], owner_id=None)
    _assert(no_devs.devs == (), f"no dev shares expected: {no_devs.devs}")
    _assert(no_devs.owner.amount == 320.0, f"owner must receive the dev pool: {no_devs.owner}")
    _assert(no_devs.owner.recipient_id == OWNER_FALLBACK_ID, f"owner fallback id: {no_devs.owner}")

    dev_seller = compute_commissions(150, seller_id=20, dev_ids=[20, 21], owner_id=30)
    entries = ledger_entries(dev_seller)
    _assert(set(entries) == {"30", "20", "21"}, f"ledger recipients mismatch: {entries}")
    _assert(entries["20"]["commission"] == 45.0, f"dev seller must get both shares: {entries['20']}")
    _assert(entries["20"]["sales"] == 1, f"seller sale must count once: {entries['20']}")
    _assert(entries["21"]["sales"] == 0, f"dev must not count a sale: {entries['21']}")
    _assert(entries["30"]["amount"] == 150.0, f"every recipient records the sale amount: {entries['30']}")


def main() -> None:
    os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
    os.environ.setdefault("LOG_TO_FILE", "0")
    sys.path.insert(0, str(REPO_ROOT / "src"))
    _run_checks()
    print("OK: orders commission split smoke test passed.")


if __name__ == "__main__":
    main()
