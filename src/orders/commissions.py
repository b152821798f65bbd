"""Commission split for an approved sale.

Owner takes 60%, the dev pool 20% (shared evenly by the configured devs) and
the seller who accepted the order 20%. Amounts are computed in ``Decimal``
cents and the owner share absorbs any rounding remainder, so the three parts
always add back up to the price.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Final, Sequence

from orders.models import ROLE_DEV, ROLE_OWNER, CommissionShare, Commissions


OWNER_RATE: Final[Decimal] = Decimal("0.60")
DEV_POOL_RATE: Final[Decimal] = Decimal("0.20")
SELLER_RATE: Final[Decimal] = Decimal("0.20")
CENT: Final[Decimal] = Decimal("0.01")
OWNER_FALLBACK_ID: Final[str] = "owner"

ROLE_SELLER = "seller"


def _to_cents(value: Decimal, rounding: str = ROUND_HALF_UP) -> Decimal:
    return value.quantize(CENT, rounding=rounding)


def owner_recipient_id(owner_id: int | None) -> str:
    return str(owner_id) if owner_id is not None else OWNER_FALLBACK_ID


def compute_commissions(
    price: int | float | str,
    *,
    seller_id: int,
    dev_ids: Sequence[int],
    owner_id: int | None,
) -> Commissions:
    """Split ``price`` between owner, devs and seller.

    With no devs configured the dev pool goes to the owner. A seller that is
    also a listed dev gets both the seller and the dev share.
    """
    total = _to_cents(Decimal(str(price)))
    if total < 0:
        raise ValueError("price must not be negative")

    seller_amount = _to_cents(total * SELLER_RATE)
    devs = [int(dev_id) for dev_id in dev_ids]
    dev_each = Decimal("0")
    if devs:
        dev_each = _to_cents(total * DEV_POOL_RATE / len(devs), rounding=ROUND_DOWN)
    owner_amount = total - seller_amount - dev_each * len(devs)

    return Commissions(
        price=float(total),
        owner=CommissionShare(
            recipient_id=owner_recipient_id(owner_id),
            role=ROLE_OWNER,
            amount=float(owner_amount),
        ),
        devs=tuple(
            CommissionShare(recipient_id=str(dev_id), role=ROLE_DEV, amount=float(dev_each))
            for dev_id in devs
        ),
        seller=CommissionShare(recipient_id=str(int(seller_id)), role=ROLE_SELLER, amount=float(seller_amount)),
    )


def ledger_entries(commissions: Commissions) -> dict[str, dict[str, float | int]]:
    """Aggregate shares per recipient for the earnings upsert.

    Every recipient records the sale amount; only the seller counts a sale.
    """
    entries: dict[str, dict[str, float | int]] = {}
    price = Decimal(str(commissions.price))
    for share in commissions.shares():
        entry = entries.setdefault(
            share.recipient_id,
            {"sales": 0, "amount": float(price), "commission": 0.0},
        )
        entry["commission"] = float(_to_cents(Decimal(str(entry["commission"])) + Decimal(str(share.amount))))
        if share.role == ROLE_SELLER:
            entry["sales"] = 1
    return entries
