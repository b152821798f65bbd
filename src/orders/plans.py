"""Catalog of purchasable plans and credit packs."""

from __future__ import annotations

from typing import Final

from config import CFG
from orders.models import PLAN_TYPE_CREDITS, PLAN_TYPE_DAYS, PlanDescriptor


# Days plans: duration in days, price, daily credit allowance.
DAYS_PLANS: Final[dict[str, dict[str, int | str]]] = {
    "one_day": {"name": "1 Día", "duration": 1, "price": 30, "credits_per_day": 10},
    "weekly": {"name": "Semanal", "duration": 7, "price": 150, "credits_per_day": 15},
    "biweekly": {"name": "Quincenal", "duration": 15, "price": 250, "credits_per_day": 20},
    "monthly": {"name": "Mensual", "duration": 30, "price": 400, "credits_per_day": 25},
}

# One-off credit packs.
CREDIT_PACKS: Final[dict[str, dict[str, int | str]]] = {
    "pack_100": {"name": "100 Créditos", "credits": 100, "price": 50},
    "pack_200": {"name": "200 Créditos", "credits": 200, "price": 90},
    "pack_500": {"name": "500 Créditos", "credits": 500, "price": 200},
    "pack_1000": {"name": "1000 Créditos", "credits": 1000, "price": 350},
}

ORDER_TTL_HOURS: Final[int] = 24


def get_plan(plan_id: str) -> PlanDescriptor | None:
    """Build the frozen descriptor for a catalog entry, or None when unknown."""
    key = str(plan_id or "").strip()
    if key in DAYS_PLANS:
        item = DAYS_PLANS[key]
        return PlanDescriptor(
            id=key,
            name=str(item["name"]),
            type=PLAN_TYPE_DAYS,
            price=int(item["price"]),
            currency=CFG.currency,
            duration=int(item["duration"]),
            credits_per_day=int(item["credits_per_day"]),
        )
    if key in CREDIT_PACKS:
        item = CREDIT_PACKS[key]
        return PlanDescriptor(
            id=key,
            name=str(item["name"]),
            type=PLAN_TYPE_CREDITS,
            price=int(item["price"]),
            currency=CFG.currency,
            credits=int(item["credits"]),
        )
    return None


def list_plans() -> list[PlanDescriptor]:
    return [plan for plan in (get_plan(key) for key in (*DAYS_PLANS, *CREDIT_PACKS)) if plan is not None]
