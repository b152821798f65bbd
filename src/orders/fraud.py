"""Heuristic used when a client reports an approved order as not received."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from orders.models import PLAN_TYPE_CREDITS, PLAN_TYPE_DAYS, PurchaseOrder, UserAccount, parse_iso_utc


@dataclass(frozen=True, slots=True)
class FraudVerdict:
    fraud_detected: bool
    reason: str | None = None


def is_grant_active(order: PurchaseOrder, user: UserAccount | None, now: datetime) -> bool:
    """Whether the benefit granted by ``order`` is visibly in use on the account."""
    if user is None:
        return False
    plan = order.plan
    if plan.type == PLAN_TYPE_DAYS:
        expires_at = parse_iso_utc(user.plan_expires_at)
        return expires_at is not None and expires_at > now and user.plan_id == plan.id
    if plan.type == PLAN_TYPE_CREDITS:
        # A balance at or above the pack size is taken as evidence of delivery.
        return int(user.credits) >= int(plan.credits or 0)
    return False


def evaluate_not_received(order: PurchaseOrder, user: UserAccount | None, now: datetime) -> FraudVerdict:
    if not is_grant_active(order, user, now):
        return FraudVerdict(fraud_detected=False)
    if order.plan.type == PLAN_TYPE_DAYS:
        reason = f"Plan {order.plan.id} activo hasta {user.plan_expires_at}"
    else:
        reason = f"Saldo de {user.credits} créditos cubre el paquete de {order.plan.credits}"
    return FraudVerdict(fraud_detected=True, reason=reason)
