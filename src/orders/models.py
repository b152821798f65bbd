"""Order domain models."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_PAYMENT_SENT = "payment_sent"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_COMPLETED = "completed"
STATUS_DISPUTED = "disputed"
STATUS_EXPIRED = "expired"

ALL_STATUSES = (
    STATUS_PENDING,
    STATUS_ACCEPTED,
    STATUS_PAYMENT_SENT,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_COMPLETED,
    STATUS_DISPUTED,
    STATUS_EXPIRED,
)
TERMINAL_STATUSES = frozenset({STATUS_REJECTED, STATUS_COMPLETED, STATUS_DISPUTED, STATUS_EXPIRED})

# The only edges an order may move along.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_ACCEPTED, STATUS_EXPIRED}),
    STATUS_ACCEPTED: frozenset({STATUS_PAYMENT_SENT, STATUS_EXPIRED}),
    STATUS_PAYMENT_SENT: frozenset({STATUS_APPROVED, STATUS_REJECTED}),
    STATUS_APPROVED: frozenset({STATUS_COMPLETED, STATUS_DISPUTED}),
    STATUS_REJECTED: frozenset(),
    STATUS_COMPLETED: frozenset(),
    STATUS_DISPUTED: frozenset(),
    STATUS_EXPIRED: frozenset(),
}

# Timestamp key written into the order's timestamps map on entering a status.
STATUS_TIMESTAMP_KEYS: dict[str, str] = {
    STATUS_ACCEPTED: "accepted",
    STATUS_PAYMENT_SENT: "payment_sent",
    STATUS_APPROVED: "approved",
    STATUS_REJECTED: "rejected",
    STATUS_COMPLETED: "completed",
    STATUS_DISPUTED: "disputed",
    STATUS_EXPIRED: "expired",
}

ROLE_CLIENT = "client"
ROLE_ADMIN = "admin"
ROLE_DEV = "dev"
ROLE_OWNER = "owner"
STAFF_ROLES = frozenset({ROLE_ADMIN, ROLE_DEV, ROLE_OWNER})

PLAN_TYPE_DAYS = "days"
PLAN_TYPE_CREDITS = "credits"
FREE_PLAN_ID = "free"


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def parse_iso_utc(raw_value: str | None) -> datetime | None:
    if not raw_value:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw_value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _load_json(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def _tri_state(value: Any) -> bool | None:
    if value is None:
        return None
    return bool(int(value))


@dataclass(frozen=True, slots=True)
class PlanDescriptor:
    """Snapshot of the purchased plan, frozen into the order at creation."""

    id: str
    name: str
    type: str
    price: int
    currency: str
    duration: int | None = None
    credits_per_day: int | None = None
    credits: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanDescriptor":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            type=str(data["type"]),
            price=int(data["price"]),
            currency=str(data.get("currency") or ""),
            duration=int(data["duration"]) if data.get("duration") is not None else None,
            credits_per_day=int(data["credits_per_day"]) if data.get("credits_per_day") is not None else None,
            credits=int(data["credits"]) if data.get("credits") is not None else None,
        )


@dataclass(slots=True)
class ConfirmationReminders:
    sent: int = 0
    last_sent_at: str | None = None
    max: int = 6


@dataclass(frozen=True, slots=True)
class CommissionShare:
    recipient_id: str
    role: str
    amount: float


@dataclass(frozen=True, slots=True)
class Commissions:
    price: float
    owner: CommissionShare
    devs: tuple[CommissionShare, ...]
    seller: CommissionShare

    @property
    def devs_total(self) -> float:
        return round(sum(share.amount for share in self.devs), 2)

    def shares(self) -> list[CommissionShare]:
        return [self.owner, *self.devs, self.seller]

    def to_dict(self) -> dict[str, Any]:
        return {
            "price": self.price,
            "owner": asdict(self.owner),
            "devs": [asdict(share) for share in self.devs],
            "seller": asdict(self.seller),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Commissions":
        return cls(
            price=float(data["price"]),
            owner=CommissionShare(**data["owner"]),
            devs=tuple(CommissionShare(**item) for item in data.get("devs") or []),
            seller=CommissionShare(**data["seller"]),
        )


@dataclass(slots=True)
class PurchaseOrder:
    id: str
    client_id: int
    client_username: str | None
    plan: PlanDescriptor
    status: str
    timestamps: dict[str, str] = field(default_factory=dict)
    admin_id: int | None = None
    admin_username: str | None = None
    payment_proof: dict[str, Any] | None = None
    awaiting_payment_proof: bool = False
    rejection_reason: str | None = None
    rejected_by: int | None = None
    approved_by: int | None = None
    client_confirmed: bool | None = None
    fraud_detected: bool = False
    fraud_reason: str | None = None
    auto_completed: bool = False
    confirmation_reminders: ConfirmationReminders = field(default_factory=ConfirmationReminders)
    commissions: Commissions | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def timestamp(self, key: str) -> datetime | None:
        return parse_iso_utc(self.timestamps.get(key))

    @property
    def expires_at(self) -> datetime | None:
        return self.timestamp("expires_at")

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at
        return expires_at is not None and expires_at < now

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PurchaseOrder":
        commissions_raw = _load_json(row.get("commissions_json"))
        return cls(
            id=str(row["id"]),
            client_id=int(row["client_id"]),
            client_username=row.get("client_username"),
            admin_id=int(row["admin_id"]) if row.get("admin_id") is not None else None,
            admin_username=row.get("admin_username"),
            plan=PlanDescriptor.from_dict(_load_json(row.get("plan_json")) or {}),
            status=str(row["status"]),
            timestamps=dict(_load_json(row.get("timestamps_json")) or {}),
            payment_proof=_load_json(row.get("payment_proof_json")),
            awaiting_payment_proof=bool(row.get("awaiting_payment_proof")),
            rejection_reason=row.get("rejection_reason"),
            rejected_by=row.get("rejected_by"),
            approved_by=row.get("approved_by"),
            client_confirmed=_tri_state(row.get("client_confirmed")),
            fraud_detected=bool(row.get("fraud_detected")),
            fraud_reason=row.get("fraud_reason"),
            auto_completed=bool(row.get("auto_completed")),
            confirmation_reminders=ConfirmationReminders(
                sent=int(row.get("reminders_sent") or 0),
                last_sent_at=row.get("reminders_last_sent_at"),
                max=int(row.get("reminders_max") or 6),
            ),
            commissions=Commissions.from_dict(commissions_raw) if commissions_raw else None,
        )


@dataclass(slots=True)
class UserAccount:
    telegram_id: int
    username: str | None
    role: str
    credits: int
    plan_id: str
    plan_type: str | None = None
    plan_expires_at: str | None = None
    plan_credits_per_day: int | None = None
    chat_id: int | None = None
    first_name: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def display_name(self) -> str:
        if self.username:
            return f"@{self.username}"
        if self.first_name:
            return self.first_name
        return f"ID{self.telegram_id}"

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "UserAccount":
        return cls(
            telegram_id=int(row["telegram_id"]),
            username=row.get("username"),
            first_name=row.get("first_name"),
            chat_id=row.get("chat_id"),
            role=str(row.get("role") or ROLE_CLIENT),
            credits=int(row.get("credits") or 0),
            plan_id=str(row.get("plan_id") or FREE_PLAN_ID),
            plan_type=row.get("plan_type"),
            plan_expires_at=row.get("plan_expires_at"),
            plan_credits_per_day=row.get("plan_credits_per_day"),
        )
