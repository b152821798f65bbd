"""Purchase order lifecycle: creation, acceptance, payment review and confirmation."""

from __future__ import annotations

import json
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from config import CFG, role_for_telegram_id
from database import db_get, db_set
from orders import ui
from orders.commissions import compute_commissions, ledger_entries, owner_recipient_id
from orders.fraud import evaluate_not_received
from orders.models import (
    ALL_STATUSES,
    FREE_PLAN_ID,
    PLAN_TYPE_CREDITS,
    PLAN_TYPE_DAYS,
    ROLE_DEV,
    ROLE_OWNER,
    STATUS_ACCEPTED,
    STATUS_APPROVED,
    STATUS_COMPLETED,
    STATUS_DISPUTED,
    STATUS_EXPIRED,
    STATUS_PAYMENT_SENT,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_TIMESTAMP_KEYS,
    PlanDescriptor,
    PurchaseOrder,
    UserAccount,
    can_transition,
    parse_iso_utc,
)
from orders.plans import ORDER_TTL_HOURS, get_plan
from orders.repository import OrderRepository
from orders.storage import ProofStorage


logger = logging.getLogger(__name__)

CLIENT_ORDERS_LIMIT = 10
STAFF_ORDERS_LIMIT = 20
STAFF_USERS_LIMIT = 20
REJECTION_REASON_MAX_LEN = 300
BANK_CONFIG_KEY = "bank_config"
BANK_ACCOUNT_RE = re.compile(r"^\d{10,20}$")
BANK_CLABE_RE = re.compile(r"^\d{18}$")


class OrderError(RuntimeError):
    """Base order domain error."""


class AccessDeniedError(OrderError):
    """Raised when the actor may not perform the operation."""


class ValidationError(OrderError):
    """Raised when input is invalid."""


class NotFoundError(OrderError):
    """Raised when requested object doesn't exist."""


class InvalidStateError(OrderError):
    """Raised when the order is not in a state that allows the operation."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_key(moment: datetime) -> str:
    """Earnings bucket key (``YYYY-MM``) in the bot's local timezone."""
    return moment.astimezone().strftime("%Y-%m")


def new_order_id() -> str:
    return secrets.token_hex(8)


class OrderService:
    def __init__(
        self,
        repository: OrderRepository | None = None,
        *,
        notifier: Any | None = None,
        storage: ProofStorage | None = None,
    ):
        self.repository = repository or OrderRepository()
        self.notifier = notifier
        self.storage = storage or ProofStorage()

    # --- users ---------------------------------------------------------

    async def register_user(
        self,
        telegram_id: int,
        *,
        username: str | None = None,
        first_name: str | None = None,
        chat_id: int | None = None,
    ) -> UserAccount:
        row = await self.repository.upsert_user(
            telegram_id,
            username=username,
            first_name=first_name,
            chat_id=chat_id,
            role=role_for_telegram_id(telegram_id),
        )
        return UserAccount.from_row(row)

    async def get_user(self, telegram_id: int) -> UserAccount | None:
        row = await self.repository.get_user(telegram_id)
        return UserAccount.from_row(row) if row else None

    async def require_staff(self, actor_id: int) -> UserAccount:
        user = await self.get_user(actor_id)
        if user is None or not user.is_staff:
            raise AccessDeniedError("Esta acción es solo para administradores.")
        return user

    async def _resolve_target(self, target: str | int) -> UserAccount:
        raw = str(target or "").strip()
        row = None
        if raw.lstrip("-").isdigit():
            row = await self.repository.get_user(int(raw))
        elif raw:
            row = await self.repository.find_user_by_username(raw)
        if row is None:
            raise NotFoundError("Usuario no encontrado. Debe haber usado /start.")
        return UserAccount.from_row(row)

    # --- notifications -------------------------------------------------

    async def _notify_text(self, chat_id: int | None, text: str, **kwargs: Any) -> bool:
        if self.notifier is None or chat_id is None:
            return False
        return bool(await self.notifier.send_text(int(chat_id), text, **kwargs))

    # --- orders --------------------------------------------------------

    async def _load(self, order_id: str) -> PurchaseOrder:
        row = await self.repository.get_order(str(order_id or "").strip())
        if row is None:
            raise NotFoundError("Orden no encontrada.")
        return PurchaseOrder.from_row(row)

    async def get_order(self, order_id: str) -> PurchaseOrder:
        return await self._load(order_id)

    async def _transition(
        self,
        order: PurchaseOrder,
        target: str,
        *,
        now: datetime,
        extra_where: dict[str, Any] | None = None,
        **fields: Any,
    ) -> bool:
        if not can_transition(order.status, target):
            raise InvalidStateError(
                f"La orden está en estado «{ui.status_title(order.status)}» y no puede cambiar."
            )
        return await self.repository.transition(
            order.id,
            from_status=order.status,
            to_status=target,
            timestamp_key=STATUS_TIMESTAMP_KEYS.get(target),
            now_iso=now.isoformat(),
            extra_where=extra_where,
            **fields,
        )

    async def _expire(self, order: PurchaseOrder, *, now: datetime) -> bool:
        changed = await self._transition(order, STATUS_EXPIRED, now=now, awaiting_payment_proof=0)
        if changed:
            logger.info("Order %s expired (was %s)", order.id, order.status)
            order.status = STATUS_EXPIRED
            await self._notify_text(order.client_id, ui.render_order_expired(order))
        return changed

    async def create_order(
        self,
        client_id: int,
        plan_id: str,
        *,
        client_username: str | None = None,
        now: datetime | None = None,
    ) -> PurchaseOrder:
        plan = get_plan(plan_id)
        if plan is None:
            raise ValidationError("Plan no válido.")
        moment = now or _utc_now()
        created_iso = moment.isoformat()
        expires_iso = (moment + timedelta(hours=ORDER_TTL_HOURS)).isoformat()
        order_id = new_order_id()
        await self.repository.insert_order(
            {
                "id": order_id,
                "client_id": int(client_id),
                "client_username": client_username,
                "plan": plan.to_dict(),
                "status": STATUS_PENDING,
                "timestamps": {"created": created_iso, "expires_at": expires_iso},
                "created_at": created_iso,
                "expires_at": expires_iso,
            }
        )
        order = await self._load(order_id)
        logger.info("Order %s created by %s for plan %s", order.id, client_id, plan.id)

        if self.notifier is not None:
            staff_ids = await self.repository.list_staff_ids()
            if staff_ids:
                await self.notifier.broadcast_text(
                    staff_ids,
                    ui.render_new_order_for_staff(order),
                    reply_markup=ui.accept_order_keyboard(order.id),
                )
            else:
                logger.warning("Order %s created but no staff is registered", order.id)
        return order

    async def accept_order(
        self,
        order_id: str,
        staff_id: int,
        *,
        staff_username: str | None = None,
        now: datetime | None = None,
    ) -> PurchaseOrder:
        await self.require_staff(staff_id)
        moment = now or _utc_now()
        order = await self._load(order_id)
        if order.status != STATUS_PENDING:
            raise InvalidStateError(self._already_processed_message(order))
        if order.is_expired(moment):
            await self._expire(order, now=moment)
            raise InvalidStateError("La orden expiró.")

        accepted = await self._transition(
            order,
            STATUS_ACCEPTED,
            now=moment,
            admin_id=int(staff_id),
            admin_username=staff_username,
        )
        if not accepted:
            # Another staff member won the race.
            raise InvalidStateError(self._already_processed_message(await self._load(order.id)))
        order = await self._load(order.id)
        logger.info("Order %s accepted by %s", order.id, staff_id)

        bank = await self.get_bank_config()
        await self._notify_text(order.client_id, ui.render_order_accepted_for_client(order, bank))
        return order

    @staticmethod
    def _already_processed_message(order: PurchaseOrder) -> str:
        if order.admin_id is not None:
            return f"Esta orden ya fue procesada por {ui.user_label(order.admin_id, order.admin_username)}."
        return "Esta orden ya fue procesada."

    async def request_payment_proof(self, client_id: int, *, now: datetime | None = None) -> PurchaseOrder:
        moment = now or _utc_now()
        row = await self.repository.find_latest_accepted_order(client_id)
        if row is None:
            raise NotFoundError("No tienes órdenes aceptadas esperando pago.")
        order = PurchaseOrder.from_row(row)
        if order.is_expired(moment):
            await self._expire(order, now=moment)
            raise InvalidStateError("Tu orden expiró. Crea una nueva con /buy.")
        marked = await self.repository.mark_awaiting_payment_proof(
            order.id,
            client_id=int(client_id),
            now_iso=moment.isoformat(),
        )
        if not marked:
            raise InvalidStateError("La orden ya no está esperando pago.")
        return await self._load(order.id)

    async def order_awaiting_proof(self, client_id: int) -> PurchaseOrder | None:
        row = await self.repository.find_order_awaiting_proof(client_id)
        return PurchaseOrder.from_row(row) if row else None

    async def attach_payment_proof(
        self,
        client_id: int,
        image: bytes,
        *,
        telegram_file_id: str | None = None,
        now: datetime | None = None,
    ) -> PurchaseOrder:
        moment = now or _utc_now()
        row = await self.repository.find_order_awaiting_proof(client_id)
        if row is None:
            raise NotFoundError(ui.NO_PROOF_REQUEST_TEXT)
        order = PurchaseOrder.from_row(row)
        if order.is_expired(moment):
            await self._expire(order, now=moment)
            raise InvalidStateError("Tu orden expiró. Crea una nueva con /buy.")

        proof = await self.storage.save(order.id, image, now=moment)
        claimed = await self._transition(
            order,
            STATUS_PAYMENT_SENT,
            now=moment,
            extra_where={"awaiting_payment_proof": 1},
            payment_proof_json=json.dumps(proof, ensure_ascii=False, separators=(",", ":")),
            awaiting_payment_proof=0,
        )
        if not claimed:
            await self.storage.discard(proof["file_name"])
            raise InvalidStateError("El comprobante ya fue enviado para esta orden.")
        order = await self._load(order.id)
        logger.info("Payment proof for order %s stored as %s", order.id, proof["file_name"])

        if self.notifier is not None and order.admin_id is not None:
            delivered = await self.notifier.send_photo(
                order.admin_id,
                telegram_file_id or proof["url"],
                caption=ui.render_proof_for_admin(order),
                reply_markup=ui.review_payment_keyboard(order.id),
            )
            if not delivered:
                logger.warning("Admin %s was not notified about proof for order %s", order.admin_id, order.id)
        return order

    async def approve_payment(self, order_id: str, staff_id: int, *, now: datetime | None = None) -> PurchaseOrder:
        await self.require_staff(staff_id)
        moment = now or _utc_now()
        order = await self._load(order_id)
        if order.status != STATUS_PAYMENT_SENT:
            raise InvalidStateError(
                f"Solo se pueden aprobar pagos en revisión (estado actual: {ui.status_title(order.status)})."
            )
        approved = await self._transition(order, STATUS_APPROVED, now=moment, approved_by=int(staff_id))
        if not approved:
            raise InvalidStateError("El pago ya fue revisado por otro administrador.")
        order = await self._load(order.id)
        logger.info("Payment for order %s approved by %s", order.id, staff_id)

        try:
            await self._grant(order.client_id, order.plan, now=moment)
            seller_id = order.admin_id if order.admin_id is not None else int(staff_id)
            commissions = compute_commissions(
                order.plan.price,
                seller_id=seller_id,
                dev_ids=CFG.dev_ids,
                owner_id=CFG.owner_id,
            )
            await self.repository.set_commissions(order.id, commissions.to_dict())
            await self.repository.record_earnings(
                ledger_entries(commissions),
                month_key=month_key(moment),
                now_iso=moment.isoformat(),
            )
            order.commissions = commissions
        except Exception:
            logger.exception("Post-approval processing failed for order %s", order.id)

        await self._notify_text(order.client_id, ui.render_payment_approved(order))
        return order

    async def _grant(self, telegram_id: int, plan: PlanDescriptor, *, now: datetime) -> None:
        if plan.type == PLAN_TYPE_CREDITS:
            changed = await self.repository.add_credits(telegram_id, int(plan.credits or 0))
        elif plan.type == PLAN_TYPE_DAYS:
            user = await self.get_user(telegram_id)
            base = now
            current_expiry = parse_iso_utc(user.plan_expires_at) if user else None
            if current_expiry is not None and current_expiry > base:
                base = current_expiry
            changed = await self.repository.set_days_plan(
                telegram_id,
                plan_id=plan.id,
                plan_type=PLAN_TYPE_DAYS,
                expires_at=(base + timedelta(days=int(plan.duration or 0))).isoformat(),
                credits_per_day=plan.credits_per_day,
            )
        else:
            raise ValidationError(f"Tipo de plan desconocido: {plan.type}")
        if not changed:
            raise NotFoundError(f"User {telegram_id} not found for grant")

    async def _rollback_grant(self, user: UserAccount, plan: PlanDescriptor, *, now: datetime) -> None:
        if plan.type == PLAN_TYPE_DAYS:
            await self.repository.reset_plan(user.telegram_id, free_plan_id=FREE_PLAN_ID, expires_at=now.isoformat())
        elif plan.type == PLAN_TYPE_CREDITS:
            await self.repository.add_credits(user.telegram_id, -int(plan.credits or 0))

    async def reject_payment(
        self,
        order_id: str,
        staff_id: int,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> PurchaseOrder:
        await self.require_staff(staff_id)
        moment = now or _utc_now()
        cleaned_reason = str(reason or "").strip()[:REJECTION_REASON_MAX_LEN] or "Sin motivo"
        order = await self._load(order_id)
        if order.status != STATUS_PAYMENT_SENT:
            raise InvalidStateError(
                f"Solo se pueden rechazar pagos en revisión (estado actual: {ui.status_title(order.status)})."
            )
        rejected = await self._transition(
            order,
            STATUS_REJECTED,
            now=moment,
            rejection_reason=cleaned_reason,
            rejected_by=int(staff_id),
        )
        if not rejected:
            raise InvalidStateError("El pago ya fue revisado por otro administrador.")
        order = await self._load(order.id)
        logger.info("Payment for order %s rejected by %s", order.id, staff_id)
        await self._notify_text(order.client_id, ui.render_payment_rejected(order))
        return order

    async def _load_for_client(self, order_id: str, client_id: int) -> PurchaseOrder:
        order = await self._load(order_id)
        if order.client_id != int(client_id):
            raise AccessDeniedError("Esta orden no es tuya.")
        if order.status != STATUS_APPROVED:
            raise InvalidStateError("Esta orden ya fue confirmada o no está aprobada.")
        return order

    async def confirm_received(self, order_id: str, client_id: int, *, now: datetime | None = None) -> PurchaseOrder:
        moment = now or _utc_now()
        order = await self._load_for_client(order_id, client_id)
        completed = await self._transition(order, STATUS_COMPLETED, now=moment, client_confirmed=1)
        if not completed:
            raise InvalidStateError("Esta orden ya fue confirmada.")
        logger.info("Order %s confirmed as received by client %s", order.id, client_id)
        return await self._load(order.id)

    async def confirm_not_received(
        self,
        order_id: str,
        client_id: int,
        *,
        now: datetime | None = None,
    ) -> PurchaseOrder:
        moment = now or _utc_now()
        order = await self._load_for_client(order_id, client_id)
        user = await self.get_user(order.client_id)
        verdict = evaluate_not_received(order, user, moment)

        disputed = await self._transition(
            order,
            STATUS_DISPUTED,
            now=moment,
            client_confirmed=0,
            fraud_detected=1 if verdict.fraud_detected else 0,
            fraud_reason=verdict.reason,
        )
        if not disputed:
            raise InvalidStateError("Esta orden ya fue confirmada.")

        if verdict.fraud_detected and user is not None:
            logger.warning("Fraud suspected on order %s: %s", order.id, verdict.reason)
            try:
                await self._rollback_grant(user, order.plan, now=moment)
            except Exception:
                logger.exception("Failed to roll back grant for order %s", order.id)
        else:
            logger.info("Order %s disputed by client %s", order.id, client_id)

        order = await self._load(order.id)
        await self._notify_text(order.admin_id, ui.render_dispute_for_admin(order))
        await self._notify_text(order.client_id, ui.render_dispute_for_client(order))
        return order

    async def expire_stale_orders(self, *, now: datetime | None = None) -> dict[str, int]:
        moment = now or _utc_now()
        rows = await self.repository.list_expirable_orders(now_iso=moment.isoformat())
        expired = 0
        for row in rows:
            order = PurchaseOrder.from_row(row)
            if not order.is_expired(moment):
                continue
            if await self._expire(order, now=moment):
                expired += 1
        return {"scanned": len(rows), "expired": expired}

    # --- read side -----------------------------------------------------

    async def list_client_orders(self, client_id: int, *, limit: int = CLIENT_ORDERS_LIMIT) -> list[PurchaseOrder]:
        rows = await self.repository.list_client_orders(client_id, limit=limit)
        return [PurchaseOrder.from_row(row) for row in rows]

    async def list_orders(
        self,
        actor_id: int,
        *,
        status: str | None = None,
        limit: int = STAFF_ORDERS_LIMIT,
    ) -> list[PurchaseOrder]:
        await self.require_staff(actor_id)
        normalized = str(status or "").strip().lower() or None
        if normalized is not None and normalized not in ALL_STATUSES:
            raise ValidationError("Estado no válido. Opciones: " + ", ".join(ALL_STATUSES))
        rows = await self.repository.list_orders(status=normalized, limit=limit)
        return [PurchaseOrder.from_row(row) for row in rows]

    async def list_users(self, actor_id: int, *, limit: int = STAFF_USERS_LIMIT) -> list[UserAccount]:
        await self.require_staff(actor_id)
        rows = await self.repository.list_users(limit=limit)
        return [UserAccount.from_row(row) for row in rows]

    async def order_stats(self, actor_id: int) -> dict[str, Any]:
        await self.require_staff(actor_id)
        by_status = await self.repository.count_orders_by_status()
        return {
            "by_status": by_status,
            "total": sum(by_status.values()),
            "fraud": await self.repository.count_fraud_orders(),
        }

    async def get_earnings(self, actor_id: int) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
        actor = await self.require_staff(actor_id)
        recipient_id = owner_recipient_id(CFG.owner_id) if actor.role == ROLE_OWNER else str(actor.telegram_id)
        earnings = await self.repository.get_earnings(recipient_id)
        monthly = await self.repository.list_monthly_earnings(recipient_id)
        return earnings, monthly

    # --- staff grants --------------------------------------------------

    async def add_credits(self, actor_id: int, target: str | int, amount: int) -> UserAccount:
        await self.require_staff(actor_id)
        try:
            delta = int(amount)
        except (TypeError, ValueError):
            raise ValidationError("La cantidad debe ser un número entero.") from None
        if delta == 0:
            raise ValidationError("La cantidad no puede ser cero.")
        user = await self._resolve_target(target)
        await self.repository.add_credits(user.telegram_id, delta)
        logger.info("Staff %s adjusted credits of %s by %s", actor_id, user.telegram_id, delta)
        updated = await self.get_user(user.telegram_id)
        if updated is None:
            raise NotFoundError("Usuario no encontrado.")
        return updated

    async def set_plan(
        self,
        actor_id: int,
        target: str | int,
        plan_id: str,
        *,
        now: datetime | None = None,
    ) -> UserAccount:
        await self.require_staff(actor_id)
        plan = get_plan(plan_id)
        if plan is None:
            raise ValidationError("Plan no válido.")
        user = await self._resolve_target(target)
        await self._grant(user.telegram_id, plan, now=now or _utc_now())
        logger.info("Staff %s granted plan %s to %s", actor_id, plan.id, user.telegram_id)
        updated = await self.get_user(user.telegram_id)
        if updated is None:
            raise NotFoundError("Usuario no encontrado.")
        return updated

    # --- bank config ---------------------------------------------------

    async def get_bank_config(self) -> dict[str, str] | None:
        raw = await db_get(BANK_CONFIG_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Stored bank config is not valid JSON")
            return None
        return data if isinstance(data, dict) else None

    async def set_bank_config(self, actor_id: int, raw_value: str) -> dict[str, str]:
        actor = await self.require_staff(actor_id)
        if actor.role not in {ROLE_OWNER, ROLE_DEV}:
            raise AccessDeniedError("Solo el dueño o los devs pueden cambiar los datos bancarios.")
        parts = [part.strip() for part in str(raw_value or "").split("|")]
        if len(parts) != 4 or not all(parts):
            raise ValidationError("Formato: banco|cuenta|clabe|titular")
        bank, account, clabe, holder = parts
        account = account.replace(" ", "")
        clabe = clabe.replace(" ", "")
        if not BANK_ACCOUNT_RE.match(account):
            raise ValidationError("La cuenta debe tener entre 10 y 20 dígitos.")
        if not BANK_CLABE_RE.match(clabe):
            raise ValidationError("La CLABE debe tener 18 dígitos.")
        config = {"bank": bank, "account": account, "clabe": clabe, "holder": holder}
        await db_set(BANK_CONFIG_KEY, json.dumps(config, ensure_ascii=False, separators=(",", ":")))
        logger.info("Bank config updated by %s", actor_id)
        return config
