"""UI rendering helpers for the order workflow (texts and keyboards)."""

from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Any, Iterable

from aiogram.types import InlineKeyboardMarkup

from orders.models import (
    PLAN_TYPE_DAYS,
    ROLE_ADMIN,
    ROLE_CLIENT,
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
    PlanDescriptor,
    PurchaseOrder,
    UserAccount,
    parse_iso_utc,
)
from orders.plans import get_plan
from tg_buttons import STYLE_DANGER, STYLE_PRIMARY, STYLE_SUCCESS, ikb

CB_BUY_PREFIX = "buy_"
CB_ACCEPT_PREFIX = "accept_purchase_"
CB_APPROVE_PREFIX = "approve_payment_"
CB_REJECT_PREFIX = "reject_payment_"
CB_CONFIRM_PREFIX = "confirm_received_"
CB_DENY_PREFIX = "confirm_not_received_"

NO_PROOF_REQUEST_TEXT = "No hay ninguna orden esperando comprobante. Usa /capturapago primero."

STATUS_TITLES: dict[str, str] = {
    STATUS_PENDING: "⏳ Pendiente",
    STATUS_ACCEPTED: "🤝 Aceptada, esperando pago",
    STATUS_PAYMENT_SENT: "🧾 Comprobante en revisión",
    STATUS_APPROVED: "✅ Aprobada",
    STATUS_REJECTED: "❌ Rechazada",
    STATUS_COMPLETED: "🏁 Completada",
    STATUS_DISPUTED: "⚠️ En disputa",
    STATUS_EXPIRED: "⌛ Expirada",
}


def escape(value: Any) -> str:
    return html.escape(str(value if value is not None else ""))


def status_title(status: str) -> str:
    return STATUS_TITLES.get(status, status)


def format_money(amount: float | int, currency: str = "") -> str:
    text = f"${float(amount):,.2f}"
    return f"{text} {currency}".strip()


def format_dt(raw_value: str | None) -> str:
    parsed = parse_iso_utc(raw_value)
    if parsed is None:
        return "—"
    return parsed.astimezone().strftime("%d.%m.%Y %H:%M")


def plan_summary(plan: PlanDescriptor) -> str:
    if plan.type == PLAN_TYPE_DAYS:
        return f"{plan.name}: {plan.duration} días, {plan.credits_per_day} créditos/día"
    return f"{plan.name}: {plan.credits} créditos"


def user_label(user_id: int | None, username: str | None) -> str:
    if username:
        return f"@{escape(username)}"
    return f"ID {user_id}"


# --- keyboards -----------------------------------------------------------

def plans_keyboard(plans: Iterable[PlanDescriptor]) -> InlineKeyboardMarkup:
    rows = [
        [ikb(f"{plan.name} · {format_money(plan.price, plan.currency)}", callback_data=f"{CB_BUY_PREFIX}{plan.id}")]
        for plan in plans
    ]
    return InlineKeyboardMarkup(inline_keyboard=rows)


def accept_order_keyboard(order_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[[ikb("🤝 Aceptar orden", callback_data=f"{CB_ACCEPT_PREFIX}{order_id}", style=STYLE_PRIMARY)]]
    )


def review_payment_keyboard(order_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [
                ikb("✅ Aprobar", callback_data=f"{CB_APPROVE_PREFIX}{order_id}", style=STYLE_SUCCESS),
                ikb("❌ Rechazar", callback_data=f"{CB_REJECT_PREFIX}{order_id}", style=STYLE_DANGER),
            ]
        ]
    )


def confirmation_keyboard(order_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [ikb("✅ Sí, lo recibí", callback_data=f"{CB_CONFIRM_PREFIX}{order_id}", style=STYLE_SUCCESS)],
            [ikb("❌ No lo recibí", callback_data=f"{CB_DENY_PREFIX}{order_id}", style=STYLE_DANGER)],
        ]
    )


# --- texts ---------------------------------------------------------------

def render_plans_text(plans: Iterable[PlanDescriptor]) -> str:
    lines = ["🛒 <b>Planes disponibles</b>", ""]
    for plan in plans:
        lines.append(f"• {escape(plan_summary(plan))}: <b>{format_money(plan.price, plan.currency)}</b>")
    lines.extend(["", "Elige un plan para crear tu orden."])
    return "\n".join(lines)


def render_order_created(order: PurchaseOrder) -> str:
    return (
        "🧾 <b>Orden creada</b>\n\n"
        f"ID: <code>{escape(order.id)}</code>\n"
        f"Plan: {escape(plan_summary(order.plan))}\n"
        f"Precio: <b>{format_money(order.plan.price, order.plan.currency)}</b>\n"
        f"Expira: {format_dt(order.timestamps.get('expires_at'))}\n\n"
        "Un administrador atenderá tu orden en breve."
    )


def render_new_order_for_staff(order: PurchaseOrder) -> str:
    return (
        "🆕 <b>Nueva orden de compra</b>\n\n"
        f"ID: <code>{escape(order.id)}</code>\n"
        f"Cliente: {user_label(order.client_id, order.client_username)}\n"
        f"Plan: {escape(plan_summary(order.plan))}\n"
        f"Precio: <b>{format_money(order.plan.price, order.plan.currency)}</b>"
    )


def render_bank_details(bank: dict[str, Any] | None) -> str:
    if not bank:
        return "El administrador te enviará los datos de pago por este chat."
    lines = ["🏦 <b>Datos para el pago</b>"]
    if bank.get("bank"):
        lines.append(f"Banco: {escape(bank['bank'])}")
    if bank.get("account"):
        lines.append(f"Cuenta: <code>{escape(bank['account'])}</code>")
    if bank.get("clabe"):
        lines.append(f"CLABE: <code>{escape(bank['clabe'])}</code>")
    if bank.get("holder"):
        lines.append(f"Titular: {escape(bank['holder'])}")
    return "\n".join(lines)


def render_order_accepted_for_client(order: PurchaseOrder, bank: dict[str, Any] | None) -> str:
    return (
        "🤝 <b>Tu orden fue aceptada</b>\n\n"
        f"ID: <code>{escape(order.id)}</code>\n"
        f"Atiende: {user_label(order.admin_id, order.admin_username)}\n"
        f"Monto: <b>{format_money(order.plan.price, order.plan.currency)}</b>\n\n"
        f"{render_bank_details(bank)}\n\n"
        "Cuando pagues usa /capturapago y envía la foto del comprobante."
    )


def render_proof_for_admin(order: PurchaseOrder) -> str:
    proof = order.payment_proof or {}
    url = proof.get("url")
    link = f'\n<a href="{escape(url)}">Ver comprobante</a>' if url else ""
    return (
        "🧾 <b>Comprobante recibido</b>\n\n"
        f"Orden: <code>{escape(order.id)}</code>\n"
        f"Cliente: {user_label(order.client_id, order.client_username)}\n"
        f"Plan: {escape(plan_summary(order.plan))}\n"
        f"Monto: <b>{format_money(order.plan.price, order.plan.currency)}</b>"
        f"{link}"
    )


def render_payment_approved(order: PurchaseOrder) -> str:
    return (
        "✅ <b>Pago aprobado</b>\n\n"
        f"Orden: <code>{escape(order.id)}</code>\n"
        f"Se activó: {escape(plan_summary(order.plan))}\n\n"
        "¡Gracias por tu compra!"
    )


def render_payment_rejected(order: PurchaseOrder) -> str:
    reason = order.rejection_reason or "Sin motivo"
    return (
        "❌ <b>Pago rechazado</b>\n\n"
        f"Orden: <code>{escape(order.id)}</code>\n"
        f"Motivo: {escape(reason)}\n\n"
        "Si crees que es un error contacta a soporte."
    )


def render_confirmation_prompt(order: PurchaseOrder, *, reminder_number: int, reminders_max: int) -> str:
    header = "📦 <b>¿Recibiste tu compra?</b>" if reminder_number <= 1 else (
        f"🔔 <b>Recordatorio {reminder_number}/{reminders_max}</b>"
    )
    return (
        f"{header}\n\n"
        f"Orden: <code>{escape(order.id)}</code>\n"
        f"Plan: {escape(plan_summary(order.plan))}\n\n"
        "Confirma si recibiste lo que compraste. Si no respondes, la orden se "
        "completará automáticamente."
    )


def render_auto_completed(order: PurchaseOrder) -> str:
    return (
        "🏁 <b>Orden completada automáticamente</b>\n\n"
        f"Orden: <code>{escape(order.id)}</code>\n"
        "No recibimos respuesta, así que la marcamos como recibida."
    )


def render_order_expired(order: PurchaseOrder) -> str:
    return (
        "⌛ <b>Orden expirada</b>\n\n"
        f"Orden: <code>{escape(order.id)}</code>\n"
        "Pasaron 24 horas sin completarse. Puedes crear una nueva con /buy."
    )


def render_dispute_for_admin(order: PurchaseOrder) -> str:
    if order.fraud_detected:
        return (
            "🚨 <b>Posible fraude</b>\n\n"
            f"Orden: <code>{escape(order.id)}</code>\n"
            f"Cliente: {user_label(order.client_id, order.client_username)}\n"
            f"Motivo: {escape(order.fraud_reason or '')}\n\n"
            "El cliente dice no haber recibido la compra pero el beneficio estaba activo. "
            "Se revirtió lo otorgado."
        )
    return (
        "⚠️ <b>Reclamo del cliente</b>\n\n"
        f"Orden: <code>{escape(order.id)}</code>\n"
        f"Cliente: {user_label(order.client_id, order.client_username)}\n"
        f"Plan: {escape(plan_summary(order.plan))}\n\n"
        "El cliente indica que no recibió su compra. Revisa el caso."
    )


def render_dispute_for_client(order: PurchaseOrder) -> str:
    if order.fraud_detected:
        removed = "tu plan ha sido removido" if order.plan.type == PLAN_TYPE_DAYS else "tus créditos han sido removidos"
        return (
            "🚫 <b>Reclamo rechazado</b>\n\n"
            f"Orden: <code>{escape(order.id)}</code>\n"
            f"Tu compra aparecía activa en tu cuenta, por lo que {removed} "
            "y el caso quedó marcado para revisión. Si es un error, contacta a un administrador."
        )
    return (
        "📨 <b>Reclamo registrado</b>\n\n"
        f"Orden: <code>{escape(order.id)}</code>\n"
        "Un administrador revisará tu caso y te contactará pronto."
    )


def render_order_line(order: PurchaseOrder) -> str:
    return (
        f"<code>{escape(order.id)}</code> · {escape(order.plan.name)} · "
        f"{format_money(order.plan.price, order.plan.currency)}\n"
        f"   {status_title(order.status)} · {format_dt(order.timestamps.get('created'))}"
    )


def render_client_orders(orders: list[PurchaseOrder]) -> str:
    if not orders:
        return "No tienes órdenes todavía. Usa /buy para comprar."
    return "📋 <b>Tus órdenes</b>\n\n" + "\n".join(render_order_line(order) for order in orders)


def render_staff_orders(orders: list[PurchaseOrder], status: str | None) -> str:
    title = f"📋 <b>Órdenes</b> ({escape(status_title(status))})" if status else "📋 <b>Órdenes recientes</b>"
    if not orders:
        return f"{title}\n\nSin resultados."
    lines = [title, ""]
    for order in orders:
        lines.append(render_order_line(order))
        lines.append(f"   Cliente: {user_label(order.client_id, order.client_username)}")
    return "\n".join(lines)


ROLE_TITLES = {
    ROLE_OWNER: "👑 Dueño",
    ROLE_DEV: "🛠 Dev",
    ROLE_ADMIN: "🛡 Admin",
    ROLE_CLIENT: "👤 Cliente",
}


def render_users(users: list[UserAccount]) -> str:
    if not users:
        return "👥 <b>Usuarios</b>\n\nSin usuarios registrados."
    lines = [f"👥 <b>Últimos {len(users)} usuarios</b>", ""]
    for user in users:
        plan = get_plan(user.plan_id)
        plan_name = plan.name if plan is not None else user.plan_id
        lines.append(
            f"{user_label(user.telegram_id, user.username)} · <code>{user.telegram_id}</code>\n"
            f"   {ROLE_TITLES.get(user.role, escape(user.role))} · {user.credits} créditos · "
            f"{escape(plan_name)} (vence {format_dt(user.plan_expires_at)})"
        )
    return "\n".join(lines)


def render_stats(stats: dict[str, Any]) -> str:
    by_status: dict[str, int] = stats.get("by_status") or {}
    lines = ["📊 <b>Estadísticas de órdenes</b>", ""]
    for status, title in STATUS_TITLES.items():
        lines.append(f"{title}: <b>{int(by_status.get(status, 0))}</b>")
    lines.append("")
    lines.append(f"Total: <b>{int(stats.get('total') or 0)}</b>")
    lines.append(f"Fraudes detectados: <b>{int(stats.get('fraud') or 0)}</b>")
    return "\n".join(lines)


def render_earnings(earnings: dict[str, Any] | None, monthly: list[dict[str, Any]], currency: str) -> str:
    if not earnings:
        return "💰 Aún no tienes ganancias registradas."
    lines = [
        "💰 <b>Tus ganancias</b>",
        "",
        f"Ventas: <b>{int(earnings.get('total_sales') or 0)}</b>",
        f"Monto vendido: {format_money(earnings.get('total_amount') or 0, currency)}",
        f"Comisiones: <b>{format_money(earnings.get('total_commissions') or 0, currency)}</b>",
        f"Pagadas: {format_money(earnings.get('paid_commissions') or 0, currency)}",
        f"Pendientes: {format_money(earnings.get('pending_commissions') or 0, currency)}",
    ]
    if monthly:
        lines.extend(["", "<b>Por mes</b>"])
        for bucket in monthly:
            lines.append(
                f"{escape(bucket['month_key'])}: {int(bucket.get('sales') or 0)} ventas · "
                f"{format_money(bucket.get('commission') or 0, currency)}"
            )
    return "\n".join(lines)


def render_user_balance(user: dict[str, Any] | None) -> str:
    if not user:
        return "No encontramos tu cuenta. Usa /start."
    return f"💳 Tienes <b>{int(user.get('credits') or 0)}</b> créditos."


def render_user_plan(user: dict[str, Any] | None, plan: PlanDescriptor | None) -> str:
    if not user:
        return "No encontramos tu cuenta. Usa /start."
    expires_at = parse_iso_utc(user.get("plan_expires_at"))
    active = expires_at is not None and expires_at > datetime.now(timezone.utc)
    if plan is None or user.get("plan_type") != PLAN_TYPE_DAYS or not active:
        return "📅 No tienes un plan activo. Usa /buy para contratar uno."
    return (
        f"📅 Plan: <b>{escape(plan.name)}</b>\n"
        f"Créditos por día: {int(user.get('plan_credits_per_day') or 0)}\n"
        f"Vence: {format_dt(user.get('plan_expires_at'))}"
    )


def render_help(*, is_staff: bool) -> str:
    lines = [
        "ℹ️ <b>Comandos</b>",
        "",
        "/buy — ver planes y comprar",
        "/capturapago — enviar comprobante de pago",
        "/misordenes — ver tus órdenes",
        "/creditos — ver tus créditos",
        "/plan — ver tu plan",
    ]
    if is_staff:
        lines.extend(
            [
                "",
                "<b>Staff</b>",
                "/orders [estado] — listar órdenes",
                "/approve &lt;id&gt; — aprobar pago",
                "/reject &lt;id&gt; [motivo] — rechazar pago",
                "/ganancias — ver ganancias",
                "/stats — estadísticas",
                "/users — últimos usuarios",
                "/addcredits &lt;usuario&gt; &lt;cantidad&gt;",
                "/setplan &lt;usuario&gt; &lt;plan&gt;",
                "/banca — ver datos bancarios",
                "/setbanca banco|cuenta|clabe|titular",
            ]
        )
    return "\n".join(lines)
