"""Telegram handlers for the purchase order workflow."""

from __future__ import annotations

import logging

from aiogram import F, Router
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest
from aiogram.filters import Command, CommandObject, CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import CallbackQuery, Message

from config import CFG
from middlewares import clear_user_cache
from orders import ui
from orders.models import UserAccount
from orders.plans import get_plan, list_plans
from orders.service import (
    AccessDeniedError,
    InvalidStateError,
    NotFoundError,
    OrderService,
    ValidationError,
)

logger = logging.getLogger(__name__)
router = Router()

DOMAIN_ERRORS = (ValidationError, NotFoundError, AccessDeniedError, InvalidStateError)
GENERIC_FAILURE_TEXT = "⚠️ No se pudo completar la acción. Intenta de nuevo más tarde."


class RejectStates(StatesGroup):
    waiting_reason = State()


class ProofStates(StatesGroup):
    waiting_photo = State()


def _actor(message: Message | CallbackQuery) -> tuple[int, str | None]:
    user = message.from_user
    if user is None:
        chat = message.chat if isinstance(message, Message) else message.message.chat
        return chat.id, None
    return user.id, user.username


async def _drop_keyboard(callback: CallbackQuery) -> None:
    if callback.message is None:
        return
    try:
        await callback.message.edit_reply_markup(reply_markup=None)
    except TelegramBadRequest:
        # Message too old or already edited.
        pass


# --- client commands -----------------------------------------------------

@router.message(CommandStart())
async def cmd_start(message: Message, state: FSMContext, order_service: OrderService) -> None:
    await state.clear()
    tg_user = message.from_user
    if tg_user is None:
        return
    user = await order_service.register_user(
        tg_user.id,
        username=tg_user.username,
        first_name=tg_user.first_name,
        chat_id=message.chat.id,
    )
    clear_user_cache(tg_user.id)
    await message.answer(
        f"👋 Bienvenido a <b>{ui.escape(CFG.bot_name)}</b>, {ui.escape(user.display_name)}.\n\n"
        "Usa /buy para ver los planes o /help para ver todos los comandos."
    )


@router.message(Command("help"))
async def cmd_help(message: Message, user: UserAccount | None = None) -> None:
    await message.answer(ui.render_help(is_staff=bool(user and user.is_staff)))


@router.message(Command("buy"))
async def cmd_buy(message: Message) -> None:
    plans = list_plans()
    await message.answer(ui.render_plans_text(plans), reply_markup=ui.plans_keyboard(plans))


@router.callback_query(F.data.startswith(ui.CB_BUY_PREFIX))
async def cb_buy(callback: CallbackQuery, order_service: OrderService) -> None:
    plan_id = str(callback.data or "")[len(ui.CB_BUY_PREFIX):]
    client_id, username = _actor(callback)
    try:
        order = await order_service.create_order(client_id, plan_id, client_username=username)
    except DOMAIN_ERRORS as error:
        await callback.answer(str(error), show_alert=True)
        return
    await callback.answer()
    if callback.message is not None:
        await callback.message.answer(ui.render_order_created(order))


@router.message(Command("capturapago"))
async def cmd_capture_payment(message: Message, state: FSMContext, order_service: OrderService) -> None:
    client_id, _ = _actor(message)
    try:
        order = await order_service.request_payment_proof(client_id)
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    await state.set_state(ProofStates.waiting_photo)
    await message.answer(
        f"📸 Envía ahora la foto del comprobante para la orden <code>{ui.escape(order.id)}</code> "
        f"({ui.format_money(order.plan.price, order.plan.currency)})."
    )


@router.message(F.photo)
async def on_payment_photo(message: Message, state: FSMContext, order_service: OrderService) -> None:
    client_id, _ = _actor(message)
    if await order_service.order_awaiting_proof(client_id) is None:
        await message.answer(ui.NO_PROOF_REQUEST_TEXT)
        return
    largest = message.photo[-1]
    try:
        buffer = await message.bot.download(largest.file_id)
    except TelegramAPIError:
        logger.exception("Failed to download payment proof from %s", client_id)
        await message.answer(GENERIC_FAILURE_TEXT)
        return
    if buffer is None:
        await message.answer(GENERIC_FAILURE_TEXT)
        return
    try:
        order = await order_service.attach_payment_proof(
            client_id,
            buffer.getvalue(),
            telegram_file_id=largest.file_id,
        )
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    await state.clear()
    await message.answer(
        f"✅ Comprobante recibido para la orden <code>{ui.escape(order.id)}</code>. "
        "Un administrador lo revisará pronto."
    )


@router.message(ProofStates.waiting_photo, ~F.text.startswith("/"))
async def on_proof_not_photo(message: Message) -> None:
    await message.answer("Envía una <b>foto</b> del comprobante, o /cancel para salir.")


@router.message(Command("misordenes"))
async def cmd_my_orders(message: Message, order_service: OrderService) -> None:
    client_id, _ = _actor(message)
    orders = await order_service.list_client_orders(client_id)
    await message.answer(ui.render_client_orders(orders))


@router.message(Command("creditos"))
async def cmd_credits(message: Message, order_service: OrderService) -> None:
    client_id, _ = _actor(message)
    row = await order_service.repository.get_user(client_id)
    await message.answer(ui.render_user_balance(row))


@router.message(Command("plan"))
async def cmd_plan(message: Message, order_service: OrderService) -> None:
    client_id, _ = _actor(message)
    row = await order_service.repository.get_user(client_id)
    plan = get_plan(row.get("plan_id")) if row else None
    await message.answer(ui.render_user_plan(row, plan))


@router.message(Command("cancel"))
async def cmd_cancel(message: Message, state: FSMContext) -> None:
    await state.clear()
    await message.answer("Acción cancelada.")


@router.callback_query(F.data.startswith(ui.CB_CONFIRM_PREFIX))
async def cb_confirm_received(callback: CallbackQuery, order_service: OrderService) -> None:
    order_id = str(callback.data or "")[len(ui.CB_CONFIRM_PREFIX):]
    client_id, _ = _actor(callback)
    try:
        await order_service.confirm_received(order_id, client_id)
    except DOMAIN_ERRORS as error:
        await callback.answer(str(error), show_alert=True)
        return
    await callback.answer("¡Gracias por confirmar!")
    await _drop_keyboard(callback)


@router.callback_query(F.data.startswith(ui.CB_DENY_PREFIX))
async def cb_confirm_not_received(callback: CallbackQuery, order_service: OrderService) -> None:
    order_id = str(callback.data or "")[len(ui.CB_DENY_PREFIX):]
    client_id, _ = _actor(callback)
    try:
        await order_service.confirm_not_received(order_id, client_id)
    except DOMAIN_ERRORS as error:
        await callback.answer(str(error), show_alert=True)
        return
    await callback.answer("Reporte recibido.")
    await _drop_keyboard(callback)


# --- staff ---------------------------------------------------------------

@router.callback_query(F.data.startswith(ui.CB_ACCEPT_PREFIX))
async def cb_accept_purchase(callback: CallbackQuery, order_service: OrderService) -> None:
    order_id = str(callback.data or "")[len(ui.CB_ACCEPT_PREFIX):]
    staff_id, username = _actor(callback)
    try:
        order = await order_service.accept_order(order_id, staff_id, staff_username=username)
    except DOMAIN_ERRORS as error:
        await callback.answer(str(error), show_alert=True)
        await _drop_keyboard(callback)
        return
    await callback.answer("Orden aceptada.")
    await _drop_keyboard(callback)
    if callback.message is not None:
        await callback.message.answer(
            f"🤝 Aceptaste la orden <code>{ui.escape(order.id)}</code>. "
            "Se enviaron los datos de pago al cliente."
        )


@router.callback_query(F.data.startswith(ui.CB_APPROVE_PREFIX))
async def cb_approve_payment(callback: CallbackQuery, order_service: OrderService) -> None:
    order_id = str(callback.data or "")[len(ui.CB_APPROVE_PREFIX):]
    staff_id, _ = _actor(callback)
    try:
        order = await order_service.approve_payment(order_id, staff_id)
    except DOMAIN_ERRORS as error:
        await callback.answer(str(error), show_alert=True)
        return
    await callback.answer("Pago aprobado.")
    await _drop_keyboard(callback)
    if callback.message is not None:
        await callback.message.answer(f"✅ Pago de la orden <code>{ui.escape(order.id)}</code> aprobado.")


@router.callback_query(F.data.startswith(ui.CB_REJECT_PREFIX))
async def cb_reject_payment(
    callback: CallbackQuery,
    state: FSMContext,
    user: UserAccount | None = None,
) -> None:
    order_id = str(callback.data or "")[len(ui.CB_REJECT_PREFIX):]
    if user is None or not user.is_staff:
        await callback.answer("Esta acción es solo para administradores.", show_alert=True)
        return
    await state.set_state(RejectStates.waiting_reason)
    await state.update_data(order_id=order_id)
    await callback.answer()
    if callback.message is not None:
        await callback.message.answer(
            f"✍️ Escribe el motivo del rechazo para la orden <code>{ui.escape(order_id)}</code> (o /cancel)."
        )


@router.message(RejectStates.waiting_reason, F.text, ~F.text.startswith("/"))
async def on_reject_reason(message: Message, state: FSMContext, order_service: OrderService) -> None:
    data = await state.get_data()
    staff_id, _ = _actor(message)
    try:
        order = await order_service.reject_payment(str(data.get("order_id") or ""), staff_id, message.text)
    except DOMAIN_ERRORS as error:
        await state.clear()
        await message.answer(str(error))
        return
    await state.clear()
    await message.answer(f"❌ Pago de la orden <code>{ui.escape(order.id)}</code> rechazado.")


@router.message(Command("approve"))
async def cmd_approve(message: Message, command: CommandObject, order_service: OrderService) -> None:
    order_id = (command.args or "").strip()
    if not order_id:
        await message.answer("Uso: /approve &lt;id&gt;")
        return
    staff_id, _ = _actor(message)
    try:
        order = await order_service.approve_payment(order_id, staff_id)
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    await message.answer(f"✅ Pago de la orden <code>{ui.escape(order.id)}</code> aprobado.")


@router.message(Command("reject"))
async def cmd_reject(message: Message, command: CommandObject, order_service: OrderService) -> None:
    parts = (command.args or "").strip().split(maxsplit=1)
    if not parts:
        await message.answer("Uso: /reject &lt;id&gt; [motivo]")
        return
    staff_id, _ = _actor(message)
    reason = parts[1] if len(parts) > 1 else None
    try:
        order = await order_service.reject_payment(parts[0], staff_id, reason)
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    await message.answer(f"❌ Pago de la orden <code>{ui.escape(order.id)}</code> rechazado.")


@router.message(Command("orders"))
async def cmd_orders(message: Message, command: CommandObject, order_service: OrderService) -> None:
    staff_id, _ = _actor(message)
    status = (command.args or "").strip() or None
    try:
        orders = await order_service.list_orders(staff_id, status=status)
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    await message.answer(ui.render_staff_orders(orders, status))


@router.message(Command("stats"))
async def cmd_stats(message: Message, order_service: OrderService) -> None:
    staff_id, _ = _actor(message)
    try:
        stats = await order_service.order_stats(staff_id)
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    await message.answer(ui.render_stats(stats))


@router.message(Command("users"))
async def cmd_users(message: Message, order_service: OrderService) -> None:
    staff_id, _ = _actor(message)
    try:
        users = await order_service.list_users(staff_id)
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    await message.answer(ui.render_users(users))


@router.message(Command("ganancias"))
async def cmd_earnings(message: Message, order_service: OrderService) -> None:
    staff_id, _ = _actor(message)
    try:
        earnings, monthly = await order_service.get_earnings(staff_id)
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    await message.answer(ui.render_earnings(earnings, monthly, CFG.currency))


@router.message(Command("addcredits"))
async def cmd_add_credits(message: Message, command: CommandObject, order_service: OrderService) -> None:
    parts = (command.args or "").split()
    if len(parts) != 2:
        await message.answer("Uso: /addcredits &lt;usuario|id&gt; &lt;cantidad&gt;")
        return
    staff_id, _ = _actor(message)
    try:
        user = await order_service.add_credits(staff_id, parts[0], parts[1])
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    clear_user_cache(user.telegram_id)
    await message.answer(f"💳 {ui.escape(user.display_name)} ahora tiene <b>{user.credits}</b> créditos.")


@router.message(Command("setplan"))
async def cmd_set_plan(message: Message, command: CommandObject, order_service: OrderService) -> None:
    parts = (command.args or "").split()
    if len(parts) != 2:
        await message.answer("Uso: /setplan &lt;usuario|id&gt; &lt;plan&gt;")
        return
    staff_id, _ = _actor(message)
    try:
        user = await order_service.set_plan(staff_id, parts[0], parts[1])
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    clear_user_cache(user.telegram_id)
    await message.answer(
        f"📅 Plan <b>{ui.escape(parts[1])}</b> otorgado a {ui.escape(user.display_name)}.\n"
        f"Créditos: {user.credits} · Vence: {ui.format_dt(user.plan_expires_at)}"
    )


@router.message(Command("banca"))
async def cmd_bank(message: Message, order_service: OrderService, user: UserAccount | None = None) -> None:
    if user is None or not user.is_staff:
        await message.answer("Esta acción es solo para administradores.")
        return
    bank = await order_service.get_bank_config()
    await message.answer(ui.render_bank_details(bank) if bank else "No hay datos bancarios configurados.")


@router.message(Command("setbanca"))
async def cmd_set_bank(message: Message, command: CommandObject, order_service: OrderService) -> None:
    staff_id, _ = _actor(message)
    try:
        bank = await order_service.set_bank_config(staff_id, command.args or "")
    except DOMAIN_ERRORS as error:
        await message.answer(str(error))
        return
    await message.answer("✅ Datos bancarios actualizados.\n\n" + ui.render_bank_details(bank))
