"""Confirmation reminders and auto-completion for approved orders."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from orders import ui
from orders.models import STATUS_APPROVED, STATUS_COMPLETED, PurchaseOrder, parse_iso_utc
from orders.service import OrderService


logger = logging.getLogger(__name__)

INITIAL_PROMPT_AFTER_HOURS = 48
REMINDER_INTERVAL_HOURS = 4
AUTO_COMPLETE_AFTER_HOURS = 72
SCHEDULER_MIN_INTERVAL_SEC = 30

ACTION_NONE = "none"
ACTION_INITIAL_PROMPT = "initial_prompt"
ACTION_REMINDER = "reminder"
ACTION_AUTO_COMPLETE = "auto_complete"


def _hours_between(start: datetime | None, end: datetime) -> float | None:
    if start is None:
        return None
    return (end - start).total_seconds() / 3600


def decide_action(order: PurchaseOrder, now: datetime) -> str:
    """Pick what the sweep should do with one approved, unconfirmed order."""
    hours_since_approval = _hours_between(order.timestamp("approved"), now)
    if hours_since_approval is None:
        return ACTION_NONE
    reminders = order.confirmation_reminders
    if reminders.sent == 0:
        if hours_since_approval >= INITIAL_PROMPT_AFTER_HOURS:
            return ACTION_INITIAL_PROMPT
        return ACTION_NONE
    if reminders.sent < reminders.max:
        hours_since_last = _hours_between(parse_iso_utc(reminders.last_sent_at), now)
        if hours_since_last is not None and hours_since_last >= REMINDER_INTERVAL_HOURS:
            return ACTION_REMINDER
        return ACTION_NONE
    if hours_since_approval >= AUTO_COMPLETE_AFTER_HOURS:
        return ACTION_AUTO_COMPLETE
    return ACTION_NONE


class ConfirmationScheduler:
    def __init__(self, service: OrderService):
        self.service = service
        self.repository = service.repository

    async def _send_prompt(self, order: PurchaseOrder, *, now: datetime) -> bool:
        reminders = order.confirmation_reminders
        next_count = reminders.sent + 1
        claimed = await self.repository.update_reminders(
            order.id,
            expected_sent=reminders.sent,
            sent=next_count,
            last_sent_at=now.isoformat(),
        )
        if not claimed:
            return False
        notifier = self.service.notifier
        if notifier is not None:
            delivered = await notifier.send_text(
                order.client_id,
                ui.render_confirmation_prompt(order, reminder_number=next_count, reminders_max=reminders.max),
                reply_markup=ui.confirmation_keyboard(order.id),
            )
            if not delivered:
                logger.warning("Confirmation prompt %s for order %s not delivered", next_count, order.id)
        return True

    async def _auto_complete(self, order: PurchaseOrder, *, now: datetime) -> bool:
        completed = await self.repository.transition(
            order.id,
            from_status=STATUS_APPROVED,
            to_status=STATUS_COMPLETED,
            timestamp_key="completed",
            now_iso=now.isoformat(),
            client_confirmed=1,
            auto_completed=1,
        )
        if not completed:
            return False
        logger.info("Order %s auto-completed without client confirmation", order.id)
        notifier = self.service.notifier
        if notifier is not None:
            await notifier.send_text(order.client_id, ui.render_auto_completed(order))
        return True

    async def sweep(self, *, now: datetime | None = None) -> dict[str, int]:
        moment = now or datetime.now(timezone.utc)
        stats = {"scanned": 0, "prompts": 0, "reminders": 0, "auto_completed": 0}
        for row in await self.repository.list_unconfirmed_approved_orders():
            stats["scanned"] += 1
            order = PurchaseOrder.from_row(row)
            action = decide_action(order, moment)
            try:
                if action == ACTION_INITIAL_PROMPT and await self._send_prompt(order, now=moment):
                    stats["prompts"] += 1
                elif action == ACTION_REMINDER and await self._send_prompt(order, now=moment):
                    stats["reminders"] += 1
                elif action == ACTION_AUTO_COMPLETE and await self._auto_complete(order, now=moment):
                    stats["auto_completed"] += 1
            except Exception:
                logger.exception("Confirmation sweep failed for order %s", order.id)
        return stats

    async def run_once(self, *, now: datetime | None = None) -> dict[str, Any]:
        moment = now or datetime.now(timezone.utc)
        confirmation = await self.sweep(now=moment)
        expiry = await self.service.expire_stale_orders(now=moment)
        return {**confirmation, "expired": expiry["expired"]}


async def confirmation_scheduler_loop(service: OrderService, *, interval_sec: int) -> None:
    """Periodically send confirmation reminders and expire stale orders."""
    scheduler = ConfirmationScheduler(service)
    sleep_for = max(SCHEDULER_MIN_INTERVAL_SEC, int(interval_sec))

    while True:
        try:
            stats = await scheduler.run_once()
            if any(int(stats.get(key) or 0) for key in ("prompts", "reminders", "auto_completed", "expired")):
                logger.info(
                    "Order sweep: scanned=%s prompts=%s reminders=%s auto_completed=%s expired=%s",
                    stats.get("scanned"),
                    stats.get("prompts"),
                    stats.get("reminders"),
                    stats.get("auto_completed"),
                    stats.get("expired"),
                )
        except Exception:
            logger.exception("Order scheduler loop failed")
        await asyncio.sleep(sleep_for)
