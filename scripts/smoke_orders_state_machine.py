#!/usr/bin/env python3
"""
Smoke test: purchase order lifecycle.

Validates:
- create -> accept -> proof -> approve -> confirm walks only declared edges
- created order round-trips plan id, price and currency; expires 24h later
- acceptance is exclusive (concurrent accepts: exactly one wins)
- only staff may accept/approve/reject, only the owner client may confirm
- expired orders cannot be accepted and are marked expired
- rejection stores the reason and grants nothing
- proof requests keep at most one awaiting order per client
- concurrent proofs for one order: one is attached, the other file is removed
- photos sent with no order awaiting proof are not downloaded

Run:
  python3 scripts/smoke_orders_state_machine.py
"""

from __future__ import annotations

import asyncio
import io
import os
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace


REPO_ROOT = Path(__file__).resolve().parents[1]

CLIENT_ID = 5001
OTHER_CLIENT_ID = 5002
ADMIN_ID = 1
OWNER_ID = 900
DEV_IDS = (901, 902)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


class FakeNotifier:
    def __init__(self) -> None:
        self.texts: list[tuple[int, str, object]] = []
        self.photos: list[tuple[int, str, str | None, object]] = []
        self.broadcasts: list[tuple[list[int], str, object]] = []

    async def send_text(self, chat_id: int, text: str, *, reply_markup=None) -> bool:
        self.texts.append((chat_id, text, reply_markup))
        return True

    async def send_photo(self, chat_id: int, photo: str, *, caption=None, reply_markup=None) -> bool:
        self.photos.append((chat_id, photo, caption, reply_markup))
        return True

    async def broadcast_text(self, chat_ids, text: str, *, reply_markup=None) -> dict[int, bool]:
        ids = list(chat_ids)
        self.broadcasts.append((ids, text, reply_markup))
        return {chat_id: True for chat_id in ids}


class FakePhotoMessage:
    def __init__(self, user_id: int) -> None:
        self.from_user = SimpleNamespace(id=user_id, username=None)
        self.photo = [SimpleNamespace(file_id="tg-small"), SimpleNamespace(file_id="tg-large")]
        self.bot = SimpleNamespace(download=self._download)
        self.downloads: list[str] = []
        self.answers: list[str] = []

    async def _download(self, file_id: str) -> io.BytesIO:
        self.downloads.append(file_id)
        return io.BytesIO(b"jpeg")

    async def answer(self, text: str, **kwargs) -> None:
        self.answers.append(text)


class FakeState:
    async def clear(self) -> None:
        return None


def _callback_data(markup) -> list[str]:
    return [button.callback_data for row in markup.inline_keyboard for button in row]


async def _expect_error(coro, error_type, label: str):
    try:
        await coro
    except error_type as error:
        return error
    raise AssertionError(f"{label}: expected {error_type.__name__}")


async def _run_checks(media_dir: Path) -> None:
    from database import init_db  # noqa: WPS433
    from orders import ui  # noqa: WPS433
    from orders.handlers import on_payment_photo  # noqa: WPS433
    from orders.models import ALLOWED_TRANSITIONS, ALL_STATUSES, can_transition  # noqa: WPS433
    from orders.service import (  # noqa: WPS433
        AccessDeniedError,
        InvalidStateError,
        NotFoundError,
        OrderService,
        ValidationError,
    )

    await init_db()
    notifier = FakeNotifier()
    service = OrderService(notifier=notifier)

    # Edge table: terminal states have no way out, nothing skips a step.
    for status in ALL_STATUSES:
        _assert(status in ALLOWED_TRANSITIONS, f"missing transitions for {status}")
    _assert(can_transition("pending", "accepted"), "pending -> accepted must be allowed")
    _assert(not can_transition("pending", "approved"), "pending -> approved must be rejected")
    _assert(not can_transition("accepted", "approved"), "accepted -> approved must be rejected")
    _assert(not can_transition("completed", "disputed"), "completed is terminal")
    _assert(not can_transition("rejected", "payment_sent"), "rejected is terminal")

    client = await service.register_user(CLIENT_ID, username="buyer", first_name="Buyer", chat_id=CLIENT_ID)
    await service.register_user(OTHER_CLIENT_ID, username="other", first_name="Other", chat_id=OTHER_CLIENT_ID)
    admin = await service.register_user(ADMIN_ID, username="seller", first_name="Seller", chat_id=ADMIN_ID)
    owner = await service.register_user(OWNER_ID, username="boss", first_name="Boss", chat_id=OWNER_ID)
    for dev_id in DEV_IDS:
        await service.register_user(dev_id, username=f"dev{dev_id}", first_name="Dev", chat_id=dev_id)
    _assert(client.role == "client", f"client role mismatch: {client}")
    _assert(admin.role == "admin", f"admin role mismatch: {admin}")
    _assert(owner.role == "owner", f"owner role mismatch: {owner}")

    await _expect_error(service.create_order(CLIENT_ID, "gold_forever"), ValidationError, "unknown plan")

    # Create.
    now = datetime.now(timezone.utc)
    order = await service.create_order(CLIENT_ID, "weekly", client_username="buyer", now=now)
    _assert(order.status == "pending", f"new order must be pending: {order.status}")
    _assert(len(order.id) == 16, f"order id must be 16 hex chars: {order.id}")
    stored = await service.get_order(order.id)
    _assert(stored.plan.id == "weekly", f"plan id round-trip: {stored.plan}")
    _assert(stored.plan.price == 150, f"price round-trip: {stored.plan}")
    _assert(stored.plan.currency == "MXN", f"currency round-trip: {stored.plan}")
    _assert(stored.plan.duration == 7 and stored.plan.credits_per_day == 15, f"days plan fields: {stored.plan}")
    _assert(stored.expires_at == now + timedelta(hours=24), f"expiry must be created + 24h: {stored.timestamps}")
    _assert(len(notifier.broadcasts) == 1, "staff must be notified about new order")
    staff_ids, _, markup = notifier.broadcasts[0]
    _assert(set(staff_ids) == {ADMIN_ID, OWNER_ID, *DEV_IDS}, f"staff recipients mismatch: {staff_ids}")
    _assert(_callback_data(markup) == [f"accept_purchase_{order.id}"], f"accept button mismatch: {markup}")

    # Accept.
    await _expect_error(service.accept_order(order.id, OTHER_CLIENT_ID), AccessDeniedError, "client accept")
    await _expect_error(service.accept_order("missing", ADMIN_ID), NotFoundError, "missing order")
    accepted = await service.accept_order(order.id, ADMIN_ID, staff_username="seller")
    _assert(accepted.status == "accepted", f"accept failed: {accepted.status}")
    _assert(accepted.admin_id == ADMIN_ID, f"admin not recorded: {accepted.admin_id}")
    _assert("accepted" in accepted.timestamps, f"accept timestamp missing: {accepted.timestamps}")
    error = await _expect_error(service.accept_order(order.id, OWNER_ID), InvalidStateError, "double accept")
    _assert("@seller" in str(error), f"already processed must name the admin: {error}")
    _assert(notifier.texts[-1][0] == CLIENT_ID, "client must receive payment details")

    # Approve before proof is not possible.
    await _expect_error(service.approve_payment(order.id, ADMIN_ID), InvalidStateError, "approve accepted")

    # Proof.
    await _expect_error(
        service.attach_payment_proof(CLIENT_ID, b"jpeg"),
        NotFoundError,
        "proof without request",
    )
    stray = FakePhotoMessage(CLIENT_ID)
    await on_payment_photo(stray, FakeState(), service)
    _assert(stray.downloads == [], f"photo must not be downloaded without a proof request: {stray.downloads}")
    _assert(stray.answers == [ui.NO_PROOF_REQUEST_TEXT], f"stray photo reply: {stray.answers}")
    requested = await service.request_payment_proof(CLIENT_ID)
    _assert(requested.awaiting_payment_proof, "order must await payment proof")
    with_proof = await service.attach_payment_proof(CLIENT_ID, b"\xff\xd8fake-jpeg", telegram_file_id="tg-file-1")
    _assert(with_proof.status == "payment_sent", f"proof must move to payment_sent: {with_proof.status}")
    _assert(not with_proof.awaiting_payment_proof, "awaiting flag must be cleared")
    proof = with_proof.payment_proof or {}
    proof_path = media_dir / "payment_proofs" / str(proof.get("file_name"))
    _assert(proof_path.is_file(), f"proof file not stored: {proof}")
    _assert(str(proof.get("url", "")).endswith(f"/proofs/{proof.get('file_name')}"), f"proof url: {proof}")
    _assert(len(notifier.photos) == 1, "admin must receive the proof photo")
    photo_chat, photo, _, review_markup = notifier.photos[0]
    _assert(photo_chat == ADMIN_ID and photo == "tg-file-1", f"photo notification mismatch: {notifier.photos[0]}")
    _assert(
        _callback_data(review_markup) == [f"approve_payment_{order.id}", f"reject_payment_{order.id}"],
        f"review buttons mismatch: {review_markup}",
    )
    await _expect_error(
        service.attach_payment_proof(CLIENT_ID, b"again"),
        NotFoundError,
        "second proof",
    )

    # Approve.
    await _expect_error(service.approve_payment(order.id, CLIENT_ID), AccessDeniedError, "client approve")
    approved = await service.approve_payment(order.id, ADMIN_ID)
    _assert(approved.status == "approved", f"approve failed: {approved.status}")
    _assert(approved.approved_by == ADMIN_ID, f"approved_by mismatch: {approved.approved_by}")
    reloaded = await service.get_order(order.id)
    commissions = reloaded.commissions
    _assert(commissions is not None, "commissions must be stored")
    _assert(commissions.owner.amount == 90.0, f"owner commission: {commissions}")
    _assert(commissions.devs_total == 30.0, f"dev commission: {commissions}")
    _assert(commissions.seller.amount == 30.0 and commissions.seller.recipient_id == str(ADMIN_ID), f"seller: {commissions}")
    user = await service.get_user(CLIENT_ID)
    _assert(user.plan_id == "weekly", f"plan not granted: {user}")
    _assert(user.plan_credits_per_day == 15, f"plan credits/day not granted: {user}")
    await _expect_error(service.approve_payment(order.id, OWNER_ID), InvalidStateError, "double approve")
    await _expect_error(service.reject_payment(order.id, OWNER_ID, "late"), InvalidStateError, "reject approved")

    # Confirm.
    await _expect_error(service.confirm_received(order.id, OTHER_CLIENT_ID), AccessDeniedError, "foreign confirm")
    completed = await service.confirm_received(order.id, CLIENT_ID)
    _assert(completed.status == "completed", f"confirm failed: {completed.status}")
    _assert(completed.client_confirmed is True, f"client_confirmed must be True: {completed.client_confirmed}")
    await _expect_error(service.confirm_not_received(order.id, CLIENT_ID), InvalidStateError, "dispute completed")

    # Exclusive acceptance under concurrency.
    race = await service.create_order(CLIENT_ID, "pack_100")
    results = await asyncio.gather(
        service.accept_order(race.id, ADMIN_ID, staff_username="seller"),
        service.accept_order(race.id, OWNER_ID, staff_username="boss"),
        service.accept_order(race.id, DEV_IDS[0]),
        return_exceptions=True,
    )
    winners = [item for item in results if not isinstance(item, BaseException)]
    losers = [item for item in results if isinstance(item, InvalidStateError)]
    _assert(len(winners) == 1, f"exactly one accept must win: {results}")
    _assert(len(losers) == 2, f"other accepts must fail with invalid state: {results}")

    # Rejection grants nothing.
    credits_before = (await service.get_user(CLIENT_ID)).credits
    await service.request_payment_proof(CLIENT_ID)
    await service.attach_payment_proof(CLIENT_ID, b"proof")
    rejected = await service.reject_payment(race.id, ADMIN_ID, "  Monto incorrecto  ")
    _assert(rejected.status == "rejected", f"reject failed: {rejected.status}")
    _assert(rejected.rejection_reason == "Monto incorrecto", f"reason mismatch: {rejected.rejection_reason}")
    _assert(rejected.rejected_by == ADMIN_ID, f"rejected_by mismatch: {rejected.rejected_by}")
    _assert((await service.get_user(CLIENT_ID)).credits == credits_before, "rejection must not grant credits")
    _assert(notifier.texts[-1][0] == CLIENT_ID, "client must be told about the rejection")

    # Expired orders cannot be accepted.
    stale = await service.create_order(CLIENT_ID, "one_day", now=now - timedelta(hours=25))
    await _expect_error(service.accept_order(stale.id, ADMIN_ID), InvalidStateError, "accept expired")
    _assert((await service.get_order(stale.id)).status == "expired", "stale order must be marked expired")

    # Only one awaiting order per client.
    first = await service.create_order(OTHER_CLIENT_ID, "pack_200")
    second = await service.create_order(OTHER_CLIENT_ID, "pack_500")
    await service.accept_order(first.id, ADMIN_ID)
    await service.request_payment_proof(OTHER_CLIENT_ID)
    await service.accept_order(second.id, ADMIN_ID)
    flagged = await service.request_payment_proof(OTHER_CLIENT_ID)
    _assert(flagged.id == second.id, f"latest accepted order must be requested: {flagged.id}")
    first_after = await service.get_order(first.id)
    _assert(not first_after.awaiting_payment_proof, "previous awaiting flag must be cleared")

    # Two photos of one album race for the same order: one claim, one file.
    payloads = [b"album-photo-one", b"album-photo-two"]
    results = await asyncio.gather(
        *(service.attach_payment_proof(OTHER_CLIENT_ID, payload) for payload in payloads),
        return_exceptions=True,
    )
    winners = [index for index, item in enumerate(results) if not isinstance(item, BaseException)]
    _assert(len(winners) == 1, f"exactly one proof must be attached: {results}")
    loser = results[1 - winners[0]]
    _assert(isinstance(loser, (InvalidStateError, NotFoundError)), f"losing upload must be refused: {loser!r}")
    claimed = (await service.get_order(second.id)).payment_proof or {}
    claimed_path = media_dir / "payment_proofs" / str(claimed.get("file_name"))
    _assert(claimed_path.read_bytes() == payloads[winners[0]], "stored proof must be the attached upload")
    stored_for_order = sorted((media_dir / "payment_proofs").glob(f"{second.id}_*"))
    _assert(stored_for_order == [claimed_path], f"losing upload must not stay on disk: {stored_for_order}")

    history = await service.list_client_orders(CLIENT_ID)
    _assert(history[0].id == race.id, f"history must be newest first: {[o.id for o in history]}")
    _assert(history[-1].id == stale.id, f"backdated order must sort last: {[o.id for o in history]}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="ordersbot-smoke-state-machine-"))
    try:
        os.environ["DB_PATH"] = str(tmpdir / "state.db")
        os.environ["MEDIA_DIR"] = str(tmpdir / "media")
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
        os.environ["ADMIN_IDS"] = str(ADMIN_ID)
        os.environ["OWNER_ID"] = str(OWNER_ID)
        os.environ["DEV_IDS"] = ",".join(str(dev_id) for dev_id in DEV_IDS)
        os.environ["CURRENCY"] = "MXN"
        os.environ["LOG_TO_FILE"] = "0"

        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(tmpdir / "media"))
        print("OK: orders state machine smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
