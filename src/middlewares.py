"""Dispatcher middlewares: error apology, request logging, rate limiting, user lookup."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.exceptions import TelegramAPIError
from aiogram.types import CallbackQuery, Message, TelegramObject
from cachetools import TTLCache

from config import CFG

if TYPE_CHECKING:
    from orders.models import UserAccount
    from orders.service import OrderService


logger = logging.getLogger(__name__)

Handler = Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]]

GENERIC_ERROR_TEXT = "⚠️ Ocurrió un error inesperado. Intenta de nuevo más tarde."
RATE_LIMIT_TEXT = "⏳ Demasiadas solicitudes. Espera un momento e intenta de nuevo."

USER_CACHE_MAXSIZE = 10_000

# telegram_id -> UserAccount
user_cache: TTLCache = TTLCache(maxsize=USER_CACHE_MAXSIZE, ttl=CFG.auth_cache_ttl_sec)


def clear_user_cache(telegram_id: int | None = None, *, cache: TTLCache | None = None) -> None:
    """Drop one cached user (or the whole cache) after a change to their account."""
    target = user_cache if cache is None else cache
    if telegram_id is None:
        target.clear()
    else:
        target.pop(int(telegram_id), None)


def _sender_id(event: TelegramObject) -> int | None:
    user = getattr(event, "from_user", None)
    return int(user.id) if user is not None else None


async def _reply(event: TelegramObject, text: str) -> None:
    if isinstance(event, CallbackQuery):
        await event.answer(text, show_alert=True)
    elif isinstance(event, Message):
        await event.answer(text)


class ErrorMiddleware(BaseMiddleware):
    """Turn any unhandled exception into a generic apology to the user."""

    async def __call__(self, handler: Handler, event: TelegramObject, data: Dict[str, Any]) -> Any:
        try:
            return await handler(event, data)
        except Exception:
            logger.exception("Unhandled error while processing %s from %s", type(event).__name__, _sender_id(event))
            try:
                await _reply(event, GENERIC_ERROR_TEXT)
            except TelegramAPIError:
                logger.warning("Failed to deliver error notice to %s", _sender_id(event))
            return None


class RequestLoggingMiddleware(BaseMiddleware):
    async def __call__(self, handler: Handler, event: TelegramObject, data: Dict[str, Any]) -> Any:
        started = time.perf_counter()
        try:
            return await handler(event, data)
        finally:
            if isinstance(event, Message):
                what = (event.text or "").split(maxsplit=1)[0] if event.text else event.content_type
            elif isinstance(event, CallbackQuery):
                what = event.data
            else:
                what = type(event).__name__
            logger.info(
                "update user=%s %s took %.1fms",
                _sender_id(event),
                what,
                (time.perf_counter() - started) * 1000,
            )


class RateLimitMiddleware(BaseMiddleware):
    """Sliding window limit of requests per Telegram user."""

    def __init__(
        self,
        *,
        max_requests: int | None = None,
        window_sec: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self.max_requests = int(max_requests if max_requests is not None else CFG.rate_limit_max_requests)
        self.window_sec = float(window_sec if window_sec is not None else CFG.rate_limit_window_sec)
        self.clock = clock
        self._hits: dict[int, deque[float]] = {}
        self._last_sweep = clock()

    def _prune(self, hits: deque[float], now: float) -> None:
        while hits and now - hits[0] >= self.window_sec:
            hits.popleft()

    def _sweep(self, now: float) -> None:
        """Forget users with no hits left in the window."""
        for telegram_id in list(self._hits):
            self._prune(self._hits[telegram_id], now)
            if not self._hits[telegram_id]:
                del self._hits[telegram_id]
        self._last_sweep = now

    def allow(self, telegram_id: int) -> bool:
        now = self.clock()
        if now - self._last_sweep >= self.window_sec:
            self._sweep(now)
        hits = self._hits.setdefault(int(telegram_id), deque())
        self._prune(hits, now)
        if len(hits) >= self.max_requests:
            return False
        hits.append(now)
        return True

    async def __call__(self, handler: Handler, event: TelegramObject, data: Dict[str, Any]) -> Any:
        telegram_id = _sender_id(event)
        if telegram_id is not None and not self.allow(telegram_id):
            logger.warning("Rate limit exceeded for %s", telegram_id)
            await _reply(event, RATE_LIMIT_TEXT)
            return None
        return await handler(event, data)


class AuthMiddleware(BaseMiddleware):
    """Inject the sender's account as ``data["user"]``, cached for a short TTL."""

    def __init__(
        self,
        service: "OrderService",
        *,
        cache: TTLCache | None = None,
    ):
        super().__init__()
        self.service = service
        self.cache = user_cache if cache is None else cache

    async def load_user(self, event: TelegramObject) -> "UserAccount | None":
        tg_user = getattr(event, "from_user", None)
        if tg_user is None:
            return None
        cached = self.cache.get(int(tg_user.id))
        if cached is not None:
            return cached

        user = await self.service.get_user(tg_user.id)
        if user is None:
            chat = getattr(event, "chat", None)
            user = await self.service.register_user(
                tg_user.id,
                username=tg_user.username,
                first_name=tg_user.first_name,
                chat_id=chat.id if chat is not None else None,
            )
        else:
            await self.service.repository.touch_last_active(tg_user.id)
        self.cache[int(tg_user.id)] = user
        return user

    async def __call__(self, handler: Handler, event: TelegramObject, data: Dict[str, Any]) -> Any:
        data["user"] = await self.load_user(event)
        return await handler(event, data)
