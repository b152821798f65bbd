"""Best-effort delivery of order notifications through the Telegram bot."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Iterable

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramRetryAfter
from aiogram.types import InlineKeyboardMarkup


logger = logging.getLogger(__name__)

BROADCAST_RATE_PER_SEC = float(os.getenv("BROADCAST_RATE_PER_SEC", "20"))
BROADCAST_CONCURRENCY = int(os.getenv("BROADCAST_CONCURRENCY", "4"))
BROADCAST_MAX_RETRIES = int(os.getenv("BROADCAST_MAX_RETRIES", "1"))


class BroadcastRateLimiter:
    """Global token-interval limiter shared by broadcast workers."""

    def __init__(self, rate_per_sec: float):
        self._interval = 1.0 / rate_per_sec if rate_per_sec > 0 else 0.0
        self._lock = asyncio.Lock()
        self._next_time = 0.0

    async def wait(self) -> None:
        if self._interval <= 0:
            return
        loop = asyncio.get_running_loop()
        async with self._lock:
            now = loop.time()
            if now < self._next_time:
                await asyncio.sleep(self._next_time - now)
                now = loop.time()
            self._next_time = max(self._next_time, now) + self._interval


async def _broadcast_worker(
    queue: asyncio.Queue,
    limiter: BroadcastRateLimiter,
    send_fn: Callable[[int], Awaitable[Any]],
    results: dict[int, bool],
    *,
    retries: int,
) -> None:
    while True:
        chat_id = await queue.get()
        if chat_id is None:
            queue.task_done()
            break
        try:
            attempt = 0
            while True:
                try:
                    await limiter.wait()
                    results[chat_id] = bool(await send_fn(chat_id))
                    break
                except TelegramRetryAfter as exc:
                    attempt += 1
                    if attempt > retries:
                        raise
                    logger.warning(
                        "Telegram rate limit: retry_after=%s chat_id=%s attempt=%s",
                        exc.retry_after,
                        chat_id,
                        attempt,
                    )
                    await asyncio.sleep(exc.retry_after)
        except Exception:
            results[chat_id] = False
            logger.exception("Failed to notify chat_id=%s", chat_id)
        finally:
            queue.task_done()


async def broadcast(
    chat_ids: Iterable[int],
    send_fn: Callable[[int], Awaitable[Any]],
    *,
    rate_per_sec: float = BROADCAST_RATE_PER_SEC,
    concurrency: int = BROADCAST_CONCURRENCY,
    retries: int = BROADCAST_MAX_RETRIES,
) -> dict[int, bool]:
    """Send to many chats in parallel under a global rate limit."""
    unique_ids = list(dict.fromkeys(int(chat_id) for chat_id in chat_ids))
    results: dict[int, bool] = {}
    if not unique_ids:
        return results
    limiter = BroadcastRateLimiter(rate_per_sec)
    queue: asyncio.Queue = asyncio.Queue()
    for chat_id in unique_ids:
        queue.put_nowait(chat_id)
    workers = [
        asyncio.create_task(_broadcast_worker(queue, limiter, send_fn, results, retries=retries))
        for _ in range(max(1, min(concurrency, len(unique_ids))))
    ]
    await queue.join()
    for _ in workers:
        queue.put_nowait(None)
    await asyncio.gather(*workers, return_exceptions=True)
    return results


class Notifier:
    """Thin wrapper over ``aiogram.Bot``; every send returns success instead of raising."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_text(
        self,
        chat_id: int,
        text: str,
        *,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> bool:
        try:
            await self.bot.send_message(chat_id, text, reply_markup=reply_markup)
            return True
        except TelegramAPIError as error:
            logger.warning("Failed to send message to %s: %s", chat_id, error)
            return False

    async def send_photo(
        self,
        chat_id: int,
        photo: str,
        *,
        caption: str | None = None,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> bool:
        try:
            await self.bot.send_photo(chat_id, photo, caption=caption, reply_markup=reply_markup)
            return True
        except TelegramAPIError as error:
            logger.warning("Failed to send photo to %s: %s", chat_id, error)
            return False

    async def broadcast_text(
        self,
        chat_ids: Iterable[int],
        text: str,
        *,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> dict[int, bool]:
        async def _send(chat_id: int) -> bool:
            await self.bot.send_message(chat_id, text, reply_markup=reply_markup)
            return True

        return await broadcast(chat_ids, _send)
