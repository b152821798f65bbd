#!/usr/bin/env python3
"""
Smoke test: dispatcher middlewares.

Validates:
- RateLimitMiddleware allows N requests per window per user, then drops
- RateLimitMiddleware forgets users whose window has passed
- AuthMiddleware registers unknown senders, injects `user`, caches lookups for the TTL
- clear_user_cache forces a fresh lookup
- the user cache never grows past its maxsize
- ErrorMiddleware swallows handler crashes instead of propagating them

Run:
  python3 scripts/smoke_orders_middlewares.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace


REPO_ROOT = Path(__file__).resolve().parents[1]


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


class FakeClock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def _event(user_id: int, username: str = "someone") -> SimpleNamespace:
    return SimpleNamespace(
        from_user=SimpleNamespace(id=user_id, username=username, first_name="Name"),
        chat=SimpleNamespace(id=user_id),
    )


async def _run_checks() -> None:
    from cachetools import TTLCache  # noqa: WPS433

    from database import init_db  # noqa: WPS433
    from middlewares import AuthMiddleware, ErrorMiddleware, RateLimitMiddleware, clear_user_cache  # noqa: WPS433
    from orders.service import OrderService  # noqa: WPS433

    await init_db()
    calls: list[int] = []

    async def handler(event, data):
        calls.append(event.from_user.id)
        return "handled"

    # Rate limit.
    clock = FakeClock()
    limiter = RateLimitMiddleware(max_requests=10, window_sec=60, clock=clock)
    for _ in range(10):
        _assert(await limiter(handler, _event(11), {}) == "handled", "requests within the limit must pass")
    _assert(await limiter(handler, _event(11), {}) is None, "11th request in the window must be dropped")
    _assert(len(calls) == 10, f"dropped request must not reach the handler: {calls}")
    _assert(await limiter(handler, _event(12), {}) == "handled", "limit is per user")
    clock.value += 60
    _assert(await limiter(handler, _event(11), {}) == "handled", "window must slide")

    # Idle users are forgotten once their window has passed.
    crowd = RateLimitMiddleware(max_requests=5, window_sec=1, clock=clock)
    for user_id in range(1000, 3000):
        _assert(crowd.allow(user_id), "first request of each user must pass")
    clock.value += 1000
    _assert(crowd.allow(42), "request after a quiet period must pass")
    _assert(len(crowd._hits) == 1, f"idle users must be dropped: {len(crowd._hits)} kept")

    # Auth cache.
    service = OrderService()
    lookups = {"count": 0}
    original_get_user = service.get_user

    async def counting_get_user(telegram_id: int):
        lookups["count"] += 1
        return await original_get_user(telegram_id)

    service.get_user = counting_get_user  # type: ignore[method-assign]
    auth_clock = FakeClock()
    cache = TTLCache(maxsize=100, ttl=300, timer=auth_clock)
    auth = AuthMiddleware(service, cache=cache)
    seen: list[object] = []

    async def capture(event, data):
        seen.append(data.get("user"))
        return None

    await auth(capture, _event(1, "admin"), {})
    first = seen[-1]
    _assert(first is not None and first.telegram_id == 1, f"user must be injected: {first}")
    _assert(first.role == "admin", f"configured admin must be registered as admin: {first}")
    _assert(await original_get_user(1) is not None, "unknown sender must be registered")
    _assert(lookups["count"] == 1, f"first request must hit the DB: {lookups}")

    auth_clock.value += 299
    await auth(capture, _event(1, "admin"), {})
    _assert(lookups["count"] == 1, f"cached user must be reused inside TTL: {lookups}")
    _assert(seen[-1] is first, "cached object must be returned")

    auth_clock.value += 2
    await auth(capture, _event(1, "admin"), {})
    _assert(lookups["count"] == 2, f"expired cache entry must be reloaded: {lookups}")

    clear_user_cache(1, cache=cache)
    await auth(capture, _event(1, "admin"), {})
    _assert(lookups["count"] == 3, f"cleared entry must be reloaded: {lookups}")

    small = TTLCache(maxsize=2, ttl=300, timer=auth_clock)
    bounded = AuthMiddleware(service, cache=small)
    for user_id in (21, 22, 23):
        await bounded(capture, _event(user_id), {})
    _assert(len(small) == 2, f"user cache must stay bounded: {len(small)}")

    # Error apology.
    async def broken(event, data):
        raise RuntimeError("boom")

    result = await ErrorMiddleware()(broken, _event(5), {})
    _assert(result is None, "handler crash must be absorbed")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="ordersbot-smoke-middlewares-"))
    try:
        os.environ["DB_PATH"] = str(tmpdir / "state.db")
        os.environ["MEDIA_DIR"] = str(tmpdir / "media")
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
        os.environ["ADMIN_IDS"] = "1"
        os.environ["LOG_TO_FILE"] = "0"

        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks())
        print("OK: orders middlewares smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
