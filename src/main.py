import asyncio
import logging

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.fsm.storage.memory import MemoryStorage

from config import CFG
from logging_setup import configure_logging

configure_logging("ordersbot")

from database import init_db
from middlewares import AuthMiddleware, ErrorMiddleware, RateLimitMiddleware, RequestLoggingMiddleware
from orders.handlers import router
from orders.notifications import Notifier
from orders.scheduler import confirmation_scheduler_loop
from orders.service import OrderService
from orders.storage import ProofStorage
from api_server import create_api_app, start_api_server, stop_api_server


logger = logging.getLogger(__name__)


def build_dispatcher(service: OrderService) -> Dispatcher:
    dp = Dispatcher(storage=MemoryStorage(), order_service=service)
    rate_limit = RateLimitMiddleware()
    auth = AuthMiddleware(service)
    for observer in (dp.message, dp.callback_query):
        observer.outer_middleware(ErrorMiddleware())
        observer.outer_middleware(RequestLoggingMiddleware())
        observer.outer_middleware(rate_limit)
        observer.outer_middleware(auth)
    dp.include_router(router)
    return dp


async def main():
    """Application entry point."""
    await init_db()

    bot = Bot(
        token=CFG.token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    storage = ProofStorage()
    service = OrderService(notifier=Notifier(bot), storage=storage)
    dp = build_dispatcher(service)

    api_runner = await start_api_server(create_api_app(storage))

    scheduler_task = None
    if CFG.scheduler_enabled:
        scheduler_task = asyncio.create_task(
            confirmation_scheduler_loop(service, interval_sec=CFG.scheduler_interval_sec)
        )
    else:
        logger.info("Confirmation scheduler disabled (CONFIRMATION_SCHEDULER=0).")

    try:
        await dp.start_polling(bot)
    finally:
        if scheduler_task is not None:
            scheduler_task.cancel()
        await stop_api_server(api_runner)
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
