import asyncio
import logging

from aiogram import Bot, Dispatcher

from backend.config import BOT_TOKEN, LOG_LEVEL
from backend.db import close_db, init_db
from bot.handlers import router as user_router
from bot.monitor import MonitorRegistry
from bot.reminders import reminders_worker

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)


async def main():
    if not BOT_TOKEN:
        raise SystemExit("BOT_TOKEN is not set")
    bot = Bot(token=BOT_TOKEN)
    registry = MonitorRegistry(bot)
    dp = Dispatcher(registry=registry)
    dp.include_router(user_router)

    logger.info("Starting bot...")
    await init_db()
    logger.info("Database initialized")
    await registry.restore_active()
    reminders = asyncio.create_task(reminders_worker(registry))
    try:
        logger.info("Starting polling...")
        await dp.start_polling(bot)
    finally:
        reminders.cancel()
        await registry.close()
        await bot.session.close()
        await close_db()
        logger.info("Bot stopped")


if __name__ == "__main__":
    asyncio.run(main())
