import asyncio
import logging
import sys

from aiogram import Bot, Dispatcher
from aiogram.enums import ParseMode
from aiogram.client.default import DefaultBotProperties
from aiogram.fsm.storage.memory import MemoryStorage

from core.config import settings
from core.db import init_db_schema
from services.ledger import LedgerReconciler
from services.notification_service import OperatorNotifier
from services.qris_gateway import QrisGatewayClient
from services.topup_engine import TopupEngine
from services.topup_store import TopupStore

from .topup_listener import BotTopupListener
from .routers import topup as topup_router
from .routers import stats as stats_router


logger = logging.getLogger(__name__)


def build_engine(bot: Bot) -> tuple[TopupEngine, BotTopupListener]:
    listener = BotTopupListener(bot)
    engine = TopupEngine(
        gateway=QrisGatewayClient(),
        store=TopupStore(),
        reconciler=LedgerReconciler(),
        listener=listener,
        notifier=OperatorNotifier(bot),
    )
    return engine, listener


async def main() -> None:
    # Debug log sanitized token last 4 chars
    tail = settings.bot_token[-4:] if settings.bot_token else ""
    logger.info("bot_token present: %s tail=****%s", "yes" if settings.bot_token else "no", tail)

    if not settings.bot_token or settings.bot_token == "your_telegram_bot_token_here":
        logger.error("BOT_TOKEN is not set. Put a valid value in the .env file.")
        return

    await init_db_schema()

    bot = Bot(token=settings.bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    engine, listener = build_engine(bot)

    dp = Dispatcher(storage=MemoryStorage())
    dp["topup_engine"] = engine
    dp["topup_listener"] = listener
    dp.include_router(topup_router.router)
    dp.include_router(stats_router.router)

    resumed = await engine.resume_all()
    logger.info("Resumed %d pending top-ups", resumed)

    try:
        await bot.delete_webhook(drop_pending_updates=True)
        await dp.start_polling(bot)
    finally:
        await engine.shutdown()
        await bot.session.close()


def run() -> None:
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO), stream=sys.stdout)
    asyncio.run(main())


if __name__ == "__main__":
    run()
