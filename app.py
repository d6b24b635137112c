import asyncio
import logging
import os

import uvicorn
from aiogram import Bot, Dispatcher

from qris_shop.bot import router
from qris_shop.checkpoint import Checkpoint
from qris_shop.config import Settings
from qris_shop.engine import ReconciliationEngine
from qris_shop.fulfillment import FulfillmentDispatcher
from qris_shop.notifier import TelegramNotifier
from qris_shop.qris import LocalQrisIssuer, QrIssuer, QrisApiIssuer
from qris_shop.registry import PaymentRegistry
from qris_shop.stores import AccountStore, Catalog, InventoryStore
from qris_shop.storefront import Storefront
from qris_shop.webhook import create_app


logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("qris_shop")


def build_issuer(settings: Settings) -> QrIssuer:
    if settings.qris_mode == "api":
        return QrisApiIssuer(settings.qris_code, settings.qris_api_url, timeout=settings.qris_timeout)
    return LocalQrisIssuer(settings.qris_code)


async def main():
    settings = Settings()
    if not settings.bot_token:
        raise RuntimeError("BOT_TOKEN is not set")
    logger.info("starting service qris_mode=%s", settings.qris_mode)

    accounts = AccountStore()
    inventory = InventoryStore()
    catalog = Catalog()
    checkpoint = Checkpoint(settings.db_path, accounts, inventory, catalog)
    await checkpoint.init_db()
    await checkpoint.load()

    bot = Bot(settings.bot_token)
    registry = PaymentRegistry(
        ttl=settings.payment_ttl,
        code_range=(settings.code_min, settings.code_max),
        attempts=settings.code_attempts,
        retention=settings.retention,
    )
    engine = ReconciliationEngine(
        registry,
        build_issuer(settings),
        FulfillmentDispatcher(accounts, inventory),
        TelegramNotifier(bot, settings.admin_ids),
        qr_timeout=settings.qris_timeout,
    )
    storefront = Storefront(catalog, inventory, accounts, engine, min_deposit=settings.min_deposit)

    dp = Dispatcher()
    dp.include_router(router)
    dp["storefront"] = storefront
    dp["settings"] = settings

    config = uvicorn.Config(
        create_app(engine, settings.webhook_secret), host=settings.app_host, port=settings.app_port, log_level="info"
    )
    server = uvicorn.Server(config)
    tasks = [
        asyncio.create_task(server.serve()),
        asyncio.create_task(engine.run_sweeper(settings.sweep_interval)),
        asyncio.create_task(checkpoint.run(settings.flush_interval)),
    ]
    try:
        await dp.start_polling(bot)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await engine.drain()
        await checkpoint.flush(force=True)
        accounts.close()
        inventory.close()
        await bot.session.close()
        logger.info("stopped with %s open payment requests", len(registry.open_requests()))


if __name__ == "__main__":
    asyncio.run(main())
