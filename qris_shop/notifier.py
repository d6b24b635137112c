from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Protocol

from aiogram import Bot

from qris_shop.models import Delivery

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def deliver(self, delivery: Delivery) -> None: ...

    async def alert(self, text: str) -> None: ...

    async def broadcast(self, user_ids: Iterable[int], text: str) -> tuple[int, int]: ...


class TelegramNotifier:
    def __init__(self, bot: Bot, admin_ids: Iterable[int]):
        self.bot = bot
        self.admin_ids = set(admin_ids)

    async def deliver(self, delivery: Delivery) -> None:
        if delivery.delete_message_id is not None:
            try:
                await self.bot.delete_message(delivery.user_id, delivery.delete_message_id)
            except Exception:
                logger.warning("could not delete QR message user_id=%s message_id=%s",
                               delivery.user_id, delivery.delete_message_id)
        try:
            await self.bot.send_message(delivery.user_id, delivery.text)
        except Exception:
            logger.exception("failed deliver to user_id=%s", delivery.user_id)

    async def alert(self, text: str) -> None:
        if not self.admin_ids:
            logger.error("no ADMIN_IDS configured, operator alert dropped: %s", text)
            return
        for aid in self.admin_ids:
            try:
                await self.bot.send_message(aid, text)
            except Exception:
                logger.exception("failed notify admin %s", aid)

    async def broadcast(self, user_ids: Iterable[int], text: str) -> tuple[int, int]:
        sent = failed = 0
        for uid in user_ids:
            try:
                await self.bot.send_message(uid, text)
                sent += 1
            except Exception:
                failed += 1
                logger.exception("failed broadcast to user_id=%s", uid)
            # Stay under Telegram's per-bot send rate.
            await asyncio.sleep(0.05)
        logger.info("broadcast done sent=%s failed=%s", sent, failed)
        return sent, failed
