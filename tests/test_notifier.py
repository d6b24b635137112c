"""Tests for Telegram delivery, admin alerts and broadcast."""
import asyncio

from qris_shop.models import Delivery
from qris_shop.notifier import TelegramNotifier


class FakeBot:
    def __init__(self, blocked=()):
        self.blocked = set(blocked)
        self.sent: list[tuple[int, str]] = []
        self.deleted: list[tuple[int, int]] = []

    async def send_message(self, chat_id, text):
        if chat_id in self.blocked:
            raise RuntimeError("Forbidden: bot was blocked by the user")
        self.sent.append((chat_id, text))

    async def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))


def test_broadcast_counts_failures_and_continues():
    bot = FakeBot(blocked={2})
    notifier = TelegramNotifier(bot, admin_ids=[])

    result = asyncio.run(notifier.broadcast([1, 2, 3], "halo"))

    assert result == (2, 1)
    assert bot.sent == [(1, "halo"), (3, "halo")]


def test_deliver_deletes_qr_message_first():
    bot = FakeBot()
    notifier = TelegramNotifier(bot, admin_ids=[])

    asyncio.run(notifier.deliver(Delivery(user_id=5, text="✅ lunas", delete_message_id=42)))

    assert bot.deleted == [(5, 42)]
    assert bot.sent == [(5, "✅ lunas")]


def test_alert_goes_to_every_admin_even_when_one_fails():
    bot = FakeBot(blocked={10})
    notifier = TelegramNotifier(bot, admin_ids=[10, 11])

    asyncio.run(notifier.alert("gagal"))

    assert bot.sent == [(11, "gagal")]
