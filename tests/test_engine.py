"""Tests for notification matching, settlement and fulfillment."""
import asyncio
import logging

import pytest

from qris_shop.errors import QrIssuanceFailed, StoreUnavailable
from qris_shop.models import Notification, Outcome, PaymentKind, PaymentStatus, PurchaseDetail


def _detail(qty=1, code="CP001"):
    return PurchaseDetail(product_id=1, product_name="CANVA PRO 1 BULAN", code=code, quantity=qty, unit_price=5000)


def test_deposit_credits_base_amount_once(engine, accounts, notifier):
    async def scenario():
        opened = await engine.open_request(PaymentKind.DEPOSIT, 2, 10000)
        total = opened.request.payable_total
        first = await engine.handle_notification(Notification(amount=total, reference="trx-1"))
        again = await engine.handle_notification(Notification(amount=total, reference="trx-1"))
        await engine.drain()
        return opened, first, again

    opened, first, again = asyncio.run(scenario())

    assert first is Outcome.APPLIED
    assert again is Outcome.DUPLICATE
    assert accounts.balance(2) == 5_000 + 10_000
    assert engine.registry.get(opened.request.id).status is PaymentStatus.SETTLED
    assert len(notifier.deliveries) == 1
    assert notifier.deliveries[0].user_id == 2
    assert "Rp 15.000" in notifier.deliveries[0].text


def test_purchase_releases_units_once(engine, inventory, notifier):
    async def scenario():
        opened = await engine.open_request(PaymentKind.PURCHASE, 1, 5000, purchase=_detail())
        total = opened.request.payable_total
        outcomes = [
            await engine.handle_notification(Notification(amount=total, reference="trx-9")),
            await engine.handle_notification(Notification(amount=total, reference="trx-9")),
            await engine.handle_notification(Notification(amount=5000, reference="trx-10")),
        ]
        await engine.drain()
        return opened, outcomes

    opened, outcomes = asyncio.run(scenario())

    assert 5100 <= opened.request.payable_total <= 5999
    assert outcomes == [Outcome.APPLIED, Outcome.DUPLICATE, Outcome.UNMATCHED]
    assert inventory.count("CP001") == 2
    assert "canva-1@mail.com:pass1" in notifier.deliveries[0].text


def test_concurrent_replays_settle_once(engine, inventory):
    async def scenario():
        opened = await engine.open_request(PaymentKind.PURCHASE, 1, 5000, purchase=_detail())
        note = Notification(amount=opened.request.payable_total, reference="trx-1")
        outcomes = await asyncio.gather(*(engine.handle_notification(note) for _ in range(5)))
        await engine.drain()
        return outcomes

    outcomes = asyncio.run(scenario())

    assert outcomes.count(Outcome.APPLIED) == 1
    assert outcomes.count(Outcome.DUPLICATE) == 4
    assert inventory.count("CP001") == 2


def test_only_matching_deposit_settles(engine, accounts):
    async def scenario():
        a = await engine.open_request(PaymentKind.DEPOSIT, 1, 10000)
        b = await engine.open_request(PaymentKind.DEPOSIT, 2, 10000)
        outcome = await engine.handle_notification(Notification(amount=b.request.payable_total, reference="trx-b"))
        await engine.drain()
        return a, b, outcome

    a, b, outcome = asyncio.run(scenario())

    assert a.request.payable_total != b.request.payable_total
    assert outcome is Outcome.APPLIED
    assert engine.registry.get(a.request.id).status is PaymentStatus.OPEN
    assert engine.registry.get(b.request.id).status is PaymentStatus.SETTLED
    assert accounts.balance(1) == 100_000
    assert accounts.balance(2) == 15_000


def test_second_payment_of_settled_total_is_unmatched(engine, accounts, caplog):
    async def scenario():
        opened = await engine.open_request(PaymentKind.DEPOSIT, 2, 10000)
        total = opened.request.payable_total
        await engine.handle_notification(Notification(amount=total, reference="trx-1"))
        outcome = await engine.handle_notification(
            Notification(amount=total, reference="trx-2", raw={"amount": total, "reference": "trx-2"})
        )
        await engine.drain()
        return outcome

    with caplog.at_level(logging.WARNING):
        outcome = asyncio.run(scenario())

    assert outcome is Outcome.UNMATCHED
    assert accounts.balance(2) == 15_000
    assert any("unmatched notification" in r.getMessage() and "trx-2" in r.getMessage() for r in caplog.records)


def test_qr_failure_leaves_no_request(engine, issuer):
    issuer.fail = True

    async def scenario():
        with pytest.raises(QrIssuanceFailed):
            await engine.open_request(PaymentKind.DEPOSIT, 1, 10000)

    asyncio.run(scenario())

    assert len(issuer.amounts) == 1
    assert engine.registry.open_requests() == []
    assert engine.registry.find_by_payable_total(issuer.amounts[0]) is None
    assert len(engine.registry) == 0


def test_qr_timeout_leaves_no_request(engine, issuer):
    issuer.delay = 2.0

    async def scenario():
        with pytest.raises(QrIssuanceFailed):
            await engine.open_request(PaymentKind.DEPOSIT, 1, 10000)

    asyncio.run(scenario())

    assert engine.registry.open_requests() == []


def test_qr_amount_mismatch_is_logged_not_blocking(engine, issuer, accounts, caplog):
    issuer.skew = 1

    async def scenario():
        opened = await engine.open_request(PaymentKind.DEPOSIT, 2, 10000)
        return opened, await engine.handle_notification(
            Notification(amount=opened.request.payable_total, reference="trx-1")
        )

    with caplog.at_level(logging.WARNING):
        opened, outcome = asyncio.run(scenario())

    assert outcome is Outcome.APPLIED
    assert opened.request.encoded_amount == opened.request.payable_total + 1
    assert any("QR amount mismatch" in r.getMessage() for r in caplog.records)


def test_stock_gone_after_payment_marks_failed(engine, inventory, notifier):
    async def scenario():
        opened = await engine.open_request(PaymentKind.PURCHASE, 1, 25000, purchase=_detail(code="NF001"))
        await inventory.take("NF001", 1)
        total = opened.request.payable_total
        outcome = await engine.handle_notification(Notification(amount=total, reference="trx-1"))
        replay = await engine.handle_notification(Notification(amount=total, reference="trx-1"))
        await engine.drain()
        return opened, outcome, replay

    opened, outcome, replay = asyncio.run(scenario())

    assert outcome is Outcome.FAILED
    assert replay is Outcome.DUPLICATE
    failed = engine.registry.failed()
    assert [r.id for r in failed] == [opened.request.id]
    assert "insufficient stock" in failed[0].failure
    assert notifier.deliveries == []
    assert len(notifier.alerts) == 1
    assert opened.request.id in notifier.alerts[0]


def test_closed_store_defers_settlement(engine, accounts):
    async def scenario():
        opened = await engine.open_request(PaymentKind.DEPOSIT, 2, 10000)
        accounts.close()
        with pytest.raises(StoreUnavailable):
            await engine.handle_notification(Notification(amount=opened.request.payable_total, reference="trx-1"))
        return opened

    opened = asyncio.run(scenario())

    assert engine.registry.get(opened.request.id).status is PaymentStatus.OPEN
    assert engine.registry.find_by_ref("trx-1") is None


def test_late_notification_after_expiry_is_unmatched(engine, clock, accounts, notifier):
    async def scenario():
        opened = await engine.open_request(PaymentKind.DEPOSIT, 2, 10000)
        engine.registry.attach_message(opened.request.id, 77)
        clock.advance(901)
        swept = await engine.sweep()
        outcome = await engine.handle_notification(
            Notification(amount=opened.request.payable_total, reference="trx-late")
        )
        await engine.drain()
        return opened, swept, outcome

    opened, swept, outcome = asyncio.run(scenario())

    assert swept == 1
    assert outcome is Outcome.UNMATCHED
    assert engine.registry.get(opened.request.id).status is PaymentStatus.EXPIRED
    assert accounts.balance(2) == 5_000
    assert len(notifier.deliveries) == 1
    assert notifier.deliveries[0].delete_message_id == 77
    assert "kedaluwarsa" in notifier.deliveries[0].text
