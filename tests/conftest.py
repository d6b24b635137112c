"""Pytest fixtures: in-memory stores, a fake QR issuer and a recording notifier."""

import asyncio
import itertools

import pytest

from qris_shop.engine import ReconciliationEngine
from qris_shop.errors import QrIssuanceFailed
from qris_shop.fulfillment import FulfillmentDispatcher
from qris_shop.models import Delivery, QrArtifact
from qris_shop.registry import PaymentRegistry
from qris_shop.stores import AccountStore, Catalog, InventoryStore
from qris_shop.storefront import Storefront


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SequenceRng:
    """Hands out unique codes in order, wrapping around the range."""

    def __init__(self):
        self._values = None

    def randint(self, low: int, high: int) -> int:
        if self._values is None:
            self._values = itertools.cycle(range(low, high + 1))
        return next(self._values)


class FakeIssuer:
    def __init__(self):
        self.amounts: list[int] = []
        self.fail = False
        self.delay = 0.0
        self.skew = 0

    async def issue(self, amount: int) -> QrArtifact:
        self.amounts.append(amount)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise QrIssuanceFailed("generator down")
        return QrArtifact(image=b"\x89PNG fake", encoded_amount=amount + self.skew)


class FakeNotifier:
    def __init__(self):
        self.deliveries: list[Delivery] = []
        self.alerts: list[str] = []
        self.broadcasts: list[tuple[int, str]] = []
        self.unreachable: set[int] = set()

    async def deliver(self, delivery: Delivery) -> None:
        self.deliveries.append(delivery)

    async def alert(self, text: str) -> None:
        self.alerts.append(text)

    async def broadcast(self, user_ids, text: str) -> tuple[int, int]:
        sent = [uid for uid in user_ids if uid not in self.unreachable]
        self.broadcasts.extend((uid, text) for uid in sent)
        return len(sent), len(self.unreachable & set(user_ids))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock) -> PaymentRegistry:
    return PaymentRegistry(ttl=900, code_range=(100, 999), attempts=20, retention=3600, clock=clock)


@pytest.fixture
def accounts() -> AccountStore:
    accounts = AccountStore()
    accounts.restore({1: 100_000, 2: 5_000})
    return accounts


@pytest.fixture
def inventory() -> InventoryStore:
    inventory = InventoryStore()
    inventory.restore(
        {
            "CP001": ["canva-1@mail.com:pass1", "canva-2@mail.com:pass2", "canva-3@mail.com:pass3"],
            "NF001": ["netflix-1@mail.com:pw"],
        }
    )
    return inventory


@pytest.fixture
def catalog() -> Catalog:
    catalog = Catalog()
    catalog.add("Canva", "CP001", "CANVA PRO 1 BULAN", 5000, "Bergaransi")
    catalog.add("Netflix", "NF001", "NETFLIX 1 BULAN", 25000, "Private")
    catalog.add("Canva", "CP002", "CANVA PRO 1 TAHUN", 30000, "Habis")
    return catalog


@pytest.fixture
def issuer() -> FakeIssuer:
    return FakeIssuer()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def engine(registry, issuer, accounts, inventory, notifier) -> ReconciliationEngine:
    return ReconciliationEngine(
        registry, issuer, FulfillmentDispatcher(accounts, inventory), notifier, qr_timeout=0.5
    )


@pytest.fixture
def storefront(catalog, inventory, accounts, engine) -> Storefront:
    return Storefront(catalog, inventory, accounts, engine, min_deposit=1000)
