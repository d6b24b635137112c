from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator

from qris_shop.errors import InsufficientBalance, InsufficientStock, StoreUnavailable, UnknownProduct
from qris_shop.models import Product

logger = logging.getLogger(__name__)


class _KeyedLocks:
    """One asyncio.Lock per key, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[object, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, key: object) -> asyncio.Lock:
        return self._locks[key]


class Shelf:
    """Stock of one item code, handed out while its lock is held."""

    def __init__(self, code: str, units: list[str]):
        self.code = code
        self._units = units

    def count(self) -> int:
        return len(self._units)

    def take(self, qty: int) -> list[str]:
        if qty <= 0:
            raise ValueError("qty must be > 0")
        if len(self._units) < qty:
            raise InsufficientStock(self.code, len(self._units), qty)
        taken = self._units[:qty]
        del self._units[:qty]
        return taken


class InventoryStore:
    def __init__(self) -> None:
        self._stock: dict[str, list[str]] = defaultdict(list)
        self._locks = _KeyedLocks()
        self._closed = False
        self.dirty = False

    def close(self) -> None:
        self._closed = True

    def ensure_open(self) -> None:
        if self._closed:
            raise StoreUnavailable("inventory store is closed")

    @staticmethod
    def _key(code: str) -> str:
        return code.strip().lower()

    def count(self, code: str) -> int:
        return len(self._stock.get(self._key(code), ()))

    def codes(self) -> list[str]:
        return sorted(self._stock)

    @asynccontextmanager
    async def hold(self, code: str) -> AsyncIterator[Shelf]:
        self.ensure_open()
        key = self._key(code)
        async with self._locks(key):
            before = len(self._stock[key])
            yield Shelf(code, self._stock[key])
            if len(self._stock[key]) != before:
                self.dirty = True

    async def take(self, code: str, qty: int) -> list[str]:
        async with self.hold(code) as shelf:
            units = shelf.take(qty)
        logger.info("stock taken code=%s qty=%s remaining=%s", code, qty, self.count(code))
        return units

    async def add(self, code: str, units: list[str]) -> int:
        self.ensure_open()
        key = self._key(code)
        async with self._locks(key):
            self._stock[key].extend(u for u in units if u)
            self.dirty = True
            return len(self._stock[key])

    async def remove_at(self, code: str, positions: list[int]) -> list[str]:
        """Drop units by 1-based position, as listed by /cekstok."""
        self.ensure_open()
        key = self._key(code)
        async with self._locks(key):
            units = self._stock[key]
            drop = {p - 1 for p in positions if 1 <= p <= len(units)}
            removed = [u for i, u in enumerate(units) if i in drop]
            units[:] = [u for i, u in enumerate(units) if i not in drop]
            if removed:
                self.dirty = True
            return removed

    def units(self, code: str) -> list[str]:
        return list(self._stock.get(self._key(code), ()))

    def snapshot(self) -> dict[str, list[str]]:
        return {code: list(units) for code, units in self._stock.items() if units}

    def restore(self, stock: dict[str, list[str]]) -> None:
        self._stock.clear()
        for code, units in stock.items():
            self._stock[self._key(code)] = list(units)


class Wallet:
    """Balance of one user, handed out while its lock is held."""

    def __init__(self, store: AccountStore, user_id: int):
        self._store = store
        self.user_id = user_id

    @property
    def balance(self) -> int:
        return self._store.balance(self.user_id)

    def debit(self, amount: int) -> int:
        balance = self.balance
        if balance < amount:
            raise InsufficientBalance(self.user_id, balance, amount)
        self._store._set(self.user_id, balance - amount)
        return balance - amount


class AccountStore:
    def __init__(self) -> None:
        self._balances: dict[int, int] = {}
        self._locks = _KeyedLocks()
        self._closed = False
        self.dirty = False

    def close(self) -> None:
        self._closed = True

    def ensure_open(self) -> None:
        if self._closed:
            raise StoreUnavailable("account store is closed")

    def balance(self, user_id: int) -> int:
        return self._balances.get(user_id, 0)

    def _set(self, user_id: int, value: int) -> None:
        self._balances[user_id] = value
        self.dirty = True

    def register(self, user_id: int) -> bool:
        """Start a zero balance for a user seen for the first time."""
        if user_id in self._balances:
            return False
        self._set(user_id, 0)
        return True

    def users(self) -> list[int]:
        return sorted(self._balances)

    @asynccontextmanager
    async def hold(self, user_id: int) -> AsyncIterator[Wallet]:
        self.ensure_open()
        async with self._locks(user_id):
            yield Wallet(self, user_id)

    async def debit(self, user_id: int, amount: int) -> int:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        async with self.hold(user_id) as wallet:
            balance = wallet.debit(amount)
        logger.info("debited user_id=%s amount=%s balance=%s", user_id, amount, balance)
        return balance

    async def credit(self, user_id: int, amount: int) -> int:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        async with self.hold(user_id) as wallet:
            balance = wallet.balance + amount
            self._set(user_id, balance)
        logger.info("credited user_id=%s amount=%s balance=%s", user_id, amount, balance)
        return balance

    def snapshot(self) -> dict[int, int]:
        return dict(self._balances)

    def restore(self, balances: dict[int, int]) -> None:
        self._balances = {int(k): int(v) for k, v in balances.items()}


class Catalog:
    def __init__(self) -> None:
        self._products: dict[int, Product] = {}
        self.dirty = False

    def add(self, category: str, code: str, name: str, price: int, detail: str = "") -> Product:
        if price <= 0:
            raise ValueError("price must be > 0")
        product_id = max(self._products, default=0) + 1
        product = Product(id=product_id, category=category, code=code, name=name, price=price, detail=detail)
        self._products[product_id] = product
        self.dirty = True
        return product

    def get(self, product_id: int) -> Product:
        product = self._products.get(product_id)
        if not product:
            raise UnknownProduct(f"Product {product_id} not found")
        return product

    def by_code(self, code: str) -> Product | None:
        code = code.strip().lower()
        return next((p for p in self._products.values() if p.code.lower() == code), None)

    def categories(self) -> list[str]:
        seen: dict[str, None] = {}
        for p in self._products.values():
            seen.setdefault(p.category, None)
        return list(seen)

    def in_category(self, category: str) -> list[Product]:
        return [p for p in self._products.values() if p.category.lower() == category.lower()]

    def all(self) -> list[Product]:
        return list(self._products.values())

    def restore(self, products: list[Product]) -> None:
        self._products = {p.id: p for p in products}
