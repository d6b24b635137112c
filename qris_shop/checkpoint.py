from __future__ import annotations

import asyncio
import logging
import os

import aiosqlite

from qris_shop.models import Product
from qris_shop.stores import AccountStore, Catalog, InventoryStore

logger = logging.getLogger(__name__)


class Checkpoint:
    """
    Periodic SQLite snapshot of balances, catalog and stock.

    The snapshot is written whole inside one transaction; the payment
    registry is not part of it.
    """

    def __init__(self, db_path: str, accounts: AccountStore, inventory: InventoryStore, catalog: Catalog):
        self.db_path = db_path
        self.accounts = accounts
        self.inventory = inventory
        self.catalog = catalog

    async def init_db(self):
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS balances (
                    user_id INTEGER PRIMARY KEY,
                    balance INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS products (
                    id INTEGER PRIMARY KEY,
                    category TEXT,
                    code TEXT,
                    name TEXT,
                    price INTEGER,
                    detail TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS stock (
                    code TEXT,
                    position INTEGER,
                    payload TEXT,
                    PRIMARY KEY (code, position)
                )
                """
            )
            await db.commit()

    async def load(self):
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            balances = await (await db.execute("SELECT user_id, balance FROM balances")).fetchall()
            products = await (await db.execute("SELECT * FROM products ORDER BY id")).fetchall()
            stock = await (await db.execute("SELECT code, payload FROM stock ORDER BY code, position")).fetchall()
        self.accounts.restore({r["user_id"]: r["balance"] for r in balances})
        self.catalog.restore(
            [
                Product(id=r["id"], category=r["category"], code=r["code"], name=r["name"], price=r["price"],
                        detail=r["detail"] or "")
                for r in products
            ]
        )
        units: dict[str, list[str]] = {}
        for r in stock:
            units.setdefault(r["code"], []).append(r["payload"])
        self.inventory.restore(units)
        logger.info("loaded checkpoint users=%s products=%s codes=%s", len(balances), len(products), len(units))

    @property
    def dirty(self) -> bool:
        return self.accounts.dirty or self.inventory.dirty or self.catalog.dirty

    async def flush(self, force: bool = False) -> bool:
        if not (force or self.dirty):
            return False
        # Taken without awaiting, so the three parts agree with each other.
        balances = self.accounts.snapshot()
        stock = self.inventory.snapshot()
        products = self.catalog.all()
        self.accounts.dirty = self.inventory.dirty = self.catalog.dirty = False
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("BEGIN IMMEDIATE")
                await db.execute("DELETE FROM balances")
                await db.executemany("INSERT INTO balances(user_id, balance) VALUES(?, ?)", list(balances.items()))
                await db.execute("DELETE FROM products")
                await db.executemany(
                    "INSERT INTO products(id, category, code, name, price, detail) VALUES(?, ?, ?, ?, ?, ?)",
                    [(p.id, p.category, p.code, p.name, p.price, p.detail) for p in products],
                )
                await db.execute("DELETE FROM stock")
                await db.executemany(
                    "INSERT INTO stock(code, position, payload) VALUES(?, ?, ?)",
                    [(code, i, payload) for code, payloads in stock.items() for i, payload in enumerate(payloads)],
                )
                await db.commit()
        except Exception:
            self.accounts.dirty = self.inventory.dirty = self.catalog.dirty = True
            raise
        logger.info("flushed checkpoint users=%s products=%s codes=%s", len(balances), len(products), len(stock))
        return True

    async def run(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.flush()
            except Exception:
                logger.exception("checkpoint flush failed")
