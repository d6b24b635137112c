from __future__ import annotations

import logging
from dataclasses import dataclass

from qris_shop.engine import ReconciliationEngine
from qris_shop.errors import InsufficientStock
from qris_shop.models import OpenedPayment, PaymentKind, Product, PurchaseDetail
from qris_shop.stores import AccountStore, Catalog, InventoryStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BalancePurchase:
    product: Product
    qty: int
    total: int
    units: list[str]
    balance: int


class Storefront:
    """Buy and deposit flows started from the chat."""

    def __init__(
        self,
        catalog: Catalog,
        inventory: InventoryStore,
        accounts: AccountStore,
        engine: ReconciliationEngine,
        min_deposit: int = 1000,
    ):
        self.catalog = catalog
        self.inventory = inventory
        self.accounts = accounts
        self.engine = engine
        self.min_deposit = min_deposit

    def stock(self, product: Product) -> int:
        return self.inventory.count(product.code)

    async def purchase_with_balance(self, user_id: int, product_id: int, qty: int) -> BalancePurchase:
        if qty <= 0:
            raise ValueError("qty must be > 0")
        product = self.catalog.get(product_id)
        total = product.price * qty
        # Item lock first, then user lock.
        async with self.inventory.hold(product.code) as shelf:
            if shelf.count() < qty:
                raise InsufficientStock(product.code, shelf.count(), qty)
            async with self.accounts.hold(user_id) as wallet:
                balance = wallet.debit(total)
                units = shelf.take(qty)
        logger.info(
            "balance purchase user_id=%s code=%s qty=%s total=%s balance=%s",
            user_id, product.code, qty, total, balance,
        )
        return BalancePurchase(product=product, qty=qty, total=total, units=units, balance=balance)

    async def start_qr_purchase(self, user_id: int, product_id: int, qty: int) -> OpenedPayment:
        if qty <= 0:
            raise ValueError("qty must be > 0")
        product = self.catalog.get(product_id)
        available = self.stock(product)
        if available < qty:
            raise InsufficientStock(product.code, available, qty)
        detail = PurchaseDetail(
            product_id=product.id,
            product_name=product.name,
            code=product.code,
            quantity=qty,
            unit_price=product.price,
        )
        return await self.engine.open_request(PaymentKind.PURCHASE, user_id, product.price * qty, purchase=detail)

    async def start_deposit(self, user_id: int, amount: int) -> OpenedPayment:
        if amount < self.min_deposit:
            raise ValueError(f"deposit must be at least {self.min_deposit}")
        return await self.engine.open_request(PaymentKind.DEPOSIT, user_id, amount)

    def attach_message(self, opened: OpenedPayment, message_id: int) -> None:
        self.engine.registry.attach_message(opened.request.id, message_id)

    async def broadcast(self, text: str) -> tuple[int, int]:
        """Send `text` to every known user; returns (sent, failed)."""
        if not text.strip():
            raise ValueError("broadcast text is empty")
        return await self.engine.notifier.broadcast(self.accounts.users(), text)
