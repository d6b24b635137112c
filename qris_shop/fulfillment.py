from __future__ import annotations

import logging

from qris_shop import texts
from qris_shop.models import Delivery, PaymentKind, PaymentRequest
from qris_shop.stores import AccountStore, InventoryStore

logger = logging.getLogger(__name__)


class FulfillmentDispatcher:
    """Performs what a settled request paid for."""

    def __init__(self, accounts: AccountStore, inventory: InventoryStore):
        self.accounts = accounts
        self.inventory = inventory

    def ensure_available(self) -> None:
        self.accounts.ensure_open()
        self.inventory.ensure_open()

    async def fulfill(self, request: PaymentRequest) -> Delivery:
        if request.kind is PaymentKind.DEPOSIT:
            # The unique code stays with the shop; only the asked amount is credited.
            balance = await self.accounts.credit(request.user_id, request.base_amount)
            logger.info("deposit fulfilled request_id=%s balance=%s", request.id, balance)
            text = texts.deposit_settled(request, balance)
        else:
            p = request.purchase
            units = await self.inventory.take(p.code, p.quantity)
            logger.info("purchase fulfilled request_id=%s code=%s qty=%s", request.id, p.code, p.quantity)
            text = texts.purchase_settled(request, units)
        return Delivery(user_id=request.user_id, text=text, delete_message_id=request.message_id)
