from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Coroutine, Optional

from qris_shop import texts
from qris_shop.errors import QrIssuanceFailed
from qris_shop.fulfillment import FulfillmentDispatcher
from qris_shop.models import (
    Delivery,
    Notification,
    OpenedPayment,
    Outcome,
    PaymentKind,
    PurchaseDetail,
)
from qris_shop.notifier import Notifier
from qris_shop.qris import QrIssuer
from qris_shop.registry import PaymentRegistry

logger = logging.getLogger(__name__)


def new_request_id(kind: PaymentKind, user_id: int) -> str:
    prefix = "DEPOSIT" if kind is PaymentKind.DEPOSIT else "QRIS"
    return f"{prefix}-{user_id}-{int(time.time() * 1000)}-{random.randint(100, 999)}"


class ReconciliationEngine:
    def __init__(
        self,
        registry: PaymentRegistry,
        issuer: QrIssuer,
        dispatcher: FulfillmentDispatcher,
        notifier: Notifier,
        qr_timeout: float = 15,
    ):
        self.registry = registry
        self.issuer = issuer
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.qr_timeout = qr_timeout
        self._background: set[asyncio.Task] = set()

    async def open_request(
        self,
        kind: PaymentKind,
        user_id: int,
        base_amount: int,
        purchase: Optional[PurchaseDetail] = None,
        request_id: Optional[str] = None,
    ) -> OpenedPayment:
        request_id = request_id or new_request_id(kind, user_id)
        code = self.registry.claim(request_id, base_amount)
        total = base_amount + code
        try:
            qr = await asyncio.wait_for(self.issuer.issue(total), timeout=self.qr_timeout)
        except asyncio.TimeoutError as e:
            self.registry.release(request_id, base_amount, code)
            raise QrIssuanceFailed(f"QRIS issuance timed out after {self.qr_timeout}s") from e
        except QrIssuanceFailed:
            self.registry.release(request_id, base_amount, code)
            raise
        except asyncio.CancelledError:
            self.registry.release(request_id, base_amount, code)
            raise
        except Exception as e:
            self.registry.release(request_id, base_amount, code)
            raise QrIssuanceFailed(f"QRIS issuance failed: {e!r}") from e

        if qr.encoded_amount is None:
            logger.warning("QR amount not verifiable request_id=%s expected=%s", request_id, total)
        elif qr.encoded_amount != total:
            logger.warning(
                "QR amount mismatch request_id=%s encoded=%s expected=%s", request_id, qr.encoded_amount, total
            )
        request = self.registry.open(
            request_id, kind, user_id, base_amount, code, purchase=purchase, encoded_amount=qr.encoded_amount
        )
        return OpenedPayment(request=request, qr=qr)

    async def handle_notification(self, notification: Notification) -> Outcome:
        ref = notification.reference
        if self.registry.find_by_ref(ref):
            logger.info("duplicate notification ref=%s amount=%s", ref, notification.amount)
            return Outcome.DUPLICATE

        request_id = self.registry.find_by_payable_total(notification.amount)
        if request_id is None:
            logger.warning(
                "unmatched notification amount=%s ref=%s raw=%s", notification.amount, ref, notification.raw
            )
            return Outcome.UNMATCHED

        # Raises StoreUnavailable before anything is settled, so the provider retries.
        self.dispatcher.ensure_available()

        if not self.registry.mark_settled(request_id, ref):
            logger.info("notification lost settlement race ref=%s request_id=%s", ref, request_id)
            return Outcome.DUPLICATE
        request = self.registry.get(request_id)
        if request.encoded_amount is not None and request.encoded_amount != notification.amount:
            logger.warning(
                "settled against a QR that encoded %s, paid %s request_id=%s",
                request.encoded_amount, notification.amount, request_id,
            )

        try:
            delivery = await self.dispatcher.fulfill(request)
        except Exception as e:
            logger.exception("fulfillment failed request_id=%s", request_id)
            self.registry.mark_failed(request_id, str(e))
            self._spawn(self.notifier.alert(texts.operator_failure(self.registry.get(request_id))))
            return Outcome.FAILED

        self._spawn(self.notifier.deliver(delivery))
        return Outcome.APPLIED

    async def sweep(self, now: Optional[float] = None) -> int:
        expired = self.registry.sweep_expired(now)
        for request in expired:
            self._spawn(
                self.notifier.deliver(
                    Delivery(user_id=request.user_id, text=texts.request_expired(request),
                             delete_message_id=request.message_id)
                )
            )
        return len(expired)

    async def run_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                count = await self.sweep()
            except Exception:
                logger.exception("expiry sweep failed")
                continue
            if count:
                logger.info("expiry sweep closed %s requests, %s still open", count, len(self.registry.open_requests()))

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background delivery failed", exc_info=task.exception())

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
