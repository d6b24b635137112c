from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional

from qris_shop.errors import DisambiguationExhausted, DuplicateRequest
from qris_shop.models import PaymentKind, PaymentRequest, PaymentStatus, PurchaseDetail

logger = logging.getLogger(__name__)


class PaymentRegistry:
    """
    In-memory table of QRIS payment requests.

    Requests are kept by id; the open ones are also indexed by payable total,
    which is the only thing the payment notifier reports. Every state change
    goes through a method here and none of them awaits, so on the event loop
    each transition happens as one step: an Open request becomes Settled,
    Expired or Failed exactly once.

    Opening is split in two around the QR issuance call: `claim()` reserves a
    unique total, `open()` turns the claim into an Open request, `release()`
    drops the claim if issuance failed. A claim is never visible to matching.
    """

    def __init__(
        self,
        ttl: float = 900,
        code_range: tuple[int, int] = (100, 999),
        attempts: int = 20,
        retention: float = 3600,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.code_range = code_range
        self.attempts = attempts
        self.retention = retention
        self.clock = clock
        self._rng = rng or random.Random()
        self._requests: dict[str, PaymentRequest] = {}
        self._open_by_total: dict[int, str] = {}
        self._claims: dict[int, str] = {}
        self._applied_refs: dict[str, tuple[str, float]] = {}

    def _taken(self, total: int) -> bool:
        return total in self._open_by_total or total in self._claims

    def claim(self, request_id: str, base_amount: int) -> int:
        """Reserve a free payable total for `base_amount` and return its disambiguator."""
        if base_amount <= 0:
            raise ValueError("base amount must be > 0")
        if request_id in self._requests or request_id in self._claims.values():
            raise DuplicateRequest(f"Request {request_id} already exists")
        low, high = self.code_range
        for _ in range(self.attempts):
            code = self._rng.randint(low, high)
            if not self._taken(base_amount + code):
                self._claims[base_amount + code] = request_id
                return code
        logger.warning("unique code exhausted base_amount=%s attempts=%s", base_amount, self.attempts)
        raise DisambiguationExhausted(base_amount, self.attempts)

    def release(self, request_id: str, base_amount: int, disambiguator: int) -> None:
        total = base_amount + disambiguator
        if self._claims.get(total) == request_id:
            del self._claims[total]

    def open(
        self,
        request_id: str,
        kind: PaymentKind,
        user_id: int,
        base_amount: int,
        disambiguator: int,
        purchase: Optional[PurchaseDetail] = None,
        encoded_amount: Optional[int] = None,
    ) -> PaymentRequest:
        total = base_amount + disambiguator
        if self._claims.get(total) != request_id:
            raise DuplicateRequest(f"Request {request_id} holds no claim on total {total}")
        if kind is PaymentKind.PURCHASE and purchase is None:
            raise ValueError("purchase requests need purchase detail")
        del self._claims[total]
        ts = self.clock()
        request = PaymentRequest(
            id=request_id,
            kind=kind,
            user_id=user_id,
            base_amount=base_amount,
            disambiguator=disambiguator,
            created_at=ts,
            expires_at=ts + self.ttl,
            purchase=purchase,
            encoded_amount=encoded_amount,
        )
        self._requests[request_id] = request
        self._open_by_total[total] = request_id
        logger.info(
            "opened request_id=%s kind=%s user_id=%s base=%s total=%s",
            request_id, kind.value, user_id, base_amount, total,
        )
        return request.snapshot()

    def get(self, request_id: str) -> Optional[PaymentRequest]:
        request = self._requests.get(request_id)
        return request.snapshot() if request else None

    def find_by_payable_total(self, amount: int) -> Optional[str]:
        return self._open_by_total.get(amount)

    def find_by_ref(self, notification_ref: str) -> Optional[str]:
        applied = self._applied_refs.get(notification_ref)
        return applied[0] if applied else None

    def attach_message(self, request_id: str, message_id: int) -> None:
        request = self._requests.get(request_id)
        if request and request.status is PaymentStatus.OPEN:
            request.message_id = message_id

    def _close(self, request: PaymentRequest, status: PaymentStatus) -> None:
        if self._open_by_total.get(request.payable_total) == request.id:
            del self._open_by_total[request.payable_total]
        request.status = status
        request.closed_at = self.clock()

    def mark_settled(self, request_id: str, notification_ref: str) -> bool:
        request = self._requests.get(request_id)
        if not request:
            return False
        if request.status is not PaymentStatus.OPEN:
            return request.notification_ref == notification_ref
        self._close(request, PaymentStatus.SETTLED)
        request.notification_ref = notification_ref
        self._applied_refs[notification_ref] = (request_id, request.closed_at)
        logger.info("settled request_id=%s ref=%s", request_id, notification_ref)
        return True

    def mark_failed(self, request_id: str, reason: str) -> bool:
        """Settled -> Failed, for fulfillment that could not complete after payment."""
        request = self._requests.get(request_id)
        if not request or request.status is not PaymentStatus.SETTLED:
            return False
        request.status = PaymentStatus.FAILED
        request.failure = reason
        logger.error("failed request_id=%s reason=%s", request_id, reason)
        return True

    def resolve(self, request_id: str) -> bool:
        """Forget a Failed request once an operator has handled it."""
        request = self._requests.get(request_id)
        if not request or request.status is not PaymentStatus.FAILED:
            return False
        del self._requests[request_id]
        if request.notification_ref:
            # Replays stay DuplicateIgnored for one more retention window.
            self._applied_refs[request.notification_ref] = (request_id, self.clock())
        logger.info("resolved request_id=%s", request_id)
        return True

    def sweep_expired(self, now: Optional[float] = None) -> list[PaymentRequest]:
        now = self.clock() if now is None else now
        expired = []
        for request_id in list(self._open_by_total.values()):
            request = self._requests[request_id]
            if request.status is PaymentStatus.OPEN and request.expires_at <= now:
                self._close(request, PaymentStatus.EXPIRED)
                expired.append(request.snapshot())
                logger.info("expired request_id=%s total=%s", request_id, request.payable_total)
        self._evict(now)
        return expired

    def _evict(self, now: float) -> None:
        horizon = now - self.retention
        for request_id, request in list(self._requests.items()):
            if request.status in (PaymentStatus.SETTLED, PaymentStatus.EXPIRED) and request.closed_at <= horizon:
                del self._requests[request_id]
        for ref, (request_id, applied_at) in list(self._applied_refs.items()):
            request = self._requests.get(request_id)
            # Refs of unresolved Failed requests stay until resolve().
            if request and request.status is PaymentStatus.FAILED:
                continue
            if applied_at <= horizon:
                del self._applied_refs[ref]

    def open_requests(self) -> list[PaymentRequest]:
        return [self._requests[i].snapshot() for i in self._open_by_total.values()]

    def failed(self) -> list[PaymentRequest]:
        return [r.snapshot() for r in self._requests.values() if r.status is PaymentStatus.FAILED]

    def __len__(self) -> int:
        return len(self._requests)
