from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class PaymentKind(str, enum.Enum):
    DEPOSIT = "deposit"
    PURCHASE = "purchase"


class PaymentStatus(str, enum.Enum):
    OPEN = "open"
    SETTLED = "settled"
    EXPIRED = "expired"
    FAILED = "failed"


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate_ignored"
    UNMATCHED = "unmatched"
    FAILED = "failed"


@dataclass(slots=True)
class Product:
    id: int
    category: str
    code: str
    name: str
    price: int
    detail: str = ""


@dataclass(slots=True, frozen=True)
class PurchaseDetail:
    product_id: int
    product_name: str
    code: str
    quantity: int
    unit_price: int


@dataclass(slots=True)
class PaymentRequest:
    """
    One outstanding (or finished) QRIS payment.

    Instances are owned by PaymentRegistry; everything else receives copies
    through `snapshot()` and changes state only through registry operations.
    """

    id: str
    kind: PaymentKind
    user_id: int
    base_amount: int
    disambiguator: int
    created_at: float
    expires_at: float
    purchase: Optional[PurchaseDetail] = None
    status: PaymentStatus = PaymentStatus.OPEN
    notification_ref: Optional[str] = None
    encoded_amount: Optional[int] = None
    message_id: Optional[int] = None
    closed_at: Optional[float] = None
    failure: Optional[str] = None

    @property
    def payable_total(self) -> int:
        return self.base_amount + self.disambiguator

    def snapshot(self) -> "PaymentRequest":
        return PaymentRequest(
            id=self.id,
            kind=self.kind,
            user_id=self.user_id,
            base_amount=self.base_amount,
            disambiguator=self.disambiguator,
            created_at=self.created_at,
            expires_at=self.expires_at,
            purchase=self.purchase,
            status=self.status,
            notification_ref=self.notification_ref,
            encoded_amount=self.encoded_amount,
            message_id=self.message_id,
            closed_at=self.closed_at,
            failure=self.failure,
        )


@dataclass(slots=True, frozen=True)
class QrArtifact:
    image: bytes
    encoded_amount: Optional[int] = None


@dataclass(slots=True, frozen=True)
class Notification:
    amount: int
    reference: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Delivery:
    user_id: int
    text: str
    delete_message_id: Optional[int] = None


@dataclass(slots=True, frozen=True)
class OpenedPayment:
    request: PaymentRequest
    qr: QrArtifact
