"""Plain domain records returned by the model layer.

Rows are read with ``text()`` queries; ``from_row`` turns a result mapping
into the matching frozen record so nothing outside ``model`` touches ORM
state.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional, Tuple

import orjson

from ..helpers import to_iso

# Reservation statuses
R_PENDING = "pending"
R_CONFIRMED = "confirmed"
R_EXPIRED = "expired"
R_CANCELLED = "cancelled"

# Payment intent statuses
I_CREATED = "created"
I_VERIFIED = "verified"
I_CONSUMED = "consumed"
I_CANCELLED = "cancelled"
I_ORPHANED = "orphaned"

# Order / ticket statuses
O_PAID = "paid"
T_ACTIVE = "active"


def _json_list(value: Any) -> Tuple[str, ...]:
    # text() selects hand back the raw JSON column
    if value is None:
        return ()
    if isinstance(value, (str, bytes)):
        value = orjson.loads(value)
    return tuple(value)


@dataclass(frozen=True)
class TicketTier:
    id: str
    event_id: str
    name: str
    price_minor_units: int
    currency: str
    total_quantity: int
    sold_quantity: int = 0
    held_quantity: int = 0

    @property
    def available(self) -> int:
        return max(
            0, self.total_quantity - self.sold_quantity - self.held_quantity
        )

    @classmethod
    def from_row(cls, r: Mapping[str, Any]) -> "TicketTier":
        return cls(
            id=r["id"],
            event_id=r["event_id"],
            name=r["name"],
            price_minor_units=int(r["price_minor_units"]),
            currency=r["currency"],
            total_quantity=int(r["total_quantity"]),
            sold_quantity=int(r["sold_quantity"]),
            held_quantity=int(r["held_quantity"]),
        )


@dataclass(frozen=True)
class HoldResult:
    tier_id: str
    quantity: int
    available_after: int


@dataclass(frozen=True)
class Reservation:
    id: str
    tier_id: str
    quantity: int
    status: str
    created_at: float
    expires_at: float
    external_payment_ref: Optional[str] = None
    user_id: Optional[str] = None
    version: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    @classmethod
    def from_row(cls, r: Mapping[str, Any]) -> "Reservation":
        return cls(
            id=r["id"],
            tier_id=r["tier_id"],
            quantity=int(r["quantity"]),
            status=r["status"],
            created_at=float(r["created_at"]),
            expires_at=float(r["expires_at"]),
            external_payment_ref=r["external_payment_ref"],
            user_id=r["user_id"],
            version=int(r["version"]),
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["created_at_iso"] = to_iso(self.created_at)
        d["expires_at_iso"] = to_iso(self.expires_at)
        return d


@dataclass(frozen=True)
class PriceQuote:
    subtotal: int
    fee: int
    tax: int
    total: int
    currency: str

    @property
    def is_free(self) -> bool:
        return self.total == 0


@dataclass(frozen=True)
class Customer:
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class OrderDetails:
    email: Optional[str] = None
    phone: Optional[str] = None
    attendee_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    reservation_id: str
    idempotency_key: str
    amount_minor_units: int
    currency: str
    public_key: str
    status: str
    created_at: float
    external_payment_id: Optional[str] = None
    verified_at: Optional[float] = None

    @classmethod
    def from_row(cls, r: Mapping[str, Any]) -> "PaymentIntent":
        return cls(
            id=r["id"],
            reservation_id=r["reservation_id"],
            idempotency_key=r["idempotency_key"],
            amount_minor_units=int(r["amount_minor_units"]),
            currency=r["currency"],
            public_key=r["public_key"],
            status=r["status"],
            created_at=float(r["created_at"]),
            external_payment_id=r["external_payment_id"],
            verified_at=(
                None if r["verified_at"] is None else float(r["verified_at"])
            ),
        )


@dataclass(frozen=True)
class VerifiedPayment:
    """Positive, cryptographically checked gateway confirmation."""

    intent_id: Optional[str]
    external_payment_id: Optional[str]
    amount: int
    currency: Optional[str] = None

    @classmethod
    def free(cls) -> "VerifiedPayment":
        return cls(intent_id=None, external_payment_id=None, amount=0)


@dataclass(frozen=True)
class Ticket:
    id: str
    order_id: str
    tier_id: str
    event_id: str
    attendee_name: str
    credential: str
    status: str
    created_at: float

    @classmethod
    def from_row(cls, r: Mapping[str, Any]) -> "Ticket":
        return cls(
            id=r["id"],
            order_id=r["order_id"],
            tier_id=r["tier_id"],
            event_id=r["event_id"],
            attendee_name=r["attendee_name"],
            credential=r["credential"],
            status=r["status"],
            created_at=float(r["created_at"]),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Order:
    id: str
    reservation_id: str
    event_id: str
    tier_id: str
    quantity: int
    subtotal_minor_units: int
    fee_minor_units: int
    tax_minor_units: int
    total_amount_minor_units: int
    currency: str
    status: str
    attendee_names: Tuple[str, ...]
    created_at: float
    user_id: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_phone: Optional[str] = None
    payment_intent_id: Optional[str] = None
    external_payment_id: Optional[str] = None
    paid_at: Optional[float] = None
    tickets: Tuple[Ticket, ...] = field(default=())

    @classmethod
    def from_row(
        cls, r: Mapping[str, Any], tickets: Tuple[Ticket, ...] = ()
    ) -> "Order":
        return cls(
            id=r["id"],
            reservation_id=r["reservation_id"],
            event_id=r["event_id"],
            tier_id=r["tier_id"],
            quantity=int(r["quantity"]),
            subtotal_minor_units=int(r["subtotal_minor_units"]),
            fee_minor_units=int(r["fee_minor_units"]),
            tax_minor_units=int(r["tax_minor_units"]),
            total_amount_minor_units=int(r["total_amount_minor_units"]),
            currency=r["currency"],
            status=r["status"],
            attendee_names=_json_list(r["attendee_names"]),
            created_at=float(r["created_at"]),
            user_id=r["user_id"],
            buyer_email=r["buyer_email"],
            buyer_phone=r["buyer_phone"],
            payment_intent_id=r["payment_intent_id"],
            external_payment_id=r["external_payment_id"],
            paid_at=None if r["paid_at"] is None else float(r["paid_at"]),
            tickets=tickets,
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["attendee_names"] = list(self.attendee_names)
        d["tickets"] = [t.to_dict() for t in self.tickets]
        d["paid_at_iso"] = to_iso(self.paid_at)
        return d
