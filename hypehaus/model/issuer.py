# model/issuer.py
"""
Order & Ticket Issuer.

One transaction, in this order:
  1. pending -> confirmed on the reservation, guarded by status and
     expires_at (the same guard the reconciler's expiry uses, so exactly one
     of them wins)
  2. commit_sale on the tier row (held -> sold)
  3. insert the paid Order
  4. insert one Ticket per unit with a fresh credential
  5. mark the payment intent consumed

Anything failing rolls all of it back; the reservation stays pending and
`issue` can be called again. A reservation that already has an order gets
that order back, untouched.
"""

from __future__ import annotations
from typing import Optional, Tuple

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from ..errors import (
    AmountMismatch, InvalidRequest, InvalidState, IssuanceFailed,
    LedgerInvariantViolation, PaymentVerificationFailed, ReservationConflict,
)
from ..helpers import (
    is_valid_email, is_valid_phone, new_credential, new_id, now_ts
)
from ..infra.sql import GatedAsyncSession
from ..logs import integrity_alert
from . import ledger, queries, reservations
from .domain import (
    I_CONSUMED, O_PAID, R_CONFIRMED, R_PENDING, T_ACTIVE,
    Order, OrderDetails, VerifiedPayment,
)
from .orm import OrderRow, TicketRow
from .pricing import Rate, quote


class _LostTransition(Exception):
    """The guarded pending -> confirmed UPDATE matched no row."""


def validate_details(details: OrderDetails, quantity: int) -> Tuple[str, ...]:
    names = tuple((n or "").strip() for n in details.attendee_names)
    if len(names) != quantity or not all(names):
        raise InvalidRequest(
            f"exactly {quantity} attendee name(s) required"
        )
    if not is_valid_email(details.email):
        raise InvalidRequest("a valid buyer email is required")
    if details.phone and not is_valid_phone(details.phone):
        raise InvalidRequest("buyer phone number is invalid")
    return names


class Issuer:
    def __init__(self, *, fee_rate: Rate, tax_rate: Rate) -> None:
        self.fee_rate = fee_rate
        self.tax_rate = tax_rate

    async def issue(
        self,
        db: GatedAsyncSession,
        reservation_id: str,
        payment: VerifiedPayment,
        details: OrderDetails,
        *,
        now: Optional[float] = None,
    ) -> Order:
        now = now_ts() if now is None else now

        # duplicate delivery: hand back what we already issued
        existing = await queries.order_for_reservation(db, reservation_id)
        if existing is not None:
            return existing

        async with db.gated():
            async with db.session.begin():
                resv = await reservations._require(db.session, reservation_id)
                tier = await ledger._require_tier(db.session, resv.tier_id)

        if resv.status != R_PENDING:
            raise InvalidState(f"reservation is {resv.status}")
        if resv.is_expired(now):
            raise InvalidState("reservation hold has expired")

        q = quote(tier.price_minor_units, resv.quantity,
                  self.fee_rate, self.tax_rate, tier.currency)
        currency_ok = (
            payment.currency is None
            or payment.currency.upper() == q.currency.upper()
        )
        if payment.amount != q.total or not currency_ok:
            logger.warning(
                "amount mismatch on reservation {}: expected {} {}, "
                "verified {} {} (possible tampering)",
                reservation_id, q.total, q.currency,
                payment.amount, payment.currency,
            )
            raise AmountMismatch(q.total, payment.amount)
        if q.total > 0 and payment.intent_id is None:
            raise PaymentVerificationFailed("paid order without a payment")
        if (payment.intent_id is not None
                and payment.intent_id != resv.external_payment_ref):
            raise ReservationConflict(
                "payment belongs to a different reservation"
            )
        names = validate_details(details, resv.quantity)

        order_id = new_id()
        try:
            async with db.gated():
                async with db.session.begin():
                    s = db.session
                    if not await reservations._transition(
                        s, reservation_id, R_CONFIRMED, now,
                        require_unexpired=True,
                    ):
                        raise _LostTransition()

                    await ledger._commit_sale(s, tier.id, resv.quantity)

                    s.add(OrderRow(
                        id=order_id,
                        reservation_id=reservation_id,
                        event_id=tier.event_id,
                        tier_id=tier.id,
                        user_id=resv.user_id,
                        quantity=resv.quantity,
                        subtotal_minor_units=q.subtotal,
                        fee_minor_units=q.fee,
                        tax_minor_units=q.tax,
                        total_amount_minor_units=q.total,
                        currency=q.currency,
                        status=O_PAID,
                        buyer_email=details.email,
                        buyer_phone=details.phone,
                        attendee_names=list(names),
                        payment_intent_id=payment.intent_id,
                        external_payment_id=payment.external_payment_id,
                        created_at=now,
                        paid_at=now,
                    ))
                    await s.flush()

                    for name in names:
                        s.add(TicketRow(
                            id=new_id(),
                            order_id=order_id,
                            tier_id=tier.id,
                            event_id=tier.event_id,
                            attendee_name=name,
                            credential=new_credential(),
                            status=T_ACTIVE,
                            created_at=now,
                        ))
                    await s.flush()

                    if payment.intent_id is not None:
                        await s.execute(text("""
                            UPDATE payment_intents SET status=:s
                            WHERE id=:id
                        """), {"id": payment.intent_id, "s": I_CONSUMED})

        except _LostTransition:
            # a concurrent issue confirmed it first, or it expired/cancelled
            existing = await queries.order_for_reservation(db, reservation_id)
            if existing is not None:
                return existing
            current = await reservations.get_reservation(db, reservation_id)
            if current.status == R_PENDING:
                raise InvalidState("reservation hold has expired")
            raise InvalidState(f"reservation is {current.status}")

        except LedgerInvariantViolation as e:
            integrity_alert(
                "ledger refused commit_sale during issuance",
                reservation_id=reservation_id, tier_id=tier.id,
                cause=str(e),
            )
            raise IssuanceFailed(reservation_id, str(e))

        except IntegrityError as e:
            existing = await queries.order_for_reservation(db, reservation_id)
            if existing is not None:
                return existing
            integrity_alert(
                "constraint violation during issuance",
                reservation_id=reservation_id, tier_id=tier.id,
                cause=str(e.orig),
            )
            raise IssuanceFailed(reservation_id, str(e.orig))

        order = await queries.get_order(db, order_id)
        logger.info(
            "order {} issued {} ticket(s) for reservation {} ({} {})",
            order.id, order.quantity, reservation_id,
            order.total_amount_minor_units, order.currency,
        )
        return order

    async def issue_free(
        self,
        db: GatedAsyncSession,
        reservation_id: str,
        details: OrderDetails,
        *,
        now: Optional[float] = None,
    ) -> Order:
        """Zero-total reservations skip the payment bridge entirely."""
        return await self.issue(
            db, reservation_id, VerifiedPayment.free(), details, now=now
        )
