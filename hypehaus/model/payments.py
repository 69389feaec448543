# model/payments.py
"""
Payment Intent Bridge.

create_intent: one gateway order per reservation, keyed by an idempotency
key derived from the reservation id, stored durably and attached to the
reservation. The gateway call runs outside any transaction: the hold is
already committed, so a slow gateway only ties up that hold.

verify: recompute the gateway signature and fail closed. Nothing downstream
issues tickets without the VerifiedPayment this returns.
"""

from __future__ import annotations
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    InvalidState, NotFound, PaymentVerificationFailed, ReservationConflict
)
from ..gateway import PaymentAdapter
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from . import ledger, reservations
from .domain import (
    I_CANCELLED, I_CREATED, I_ORPHANED, I_VERIFIED, R_PENDING,
    Customer, PaymentIntent, VerifiedPayment,
)
from .orm import PaymentIntentRow
from .pricing import Rate, quote

INTENT_COLUMNS = """
    id, reservation_id, idempotency_key, amount_minor_units, currency,
    public_key, status, external_payment_id, created_at, verified_at
"""


def idempotency_key_for(reservation_id: str) -> str:
    return f"resv_{reservation_id}"


# UN-GATED internal functions
async def _get_intent(
    db: AsyncSession, intent_id: str
) -> Optional[PaymentIntent]:
    row = (await db.execute(text(
        f"SELECT {INTENT_COLUMNS} FROM payment_intents WHERE id=:id"
    ), {"id": intent_id})).mappings().first()
    return PaymentIntent.from_row(row) if row else None


async def _intent_for_reservation(
    db: AsyncSession, reservation_id: str
) -> Optional[PaymentIntent]:
    row = (await db.execute(text(
        f"SELECT {INTENT_COLUMNS} FROM payment_intents "
        "WHERE reservation_id=:r"
    ), {"r": reservation_id})).mappings().first()
    return PaymentIntent.from_row(row) if row else None


class PaymentBridge:
    def __init__(self, adapter: PaymentAdapter, *,
                 fee_rate: Rate, tax_rate: Rate) -> None:
        self.adapter = adapter
        self.fee_rate = fee_rate
        self.tax_rate = tax_rate

    async def get_intent(
        self, db: GatedAsyncSession, intent_id: str
    ) -> PaymentIntent:
        async with db.gated():
            async with db.session.begin():
                intent = await _get_intent(db.session, intent_id)
        if intent is None:
            raise NotFound(f"Unknown payment intent: {intent_id}")
        return intent

    async def create_intent(
        self,
        db: GatedAsyncSession,
        reservation_id: str,
        customer: Customer,
        *,
        now: Optional[float] = None,
    ) -> PaymentIntent:
        now = now_ts() if now is None else now

        async with db.gated():
            async with db.session.begin():
                resv = await reservations._require(db.session, reservation_id)
                tier = await ledger._require_tier(db.session, resv.tier_id)
                existing = await _intent_for_reservation(
                    db.session, reservation_id
                )

        if existing is not None and existing.status in (I_CREATED,
                                                        I_VERIFIED):
            return existing
        if resv.status != R_PENDING or resv.is_expired(now):
            raise InvalidState("reservation is no longer awaiting payment")

        q = quote(tier.price_minor_units, resv.quantity,
                  self.fee_rate, self.tax_rate, tier.currency)
        if q.is_free:
            raise InvalidState("free reservations are issued without payment")

        key = idempotency_key_for(reservation_id)
        metadata: Dict[str, Any] = {
            "reservation_id": reservation_id,
            "event_id": tier.event_id,
            "tier_id": tier.id,
            "quantity": resv.quantity,
        }
        if customer.email:
            metadata["email"] = customer.email
        if customer.phone:
            metadata["contact"] = customer.phone
        if customer.name:
            metadata["name"] = customer.name

        # never inside a transaction, never retried here
        result = await self.adapter.create_order(
            q.total, q.currency, key, metadata
        )
        intent = PaymentIntent(
            id=result["external_order_id"],
            reservation_id=reservation_id,
            idempotency_key=key,
            amount_minor_units=q.total,
            currency=q.currency,
            public_key=result["public_key"],
            status=I_CREATED,
            created_at=now,
        )

        try:
            async with db.gated():
                async with db.session.begin():
                    db.session.add(PaymentIntentRow(
                        id=intent.id,
                        reservation_id=intent.reservation_id,
                        idempotency_key=intent.idempotency_key,
                        amount_minor_units=intent.amount_minor_units,
                        currency=intent.currency,
                        public_key=intent.public_key,
                        status=intent.status,
                        external_payment_id=None,
                        created_at=intent.created_at,
                        verified_at=None,
                    ))
                    await db.session.flush()
                    await reservations._attach_ref(
                        db.session, reservation_id, intent.id
                    )
        except IntegrityError:
            # a concurrent create_intent for the same reservation got there
            # first; the idempotency key made the gateway return its order
            async with db.gated():
                async with db.session.begin():
                    existing = await _intent_for_reservation(
                        db.session, reservation_id
                    )
            if existing is None:
                raise ReservationConflict(
                    "payment reference already belongs to another reservation"
                )
            if existing.id != intent.id:
                logger.warning(
                    "gateway returned order {} for {} but {} is stored",
                    intent.id, key, existing.id,
                )
            return existing

        logger.info(
            "payment intent {} for reservation {}: {} {}",
            intent.id, reservation_id, intent.amount_minor_units,
            intent.currency,
        )
        return intent

    async def verify(
        self,
        db: GatedAsyncSession,
        intent_id: str,
        external_payment_id: str,
        signature: str,
        *,
        now: Optional[float] = None,
    ) -> VerifiedPayment:
        if not self.adapter.verify_signature(
            intent_id, external_payment_id, signature
        ):
            logger.warning(
                "signature mismatch for intent {} payment {}",
                intent_id, external_payment_id,
            )
            raise PaymentVerificationFailed("signature mismatch")

        now = now_ts() if now is None else now
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(text("""
                    UPDATE payment_intents
                    SET status='verified', external_payment_id=:p,
                        verified_at=:now
                    WHERE id=:id AND status='created'
                """), {"id": intent_id, "p": external_payment_id, "now": now})
                # paid after the checkout was already called off (gateway
                # failure webhook, abandoned sweep): keep the payment on
                # record so it can be refunded
                late = await db.session.execute(text("""
                    UPDATE payment_intents
                    SET status=:s, external_payment_id=:p, verified_at=:now
                    WHERE id=:id AND status=:cancelled
                      AND external_payment_id IS NULL
                """), {"id": intent_id, "p": external_payment_id, "now": now,
                       "s": I_ORPHANED, "cancelled": I_CANCELLED})
                intent = await _get_intent(db.session, intent_id)

        if intent is None:
            raise PaymentVerificationFailed("unknown intent")
        if late.rowcount == 1:
            logger.bind(needs_refund=True).error(
                "payment {} ({} {}) captured for cancelled checkout {} "
                "(reservation {})",
                external_payment_id, intent.amount_minor_units,
                intent.currency, intent.id, intent.reservation_id,
            )
        if intent.external_payment_id not in (None, external_payment_id):
            # a second, different payment against an already paid order
            raise PaymentVerificationFailed(
                "intent already settled by another payment"
            )
        if intent.status in (I_CANCELLED, I_ORPHANED):
            raise InvalidState(
                "checkout was cancelled before payment; the payment will "
                "be refunded"
            )
        return VerifiedPayment(
            intent_id=intent.id,
            external_payment_id=external_payment_id,
            amount=intent.amount_minor_units,
            currency=intent.currency,
        )

    async def cancel_intent(
        self,
        db: GatedAsyncSession,
        intent_id: str,
        *,
        now: Optional[float] = None,
    ) -> bool:
        """
        Gateway reported failure/cancellation: drop the intent and release
        the reservation's hold. Returns False when there was nothing to
        cancel (already paid, expired or cancelled).
        """
        async with db.gated():
            async with db.session.begin():
                res = await db.session.execute(text("""
                    UPDATE payment_intents SET status=:s
                    WHERE id=:id AND status='created'
                """), {"id": intent_id, "s": I_CANCELLED})
                intent = await _get_intent(db.session, intent_id)

        if intent is None:
            raise NotFound(f"Unknown payment intent: {intent_id}")
        if res.rowcount != 1:
            return False
        try:
            await reservations.cancel(db, intent.reservation_id, now=now)
        except InvalidState:
            return False
        return True
