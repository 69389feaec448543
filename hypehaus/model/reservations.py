# model/reservations.py
"""
Reservation Manager: a purchase request becomes a time-boxed hold.

The hold on the tier row and the `pending` reservation row commit in one
transaction, so there is never a hold without a reservation (or the other
way around). All status changes are conditional UPDATEs on
`status='pending'`: whichever of issue / expire / cancel gets there first
wins, the others see rowcount 0.
"""

from __future__ import annotations
from typing import Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    InvalidRequest, InvalidState, NotFound, ReservationConflict, SoldOut
)
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from . import ledger
from .domain import (
    R_CANCELLED, R_EXPIRED, R_PENDING, Reservation
)
from .orm import ReservationRow

MAX_QUANTITY = 10


# ------------------------------------------------------------------------------
# UN-GATED internals
# ------------------------------------------------------------------------------

async def _get(db: AsyncSession, reservation_id: str) -> Optional[Reservation]:
    row = (await db.execute(text("""
        SELECT id, tier_id, quantity, status, created_at, expires_at,
               external_payment_ref, user_id, version
        FROM reservations WHERE id=:id
    """), {"id": reservation_id})).mappings().first()
    return Reservation.from_row(row) if row else None


async def _require(db: AsyncSession, reservation_id: str) -> Reservation:
    resv = await _get(db, reservation_id)
    if resv is None:
        raise NotFound(f"Unknown reservation: {reservation_id}")
    return resv


async def _transition(
    db: AsyncSession,
    reservation_id: str,
    to_status: str,
    now: float,
    *,
    require_unexpired: bool = False,
    require_expired: bool = False,
) -> bool:
    """
    The single authoritative state change: pending -> `to_status`.
    Returns True iff this call performed it.
    """
    sql = """
        UPDATE reservations
        SET status=:s, updated_at=:now, version = version + 1
        WHERE id=:id AND status='pending'
    """
    if require_unexpired:
        sql += " AND expires_at > :now"
    if require_expired:
        sql += " AND expires_at < :now"
    res = await db.execute(
        text(sql), {"id": reservation_id, "s": to_status, "now": now}
    )
    return res.rowcount == 1


async def _attach_ref(db: AsyncSession, reservation_id: str, ref: str) -> None:
    res = await db.execute(text("""
        UPDATE reservations
        SET external_payment_ref=:ref, version = version + 1
        WHERE id=:id
          AND status='pending'
          AND external_payment_ref IS NULL
    """), {"id": reservation_id, "ref": ref})
    if res.rowcount == 1:
        return
    resv = await _require(db, reservation_id)
    if resv.external_payment_ref == ref:
        return
    if resv.external_payment_ref is not None:
        raise ReservationConflict(
            "reservation already has a different payment reference"
        )
    raise InvalidState(f"reservation is {resv.status}")


async def _expire(
    db: AsyncSession, resv: Reservation, now: float, *, only_if_due: bool
) -> bool:
    """
    pending -> expired and give the units back. `only_if_due` keeps the
    expires_at check inside the guarded UPDATE.
    """
    if not await _transition(
        db, resv.id, R_EXPIRED, now, require_expired=only_if_due
    ):
        return False
    await ledger._release_hold(db, resv.tier_id, resv.quantity)
    return True


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def create_reservation(
    db: GatedAsyncSession,
    tier_id: str,
    quantity: int,
    expires_in_seconds: int,
    *,
    user_id: Optional[str] = None,
    max_quantity: int = MAX_QUANTITY,
    now: Optional[float] = None,
) -> Reservation:
    if quantity < 1:
        raise InvalidRequest("quantity must be at least 1")
    if quantity > max_quantity:
        raise InvalidRequest(f"at most {max_quantity} tickets per purchase")
    if expires_in_seconds <= 0:
        raise InvalidRequest("hold window must be positive")

    now = now_ts() if now is None else now
    resv = Reservation(
        id=new_id(),
        tier_id=tier_id,
        quantity=quantity,
        status=R_PENDING,
        created_at=now,
        expires_at=now + expires_in_seconds,
        user_id=user_id,
    )

    async with db.gated():
        async with db.session.begin():
            if not await ledger._try_hold(db.session, tier_id, quantity):
                raise SoldOut(tier_id, quantity)
            db.session.add(ReservationRow(
                id=resv.id,
                tier_id=resv.tier_id,
                quantity=resv.quantity,
                status=resv.status,
                created_at=resv.created_at,
                expires_at=resv.expires_at,
                updated_at=now,
                external_payment_ref=None,
                user_id=user_id,
                version=0,
            ))

    logger.info(
        "reservation {} holds {} x tier {} until {:.0f}",
        resv.id, quantity, tier_id, resv.expires_at,
    )
    return resv


async def get_reservation(
    db: GatedAsyncSession, reservation_id: str
) -> Reservation:
    async with db.gated():
        async with db.session.begin():
            return await _require(db.session, reservation_id)


async def attach_payment_ref(
    db: GatedAsyncSession, reservation_id: str, ref: str
) -> Reservation:
    """
    Idempotent: attaching the same ref again is a no-op. A different ref, or
    a ref already owned by another reservation, is a conflict.
    """
    if not ref:
        raise InvalidRequest("payment reference must not be empty")
    try:
        async with db.gated():
            async with db.session.begin():
                await _attach_ref(db.session, reservation_id, ref)
                return await _require(db.session, reservation_id)
    except IntegrityError:
        raise ReservationConflict(
            "payment reference already belongs to another reservation"
        )


async def cancel(
    db: GatedAsyncSession,
    reservation_id: str,
    *,
    now: Optional[float] = None,
) -> Reservation:
    """
    pending -> cancelled, releasing the hold. Cancelling twice is a no-op;
    confirmed or expired reservations cannot be cancelled.
    """
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            resv = await _require(db.session, reservation_id)
            done = await _transition(db.session, reservation_id,
                                     R_CANCELLED, now)
            if done:
                await ledger._release_hold(
                    db.session, resv.tier_id, resv.quantity
                )
            resv = await _require(db.session, reservation_id)

    if done:
        logger.info("reservation {} cancelled", reservation_id)
        return resv
    if resv.status == R_CANCELLED:
        return resv
    raise InvalidState(f"reservation is {resv.status}")
