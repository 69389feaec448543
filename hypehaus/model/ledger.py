# model/ledger.py
"""
Inventory ledger: one row per ticket tier carrying total, sold and held
counts.

- time-limited holds raise `held_quantity` (Reservation Manager)
- a sale moves units from held to sold (Order & Ticket Issuer)
- releases give held units back (cancel / expiry)
- inventory computation (sold, held, available)

Every mutation is a single conditional UPDATE on the tier row. The database
evaluates the condition under its row lock (postgres) or write lock (sqlite),
so concurrent holds can never push sold + held past total. The CHECK
constraint on the table is the last line of defence.
"""

from __future__ import annotations
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    InsufficientInventory, InvalidRequest, LedgerInvariantViolation, NotFound
)
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .domain import HoldResult, TicketTier


# ------------------------------------------------------------------------------
# UN-GATED internals: callers own the transaction
# ------------------------------------------------------------------------------

async def _get_tier(db: AsyncSession, tier_id: str) -> Optional[TicketTier]:
    row = (await db.execute(text("""
        SELECT id, event_id, name, price_minor_units, currency,
               total_quantity, sold_quantity, held_quantity
        FROM ticket_tiers WHERE id=:id
    """), {"id": tier_id})).mappings().first()
    return TicketTier.from_row(row) if row else None


async def _require_tier(db: AsyncSession, tier_id: str) -> TicketTier:
    tier = await _get_tier(db, tier_id)
    if tier is None:
        raise NotFound(f"Unknown ticket tier: {tier_id}")
    return tier


async def _try_hold(db: AsyncSession, tier_id: str, qty: int) -> bool:
    """
    Raise held_quantity by `qty` iff capacity remains.
    Returns False (and changes nothing) when it does not fit.
    """
    res = await db.execute(text("""
        UPDATE ticket_tiers
        SET held_quantity = held_quantity + :q, version = version + 1
        WHERE id=:id
          AND sold_quantity + held_quantity + :q <= total_quantity
    """), {"id": tier_id, "q": qty})
    if res.rowcount == 1:
        return True
    # distinguish "sold out" from "no such tier"
    await _require_tier(db, tier_id)
    return False


async def _release_hold(db: AsyncSession, tier_id: str, qty: int) -> None:
    res = await db.execute(text("""
        UPDATE ticket_tiers
        SET held_quantity = held_quantity - :q, version = version + 1
        WHERE id=:id AND held_quantity >= :q
    """), {"id": tier_id, "q": qty})
    if res.rowcount == 1:
        return

    # double release: clamp at zero instead of going negative
    res = await db.execute(text("""
        UPDATE ticket_tiers
        SET held_quantity = 0, version = version + 1
        WHERE id=:id
    """), {"id": tier_id})
    if res.rowcount == 0:
        raise NotFound(f"Unknown ticket tier: {tier_id}")
    logger.warning(
        "release of {} on tier {} exceeded held count, clamped to 0",
        qty, tier_id,
    )


async def _commit_sale(db: AsyncSession, tier_id: str, qty: int) -> None:
    """
    Move `qty` units from held to sold. sold + held stays constant, so the
    capacity invariant holds as long as the hold was there.
    """
    res = await db.execute(text("""
        UPDATE ticket_tiers
        SET held_quantity = held_quantity - :q,
            sold_quantity = sold_quantity + :q,
            version = version + 1
        WHERE id=:id AND held_quantity >= :q
    """), {"id": tier_id, "q": qty})
    if res.rowcount != 1:
        raise LedgerInvariantViolation(
            f"commit_sale({tier_id}, {qty}) without a matching hold"
        )


# ------------------------------------------------------------------------------
# Catalog import (tiers are authored elsewhere; we only mirror them)
# ------------------------------------------------------------------------------

async def create_tier(db: GatedAsyncSession, tier: TicketTier) -> TicketTier:
    try:
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(text("""
                    INSERT INTO ticket_tiers(
                        id, event_id, name, price_minor_units, currency,
                        total_quantity, sold_quantity, held_quantity, version)
                    VALUES(:id, :e, :n, :p, :c, :t, 0, 0, 0)
                """), {
                    "id": tier.id, "e": tier.event_id, "n": tier.name,
                    "p": tier.price_minor_units, "c": tier.currency,
                    "t": tier.total_quantity,
                })
    except IntegrityError:
        raise InvalidRequest(f"Tier {tier.id} exists or is invalid")
    return await get_tier(db, tier.id)


async def upsert_tier(db: GatedAsyncSession, tier: TicketTier) -> TicketTier:
    """
    Insert or update catalog fields. sold/held counts are never touched; a
    capacity below what is already sold + held is rejected by the CHECK.
    """
    try:
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(text("""
                    INSERT INTO ticket_tiers(
                        id, event_id, name, price_minor_units, currency,
                        total_quantity, sold_quantity, held_quantity, version)
                    VALUES(:id, :e, :n, :p, :c, :t, 0, 0, 0)
                    ON CONFLICT (id) DO UPDATE SET
                        event_id=EXCLUDED.event_id,
                        name=EXCLUDED.name,
                        price_minor_units=EXCLUDED.price_minor_units,
                        currency=EXCLUDED.currency,
                        total_quantity=EXCLUDED.total_quantity,
                        version=ticket_tiers.version + 1
                """), {
                    "id": tier.id, "e": tier.event_id, "n": tier.name,
                    "p": tier.price_minor_units, "c": tier.currency,
                    "t": tier.total_quantity,
                })
    except IntegrityError:
        raise InvalidRequest(
            f"Tier {tier.id}: capacity below sold + held or invalid values"
        )
    return await get_tier(db, tier.id)


# ------------------------------------------------------------------------------
# Public API: each call is its own transaction
# ------------------------------------------------------------------------------

async def get_tier(db: GatedAsyncSession, tier_id: str) -> TicketTier:
    async with db.gated():
        async with db.session.begin():
            return await _require_tier(db.session, tier_id)


async def available_count(db: GatedAsyncSession, tier_id: str) -> int:
    tier = await get_tier(db, tier_id)
    return tier.available


async def try_hold(
    db: GatedAsyncSession, tier_id: str, qty: int
) -> HoldResult:
    if qty < 1:
        raise InvalidRequest("quantity must be at least 1")
    async with db.gated():
        async with db.session.begin():
            ok = await _try_hold(db.session, tier_id, qty)
            if not ok:
                raise InsufficientInventory(tier_id, qty)
            tier = await _require_tier(db.session, tier_id)
    return HoldResult(
        tier_id=tier_id, quantity=qty, available_after=tier.available
    )


async def release_hold(db: GatedAsyncSession, tier_id: str, qty: int) -> None:
    async with db.gated():
        async with db.session.begin():
            await _release_hold(db.session, tier_id, qty)


async def commit_sale(db: GatedAsyncSession, tier_id: str, qty: int) -> None:
    async with db.gated():
        async with db.session.begin():
            await _commit_sale(db.session, tier_id, qty)


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def inventory(
    db: GatedAsyncSession, event_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Returns:
      {
        "<tier_id>": { "event_id": ..., "name": ..., "capacity": ...,
                       "sold": ..., "active_holds": ..., "available": ...,
                       "sold_out": ..., "timestamp": ... },
        ...
      }
    """
    ts = now_ts()
    sql = """
        SELECT id, event_id, name, price_minor_units, currency,
               total_quantity, sold_quantity, held_quantity
        FROM ticket_tiers
    """
    params: Dict[str, Any] = {}
    if event_id is not None:
        sql += " WHERE event_id=:e"
        params["e"] = event_id
    sql += " ORDER BY event_id, id"

    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(sql), params)).mappings()
            tiers = [TicketTier.from_row(r) for r in rows]

    out: Dict[str, Any] = {}
    for t in tiers:
        out[t.id] = {
            "event_id": t.event_id,
            "name": t.name,
            "price_minor_units": t.price_minor_units,
            "currency": t.currency,
            "capacity": t.total_quantity,
            "sold": t.sold_quantity,
            "active_holds": t.held_quantity,
            "available": t.available,
            "sold_out": t.available <= 0,
            "timestamp": to_iso(ts),
        }
    return out
