from __future__ import annotations
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound
from ..infra.sql import GatedAsyncSession
from .domain import Order, Ticket

ORDER_COLUMNS = """
    id, reservation_id, event_id, tier_id, user_id, quantity,
    subtotal_minor_units, fee_minor_units, tax_minor_units,
    total_amount_minor_units, currency, status, buyer_email, buyer_phone,
    attendee_names, payment_intent_id, external_payment_id, created_at,
    paid_at
"""

TICKET_COLUMNS = """
    id, order_id, tier_id, event_id, attendee_name, credential, status,
    created_at
"""


# UN-GATED internal functions
async def _tickets_for_order(db: AsyncSession, order_id: str) -> List[Ticket]:
    rows = (await db.execute(text(
        f"SELECT {TICKET_COLUMNS} FROM tickets WHERE order_id=:o "
        "ORDER BY created_at, id"
    ), {"o": order_id})).mappings().all()
    return [Ticket.from_row(r) for r in rows]


async def _order_where(
    db: AsyncSession, column: str, value: str
) -> Optional[Order]:
    row = (await db.execute(text(
        f"SELECT {ORDER_COLUMNS} FROM orders WHERE {column}=:v"
    ), {"v": value})).mappings().first()
    if not row:
        return None
    tickets = await _tickets_for_order(db, row["id"])
    return Order.from_row(row, tickets=tuple(tickets))


async def get_order(db: GatedAsyncSession, order_id: str) -> Order:
    async with db.gated():
        async with db.session.begin():
            order = await _order_where(db.session, "id", order_id)
    if order is None:
        raise NotFound("order not found")
    return order


async def order_for_reservation(
    db: GatedAsyncSession, reservation_id: str
) -> Optional[Order]:
    async with db.gated():
        async with db.session.begin():
            return await _order_where(
                db.session, "reservation_id", reservation_id
            )


async def orders_for_user(
    db: GatedAsyncSession, user_id: str, limit: int = 100
) -> List[Order]:
    """Purchase history, newest first. Tickets are not loaded."""
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT {ORDER_COLUMNS} FROM orders
                WHERE user_id=:u
                ORDER BY created_at DESC
                LIMIT :limit
            """), {"u": user_id, "limit": max(1, min(limit, 500))}))
            return [Order.from_row(r) for r in rows.mappings().all()]


async def tickets_for_user(
    db: GatedAsyncSession, user_id: str, limit: int = 200
) -> List[Ticket]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT t.id, t.order_id, t.tier_id, t.event_id,
                       t.attendee_name, t.credential, t.status, t.created_at
                FROM tickets AS t
                JOIN orders AS o ON o.id = t.order_id
                WHERE o.user_id=:u
                  AND t.status IN ('active', 'used', 'cancelled')
                ORDER BY t.created_at DESC, t.id
                LIMIT :limit
            """), {"u": user_id, "limit": max(1, min(limit, 1000))}))
            return [Ticket.from_row(r) for r in rows.mappings().all()]
