# model/reconciler.py
"""
Settlement Reconciler: the only path that hands held inventory back without
an explicit cancel or issuance.

Each pass:
  - pending reservations past expires_at -> expired, hold released
  - pending reservations whose payment intent is older than the grace period
    and was never verified (abandoned checkout) -> intent cancelled and the
    same expiry path, in one transaction
  - intents verified but never turned into an order, whose reservation is
    no longer pending -> orphaned (money captured, no tickets; logged for a
    manual refund)

Every change is the same guarded `status='pending'` UPDATE the issuer uses,
so a sweep racing an issue can never leave a reservation both confirmed and
expired.
"""

from __future__ import annotations
import asyncio
import uuid
from dataclasses import dataclass
from typing import List, Optional

import redis.asyncio as redis
from loguru import logger
from sqlalchemy import text

from ..helpers import now_ts
from ..infra.sql import Database, GatedAsyncSession
from . import reservations
from .domain import I_CANCELLED, I_ORPHANED, Reservation

SWEEP_LOCK_KEY = "hypehaus:reconciler:sweep"

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


@dataclass
class SweepReport:
    expired: int = 0
    abandoned: int = 0
    orphaned: int = 0
    skipped: int = 0


class SweepLock:
    """SET NX EX gate so only one worker sweeps at a time."""

    def __init__(self, r: redis.Redis, ttl_seconds: int,
                 key: str = SWEEP_LOCK_KEY) -> None:
        self.r = r
        self.ttl = ttl_seconds
        self.key = key
        self._token: Optional[str] = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        ok = await self.r.set(self.key, token, nx=True, ex=self.ttl)
        if ok:
            self._token = token
        return bool(ok)

    async def release(self) -> None:
        if self._token is None:
            return
        # compare-and-delete in one step: only drop the lock if still ours
        await self.r.eval(RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None


class SettlementReconciler:
    def __init__(
        self,
        database: Database,
        *,
        interval_seconds: float = 60.0,
        abandoned_grace_seconds: int = 600,
        lock: Optional[SweepLock] = None,
    ) -> None:
        self.database = database
        self.interval = interval_seconds
        self.grace = abandoned_grace_seconds
        self.lock = lock
        self._task: Optional[asyncio.Task] = None

    # ---- candidates
    async def _due(
        self, db: GatedAsyncSession, now: float
    ) -> List[Reservation]:
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text("""
                    SELECT id, tier_id, quantity, status, created_at,
                           expires_at, external_payment_ref, user_id, version
                    FROM reservations
                    WHERE status='pending' AND expires_at < :now
                    ORDER BY expires_at
                """), {"now": now})).mappings().all()
        return [Reservation.from_row(r) for r in rows]

    async def _abandoned(
        self, db: GatedAsyncSession, now: float
    ) -> List[Reservation]:
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text("""
                    SELECT r.id, r.tier_id, r.quantity, r.status,
                           r.created_at, r.expires_at,
                           r.external_payment_ref, r.user_id, r.version
                    FROM reservations AS r
                    JOIN payment_intents AS i ON i.id = r.external_payment_ref
                    WHERE r.status='pending'
                      AND r.expires_at >= :now
                      AND i.status='created'
                      AND i.created_at < :cutoff
                """), {"now": now, "cutoff": now - self.grace})).mappings()
                return [Reservation.from_row(r) for r in rows.all()]

    async def _expire(
        self, db: GatedAsyncSession, resv: Reservation, now: float,
        *, only_if_due: bool,
    ) -> bool:
        async with db.gated():
            async with db.session.begin():
                return await reservations._expire(
                    db.session, resv, now, only_if_due=only_if_due
                )

    async def _expire_abandoned(
        self, db: GatedAsyncSession, resv: Reservation, now: float
    ) -> bool:
        """
        Call off the checkout and expire the reservation in one transaction.
        The intent must still be unpaid when the UPDATE runs; a verify that
        landed after `_abandoned` picked the candidate wins.
        """
        async with db.gated():
            async with db.session.begin():
                res = await db.session.execute(text("""
                    UPDATE payment_intents SET status=:s
                    WHERE id=:id AND reservation_id=:r
                      AND status='created' AND created_at < :cutoff
                """), {"id": resv.external_payment_ref, "r": resv.id,
                       "s": I_CANCELLED, "cutoff": now - self.grace})
                if res.rowcount != 1:
                    return False
                return await reservations._expire(
                    db.session, resv, now, only_if_due=False
                )

    async def _orphan_payments(self, db: GatedAsyncSession) -> int:
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text("""
                    SELECT i.id, i.reservation_id, i.external_payment_id,
                           i.amount_minor_units, i.currency
                    FROM payment_intents AS i
                    JOIN reservations AS r ON r.id = i.reservation_id
                    LEFT JOIN orders AS o ON o.reservation_id = r.id
                    WHERE i.status='verified'
                      AND r.status <> 'pending'
                      AND o.id IS NULL
                """))).mappings().all()
                for row in rows:
                    await db.session.execute(text("""
                        UPDATE payment_intents SET status=:s
                        WHERE id=:id AND status='verified'
                    """), {"id": row["id"], "s": I_ORPHANED})

        for row in rows:
            logger.bind(needs_refund=True).error(
                "payment {} ({} {}) captured for reservation {} "
                "but no tickets were issued",
                row["external_payment_id"], row["amount_minor_units"],
                row["currency"], row["reservation_id"],
            )
        return len(rows)

    # ---- one pass
    async def sweep(self, now: Optional[float] = None) -> SweepReport:
        now = now_ts() if now is None else now
        report = SweepReport()

        async with self.database.connect() as db:
            for resv in await self._due(db, now):
                if await self._expire(db, resv, now, only_if_due=True):
                    report.expired += 1
                else:
                    # confirmed or cancelled since we looked
                    report.skipped += 1

            for resv in await self._abandoned(db, now):
                if await self._expire_abandoned(db, resv, now):
                    report.abandoned += 1
                else:
                    report.skipped += 1

            report.orphaned = await self._orphan_payments(db)

        if report.expired or report.abandoned or report.orphaned:
            logger.info(
                "sweep: expired={} abandoned={} orphaned={} skipped={}",
                report.expired, report.abandoned, report.orphaned,
                report.skipped,
            )
        return report

    async def sweep_locked(self, now: Optional[float] = None
                           ) -> Optional[SweepReport]:
        if self.lock is None:
            return await self.sweep(now)
        if not await self.lock.acquire():
            logger.debug("another worker holds the sweep lock")
            return None
        try:
            return await self.sweep(now)
        finally:
            await self.lock.release()

    # ---- lifecycle
    async def run_forever(self) -> None:
        while True:
            try:
                await self.sweep_locked()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("reconciler sweep failed")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
