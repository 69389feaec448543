import asyncio
from unittest.mock import AsyncMock

import pytest

from hypehaus.errors import InvalidState
from hypehaus.helpers import now_ts
from hypehaus.model import ledger, reservations
from hypehaus.model.domain import (
    I_CANCELLED, I_ORPHANED, R_CONFIRMED, R_EXPIRED, R_PENDING, Customer,
    OrderDetails,
)
from hypehaus.model.reconciler import (
    RELEASE_SCRIPT, SWEEP_LOCK_KEY, SettlementReconciler, SweepLock
)

DETAILS = OrderDetails(email="asha@example.com", attendee_names=("Asha",))


@pytest.fixture
def reconciler(database):
    return SettlementReconciler(database, abandoned_grace_seconds=600)


class TestSweep:
    async def test_expires_and_releases(self, db, tier, reconciler):
        resv = await reservations.create_reservation(db, tier.id, 3, 900)

        report = await reconciler.sweep(now=resv.expires_at + 1)

        assert report.expired == 1
        stored = await reservations.get_reservation(db, resv.id)
        assert stored.status == R_EXPIRED
        assert (await ledger.get_tier(db, tier.id)).available == 10

    async def test_leaves_live_holds_alone(self, db, tier, reconciler):
        resv = await reservations.create_reservation(db, tier.id, 3, 900)

        report = await reconciler.sweep(now=resv.expires_at - 1)

        assert report.expired == 0
        assert (await ledger.get_tier(db, tier.id)).held_quantity == 3

    async def test_second_sweep_releases_nothing(self, db, tier, reconciler):
        resv = await reservations.create_reservation(db, tier.id, 3, 900)
        await ledger.try_hold(db, tier.id, 2)  # someone else's hold

        await reconciler.sweep(now=resv.expires_at + 1)
        report = await reconciler.sweep(now=resv.expires_at + 2)

        assert report.expired == 0
        assert (await ledger.get_tier(db, tier.id)).held_quantity == 2

    async def test_abandoned_checkout(self, db, tier, bridge, reconciler):
        t0 = now_ts()
        resv = await reservations.create_reservation(
            db, tier.id, 2, 900, now=t0
        )
        intent = await bridge.create_intent(
            db, resv.id, Customer(email="a@example.com"), now=t0
        )

        early = await reconciler.sweep(now=t0 + 60)
        late = await reconciler.sweep(now=t0 + 601)

        assert early.abandoned == 0
        assert late.abandoned == 1
        stored = await reservations.get_reservation(db, resv.id)
        assert stored.status == R_EXPIRED
        assert (await ledger.get_tier(db, tier.id)).held_quantity == 0
        assert (await bridge.get_intent(db, intent.id)).status == I_CANCELLED

    async def test_orphaned_payment(
        self, db, tier, bridge, gateway, reconciler
    ):
        resv = await reservations.create_reservation(db, tier.id, 1, 900)
        intent = await bridge.create_intent(
            db, resv.id, Customer(email="a@example.com")
        )
        done = gateway.complete(intent.id)
        await bridge.verify(
            db, intent.id, done["external_payment_id"], done["signature"]
        )
        # the hold runs out before tickets are issued
        report = await reconciler.sweep(now=resv.expires_at + 1)
        again = await reconciler.sweep(now=resv.expires_at + 2)

        assert report.expired == 1
        assert report.orphaned == 1
        assert again.orphaned == 0
        assert (await bridge.get_intent(db, intent.id)).status == I_ORPHANED


class TestRaceWithIssue:
    async def test_issue_after_expiry_then_sweep(
        self, db, tier, bridge, gateway, issuer, reconciler
    ):
        resv = await reservations.create_reservation(db, tier.id, 1, 900)
        intent = await bridge.create_intent(
            db, resv.id, Customer(email="a@example.com")
        )
        done = gateway.complete(intent.id)
        payment = await bridge.verify(
            db, intent.id, done["external_payment_id"], done["signature"]
        )
        late = resv.expires_at + 1

        with pytest.raises(InvalidState):
            await issuer.issue(db, resv.id, payment, DETAILS, now=late)
        report = await reconciler.sweep(now=late)

        assert report.expired == 1
        stored = await reservations.get_reservation(db, resv.id)
        assert stored.status == R_EXPIRED
        t = await ledger.get_tier(db, tier.id)
        assert (t.sold_quantity, t.held_quantity) == (0, 0)

    async def test_confirmed_reservation_is_skipped(
        self, database, db, tier, bridge, gateway, issuer, reconciler
    ):
        resv = await reservations.create_reservation(db, tier.id, 1, 900)
        intent = await bridge.create_intent(
            db, resv.id, Customer(email="a@example.com")
        )
        done = gateway.complete(intent.id)
        payment = await bridge.verify(
            db, intent.id, done["external_payment_id"], done["signature"]
        )
        # the sweeper picked it as a candidate just before issue confirmed it
        snapshot = await reservations.get_reservation(db, resv.id)
        assert snapshot.status == R_PENDING
        await issuer.issue(db, resv.id, payment, DETAILS)

        async with database.connect() as s:
            won = await reconciler._expire(
                s, snapshot, resv.expires_at + 1, only_if_due=False
            )
        report = await reconciler.sweep(now=resv.expires_at + 1)

        assert won is False
        assert report.expired == 0
        stored = await reservations.get_reservation(db, resv.id)
        assert stored.status == R_CONFIRMED
        t = await ledger.get_tier(db, tier.id)
        assert (t.sold_quantity, t.held_quantity) == (1, 0)


    async def test_payment_verified_after_abandoned_pick(
        self, database, db, tier, bridge, gateway, issuer, reconciler
    ):
        t0 = now_ts()
        resv = await reservations.create_reservation(
            db, tier.id, 1, 900, now=t0
        )
        intent = await bridge.create_intent(
            db, resv.id, Customer(email="a@example.com"), now=t0
        )
        late = t0 + 601

        # the sweeper picks the checkout as abandoned, then the payment lands
        async with database.connect() as s:
            picked = await reconciler._abandoned(s, late)
        assert [r.id for r in picked] == [resv.id]
        done = gateway.complete(intent.id)
        payment = await bridge.verify(
            db, intent.id, done["external_payment_id"], done["signature"],
            now=late,
        )
        async with database.connect() as s:
            won = await reconciler._expire_abandoned(s, picked[0], late)

        assert won is False
        stored = await reservations.get_reservation(db, resv.id)
        assert stored.status == R_PENDING
        order = await issuer.issue(db, resv.id, payment, DETAILS, now=late)
        assert order.reservation_id == resv.id
        t = await ledger.get_tier(db, tier.id)
        assert (t.sold_quantity, t.held_quantity) == (1, 0)

    async def test_payment_after_abandoned_sweep_is_kept_for_refund(
        self, db, tier, bridge, gateway, reconciler
    ):
        t0 = now_ts()
        resv = await reservations.create_reservation(
            db, tier.id, 1, 900, now=t0
        )
        intent = await bridge.create_intent(
            db, resv.id, Customer(email="a@example.com"), now=t0
        )
        report = await reconciler.sweep(now=t0 + 601)
        assert report.abandoned == 1

        done = gateway.complete(intent.id)
        with pytest.raises(InvalidState):
            await bridge.verify(
                db, intent.id, done["external_payment_id"],
                done["signature"], now=t0 + 700,
            )

        stored = await bridge.get_intent(db, intent.id)
        assert stored.status == I_ORPHANED
        assert stored.external_payment_id == done["external_payment_id"]
        assert (await ledger.get_tier(db, tier.id)).held_quantity == 0


class TestSweepLock:
    async def test_skips_when_another_worker_holds_the_lock(
        self, database, tier
    ):
        r = AsyncMock()
        r.set.return_value = None
        reconciler = SettlementReconciler(
            database, lock=SweepLock(r, ttl_seconds=90)
        )

        assert await reconciler.sweep_locked() is None
        r.set.assert_awaited_once()
        assert r.set.await_args.kwargs == {"nx": True, "ex": 90}
        r.eval.assert_not_awaited()

    async def test_release_is_one_compare_and_delete(self, database, tier):
        r = AsyncMock()
        tokens = []
        r.set.side_effect = lambda key, token, **kw: tokens.append(token) or True
        lock = SweepLock(r, ttl_seconds=90)
        reconciler = SettlementReconciler(database, lock=lock)

        report = await reconciler.sweep_locked()

        assert report is not None
        r.eval.assert_awaited_once_with(
            RELEASE_SCRIPT, 1, SWEEP_LOCK_KEY, tokens[0]
        )
        r.get.assert_not_awaited()
        r.delete.assert_not_awaited()
        assert lock._token is None

    async def test_release_without_lock_is_a_no_op(self):
        r = AsyncMock()
        lock = SweepLock(r, ttl_seconds=90)

        await lock.release()

        r.eval.assert_not_awaited()


class TestLifecycle:
    async def test_start_and_stop(self, database, tier):
        reconciler = SettlementReconciler(database, interval_seconds=3600)

        reconciler.start()
        await reconciler.stop()

        assert reconciler._task is None

    async def test_run_forever_survives_errors(self, database, monkeypatch):
        reconciler = SettlementReconciler(database, interval_seconds=0)
        calls = []

        async def boom(now=None):
            calls.append(now)
            if len(calls) >= 3:
                raise asyncio.CancelledError()
            raise RuntimeError("db went away")

        monkeypatch.setattr(reconciler, "sweep", boom)

        with pytest.raises(asyncio.CancelledError):
            await reconciler.run_forever()
        assert len(calls) == 3
