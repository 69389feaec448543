import pytest
from loguru import logger

from hypehaus.errors import (
    InvalidState, NotFound, PaymentVerificationFailed
)
from hypehaus.model import ledger, reservations
from hypehaus.model.domain import (
    I_CANCELLED, I_CREATED, I_ORPHANED, I_VERIFIED, R_CANCELLED, Customer
)
from hypehaus.model.payments import idempotency_key_for

CUSTOMER = Customer(email="asha@example.com", phone="+91 98765 43210")


@pytest.fixture
async def resv(db, tier):
    return await reservations.create_reservation(db, tier.id, 2, 900)


class TestCreateIntent:
    async def test_amount_and_reference(self, db, resv, bridge, gateway):
        intent = await bridge.create_intent(db, resv.id, CUSTOMER)

        assert intent.amount_minor_units == 20472
        assert intent.currency == "INR"
        assert intent.status == I_CREATED
        assert intent.public_key == gateway.key_id
        assert intent.idempotency_key == idempotency_key_for(resv.id)
        stored = await reservations.get_reservation(db, resv.id)
        assert stored.external_payment_ref == intent.id

    async def test_second_call_returns_same_intent(
        self, db, resv, bridge, gateway
    ):
        first = await bridge.create_intent(db, resv.id, CUSTOMER)
        second = await bridge.create_intent(db, resv.id, CUSTOMER)

        assert second.id == first.id
        assert gateway.calls == 1

    async def test_expired_reservation(self, db, resv, bridge, gateway):
        with pytest.raises(InvalidState):
            await bridge.create_intent(
                db, resv.id, CUSTOMER, now=resv.expires_at + 1
            )
        assert gateway.calls == 0

    async def test_free_reservation_needs_no_intent(
        self, db, free_tier, bridge, gateway
    ):
        r = await reservations.create_reservation(db, free_tier.id, 1, 900)

        with pytest.raises(InvalidState):
            await bridge.create_intent(db, r.id, CUSTOMER)
        assert gateway.calls == 0

    async def test_unknown_reservation(self, db, bridge):
        with pytest.raises(NotFound):
            await bridge.create_intent(db, "missing", CUSTOMER)


class TestVerify:
    async def test_valid_signature(self, db, resv, bridge, gateway):
        intent = await bridge.create_intent(db, resv.id, CUSTOMER)
        done = gateway.complete(intent.id)

        payment = await bridge.verify(
            db, intent.id, done["external_payment_id"], done["signature"]
        )

        assert payment.intent_id == intent.id
        assert payment.amount == 20472
        assert payment.currency == "INR"
        assert (await bridge.get_intent(db, intent.id)).status == I_VERIFIED

    async def test_bad_signature_fails_closed(self, db, resv, bridge, gateway):
        intent = await bridge.create_intent(db, resv.id, CUSTOMER)
        done = gateway.complete(intent.id)

        with pytest.raises(PaymentVerificationFailed) as e:
            await bridge.verify(
                db, intent.id, done["external_payment_id"], "0" * 64
            )
        assert e.value.message == "Payment could not be verified"
        assert (await bridge.get_intent(db, intent.id)).status == I_CREATED

    async def test_signature_for_another_order(
        self, db, resv, bridge, gateway
    ):
        intent = await bridge.create_intent(db, resv.id, CUSTOMER)
        other = gateway.complete("order_someone_else")

        with pytest.raises(PaymentVerificationFailed):
            await bridge.verify(
                db, intent.id, other["external_payment_id"],
                other["signature"],
            )

    async def test_unknown_intent(self, db, bridge, gateway):
        done = gateway.complete("order_never_created")

        with pytest.raises(PaymentVerificationFailed):
            await bridge.verify(
                db, "order_never_created", done["external_payment_id"],
                done["signature"],
            )

    async def test_repeat_delivery_and_second_payment(
        self, db, resv, bridge, gateway
    ):
        intent = await bridge.create_intent(db, resv.id, CUSTOMER)
        done = gateway.complete(intent.id)
        args = (intent.id, done["external_payment_id"], done["signature"])

        await bridge.verify(db, *args)
        again = await bridge.verify(db, *args)
        assert again.external_payment_id == done["external_payment_id"]

        second = gateway.complete(intent.id)
        with pytest.raises(PaymentVerificationFailed):
            await bridge.verify(
                db, intent.id, second["external_payment_id"],
                second["signature"],
            )


class TestCancelIntent:
    async def test_releases_reservation(self, db, tier, resv, bridge):
        intent = await bridge.create_intent(db, resv.id, CUSTOMER)

        assert await bridge.cancel_intent(db, intent.id) is True

        assert (await bridge.get_intent(db, intent.id)).status == I_CANCELLED
        stored = await reservations.get_reservation(db, resv.id)
        assert stored.status == R_CANCELLED
        assert (await ledger.get_tier(db, tier.id)).available == 10

    async def test_verified_intent_is_not_cancelled(
        self, db, resv, bridge, gateway
    ):
        intent = await bridge.create_intent(db, resv.id, CUSTOMER)
        done = gateway.complete(intent.id)
        await bridge.verify(
            db, intent.id, done["external_payment_id"], done["signature"]
        )

        assert await bridge.cancel_intent(db, intent.id) is False
        assert (await bridge.get_intent(db, intent.id)).status == I_VERIFIED

    async def test_payment_after_cancel_is_kept_for_refund(
        self, db, tier, resv, bridge, gateway
    ):
        intent = await bridge.create_intent(db, resv.id, CUSTOMER)
        assert await bridge.cancel_intent(db, intent.id) is True
        # the buyer retries on the same gateway order and the payment lands
        done = gateway.complete(intent.id)
        args = (intent.id, done["external_payment_id"], done["signature"])
        records = []
        sink = logger.add(lambda m: records.append(m.record), level="ERROR")
        try:
            with pytest.raises(InvalidState):
                await bridge.verify(db, *args)
        finally:
            logger.remove(sink)

        stored = await bridge.get_intent(db, intent.id)
        assert stored.status == I_ORPHANED
        assert stored.external_payment_id == done["external_payment_id"]
        assert stored.verified_at is not None
        assert [r["extra"].get("needs_refund") for r in records] == [True]
        assert (await ledger.get_tier(db, tier.id)).available == 10

        # repeat delivery changes nothing
        with pytest.raises(InvalidState):
            await bridge.verify(db, *args)
        assert (await bridge.get_intent(db, intent.id)).status == I_ORPHANED


class TestWebhookSignature:
    def test_round_trip(self, gateway):
        payload, headers = gateway.webhook(
            {"event": "payment.failed", "order_id": "order_1"}
        )

        event = gateway.verify_webhook(payload, headers)

        assert gateway.event_kind(event) == "failed"
        assert gateway.event_order_id(event) == "order_1"

    def test_tampered_body(self, gateway):
        payload, headers = gateway.webhook(
            {"event": "payment.failed", "order_id": "order_1"}
        )

        with pytest.raises(PaymentVerificationFailed):
            gateway.verify_webhook(payload.replace(b"order_1", b"order_2"),
                                   headers)

    def test_missing_header(self, gateway):
        payload, _ = gateway.webhook({"event": "payment.failed"})

        with pytest.raises(PaymentVerificationFailed):
            gateway.verify_webhook(payload, {})
