from __future__ import annotations
from typing import AsyncIterator, List, Optional

import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text

from .config import Settings
from .errors import DomainError, InvalidRequest, NotFound
from .gateway import PaymentAdapter, new_adapter
from .infra.sql import GatedAsyncSession, database_for
from .infra.timings import Timings
from .logs import configure_logging
from .model import ledger, queries, reservations
from .model.domain import Customer, OrderDetails, Reservation
from .model.issuer import Issuer
from .model.payments import PaymentBridge
from .model.pricing import quote
from .model.reconciler import SettlementReconciler, SweepLock


# ----------------------------
# Request bodies
# ----------------------------
class ReservationIn(BaseModel):
    tier_id: str
    quantity: int = 1


class CustomerIn(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None


class OrderDetailsIn(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    attendee_names: List[str] = Field(default_factory=list)

    def to_domain(self) -> OrderDetails:
        return OrderDetails(
            email=(self.email or "").strip() or None,
            phone=(self.phone or "").strip() or None,
            attendee_names=tuple(self.attendee_names),
        )


class PaymentIntentIn(BaseModel):
    customer: CustomerIn = Field(default_factory=CustomerIn)
    order_details: Optional[OrderDetailsIn] = None


class VerifyIn(BaseModel):
    intent_id: str
    external_payment_id: str
    signature: str
    order_details: OrderDetailsIn


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request) -> AsyncIterator[GatedAsyncSession]:
    async with request.app.state.database.connect() as db:
        yield db


def optional_user(
    x_user_id: Optional[str] = Header(default=None),
) -> Optional[str]:
    return (x_user_id or "").strip() or None


def require_user(
    user_id: Optional[str] = Depends(optional_user),
) -> str:
    if user_id is None:
        raise HTTPException(401, detail="X-User-Id header required")
    return user_id


def _check_owner(resv: Reservation, user_id: Optional[str]) -> None:
    # someone else's reservation looks exactly like a missing one
    if resv.user_id and user_id and resv.user_id != user_id:
        raise NotFound(f"Unknown reservation: {resv.id}")


# ----------------------------
# App factory
# ----------------------------
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="HypeHaus",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.timings = Timings()
    app.state.redis = None
    app.state.reconciler = None

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _startup():
        configure_logging(settings.log_level)
        database = database_for(settings)
        await database.create_schema()
        app.state.database = database

        adapter: PaymentAdapter = new_adapter(settings)
        app.state.adapter = adapter
        app.state.bridge = PaymentBridge(
            adapter, fee_rate=settings.fee_rate, tax_rate=settings.tax_rate
        )
        app.state.issuer = Issuer(
            fee_rate=settings.fee_rate, tax_rate=settings.tax_rate
        )

        lock = None
        if settings.redis_url:
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
            lock = SweepLock(
                app.state.redis,
                ttl_seconds=int(settings.reconcile_interval_seconds) + 30,
            )
        reconciler = SettlementReconciler(
            database,
            interval_seconds=settings.reconcile_interval_seconds,
            abandoned_grace_seconds=settings.abandoned_grace_seconds,
            lock=lock,
        )
        app.state.reconciler = reconciler
        if settings.reconciler_enabled:
            reconciler.start()

        logger.info(
            "HypeHaus is starting up (gateway={}, reconciler={}, lock={})",
            settings.gateway_backend,
            "on" if settings.reconciler_enabled else "off",
            "redis" if lock else "none",
        )

    @app.on_event("shutdown")
    async def _shutdown():
        reconciler = app.state.reconciler
        if reconciler is not None:
            await reconciler.stop()
        adapter = getattr(app.state, "adapter", None)
        if adapter is not None:
            await adapter.aclose()
        r = app.state.redis
        if r is not None:
            await r.close()
            app.state.redis = None
        database = getattr(app.state, "database", None)
        if database is not None:
            await database.dispose()

    # ---
    # errors
    # ---
    @app.exception_handler(DomainError)
    async def _domain_error(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.error("{} {} -> {}", request.method, request.url.path, exc)
        else:
            logger.debug("{} {} -> {}", request.method, request.url.path, exc)
        return ORJSONResponse(
            {"code": exc.code.value, "detail": exc.message},
            status_code=exc.status_code,
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.opt(exception=exc).error(
            "unhandled error on {} {}", request.method, request.url.path
        )
        return ORJSONResponse(
            {"code": "INTERNAL", "detail": "internal error"},
            status_code=500,
        )

    timings: Timings = app.state.timings

    # ----------------------------
    # Reservations
    # ----------------------------
    @app.post("/reservations")
    async def create_reservation(
        body: ReservationIn,
        db: GatedAsyncSession = Depends(get_db),
        user_id: Optional[str] = Depends(optional_user),
    ):
        tier = await ledger.get_tier(db, body.tier_id)
        async with timings.timeit("reservation.create"):
            resv = await reservations.create_reservation(
                db, tier.id, body.quantity,
                settings.reservation_ttl_seconds,
                user_id=user_id,
                max_quantity=settings.max_quantity_per_reservation,
            )
        q = quote(tier.price_minor_units, resv.quantity,
                  settings.fee_rate, settings.tax_rate, tier.currency)
        return {
            "reservation": resv.to_dict(),
            "quote": {
                "subtotal": q.subtotal,
                "fee": q.fee,
                "tax": q.tax,
                "total": q.total,
                "currency": q.currency,
                "is_free": q.is_free,
            },
        }

    @app.get("/reservations/{reservation_id}")
    async def get_reservation(
        reservation_id: str,
        db: GatedAsyncSession = Depends(get_db),
        user_id: Optional[str] = Depends(optional_user),
    ):
        resv = await reservations.get_reservation(db, reservation_id)
        _check_owner(resv, user_id)
        return resv.to_dict()

    @app.post("/reservations/{reservation_id}/cancel")
    async def cancel_reservation(
        reservation_id: str,
        db: GatedAsyncSession = Depends(get_db),
        user_id: Optional[str] = Depends(optional_user),
    ):
        resv = await reservations.get_reservation(db, reservation_id)
        _check_owner(resv, user_id)
        async with timings.timeit("reservation.cancel"):
            resv = await reservations.cancel(db, reservation_id)
        return {"ok": True, "reservation": resv.to_dict()}

    # ----------------------------
    # Payment
    # ----------------------------
    @app.post("/reservations/{reservation_id}/payment-intent")
    async def create_payment_intent(
        reservation_id: str,
        body: PaymentIntentIn,
        request: Request,
        db: GatedAsyncSession = Depends(get_db),
        user_id: Optional[str] = Depends(optional_user),
    ):
        resv = await reservations.get_reservation(db, reservation_id)
        _check_owner(resv, user_id)
        tier = await ledger.get_tier(db, resv.tier_id)
        q = quote(tier.price_minor_units, resv.quantity,
                  settings.fee_rate, settings.tax_rate, tier.currency)

        if q.is_free:
            if body.order_details is None:
                raise InvalidRequest("order_details required for free tickets")
            async with timings.timeit("order.issue_free"):
                order = await request.app.state.issuer.issue_free(
                    db, reservation_id, body.order_details.to_domain()
                )
            return {"is_free": True, "order": order.to_dict()}

        c = body.customer
        async with timings.timeit("payment.create_intent"):
            intent = await request.app.state.bridge.create_intent(
                db, reservation_id,
                Customer(email=c.email, phone=c.phone, name=c.name),
            )
        return {
            "is_free": False,
            "intent_id": intent.id,
            "public_key": intent.public_key,
            "amount": intent.amount_minor_units,
            "currency": intent.currency,
            "reservation_id": reservation_id,
            "expires_at": resv.expires_at,
        }

    @app.post("/payments/verify")
    async def verify_payment(
        body: VerifyIn,
        request: Request,
        db: GatedAsyncSession = Depends(get_db),
    ):
        bridge: PaymentBridge = request.app.state.bridge
        async with timings.timeit("payment.verify"):
            payment = await bridge.verify(
                db, body.intent_id, body.external_payment_id, body.signature
            )
        intent = await bridge.get_intent(db, payment.intent_id)
        async with timings.timeit("order.issue"):
            order = await request.app.state.issuer.issue(
                db, intent.reservation_id, payment,
                body.order_details.to_domain(),
            )
        return order.to_dict()

    @app.post("/payments/webhook")
    async def payments_webhook(
        request: Request,
        db: GatedAsyncSession = Depends(get_db),
    ):
        adapter: PaymentAdapter = request.app.state.adapter
        payload = await request.body()
        event = adapter.verify_webhook(payload, dict(request.headers))
        kind = adapter.event_kind(event)  # captured | failed | cancelled
        order_id = adapter.event_order_id(event)
        if not order_id:
            raise InvalidRequest("missing order_id")

        if kind in ("failed", "cancelled"):
            async with timings.timeit("payment.cancel_intent"):
                cancelled = await request.app.state.bridge.cancel_intent(
                    db, order_id
                )
            return {"ok": True, "cancelled": cancelled}

        # captures are settled through /payments/verify, which carries the
        # attendee details the webhook does not have
        return {"ok": True, "ignored": kind}

    # ----------------------------
    # Orders & tickets
    # ----------------------------
    @app.get("/api/orders/{order_id}")
    async def get_order(
        order_id: str,
        db: GatedAsyncSession = Depends(get_db),
        user_id: Optional[str] = Depends(optional_user),
    ):
        async with timings.timeit("db.get_order"):
            order = await queries.get_order(db, order_id)
        if order.user_id and user_id and order.user_id != user_id:
            raise NotFound("order not found")
        return order.to_dict()

    @app.get("/api/me/orders")
    async def my_orders(
        limit: int = 100,
        db: GatedAsyncSession = Depends(get_db),
        user_id: str = Depends(require_user),
    ):
        orders = await queries.orders_for_user(db, user_id, limit=limit)
        return {"items": [o.to_dict() for o in orders], "limit": limit}

    @app.get("/api/me/tickets")
    async def my_tickets(
        limit: int = 200,
        db: GatedAsyncSession = Depends(get_db),
        user_id: str = Depends(require_user),
    ):
        tickets = await queries.tickets_for_user(db, user_id, limit=limit)
        return {"items": [t.to_dict() for t in tickets], "limit": limit}

    # ----------------------------
    # Ops
    # ----------------------------
    @app.get("/api/inventory")
    async def get_inventory(
        event_id: Optional[str] = None,
        db: GatedAsyncSession = Depends(get_db),
    ):
        return await ledger.inventory(db, event_id=event_id)

    @app.get("/api/timings")
    async def get_timings():
        return timings.summary()

    @app.get("/health")
    async def health(db: GatedAsyncSession = Depends(get_db)):
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(text("SELECT 1"))
        return {"ok": True, "gateway": settings.gateway_backend}

    return app


app = create_app()
