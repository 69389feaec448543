from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class TierRow(Base):
    __tablename__ = "ticket_tiers"
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    price_minor_units = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    total_quantity = Column(Integer, nullable=False)
    sold_quantity = Column(Integer, nullable=False, default=0)
    held_quantity = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("price_minor_units >= 0", name="ck_tier_price"),
        CheckConstraint("total_quantity >= 0", name="ck_tier_total"),
        CheckConstraint("sold_quantity >= 0", name="ck_tier_sold"),
        CheckConstraint("held_quantity >= 0", name="ck_tier_held"),
        CheckConstraint(
            "sold_quantity + held_quantity <= total_quantity",
            name="ck_tier_capacity",
        ),
    )


class ReservationRow(Base):
    __tablename__ = "reservations"
    id = Column(String, primary_key=True)
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False)
    quantity = Column(Integer, nullable=False)

    # pending | confirmed | expired | cancelled
    status = Column(String, nullable=False, default="pending")
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    external_payment_ref = Column(String, nullable=True, unique=True)
    user_id = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_resv_qty"),
        Index("ix_resv_status_expires", "status", "expires_at"),
    )


class PaymentIntentRow(Base):
    __tablename__ = "payment_intents"
    # the gateway's external order id
    id = Column(String, primary_key=True)
    reservation_id = Column(
        String, ForeignKey("reservations.id"), nullable=False, unique=True
    )
    idempotency_key = Column(String, nullable=False, unique=True)
    amount_minor_units = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    public_key = Column(String, nullable=False)

    # created | verified | consumed | cancelled | orphaned
    status = Column(String, nullable=False, default="created")
    external_payment_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    verified_at = Column(Float, nullable=True)


class OrderRow(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    reservation_id = Column(
        String, ForeignKey("reservations.id"), nullable=False, unique=True
    )
    event_id = Column(String, nullable=False)
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False)
    user_id = Column(String, nullable=True, index=True)
    quantity = Column(Integer, nullable=False)

    # minor units (paise, cents)
    subtotal_minor_units = Column(Integer, nullable=False)
    fee_minor_units = Column(Integer, nullable=False)
    tax_minor_units = Column(Integer, nullable=False)
    total_amount_minor_units = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)

    # pending | paid | failed
    status = Column(String, nullable=False, default="pending")
    buyer_email = Column(String, nullable=True)
    buyer_phone = Column(String, nullable=True)
    attendee_names = Column(JSON, nullable=False)

    # NULL for free orders
    payment_intent_id = Column(String, nullable=True)
    external_payment_id = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class TicketRow(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    order_id = Column(
        String, ForeignKey("orders.id"), nullable=False, index=True
    )
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False)
    event_id = Column(String, nullable=False)
    attendee_name = Column(String, nullable=False)
    credential = Column(String, nullable=False, unique=True)

    # active | used | cancelled
    status = Column(String, nullable=False, default="active")
    created_at = Column(Float, nullable=False)
