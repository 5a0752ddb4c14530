from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    CheckConstraint,
    UniqueConstraint,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

# Order statuses
O_PENDING = "pending"
O_COMPLETED = "completed"
O_EXPIRED = "expired"
O_REFUNDED = "refunded"

# Credential statuses
C_VALID = "valid"
C_USED = "used"
C_CANCELLED = "cancelled"
C_REFUNDED = "refunded"

# Pool kinds
K_TICKET = "ticket"
K_OFFER = "offer"
K_RESERVATION = "reservation"
POOL_KINDS = (K_TICKET, K_OFFER, K_RESERVATION)


# ----------------------------
# ORM models
# ----------------------------
class InventoryPool(Base):
    __tablename__ = "inventory_pools"
    id = Column(String, primary_key=True)
    # ticket | offer | reservation
    kind = Column(String, nullable=False, default=K_TICKET)
    business_id = Column(String, nullable=True)
    name = Column(String, nullable=False, default="")

    total_capacity = Column(Integer, nullable=False)
    remaining = Column(Integer, nullable=False)
    # unlimited pools never touch `remaining`
    unlimited = Column(Boolean, nullable=False, default=False)

    price = Column(Integer, nullable=False, default=0)  # minor units
    currency = Column(String, nullable=False, default="eur")
    max_per_order = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint("total_capacity >= 0", name="ck_pool_capacity"),
        CheckConstraint("remaining >= 0", name="ck_pool_remaining_min"),
        CheckConstraint(
            "remaining <= total_capacity", name="ck_pool_remaining_max"
        ),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    buyer_id = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    # pending | completed | expired | refunded
    status = Column(String, nullable=False, default=O_PENDING)
    idempotency_key = Column(String, nullable=True)
    # payment session id at the provider
    external_payment_ref = Column(String, nullable=True, unique=True)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="eur")
    created_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)
    updated_at = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "buyer_id", "idempotency_key", name="uq_order_idempotency"
        ),
        Index("ix_orders_status_created", "status", "created_at"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    order_id = Column(String, primary_key=True)
    pool_id = Column(String, primary_key=True)
    quantity = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_item_quantity"),
    )


class Credential(Base):
    __tablename__ = "credentials"
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, index=True)
    pool_id = Column(String, nullable=False, index=True)
    qr_token = Column(String, nullable=False, unique=True)
    # valid | used | cancelled | refunded
    status = Column(String, nullable=False, default=C_VALID)
    quantity = Column(Integer, nullable=False, default=1)
    checked_in_at = Column(Float, nullable=True)
    checked_in_by = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    # provider event id; the primary key is the dedup constraint
    event_id = Column(String, primary_key=True)
    kind = Column(String, nullable=True)
    received_at = Column(Float, nullable=False, index=True)


class PaymentAnomaly(Base):
    __tablename__ = "payment_anomalies"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=True, index=True)
    event_id = Column(String, nullable=True)
    source = Column(String, nullable=False)  # webhook | sweep
    reason = Column(Text, nullable=False)
    created_at = Column(Float, nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)


class ScanLog(Base):
    __tablename__ = "scan_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    credential_id = Column(String, nullable=True, index=True)
    qr_token = Column(String, nullable=False)
    staff_id = Column(String, nullable=True)
    business_id = Column(String, nullable=True)
    source = Column(String, nullable=False)  # online | offline
    result = Column(String, nullable=False)  # ok | ALREADY_USED | NOT_VALID
    scanned_at = Column(Float, nullable=True)
    recorded_at = Column(Float, nullable=False)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
