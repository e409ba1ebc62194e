"""SQLAlchemy ORM models for the reconciliation core.

Only the columns the reconciliation path and its emails read or write.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BIGINT,
    BOOLEAN,
    INTEGER,
    JSON,
    NUMERIC,
    TEXT,
    TIMESTAMP,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BIGINT().with_variant(INTEGER(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Order(Base):
    """One-time purchase order paid through Checkout Pro / PIX.

    The gateway's external_reference is the bare numeric order id.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    customer_email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    total: Mapped[Optional[float]] = mapped_column(NUMERIC(12, 2, asdecimal=False), nullable=True)

    # pending, processing, paid, cancelled, refunded
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    payment_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Payment confirmation email sent
    notified_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    # Payment rejected email sent
    failure_notified_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_orders_gateway_payment", "gateway_payment_id"),
        Index("idx_orders_status", "status"),
    )


class Gift(Base):
    """Gifted subscription paid by the giver, announced to the recipient.

    external_reference: "gift-<id>"
    """

    __tablename__ = "gifts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    plan_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    duration: Mapped[int] = mapped_column(INTEGER, nullable=False, default=1)  # months
    giver_name: Mapped[str] = mapped_column(TEXT, nullable=False)
    giver_email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    recipient_name: Mapped[str] = mapped_column(TEXT, nullable=False)
    recipient_email: Mapped[str] = mapped_column(TEXT, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    send_immediate: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)

    payment_status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    # pending, paid, failed
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    # pending, paid, notified
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    payment_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # null -> timestamp exactly once
    notified_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("idx_gifts_payment_status", "payment_status"),)


class Subscription(Base):
    """Recurring subscription backed by a gateway preapproval."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    subscriber_email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    subscriber_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    plan_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # pending, active, paused, cancelled, failed
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    gateway_subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    gateway_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Set at most once, on first entry into active
    started_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    # Activation welcome email sent
    notified_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("gateway_subscription_id", name="uq_subscriptions_gateway_id"),
    )


class ProcessedNotification(Base):
    """Shared dedup ledger for gateway notifications.

    Atomic gate: INSERT ... ON CONFLICT (notification_key) DO NOTHING
      → row inserted : this instance recorded the key first
      → no row       : another delivery already recorded it
    Rows past expires_at are ignored by lookups and removed by purge.
    """

    __tablename__ = "processed_notifications"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    notification_key: Mapped[str] = mapped_column(TEXT, nullable=False)  # <type>-<gateway id>
    first_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("notification_key", name="uq_processed_notifications_key"),
        Index("idx_processed_notifications_expires", "expires_at"),
    )
