import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from saheli.infra.db import Base

PAYMENT_TYPE_ADVANCE = "Advance"
PAYMENT_TYPE_REMAINING = "Remaining"
PAYMENT_TYPE_FULL = "Full"

TRANSACTION_PENDING = "Pending"
TRANSACTION_SUCCESS = "Success"
TRANSACTION_FAILED = "Failed"
TRANSACTION_REFUNDED = "Refunded"

EVENT_PROCESSING = "processing"
EVENT_PROCESSED = "processed"
EVENT_IGNORED = "ignored"
EVENT_ERROR = "error"


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    payment_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.booking_id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    provider_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    payment_type: Mapped[str] = mapped_column(String(16), nullable=False, default=PAYMENT_TYPE_ADVANCE)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TRANSACTION_PENDING)
    gateway_order_id: Mapped[str | None] = mapped_column(String(64), unique=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64))
    gateway_signature: Mapped[str | None] = mapped_column(String(128))
    payment_method: Mapped[str | None] = mapped_column(String(32))
    refund_id: Mapped[str | None] = mapped_column(String(64))
    refund_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_payment_transactions_booking_type", "booking_id", "payment_type"),
        Index("ix_payment_transactions_customer", "customer_id"),
    )


class GatewayEvent(Base):
    __tablename__ = "gateway_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str | None] = mapped_column(String(128))
    payload_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(String(64))
    last_error: Mapped[str | None] = mapped_column(Text())
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_gateway_events_payload_hash", "payload_hash"),
        Index("ix_gateway_events_booking_id", "booking_id"),
    )
