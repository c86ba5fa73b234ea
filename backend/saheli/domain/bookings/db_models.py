from __future__ import annotations

import uuid
import datetime as dt
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from saheli.domain.bookings.pricing import combine_date_time
from saheli.domain.bookings.statuses import BookingStatus, PaymentStatus
from saheli.infra.db import Base
from saheli.settings import settings


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    service_id: Mapped[str] = mapped_column(ForeignKey("services.service_id"), nullable=False)
    provider_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)

    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    duration: Mapped[float] = mapped_column(Float, nullable=False)

    service_type: Mapped[str] = mapped_column(String(16), nullable=False)
    pricing_type: Mapped[str] = mapped_column(String(16), nullable=False)
    selected_package: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    address: Mapped[str | None] = mapped_column(String(500))
    notes: Mapped[str | None] = mapped_column(String(1000))

    base_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    travel_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weekend_premium: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    advance_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    advance_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentStatus.PENDING.value
    )
    gateway_order_id: Mapped[str | None] = mapped_column(String(64), unique=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64))
    gateway_signature: Mapped[str | None] = mapped_column(String(128))
    payment_method: Mapped[str | None] = mapped_column(String(32))
    remaining_gateway_order_id: Mapped[str | None] = mapped_column(String(64), unique=True)
    remaining_gateway_payment_id: Mapped[str | None] = mapped_column(String(64))
    remaining_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=BookingStatus.PENDING.value)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    actual_start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_by: Mapped[str | None] = mapped_column(String(16))
    actual_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[str | None] = mapped_column(String(16))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[str | None] = mapped_column(String(16))
    cancellation_reason: Mapped[str | None] = mapped_column(String(500))
    reminder_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    refund_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    refund_percentage: Mapped[int | None] = mapped_column(Integer)
    refund_reason: Mapped[str | None] = mapped_column(String(500))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refund_id: Mapped[str | None] = mapped_column(String(64))

    is_reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_id: Mapped[str | None] = mapped_column(String(36))

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
        Index("ix_bookings_service_date_status", "service_id", "date", "status"),
        Index("ix_bookings_customer_created", "customer_id", "created_at"),
        Index("ix_bookings_provider_created", "provider_id", "created_at"),
        Index("ix_bookings_status_expires", "status", "expires_at"),
    )

    def is_expired_at(self, now: datetime) -> bool:
        expires_at = _aware(self.expires_at)
        return self.status == BookingStatus.PENDING.value and expires_at is not None and now > expires_at

    @property
    def is_expired(self) -> bool:
        return self.is_expired_at(datetime.now(tz=timezone.utc))

    @property
    def is_paid(self) -> bool:
        return self.payment_status in {PaymentStatus.ADVANCE_PAID.value, PaymentStatus.FULLY_PAID.value}

    @property
    def is_fully_paid(self) -> bool:
        return self.payment_status == PaymentStatus.FULLY_PAID.value

    @property
    def has_remaining_balance(self) -> bool:
        return (self.remaining_amount or 0) > 0 and not self.is_fully_paid

    @property
    def can_be_reviewed(self) -> bool:
        return self.status == BookingStatus.COMPLETED.value and not self.is_reviewed

    @property
    def refundable_amount(self) -> int:
        return max(0, (self.advance_paid or 0) - (self.refund_amount or 0))

    @property
    def scheduled_start(self) -> datetime:
        return combine_date_time(self.date, self.start_time, ZoneInfo(settings.marketplace_timezone))

    @property
    def scheduled_end(self) -> datetime:
        return combine_date_time(self.date, self.end_time, ZoneInfo(settings.marketplace_timezone))
