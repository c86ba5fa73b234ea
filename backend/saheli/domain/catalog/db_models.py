import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from saheli.infra.db import Base

PRICING_HOURLY = "Hourly"
PRICING_FIXED = "Fixed"
PRICING_PACKAGE = "Package"

MODE_ONLINE = "Online"
MODE_ONSITE = "Onsite"
MODE_HYBRID = "Hybrid"
TRAVEL_MODES = {MODE_ONSITE, MODE_HYBRID}


class Service(Base):
    """Provider offering consumed read-only by pricing and availability.

    ``weekly_schedule`` holds ``[{"day": "Monday", "slots": [{"start": "09:00", "end": "12:00"}]}]``
    and ``packages`` holds ``[{"name", "price", "description", "duration"}]``.
    """

    __tablename__ = "services"

    service_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    pricing_type: Mapped[str] = mapped_column(String(16), nullable=False, default=PRICING_HOURLY)
    base_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    packages: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    advance_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    travel_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weekend_premium: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default=MODE_ONLINE)
    weekly_schedule: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    unavailable_dates: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    max_bookings_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    advance_booking_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    cancellation_policy: Mapped[str | None] = mapped_column(String(500))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_services_provider_id", "provider_id"),)

    @property
    def is_bookable(self) -> bool:
        return bool(self.is_active) and not self.is_paused

    def is_unavailable_on(self, target: date) -> bool:
        return target.isoformat() in {str(value)[:10] for value in (self.unavailable_dates or [])}

    def slots_for_day(self, day_name: str) -> list[dict]:
        for entry in self.weekly_schedule or []:
            if entry.get("day") == day_name:
                return list(entry.get("slots") or [])
        return []
