from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from saheli.domain.bookings.db_models import Booking
from saheli.domain.bookings.pricing import minutes_of_day, parse_hhmm
from saheli.domain.bookings.statuses import BookingStatus
from saheli.domain.catalog.db_models import Service
from saheli.domain.errors import ValidationError


DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass(frozen=True)
class DaySlot:
    start: str
    end: str
    available: bool


def intervals_overlap(a_start: str, a_end: str, b_start: str, b_end: str) -> bool:
    """Half-open overlap: touching boundaries (10:00-11:00 vs 11:00-12:00) do not overlap."""
    return minutes_of_day(a_start) < minutes_of_day(b_end) and minutes_of_day(a_end) > minutes_of_day(b_start)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def active_slot_filter(now: datetime):
    """Rows that still hold their slot: Confirmed, or Pending with an unexpired hold."""
    return or_(
        Booking.status == BookingStatus.CONFIRMED.value,
        and_(
            Booking.status == BookingStatus.PENDING.value,
            Booking.expires_at.is_not(None),
            Booking.expires_at > now,
        ),
    )


async def check_slot_availability(
    session: AsyncSession,
    service_id: str,
    booking_date: date,
    start_time: str,
    end_time: str,
    *,
    exclude_booking_id: str | None = None,
    now: datetime | None = None,
) -> bool:
    parse_hhmm(start_time)
    parse_hhmm(end_time)
    stmt = select(Booking.booking_id).where(
        Booking.service_id == service_id,
        Booking.date == booking_date,
        active_slot_filter(now or _utcnow()),
        # HH:MM strings are zero padded, so lexical order matches clock order.
        Booking.start_time < end_time,
        Booking.end_time > start_time,
    )
    if exclude_booking_id:
        stmt = stmt.where(Booking.booking_id != exclude_booking_id)
    conflict = await session.scalar(stmt.limit(1))
    return conflict is None


async def count_active_bookings(
    session: AsyncSession,
    service_id: str,
    booking_date: date,
    *,
    now: datetime | None = None,
) -> int:
    stmt = select(func.count()).select_from(Booking).where(
        Booking.service_id == service_id,
        Booking.date == booking_date,
        active_slot_filter(now or _utcnow()),
    )
    return int(await session.scalar(stmt) or 0)


def validate_booking_slot(
    service: Service,
    booking_date: date,
    start_time: str,
    end_time: str,
    *,
    today: date,
) -> None:
    start_minutes = minutes_of_day(start_time)
    end_minutes = minutes_of_day(end_time)
    if end_minutes <= start_minutes:
        raise ValidationError("End time must be after start time")

    if booking_date < today:
        raise ValidationError("Cannot book dates in the past")

    limit_days = service.advance_booking_limit or 30
    if booking_date > today + timedelta(days=limit_days):
        raise ValidationError(f"Cannot book more than {limit_days} days in advance")

    if service.is_unavailable_on(booking_date):
        raise ValidationError("Provider is unavailable on this date")

    day_name = DAY_NAMES[booking_date.weekday()]
    slots = service.slots_for_day(day_name)
    if not slots:
        raise ValidationError(f"Provider is not available on {day_name}s")

    inside_slot = any(
        minutes_of_day(slot["start"]) <= start_minutes and end_minutes <= minutes_of_day(slot["end"])
        for slot in slots
    )
    if not inside_slot:
        raise ValidationError("Selected time is outside provider's available hours")


async def get_day_availability(
    session: AsyncSession,
    service: Service,
    booking_date: date,
    *,
    now: datetime | None = None,
) -> list[DaySlot]:
    configured = service.slots_for_day(DAY_NAMES[booking_date.weekday()])
    if not configured:
        return []

    result = await session.execute(
        select(Booking.start_time, Booking.end_time).where(
            Booking.service_id == service.service_id,
            Booking.date == booking_date,
            active_slot_filter(now or _utcnow()),
        )
    )
    held = result.all()
    slots: list[DaySlot] = []
    for slot in configured:
        booked = any(intervals_overlap(slot["start"], slot["end"], start, end) for start, end in held)
        slots.append(DaySlot(start=slot["start"], end=slot["end"], available=not booked))
    return slots
