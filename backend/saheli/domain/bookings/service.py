import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from saheli.domain.bookings.availability import check_slot_availability, count_active_bookings
from saheli.domain.bookings.db_models import Booking
from saheli.domain.bookings.pricing import PriceBreakdown
from saheli.domain.bookings.statuses import (
    Actor,
    BookingStatus,
    assert_valid_booking_transition,
)
from saheli.domain.catalog.db_models import Service
from saheli.domain.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from saheli.domain.users.db_models import User
from saheli.infra.metrics import metrics

logger = logging.getLogger(__name__)

PENDING_EXPIRY_MINUTES = 15
MANUAL_START_EARLY_MINUTES = 30
AUTO_START_GRACE_MINUTES = 15
AUTO_COMPLETE_GRACE_MINUTES = 30
REMINDER_WINDOW_MINUTES = 60
EXPIRED_REASON = "Payment not completed within the time limit"
DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True)
class ReservationRequest:
    service_id: str
    customer_id: str
    booking_date: date
    start_time: str
    end_time: str
    price: PriceBreakdown
    address: str | None = None
    notes: str | None = None


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def service_lock_stmt(service_id: str) -> Select:
    return select(Service).where(Service.service_id == service_id).with_for_update()


async def reserve_slot(
    session: AsyncSession,
    request: ReservationRequest,
    *,
    now: datetime | None = None,
) -> Booking:
    """Atomically check the slot and insert a Pending booking holding it.

    The service row is locked for the duration of the check-then-insert so
    concurrent reservations for the same provider serialize; the loser sees
    the winner's hold and gets ``SlotUnavailableError``.
    """
    now = now or _utcnow()
    transaction_ctx = session.begin_nested() if session.in_transaction() else session.begin()
    async with transaction_ctx:
        service = await session.scalar(service_lock_stmt(request.service_id))
        if service is None:
            raise NotFoundError("Service not found")
        if not service.is_bookable:
            raise ValidationError("This service is not currently accepting bookings")

        if not await check_slot_availability(
            session,
            service.service_id,
            request.booking_date,
            request.start_time,
            request.end_time,
            now=now,
        ):
            metrics.record_booking("slot_conflict")
            raise SlotUnavailableError()

        active = await count_active_bookings(session, service.service_id, request.booking_date, now=now)
        if active >= (service.max_bookings_per_day or 0):
            raise ConflictError("Provider is fully booked on this date")

        price = request.price
        booking = Booking(
            service_id=service.service_id,
            provider_id=service.provider_id,
            customer_id=request.customer_id,
            date=request.booking_date,
            start_time=request.start_time,
            end_time=request.end_time,
            duration=price.duration_hours,
            service_type=service.mode,
            pricing_type=service.pricing_type,
            selected_package=price.selected_package,
            address=request.address,
            notes=request.notes,
            base_amount=price.base_amount,
            travel_fee=price.travel_fee,
            weekend_premium=price.weekend_premium,
            total_amount=price.total_amount,
            advance_percentage=price.advance_percentage,
            advance_paid=price.advance_paid,
            remaining_amount=price.remaining_amount,
            status=BookingStatus.PENDING.value,
            expires_at=now + timedelta(minutes=PENDING_EXPIRY_MINUTES),
        )
        session.add(booking)
        await session.flush()

    await session.commit()
    metrics.record_booking("reserved")
    logger.info(
        "booking_reserved",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "service_id": booking.service_id,
                "date": booking.date.isoformat(),
                "start_time": booking.start_time,
                "end_time": booking.end_time,
            }
        },
    )
    return booking


async def get_booking(session: AsyncSession, booking_id: str) -> Booking:
    booking = await session.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise NotFoundError("Booking not found")
    return booking


async def get_booking_for_actor(session: AsyncSession, booking_id: str, user_id: str) -> Booking:
    booking = await get_booking(session, booking_id)
    if user_id not in {booking.customer_id, booking.provider_id}:
        raise AuthorizationError("You do not have access to this booking")
    return booking


def _apply_filters(
    stmt: Select,
    *,
    status: str | None,
    payment_status: str | None,
    booking_date: date | None,
) -> Select:
    if status:
        stmt = stmt.where(Booking.status == status)
    if payment_status:
        stmt = stmt.where(Booking.payment_status == payment_status)
    if booking_date:
        stmt = stmt.where(Booking.date == booking_date)
    return stmt


async def list_customer_bookings(
    session: AsyncSession,
    customer_id: str,
    *,
    status: str | None = None,
    payment_status: str | None = None,
    booking_date: date | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> list[Booking]:
    stmt = _apply_filters(
        select(Booking).where(Booking.customer_id == customer_id),
        status=status,
        payment_status=payment_status,
        booking_date=booking_date,
    )
    stmt = stmt.order_by(Booking.created_at.desc(), Booking.booking_id).limit(limit).offset(offset)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_provider_bookings(
    session: AsyncSession,
    provider_id: str,
    *,
    status: str | None = None,
    payment_status: str | None = None,
    booking_date: date | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> list[Booking]:
    stmt = _apply_filters(
        select(Booking).where(Booking.provider_id == provider_id),
        status=status,
        payment_status=payment_status,
        booking_date=booking_date,
    )
    stmt = stmt.order_by(Booking.created_at.desc(), Booking.booking_id).limit(limit).offset(offset)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def compare_and_set(
    session: AsyncSession,
    booking_id: str,
    *conditions: Any,
    values: dict[str, Any],
) -> bool:
    """Apply ``values`` only if the row still matches ``conditions``; no commit."""
    stmt = (
        update(Booking)
        .where(Booking.booking_id == booking_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def _increment_completed_count(session: AsyncSession, provider_id: str) -> None:
    await session.execute(
        update(User)
        .where(User.user_id == provider_id)
        .values(completed_bookings_count=User.completed_bookings_count + 1)
        .execution_options(synchronize_session=False)
    )


async def _raise_lost_race(session: AsyncSession, booking_id: str, target: BookingStatus) -> None:
    await session.rollback()
    current = await get_booking(session, booking_id)
    assert_valid_booking_transition(current.status, target)
    raise ConflictError("Booking was updated by another request, please retry")


def _require_provider(booking: Booking, actor_id: str, action: str) -> None:
    if booking.provider_id != actor_id:
        raise AuthorizationError(f"Only the provider can {action} this booking")


async def start_booking(
    session: AsyncSession,
    booking_id: str,
    actor_id: str,
    *,
    now: datetime | None = None,
) -> Booking:
    now = now or _utcnow()
    booking = await get_booking(session, booking_id)
    _require_provider(booking, actor_id, "start")
    assert_valid_booking_transition(booking.status, BookingStatus.IN_PROGRESS)
    earliest = booking.scheduled_start - timedelta(minutes=MANUAL_START_EARLY_MINUTES)
    if now < earliest:
        raise ValidationError(
            f"Booking can only be started within {MANUAL_START_EARLY_MINUTES} minutes of the scheduled time"
        )

    applied = await compare_and_set(
        session,
        booking_id,
        Booking.status == BookingStatus.CONFIRMED.value,
        values={
            "status": BookingStatus.IN_PROGRESS.value,
            "actual_start_time": now,
            "started_by": Actor.PROVIDER.value,
        },
    )
    if not applied:
        await _raise_lost_race(session, booking_id, BookingStatus.IN_PROGRESS)
    await session.commit()
    metrics.record_booking("started")
    logger.info("booking_started", extra={"extra": {"booking_id": booking_id, "started_by": "provider"}})
    return await get_booking(session, booking_id)


async def complete_booking(
    session: AsyncSession,
    booking_id: str,
    actor_id: str,
    *,
    now: datetime | None = None,
) -> Booking:
    now = now or _utcnow()
    booking = await get_booking(session, booking_id)
    _require_provider(booking, actor_id, "complete")
    assert_valid_booking_transition(booking.status, BookingStatus.COMPLETED)

    applied = await compare_and_set(
        session,
        booking_id,
        Booking.status == BookingStatus.IN_PROGRESS.value,
        values={
            "status": BookingStatus.COMPLETED.value,
            "actual_end_time": now,
            "completed_by": Actor.PROVIDER.value,
        },
    )
    if not applied:
        await _raise_lost_race(session, booking_id, BookingStatus.COMPLETED)
    await _increment_completed_count(session, booking.provider_id)
    await session.commit()
    metrics.record_booking("completed")
    logger.info("booking_completed", extra={"extra": {"booking_id": booking_id, "completed_by": "provider"}})
    return await get_booking(session, booking_id)


async def cancel_booking(
    session: AsyncSession,
    booking_id: str,
    *,
    cancelled_by: Actor,
    reason: str | None = None,
    now: datetime | None = None,
) -> Booking:
    now = now or _utcnow()
    booking = await get_booking(session, booking_id)
    expected = booking.status
    assert_valid_booking_transition(expected, BookingStatus.CANCELLED)

    applied = await compare_and_set(
        session,
        booking_id,
        Booking.status == expected,
        values={
            "status": BookingStatus.CANCELLED.value,
            "cancelled_at": now,
            "cancelled_by": cancelled_by.value,
            "cancellation_reason": reason,
        },
    )
    if not applied:
        await _raise_lost_race(session, booking_id, BookingStatus.CANCELLED)
    await session.commit()
    metrics.record_booking("cancelled")
    logger.info(
        "booking_cancelled",
        extra={"extra": {"booking_id": booking_id, "cancelled_by": cancelled_by.value, "previous_status": expected}},
    )
    return await get_booking(session, booking_id)


async def expire_booking(session: AsyncSession, booking: Booking, *, now: datetime) -> bool:
    if not booking.is_expired_at(now):
        return False
    applied = await compare_and_set(
        session,
        booking.booking_id,
        Booking.status == BookingStatus.PENDING.value,
        Booking.expires_at.is_not(None),
        Booking.expires_at < now,
        values={
            "status": BookingStatus.CANCELLED.value,
            "cancelled_at": now,
            "cancelled_by": Actor.SYSTEM.value,
            "cancellation_reason": EXPIRED_REASON,
        },
    )
    await session.commit()
    return applied


def hold_lapsed(booking: Booking, now: datetime) -> bool:
    """Pending past its expiry, or already cancelled by the expiry sweep."""
    if booking.status == BookingStatus.PENDING.value:
        return booking.is_expired_at(now)
    return (
        booking.status == BookingStatus.CANCELLED.value
        and booking.cancelled_by == Actor.SYSTEM.value
        and booking.cancellation_reason == EXPIRED_REASON
    )


async def auto_start_booking(session: AsyncSession, booking: Booking, *, now: datetime) -> bool:
    if booking.status != BookingStatus.CONFIRMED.value:
        return False
    if now < booking.scheduled_start + timedelta(minutes=AUTO_START_GRACE_MINUTES):
        return False
    applied = await compare_and_set(
        session,
        booking.booking_id,
        Booking.status == BookingStatus.CONFIRMED.value,
        Booking.date == booking.date,
        Booking.start_time == booking.start_time,
        values={
            "status": BookingStatus.IN_PROGRESS.value,
            "actual_start_time": now,
            "started_by": Actor.SYSTEM.value,
        },
    )
    await session.commit()
    return applied


async def auto_complete_booking(session: AsyncSession, booking: Booking, *, now: datetime) -> bool:
    if booking.status != BookingStatus.IN_PROGRESS.value:
        return False
    if now < booking.scheduled_end + timedelta(minutes=AUTO_COMPLETE_GRACE_MINUTES):
        return False
    applied = await compare_and_set(
        session,
        booking.booking_id,
        Booking.status == BookingStatus.IN_PROGRESS.value,
        Booking.date == booking.date,
        Booking.end_time == booking.end_time,
        values={
            "status": BookingStatus.COMPLETED.value,
            "actual_end_time": now,
            "completed_by": Actor.SYSTEM.value,
        },
    )
    if applied:
        await _increment_completed_count(session, booking.provider_id)
    await session.commit()
    return applied
