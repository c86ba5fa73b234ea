"""Periodic booking lifecycle sweeps.

Each sweep selects candidate ids with a coarse query, then loads and
transitions every booking on its own. A failure on one booking is rolled
back and logged without stopping the rest of the sweep.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from saheli.domain.bookings import service as booking_service
from saheli.domain.bookings.db_models import Booking
from saheli.domain.bookings.statuses import BookingStatus
from saheli.domain.notifications import service as notifications
from saheli.infra.metrics import metrics
from saheli.settings import settings

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 500

Transition = Callable[[AsyncSession, Booking, datetime], Awaitable[bool]]
Notifier = Callable[[AsyncSession, Booking], Awaitable[int]]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _local_today(now: datetime):
    return now.astimezone(ZoneInfo(settings.marketplace_timezone)).date()


async def _candidate_ids(session: AsyncSession, *conditions) -> list[str]:
    stmt = (
        select(Booking.booking_id)
        .where(*conditions)
        .order_by(Booking.date, Booking.start_time)
        .limit(SWEEP_BATCH_SIZE)
    )
    return list((await session.scalars(stmt)).all())


async def _sweep(
    session: AsyncSession,
    sweep: str,
    booking_ids: list[str],
    transition: Transition,
    notify: Notifier | None,
    now: datetime,
) -> dict[str, int]:
    result = {"candidates": len(booking_ids), "applied": 0, "skipped": 0, "errors": 0}
    for booking_id in booking_ids:
        try:
            booking = await session.get(Booking, booking_id, populate_existing=True)
            if booking is None or not await transition(session, booking, now):
                result["skipped"] += 1
                metrics.record_sweep_item(sweep, "skipped")
                continue
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            result["errors"] += 1
            metrics.record_sweep_item(sweep, "error")
            logger.exception(
                "sweep_item_failed",
                extra={"extra": {"sweep": sweep, "booking_id": booking_id, "reason": type(exc).__name__}},
            )
            continue

        result["applied"] += 1
        metrics.record_sweep_item(sweep, "applied")
        logger.info("sweep_item_applied", extra={"extra": {"sweep": sweep, "booking_id": booking_id}})
        if notify is None:
            continue
        try:
            booking = await booking_service.get_booking(session, booking_id)
            await notify(session, booking)
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            metrics.record_sweep_item(sweep, "notify_error")
            logger.exception(
                "sweep_notification_failed",
                extra={"extra": {"sweep": sweep, "booking_id": booking_id, "reason": type(exc).__name__}},
            )
    return result


async def run_expire_pending(session: AsyncSession, adapter, now: datetime | None = None) -> dict[str, int]:
    now = now or _utcnow()
    booking_ids = await _candidate_ids(
        session,
        Booking.status == BookingStatus.PENDING.value,
        Booking.expires_at.is_not(None),
        Booking.expires_at < now,
    )

    async def _transition(session: AsyncSession, booking: Booking, now: datetime) -> bool:
        return await booking_service.expire_booking(session, booking, now=now)

    async def _notify(session: AsyncSession, booking: Booking) -> int:
        return await notifications.notify_booking_cancelled(session, adapter, booking, None)

    return await _sweep(session, "expire_pending", booking_ids, _transition, _notify, now)


async def run_auto_start(session: AsyncSession, adapter, now: datetime | None = None) -> dict[str, int]:
    now = now or _utcnow()
    booking_ids = await _candidate_ids(
        session,
        Booking.status == BookingStatus.CONFIRMED.value,
        Booking.date <= _local_today(now),
    )

    async def _transition(session: AsyncSession, booking: Booking, now: datetime) -> bool:
        return await booking_service.auto_start_booking(session, booking, now=now)

    async def _notify(session: AsyncSession, booking: Booking) -> int:
        return await notifications.notify_booking_started(session, adapter, booking)

    return await _sweep(session, "auto_start", booking_ids, _transition, _notify, now)


async def run_auto_complete(session: AsyncSession, adapter, now: datetime | None = None) -> dict[str, int]:
    now = now or _utcnow()
    booking_ids = await _candidate_ids(
        session,
        Booking.status == BookingStatus.IN_PROGRESS.value,
        Booking.date <= _local_today(now),
    )

    async def _transition(session: AsyncSession, booking: Booking, now: datetime) -> bool:
        return await booking_service.auto_complete_booking(session, booking, now=now)

    async def _notify(session: AsyncSession, booking: Booking) -> int:
        return await notifications.notify_booking_completed(session, adapter, booking)

    return await _sweep(session, "auto_complete", booking_ids, _transition, _notify, now)


async def claim_reminder(session: AsyncSession, booking: Booking, now: datetime) -> bool:
    start = booking.scheduled_start
    window_start = start - timedelta(minutes=booking_service.REMINDER_WINDOW_MINUTES)
    if booking.status != BookingStatus.CONFIRMED.value or booking.reminder_sent:
        return False
    if not (window_start <= now < start):
        return False
    applied = await booking_service.compare_and_set(
        session,
        booking.booking_id,
        Booking.status == BookingStatus.CONFIRMED.value,
        Booking.reminder_sent.is_(False),
        Booking.date == booking.date,
        Booking.start_time == booking.start_time,
        values={"reminder_sent": True, "reminder_sent_at": now},
    )
    await session.commit()
    return applied


async def run_booking_reminders(session: AsyncSession, adapter, now: datetime | None = None) -> dict[str, int]:
    now = now or _utcnow()
    today = _local_today(now)
    booking_ids = await _candidate_ids(
        session,
        Booking.status == BookingStatus.CONFIRMED.value,
        Booking.reminder_sent.is_(False),
        Booking.date.in_([today, today + timedelta(days=1)]),
    )

    async def _notify(session: AsyncSession, booking: Booking) -> int:
        return await notifications.notify_booking_reminder(session, adapter, booking)

    return await _sweep(session, "booking_reminders", booking_ids, claim_reminder, _notify, now)
