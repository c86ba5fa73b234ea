import logging
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from saheli.domain.bookings.db_models import Booking
from saheli.domain.catalog.db_models import Service
from saheli.domain.users.db_models import User
from saheli.infra.email import booking_email_headers

logger = logging.getLogger(__name__)

EMAIL_TYPE_BOOKING_CONFIRMED = "booking_confirmed"
EMAIL_TYPE_BOOKING_CANCELLED = "booking_cancelled"
EMAIL_TYPE_BOOKING_STARTED = "booking_started"
EMAIL_TYPE_BOOKING_COMPLETED = "booking_completed"
EMAIL_TYPE_BOOKING_REMINDER = "booking_reminder"
EMAIL_TYPE_REMAINING_PAID = "remaining_payment_received"


class EmailSender(Protocol):
    async def send_email(
        self, recipient: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> bool: ...


def _schedule_line(booking: Booking) -> str:
    return f"{booking.date.strftime('%d %b %Y')}, {booking.start_time} - {booking.end_time}"


async def _load_parties(session: AsyncSession, booking: Booking) -> tuple[Service | None, User | None, User | None]:
    service = await session.get(Service, booking.service_id)
    customer = await session.get(User, booking.customer_id)
    provider = await session.get(User, booking.provider_id)
    return service, customer, provider


async def _send(
    adapter: EmailSender | None,
    email_type: str,
    booking: Booking,
    recipient: User | None,
    subject: str,
    body: str,
) -> bool:
    if adapter is None or recipient is None or not recipient.email:
        return False
    try:
        delivered = await adapter.send_email(
            recipient.email, subject, body, headers=booking_email_headers(email_type, booking.booking_id)
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "email_send_failed",
            extra={
                "extra": {
                    "email_type": email_type,
                    "booking_id": booking.booking_id,
                    "reason": type(exc).__name__,
                }
            },
        )
        return False
    if delivered:
        logger.info(
            "email_sent",
            extra={"extra": {"email_type": email_type, "booking_id": booking.booking_id}},
        )
    return bool(delivered)


async def notify_booking_confirmed(session: AsyncSession, adapter: EmailSender | None, booking: Booking) -> int:
    service, customer, provider = await _load_parties(session, booking)
    title = service.title if service else "your service"
    sent = 0
    sent += await _send(
        adapter,
        EMAIL_TYPE_BOOKING_CONFIRMED,
        booking,
        customer,
        f"Booking confirmed - {title}",
        (
            f"Hello {customer.name if customer else 'there'},\n\n"
            f"Your booking #{booking.booking_id} for {title} is confirmed.\n"
            f"When: {_schedule_line(booking)}\n"
            f"Advance paid: Rs {booking.advance_paid}\n"
            f"Remaining amount: Rs {booking.remaining_amount}\n"
        ),
    )
    sent += await _send(
        adapter,
        EMAIL_TYPE_BOOKING_CONFIRMED,
        booking,
        provider,
        f"New booking - {title}",
        (
            f"Hello {provider.name if provider else 'there'},\n\n"
            f"You have a new confirmed booking #{booking.booking_id} for {title}.\n"
            f"Customer: {customer.name if customer else 'unknown'}\n"
            f"When: {_schedule_line(booking)}\n"
            + (f"Address: {booking.address}\n" if booking.address else "")
            + (f"Notes: {booking.notes}\n" if booking.notes else "")
        ),
    )
    return sent


def _refund_line(refund: Any | None) -> str:
    if refund is None or getattr(refund, "amount", 0) <= 0:
        return "No refund applicable per cancellation policy."
    if getattr(refund, "status", None) == "failed":
        return f"A refund of Rs {refund.amount} could not be processed automatically. Our team will follow up."
    return (
        f"Refund initiated: Rs {refund.amount} ({refund.percentage}%). "
        "The refund will be processed within 5-7 business days."
    )


async def notify_booking_cancelled(
    session: AsyncSession,
    adapter: EmailSender | None,
    booking: Booking,
    refund: Any | None = None,
) -> int:
    service, customer, provider = await _load_parties(session, booking)
    title = service.title if service else "your service"
    reason = f"Reason: {booking.cancellation_reason}\n" if booking.cancellation_reason else ""
    sent = 0
    sent += await _send(
        adapter,
        EMAIL_TYPE_BOOKING_CANCELLED,
        booking,
        customer,
        f"Booking cancelled - {title}",
        (
            f"Hello {customer.name if customer else 'there'},\n\n"
            f"Your booking #{booking.booking_id} for {title} has been cancelled.\n"
            f"Was scheduled: {_schedule_line(booking)}\n"
            f"Cancelled by: {booking.cancelled_by}\n"
            f"{reason}\n"
            f"{_refund_line(refund)}\n"
        ),
    )
    sent += await _send(
        adapter,
        EMAIL_TYPE_BOOKING_CANCELLED,
        booking,
        provider,
        f"Booking cancelled - {title}",
        (
            f"Hello {provider.name if provider else 'there'},\n\n"
            f"Booking #{booking.booking_id} for {title} on {_schedule_line(booking)} has been cancelled.\n"
            f"Cancelled by: {booking.cancelled_by}\n"
            f"{reason}"
        ),
    )
    return sent


async def notify_booking_started(session: AsyncSession, adapter: EmailSender | None, booking: Booking) -> int:
    service, customer, _ = await _load_parties(session, booking)
    title = service.title if service else "your service"
    return int(
        await _send(
            adapter,
            EMAIL_TYPE_BOOKING_STARTED,
            booking,
            customer,
            f"Your service has started - {title}",
            (
                f"Hello {customer.name if customer else 'there'},\n\n"
                f"Your booking #{booking.booking_id} for {title} is now in progress.\n"
            ),
        )
    )


async def notify_booking_completed(session: AsyncSession, adapter: EmailSender | None, booking: Booking) -> int:
    service, customer, _ = await _load_parties(session, booking)
    title = service.title if service else "your service"
    balance = ""
    if booking.has_remaining_balance:
        balance = f"\nA remaining balance of Rs {booking.remaining_amount} is due. Please complete the payment.\n"
    return int(
        await _send(
            adapter,
            EMAIL_TYPE_BOOKING_COMPLETED,
            booking,
            customer,
            f"Service completed - {title}",
            (
                f"Hello {customer.name if customer else 'there'},\n\n"
                f"Your booking #{booking.booking_id} for {title} has been completed.\n"
                f"{balance}\n"
                "We would love to hear how it went. You can leave a review from your bookings page.\n"
            ),
        )
    )


async def notify_booking_reminder(session: AsyncSession, adapter: EmailSender | None, booking: Booking) -> int:
    service, customer, provider = await _load_parties(session, booking)
    title = service.title if service else "your service"
    sent = 0
    for recipient in (customer, provider):
        sent += await _send(
            adapter,
            EMAIL_TYPE_BOOKING_REMINDER,
            booking,
            recipient,
            f"Reminder: {title} starts soon",
            (
                f"Hello {recipient.name if recipient else 'there'},\n\n"
                f"Booking #{booking.booking_id} for {title} starts at {booking.start_time} today.\n"
                f"When: {_schedule_line(booking)}\n"
            ),
        )
    return sent


async def notify_remaining_payment_received(
    session: AsyncSession, adapter: EmailSender | None, booking: Booking
) -> int:
    service, customer, provider = await _load_parties(session, booking)
    title = service.title if service else "your service"
    sent = 0
    sent += await _send(
        adapter,
        EMAIL_TYPE_REMAINING_PAID,
        booking,
        customer,
        f"Payment received - {title}",
        (
            f"Hello {customer.name if customer else 'there'},\n\n"
            f"We received your remaining payment of Rs {booking.remaining_amount} "
            f"for booking #{booking.booking_id}. Your booking is now fully paid.\n"
        ),
    )
    sent += await _send(
        adapter,
        EMAIL_TYPE_REMAINING_PAID,
        booking,
        provider,
        f"Booking fully paid - {title}",
        f"Booking #{booking.booking_id} for {title} has been fully paid.\n",
    )
    return sent
