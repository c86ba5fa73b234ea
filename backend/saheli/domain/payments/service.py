"""Payment reconciliation for the advance and remaining-balance legs.

Every booking can carry two independent gateway orders. Each leg is confirmed
either by the customer's checkout-return verification or by the gateway
webhook, whichever lands first; both paths go through the same conditional
UPDATE so the second arrival is a no-op.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from saheli.domain.bookings import service as booking_service
from saheli.domain.bookings.availability import validate_booking_slot
from saheli.domain.bookings.db_models import Booking
from saheli.domain.bookings.pricing import PricingRules, calculate_booking_price, to_paise
from saheli.domain.bookings.schemas import BookingCreateRequest, PaymentVerifyRequest, RefundRequest
from saheli.domain.bookings.statuses import (
    PAID_STATUSES,
    Actor,
    BookingStatus,
    PaymentStatus,
)
from saheli.domain.catalog.db_models import TRAVEL_MODES, Service
from saheli.domain.errors import (
    AuthorizationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PaymentVerificationError,
    PaymentWindowExpiredError,
    ValidationError,
)
from saheli.domain.notifications import service as notifications
from saheli.domain.payments import refunds
from saheli.domain.payments.db_models import (
    EVENT_ERROR,
    EVENT_IGNORED,
    EVENT_PROCESSED,
    EVENT_PROCESSING,
    PAYMENT_TYPE_ADVANCE,
    PAYMENT_TYPE_REMAINING,
    TRANSACTION_FAILED,
    TRANSACTION_PENDING,
    TRANSACTION_SUCCESS,
    GatewayEvent,
    PaymentTransaction,
)
from saheli.domain.users.db_models import User
from saheli.infra.metrics import metrics
from saheli.infra.razorpay_client import GATEWAY_ERRORS
from saheli.settings import settings

logger = logging.getLogger(__name__)

ORDER_FAILED_REASON = "Payment order creation failed"
CONFIRMABLE_FOR_REMAINING = {
    BookingStatus.CONFIRMED.value,
    BookingStatus.IN_PROGRESS.value,
    BookingStatus.COMPLETED.value,
}


class PaymentGateway(Protocol):
    public_key: str | None

    async def create_order(
        self, *, amount_paise: int, currency: str, receipt: str, notes: dict[str, str] | None = None
    ) -> dict[str, Any]: ...

    async def refund_payment(
        self, *, payment_id: str, amount_paise: int, notes: dict[str, str] | None = None
    ) -> dict[str, Any]: ...

    def verify_payment_signature(self, *, order_id: str, payment_id: str, signature: str) -> bool: ...


@dataclass
class CheckoutResult:
    booking: Booking
    order: dict[str, Any] | None = None


@dataclass
class WebhookResult:
    processed: bool
    event_id: str
    duplicate: bool = False
    booking_id: str | None = None
    notification: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _local_today(now: datetime):
    return now.astimezone(ZoneInfo(settings.marketplace_timezone)).date()


def _order_view(order: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": order["id"],
        "amount": order.get("amount"),
        "currency": order.get("currency", settings.payment_currency),
        "receipt": order.get("receipt"),
    }


async def _transaction_for_order(session: AsyncSession, order_id: str) -> PaymentTransaction | None:
    return await session.scalar(select(PaymentTransaction).where(PaymentTransaction.gateway_order_id == order_id))


async def _mark_transaction_success(
    session: AsyncSession,
    order_id: str,
    *,
    payment_id: str,
    signature: str | None,
    payment_method: str | None = None,
) -> None:
    transaction = await _transaction_for_order(session, order_id)
    if transaction is None or transaction.status != TRANSACTION_PENDING:
        return
    transaction.status = TRANSACTION_SUCCESS
    transaction.gateway_payment_id = payment_id
    transaction.gateway_signature = signature
    if payment_method:
        transaction.payment_method = payment_method


async def create_booking_with_order(
    session: AsyncSession,
    request: BookingCreateRequest,
    customer_id: str,
    gateway: PaymentGateway,
    *,
    adapter: notifications.EmailSender | None = None,
    now: datetime | None = None,
) -> CheckoutResult:
    now = now or _utcnow()
    service = await session.get(Service, request.service_id)
    if service is None:
        raise NotFoundError("Service not found")
    if not service.is_bookable:
        raise ValidationError("This service is not currently accepting bookings")
    if service.provider_id == customer_id:
        raise ValidationError("You cannot book your own service")
    if service.mode in TRAVEL_MODES and not (request.address or "").strip():
        raise ValidationError("Address is required for onsite services")

    validate_booking_slot(service, request.date, request.start_time, request.end_time, today=_local_today(now))
    price = calculate_booking_price(
        PricingRules.from_service(service),
        request.date,
        request.start_time,
        request.end_time,
        request.selected_package_index,
    )
    customer = await session.get(User, customer_id)
    service_title = service.title

    booking = await booking_service.reserve_slot(
        session,
        booking_service.ReservationRequest(
            service_id=service.service_id,
            customer_id=customer_id,
            booking_date=request.date,
            start_time=request.start_time,
            end_time=request.end_time,
            price=price,
            address=request.address,
            notes=request.notes,
        ),
        now=now,
    )

    if price.advance_paid <= 0:
        await booking_service.compare_and_set(
            session,
            booking.booking_id,
            Booking.status == BookingStatus.PENDING.value,
            values={
                "status": BookingStatus.CONFIRMED.value,
                "payment_status": PaymentStatus.ADVANCE_PAID.value,
                "expires_at": None,
            },
        )
        await session.commit()
        booking = await booking_service.get_booking(session, booking.booking_id)
        metrics.record_booking("confirmed")
        logger.info("booking_confirmed_without_advance", extra={"extra": {"booking_id": booking.booking_id}})
        await notifications.notify_booking_confirmed(session, adapter, booking)
        return CheckoutResult(booking=booking)

    try:
        order = await gateway.create_order(
            amount_paise=to_paise(price.advance_paid),
            currency=settings.payment_currency,
            receipt=f"adv_{booking.booking_id}",
            notes={
                "booking_id": booking.booking_id,
                "service_title": service_title,
                "customer_name": customer.name if customer else "",
            },
        )
    except GATEWAY_ERRORS as exc:
        metrics.record_payment("advance", "order_failed")
        logger.warning(
            "payment_order_failed",
            extra={"extra": {"booking_id": booking.booking_id, "reason": type(exc).__name__}},
        )
        await booking_service.cancel_booking(
            session,
            booking.booking_id,
            cancelled_by=Actor.SYSTEM,
            reason=ORDER_FAILED_REASON,
            now=now,
        )
        raise ExternalServiceError("Unable to create payment order. Please try again.") from exc

    booking.gateway_order_id = order["id"]
    session.add(
        PaymentTransaction(
            booking_id=booking.booking_id,
            customer_id=customer_id,
            provider_id=booking.provider_id,
            amount=price.advance_paid,
            currency=settings.payment_currency,
            payment_type=PAYMENT_TYPE_ADVANCE,
            status=TRANSACTION_PENDING,
            gateway_order_id=order["id"],
        )
    )
    await session.commit()
    metrics.record_payment("advance", "order_created")
    return CheckoutResult(booking=booking, order=_order_view(order))


async def _confirm_advance(
    session: AsyncSession,
    booking_id: str,
    *,
    order_id: str,
    payment_id: str,
    signature: str | None,
    payment_method: str | None,
    now: datetime,
) -> bool:
    values: dict[str, Any] = {
        "status": BookingStatus.CONFIRMED.value,
        "payment_status": PaymentStatus.ADVANCE_PAID.value,
        "gateway_payment_id": payment_id,
    }
    if signature:
        values["gateway_signature"] = signature
    if payment_method:
        values["payment_method"] = payment_method
    applied = await booking_service.compare_and_set(
        session,
        booking_id,
        Booking.status == BookingStatus.PENDING.value,
        Booking.gateway_order_id == order_id,
        Booking.expires_at > now,
        values=values,
    )
    if applied:
        await _mark_transaction_success(
            session, order_id, payment_id=payment_id, signature=signature, payment_method=payment_method
        )
    return applied


def _flag_unapplied_capture(booking: Booking, leg: str, *, payment_id: str | None, now: datetime) -> None:
    """Record money taken for a leg the booking can no longer accept; needs manual follow-up."""
    lapsed = leg == "advance" and booking_service.hold_lapsed(booking, now)
    outcome = "captured_after_expiry" if lapsed else "captured_on_cancelled"
    metrics.record_payment(leg, outcome)
    logger.warning(
        f"payment_{outcome}",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "leg": leg,
                "status": booking.status,
                "payment_id": payment_id,
            }
        },
    )


def _already_confirmed(booking: Booking, payment_id: str) -> bool:
    return (
        booking.status != BookingStatus.PENDING.value
        and booking.payment_status in PAID_STATUSES | {PaymentStatus.REFUNDED.value}
        and booking.gateway_payment_id == payment_id
    )


async def verify_advance_payment(
    session: AsyncSession,
    request: PaymentVerifyRequest,
    customer_id: str,
    gateway: PaymentGateway,
    *,
    adapter: notifications.EmailSender | None = None,
    now: datetime | None = None,
) -> Booking:
    now = now or _utcnow()
    booking = await booking_service.get_booking(session, request.booking_id)
    if booking.customer_id != customer_id:
        raise AuthorizationError("Not authorized to verify payment for this booking")
    if not booking.gateway_order_id or booking.gateway_order_id != request.gateway_order_id:
        metrics.record_payment("advance", "order_mismatch")
        raise PaymentVerificationError("Order ID mismatch")
    if not gateway.verify_payment_signature(
        order_id=request.gateway_order_id,
        payment_id=request.gateway_payment_id,
        signature=request.gateway_signature,
    ):
        metrics.record_payment("advance", "invalid_signature")
        logger.warning("payment_signature_invalid", extra={"extra": {"booking_id": booking.booking_id}})
        raise PaymentVerificationError("Invalid payment signature")

    if _already_confirmed(booking, request.gateway_payment_id):
        return booking
    if booking_service.hold_lapsed(booking, now):
        _flag_unapplied_capture(booking, "advance", payment_id=request.gateway_payment_id, now=now)
        raise PaymentWindowExpiredError()
    if booking.status != BookingStatus.PENDING.value:
        raise ConflictError(f"Booking is {booking.status}; payment cannot be applied")

    applied = await _confirm_advance(
        session,
        booking.booking_id,
        order_id=request.gateway_order_id,
        payment_id=request.gateway_payment_id,
        signature=request.gateway_signature,
        payment_method=None,
        now=now,
    )
    if not applied:
        await session.rollback()
        booking = await booking_service.get_booking(session, request.booking_id)
        if _already_confirmed(booking, request.gateway_payment_id):
            return booking
        if booking_service.hold_lapsed(booking, now):
            _flag_unapplied_capture(booking, "advance", payment_id=request.gateway_payment_id, now=now)
            raise PaymentWindowExpiredError()
        raise ConflictError(f"Booking is {booking.status}; payment cannot be applied")

    await session.commit()
    booking = await booking_service.get_booking(session, request.booking_id)
    metrics.record_payment("advance", "verified")
    metrics.record_booking("confirmed")
    logger.info(
        "payment_verified",
        extra={"extra": {"booking_id": booking.booking_id, "leg": "advance", "source": "checkout"}},
    )
    await notifications.notify_booking_confirmed(session, adapter, booking)
    return booking


async def create_remaining_order(
    session: AsyncSession,
    booking_id: str,
    customer_id: str,
    gateway: PaymentGateway,
) -> CheckoutResult:
    booking = await booking_service.get_booking(session, booking_id)
    if booking.customer_id != customer_id:
        raise AuthorizationError("Not authorized to pay for this booking")
    if booking.status not in CONFIRMABLE_FOR_REMAINING:
        raise ValidationError("Remaining payment is not available for this booking")
    if booking.payment_status == PaymentStatus.FULLY_PAID.value:
        raise ValidationError("Booking is already fully paid")
    if booking.payment_status != PaymentStatus.ADVANCE_PAID.value:
        raise ValidationError("Advance payment must be completed first")
    if not booking.has_remaining_balance:
        raise ValidationError("No remaining balance to pay")

    try:
        order = await gateway.create_order(
            amount_paise=to_paise(booking.remaining_amount),
            currency=settings.payment_currency,
            receipt=f"rem_{booking.booking_id}",
            notes={"booking_id": booking.booking_id, "type": "remaining"},
        )
    except GATEWAY_ERRORS as exc:
        metrics.record_payment("remaining", "order_failed")
        logger.warning(
            "payment_order_failed",
            extra={"extra": {"booking_id": booking.booking_id, "leg": "remaining", "reason": type(exc).__name__}},
        )
        raise ExternalServiceError("Unable to create payment order. Please try again.") from exc

    booking.remaining_gateway_order_id = order["id"]
    transaction = await session.scalar(
        select(PaymentTransaction).where(
            PaymentTransaction.booking_id == booking.booking_id,
            PaymentTransaction.payment_type == PAYMENT_TYPE_REMAINING,
            PaymentTransaction.status == TRANSACTION_PENDING,
        )
    )
    if transaction is None:
        session.add(
            PaymentTransaction(
                booking_id=booking.booking_id,
                customer_id=booking.customer_id,
                provider_id=booking.provider_id,
                amount=booking.remaining_amount,
                currency=settings.payment_currency,
                payment_type=PAYMENT_TYPE_REMAINING,
                status=TRANSACTION_PENDING,
                gateway_order_id=order["id"],
            )
        )
    else:
        transaction.gateway_order_id = order["id"]
        transaction.amount = booking.remaining_amount
    await session.commit()
    metrics.record_payment("remaining", "order_created")
    return CheckoutResult(booking=booking, order=_order_view(order))


async def _confirm_remaining(
    session: AsyncSession,
    booking_id: str,
    *,
    order_id: str,
    payment_id: str,
    signature: str | None,
    payment_method: str | None,
    now: datetime,
) -> bool:
    applied = await booking_service.compare_and_set(
        session,
        booking_id,
        Booking.status.in_(CONFIRMABLE_FOR_REMAINING),
        Booking.payment_status == PaymentStatus.ADVANCE_PAID.value,
        Booking.remaining_gateway_order_id == order_id,
        values={
            "payment_status": PaymentStatus.FULLY_PAID.value,
            "remaining_gateway_payment_id": payment_id,
            "remaining_paid_at": now,
        },
    )
    if applied:
        await _mark_transaction_success(
            session, order_id, payment_id=payment_id, signature=signature, payment_method=payment_method
        )
    return applied


async def verify_remaining_payment(
    session: AsyncSession,
    request: PaymentVerifyRequest,
    customer_id: str,
    gateway: PaymentGateway,
    *,
    adapter: notifications.EmailSender | None = None,
    now: datetime | None = None,
) -> Booking:
    now = now or _utcnow()
    booking = await booking_service.get_booking(session, request.booking_id)
    if booking.customer_id != customer_id:
        raise AuthorizationError("Not authorized to verify payment for this booking")
    if not booking.remaining_gateway_order_id or booking.remaining_gateway_order_id != request.gateway_order_id:
        metrics.record_payment("remaining", "order_mismatch")
        raise PaymentVerificationError("Order ID mismatch")
    if not gateway.verify_payment_signature(
        order_id=request.gateway_order_id,
        payment_id=request.gateway_payment_id,
        signature=request.gateway_signature,
    ):
        metrics.record_payment("remaining", "invalid_signature")
        raise PaymentVerificationError("Invalid payment signature")

    if booking.is_fully_paid and booking.remaining_gateway_payment_id == request.gateway_payment_id:
        return booking
    if booking.status not in CONFIRMABLE_FOR_REMAINING:
        _flag_unapplied_capture(booking, "remaining", payment_id=request.gateway_payment_id, now=now)
        raise ConflictError(f"Booking is {booking.status}; remaining payment cannot be applied")
    if booking.payment_status != PaymentStatus.ADVANCE_PAID.value:
        raise ConflictError(f"Payment status is {booking.payment_status}; remaining payment cannot be applied")

    applied = await _confirm_remaining(
        session,
        booking.booking_id,
        order_id=request.gateway_order_id,
        payment_id=request.gateway_payment_id,
        signature=request.gateway_signature,
        payment_method=None,
        now=now,
    )
    if not applied:
        await session.rollback()
        booking = await booking_service.get_booking(session, request.booking_id)
        if booking.is_fully_paid and booking.remaining_gateway_payment_id == request.gateway_payment_id:
            return booking
        if booking.status not in CONFIRMABLE_FOR_REMAINING:
            _flag_unapplied_capture(booking, "remaining", payment_id=request.gateway_payment_id, now=now)
            raise ConflictError(f"Booking is {booking.status}; remaining payment cannot be applied")
        raise ConflictError(f"Payment status is {booking.payment_status}; remaining payment cannot be applied")

    await session.commit()
    booking = await booking_service.get_booking(session, request.booking_id)
    metrics.record_payment("remaining", "verified")
    logger.info(
        "payment_verified",
        extra={"extra": {"booking_id": booking.booking_id, "leg": "remaining", "source": "checkout"}},
    )
    await notifications.notify_remaining_payment_received(session, adapter, booking)
    return booking


def webhook_event_id(payload: bytes, header_event_id: str | None) -> str:
    if header_event_id:
        return header_event_id
    return hashlib.sha256(payload or b"").hexdigest()


def _payment_entity(event: dict[str, Any]) -> dict[str, Any]:
    payload = event.get("payload") or {}
    payment = payload.get("payment") or {}
    return payment.get("entity") or {}


async def _handle_payment_captured(
    session: AsyncSession, entity: dict[str, Any], result: WebhookResult, now: datetime
) -> bool:
    order_id = entity.get("order_id")
    payment_id = entity.get("id")
    if not order_id or not payment_id:
        logger.info("webhook_missing_identifiers", extra={"extra": {"event_id": result.event_id}})
        return False

    booking = await session.scalar(
        select(Booking).where(Booking.gateway_order_id == order_id).execution_options(populate_existing=True)
    )
    if booking is not None:
        result.booking_id = booking.booking_id
        if booking.status == BookingStatus.CANCELLED.value and booking.gateway_payment_id != payment_id:
            _flag_unapplied_capture(booking, "advance", payment_id=payment_id, now=now)
            return False
        if booking.status != BookingStatus.PENDING.value:
            logger.info(
                "webhook_already_applied",
                extra={"extra": {"booking_id": booking.booking_id, "leg": "advance", "status": booking.status}},
            )
            return False
        expected = to_paise(booking.advance_paid)
        if entity.get("amount") is not None and int(entity["amount"]) != expected:
            metrics.record_payment("advance", "amount_mismatch")
            logger.warning(
                "payment_amount_mismatch",
                extra={"extra": {"booking_id": booking.booking_id, "expected": expected, "received": entity["amount"]}},
            )
            return False
        if booking.is_expired_at(now):
            _flag_unapplied_capture(booking, "advance", payment_id=payment_id, now=now)
            return False
        applied = await _confirm_advance(
            session,
            booking.booking_id,
            order_id=order_id,
            payment_id=payment_id,
            signature=None,
            payment_method=entity.get("method"),
            now=now,
        )
        if applied:
            metrics.record_payment("advance", "verified")
            metrics.record_booking("confirmed")
            result.notification = "confirmed"
            logger.info(
                "payment_verified",
                extra={"extra": {"booking_id": booking.booking_id, "leg": "advance", "source": "webhook"}},
            )
        return applied

    booking = await session.scalar(
        select(Booking)
        .where(Booking.remaining_gateway_order_id == order_id)
        .execution_options(populate_existing=True)
    )
    if booking is None:
        logger.info("webhook_booking_not_found", extra={"extra": {"event_id": result.event_id, "order_id": order_id}})
        return False
    result.booking_id = booking.booking_id
    if booking.status not in CONFIRMABLE_FOR_REMAINING and booking.remaining_gateway_payment_id != payment_id:
        _flag_unapplied_capture(booking, "remaining", payment_id=payment_id, now=now)
        return False
    if booking.payment_status != PaymentStatus.ADVANCE_PAID.value:
        logger.info(
            "webhook_already_applied",
            extra={"extra": {"booking_id": booking.booking_id, "leg": "remaining", "status": booking.payment_status}},
        )
        return False
    applied = await _confirm_remaining(
        session,
        booking.booking_id,
        order_id=order_id,
        payment_id=payment_id,
        signature=None,
        payment_method=entity.get("method"),
        now=now,
    )
    if applied:
        metrics.record_payment("remaining", "verified")
        result.notification = "remaining_paid"
        logger.info(
            "payment_verified",
            extra={"extra": {"booking_id": booking.booking_id, "leg": "remaining", "source": "webhook"}},
        )
    return applied


async def _handle_payment_failed(session: AsyncSession, entity: dict[str, Any], result: WebhookResult) -> bool:
    order_id = entity.get("order_id")
    if not order_id:
        return False
    transaction = await _transaction_for_order(session, order_id)
    if transaction is None or transaction.status != TRANSACTION_PENDING:
        return False
    transaction.status = TRANSACTION_FAILED
    transaction.gateway_payment_id = entity.get("id")
    transaction.failure_reason = (entity.get("error_description") or "Payment failed")[:255]
    result.booking_id = transaction.booking_id
    leg = "advance" if transaction.payment_type == PAYMENT_TYPE_ADVANCE else "remaining"
    metrics.record_payment(leg, "failed")
    logger.info(
        "payment_failed",
        extra={"extra": {"booking_id": transaction.booking_id, "order_id": order_id, "leg": leg}},
    )
    return True


async def handle_webhook_event(
    session: AsyncSession,
    event: dict[str, Any],
    *,
    event_id: str,
    now: datetime | None = None,
) -> WebhookResult:
    """Apply one verified gateway event. Does not commit."""
    now = now or _utcnow()
    result = WebhookResult(processed=False, event_id=event_id)
    event_type = event.get("event")
    entity = _payment_entity(event)
    if event_type == "payment.captured":
        result.processed = await _handle_payment_captured(session, entity, result, now)
    elif event_type == "payment.failed":
        result.processed = await _handle_payment_failed(session, entity, result)
    else:
        logger.info("webhook_event_ignored", extra={"extra": {"event_id": event_id, "event_type": event_type}})
    return result


async def process_webhook(
    session: AsyncSession,
    event: dict[str, Any],
    payload: bytes,
    *,
    header_event_id: str | None = None,
    adapter: notifications.EmailSender | None = None,
    now: datetime | None = None,
) -> WebhookResult:
    """Deduplicate a verified delivery by event id, then apply it."""
    now = now or _utcnow()
    event_id = webhook_event_id(payload, header_event_id)
    payload_hash = hashlib.sha256(payload or b"").hexdigest()
    event_type = event.get("event")
    result = WebhookResult(processed=False, event_id=event_id)

    if session.in_transaction():
        await session.commit()
    async with session.begin():
        record = await session.scalar(
            select(GatewayEvent).where(GatewayEvent.event_id == event_id).with_for_update()
        )
        if record is not None and record.status in {EVENT_PROCESSED, EVENT_IGNORED, EVENT_PROCESSING}:
            logger.info(
                "webhook_duplicate",
                extra={"extra": {"event_id": event_id, "status": record.status}},
            )
            metrics.record_webhook("duplicate")
            result.duplicate = True
            return result
        if record is None:
            record = GatewayEvent(
                event_id=event_id,
                event_type=event_type,
                payload_hash=payload_hash,
                status=EVENT_PROCESSING,
            )
            session.add(record)
        else:
            record.status = EVENT_PROCESSING

        try:
            async with session.begin_nested():
                result = await handle_webhook_event(session, event, event_id=event_id, now=now)
        except Exception as exc:  # noqa: BLE001
            record.status = EVENT_ERROR
            record.last_error = str(exc)
            metrics.record_webhook("error")
            logger.exception(
                "webhook_processing_error",
                extra={"extra": {"event_id": event_id, "reason": type(exc).__name__}},
            )
            return result
        record.status = EVENT_PROCESSED if result.processed else EVENT_IGNORED
        record.booking_id = result.booking_id
        record.last_error = None

    metrics.record_webhook("processed" if result.processed else "ignored")
    if result.booking_id and result.notification:
        booking = await booking_service.get_booking(session, result.booking_id)
        if result.notification == "confirmed":
            await notifications.notify_booking_confirmed(session, adapter, booking)
        elif result.notification == "remaining_paid":
            await notifications.notify_remaining_payment_received(session, adapter, booking)
    return result


async def cancel_by_customer(
    session: AsyncSession,
    booking_id: str,
    customer_id: str,
    gateway: PaymentGateway,
    *,
    reason: str | None = None,
    adapter: notifications.EmailSender | None = None,
    now: datetime | None = None,
) -> tuple[Booking, refunds.RefundOutcome | None]:
    now = now or _utcnow()
    booking = await booking_service.get_booking(session, booking_id)
    if booking.customer_id != customer_id:
        raise AuthorizationError("Only the customer can cancel this booking")
    if booking.status in {BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value} and booking.date < _local_today(
        now
    ):
        raise ValidationError("Cannot cancel a booking whose date has already passed")

    service = await session.get(Service, booking.service_id)
    hours = refunds.hours_until_start(booking, now)
    percentage = refunds.calculate_refund_percentage(service.cancellation_policy if service else None, hours)
    was_paid = booking.is_paid and bool(booking.gateway_payment_id)

    booking = await booking_service.cancel_booking(
        session,
        booking_id,
        cancelled_by=Actor.CUSTOMER,
        reason=reason or "Cancelled by customer",
        now=now,
    )

    outcome: refunds.RefundOutcome | None = None
    if was_paid:
        amount = refunds.calculate_refund_amount(booking.advance_paid, booking.refund_amount, percentage)
        if amount > 0:
            outcome = await refunds.issue_refund(
                session,
                booking_id,
                amount,
                percentage=percentage,
                reason="Customer cancellation",
                gateway=gateway,
                initiator="customer",
                now=now,
            )
        else:
            outcome = refunds.RefundOutcome(status=refunds.REFUND_SKIPPED, percentage=percentage)
        booking = await booking_service.get_booking(session, booking_id)

    await notifications.notify_booking_cancelled(session, adapter, booking, outcome)
    return booking, outcome


async def cancel_by_provider(
    session: AsyncSession,
    booking_id: str,
    provider_id: str,
    gateway: PaymentGateway,
    *,
    reason: str | None = None,
    adapter: notifications.EmailSender | None = None,
    now: datetime | None = None,
) -> tuple[Booking, refunds.RefundOutcome | None]:
    now = now or _utcnow()
    booking = await booking_service.get_booking(session, booking_id)
    if booking.provider_id != provider_id:
        raise AuthorizationError("Only the provider can cancel this booking")
    was_paid = booking.is_paid and bool(booking.gateway_payment_id)

    booking = await booking_service.cancel_booking(
        session,
        booking_id,
        cancelled_by=Actor.PROVIDER,
        reason=reason or "Cancelled by provider",
        now=now,
    )

    outcome: refunds.RefundOutcome | None = None
    if was_paid and booking.refundable_amount > 0:
        outcome = await refunds.issue_refund(
            session,
            booking_id,
            refunds.calculate_refund_amount(booking.advance_paid, booking.refund_amount, 100),
            percentage=100,
            reason="Provider cancellation",
            gateway=gateway,
            initiator="provider",
            now=now,
        )
        booking = await booking_service.get_booking(session, booking_id)

    await notifications.notify_booking_cancelled(session, adapter, booking, outcome)
    return booking, outcome


async def refund_by_provider(
    session: AsyncSession,
    booking_id: str,
    provider_id: str,
    request: RefundRequest,
    gateway: PaymentGateway,
    *,
    now: datetime | None = None,
) -> tuple[Booking, refunds.RefundOutcome]:
    booking = await booking_service.get_booking(session, booking_id)
    if booking.provider_id != provider_id:
        raise AuthorizationError("Only the provider can refund this booking")
    if booking.payment_status not in PAID_STATUSES or not booking.gateway_payment_id:
        raise ValidationError("Booking has no refundable payment")
    if request.amount > booking.refundable_amount:
        raise ValidationError(f"Refund amount exceeds refundable balance of {booking.refundable_amount}")

    percentage = round(request.amount * 100 / booking.advance_paid) if booking.advance_paid else None
    outcome = await refunds.issue_refund(
        session,
        booking_id,
        request.amount,
        percentage=percentage,
        reason=request.reason or "Provider refund",
        gateway=gateway,
        initiator="provider",
        now=now,
    )
    if outcome.status == refunds.REFUND_FAILED:
        raise ExternalServiceError("Refund could not be processed. Please try again later.")
    return await booking_service.get_booking(session, booking_id), outcome
