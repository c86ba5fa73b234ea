import logging
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from saheli.domain.bookings import service as booking_service
from saheli.domain.bookings.availability import check_slot_availability
from saheli.domain.bookings.schemas import BookingCreateRequest, PaymentVerifyRequest
from saheli.domain.bookings.statuses import BookingStatus, PaymentStatus
from saheli.domain.catalog.db_models import MODE_ONSITE
from saheli.domain.errors import (
    AuthorizationError,
    ConflictError,
    ExternalServiceError,
    PaymentVerificationError,
    PaymentWindowExpiredError,
    ValidationError,
)
from saheli.domain.payments import service as payment_service
from saheli.domain.payments.db_models import (
    PAYMENT_TYPE_ADVANCE,
    PAYMENT_TYPE_REMAINING,
    TRANSACTION_PENDING,
    TRANSACTION_SUCCESS,
    PaymentTransaction,
)
from saheli.jobs import lifecycle
from tests.factories import seed_marketplace

BOOKING_DATE = date(2026, 3, 11)
NOW = datetime(2026, 3, 9, 6, 0, tzinfo=timezone.utc)


def _create_request(service, **overrides) -> BookingCreateRequest:
    fields = {
        "service_id": service.service_id,
        "date": BOOKING_DATE,
        "start_time": "10:00",
        "end_time": "12:00",
    }
    fields.update(overrides)
    return BookingCreateRequest(**fields)


async def _checkout(session, gateway, email_adapter, **service_overrides):
    provider, customer, service = await seed_marketplace(session, **service_overrides)
    result = await payment_service.create_booking_with_order(
        session, _create_request(service), customer.user_id, gateway, adapter=email_adapter, now=NOW
    )
    return provider, customer, service, result


def _verify_request(gateway, booking, *, payment_id: str = "pay_advance_1", order_id: str | None = None):
    order_id = order_id or booking.gateway_order_id
    return PaymentVerifyRequest(
        booking_id=booking.booking_id,
        gateway_order_id=order_id,
        gateway_payment_id=payment_id,
        gateway_signature=gateway.sign(order_id, payment_id),
    )


@pytest.mark.anyio
async def test_checkout_holds_slot_and_creates_advance_order(async_session_maker, gateway, email_adapter):
    async with async_session_maker() as session:
        _, customer, _, result = await _checkout(session, gateway, email_adapter)

        booking = result.booking
        assert booking.status == BookingStatus.PENDING.value
        assert booking.gateway_order_id == result.order["id"]
        assert result.order["amount"] == 30000
        assert result.order["currency"] == "INR"
        assert result.order["receipt"] == f"adv_{booking.booking_id}"

        path, payload = gateway.calls[0]
        assert path == "/orders"
        assert payload["notes"]["booking_id"] == booking.booking_id
        assert payload["notes"]["customer_name"] == customer.name

        transaction = await session.scalar(
            select(PaymentTransaction).where(PaymentTransaction.booking_id == booking.booking_id)
        )
        assert transaction.payment_type == PAYMENT_TYPE_ADVANCE
        assert transaction.status == TRANSACTION_PENDING
        assert transaction.amount == 300
        assert email_adapter.sent == []


@pytest.mark.anyio
async def test_customer_cannot_book_own_service(async_session_maker, gateway):
    async with async_session_maker() as session:
        provider, _, service = await seed_marketplace(session)

        with pytest.raises(ValidationError, match="own service"):
            await payment_service.create_booking_with_order(
                session, _create_request(service), provider.user_id, gateway, now=NOW
            )


@pytest.mark.anyio
async def test_onsite_service_requires_address(async_session_maker, gateway):
    async with async_session_maker() as session:
        _, customer, service = await seed_marketplace(session, mode=MODE_ONSITE, travel_fee=100)

        with pytest.raises(ValidationError, match="Address is required"):
            await payment_service.create_booking_with_order(
                session, _create_request(service, address="  "), customer.user_id, gateway, now=NOW
            )

        result = await payment_service.create_booking_with_order(
            session, _create_request(service, address="12 MG Road, Pune"), customer.user_id, gateway, now=NOW
        )
        assert result.booking.total_amount == 1600
        assert result.booking.address == "12 MG Road, Pune"


@pytest.mark.anyio
async def test_zero_advance_confirms_without_gateway_order(async_session_maker, gateway, email_adapter):
    async with async_session_maker() as session:
        _, customer, _, result = await _checkout(session, gateway, email_adapter, advance_percentage=0)

        assert result.order is None
        assert gateway.calls == []
        assert result.booking.status == BookingStatus.CONFIRMED.value
        assert result.booking.payment_status == PaymentStatus.ADVANCE_PAID.value
        assert result.booking.expires_at is None
        assert email_adapter.subjects_for(customer.email) == ["Booking confirmed - Bridal Mehendi"]


@pytest.mark.anyio
async def test_order_failure_releases_the_hold(async_session_maker, gateway):
    gateway.fail_orders = True
    async with async_session_maker() as session:
        _, customer, service = await seed_marketplace(session)

        with pytest.raises(ExternalServiceError):
            await payment_service.create_booking_with_order(
                session, _create_request(service), customer.user_id, gateway, now=NOW
            )

        assert await check_slot_availability(
            session, service.service_id, BOOKING_DATE, "10:00", "12:00", now=NOW
        ) is True


@pytest.mark.anyio
async def test_verify_confirms_booking_and_notifies_both_parties(async_session_maker, gateway, email_adapter):
    async with async_session_maker() as session:
        provider, customer, _, result = await _checkout(session, gateway, email_adapter)

        booking = await payment_service.verify_advance_payment(
            session,
            _verify_request(gateway, result.booking),
            customer.user_id,
            gateway,
            adapter=email_adapter,
            now=NOW + timedelta(minutes=5),
        )

        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.payment_status == PaymentStatus.ADVANCE_PAID.value
        assert booking.gateway_payment_id == "pay_advance_1"
        assert email_adapter.subjects_for(customer.email) == ["Booking confirmed - Bridal Mehendi"]
        assert email_adapter.subjects_for(provider.email) == ["New booking - Bridal Mehendi"]

        transaction = await session.scalar(
            select(PaymentTransaction).where(PaymentTransaction.booking_id == booking.booking_id)
        )
        assert transaction.status == TRANSACTION_SUCCESS
        assert transaction.gateway_payment_id == "pay_advance_1"


@pytest.mark.anyio
async def test_verify_is_idempotent_for_the_same_payment(async_session_maker, gateway, email_adapter):
    async with async_session_maker() as session:
        _, customer, _, result = await _checkout(session, gateway, email_adapter)
        request = _verify_request(gateway, result.booking)

        await payment_service.verify_advance_payment(
            session, request, customer.user_id, gateway, adapter=email_adapter, now=NOW + timedelta(minutes=5)
        )
        again = await payment_service.verify_advance_payment(
            session, request, customer.user_id, gateway, adapter=email_adapter, now=NOW + timedelta(minutes=6)
        )

        assert again.status == BookingStatus.CONFIRMED.value
        assert len(email_adapter.subjects_for(customer.email)) == 1


@pytest.mark.anyio
async def test_verify_rejects_invalid_signature(async_session_maker, gateway, email_adapter):
    async with async_session_maker() as session:
        _, customer, _, result = await _checkout(session, gateway, email_adapter)
        request = _verify_request(gateway, result.booking).model_copy(update={"gateway_signature": "forged"})

        with pytest.raises(PaymentVerificationError, match="Invalid payment signature"):
            await payment_service.verify_advance_payment(
                session, request, customer.user_id, gateway, now=NOW + timedelta(minutes=5)
            )


@pytest.mark.anyio
async def test_verify_rejects_order_mismatch(async_session_maker, gateway, email_adapter):
    async with async_session_maker() as session:
        _, customer, _, result = await _checkout(session, gateway, email_adapter)
        request = _verify_request(gateway, result.booking, order_id="order_someone_else")

        with pytest.raises(PaymentVerificationError, match="Order ID mismatch"):
            await payment_service.verify_advance_payment(
                session, request, customer.user_id, gateway, now=NOW + timedelta(minutes=5)
            )


@pytest.mark.anyio
async def test_verify_rejects_other_customers(async_session_maker, gateway, email_adapter):
    async with async_session_maker() as session:
        provider, _, _, result = await _checkout(session, gateway, email_adapter)

        with pytest.raises(AuthorizationError):
            await payment_service.verify_advance_payment(
                session, _verify_request(gateway, result.booking), provider.user_id, gateway, now=NOW
            )


@pytest.mark.anyio
async def test_verify_after_payment_window_expired(async_session_maker, gateway, email_adapter):
    async with async_session_maker() as session:
        _, customer, _, result = await _checkout(session, gateway, email_adapter)

        with pytest.raises(PaymentWindowExpiredError):
            await payment_service.verify_advance_payment(
                session,
                _verify_request(gateway, result.booking),
                customer.user_id,
                gateway,
                now=NOW + timedelta(minutes=16),
            )


async def _confirmed_checkout(session, gateway, email_adapter):
    provider, customer, service, result = await _checkout(session, gateway, email_adapter)
    booking = await payment_service.verify_advance_payment(
        session,
        _verify_request(gateway, result.booking),
        customer.user_id,
        gateway,
        now=NOW + timedelta(minutes=5),
    )
    return provider, customer, booking


@pytest.mark.anyio
async def test_remaining_balance_order_and_verification(async_session_maker, gateway, email_adapter):
    async with async_session_maker() as session:
        provider, customer, booking = await _confirmed_checkout(session, gateway, email_adapter)

        checkout = await payment_service.create_remaining_order(
            session, booking.booking_id, customer.user_id, gateway
        )
        assert checkout.order["amount"] == 120000
        assert checkout.order["receipt"] == f"rem_{booking.booking_id}"

        order_id = checkout.order["id"]
        request = PaymentVerifyRequest(
            booking_id=booking.booking_id,
            gateway_order_id=order_id,
            gateway_payment_id="pay_remaining_1",
            gateway_signature=gateway.sign(order_id, "pay_remaining_1"),
        )
        paid = await payment_service.verify_remaining_payment(
            session, request, customer.user_id, gateway, adapter=email_adapter, now=NOW + timedelta(days=2)
        )

        assert paid.payment_status == PaymentStatus.FULLY_PAID.value
        assert paid.remaining_gateway_payment_id == "pay_remaining_1"
        assert paid.remaining_paid_at is not None
        assert paid.has_remaining_balance is False
        assert email_adapter.subjects_for(customer.email) == ["Payment received - Bridal Mehendi"]
        assert email_adapter.subjects_for(provider.email) == ["Booking fully paid - Bridal Mehendi"]

        transaction = await session.scalar(
            select(PaymentTransaction).where(
                PaymentTransaction.booking_id == booking.booking_id,
                PaymentTransaction.payment_type == PAYMENT_TYPE_REMAINING,
            )
        )
        assert transaction.status == TRANSACTION_SUCCESS
        assert transaction.amount == 1200

        with pytest.raises(ValidationError, match="already fully paid"):
            await payment_service.create_remaining_order(session, booking.booking_id, customer.user_id, gateway)


@pytest.mark.anyio
async def test_remaining_order_requires_advance(async_session_maker, gateway, email_adapter):
    async with async_session_maker() as session:
        _, customer, _, result = await _checkout(session, gateway, email_adapter)

        with pytest.raises(ValidationError, match="not available"):
            await payment_service.create_remaining_order(
                session, result.booking.booking_id, customer.user_id, gateway
            )


@pytest.mark.anyio
async def test_verify_after_expiry_sweep_reports_expired_window(async_session_maker, gateway, email_adapter, caplog):
    async with async_session_maker() as session:
        _, customer, _, result = await _checkout(session, gateway, email_adapter)
        booking_id = result.booking.booking_id
        request = _verify_request(gateway, result.booking, payment_id="pay_slow_upi")

        swept = await lifecycle.run_expire_pending(session, email_adapter, now=NOW + timedelta(minutes=20))
        assert swept["applied"] == 1

        with caplog.at_level(logging.WARNING, logger=payment_service.__name__):
            with pytest.raises(PaymentWindowExpiredError):
                await payment_service.verify_advance_payment(
                    session, request, customer.user_id, gateway, now=NOW + timedelta(minutes=21)
                )

        assert "payment_captured_after_expiry" in [record.getMessage() for record in caplog.records]
        booking = await booking_service.get_booking(session, booking_id)
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.payment_status == PaymentStatus.PENDING.value
        assert booking.gateway_payment_id is None


@pytest.mark.anyio
async def test_remaining_payment_is_not_applied_to_cancelled_booking(
    async_session_maker, gateway, email_adapter, caplog
):
    async with async_session_maker() as session:
        _, customer, booking = await _confirmed_checkout(session, gateway, email_adapter)
        checkout = await payment_service.create_remaining_order(session, booking.booking_id, customer.user_id, gateway)
        order_id = checkout.order["id"]

        # 90 minutes before the 10:00 IST start: inside the no-refund tier.
        late = datetime(2026, 3, 11, 3, 0, tzinfo=timezone.utc)
        cancelled, refund = await payment_service.cancel_by_customer(
            session, booking.booking_id, customer.user_id, gateway, adapter=email_adapter, now=late
        )
        assert cancelled.status == BookingStatus.CANCELLED.value
        assert cancelled.payment_status == PaymentStatus.ADVANCE_PAID.value
        assert refund.status == "skipped"

        request = PaymentVerifyRequest(
            booking_id=booking.booking_id,
            gateway_order_id=order_id,
            gateway_payment_id="pay_after_cancel",
            gateway_signature=gateway.sign(order_id, "pay_after_cancel"),
        )
        with caplog.at_level(logging.WARNING, logger=payment_service.__name__):
            with pytest.raises(ConflictError, match="Booking is Cancelled"):
                await payment_service.verify_remaining_payment(
                    session, request, customer.user_id, gateway, now=late + timedelta(minutes=5)
                )

        assert "payment_captured_on_cancelled" in [record.getMessage() for record in caplog.records]
        refreshed = await booking_service.get_booking(session, booking.booking_id)
        assert refreshed.payment_status == PaymentStatus.ADVANCE_PAID.value
        assert refreshed.remaining_gateway_payment_id is None
