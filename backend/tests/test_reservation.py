import asyncio
import dataclasses
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from saheli.domain.bookings import service as booking_service
from saheli.domain.bookings.db_models import Booking
from saheli.domain.bookings.pricing import PricingRules, calculate_booking_price
from saheli.domain.bookings.statuses import BookingStatus, PaymentStatus
from saheli.domain.errors import ConflictError, NotFoundError, SlotUnavailableError, ValidationError
from saheli.domain.users.db_models import User
from saheli.infra.db import Base
from tests.factories import seed_marketplace

BOOKING_DATE = date(2026, 3, 11)
NOW = datetime(2026, 3, 9, 6, 0, tzinfo=timezone.utc)


@dataclasses.dataclass(frozen=True)
class Listing:
    service_id: str
    rules: PricingRules


def _listing(service) -> Listing:
    # A rejected reservation rolls back and expires the service instance.
    return Listing(service_id=service.service_id, rules=PricingRules.from_service(service))


def _request(listing: Listing, customer_id: str, start: str = "10:00", end: str = "12:00"):
    price = calculate_booking_price(listing.rules, BOOKING_DATE, start, end)
    return booking_service.ReservationRequest(
        service_id=listing.service_id,
        customer_id=customer_id,
        booking_date=BOOKING_DATE,
        start_time=start,
        end_time=end,
        price=price,
        notes="Please bring cones",
    )


def _serialized_engine(path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def _driver_autocommit(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        # SQLite has no row locks; a write lock taken at BEGIN serializes like the service lock.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def test_service_lock_statement_uses_row_lock():
    compiled = str(booking_service.service_lock_stmt("svc-1").compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in compiled


@pytest.mark.anyio
async def test_reserve_slot_creates_pending_hold(async_session_maker):
    async with async_session_maker() as session:
        provider, customer, service = await seed_marketplace(session)

        booking = await booking_service.reserve_slot(
            session, _request(_listing(service), customer.user_id), now=NOW
        )

        assert booking.status == BookingStatus.PENDING.value
        assert booking.payment_status == PaymentStatus.PENDING.value
        assert booking.provider_id == provider.user_id
        assert booking.total_amount == 1500
        assert booking.advance_paid == 300
        assert booking.remaining_amount == 1200
        assert booking.duration == 2
        assert booking.notes == "Please bring cones"
        assert booking.is_expired_at(NOW + timedelta(minutes=14)) is False
        assert booking.is_expired_at(NOW + timedelta(minutes=16)) is True


@pytest.mark.anyio
async def test_overlapping_reservation_is_rejected(async_session_maker):
    async with async_session_maker() as session:
        _, customer, service = await seed_marketplace(session)
        listing, customer_id = _listing(service), customer.user_id
        await booking_service.reserve_slot(session, _request(listing, customer_id), now=NOW)

        with pytest.raises(SlotUnavailableError):
            await booking_service.reserve_slot(session, _request(listing, customer_id, "11:00", "13:00"), now=NOW)

        adjacent = await booking_service.reserve_slot(
            session, _request(listing, customer_id, "12:00", "13:00"), now=NOW
        )
        assert adjacent.status == BookingStatus.PENDING.value


@pytest.mark.anyio
async def test_sequential_competitors_get_exactly_one_hold(async_session_maker):
    async with async_session_maker() as session:
        _, _, service = await seed_marketplace(session)
        listing = _listing(service)
        customers = [User(name=f"Customer {idx}", email=f"race-{idx}@example.com") for idx in range(5)]
        session.add_all(customers)
        await session.commit()
        customer_ids = [customer.user_id for customer in customers]

        winners, losers = 0, 0
        for customer_id in customer_ids:
            try:
                await booking_service.reserve_slot(session, _request(listing, customer_id), now=NOW)
                winners += 1
            except SlotUnavailableError:
                losers += 1

        assert (winners, losers) == (1, 4)
        total = await session.scalar(select(func.count()).select_from(Booking))
        assert total == 1


@pytest.mark.anyio
async def test_concurrent_reservations_in_separate_sessions_yield_one_winner(tmp_path):
    engine = _serialized_engine(tmp_path / "race.db")
    session_maker = async_sessionmaker(engine, expire_on_commit=False)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with session_maker() as session:
            _, _, service = await seed_marketplace(session)
            customers = [User(name=f"Racer {idx}", email=f"racer-{idx}@example.com") for idx in range(6)]
            session.add_all(customers)
            await session.commit()
            listing = _listing(service)
            customer_ids = [customer.user_id for customer in customers]

        async def attempt(customer_id: str, start: str, end: str):
            async with session_maker() as session:
                return await booking_service.reserve_slot(session, _request(listing, customer_id, start, end), now=NOW)

        windows = [("10:00", "12:00"), ("11:00", "13:00"), ("10:30", "11:30")]
        results = await asyncio.gather(
            *(attempt(customer_id, *windows[idx % len(windows)]) for idx, customer_id in enumerate(customer_ids)),
            return_exceptions=True,
        )

        winners = [result for result in results if isinstance(result, Booking)]
        losers = [result for result in results if isinstance(result, SlotUnavailableError)]
        assert len(winners) == 1
        assert len(losers) == len(customer_ids) - 1

        async with session_maker() as session:
            total = await session.scalar(select(func.count()).select_from(Booking))
        assert total == 1
    finally:
        await engine.dispose()


@pytest.mark.anyio
async def test_expired_hold_frees_the_slot(async_session_maker):
    async with async_session_maker() as session:
        _, customer, service = await seed_marketplace(session)
        listing = _listing(service)
        await booking_service.reserve_slot(session, _request(listing, customer.user_id), now=NOW)

        later = NOW + timedelta(minutes=16)
        booking = await booking_service.reserve_slot(session, _request(listing, customer.user_id), now=later)
        assert booking.status == BookingStatus.PENDING.value


@pytest.mark.anyio
async def test_daily_capacity_is_enforced(async_session_maker):
    async with async_session_maker() as session:
        _, customer, service = await seed_marketplace(session, max_bookings_per_day=2)
        listing, customer_id = _listing(service), customer.user_id
        await booking_service.reserve_slot(session, _request(listing, customer_id, "09:00", "10:00"), now=NOW)
        await booking_service.reserve_slot(session, _request(listing, customer_id, "10:00", "11:00"), now=NOW)

        with pytest.raises(ConflictError, match="fully booked"):
            await booking_service.reserve_slot(session, _request(listing, customer_id, "15:00", "16:00"), now=NOW)


@pytest.mark.anyio
async def test_paused_service_does_not_accept_reservations(async_session_maker):
    async with async_session_maker() as session:
        _, customer, service = await seed_marketplace(session, is_paused=True)

        with pytest.raises(ValidationError, match="not currently accepting bookings"):
            await booking_service.reserve_slot(session, _request(_listing(service), customer.user_id), now=NOW)


@pytest.mark.anyio
async def test_unknown_service_is_not_found(async_session_maker):
    async with async_session_maker() as session:
        _, customer, service = await seed_marketplace(session)
        request = _request(_listing(service), customer.user_id)

        with pytest.raises(NotFoundError):
            await booking_service.reserve_slot(session, dataclasses.replace(request, service_id="missing"), now=NOW)
