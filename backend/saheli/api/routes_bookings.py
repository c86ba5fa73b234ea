import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from saheli.api.auth import Identity, require_customer, require_identity, require_provider
from saheli.dependencies import enforce_booking_rate_limit, get_db_session, get_email_adapter, get_gateway
from saheli.domain.bookings import schemas as booking_schemas
from saheli.domain.bookings import service as booking_service
from saheli.domain.bookings.availability import get_day_availability
from saheli.domain.catalog.db_models import Service
from saheli.domain.errors import NotFoundError
from saheli.domain.notifications import service as notifications
from saheli.domain.payments import service as payment_service

router = APIRouter()
logger = logging.getLogger(__name__)


def _action_response(booking, refund=None) -> booking_schemas.BookingActionResponse:
    return booking_schemas.BookingActionResponse(
        booking=booking_schemas.BookingResponse.from_booking(booking),
        refund=booking_schemas.RefundSummary.from_outcome(refund) if refund is not None else None,
    )


@router.post(
    "/booking",
    response_model=booking_schemas.BookingCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    payload: booking_schemas.BookingCreateRequest,
    request: Request,
    identity: Identity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingCreateResponse:
    await enforce_booking_rate_limit(request, "booking_create", identity.user_id)
    gateway = get_gateway(request)
    result = await payment_service.create_booking_with_order(
        session,
        payload,
        identity.user_id,
        gateway,
        adapter=get_email_adapter(request),
    )
    return booking_schemas.BookingCreateResponse(
        booking=booking_schemas.BookingResponse.from_booking(result.booking),
        gateway_order=booking_schemas.GatewayOrder(**result.order) if result.order else None,
        gateway_public_key=gateway.public_key if result.order else None,
    )


@router.get("/booking/availability/{service_id}", response_model=booking_schemas.AvailabilityResponse)
async def service_availability(
    service_id: str,
    date: date = Query(...),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.AvailabilityResponse:
    service = await session.get(Service, service_id)
    if service is None:
        raise NotFoundError("Service not found")
    slots = await get_day_availability(session, service, date)
    return booking_schemas.AvailabilityResponse(
        service_id=service_id,
        date=date,
        slots=[booking_schemas.SlotView(start=slot.start, end=slot.end, available=slot.available) for slot in slots],
    )


@router.get("/booking/customer/bookings", response_model=booking_schemas.BookingListResponse)
async def customer_bookings(
    status_filter: str | None = Query(None, alias="status"),
    payment_status: str | None = Query(None),
    booking_date: date | None = Query(None, alias="date"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingListResponse:
    bookings = await booking_service.list_customer_bookings(
        session,
        identity.user_id,
        status=status_filter,
        payment_status=payment_status,
        booking_date=booking_date,
        limit=limit,
        offset=offset,
    )
    return booking_schemas.BookingListResponse(
        bookings=[booking_schemas.BookingResponse.from_booking(booking) for booking in bookings],
        limit=limit,
        offset=offset,
    )


@router.get("/booking/provider/bookings", response_model=booking_schemas.BookingListResponse)
async def provider_bookings(
    status_filter: str | None = Query(None, alias="status"),
    payment_status: str | None = Query(None),
    booking_date: date | None = Query(None, alias="date"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(require_provider),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingListResponse:
    bookings = await booking_service.list_provider_bookings(
        session,
        identity.user_id,
        status=status_filter,
        payment_status=payment_status,
        booking_date=booking_date,
        limit=limit,
        offset=offset,
    )
    return booking_schemas.BookingListResponse(
        bookings=[booking_schemas.BookingResponse.from_booking(booking) for booking in bookings],
        limit=limit,
        offset=offset,
    )


@router.get("/booking/{booking_id}", response_model=booking_schemas.BookingResponse)
async def get_booking(
    booking_id: str,
    identity: Identity = Depends(require_identity),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.get_booking_for_actor(session, booking_id, identity.user_id)
    return booking_schemas.BookingResponse.from_booking(booking)


@router.post("/booking/{booking_id}/cancel", response_model=booking_schemas.BookingActionResponse)
async def cancel_booking(
    booking_id: str,
    request: Request,
    payload: booking_schemas.CancelRequest | None = None,
    identity: Identity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingActionResponse:
    booking, refund = await payment_service.cancel_by_customer(
        session,
        booking_id,
        identity.user_id,
        get_gateway(request),
        reason=payload.reason if payload else None,
        adapter=get_email_adapter(request),
    )
    return _action_response(booking, refund)


@router.post("/booking/{booking_id}/provider-cancel", response_model=booking_schemas.BookingActionResponse)
async def provider_cancel_booking(
    booking_id: str,
    request: Request,
    payload: booking_schemas.CancelRequest | None = None,
    identity: Identity = Depends(require_provider),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingActionResponse:
    booking, refund = await payment_service.cancel_by_provider(
        session,
        booking_id,
        identity.user_id,
        get_gateway(request),
        reason=payload.reason if payload else None,
        adapter=get_email_adapter(request),
    )
    return _action_response(booking, refund)


@router.post("/booking/{booking_id}/start", response_model=booking_schemas.BookingActionResponse)
async def start_booking(
    booking_id: str,
    request: Request,
    identity: Identity = Depends(require_provider),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingActionResponse:
    booking = await booking_service.start_booking(session, booking_id, identity.user_id)
    await notifications.notify_booking_started(session, get_email_adapter(request), booking)
    return _action_response(booking)


@router.post("/booking/{booking_id}/complete", response_model=booking_schemas.BookingActionResponse)
async def complete_booking(
    booking_id: str,
    request: Request,
    identity: Identity = Depends(require_provider),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingActionResponse:
    booking = await booking_service.complete_booking(session, booking_id, identity.user_id)
    await notifications.notify_booking_completed(session, get_email_adapter(request), booking)
    return _action_response(booking)
