import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from saheli.api.auth import Identity, require_customer, require_provider
from saheli.dependencies import enforce_booking_rate_limit, get_db_session, get_email_adapter, get_gateway
from saheli.domain.bookings import schemas as booking_schemas
from saheli.domain.payments import service as payment_service
from saheli.infra.metrics import metrics
from saheli.infra.razorpay_client import GatewayError, WebhookSignatureError

router = APIRouter()
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Razorpay-Signature"
EVENT_ID_HEADER = "X-Razorpay-Event-Id"


@router.post("/booking/payment/verify", response_model=booking_schemas.BookingActionResponse)
async def verify_payment(
    payload: booking_schemas.PaymentVerifyRequest,
    request: Request,
    identity: Identity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingActionResponse:
    booking = await payment_service.verify_advance_payment(
        session,
        payload,
        identity.user_id,
        get_gateway(request),
        adapter=get_email_adapter(request),
    )
    return booking_schemas.BookingActionResponse(booking=booking_schemas.BookingResponse.from_booking(booking))


@router.post("/booking/{booking_id}/remaining/order", response_model=booking_schemas.RemainingOrderResponse)
async def create_remaining_order(
    booking_id: str,
    request: Request,
    identity: Identity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.RemainingOrderResponse:
    await enforce_booking_rate_limit(request, "remaining_order", identity.user_id)
    gateway = get_gateway(request)
    result = await payment_service.create_remaining_order(session, booking_id, identity.user_id, gateway)
    return booking_schemas.RemainingOrderResponse(
        booking_id=result.booking.booking_id,
        remaining_amount=result.booking.remaining_amount,
        gateway_order=booking_schemas.GatewayOrder(**result.order),
        gateway_public_key=gateway.public_key,
    )


@router.post("/booking/payment/remaining/verify", response_model=booking_schemas.BookingActionResponse)
async def verify_remaining_payment(
    payload: booking_schemas.PaymentVerifyRequest,
    request: Request,
    identity: Identity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingActionResponse:
    booking = await payment_service.verify_remaining_payment(
        session,
        payload,
        identity.user_id,
        get_gateway(request),
        adapter=get_email_adapter(request),
    )
    return booking_schemas.BookingActionResponse(booking=booking_schemas.BookingResponse.from_booking(booking))


@router.post("/booking/{booking_id}/payment/refund", response_model=booking_schemas.BookingActionResponse)
async def provider_refund(
    booking_id: str,
    payload: booking_schemas.RefundRequest,
    request: Request,
    identity: Identity = Depends(require_provider),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingActionResponse:
    booking, refund = await payment_service.refund_by_provider(
        session, booking_id, identity.user_id, payload, get_gateway(request)
    )
    return booking_schemas.BookingActionResponse(
        booking=booking_schemas.BookingResponse.from_booking(booking),
        refund=booking_schemas.RefundSummary.from_outcome(refund),
    )


@router.post("/booking/webhook/razorpay", response_model=booking_schemas.WebhookAck)
async def razorpay_webhook(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.WebhookAck:
    gateway = get_gateway(request)
    if not getattr(gateway, "webhook_secret", None):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payment webhook disabled")

    payload = await request.body()
    try:
        event = gateway.verify_webhook(payload, request.headers.get(SIGNATURE_HEADER))
    except WebhookSignatureError as exc:
        metrics.record_webhook("invalid_signature")
        logger.warning("webhook_signature_invalid", extra={"extra": {"reason": str(exc)}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature") from exc
    except GatewayError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payment webhook disabled"
        ) from exc

    result = await payment_service.process_webhook(
        session,
        event,
        payload,
        header_event_id=request.headers.get(EVENT_ID_HEADER),
        adapter=get_email_adapter(request),
    )
    return booking_schemas.WebhookAck(received=True, processed=result.processed)
