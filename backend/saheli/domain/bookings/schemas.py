from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from saheli.domain.bookings.db_models import Booking


class BookingCreateRequest(BaseModel):
    service_id: str = Field(min_length=1, max_length=36)
    date: date
    start_time: str = Field(max_length=5)
    end_time: str = Field(max_length=5)
    address: str | None = Field(None, max_length=500)
    notes: str | None = Field(None, max_length=1000)
    selected_package_index: int | None = Field(None, ge=0)


class PaymentVerifyRequest(BaseModel):
    booking_id: str = Field(min_length=1, max_length=36)
    gateway_order_id: str = Field(min_length=1, max_length=64)
    gateway_payment_id: str = Field(min_length=1, max_length=64)
    gateway_signature: str = Field(min_length=1, max_length=128)


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class RefundRequest(BaseModel):
    amount: int = Field(gt=0)
    reason: str | None = Field(None, max_length=500)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    service_id: str
    provider_id: str
    customer_id: str
    date: date
    start_time: str
    end_time: str
    duration: float
    service_type: str
    pricing_type: str
    selected_package: dict | None = None
    address: str | None = None
    notes: str | None = None
    base_amount: int
    travel_fee: int
    weekend_premium: int
    total_amount: int
    advance_percentage: int
    advance_paid: int
    remaining_amount: int
    payment_status: str
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    payment_method: str | None = None
    remaining_gateway_order_id: str | None = None
    remaining_paid_at: datetime | None = None
    status: str
    expires_at: datetime | None = None
    actual_start_time: datetime | None = None
    started_by: str | None = None
    actual_end_time: datetime | None = None
    completed_by: str | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    refund_amount: int = 0
    refund_percentage: int | None = None
    refund_reason: str | None = None
    refunded_at: datetime | None = None
    is_reviewed: bool = False
    is_expired: bool = False
    is_paid: bool = False
    has_remaining_balance: bool = False
    can_be_reviewed: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        return cls.model_validate(booking)


class GatewayOrder(BaseModel):
    id: str
    amount: int
    currency: str
    receipt: str | None = None


class BookingCreateResponse(BaseModel):
    booking: BookingResponse
    gateway_order: GatewayOrder | None = None
    gateway_public_key: str | None = None


class RemainingOrderResponse(BaseModel):
    booking_id: str
    remaining_amount: int
    gateway_order: GatewayOrder
    gateway_public_key: str | None = None


class RefundSummary(BaseModel):
    status: str
    amount: int = 0
    percentage: int | None = None
    refund_id: str | None = None

    @classmethod
    def from_outcome(cls, outcome) -> "RefundSummary":  # noqa: ANN001
        return cls(
            status=outcome.status,
            amount=outcome.amount,
            percentage=outcome.percentage,
            refund_id=outcome.refund_id,
        )


class BookingActionResponse(BaseModel):
    booking: BookingResponse
    refund: RefundSummary | None = None


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    limit: int
    offset: int


class SlotView(BaseModel):
    start: str
    end: str
    available: bool


class AvailabilityResponse(BaseModel):
    service_id: str
    date: date
    slots: list[SlotView]


class WebhookAck(BaseModel):
    received: bool = True
    processed: bool = False
