import hashlib
import hmac
import json
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

import razorpay

from saheli.api.auth import issue_session_token
from saheli.domain.bookings.db_models import Booking
from saheli.domain.bookings.statuses import BookingStatus, PaymentStatus
from saheli.domain.catalog.db_models import MODE_ONLINE, PRICING_HOURLY, Service
from saheli.domain.users.db_models import ROLE_CUSTOMER, ROLE_PROVIDER, User
from saheli.infra.razorpay_client import RazorpayClient
from saheli.shared.circuit_breaker import CircuitBreaker

ALL_DAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
FULL_WEEK = [{"day": day, "slots": [{"start": "09:00", "end": "18:00"}]} for day in ALL_DAYS]


def hmac_signature(message: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class _CannedOrders:
    def __init__(self, stub: "StubRazorpay") -> None:
        self.stub = stub

    def create(self, data: dict[str, Any], **options: Any) -> dict[str, Any]:
        self.stub.calls.append(("/orders", data))
        if self.stub.fail_orders:
            raise razorpay.errors.ServerError("The server encountered an error")
        return {
            "id": f"order_{uuid.uuid4().hex[:14]}",
            "amount": data["amount"],
            "currency": data["currency"],
            "receipt": data["receipt"],
            "status": "created",
        }


class _CannedPayments:
    def __init__(self, stub: "StubRazorpay") -> None:
        self.stub = stub

    def refund(self, payment_id: str, data: dict[str, Any], **options: Any) -> dict[str, Any]:
        self.stub.calls.append((f"/payments/{payment_id}/refund", data))
        if self.stub.fail_refunds:
            raise razorpay.errors.GatewayError("Payment processing failed due to error at bank or wallet gateway")
        return {"id": f"rfnd_{uuid.uuid4().hex[:14]}", "amount": data["amount"], "status": "processed"}


class StubRazorpay(RazorpayClient):
    """Real SDK signature checks, canned order and refund responses."""

    def __init__(self) -> None:
        sdk_client = razorpay.Client(auth=("rzp_test_key", "rzp_test_secret"))
        sdk_client.order = _CannedOrders(self)
        sdk_client.payment = _CannedPayments(self)
        super().__init__(
            key_id="rzp_test_key",
            key_secret="rzp_test_secret",
            webhook_secret="rzp_webhook_secret",
            sdk_client=sdk_client,
            circuit=CircuitBreaker(name="razorpay-test", failure_threshold=100),
        )
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_orders = False
        self.fail_refunds = False

    @property
    def refund_calls(self) -> list[dict[str, Any]]:
        return [payload for path, payload in self.calls if path.endswith("/refund")]

    def sign(self, order_id: str, payment_id: str) -> str:
        return hmac_signature(f"{order_id}|{payment_id}".encode(), self.key_secret)

    def signed_webhook(self, event: dict[str, Any]) -> tuple[bytes, str]:
        payload = json.dumps(event).encode()
        return payload, hmac_signature(payload, self.webhook_secret)


class RecordingEmailAdapter:
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def send_email(
        self, recipient: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> bool:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append({"recipient": recipient, "subject": subject, "body": body, "headers": headers or {}})
        return True

    def subjects_for(self, recipient: str) -> list[str]:
        return [message["subject"] for message in self.sent if message["recipient"] == recipient]


def captured_event(order_id: str, payment_id: str, amount_paise: int, *, method: str = "upi") -> dict[str, Any]:
    return {
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": order_id,
                    "amount": amount_paise,
                    "method": method,
                    "status": "captured",
                }
            }
        },
    }


def next_weekday(start: date, weekday: int) -> date:
    return start + timedelta(days=(weekday - start.weekday()) % 7 or 7)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(user.user_id, user.role)}"}


async def seed_marketplace(session, **service_overrides: Any) -> tuple[User, User, Service]:
    provider = User(name="Asha Provider", email=f"provider-{uuid.uuid4().hex[:8]}@example.com", role=ROLE_PROVIDER)
    customer = User(name="Meera Customer", email=f"customer-{uuid.uuid4().hex[:8]}@example.com", role=ROLE_CUSTOMER)
    session.add_all([provider, customer])
    await session.flush()
    fields: dict[str, Any] = {
        "provider_id": provider.user_id,
        "title": "Bridal Mehendi",
        "pricing_type": PRICING_HOURLY,
        "base_price": 750,
        "packages": [],
        "advance_percentage": 20,
        "travel_fee": 0,
        "weekend_premium": 0,
        "mode": MODE_ONLINE,
        "weekly_schedule": FULL_WEEK,
        "unavailable_dates": [],
        "max_bookings_per_day": 5,
        "advance_booking_limit": 30,
        "cancellation_policy": None,
    }
    fields.update(service_overrides)
    service = Service(**fields)
    session.add(service)
    await session.commit()
    return provider, customer, service


def make_booking(service: Service, customer: User, **overrides: Any) -> Booking:
    fields: dict[str, Any] = {
        "service_id": service.service_id,
        "provider_id": service.provider_id,
        "customer_id": customer.user_id,
        "date": date.today() + timedelta(days=3),
        "start_time": "10:00",
        "end_time": "12:00",
        "duration": 2.0,
        "service_type": service.mode,
        "pricing_type": service.pricing_type,
        "base_amount": 1500,
        "travel_fee": 0,
        "weekend_premium": 0,
        "total_amount": 1500,
        "advance_percentage": 20,
        "advance_paid": 300,
        "remaining_amount": 1200,
        "status": BookingStatus.PENDING.value,
        "payment_status": PaymentStatus.PENDING.value,
        "expires_at": datetime.now(tz=timezone.utc) + timedelta(minutes=15),
    }
    fields.update(overrides)
    return Booking(**fields)
