from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

import anyio
import razorpay
import requests

from saheli.infra.gateway_resilience import razorpay_circuit
from saheli.settings import settings
from saheli.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    """Raised when the gateway rejects a request or cannot be reached.

    ``status_code`` is 400 when Razorpay refused the request itself, 502 when
    it reported an upstream or server fault, and ``None`` when no answer came
    back at all.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class WebhookSignatureError(ValueError):
    pass


GATEWAY_ERRORS = (GatewayError, CircuitBreakerOpenError, asyncio.TimeoutError)

SDK_ERROR_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (razorpay.errors.BadRequestError, 400),
    (razorpay.errors.GatewayError, 502),
    (razorpay.errors.ServerError, 502),
)
TRANSLATED_ERRORS = tuple(error_type for error_type, _ in SDK_ERROR_STATUS) + (requests.RequestException,)


def _translate_sdk_error(exc: Exception) -> GatewayError:
    for error_type, status_code in SDK_ERROR_STATUS:
        if isinstance(exc, error_type):
            return GatewayError(str(exc) or f"razorpay_status_{status_code}", status_code=status_code)
    return GatewayError(f"razorpay_unreachable:{type(exc).__name__}")


class RazorpayClient:
    def __init__(
        self,
        *,
        key_id: str | None,
        key_secret: str | None,
        webhook_secret: str | None,
        api_base: str | None = None,
        sdk_client: Any | None = None,
        circuit: CircuitBreaker | None = None,
    ) -> None:
        """Async facade over the synchronous ``razorpay`` SDK.

        Credentials default to global settings. ``sdk_client`` replaces the
        ``razorpay.Client`` that would otherwise be built from them. Operations
        fail fast with ``GatewayError`` when a credential they need is not
        configured.
        """
        self.key_id = key_id or settings.razorpay_key_id
        self.key_secret = key_secret or settings.razorpay_key_secret
        self.webhook_secret = webhook_secret or settings.razorpay_webhook_secret
        self.api_base = (api_base or settings.razorpay_api_base).rstrip("/")
        self.circuit = circuit or razorpay_circuit
        self._sdk_client = sdk_client

    @property
    def public_key(self) -> str | None:
        return self.key_id

    @property
    def sdk(self) -> Any:
        if not self.key_id or not self.key_secret:
            raise GatewayError("razorpay_not_configured")
        if self._sdk_client is None:
            self._sdk_client = razorpay.Client(auth=(self.key_id, self.key_secret), base_url=self.api_base)
        return self._sdk_client

    def _webhook_utility(self) -> Any:
        # Webhook checks only need the webhook secret, not API credentials.
        if self._sdk_client is not None:
            return self._sdk_client.utility
        return razorpay.Client(base_url=self.api_base).utility

    def _request_timeout(self) -> float:
        return max(0.01, settings.razorpay_timeout_seconds)

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        request_kwargs = dict(kwargs)
        request_kwargs.setdefault("timeout", self._request_timeout())

        def _sync_call() -> Any:
            try:
                return fn(*args, **request_kwargs)
            except TRANSLATED_ERRORS as exc:
                raise _translate_sdk_error(exc) from exc

        return await self.circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))

    async def create_order(
        self,
        *,
        amount_paise: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        sdk = self.sdk
        order = await self._call(
            sdk.order.create,
            {"amount": amount_paise, "currency": currency, "receipt": receipt, "notes": notes or {}},
        )
        logger.info(
            "razorpay_order_created",
            extra={"extra": {"order_id": order.get("id"), "receipt": receipt, "amount": amount_paise}},
        )
        return order

    async def refund_payment(
        self,
        *,
        payment_id: str,
        amount_paise: int,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        sdk = self.sdk
        refund = await self._call(
            sdk.payment.refund,
            payment_id,
            {"amount": amount_paise, "notes": notes or {}},
        )
        logger.info(
            "razorpay_refund_created",
            extra={"extra": {"payment_id": payment_id, "refund_id": refund.get("id"), "amount": amount_paise}},
        )
        return refund

    def verify_payment_signature(self, *, order_id: str, payment_id: str, signature: str) -> bool:
        sdk = self.sdk
        if not order_id or not payment_id or not signature:
            return False
        try:
            sdk.utility.verify_payment_signature(
                {
                    "razorpay_order_id": order_id,
                    "razorpay_payment_id": payment_id,
                    "razorpay_signature": signature,
                }
            )
        except razorpay.errors.SignatureVerificationError:
            return False
        return True

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if not self.webhook_secret:
            raise GatewayError("razorpay_webhook_not_configured")
        if not signature:
            raise WebhookSignatureError("missing_signature")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookSignatureError("invalid_payload") from exc
        try:
            self._webhook_utility().verify_webhook_signature(body, signature, self.webhook_secret)
        except razorpay.errors.SignatureVerificationError as exc:
            raise WebhookSignatureError("invalid_signature") from exc
        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            raise WebhookSignatureError("invalid_payload") from exc
        if not isinstance(event, dict):
            raise WebhookSignatureError("invalid_payload")
        return event


def resolve_client(app_state: Any) -> RazorpayClient:
    client = getattr(app_state, "razorpay_client", None)
    if client is not None:
        return client
    services = getattr(app_state, "services", None)
    if services is not None and getattr(services, "razorpay_client", None) is not None:
        return services.razorpay_client
    return RazorpayClient(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        webhook_secret=settings.razorpay_webhook_secret,
    )
