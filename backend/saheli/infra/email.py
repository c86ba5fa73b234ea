"""Outbound booking email delivery.

Every message the booking lifecycle sends carries its email type and booking
id in ``X-Saheli-*`` headers. SendGrid receives them as a category and a
custom arg so bounces can be traced back to a booking; SMTP keeps them as
plain headers.
"""

import logging
import random
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Awaitable, Callable

import anyio
import httpx

from saheli.infra.metrics import metrics
from saheli.settings import settings
from saheli.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
EMAIL_TYPE_HEADER = "X-Saheli-Email-Type"
BOOKING_ID_HEADER = "X-Saheli-Booking-Id"


def booking_email_headers(email_type: str, booking_id: str) -> dict[str, str]:
    return {EMAIL_TYPE_HEADER: email_type, BOOKING_ID_HEADER: booking_id}


class EmailDeliveryError(RuntimeError):
    def __init__(self, reason: str, *, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.status_code = status_code


def is_relay_outage(exc: BaseException) -> bool:
    # A rejected payload or bad API key will not recover by waiting.
    status_code = getattr(exc, "status_code", None)
    return status_code is None or status_code == 429 or status_code >= 500


class NoopEmailAdapter:
    async def send_email(
        self, recipient: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> bool:  # noqa: D401
        email_type = (headers or {}).get(EMAIL_TYPE_HEADER)
        logger.info(
            "email_send_skipped",
            extra={"extra": {"email_type": email_type, "subject": subject, "mode": "noop"}},
        )
        metrics.record_email_adapter("skipped", email_type)
        return False


Transport = Callable[[str, str, str, dict[str, str]], Awaitable[None]]


class EmailAdapter:
    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client
        self._breaker = CircuitBreaker(
            name="email",
            failure_threshold=settings.email_circuit_failure_threshold,
            recovery_time=settings.email_circuit_recovery_seconds,
            is_failure=is_relay_outage,
        )
        self._transports: dict[str, Transport] = {
            "sendgrid": self._send_via_sendgrid,
            "smtp": self._send_via_smtp,
        }

    async def send_email(
        self, recipient: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> bool:
        headers = dict(headers or {})
        email_type = headers.get(EMAIL_TYPE_HEADER)
        transport = self._transports.get(settings.email_mode)
        if transport is None or not recipient:
            metrics.record_email_adapter("skipped", email_type)
            return False
        try:
            await self._breaker.call(transport, recipient, subject, body, headers)
        except CircuitBreakerOpenError:
            logger.warning(
                "email_circuit_open",
                extra={"extra": {"email_type": email_type, "booking_id": headers.get(BOOKING_ID_HEADER)}},
            )
            metrics.record_email_adapter("circuit_open", email_type)
            return False
        except Exception:
            metrics.record_email_adapter("error", email_type)
            raise
        metrics.record_email_adapter("sent", email_type)
        return True

    async def _send_via_sendgrid(self, to_email: str, subject: str, body: str, headers: dict[str, str]) -> None:
        api_key = settings.sendgrid_api_key
        from_email = settings.email_sender
        if not api_key or not from_email:
            raise EmailDeliveryError("sendgrid_not_configured")
        payload = _sendgrid_payload(to_email, subject, body, headers, from_email=from_email)
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await _post_with_retry(
                client,
                headers={"Authorization": f"Bearer {api_key}"},
                json=payload,
            )
        finally:
            if close_client:
                await client.aclose()
        if response.status_code >= 400:
            raise EmailDeliveryError(f"sendgrid_status_{response.status_code}", status_code=response.status_code)

    async def _send_via_smtp(self, to_email: str, subject: str, body: str, headers: dict[str, str]) -> None:
        host = settings.smtp_host
        from_email = settings.email_sender
        if not host or not from_email:
            raise EmailDeliveryError("smtp_not_configured")
        port = settings.smtp_port or 587
        message = EmailMessage()
        message["From"] = formataddr((settings.email_from_name, from_email)) if settings.email_from_name else from_email
        message["To"] = to_email
        message["Subject"] = subject
        for header_name, header_value in headers.items():
            message[header_name] = header_value
        message.set_content(body)

        def _send_blocking() -> None:
            smtp_cls = smtplib.SMTP if settings.smtp_use_tls else smtplib.SMTP_SSL
            with smtp_cls(host, port, timeout=settings.smtp_timeout_seconds) as smtp:
                if settings.smtp_use_tls:
                    smtp.starttls()
                if settings.smtp_username and settings.smtp_password:
                    smtp.login(settings.smtp_username, settings.smtp_password)
                smtp.send_message(message)

        await anyio.to_thread.run_sync(_send_blocking)


def _sendgrid_payload(
    to_email: str, subject: str, body: str, headers: dict[str, str], *, from_email: str
) -> dict[str, Any]:
    extra_headers = dict(headers)
    email_type = extra_headers.pop(EMAIL_TYPE_HEADER, None)
    booking_id = extra_headers.pop(BOOKING_ID_HEADER, None)
    personalization: dict[str, Any] = {"to": [{"email": to_email}]}
    if booking_id:
        personalization["custom_args"] = {"booking_id": booking_id}
    payload: dict[str, Any] = {
        "personalizations": [personalization],
        "from": {"email": from_email},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    if settings.email_from_name:
        payload["from"]["name"] = settings.email_from_name
    if email_type:
        payload["categories"] = ["booking", email_type]
    if extra_headers:
        payload["headers"] = extra_headers
    return payload


def resolve_email_adapter(app_settings) -> EmailAdapter | NoopEmailAdapter:
    if app_settings.email_mode == "off" or getattr(app_settings, "testing", False):
        return NoopEmailAdapter()
    return EmailAdapter()


def resolve_app_email_adapter(app_like) -> EmailAdapter | NoopEmailAdapter | None:
    state = getattr(app_like, "state", None)
    if state is None:
        return None
    app_state = getattr(getattr(app_like, "app", None), "state", None) or state
    adapter = getattr(app_state, "email_adapter", None)
    if adapter is not None:
        return adapter
    services = getattr(app_state, "services", None)
    if services is not None:
        return getattr(services, "email_adapter", None)
    return None


def _backoff_delay(attempt: int) -> float:
    delay = min(
        settings.email_http_backoff_seconds * (2 ** (attempt - 1)),
        settings.email_http_backoff_max_seconds,
    )
    return delay + delay * random.uniform(0.0, 0.3)


async def _post_with_retry(
    client: httpx.AsyncClient,
    *,
    headers: dict[str, str],
    json: dict[str, Any],
) -> httpx.Response:
    max_attempts = max(1, settings.email_http_max_attempts)

    for attempt in range(1, max_attempts + 1):
        try:
            response = await client.post(
                SENDGRID_URL,
                headers=headers,
                json=json,
                timeout=settings.email_timeout_seconds,
            )
        except (httpx.TimeoutException, httpx.ConnectError):
            if attempt < max_attempts:
                await anyio.sleep(_backoff_delay(attempt))
                continue
            raise
        if (response.status_code == 429 or response.status_code >= 500) and attempt < max_attempts:
            await anyio.sleep(_backoff_delay(attempt))
            continue
        return response

    raise EmailDeliveryError("email_http_retry_exhausted")  # pragma: no cover
