import json
import logging
from types import SimpleNamespace

import httpx
import pytest

from saheli.infra.email import (
    SENDGRID_URL,
    EmailAdapter,
    EmailDeliveryError,
    NoopEmailAdapter,
    booking_email_headers,
    resolve_email_adapter,
)
from saheli.infra.logging import RedactingJsonFormatter, clear_log_context, redact_pii, update_log_context
from saheli.settings import settings


@pytest.fixture()
def sendgrid_settings(monkeypatch):
    monkeypatch.setattr(settings, "email_mode", "sendgrid")
    monkeypatch.setattr(settings, "sendgrid_api_key", "sg-test")
    monkeypatch.setattr(settings, "email_from", "bookings@saheli.example")
    monkeypatch.setattr(settings, "email_http_max_attempts", 2)
    monkeypatch.setattr(settings, "email_http_backoff_seconds", 0.0)
    monkeypatch.setattr(settings, "email_http_backoff_max_seconds", 0.0)


@pytest.mark.anyio
async def test_sendgrid_delivery_retries_transient_status(sendgrid_settings):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(503 if len(requests) == 1 else 202)

    adapter = EmailAdapter(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    sent = await adapter.send_email(
        "priya@example.com",
        "Booking confirmed",
        "See you on Wednesday",
        headers=booking_email_headers("booking_confirmed", "b-42"),
    )

    assert sent is True
    assert len(requests) == 2
    assert str(requests[-1].url) == SENDGRID_URL
    assert requests[-1].headers["Authorization"] == "Bearer sg-test"
    payload = json.loads(requests[-1].content)
    assert payload["personalizations"] == [{"to": [{"email": "priya@example.com"}], "custom_args": {"booking_id": "b-42"}}]
    assert payload["categories"] == ["booking", "booking_confirmed"]
    assert "headers" not in payload
    assert payload["from"] == {"email": "bookings@saheli.example", "name": "Saheli"}


@pytest.mark.anyio
async def test_sendgrid_client_error_propagates(sendgrid_settings):
    adapter = EmailAdapter(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401)))
    )

    with pytest.raises(RuntimeError, match="sendgrid_status_401"):
        await adapter.send_email("priya@example.com", "Booking confirmed", "body")


@pytest.mark.anyio
async def test_blank_recipient_is_skipped(sendgrid_settings):
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("no request expected")

    adapter = EmailAdapter(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    assert await adapter.send_email("", "Booking confirmed", "body") is False


@pytest.mark.anyio
async def test_rejected_payloads_do_not_open_the_email_circuit(sendgrid_settings, monkeypatch):
    monkeypatch.setattr(settings, "email_circuit_failure_threshold", 1)
    statuses = iter([400, 400, 503, 503])
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(next(statuses))

    monkeypatch.setattr(settings, "email_http_max_attempts", 1)
    adapter = EmailAdapter(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    headers = booking_email_headers("booking_cancelled", "b-7")

    for _ in range(2):
        with pytest.raises(EmailDeliveryError) as excinfo:
            await adapter.send_email("priya@example.com", "Booking cancelled", "body", headers=headers)
        assert excinfo.value.status_code == 400

    with pytest.raises(EmailDeliveryError, match="sendgrid_status_503"):
        await adapter.send_email("priya@example.com", "Booking cancelled", "body", headers=headers)

    assert await adapter.send_email("priya@example.com", "Booking cancelled", "body", headers=headers) is False
    assert calls == 3


def test_resolve_email_adapter_is_noop_when_off_or_testing():
    assert isinstance(resolve_email_adapter(SimpleNamespace(email_mode="off", testing=False)), NoopEmailAdapter)
    assert isinstance(resolve_email_adapter(SimpleNamespace(email_mode="smtp", testing=True)), NoopEmailAdapter)
    assert isinstance(resolve_email_adapter(SimpleNamespace(email_mode="smtp", testing=False)), EmailAdapter)


def test_redact_pii_masks_contact_details_and_tokens():
    text = "mail priya@example.com call +91 98765 43210 with Bearer abc.def and ?signature=deadbeef"

    redacted = redact_pii(text)

    assert "priya@example.com" not in redacted
    assert "98765" not in redacted
    assert "abc.def" not in redacted
    assert "deadbeef" not in redacted


def test_json_formatter_merges_context_and_redacts_keys():
    update_log_context(request_id="req-1", booking_id="b-1")
    try:
        record = logging.LogRecord("saheli.test", logging.INFO, __file__, 1, "booking_confirmed", (), None)
        record.extra = {"customer_email": "priya@example.com", "amount": 300}
        payload = json.loads(RedactingJsonFormatter().format(record))
    finally:
        clear_log_context()

    assert payload["message"] == "booking_confirmed"
    assert payload["request_id"] == "req-1"
    assert payload["booking_id"] == "b-1"
    assert payload["customer_email"] == "[REDACTED]"
    assert payload["amount"] == 300
