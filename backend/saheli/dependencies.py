import logging

from fastapi import Request

from saheli.domain.errors import RateLimitedError
from saheli.infra.db import get_db_session
from saheli.infra.email import resolve_app_email_adapter
from saheli.infra.metrics import metrics
from saheli.infra.rate_limit import limit_key
from saheli.infra.razorpay_client import RazorpayClient, resolve_client

__all__ = ["enforce_booking_rate_limit", "get_db_session", "get_email_adapter", "get_gateway"]

logger = logging.getLogger(__name__)


def get_gateway(request: Request) -> RazorpayClient:
    return resolve_client(request.app.state)


def get_email_adapter(request: Request):
    return resolve_app_email_adapter(request)


async def enforce_booking_rate_limit(request: Request, scope: str, subject: str) -> None:
    limiter = getattr(request.app.state, "booking_rate_limiter", None)
    if limiter is None:
        return
    if not await limiter.allow(limit_key(scope, subject)):
        metrics.record_booking("rate_limited")
        logger.warning("rate_limit_blocked", extra={"extra": {"scope": scope, "user_id": subject}})
        raise RateLimitedError()
