from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from saheli.infra.email import EmailAdapter, NoopEmailAdapter, resolve_email_adapter
from saheli.infra.metrics import Metrics, configure_metrics
from saheli.infra.rate_limit import RateLimiter, create_rate_limiter
from saheli.infra.razorpay_client import RazorpayClient


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    email_adapter: EmailAdapter | NoopEmailAdapter
    razorpay_client: RazorpayClient
    rate_limiter: RateLimiter
    booking_rate_limiter: RateLimiter
    metrics: Metrics


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    return AppServices(
        email_adapter=resolve_email_adapter(app_settings),
        razorpay_client=RazorpayClient(
            key_id=app_settings.razorpay_key_id,
            key_secret=app_settings.razorpay_key_secret,
            webhook_secret=app_settings.razorpay_webhook_secret,
            api_base=app_settings.razorpay_api_base,
        ),
        rate_limiter=create_rate_limiter(app_settings),
        booking_rate_limiter=create_rate_limiter(
            app_settings, requests_per_window=app_settings.booking_rate_limit_per_minute
        ),
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
