import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.bookings = None
            self.payments = None
            self.refunds = None
            self.webhook_events = None
            self.sweep_items = None
            self.email_adapter_outcomes = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_errors = None
            self.circuit_state = None
            return

        self.bookings = Counter(
            "bookings_total",
            "Booking lifecycle events.",
            ["action"],
            registry=self.registry,
        )
        self.payments = Counter(
            "booking_payments_total",
            "Payment confirmations by leg and outcome.",
            ["leg", "outcome"],
            registry=self.registry,
        )
        self.refunds = Counter(
            "booking_refunds_total",
            "Refund issuance outcomes.",
            ["initiator", "outcome"],
            registry=self.registry,
        )
        self.webhook_events = Counter(
            "gateway_webhook_events_total",
            "Gateway webhook deliveries by result.",
            ["result"],
            registry=self.registry,
        )
        self.sweep_items = Counter(
            "lifecycle_sweep_items_total",
            "Lifecycle sweep item outcomes per sweep.",
            ["sweep", "outcome"],
            registry=self.registry,
        )
        self.email_adapter_outcomes = Counter(
            "email_adapter_outcomes_total",
            "Email adapter send outcomes per booking email type.",
            ["email_type", "status"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_last_heartbeat_timestamp",
            "Unix timestamp for the latest job heartbeat.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp for the latest successful job loop.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job execution errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_booking(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.bookings is None:
            return
        if count <= 0:
            return
        self.bookings.labels(action=action).inc(count)

    def record_payment(self, leg: str, outcome: str) -> None:
        if not self.enabled or self.payments is None:
            return
        self.payments.labels(leg=leg or "unknown", outcome=outcome or "unknown").inc()

    def record_refund(self, initiator: str, outcome: str) -> None:
        if not self.enabled or self.refunds is None:
            return
        self.refunds.labels(initiator=initiator or "unknown", outcome=outcome or "unknown").inc()

    def record_webhook(self, result: str) -> None:
        if not self.enabled or self.webhook_events is None:
            return
        self.webhook_events.labels(result=result or "unknown").inc()

    def record_sweep_item(self, sweep: str, outcome: str, count: int = 1) -> None:
        if not self.enabled or self.sweep_items is None:
            return
        if count <= 0:
            return
        self.sweep_items.labels(sweep=sweep, outcome=outcome).inc(count)

    def record_email_adapter(self, status: str, email_type: str | None = None) -> None:
        if not self.enabled or self.email_adapter_outcomes is None:
            return
        self.email_adapter_outcomes.labels(email_type=email_type or "other", status=status or "unknown").inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            max(0.0, float(duration_seconds))
        )

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None:
            return
        self.job_heartbeat.labels(job=job).set(timestamp if timestamp is not None else time.time())

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        self.job_last_success.labels(job=job).set(timestamp if timestamp is not None else time.time())

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        self.job_errors.labels(job=job, reason=reason or "unknown").inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
