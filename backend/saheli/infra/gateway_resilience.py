from saheli.settings import settings
from saheli.shared.circuit_breaker import CircuitBreaker


def is_gateway_outage(exc: BaseException) -> bool:
    # A 4xx answer means Razorpay is reachable; only silence and 5xx count.
    status_code = getattr(exc, "status_code", None)
    return status_code is None or status_code >= 500


razorpay_circuit = CircuitBreaker(
    name="razorpay",
    failure_threshold=settings.razorpay_circuit_failure_threshold,
    recovery_time=settings.razorpay_circuit_recovery_seconds,
    window_seconds=settings.razorpay_circuit_window_seconds,
    half_open_max_calls=settings.razorpay_circuit_half_open_max_calls,
    timeout_seconds=settings.razorpay_timeout_seconds + 1,
    is_failure=is_gateway_outage,
)
