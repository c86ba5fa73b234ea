import time

import anyio
import pytest

from saheli.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError


def _fail():
    raise RuntimeError("gateway down")


@pytest.mark.anyio
async def test_circuit_opens_after_threshold_and_rejects_fast():
    breaker = CircuitBreaker(name="razorpay-open", failure_threshold=2, recovery_time=0.1, window_seconds=10)

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)

    assert breaker.state == "open"
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(lambda: "ok")

    await anyio.sleep(0.11)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    assert breaker.state == "open"


@pytest.mark.anyio
async def test_half_open_trial_success_closes_circuit():
    breaker = CircuitBreaker(name="razorpay-trial", failure_threshold=1, recovery_time=0.05)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    await anyio.sleep(0.08)

    async def order():
        return {"id": "order_1"}

    assert await breaker.call(order) == {"id": "order_1"}
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_half_open_limits_concurrent_trial_calls():
    breaker = CircuitBreaker(name="email-trial", failure_threshold=1, recovery_time=0.01, half_open_max_calls=1)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    await anyio.sleep(0.02)

    release = anyio.Event()
    outcomes: list[str] = []

    async def slow_trial():
        await release.wait()
        return "trial"

    async def first():
        outcomes.append(await breaker.call(slow_trial))

    async with anyio.create_task_group() as tg:
        tg.start_soon(first)
        await anyio.sleep(0.01)
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(lambda: "second")
        release.set()

    assert outcomes == ["trial"]
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_slow_call_counts_as_failure():
    breaker = CircuitBreaker(
        name="razorpay-timeout",
        failure_threshold=1,
        recovery_time=1.0,
        window_seconds=10,
        timeout_seconds=0.01,
    )

    with pytest.raises(TimeoutError):
        await breaker.call(lambda: anyio.to_thread.run_sync(lambda: time.sleep(0.05)))

    assert breaker.state == "open"


@pytest.mark.anyio
async def test_failures_outside_window_do_not_accumulate():
    breaker = CircuitBreaker(name="email-window", failure_threshold=2, window_seconds=0.05)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    await anyio.sleep(0.08)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    assert breaker.state == "closed"


class Rejected(Exception):
    def __init__(self, status_code):
        super().__init__(f"status_{status_code}")
        self.status_code = status_code


@pytest.mark.anyio
async def test_classifier_keeps_refused_requests_out_of_the_failure_window():
    breaker = CircuitBreaker(
        name="razorpay-classified",
        failure_threshold=1,
        is_failure=lambda exc: getattr(exc, "status_code", 500) >= 500,
    )

    async def refused():
        raise Rejected(400)

    for _ in range(3):
        with pytest.raises(Rejected):
            await breaker.call(refused)
    assert breaker.state == "closed"

    async def outage():
        raise Rejected(503)

    with pytest.raises(Rejected):
        await breaker.call(outage)
    assert breaker.state == "open"


@pytest.mark.anyio
async def test_open_circuit_reports_time_until_retry():
    breaker = CircuitBreaker(name="email-retry-after", failure_threshold=1, recovery_time=5.0)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    with pytest.raises(CircuitBreakerOpenError, match="circuit_open:email-retry-after") as excinfo:
        await breaker.call(lambda: "ok")

    assert 0 < excinfo.value.retry_after <= 5.0
    assert excinfo.value.name == "email-retry-after"
