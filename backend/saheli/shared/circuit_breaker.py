from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Generic, TypeVar

from saheli.infra.metrics import metrics


logger = logging.getLogger("saheli.circuit")

T = TypeVar("T")

FailureClassifier = Callable[[BaseException], bool]


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(RuntimeError):
    def __init__(self, name: str, *, retry_after: float = 0.0, half_open: bool = False) -> None:
        reason = "circuit_half_open_limit" if half_open else "circuit_open"
        super().__init__(f"{reason}:{name}")
        self.name = name
        self.retry_after = retry_after


def _always_failure(exc: BaseException) -> bool:
    return True


class CircuitBreaker(Generic[T]):
    """Failure-window breaker guarding calls to the payment gateway and mail relay.

    Opens after ``failure_threshold`` counted failures inside ``window_seconds``
    and rejects calls for ``recovery_time`` seconds. After that,
    ``half_open_max_calls`` trial calls go through; one success closes the
    circuit, one counted failure reopens it.

    ``is_failure`` decides which exceptions count. A request the upstream
    answered but refused (bad amount, unknown payment id) still shows the
    upstream is up, so it is re-raised without touching the failure window.
    Timeouts always count.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
        is_failure: FailureClassifier | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self.is_failure = is_failure or _always_failure
        self._state = CircuitState.CLOSED
        self._opened_at: float = 0.0
        self._failures: Deque[float] = deque()
        self._half_open_calls: int = 0
        self._lock = asyncio.Lock()
        metrics.record_circuit_state(self.name, self._state.value)

    async def call(
        self,
        fn: Callable[..., T | Awaitable[T]],
        *args,
        timeout_seconds: float | None = None,
        **kwargs,
    ) -> T:
        await self._ensure_available()
        timeout = self.timeout_seconds if timeout_seconds is None else max(0.01, timeout_seconds)
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                if timeout is None:
                    result = await result
                else:
                    result = await asyncio.wait_for(result, timeout=timeout)
        except asyncio.TimeoutError:
            await self._record_failure("timeout")
            raise
        except Exception as exc:  # noqa: BLE001
            if not self.is_failure(exc):
                await self._record_success()
                raise
            await self._record_failure(type(exc).__name__)
            raise
        await self._record_success()
        return result  # type: ignore[return-value]

    async def _ensure_available(self) -> None:
        async with self._lock:
            now = time.monotonic()
            if self._state is CircuitState.OPEN:
                remaining = self.recovery_time - (now - self._opened_at)
                if remaining > 0:
                    raise CircuitBreakerOpenError(self.name, retry_after=remaining)
                self._transition(CircuitState.HALF_OPEN)
            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(self.name, half_open=True)
                self._half_open_calls += 1

    async def _record_failure(self, error: str) -> None:
        async with self._lock:
            now = time.monotonic()
            self._failures.append(now)
            window_start = now - self.window_seconds
            while self._failures and self._failures[0] < window_start:
                self._failures.popleft()
            logger.warning(
                "circuit_failure",
                extra={"extra": {"name": self.name, "state": self._state.value, "error": error}},
            )
            if self._state is CircuitState.HALF_OPEN or len(self._failures) >= self.failure_threshold:
                self._opened_at = now
                self._transition(CircuitState.OPEN)

    async def _record_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            self._transition(CircuitState.CLOSED)

    def _transition(self, state: CircuitState) -> None:
        self._half_open_calls = 0
        if state is self._state:
            return
        self._state = state
        metrics.record_circuit_state(self.name, state.value)
        if state is CircuitState.OPEN:
            logger.warning("circuit_opened", extra={"extra": {"name": self.name}})
        elif state is CircuitState.CLOSED:
            logger.info("circuit_closed", extra={"extra": {"name": self.name}})

    @property
    def state(self) -> str:
        return self._state.value
