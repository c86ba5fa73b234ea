from dataclasses import dataclass
from typing import ClassVar, List

PROBLEM_BASE = "https://saheli.example/problems"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = f"{PROBLEM_BASE}/domain-error"
    errors: List[dict] | None = None

    status_code: ClassVar[int] = 400

    def __str__(self) -> str:
        return self.detail


@dataclass
class ValidationError(DomainError):
    title: str = "Validation Error"
    type: str = f"{PROBLEM_BASE}/validation-error"


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = f"{PROBLEM_BASE}/not-found"

    status_code: ClassVar[int] = 404


@dataclass
class AuthorizationError(DomainError):
    title: str = "Forbidden"
    type: str = f"{PROBLEM_BASE}/forbidden"

    status_code: ClassVar[int] = 403


@dataclass
class ConflictError(DomainError):
    title: str = "Conflict"
    type: str = f"{PROBLEM_BASE}/conflict"

    status_code: ClassVar[int] = 409


@dataclass
class SlotUnavailableError(ConflictError):
    detail: str = "This time slot is no longer available"
    title: str = "Slot Unavailable"
    type: str = f"{PROBLEM_BASE}/slot-unavailable"


@dataclass
class InvalidTransitionError(ConflictError):
    title: str = "Invalid Booking Transition"
    type: str = f"{PROBLEM_BASE}/invalid-transition"

    status_code: ClassVar[int] = 400


@dataclass
class PaymentVerificationError(DomainError):
    title: str = "Payment Verification Failed"
    type: str = f"{PROBLEM_BASE}/payment-verification"


@dataclass
class PaymentWindowExpiredError(PaymentVerificationError):
    detail: str = "Payment window has expired. Please book again."
    title: str = "Payment Window Expired"
    type: str = f"{PROBLEM_BASE}/payment-window-expired"


@dataclass
class ExternalServiceError(DomainError):
    title: str = "Upstream Service Error"
    type: str = f"{PROBLEM_BASE}/external-service"

    status_code: ClassVar[int] = 502


@dataclass
class RateLimitedError(DomainError):
    detail: str = "Too many requests, please try again shortly"
    title: str = "Too Many Requests"
    type: str = f"{PROBLEM_BASE}/rate-limited"

    status_code: ClassVar[int] = 429
