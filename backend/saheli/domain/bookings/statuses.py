from enum import Enum

from saheli.domain.errors import InvalidTransitionError


class BookingStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    ADVANCE_PAID = "AdvancePaid"
    FULLY_PAID = "FullyPaid"
    REFUNDED = "Refunded"


class Actor(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    SYSTEM = "system"


BOOKING_TRANSITIONS: dict[str, set[str]] = {
    BookingStatus.PENDING.value: {BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value},
    BookingStatus.CONFIRMED.value: {BookingStatus.IN_PROGRESS.value, BookingStatus.CANCELLED.value},
    BookingStatus.IN_PROGRESS.value: {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value},
    BookingStatus.COMPLETED.value: set(),
    BookingStatus.CANCELLED.value: set(),
}

# Statuses that hold a slot against new reservations (Pending only until it expires).
ACTIVE_SLOT_STATUSES = {BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value}
CANCELLABLE_STATUSES = {
    status for status, targets in BOOKING_TRANSITIONS.items() if BookingStatus.CANCELLED.value in targets
}
PAID_STATUSES = {PaymentStatus.ADVANCE_PAID.value, PaymentStatus.FULLY_PAID.value}


def _value(status: str | Enum) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def can_transition(current: str | Enum, target: str | Enum) -> bool:
    return _value(target) in BOOKING_TRANSITIONS.get(_value(current), set())


def assert_valid_booking_transition(current: str | Enum, target: str | Enum) -> None:
    current_value = _value(current)
    target_value = _value(target)
    allowed = BOOKING_TRANSITIONS.get(current_value)
    if allowed is None:
        raise InvalidTransitionError(f"Unknown booking status: {current_value}")
    if not allowed:
        raise InvalidTransitionError(f"Booking is already {current_value}")
    if target_value not in allowed:
        raise InvalidTransitionError(f"Cannot transition booking from {current_value} to {target_value}")
