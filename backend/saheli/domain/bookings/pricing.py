"""Booking price calculation.

Pure functions only: amounts are whole rupees, rounding is half-up so that
``advance_paid + remaining_amount`` always reconstructs ``total_amount``.
"""

import re
from dataclasses import asdict, dataclass
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Sequence
from zoneinfo import ZoneInfo

from saheli.domain.catalog.db_models import (
    PRICING_FIXED,
    PRICING_HOURLY,
    PRICING_PACKAGE,
    TRAVEL_MODES,
)
from saheli.domain.errors import ValidationError

HHMM_RE = re.compile(r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$")
WEEKEND_DAYS = {5, 6}


@dataclass(frozen=True)
class PricingRules:
    pricing_type: str
    base_price: int = 0
    packages: Sequence[dict[str, Any]] = ()
    travel_fee: int = 0
    weekend_premium: int = 0
    advance_percentage: int = 20
    mode: str = "Online"

    @classmethod
    def from_service(cls, service: Any) -> "PricingRules":
        return cls(
            pricing_type=service.pricing_type,
            base_price=service.base_price or 0,
            packages=tuple(service.packages or ()),
            travel_fee=service.travel_fee or 0,
            weekend_premium=service.weekend_premium or 0,
            advance_percentage=service.advance_percentage or 0,
            mode=service.mode,
        )


@dataclass(frozen=True)
class PriceBreakdown:
    base_amount: int
    weekend_premium: int
    travel_fee: int
    total_amount: int
    advance_percentage: int
    advance_paid: int
    remaining_amount: int
    is_weekend: bool
    duration_hours: float
    selected_package: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def round_half_up(value: Decimal | float | int) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_hhmm(value: str) -> time:
    if not isinstance(value, str) or not HHMM_RE.match(value):
        raise ValidationError(f"Invalid time format: {value!r}, expected HH:MM")
    hours, minutes = value.split(":")
    return time(hour=int(hours), minute=int(minutes))


def minutes_of_day(value: str) -> int:
    parsed = parse_hhmm(value)
    return parsed.hour * 60 + parsed.minute


def calculate_duration_hours(start_time: str, end_time: str) -> float:
    duration_minutes = minutes_of_day(end_time) - minutes_of_day(start_time)
    if duration_minutes <= 0:
        raise ValidationError("End time must be after start time")
    return duration_minutes / 60


def is_weekend(target: date) -> bool:
    return target.weekday() in WEEKEND_DAYS


def combine_date_time(target: date, hhmm: str, tz: ZoneInfo) -> datetime:
    return datetime.combine(target, parse_hhmm(hhmm), tzinfo=tz)


def to_paise(amount: int | float) -> int:
    return round_half_up(Decimal(str(amount)) * 100)


def _percent_of(amount: int, percent: int | float) -> int:
    return round_half_up(Decimal(amount) * Decimal(str(percent)) / Decimal(100))


def resolve_package(packages: Sequence[dict[str, Any]], index: int | None) -> dict[str, Any]:
    if index is None or index < 0 or index >= len(packages):
        raise ValidationError("Please select a valid package")
    package = packages[index]
    return {
        "name": package.get("name"),
        "price": package.get("price", 0),
        "description": package.get("description"),
        "duration": package.get("duration"),
    }


def calculate_booking_price(
    rules: PricingRules,
    booking_date: date,
    start_time: str,
    end_time: str,
    selected_package_index: int | None = None,
) -> PriceBreakdown:
    duration_hours = calculate_duration_hours(start_time, end_time)
    selected_package: dict[str, Any] | None = None

    if rules.pricing_type == PRICING_HOURLY:
        base_amount = round_half_up(Decimal(rules.base_price) * Decimal(str(duration_hours)))
    elif rules.pricing_type == PRICING_FIXED:
        base_amount = int(rules.base_price)
    elif rules.pricing_type == PRICING_PACKAGE:
        selected_package = resolve_package(rules.packages, selected_package_index)
        base_amount = int(selected_package["price"] or 0)
    else:
        raise ValidationError(f"Unsupported pricing type: {rules.pricing_type}")

    weekend = is_weekend(booking_date)
    weekend_premium = _percent_of(base_amount, rules.weekend_premium) if weekend else 0
    travel_fee = int(rules.travel_fee) if rules.mode in TRAVEL_MODES else 0
    total_amount = base_amount + weekend_premium + travel_fee
    advance_paid = _percent_of(total_amount, rules.advance_percentage)

    return PriceBreakdown(
        base_amount=base_amount,
        weekend_premium=weekend_premium,
        travel_fee=travel_fee,
        total_amount=total_amount,
        advance_percentage=int(rules.advance_percentage),
        advance_paid=advance_paid,
        remaining_amount=total_amount - advance_paid,
        is_weekend=weekend,
        duration_hours=duration_hours,
        selected_package=selected_package,
    )
