"""Refund policy and issuance.

Percentages come from the service's free-text cancellation policy when a known
phrasing is recognised, otherwise from ``DEFAULT_REFUND_TIERS``. Amounts are
always a share of the advance; the remaining balance is never refunded here.
"""

import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from saheli.domain.bookings.db_models import Booking
from saheli.domain.bookings.pricing import round_half_up, to_paise
from saheli.domain.bookings.statuses import PAID_STATUSES, PaymentStatus
from saheli.domain.payments.db_models import (
    PAYMENT_TYPE_ADVANCE,
    TRANSACTION_REFUNDED,
    PaymentTransaction,
)
from saheli.infra.metrics import metrics

logger = logging.getLogger(__name__)

FULL_REFUND_RE = re.compile(r"(full|100%?)\s*refund.*?(\d+)\s*hours?")
HALF_REFUND_RE = re.compile(r"50%?\s*.*?(\d+)\s*hours?")
NON_REFUNDABLE_MARKERS = ("no refund", "non-refundable")

# (minimum hours before start, percentage of advance)
DEFAULT_REFUND_TIERS = ((48, 100), (24, 75), (12, 50), (6, 25))

REFUND_PROCESSED = "processed"
REFUND_FAILED = "failed"
REFUND_SKIPPED = "skipped"


class RefundGateway(Protocol):
    async def refund_payment(
        self, *, payment_id: str, amount_paise: int, notes: dict[str, str] | None = None
    ) -> dict[str, Any]: ...


@dataclass
class RefundOutcome:
    status: str
    amount: int = 0
    percentage: int | None = None
    refund_id: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _default_tier(hours_until_start: float) -> int:
    if hours_until_start <= 0:
        return 0
    for min_hours, percentage in DEFAULT_REFUND_TIERS:
        if hours_until_start >= min_hours:
            return percentage
    return 0


def calculate_refund_percentage(policy_text: str | None, hours_until_start: float) -> int:
    if policy_text:
        policy = policy_text.lower()
        if any(marker in policy for marker in NON_REFUNDABLE_MARKERS):
            return 0
        full_match = FULL_REFUND_RE.search(policy)
        if full_match and hours_until_start >= int(full_match.group(2)):
            return 100
        half_match = HALF_REFUND_RE.search(policy)
        if half_match and hours_until_start >= int(half_match.group(1)):
            return 50
    return _default_tier(hours_until_start)


def calculate_refund_amount(advance_paid: int, already_refunded: int, percentage: int | float) -> int:
    if advance_paid <= 0 or percentage <= 0:
        return 0
    amount = round_half_up(Decimal(advance_paid) * Decimal(str(percentage)) / Decimal(100))
    return max(0, min(amount, advance_paid - (already_refunded or 0)))


def hours_until_start(booking: Booking, now: datetime | None = None) -> float:
    now = now or datetime.now(tz=timezone.utc)
    return (booking.scheduled_start - now).total_seconds() / 3600


async def _apply_refund(
    session: AsyncSession,
    booking_id: str,
    amount: int,
    *,
    percentage: int | None,
    reason: str,
    gateway: RefundGateway,
    initiator: str,
    now: datetime,
) -> RefundOutcome:
    booking = await session.scalar(
        select(Booking)
        .where(Booking.booking_id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if booking is None:
        return RefundOutcome(status=REFUND_SKIPPED, percentage=percentage, error="booking_not_found")

    capped = min(amount, booking.refundable_amount)
    if capped <= 0 or not booking.gateway_payment_id or booking.payment_status not in PAID_STATUSES:
        return RefundOutcome(status=REFUND_SKIPPED, percentage=percentage)

    try:
        refund = await gateway.refund_payment(
            payment_id=booking.gateway_payment_id,
            amount_paise=to_paise(capped),
            notes={"booking_id": booking.booking_id, "reason": reason},
        )
    except Exception as exc:  # noqa: BLE001
        metrics.record_refund(initiator, REFUND_FAILED)
        logger.warning(
            "refund_failed",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "amount": capped,
                    "initiator": initiator,
                    "reason": type(exc).__name__,
                }
            },
        )
        return RefundOutcome(
            status=REFUND_FAILED,
            amount=capped,
            percentage=percentage,
            error=str(exc) or type(exc).__name__,
        )

    refund_id = refund.get("id")
    booking.refund_amount = (booking.refund_amount or 0) + capped
    booking.refund_percentage = percentage
    booking.refund_reason = reason
    booking.refunded_at = now
    booking.refund_id = refund_id
    if booking.refund_amount >= booking.advance_paid:
        booking.payment_status = PaymentStatus.REFUNDED.value

    transaction = await session.scalar(
        select(PaymentTransaction).where(
            PaymentTransaction.booking_id == booking.booking_id,
            PaymentTransaction.payment_type == PAYMENT_TYPE_ADVANCE,
        )
    )
    if transaction is not None:
        transaction.refund_id = refund_id
        transaction.refund_amount = (transaction.refund_amount or 0) + capped
        transaction.refunded_at = now
        if transaction.refund_amount >= transaction.amount:
            transaction.status = TRANSACTION_REFUNDED
    return RefundOutcome(status=REFUND_PROCESSED, amount=capped, percentage=percentage, refund_id=refund_id)


async def issue_refund(
    session: AsyncSession,
    booking_id: str,
    amount: int,
    *,
    percentage: int | None,
    reason: str,
    gateway: RefundGateway,
    initiator: str,
    now: datetime | None = None,
) -> RefundOutcome:
    """Refund ``amount`` rupees of the advance and record it on the booking.

    The booking row stays locked across the gateway call so two refunds for
    the same booking cannot both pass the cap check. The lock is released by
    the commit on every outcome. Gateway failures are logged and returned as
    a ``failed`` outcome; the caller decides whether that is fatal.
    """
    now = now or datetime.now(tz=timezone.utc)
    transaction_ctx = session.begin_nested() if session.in_transaction() else session.begin()
    async with transaction_ctx:
        outcome = await _apply_refund(
            session,
            booking_id,
            amount,
            percentage=percentage,
            reason=reason,
            gateway=gateway,
            initiator=initiator,
            now=now,
        )
    await session.commit()

    if outcome.status == REFUND_PROCESSED:
        metrics.record_refund(initiator, REFUND_PROCESSED)
        logger.info(
            "refund_issued",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "amount": outcome.amount,
                    "percentage": percentage,
                    "refund_id": outcome.refund_id,
                    "initiator": initiator,
                }
            },
        )
    return outcome
