# backend/marketplace/core/ledger.py
"""
Ledger primitives for booking payments.

Pure functions only: no database access, no clock reads. Callers pass
``now`` explicitly so scheduler jobs can be replayed deterministically.

Money is represented as ``Decimal`` with two fractional digits. The
gateway boundary converts to integer minor units (centavos) through
``to_minor_units``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Tuple, Union

CENTS = Decimal("0.01")

FULL_REFUND_MIN_HOURS = 24
PARTIAL_REFUND_MIN_HOURS = 2

FULL_REFUND = Decimal("1.0")
PARTIAL_REFUND = Decimal("0.5")
NO_REFUND = Decimal("0.0")

DEFAULT_ESCROW_HOLD_DAYS = 15

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Coerce ``value`` to a two-digit Decimal using half-up rounding."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_fees(amount: Number, fee_rate: Number) -> Tuple[Decimal, Decimal]:
    """
    Split a booking amount into platform fee and provider net amount.

    The fee is rounded half-up to cents and the net amount is derived by
    subtraction, so ``service_fee + net_amount == amount`` holds exactly.

    Args:
        amount: Gross booking amount
        fee_rate: Platform fee rate in [0, 1)

    Returns:
        Tuple of (service_fee, net_amount)
    """
    gross = to_money(amount)
    rate = Decimal(str(fee_rate)) if isinstance(fee_rate, float) else Decimal(fee_rate)
    if gross < 0:
        raise ValueError("amount must not be negative")
    if rate < 0 or rate >= 1:
        raise ValueError("fee_rate must be in [0, 1)")

    service_fee = (gross * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
    net_amount = gross - service_fee
    return service_fee, net_amount


def compute_escrow_release_date(
    completed_at: datetime, hold_days: int = DEFAULT_ESCROW_HOLD_DAYS
) -> datetime:
    """Return the earliest moment the provider's net amount may be released."""
    return completed_at + timedelta(days=hold_days)


def hours_until(start: datetime, now: datetime) -> float:
    """Hours from ``now`` until ``start``; negative once ``start`` has passed."""
    return (start - now).total_seconds() / 3600


def compute_refund_percentage(hours_until_service_start: float) -> Decimal:
    """
    Refund fraction for a cancellation, by notice given.

    24 hours or more -> 100%, 2 hours or more -> 50%, otherwise nothing.
    """
    if hours_until_service_start >= FULL_REFUND_MIN_HOURS:
        return FULL_REFUND
    if hours_until_service_start >= PARTIAL_REFUND_MIN_HOURS:
        return PARTIAL_REFUND
    return NO_REFUND


def compute_refund_amount(amount: Number, fraction: Number) -> Decimal:
    """Refund amount for ``fraction`` of ``amount``, rounded half-up to cents."""
    fraction_dec = Decimal(str(fraction)) if isinstance(fraction, float) else Decimal(fraction)
    if fraction_dec < 0 or fraction_dec > 1:
        raise ValueError("fraction must be in [0, 1]")
    return (to_money(amount) * fraction_dec).quantize(CENTS, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Number) -> int:
    """Convert a currency amount to integer centavos."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(minor: int) -> Decimal:
    """Convert integer centavos back to a currency amount."""
    return (Decimal(minor) / 100).quantize(CENTS)
