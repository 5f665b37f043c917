"""Platform/organizer fee split arithmetic.

All amounts are integer cents. Major-unit values (dollars) enter through
``to_cents`` and leave through ``format_cents``; nothing in between uses
floats. The percentage fee is rounded half-up exactly once per call, and
that single value is both the fee reported to the provider and the fee
line item charged to a sponsor who covers fees.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")
WHOLE = Decimal("1")

Number = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of a fee split. All values in cents."""

    subtotal_cents: int
    application_fee_cents: int
    organizer_net_cents: int
    sponsor_total_cents: int
    # Amount charged as a separate "fee coverage" line item (0 unless covered)
    fee_line_item_cents: int = 0


def to_cents(amount: Number) -> int:
    """
    Convert a major-unit amount to integer cents, rounding half-up.

    Floats go through ``str`` first so 19.99 stays 1999 instead of
    picking up binary representation error.
    """
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return int((value * 100).quantize(WHOLE, rounding=ROUND_HALF_UP))


def format_cents(cents: int) -> str:
    """Format cents as a plain decimal string, e.g. 1252 -> '12.52'."""
    return str((Decimal(cents) / 100).quantize(CENT))


def percent_of(amount_cents: int, percent: Number) -> int:
    """Round-half-up ``amount_cents * percent / 100``."""
    pct = percent if isinstance(percent, Decimal) else Decimal(str(percent))
    return int((Decimal(amount_cents) * pct / 100).quantize(WHOLE, rounding=ROUND_HALF_UP))


def compute_fees(
    subtotal_cents: int,
    *,
    fees_waived: bool,
    cover_fees: bool,
    platform_fee_percent: Number,
) -> FeeBreakdown:
    """
    Split a subtotal between the platform and the organizer.

    Args:
        subtotal_cents: Sum of item prices, in cents
        fees_waived: Organizer is exempt from the platform fee
        cover_fees: Sponsor pays the fee on top instead of it being
            deducted from the organizer's proceeds
        platform_fee_percent: Platform fee percentage, e.g. 5 for 5%

    Returns:
        FeeBreakdown. A waiver wins over cover_fees; a zero subtotal
        yields an all-zero breakdown.
    """
    if fees_waived:
        return FeeBreakdown(
            subtotal_cents=subtotal_cents,
            application_fee_cents=0,
            organizer_net_cents=subtotal_cents,
            sponsor_total_cents=subtotal_cents,
        )

    fee = percent_of(subtotal_cents, platform_fee_percent)

    if cover_fees:
        return FeeBreakdown(
            subtotal_cents=subtotal_cents,
            application_fee_cents=fee,
            organizer_net_cents=subtotal_cents,
            sponsor_total_cents=subtotal_cents + fee,
            fee_line_item_cents=fee,
        )

    return FeeBreakdown(
        subtotal_cents=subtotal_cents,
        application_fee_cents=fee,
        organizer_net_cents=subtotal_cents - fee,
        sponsor_total_cents=subtotal_cents,
    )
