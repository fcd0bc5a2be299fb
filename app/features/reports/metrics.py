"""Derived metric calculator.

Rates are computed from raw, additive counts at every node of a report:

- engage_rate = engaged / visitors * 100   (2 dp, 0 when visitors == 0)
- sales_rate  = sales / visitors * 100     (2 dp, 0 when visitors == 0)
- aov         = revenue / sales            (2 dp, 0 when sales == 0)
- epc         = revenue / visitors         (4 dp, 0 when visitors == 0)
- fraud       = flagged / visitors * 100   (2 dp, leaves only; 0 elsewhere)

CRITICAL: rounding is half-up on Decimals and every zero denominator yields
exactly 0, never NaN, infinity or None.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: int | float | Decimal | str | None) -> Decimal:
    """Coerce a raw metric to Decimal (None and NaN become 0)."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    result = Decimal(str(value))
    return result if result.is_finite() else ZERO


def round_half_up(value: Decimal, places: int) -> Decimal:
    """Round to ``places`` decimals, halves away from zero."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def ratio(
    numerator: int | Decimal,
    denominator: int | Decimal,
    places: int,
    scale: Decimal = Decimal(1),
) -> Decimal:
    """``numerator / denominator * scale`` rounded, or 0 when denominator <= 0."""
    if denominator <= 0:
        return round_half_up(ZERO, places)
    return round_half_up(Decimal(numerator) / Decimal(denominator) * scale, places)


@dataclass(frozen=True)
class DerivedMetrics:
    """Non-additive rates of one node."""

    engage_rate: Decimal
    sales_rate: Decimal
    aov: Decimal
    epc: Decimal
    fraud: Decimal

    @classmethod
    def zero(cls) -> DerivedMetrics:
        """All-zero metrics (used before a node is finalized)."""
        return cls(
            engage_rate=ZERO,
            sales_rate=ZERO,
            aov=ZERO,
            epc=ZERO,
            fraud=ZERO,
        )


def compute_derived(
    visitors: int,
    engaged: int,
    sales: int,
    revenue: Decimal,
    flagged: int | None = None,
) -> DerivedMetrics:
    """Compute the derived metrics of one node.

    Args:
        visitors: Distinct visitors.
        engaged: Visitors with a second action.
        sales: Actions with revenue.
        revenue: Revenue sum.
        flagged: Visitors with a fraud signal; None at intermediate levels,
            which report ``fraud = 0``.

    Returns:
        Derived metrics with the documented precision.
    """
    return DerivedMetrics(
        engage_rate=ratio(engaged, visitors, 2, HUNDRED),
        sales_rate=ratio(sales, visitors, 2, HUNDRED),
        aov=ratio(revenue, sales, 2),
        epc=ratio(revenue, visitors, 4),
        fraud=(
            ratio(flagged, visitors, 2, HUNDRED)
            if flagged is not None
            else round_half_up(ZERO, 2)
        ),
    )
