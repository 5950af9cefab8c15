"""
Reconciliation -- Period balance arithmetic, adjustment rules and excise tax.

Responsibility:
    Pure computation behind a reconciliation run: the calculated closing
    balance, the variance against a physical count, the sign rules that
    adjustments must follow, period contiguity and the hard-cider excise
    tax on tax-paid removals.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Called by
    cellar_services/reconciliation_engine.py, which gathers the ledger
    totals and persists the snapshot.

Invariants enforced:
    - calculated_closing = opening + production - tax_paid_removals
                           - distilled_out - other_losses
    - variance = physical_count - calculated_closing
    - A snapshot is balanced when |variance - sum(adjustments)| <= tolerance.
    - Loss reasons carry negative amounts, correction_up positive,
      correction_down negative, measurement_error either sign.  Zero
      amounts are never recorded.
    - Periods run start <= end and each one starts the day after the
      previous finalized period ended.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable

from cellar_kernel.exceptions import InvalidAdjustmentError, ReconciliationPeriodError

DEFAULT_TOLERANCE = Decimal("0.01")

HARD_CIDER_RATE_PER_GALLON = Decimal("0.226")
SMALL_PRODUCER_CREDIT_PER_GALLON = Decimal("0.056")
SMALL_PRODUCER_CREDIT_LIMIT_GALLONS = Decimal("30000")


class SnapshotStatus(str, Enum):
    DRAFT = "draft"
    FINALIZED = "finalized"


class AdjustmentReason(str, Enum):
    EVAPORATION = "evaporation"
    MEASUREMENT_ERROR = "measurement_error"
    SAMPLING = "sampling"
    SPILLAGE = "spillage"
    THEFT = "theft"
    SEDIMENT = "sediment"
    CORRECTION_UP = "correction_up"
    CORRECTION_DOWN = "correction_down"


LOSS_REASONS: frozenset[AdjustmentReason] = frozenset(
    {
        AdjustmentReason.EVAPORATION,
        AdjustmentReason.SAMPLING,
        AdjustmentReason.SPILLAGE,
        AdjustmentReason.THEFT,
        AdjustmentReason.SEDIMENT,
    }
)


@dataclass(frozen=True)
class PeriodTotals:
    """Ledger movement inside one period, already in the regulatory unit."""

    production: Decimal
    tax_paid_removals: Decimal
    distilled_out: Decimal
    other_losses: Decimal


@dataclass(frozen=True)
class BalanceFigures:
    opening_balance: Decimal
    production_volume: Decimal
    tax_paid_removals: Decimal
    distilled_out: Decimal
    other_losses: Decimal
    calculated_closing: Decimal
    physical_count: Decimal
    variance: Decimal

    def as_dict(self) -> dict[str, Decimal]:
        return {
            "opening_balance": self.opening_balance,
            "production_volume": self.production_volume,
            "tax_paid_removals": self.tax_paid_removals,
            "distilled_out": self.distilled_out,
            "other_losses": self.other_losses,
            "calculated_closing": self.calculated_closing,
            "physical_count": self.physical_count,
            "variance": self.variance,
        }


@dataclass(frozen=True)
class TaxSummary:
    taxable_gallons: Decimal
    gross_tax: Decimal
    small_producer_credit: Decimal
    credit_eligible_gallons: Decimal
    net_tax_owed: Decimal
    effective_rate: Decimal


def _round(value: Decimal, places: str) -> Decimal:
    return value.quantize(Decimal(places), rounding=ROUND_HALF_UP)


def compute_balance(
    opening_balance: Decimal,
    totals: PeriodTotals,
    physical_count: Decimal,
) -> BalanceFigures:
    calculated = (
        opening_balance
        + totals.production
        - totals.tax_paid_removals
        - totals.distilled_out
        - totals.other_losses
    )
    return BalanceFigures(
        opening_balance=opening_balance,
        production_volume=totals.production,
        tax_paid_removals=totals.tax_paid_removals,
        distilled_out=totals.distilled_out,
        other_losses=totals.other_losses,
        calculated_closing=calculated,
        physical_count=physical_count,
        variance=physical_count - calculated,
    )


def validate_adjustment(reason: AdjustmentReason | str, amount: Decimal) -> AdjustmentReason:
    """
    Check that ``amount`` carries the sign its reason requires.

    Raises:
        InvalidAdjustmentError: unknown reason, zero amount or wrong sign.
    """
    try:
        code = AdjustmentReason(reason)
    except ValueError:
        raise InvalidAdjustmentError(str(reason), amount, "unknown reason") from None

    if amount == 0:
        raise InvalidAdjustmentError(code.value, amount, "amount must be non-zero")
    if code in LOSS_REASONS and amount > 0:
        raise InvalidAdjustmentError(code.value, amount, "losses must be negative")
    if code is AdjustmentReason.CORRECTION_UP and amount < 0:
        raise InvalidAdjustmentError(code.value, amount, "correction_up must be positive")
    if code is AdjustmentReason.CORRECTION_DOWN and amount > 0:
        raise InvalidAdjustmentError(code.value, amount, "correction_down must be negative")
    return code


def unexplained_variance(variance: Decimal, adjustments: Iterable[Decimal]) -> Decimal:
    return variance - sum(adjustments, Decimal("0"))


def is_balanced(
    variance: Decimal,
    adjustments: Iterable[Decimal],
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> bool:
    return abs(unexplained_variance(variance, adjustments)) <= tolerance


def validate_period(
    period_start: date,
    period_end: date,
    previous_end: date | None,
) -> None:
    """
    Raises:
        ReconciliationPeriodError: inverted period, or a gap / overlap with
            the previous finalized period.
    """
    if period_end < period_start:
        raise ReconciliationPeriodError(
            period_start.isoformat(), period_end.isoformat(), "period ends before it starts"
        )
    if previous_end is None:
        return
    expected_start = previous_end + timedelta(days=1)
    if period_start < expected_start:
        raise ReconciliationPeriodError(
            period_start.isoformat(),
            period_end.isoformat(),
            f"overlaps finalized period ending {previous_end.isoformat()}",
        )
    if period_start > expected_start:
        raise ReconciliationPeriodError(
            period_start.isoformat(),
            period_end.isoformat(),
            f"leaves a gap after finalized period ending {previous_end.isoformat()}",
        )


def hard_cider_tax(
    taxable_gallons: Decimal,
    credit_gallons_used: Decimal = Decimal("0"),
    rate: Decimal = HARD_CIDER_RATE_PER_GALLON,
    credit_rate: Decimal = SMALL_PRODUCER_CREDIT_PER_GALLON,
    credit_limit: Decimal = SMALL_PRODUCER_CREDIT_LIMIT_GALLONS,
) -> TaxSummary:
    """
    Federal excise tax on tax-paid removals with the small producer credit.

    The credit covers the first ``credit_limit`` gallons removed in the
    calendar year; ``credit_gallons_used`` is what earlier periods consumed.
    """
    zero = Decimal("0")
    if taxable_gallons <= 0:
        return TaxSummary(zero, zero, zero, zero, zero, zero)

    gross = taxable_gallons * rate
    remaining = max(zero, credit_limit - credit_gallons_used)
    eligible = min(taxable_gallons, remaining)
    credit = eligible * credit_rate
    net = gross - credit
    return TaxSummary(
        taxable_gallons=taxable_gallons,
        gross_tax=_round(gross, "0.01"),
        small_producer_credit=_round(credit, "0.01"),
        credit_eligible_gallons=eligible,
        net_tax_owed=_round(net, "0.01"),
        effective_rate=_round(net / taxable_gallons, "0.0001"),
    )
