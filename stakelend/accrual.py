"""
accrual.py - Lazy interest and penalty accrual.

Nothing accrues in the background. Every time a loan is touched the pool
projects what the loan owes as of `now`:

    interest += principal * effective_rate(now) * dt / (10000 * seconds_per_year)
    penalty  += principal * penalty_ratio_per_day * overdue_seconds / 86400

The effective rate is recomputed from the remaining lock time at `now`, so
it drifts as the unlock approaches. Penalty only starts once now is past
end_time + penalty_grace_period, and the first accrual covers the whole
overdue interval measured from end_time.

Queries use the projection as-is. Mutating operations commit it with
commit_accrual() before settling.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Optional, TYPE_CHECKING

from .core import BPS_SCALE, SECONDS_PER_DAY
from .rates import RateInputs, calculate_borrow_rate

if TYPE_CHECKING:
    from .units.loan import Loan


@dataclass(frozen=True, slots=True)
class AccrualProjection:
    """What a loan owes at `as_of`, and what the projection added."""
    as_of: datetime
    borrowed_amount: Decimal
    accrued_interest: Decimal
    accrued_penalty: Decimal
    interest_delta: Decimal
    penalty_delta: Decimal
    effective_rate: Decimal
    last_interest_accrual_time: datetime
    last_penalty_accrual_time: datetime

    @property
    def total_debt(self) -> Decimal:
        return self.borrowed_amount + self.accrued_interest + self.accrued_penalty


def _quantize_down(value: Decimal, decimal_places: Optional[int]) -> Decimal:
    if decimal_places is None:
        return value
    return value.quantize(Decimal(10) ** -decimal_places, rounding=ROUND_DOWN)


def remaining_lock_seconds(end_time: datetime, now: datetime) -> int:
    """Whole seconds until end_time, never negative."""
    return max(0, int((end_time - now).total_seconds()))


def calculate_interest_delta(
    principal: Decimal,
    rate_bps: Decimal,
    elapsed_seconds: int,
    seconds_per_year: int,
) -> Decimal:
    if elapsed_seconds <= 0 or principal <= 0 or rate_bps <= 0:
        return Decimal("0")
    return principal * rate_bps * elapsed_seconds / (BPS_SCALE * seconds_per_year)


def calculate_penalty_delta(
    principal: Decimal,
    penalty_ratio_per_day_bps: Decimal,
    end_time: datetime,
    last_penalty_accrual_time: datetime,
    penalty_grace_period: timedelta,
    now: datetime,
) -> Decimal:
    """
    Penalty owed for the overdue time not yet charged.

    Zero for every now <= end_time + penalty_grace_period.
    """
    if now <= end_time + penalty_grace_period or principal <= 0:
        return Decimal("0")
    start = max(last_penalty_accrual_time, end_time)
    overdue_seconds = int((now - start).total_seconds())
    if overdue_seconds <= 0:
        return Decimal("0")
    return principal * penalty_ratio_per_day_bps / BPS_SCALE * overdue_seconds / SECONDS_PER_DAY


def project_accrual(
    loan: Loan,
    now: datetime,
    rate_inputs: RateInputs,
    penalty_ratio_per_day_bps: Decimal,
    penalty_grace_period: timedelta,
    seconds_per_year: int,
    decimal_places: Optional[int] = None,
) -> AccrualProjection:
    """
    Project a loan's interest and penalty forward to `now`.

    PURE FUNCTION. Deltas are rounded down to decimal_places. Inactive loans
    project to their stored values.

    Each timestamp only advances when a non-zero delta is charged. A loan
    inside its penalty grace window keeps last_penalty_accrual_time, and a
    delta that rounds down to zero leaves last_interest_accrual_time where it
    was so the elapsed time is charged later.
    """
    rate = calculate_borrow_rate(remaining_lock_seconds(loan.end_time, now), rate_inputs)

    if not loan.active:
        return AccrualProjection(
            as_of=now,
            borrowed_amount=loan.borrowed_amount,
            accrued_interest=loan.accrued_interest,
            accrued_penalty=loan.accrued_penalty,
            interest_delta=Decimal("0"),
            penalty_delta=Decimal("0"),
            effective_rate=rate.effective_rate,
            last_interest_accrual_time=loan.last_interest_accrual_time,
            last_penalty_accrual_time=loan.last_penalty_accrual_time,
        )

    elapsed = max(0, int((now - loan.last_interest_accrual_time).total_seconds()))
    interest = _quantize_down(
        calculate_interest_delta(loan.borrowed_amount, rate.effective_rate, elapsed, seconds_per_year),
        decimal_places,
    )

    penalty = _quantize_down(
        calculate_penalty_delta(
            loan.borrowed_amount,
            penalty_ratio_per_day_bps,
            loan.end_time,
            loan.last_penalty_accrual_time,
            penalty_grace_period,
            now,
        ),
        decimal_places,
    )

    return AccrualProjection(
        as_of=now,
        borrowed_amount=loan.borrowed_amount,
        accrued_interest=loan.accrued_interest + interest,
        accrued_penalty=loan.accrued_penalty + penalty,
        interest_delta=interest,
        penalty_delta=penalty,
        effective_rate=rate.effective_rate,
        last_interest_accrual_time=now if interest > 0 else loan.last_interest_accrual_time,
        last_penalty_accrual_time=now if penalty > 0 else loan.last_penalty_accrual_time,
    )


def commit_accrual(loan: Loan, projection: AccrualProjection) -> Loan:
    """The loan with the projection written into its accrual fields."""
    return replace(
        loan,
        accrued_interest=projection.accrued_interest,
        accrued_penalty=projection.accrued_penalty,
        last_interest_accrual_time=projection.last_interest_accrual_time,
        last_penalty_accrual_time=projection.last_penalty_accrual_time,
    )
