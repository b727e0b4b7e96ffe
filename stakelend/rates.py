"""
rates.py - Borrow rate engine.

A borrower must never pay less than their own locked collateral earns over
the same horizon, otherwise borrowing and re-staking would be a free spread.
The borrow rate is therefore the larger of the pool's base rate and an
"anti-arbitrage" rate: the best blended staking yield that could be earned
by tiling the remaining lock time with the staking program's lock periods.

Finding the true optimum is a bin-covering problem. Two cheap strategies
are evaluated instead and the larger result wins:

    single-period tiling:  floor(remaining / p) cycles of one period p
    greedy fill:           periods by descending yield, each taking as many
                           whole cycles of what is left as fit

Uncovered time earns nothing. Everything here is pure.

All rates are annualized, in basis points.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence, Tuple

from .core import BPS_SCALE
from .staking import LockPeriod, StakingSchedule


@dataclass(frozen=True, slots=True)
class RateInputs:
    """Everything the rate engine reads, captured at one instant."""
    base_rate: Decimal
    staking_apy: Decimal
    lock_periods: Tuple[LockPeriod, ...]

    def __post_init__(self):
        if not isinstance(self.base_rate, Decimal):
            object.__setattr__(self, 'base_rate', Decimal(str(self.base_rate)))
        if not isinstance(self.staking_apy, Decimal):
            object.__setattr__(self, 'staking_apy', Decimal(str(self.staking_apy)))
        object.__setattr__(self, 'lock_periods', tuple(self.lock_periods))

    @classmethod
    def from_schedule(cls, base_rate: Decimal, schedule: StakingSchedule) -> RateInputs:
        return cls(
            base_rate=base_rate,
            staking_apy=schedule.current_apy(),
            lock_periods=tuple(schedule.lock_period_table()),
        )


@dataclass(frozen=True, slots=True)
class BorrowRate:
    effective_rate: Decimal
    base_rate: Decimal
    anti_arbitrage_rate: Decimal
    remaining_time: int


def calculate_period_yield(staking_apy: Decimal, multiplier: Decimal) -> Decimal:
    """Annualized yield of one lock period: apy * multiplier / 10000."""
    return staking_apy * multiplier / BPS_SCALE


def _single_period_rate(remaining_time: int, yield_rate: Decimal, period: int) -> Decimal:
    cycles = remaining_time // period
    if cycles == 0:
        return Decimal("0")
    return yield_rate * (cycles * period) / remaining_time


def _greedy_fill_rate(remaining_time: int, ranked: Sequence[Tuple[Decimal, int]]) -> Decimal:
    left = remaining_time
    earned = Decimal("0")
    for yield_rate, period in ranked:
        cycles = left // period
        if cycles == 0:
            continue
        covered = cycles * period
        earned += yield_rate * covered
        left -= covered
        if left == 0:
            break
    return earned / remaining_time


def calculate_anti_arbitrage_rate(
    remaining_time: int,
    staking_apy: Decimal,
    lock_periods: Sequence[LockPeriod],
) -> Decimal:
    """
    Best blended staking yield achievable over remaining_time seconds.

    Returns 0 when remaining_time is shorter than every lock period.

    Example:
        # 45 days left, 30-day period at 1x of 800 bps: 30 of 45 days covered
        calculate_anti_arbitrage_rate(45 * 86400, Decimal("800"),
                                      [LockPeriod(30 * 86400, Decimal("10000"))])
        # -> 533.33...
    """
    if remaining_time <= 0 or not lock_periods:
        return Decimal("0")
    if remaining_time < min(lp.period for lp in lock_periods):
        return Decimal("0")

    # Ties prefer the shorter period, which leaves less time uncovered.
    ranked = sorted(
        ((calculate_period_yield(staking_apy, lp.multiplier), lp.period) for lp in lock_periods),
        key=lambda yp: (-yp[0], yp[1]),
    )

    best = _greedy_fill_rate(remaining_time, ranked)
    for yield_rate, period in ranked:
        if period <= remaining_time:
            best = max(best, _single_period_rate(remaining_time, yield_rate, period))
    return best


def calculate_borrow_rate(remaining_time: int, inputs: RateInputs) -> BorrowRate:
    """
    effective_rate = max(base_rate, anti_arbitrage_rate).

    remaining_time is clamped at zero; a position past its unlock time pays
    the base rate.
    """
    remaining_time = max(0, int(remaining_time))
    anti_arbitrage = calculate_anti_arbitrage_rate(
        remaining_time, inputs.staking_apy, inputs.lock_periods
    )
    return BorrowRate(
        effective_rate=max(inputs.base_rate, anti_arbitrage),
        base_rate=inputs.base_rate,
        anti_arbitrage_rate=anti_arbitrage,
        remaining_time=remaining_time,
    )
