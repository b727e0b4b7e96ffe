"""
staking.py - The staking program as seen by the lending pool.

The pool only needs two things from the staking program: its current APY
and the table of lock periods with their reward multipliers. Both are in
basis points; a multiplier of 10000 pays exactly the base APY.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Protocol, Sequence, runtime_checkable


SECONDS_PER_DAY_INT = 86_400


@dataclass(frozen=True, slots=True)
class LockPeriod:
    """One row of the staking program's lock table."""
    period: int            # seconds
    multiplier: Decimal    # bps, 10000 = 1x

    def __post_init__(self):
        if not isinstance(self.multiplier, Decimal):
            object.__setattr__(self, 'multiplier', Decimal(str(self.multiplier)))
        if self.period <= 0:
            raise ValueError(f"lock period must be positive, got {self.period}")
        if self.multiplier < 0:
            raise ValueError(f"multiplier cannot be negative, got {self.multiplier}")


# 30/90/180/365-day tiers, longer locks earn more.
DEFAULT_LOCK_PERIODS: tuple = (
    LockPeriod(30 * SECONDS_PER_DAY_INT, Decimal("10000")),
    LockPeriod(90 * SECONDS_PER_DAY_INT, Decimal("12500")),
    LockPeriod(180 * SECONDS_PER_DAY_INT, Decimal("15000")),
    LockPeriod(365 * SECONDS_PER_DAY_INT, Decimal("20000")),
)


@runtime_checkable
class StakingSchedule(Protocol):
    def current_apy(self) -> Decimal:
        """Base staking APY in bps."""
        ...

    def lock_period_table(self) -> List[LockPeriod]:
        ...


class StaticStakingSchedule:
    """A fixed APY and lock table. set_apy() models an APY change."""

    def __init__(self, apy_bps: Decimal, lock_periods: Sequence[LockPeriod] = DEFAULT_LOCK_PERIODS):
        if not lock_periods:
            raise ValueError("lock_periods cannot be empty")
        self._lock_periods = tuple(lock_periods)
        self._apy_bps = Decimal("0")
        self.set_apy(apy_bps)

    def set_apy(self, apy_bps: Decimal) -> None:
        apy_bps = Decimal(str(apy_bps))
        if apy_bps < 0:
            raise ValueError(f"APY cannot be negative, got {apy_bps}")
        self._apy_bps = apy_bps

    def current_apy(self) -> Decimal:
        return self._apy_bps

    def lock_period_table(self) -> List[LockPeriod]:
        return list(self._lock_periods)

    def __repr__(self):
        return f"StaticStakingSchedule(apy={self._apy_bps}bps, {len(self._lock_periods)} periods)"
