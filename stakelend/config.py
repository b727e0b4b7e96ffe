"""
config.py - Lending pool parameters.

LendingConfig is the pool's term sheet: every rate, ratio, grace period and
wallet id the lending engine reads. It is immutable; the pool's admin
setters replace it with dataclasses.replace().

Rates and ratios are in basis points (10000 = 100%).
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from decimal import Decimal
from typing import Any, Mapping

from .core import BPS_SCALE


_DECIMAL_FIELDS = (
    'base_rate_bps',
    'ltv_bps',
    'liquidation_target_bps',
    'liquidation_bonus_bps',
    'penalty_ratio_per_day_bps',
    'min_collateral_threshold',
)

_DURATION_FIELDS = (
    'penalty_grace_period',
    'loan_grace_period',
)


@dataclass(frozen=True, slots=True)
class LendingConfig:
    """
    Immutable pool parameters.

    Durations accept a timedelta or a number of seconds. Numeric fields
    accept anything Decimal(str(x)) understands.
    """
    base_rate_bps: Decimal = Decimal("500")
    ltv_bps: Decimal = Decimal("7500")
    liquidation_target_bps: Decimal = Decimal("14000")
    liquidation_bonus_bps: Decimal = Decimal("300")
    penalty_ratio_per_day_bps: Decimal = Decimal("10")
    penalty_grace_period: timedelta = timedelta(days=1)
    loan_grace_period: timedelta = timedelta(days=7)
    min_collateral_threshold: Decimal = Decimal("1")
    seconds_per_year: int = 365 * 24 * 60 * 60
    auto_slash: bool = True
    custodian_wallet: str = "custodian"
    staking_pool_wallet: str = "staking_pool"
    sink_wallet: str = "protocol_sink"
    collateral_token: str = "STK"

    def __post_init__(self):
        for name in _DECIMAL_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, Decimal(str(value)))
        for name in _DURATION_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, timedelta):
                object.__setattr__(self, name, timedelta(seconds=int(value)))

        if self.base_rate_bps < 0:
            raise ValueError(f"base_rate_bps cannot be negative, got {self.base_rate_bps}")
        if not (Decimal("0") < self.ltv_bps < BPS_SCALE):
            raise ValueError(f"ltv_bps must be in (0, 10000), got {self.ltv_bps}")
        if self.liquidation_bonus_bps < 0:
            raise ValueError(f"liquidation_bonus_bps cannot be negative, got {self.liquidation_bonus_bps}")
        if self.liquidation_target_bps <= BPS_SCALE + self.liquidation_bonus_bps:
            raise ValueError(
                f"liquidation_target_bps ({self.liquidation_target_bps}) must exceed "
                f"10000 + liquidation_bonus_bps ({self.liquidation_bonus_bps})"
            )
        if self.liquidation_target_bps * self.ltv_bps <= BPS_SCALE * BPS_SCALE:
            raise ValueError(
                f"liquidation_target_bps * ltv_bps must exceed 10000^2, got "
                f"{self.liquidation_target_bps} * {self.ltv_bps}"
            )
        if self.penalty_ratio_per_day_bps < 0:
            raise ValueError(f"penalty_ratio_per_day_bps cannot be negative, got {self.penalty_ratio_per_day_bps}")
        if self.penalty_grace_period < timedelta(0) or self.loan_grace_period < timedelta(0):
            raise ValueError("grace periods cannot be negative")
        if self.min_collateral_threshold < 0:
            raise ValueError(f"min_collateral_threshold cannot be negative, got {self.min_collateral_threshold}")
        if self.seconds_per_year <= 0:
            raise ValueError(f"seconds_per_year must be positive, got {self.seconds_per_year}")
        wallets = {self.custodian_wallet, self.staking_pool_wallet, self.sink_wallet}
        if len(wallets) != 3 or not all(w and w.strip() for w in wallets):
            raise ValueError("custodian, staking pool and sink wallets must be distinct and non-empty")

    @property
    def ltv(self) -> Decimal:
        return self.ltv_bps / BPS_SCALE

    @property
    def liquidation_target(self) -> Decimal:
        return self.liquidation_target_bps / BPS_SCALE

    @property
    def liquidation_bonus(self) -> Decimal:
        return self.liquidation_bonus_bps / BPS_SCALE

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> LendingConfig:
        """
        Build a config from a plain mapping, e.g. a parsed JSON or TOML file.

        Missing keys take their defaults.

        Raises:
            ValueError: for unknown keys or values that fail validation.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"Unknown LendingConfig keys: {', '.join(unknown)}")
        return cls(**dict(raw))

    def with_updates(self, **changes: Any) -> LendingConfig:
        """Copy with some fields replaced; the result is validated again."""
        return replace(self, **changes)
