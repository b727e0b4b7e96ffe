"""
test_config.py - Unit tests for LendingConfig and the staking schedule

Tests:
- Defaults and derived fractions
- Coercion of numbers and durations
- Validation failures
- from_dict / with_updates
- LockPeriod and StaticStakingSchedule
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from stakelend import LendingConfig, LockPeriod, StaticStakingSchedule, DEFAULT_LOCK_PERIODS


class TestDefaults:

    def test_default_values(self):
        config = LendingConfig()
        assert config.base_rate_bps == Decimal("500")
        assert config.loan_grace_period == timedelta(days=7)
        assert config.penalty_grace_period == timedelta(days=1)
        assert config.seconds_per_year == 31_536_000
        assert config.auto_slash is True

    def test_fractions(self):
        config = LendingConfig()
        assert config.ltv == Decimal("0.75")
        assert config.liquidation_target == Decimal("1.4")
        assert config.liquidation_bonus == Decimal("0.03")


class TestCoercion:

    def test_numbers_become_decimal(self):
        config = LendingConfig(base_rate_bps=250, min_collateral_threshold="0.5")
        assert config.base_rate_bps == Decimal("250")
        assert config.min_collateral_threshold == Decimal("0.5")

    def test_seconds_become_timedelta(self):
        config = LendingConfig(loan_grace_period=3600)
        assert config.loan_grace_period == timedelta(hours=1)


class TestValidation:

    @pytest.mark.parametrize("ltv", [0, 10000, -1])
    def test_ltv_bounds(self, ltv):
        with pytest.raises(ValueError, match="ltv_bps"):
            LendingConfig(ltv_bps=ltv)

    def test_target_must_exceed_one_plus_bonus(self):
        with pytest.raises(ValueError, match="must exceed"):
            LendingConfig(liquidation_target_bps=10300)

    def test_target_times_ltv(self):
        """A liquidatable position must sit below the target ratio."""
        with pytest.raises(ValueError, match="10000"):
            LendingConfig(ltv_bps=7000, liquidation_target_bps=14000)

    def test_negative_threshold(self):
        with pytest.raises(ValueError, match="min_collateral_threshold"):
            LendingConfig(min_collateral_threshold=-1)

    def test_negative_grace(self):
        with pytest.raises(ValueError, match="grace"):
            LendingConfig(loan_grace_period=timedelta(seconds=-1))

    def test_shared_wallets(self):
        with pytest.raises(ValueError, match="distinct"):
            LendingConfig(sink_wallet="custodian")


class TestConstruction:

    def test_from_dict(self):
        config = LendingConfig.from_dict({"ltv_bps": 5000, "liquidation_target_bps": 25000, "auto_slash": False})
        assert config.ltv_bps == Decimal("5000")
        assert config.auto_slash is False

    def test_from_dict_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown"):
            LendingConfig.from_dict({"ltv": 5000})

    def test_with_updates_revalidates(self):
        config = LendingConfig()
        assert config.with_updates(min_collateral_threshold=5).min_collateral_threshold == Decimal("5")
        with pytest.raises(ValueError):
            config.with_updates(ltv_bps=0)

    def test_frozen(self):
        with pytest.raises(AttributeError):
            LendingConfig().ltv_bps = Decimal("1")


class TestStakingSchedule:

    def test_default_table(self):
        assert [lp.period // 86_400 for lp in DEFAULT_LOCK_PERIODS] == [30, 90, 180, 365]

    def test_lock_period_validation(self):
        with pytest.raises(ValueError):
            LockPeriod(0, Decimal("10000"))
        with pytest.raises(ValueError):
            LockPeriod(86_400, Decimal("-1"))

    def test_set_apy(self):
        schedule = StaticStakingSchedule(Decimal("800"))
        schedule.set_apy(1200)
        assert schedule.current_apy() == Decimal("1200")
        with pytest.raises(ValueError):
            schedule.set_apy(-1)

    def test_empty_table(self):
        with pytest.raises(ValueError):
            StaticStakingSchedule(Decimal("800"), lock_periods=())

    def test_table_is_a_copy(self):
        schedule = StaticStakingSchedule(Decimal("800"))
        schedule.lock_period_table().clear()
        assert len(schedule.lock_period_table()) == 4
