"""
test_keeper.py - Keeper engine scenarios

Tests:
- Healthy loans are left alone
- Unhealthy loans are liquidated from the keeper's wallet
- Closed positions below the threshold are slashed
- A failure on one loan does not stop the sweep
- run() over a price path
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from stakelend import (
    KeeperEngine, HeartbeatPriceOracle, LendingConfig, NotLiquidatable, owner_of,
)

from tests.builders import T0, build_pool, open_loan, at


@pytest.fixture
def keeper(loan_pool):
    engine = KeeperEngine(loan_pool, "keeper")
    loan_pool.ledger.set_balance("keeper", "USDX", Decimal("50000"))
    return engine


class TestKeeperStep:

    def test_healthy_loans_untouched(self, keeper):
        assert keeper.step(at(days=1)) == []
        assert keeper.pool.get_loan(1).borrowed_amount == Decimal("1125")

    def test_step_advances_time(self, keeper):
        keeper.step(at(days=2))
        assert keeper.ledger.current_time == at(days=2)

    def test_liquidates_unhealthy_loan(self, keeper):
        keeper.pool.oracle.set_price("STK", Decimal("0.7"))
        executed = keeper.step(at(days=1))
        assert [tx.origin.event_type for tx in executed] == ["LIQUIDATE"]
        assert keeper.ledger.get_balance("keeper", "STK") > 0
        assert not keeper.pool.is_liquidatable(1)

    def test_respects_repay_cap(self, loan_pool):
        engine = KeeperEngine(loan_pool, "keeper", max_repay_per_loan=Decimal("100"))
        loan_pool.ledger.set_balance("keeper", "USDX", Decimal("50000"))
        loan_pool.oracle.set_price("STK", Decimal("0.7"))
        engine.step(at(days=1))
        assert loan_pool.ledger.get_balance("keeper", "USDX") == Decimal("49900")

    def test_unfunded_keeper_skips(self, loan_pool):
        engine = KeeperEngine(loan_pool, "keeper")
        loan_pool.oracle.set_price("STK", Decimal("0.7"))
        assert engine.step(at(days=1)) == []
        assert loan_pool.is_liquidatable(1)

    def test_liquidate_then_slash(self):
        pool = build_pool(config=LendingConfig(auto_slash=False))
        open_loan(pool)
        engine = KeeperEngine(pool, "keeper")
        pool.ledger.set_balance("keeper", "USDX", Decimal("50000"))
        pool.oracle.set_price("STK", Decimal("0.5"))

        executed = engine.step(at(days=1))

        assert [tx.origin.event_type for tx in executed] == ["LIQUIDATE", "SLASH"]
        assert owner_of(pool.ledger, 1) is None
        assert pool.get_loan(1).slashed

    def test_slashes_partial_liquidation_with_residual_debt(self):
        pool = build_pool(config=LendingConfig(auto_slash=False))
        open_loan(pool)
        engine = KeeperEngine(pool, "keeper")
        pool.ledger.set_balance("keeper", "USDX", Decimal("50000"))
        pool.set_min_collateral_threshold(Decimal("500"))
        pool.oracle.set_price("STK", Decimal("0.6"))

        executed = engine.step(at(days=1))

        assert [tx.origin.event_type for tx in executed] == ["LIQUIDATE", "SLASH"]
        loan = pool.get_loan(1)
        assert loan.slashed
        assert loan.written_off_debt > 0
        assert pool.bad_debt == {"USDX": loan.written_off_debt}

    def test_failure_does_not_stop_sweep(self, pool, monkeypatch):
        for collateral_id in (1, 2):
            open_loan(pool, collateral_id=collateral_id)
        engine = KeeperEngine(pool, "keeper")
        pool.ledger.set_balance("keeper", "USDX", Decimal("50000"))
        pool.oracle.set_price("STK", Decimal("0.7"))

        liquidate = pool.liquidate

        def flaky(caller, collateral_id, max_repay_amount):
            if collateral_id == 1:
                raise NotLiquidatable("simulated")
            return liquidate(caller, collateral_id, max_repay_amount)

        monkeypatch.setattr(pool, "liquidate", flaky)
        executed = engine.step(at(days=1))

        assert len(executed) == 1
        assert executed[0].origin.unit_symbol == "LOAN-2"
        assert pool.is_liquidatable(1)
        assert not pool.is_liquidatable(2)


class TestKeeperRun:

    def test_run_over_price_path(self):
        oracle = HeartbeatPriceOracle(timedelta(days=2), pegged={"USDX"})
        for day, price in enumerate(["1.0", "0.95", "0.9", "0.8", "0.7", "0.7"]):
            oracle.add_price("STK", at(days=day), Decimal(price))
        pool = build_pool(oracle=oracle)
        open_loan(pool)
        engine = KeeperEngine(pool, "keeper")
        pool.ledger.set_balance("keeper", "USDX", Decimal("50000"))

        seen = []
        executed = engine.run([at(days=d) for d in range(1, 6)], on_step=seen.append)

        assert seen == [at(days=d) for d in range(1, 6)]
        assert [tx.origin.event_type for tx in executed] == ["LIQUIDATE"]
        assert executed[0].execution_time == at(days=4)
