"""
test_stake_position.py - Unit tests for staking-position NFTs

Tests:
- compute_stake: mint, deposit, validation
- load_lock_record: fields, missing, wrong type, burned
- owner_of
- LockRecord timing helpers
- NFT transfer rule enforced by the ledger
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from stakelend import (
    ExecuteResult, Move, build_transaction, token, SYSTEM_WALLET,
    InvalidCollateral, ZeroAmount,
)
from stakelend.units.stake_position import (
    LockRecord, compute_stake, create_stake_position_unit,
    load_lock_record, owner_of, position_symbol, burn_state_change,
)

from tests.fake_view import FakeView

T0 = datetime(2025, 1, 1)
DAY = 86_400


@pytest.fixture
def staking_ledger(token_ledger):
    """Token ledger with a staking pool wallet and alice holding 5000 STK."""
    token_ledger.register_wallet("staking_pool")
    token_ledger.set_balance("alice", "STK", Decimal("5000"))
    return token_ledger


def _stake(ledger, collateral_id=1, amount="2000", owner="alice", days=30):
    pending = compute_stake(ledger, owner, collateral_id, Decimal(amount), days * DAY, "STK", "staking_pool")
    return ledger.execute(pending)


class TestComputeStake:
    """Tests for minting positions."""

    def test_stake_mints_and_locks(self, staking_ledger):
        assert _stake(staking_ledger) == ExecuteResult.APPLIED
        assert staking_ledger.get_balance("alice", "SPOS-1") == Decimal("1")
        assert staking_ledger.get_balance(SYSTEM_WALLET, "SPOS-1") == Decimal("-1")
        assert staking_ledger.get_balance("alice", "STK") == Decimal("3000")
        assert staking_ledger.get_balance("staking_pool", "STK") == Decimal("2000")

    def test_lock_record(self, staking_ledger):
        _stake(staking_ledger, days=90)
        record = load_lock_record(staking_ledger, 1)
        assert record == LockRecord(1, Decimal("2000"), 90 * DAY, T0, "STK")
        assert record.unlock_time == T0 + timedelta(days=90)

    def test_zero_amount(self, staking_ledger):
        with pytest.raises(ZeroAmount):
            compute_stake(staking_ledger, "alice", 1, Decimal("0"), 30 * DAY, "STK", "staking_pool")

    def test_duplicate_id(self, staking_ledger):
        _stake(staking_ledger)
        with pytest.raises(ValueError, match="already exists"):
            compute_stake(staking_ledger, "alice", 1, Decimal("1"), 30 * DAY, "STK", "staking_pool")

    def test_underfunded_stake_leaves_no_unit(self, staking_ledger):
        assert _stake(staking_ledger, amount="6000") == ExecuteResult.REJECTED
        assert not staking_ledger.has_unit("SPOS-1")

    def test_invalid_lock_period(self):
        with pytest.raises(ValueError, match="lock_period"):
            create_stake_position_unit(1, Decimal("1"), 0, T0, "STK")


class TestLoadLockRecord:
    """Tests for reading lock records."""

    def test_missing_position(self):
        with pytest.raises(InvalidCollateral):
            load_lock_record(FakeView({}), 5)

    def test_wrong_unit_type(self):
        view = FakeView({}, units={"SPOS-9": token("SPOS-9", "Impostor")})
        with pytest.raises(InvalidCollateral, match="not a staking position"):
            load_lock_record(view, 9)

    def test_burned_position(self):
        unit = create_stake_position_unit(3, Decimal("10"), 30 * DAY, T0, "STK")
        burned = {**unit.state, 'burned': True}
        view = FakeView({}, states={"SPOS-3": burned}, units={"SPOS-3": unit})
        with pytest.raises(InvalidCollateral, match="burned"):
            load_lock_record(view, 3)

    def test_burn_state_change(self):
        unit = create_stake_position_unit(3, Decimal("10"), 30 * DAY, T0, "STK")
        change = burn_state_change(FakeView({}, units={"SPOS-3": unit}), 3)
        assert change.new_state['burned'] is True
        assert change.new_state['amount'] == 0


class TestOwnership:
    """Tests for owner_of."""

    def test_owner_follows_nft(self, staking_ledger):
        _stake(staking_ledger)
        assert owner_of(staking_ledger, 1) == "alice"
        tx = build_transaction(staking_ledger, [
            Move(Decimal("1"), position_symbol(1), "alice", "bob", "gift"),
        ])
        assert staking_ledger.execute(tx) == ExecuteResult.APPLIED
        assert owner_of(staking_ledger, 1) == "bob"

    def test_no_owner_for_unminted(self):
        assert owner_of(FakeView({}), 1) is None

    def test_fractional_nft_move_rejected(self, staking_ledger):
        _stake(staking_ledger)
        tx = build_transaction(staking_ledger, [
            Move(Decimal("0.5"), "SPOS-1", "alice", "bob", "split"),
        ])
        assert staking_ledger.execute(tx) == ExecuteResult.REJECTED
        assert owner_of(staking_ledger, 1) == "alice"

    def test_cannot_hold_two(self, staking_ledger):
        """max_balance of 1 stops a second NFT landing in the same wallet."""
        _stake(staking_ledger)
        tx = build_transaction(staking_ledger, [
            Move(Decimal("1"), "SPOS-1", SYSTEM_WALLET, "alice", "double_mint"),
        ])
        assert staking_ledger.execute(tx) == ExecuteResult.REJECTED


class TestLockRecordTiming:

    def test_remaining_lock_time(self):
        record = LockRecord(1, Decimal("1"), 30 * DAY, T0, "STK")
        assert record.remaining_lock_time(T0) == 30 * DAY
        assert record.remaining_lock_time(T0 + timedelta(days=29)) == DAY
        assert record.remaining_lock_time(T0 + timedelta(days=31)) == 0
