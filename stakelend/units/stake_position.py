"""
stake_position.py - Staking-position NFTs (the collateral registry)

=== MODEL ===

A staking position is a time-locked deposit of the collateral token,
represented by a non-fungible unit `SPOS-<id>`:

    - exactly one wallet holds +1 of the unit (the owner)
    - SYSTEM_WALLET holds -1 from the mint onwards
    - the underlying tokens sit in the staking pool wallet
    - the unit state is the lock record: amount, lock_period, start_time

Minting moves the NFT SYSTEM -> owner and the deposit owner -> staking pool
in one transaction. Burning moves the NFT back to SYSTEM and marks the
record burned.

The staking program owns these records; the lending pool only reads them
and moves the NFT in and out of custody. Liquidation is the one exception:
seized collateral leaves the staking pool, so the record's amount is
reduced in the same transaction.

=== PURE FUNCTIONS ===

    load_lock_record(view, id) -> LockRecord
    owner_of(view, id) -> Optional[str]
    compute_stake(view, owner, id, amount, lock_period, ...) -> PendingTransaction
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from ..core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType,
    build_transaction, whole_unit_transfer_rule, _freeze_state,
    SYSTEM_WALLET, UNIT_TYPE_STAKE_POSITION,
)
from ..errors import InvalidCollateral, ZeroAmount


POSITION_PREFIX = "SPOS-"


def position_symbol(collateral_id: int) -> str:
    return f"{POSITION_PREFIX}{collateral_id}"


@dataclass(frozen=True, slots=True)
class LockRecord:
    """The staking program's record behind one position NFT."""
    collateral_id: int
    amount: Decimal
    lock_period: int           # seconds
    start_time: datetime
    collateral_token: str
    burned: bool = False

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

    @property
    def unlock_time(self) -> datetime:
        return self.start_time + timedelta(seconds=self.lock_period)

    def remaining_lock_time(self, now: datetime) -> int:
        """Whole seconds until unlock, zero once unlocked."""
        return max(0, int((self.unlock_time - now).total_seconds()))


def create_stake_position_unit(
    collateral_id: int,
    amount: Decimal,
    lock_period: int,
    start_time: datetime,
    collateral_token: str,
) -> Unit:
    """
    Unit for a newly minted position NFT.

    Raises:
        ValueError: for a non-positive amount or lock period.
    """
    amount = Decimal(str(amount))
    if amount <= 0:
        raise ValueError(f"stake amount must be positive, got {amount}")
    if lock_period <= 0:
        raise ValueError(f"lock_period must be positive, got {lock_period}")

    return Unit(
        symbol=position_symbol(collateral_id),
        name=f"Staking position #{collateral_id}",
        unit_type=UNIT_TYPE_STAKE_POSITION,
        min_balance=Decimal("0"),
        max_balance=Decimal("1"),
        decimal_places=0,
        transfer_rule=whole_unit_transfer_rule,
        _frozen_state=_freeze_state({
            'collateral_id': collateral_id,
            'amount': amount,
            'lock_period': int(lock_period),
            'start_time': start_time,
            'collateral_token': collateral_token,
            'burned': False,
        }),
    )


def load_lock_record(view: LedgerView, collateral_id: int) -> LockRecord:
    """
    Read the lock record for a position.

    Raises:
        InvalidCollateral: if no position was minted under this id, or it
            has been burned.
    """
    symbol = position_symbol(collateral_id)
    if not view.has_unit(symbol):
        raise InvalidCollateral(f"No staking position #{collateral_id}")
    if view.get_unit(symbol).unit_type != UNIT_TYPE_STAKE_POSITION:
        raise InvalidCollateral(f"{symbol} is not a staking position")

    raw = view.get_unit_state(symbol)
    record = LockRecord(
        collateral_id=raw['collateral_id'],
        amount=raw['amount'],
        lock_period=raw['lock_period'],
        start_time=raw['start_time'],
        collateral_token=raw['collateral_token'],
        burned=raw.get('burned', False),
    )
    if record.burned:
        raise InvalidCollateral(f"Staking position #{collateral_id} has been burned")
    return record


def owner_of(view: LedgerView, collateral_id: int) -> Optional[str]:
    """Wallet currently holding the position NFT, or None once burned."""
    positions = view.get_positions(position_symbol(collateral_id))
    for wallet, quantity in sorted(positions.items()):
        if wallet != SYSTEM_WALLET and quantity == Decimal("1"):
            return wallet
    return None


def with_amount(record_state: dict, amount: Decimal, burned: bool = False) -> dict:
    """Copy of a position's state with a new underlying amount."""
    return {**record_state, 'amount': amount, 'burned': burned}


def compute_stake(
    view: LedgerView,
    owner: str,
    collateral_id: int,
    amount: Decimal,
    lock_period: int,
    collateral_token: str,
    staking_pool_wallet: str,
) -> PendingTransaction:
    """
    Lock `amount` of collateral_token and mint the position NFT to owner.

    The lock starts at view.current_time.

    Raises:
        ZeroAmount: if amount <= 0.
        ValueError: if the id is already taken or lock_period <= 0.
    """
    amount = Decimal(str(amount))
    if amount <= 0:
        raise ZeroAmount("Stake amount must be greater than zero")
    symbol = position_symbol(collateral_id)
    if view.has_unit(symbol):
        raise ValueError(f"Staking position #{collateral_id} already exists")

    unit = create_stake_position_unit(
        collateral_id, amount, lock_period, view.current_time, collateral_token,
    )
    contract_id = f"stake_{symbol}"
    moves = [
        Move(Decimal("1"), symbol, SYSTEM_WALLET, owner, contract_id),
        Move(amount, collateral_token, owner, staking_pool_wallet, contract_id),
    ]
    origin = TransactionOrigin(OriginType.USER_ACTION, owner, symbol, "STAKE")
    return build_transaction(view, moves, origin=origin, units_to_create=(unit,))


def burn_moves(collateral_id: int, holder: str, contract_id: str) -> list:
    """NFT back to SYSTEM_WALLET."""
    return [Move(Decimal("1"), position_symbol(collateral_id), holder, SYSTEM_WALLET, contract_id)]


def burn_state_change(view: LedgerView, collateral_id: int) -> UnitStateChange:
    symbol = position_symbol(collateral_id)
    old = view.get_unit_state(symbol)
    return UnitStateChange(symbol, old, with_amount(old, Decimal("0"), burned=True))
