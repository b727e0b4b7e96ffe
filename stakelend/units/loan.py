"""
loan.py - Collateralized loans against staking-position NFTs

This module owns the Loan record and every state transition on it, using
the pure function architecture of the ledger:

1. FROZEN DATACLASSES:
   - Loan: immutable snapshot of one loan record
   - SettlementBreakdown: how a payment was split

2. PURE CALCULATION FUNCTIONS (calculate_*, settle_payment):
   - Explicit inputs only, no LedgerView

3. ADAPTER FUNCTIONS (load_loan, to_state_dict):
   - The only place that reads loan state from a LedgerView

4. TRANSACTION BUILDERS (compute_*):
   - (view, caller, collateral_id, ...) -> PendingTransaction
   - Raise a LendingError when the transition is not allowed

Loan records are ledger units `LOAN-<id>`, keyed by the collateral id. They
carry no balances, only state. A record is created by the first borrow
against a position and reused by later borrows once cleared.

Key formulas (rates and ratios in bps, prices normalized):
    price_ratio       = collateral_price / debt_price
    max_borrowable    = collateral_amount * price_ratio * ltv
    health_factor     = max_borrowable * 1e18 / total_debt
    liquidation x     = (total_debt * t - collateral_value) / (t - 1 - bonus)
    collateral seized = repay * (1 + bonus) / price_ratio
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType,
    build_transaction, _freeze_state,
    BPS_SCALE, WAD, QUANTITY_EPSILON, UNIT_TYPE_COLLATERAL_LOAN,
)
from ..accrual import AccrualProjection, project_accrual, commit_accrual
from ..config import LendingConfig
from ..errors import (
    ZeroAmount, NoActiveLoan, LoanAlreadyExists, CollateralUnlocked,
    LoanStillActive, NotBorrower, NotCollateralOwner, LoanOverdue,
    BorrowLimitExceeded, InsufficientLiquidity, NotLiquidatable, CannotSlash, CannotClaim,
)
from ..rates import RateInputs
from .stake_position import (
    load_lock_record, owner_of, position_symbol, with_amount,
    burn_moves, burn_state_change,
)


LOAN_PREFIX = "LOAN-"

_DECIMAL_FIELDS = (
    'remaining_collateral_amount', 'borrowed_amount',
    'accrued_interest', 'accrued_penalty',
    'total_principal_paid', 'total_interest_paid', 'total_penalty_paid',
    'written_off_debt',
)


def loan_symbol(collateral_id: int) -> str:
    return f"{LOAN_PREFIX}{collateral_id}"


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Loan:
    """
    One loan record.

    end_time is the collateral's unlock time at creation and never changes.
    borrower is None once the record has been cleared (full repayment,
    claim or slash).
    """
    collateral_id: int
    active: bool
    borrower: Optional[str]
    remaining_collateral_amount: Decimal
    debt_token: str
    borrowed_amount: Decimal
    start_time: datetime
    end_time: datetime
    last_interest_accrual_time: datetime
    accrued_interest: Decimal
    last_penalty_accrual_time: datetime
    accrued_penalty: Decimal
    total_principal_paid: Decimal = Decimal("0")
    total_interest_paid: Decimal = Decimal("0")
    total_penalty_paid: Decimal = Decimal("0")
    written_off_debt: Decimal = Decimal("0")
    slashed: bool = False

    def __post_init__(self):
        for name in _DECIMAL_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, Decimal(str(value)))

    @property
    def total_debt(self) -> Decimal:
        return self.borrowed_amount + self.accrued_interest + self.accrued_penalty

    @property
    def is_cleared(self) -> bool:
        return self.borrower is None


@dataclass(frozen=True, slots=True)
class SettlementBreakdown:
    """A payment split in settlement order: penalty, interest, principal."""
    penalty: Decimal = Decimal("0")
    interest: Decimal = Decimal("0")
    principal: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.penalty + self.interest + self.principal


# ============================================================================
# ADAPTERS
# ============================================================================

def load_loan(view: LedgerView, collateral_id: int) -> Optional[Loan]:
    """The loan record for a collateral id, or None if none was ever opened."""
    symbol = loan_symbol(collateral_id)
    if not view.has_unit(symbol):
        return None
    raw = view.get_unit_state(symbol)
    return Loan(**{name: raw[name] for name in Loan.__dataclass_fields__})


def to_state_dict(loan: Loan) -> Dict[str, Any]:
    """Inverse of load_loan()."""
    return {name: getattr(loan, name) for name in Loan.__dataclass_fields__}


def create_loan_unit(loan: Loan) -> Unit:
    """Record-only unit for a loan; it never carries balances."""
    return Unit(
        symbol=loan_symbol(loan.collateral_id),
        name=f"Loan against staking position #{loan.collateral_id}",
        unit_type=UNIT_TYPE_COLLATERAL_LOAN,
        min_balance=Decimal("0"),
        max_balance=Decimal("0"),
        decimal_places=0,
        _frozen_state=_freeze_state(to_state_dict(loan)),
    )


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def settle_payment(loan: Loan, amount: Decimal) -> Tuple[Loan, SettlementBreakdown]:
    """
    Apply a payment: penalty first, then interest, then principal.

    PURE FUNCTION. Anything above the total debt is ignored; callers cap
    the amount they collect.

    Example:
        # penalty 5, interest 10, principal 1000, pay 12
        # -> penalty 0, interest 3, principal 1000
    """
    left = amount
    to_penalty = min(left, loan.accrued_penalty)
    left -= to_penalty
    to_interest = min(left, loan.accrued_interest)
    left -= to_interest
    to_principal = min(left, loan.borrowed_amount)

    settled = replace(
        loan,
        accrued_penalty=loan.accrued_penalty - to_penalty,
        accrued_interest=loan.accrued_interest - to_interest,
        borrowed_amount=loan.borrowed_amount - to_principal,
        total_penalty_paid=loan.total_penalty_paid + to_penalty,
        total_interest_paid=loan.total_interest_paid + to_interest,
        total_principal_paid=loan.total_principal_paid + to_principal,
    )
    return settled, SettlementBreakdown(to_penalty, to_interest, to_principal)


def calculate_max_borrowable(
    collateral_amount: Decimal,
    price_ratio: Decimal,
    ltv_bps: Decimal,
) -> Decimal:
    """Collateral value in debt-token units times the loan-to-value ratio."""
    if collateral_amount <= 0 or price_ratio <= 0:
        return Decimal("0")
    return collateral_amount * price_ratio * ltv_bps / BPS_SCALE


def calculate_health_factor(max_borrowable: Decimal, total_debt: Decimal) -> Decimal:
    """max_borrowable * 1e18 / total_debt; Infinity when nothing is owed."""
    if total_debt <= 0:
        return Decimal("Infinity")
    return max_borrowable * WAD / total_debt


def is_liquidatable(max_borrowable: Decimal, total_debt: Decimal) -> bool:
    return total_debt > 0 and max_borrowable <= total_debt


def calculate_liquidation_amount(
    total_debt: Decimal,
    collateral_value: Decimal,
    target_ratio: Decimal,
    bonus: Decimal,
) -> Decimal:
    """
    Repayment that restores collateral_value / total_debt to target_ratio.

    Paying x removes x of debt and x * (1 + bonus) of collateral value, so
    (V - x(1 + b)) / (D - x) = t gives x = (D * t - V) / (t - 1 - b).
    target_ratio and bonus are fractions (1.4, 0.03).
    """
    denominator = target_ratio - 1 - bonus
    if denominator <= 0:
        raise ValueError(f"target ratio {target_ratio} must exceed 1 + bonus {bonus}")
    x = (total_debt * target_ratio - collateral_value) / denominator
    return max(x, Decimal("0"))


def calculate_seized_collateral(
    repay_amount: Decimal,
    price_ratio: Decimal,
    bonus: Decimal,
    remaining_collateral: Decimal,
) -> Decimal:
    """Collateral owed to a liquidator for repay_amount, capped at what is left."""
    if price_ratio <= 0:
        return remaining_collateral
    return min(repay_amount * (1 + bonus) / price_ratio, remaining_collateral)


def can_slash_loan(loan: Optional[Loan], min_collateral_threshold: Decimal) -> Tuple[bool, Decimal]:
    """
    (slashable, remaining collateral).

    Not slashable while active, once cleared, or while the remaining
    collateral is at or above the threshold.
    """
    if loan is None or loan.is_cleared:
        return False, Decimal("0")
    if loan.active:
        return False, loan.remaining_collateral_amount
    if loan.remaining_collateral_amount >= min_collateral_threshold:
        return False, loan.remaining_collateral_amount
    return True, loan.remaining_collateral_amount


def clear_record(loan: Loan) -> Loan:
    return replace(loan, active=False, borrower=None, remaining_collateral_amount=Decimal("0"))


def write_off(loan: Loan) -> Loan:
    """Cleared, slashed record with any residual debt moved to written_off_debt."""
    return replace(
        clear_record(loan),
        borrowed_amount=Decimal("0"),
        accrued_interest=Decimal("0"),
        accrued_penalty=Decimal("0"),
        written_off_debt=loan.written_off_debt + loan.total_debt,
        slashed=True,
    )


# ============================================================================
# TRANSACTION BUILDERS
# ============================================================================

def project_loan(
    view: LedgerView,
    loan: Loan,
    rate_inputs: RateInputs,
    config: LendingConfig,
) -> AccrualProjection:
    """Accrual projection at view.current_time, rounded to the debt token."""
    return project_accrual(
        loan,
        view.current_time,
        rate_inputs,
        config.penalty_ratio_per_day_bps,
        config.penalty_grace_period,
        config.seconds_per_year,
        view.get_unit(loan.debt_token).decimal_places,
    )


def _require_active(view: LedgerView, collateral_id: int) -> Loan:
    loan = load_loan(view, collateral_id)
    if loan is None or not loan.active:
        raise NoActiveLoan(f"No active loan for collateral #{collateral_id}")
    return loan


def _loan_change(view: LedgerView, new_loan: Loan) -> UnitStateChange:
    symbol = loan_symbol(new_loan.collateral_id)
    return UnitStateChange(symbol, view.get_unit_state(symbol), to_state_dict(new_loan))


def _slash_effects(
    view: LedgerView,
    loan: Loan,
    remaining_underlying: Decimal,
    config: LendingConfig,
    contract_id: str,
) -> Tuple[List[Move], Dict[str, Any]]:
    """Moves burning the NFT and sweeping its residual underlying, plus the position's new state."""
    moves = burn_moves(loan.collateral_id, config.custodian_wallet, contract_id)
    if remaining_underlying > QUANTITY_EPSILON:
        moves.append(Move(
            remaining_underlying, config.collateral_token,
            config.staking_pool_wallet, config.sink_wallet, contract_id,
        ))
    return moves, burn_state_change(view, loan.collateral_id).new_state


def compute_borrow(
    view: LedgerView,
    borrower: str,
    collateral_id: int,
    debt_token: str,
    amount: Decimal,
    max_borrowable: Decimal,
    config: LendingConfig,
) -> PendingTransaction:
    """
    Open a loan: NFT borrower -> custodian, debt token custodian -> borrower.

    The debt-token allow-list and the price-derived max_borrowable are the
    caller's concern; this checks everything the ledger can answer.

    Raises:
        ZeroAmount, InvalidCollateral, LoanAlreadyExists, NotCollateralOwner,
        CollateralUnlocked, BorrowLimitExceeded, InsufficientLiquidity
    """
    amount = Decimal(str(amount))
    if amount <= 0:
        raise ZeroAmount("Borrow amount must be greater than zero")

    record = load_lock_record(view, collateral_id)
    now = view.current_time
    existing = load_loan(view, collateral_id)
    if existing is not None and not existing.is_cleared:
        raise LoanAlreadyExists(f"Loan already exists for collateral #{collateral_id}")
    if owner_of(view, collateral_id) != borrower:
        raise NotCollateralOwner(f"{borrower} does not own staking position #{collateral_id}")
    if record.remaining_lock_time(now) <= 0:
        raise CollateralUnlocked(f"Staking position #{collateral_id} unlocked at {record.unlock_time}")

    amount = view.get_unit(debt_token).round(amount)
    if amount <= 0:
        raise ZeroAmount("Borrow amount rounds to zero")
    if amount > max_borrowable:
        raise BorrowLimitExceeded(f"Amount {amount} exceeds max borrowable {max_borrowable}")
    available = view.get_balance(config.custodian_wallet, debt_token)
    if available < amount:
        raise InsufficientLiquidity(f"Custodian holds {available} {debt_token}, need {amount}")

    loan = Loan(
        collateral_id=collateral_id,
        active=True,
        borrower=borrower,
        remaining_collateral_amount=record.amount,
        debt_token=debt_token,
        borrowed_amount=amount,
        start_time=now,
        end_time=record.unlock_time,
        last_interest_accrual_time=now,
        accrued_interest=Decimal("0"),
        last_penalty_accrual_time=now,
        accrued_penalty=Decimal("0"),
    )

    symbol = loan_symbol(collateral_id)
    contract_id = f"borrow_{symbol}"
    moves = [
        Move(Decimal("1"), position_symbol(collateral_id), borrower, config.custodian_wallet, contract_id),
        Move(amount, debt_token, config.custodian_wallet, borrower, contract_id),
    ]
    origin = TransactionOrigin(OriginType.USER_ACTION, borrower, symbol, "BORROW")

    if existing is None:
        return build_transaction(view, moves, origin=origin, units_to_create=(create_loan_unit(loan),))
    return build_transaction(view, moves, [_loan_change(view, loan)], origin=origin)


def compute_repayment(
    view: LedgerView,
    payer: str,
    collateral_id: int,
    amount: Decimal,
    rate_inputs: RateInputs,
    config: LendingConfig,
) -> PendingTransaction:
    """
    Repay up to `amount` of a loan's debt. Anyone may pay.

    Accrual is committed first, then the payment is settled penalty ->
    interest -> principal. Payments above the total debt are capped. When
    the debt reaches zero the loan closes, the NFT goes back to the
    recorded borrower and the record is cleared.

    Raises:
        ZeroAmount, NoActiveLoan, LoanOverdue (now >= end_time + loan_grace_period)
    """
    amount = Decimal(str(amount))
    if amount <= 0:
        raise ZeroAmount("Repay amount must be greater than zero")

    loan = _require_active(view, collateral_id)
    now = view.current_time
    if now >= loan.end_time + config.loan_grace_period:
        raise LoanOverdue(
            f"Loan overdue, cannot repay: grace period ended {loan.end_time + config.loan_grace_period}"
        )

    accrued = commit_accrual(loan, project_loan(view, loan, rate_inputs, config))
    pay = view.get_unit(loan.debt_token).round(min(amount, accrued.total_debt))
    if pay <= 0:
        raise ZeroAmount("Repay amount rounds to zero")

    settled, _ = settle_payment(accrued, pay)

    symbol = loan_symbol(collateral_id)
    contract_id = f"repay_{symbol}"
    moves = [Move(pay, loan.debt_token, payer, config.custodian_wallet, contract_id)]
    if settled.total_debt <= 0:
        moves.append(Move(
            Decimal("1"), position_symbol(collateral_id),
            config.custodian_wallet, loan.borrower, contract_id,
        ))
        settled = clear_record(settled)

    origin = TransactionOrigin(OriginType.USER_ACTION, payer, symbol, "REPAY")
    return build_transaction(view, moves, [_loan_change(view, settled)], origin=origin)


def compute_liquidation(
    view: LedgerView,
    liquidator: str,
    collateral_id: int,
    max_repay_amount: Decimal,
    price_ratio: Decimal,
    rate_inputs: RateInputs,
    config: LendingConfig,
) -> PendingTransaction:
    """
    Liquidate an unhealthy loan.

    The liquidator pays min(x, max_repay_amount, total_debt) into the
    custodian and receives that amount plus the bonus in collateral,
    capped at what is left. When the remaining collateral falls below the
    threshold the loan closes whatever debt is left. With config.auto_slash
    the position is also slashed in the same transaction and the residual
    debt written off; otherwise slash() does both later.

    Raises:
        ZeroAmount, NoActiveLoan, NotLiquidatable
    """
    max_repay_amount = Decimal(str(max_repay_amount))
    if max_repay_amount <= 0:
        raise ZeroAmount("Max repay amount must be greater than zero")

    loan = _require_active(view, collateral_id)
    accrued = commit_accrual(loan, project_loan(view, loan, rate_inputs, config))
    total_debt = accrued.total_debt

    debt_unit = view.get_unit(loan.debt_token)
    max_borrowable = debt_unit.round(calculate_max_borrowable(
        accrued.remaining_collateral_amount, price_ratio, config.ltv_bps,
    ))
    if not is_liquidatable(max_borrowable, total_debt):
        raise NotLiquidatable(
            f"Loan #{collateral_id} is healthy: max borrowable {max_borrowable} > debt {total_debt}"
        )

    collateral_value = accrued.remaining_collateral_amount * price_ratio
    x = calculate_liquidation_amount(
        total_debt, collateral_value, config.liquidation_target, config.liquidation_bonus,
    )
    repay = debt_unit.round(min(x, max_repay_amount, total_debt))
    if repay <= 0:
        raise NotLiquidatable(f"Nothing to repay on loan #{collateral_id}")

    collateral_unit = view.get_unit(config.collateral_token)
    seized = collateral_unit.round(calculate_seized_collateral(
        repay, price_ratio, config.liquidation_bonus, accrued.remaining_collateral_amount,
    ))

    settled, _ = settle_payment(accrued, repay)
    remaining = accrued.remaining_collateral_amount - seized
    settled = replace(settled, remaining_collateral_amount=remaining)
    if settled.total_debt <= 0:
        settled = replace(settled, active=False)

    symbol = loan_symbol(collateral_id)
    contract_id = f"liquidate_{symbol}"
    moves = [Move(repay, loan.debt_token, liquidator, config.custodian_wallet, contract_id)]
    if seized > 0:
        moves.append(Move(seized, config.collateral_token, config.staking_pool_wallet, liquidator, contract_id))

    pos_symbol = position_symbol(collateral_id)
    position_state = with_amount(view.get_unit_state(pos_symbol), remaining)

    if remaining < config.min_collateral_threshold:
        if config.auto_slash:
            slash_moves, position_state = _slash_effects(view, settled, remaining, config, contract_id)
            moves.extend(slash_moves)
            settled = write_off(settled)
        else:
            # Closed and left for slash(), which writes off any residual debt.
            settled = replace(settled, active=False)

    changes = [
        _loan_change(view, settled),
        UnitStateChange(pos_symbol, view.get_unit_state(pos_symbol), position_state),
    ]
    origin = TransactionOrigin(OriginType.USER_ACTION, liquidator, symbol, "LIQUIDATE")
    return build_transaction(view, moves, changes, origin=origin)


def compute_slash(
    view: LedgerView,
    caller: str,
    collateral_id: int,
    config: LendingConfig,
) -> PendingTransaction:
    """
    Forfeit a closed position whose remaining collateral is below the
    threshold: burn the NFT, sweep the underlying to the sink, clear the
    record.

    Raises:
        CannotSlash
    """
    loan = load_loan(view, collateral_id)
    slashable, remaining = can_slash_loan(loan, config.min_collateral_threshold)
    if not slashable:
        raise CannotSlash(f"Cannot slash collateral #{collateral_id} (remaining {remaining})")

    symbol = loan_symbol(collateral_id)
    contract_id = f"slash_{symbol}"
    moves, position_state = _slash_effects(view, loan, remaining, config, contract_id)
    pos_symbol = position_symbol(collateral_id)
    changes = [
        _loan_change(view, write_off(loan)),
        UnitStateChange(pos_symbol, view.get_unit_state(pos_symbol), position_state),
    ]
    origin = TransactionOrigin(OriginType.USER_ACTION, caller, symbol, "SLASH")
    return build_transaction(view, moves, changes, origin=origin)


def compute_claim(
    view: LedgerView,
    caller: str,
    collateral_id: int,
    config: LendingConfig,
) -> PendingTransaction:
    """
    Return a closed loan's NFT (and so its remaining collateral) to the
    borrower and clear the record.

    Collateral below the slash threshold is forfeit and cannot be claimed.

    Raises:
        NoActiveLoan (no record), LoanStillActive, NotBorrower, CannotClaim
    """
    loan = load_loan(view, collateral_id)
    if loan is None:
        raise NoActiveLoan(f"No loan for collateral #{collateral_id}")
    if loan.active:
        raise LoanStillActive(f"Loan still active for collateral #{collateral_id}")
    if loan.borrower is None or caller != loan.borrower:
        raise NotBorrower(f"{caller} is not the borrower of loan #{collateral_id}")
    if loan.remaining_collateral_amount < config.min_collateral_threshold:
        raise CannotClaim(
            f"Collateral #{collateral_id} is below the slash threshold "
            f"({loan.remaining_collateral_amount} < {config.min_collateral_threshold}); slash it instead"
        )

    symbol = loan_symbol(collateral_id)
    contract_id = f"claim_{symbol}"
    moves = [Move(Decimal("1"), position_symbol(collateral_id), config.custodian_wallet, loan.borrower, contract_id)]
    origin = TransactionOrigin(OriginType.USER_ACTION, caller, symbol, "CLAIM")
    return build_transaction(view, moves, [_loan_change(view, clear_record(loan))], origin=origin)
