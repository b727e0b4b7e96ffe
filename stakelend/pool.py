"""
pool.py - LendingPool, the public surface of the lending engine.

The pool owns the loan registry (loan record units on the ledger), the
debt-token allow-list, the pause switch and the bad-debt tally. Every
mutating call follows the same shape:

    1. take the call lock (re-entry raises ReentrantCall) and check pause
    2. read prices and staking inputs through the injected capabilities
    3. build a PendingTransaction with a pure compute_* function
    4. execute it on the ledger; anything but APPLIED is TransferRejected
    5. release the call lock, on every exit path

Queries project accrual to the ledger's current time without committing it.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
import logging

from .accrual import AccrualProjection, remaining_lock_seconds
from .config import LendingConfig
from .core import ExecuteResult, PendingTransaction, UNIT_TYPE_COLLATERAL_LOAN
from .errors import (
    LendingError, UnsupportedDebtToken, InvalidCollateral, NoActiveLoan,
    ProtocolPaused, ReentrantCall, TransferRejected, StalePrice, MissingPrice,
)
from .ledger import Ledger
from .oracle import PriceOracle
from .rates import BorrowRate, RateInputs, calculate_borrow_rate
from .staking import StakingSchedule
from .units.loan import (
    Loan, SettlementBreakdown,
    load_loan, project_loan,
    calculate_max_borrowable, calculate_health_factor, is_liquidatable,
    can_slash_loan,
    compute_borrow, compute_repayment, compute_liquidation,
    compute_slash, compute_claim,
)
from .units.stake_position import load_lock_record

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RepayReceipt:
    collateral_id: int
    payer: str
    amount_paid: Decimal
    settlement: SettlementBreakdown
    remaining_debt: Decimal
    closed: bool


@dataclass(frozen=True, slots=True)
class LiquidationReceipt:
    collateral_id: int
    liquidator: str
    repay_amount: Decimal
    collateral_seized: Decimal
    settlement: SettlementBreakdown
    remaining_debt: Decimal
    remaining_collateral: Decimal
    closed: bool
    slashed: bool
    bad_debt: Decimal


def _settlement_between(before: Loan, after: Loan) -> SettlementBreakdown:
    return SettlementBreakdown(
        penalty=after.total_penalty_paid - before.total_penalty_paid,
        interest=after.total_interest_paid - before.total_interest_paid,
        principal=after.total_principal_paid - before.total_principal_paid,
    )


class LendingPool:
    """
    Borrow stablecoins against staking-position NFTs.

    Wallet ids stand in for addresses; the caller of every mutating
    operation is passed explicitly as the first argument.

    Example:
        pool = LendingPool(ledger, oracle, staking, debt_tokens=["USDX"])
        pool.borrow_with_nft("alice", 1, "USDX", Decimal("500"))
        pool.repay_full("alice", 1)
    """

    def __init__(
        self,
        ledger: Ledger,
        oracle: PriceOracle,
        staking: StakingSchedule,
        config: Optional[LendingConfig] = None,
        debt_tokens: Iterable[str] = (),
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.staking = staking
        self.config = config or LendingConfig()
        self.allowed_debt_tokens = set()
        self.bad_debt: Dict[str, Decimal] = {}
        self.paused = False
        self._locked = False

        for wallet in (self.config.custodian_wallet, self.config.staking_pool_wallet, self.config.sink_wallet):
            if not ledger.is_registered(wallet):
                ledger.register_wallet(wallet)
        for token in debt_tokens:
            self.allow_debt_token(token)

    # ========================================================================
    # GUARD
    # ========================================================================

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        if self._locked:
            logger.warning("%s rejected: re-entrant call", name)
            raise ReentrantCall(f"{name} called while another pool operation is in progress")
        if self.paused:
            logger.warning("%s rejected: pool is paused", name)
            raise ProtocolPaused(f"{name} rejected: pool is paused")
        self._locked = True
        try:
            yield
        except LendingError as e:
            logger.warning("%s rejected: %s: %s", name, type(e).__name__, e)
            raise
        finally:
            self._locked = False

    def _execute(self, pending: PendingTransaction, name: str) -> None:
        result = self.ledger.execute(pending)
        if result != ExecuteResult.APPLIED:
            raise TransferRejected(f"{name}: ledger returned {result.value}")

    # ========================================================================
    # CAPABILITIES
    # ========================================================================

    def _rate_inputs(self) -> RateInputs:
        return RateInputs.from_schedule(self.config.base_rate_bps, self.staking)

    def _quote(self, token: str) -> Decimal:
        quote = self.oracle.price(token, self.ledger.current_time)
        if quote is None:
            raise MissingPrice(f"No price for {token}")
        if quote.is_stale:
            raise StalePrice(f"Price for {token} is stale (last update {quote.updated_at})")
        return quote.value

    def _price_ratio(self, debt_token: str) -> Decimal:
        """Collateral price in units of the debt token."""
        debt_price = self._quote(debt_token)
        if debt_price <= 0:
            raise MissingPrice(f"Non-positive price for {debt_token}")
        return self._quote(self.config.collateral_token) / debt_price

    def _require_debt_token(self, debt_token: str) -> None:
        if debt_token not in self.allowed_debt_tokens:
            raise UnsupportedDebtToken(f"{debt_token} is not an allowed debt token")

    def _require_loan(self, collateral_id: int) -> Loan:
        loan = load_loan(self.ledger, collateral_id)
        if loan is None:
            raise NoActiveLoan(f"No loan for collateral #{collateral_id}")
        return loan

    # ========================================================================
    # MUTATING OPERATIONS
    # ========================================================================

    def borrow_with_nft(self, caller: str, collateral_id: int, debt_token: str, amount: Decimal) -> Loan:
        """Open a loan of `amount` debt_token against staking position collateral_id."""
        with self._operation("borrow_with_nft"):
            self._require_debt_token(debt_token)
            record = load_lock_record(self.ledger, collateral_id)
            if record.collateral_token != self.config.collateral_token:
                raise InvalidCollateral(
                    f"Position #{collateral_id} locks {record.collateral_token}, "
                    f"pool accepts {self.config.collateral_token}"
                )
            limit = self._max_borrowable(collateral_id, debt_token)
            pending = compute_borrow(
                self.ledger, caller, collateral_id, debt_token, amount, limit, self.config,
            )
            self._execute(pending, "borrow_with_nft")
            loan = load_loan(self.ledger, collateral_id)
            logger.info(
                "borrow: collateral=%s borrower=%s amount=%s %s end=%s",
                collateral_id, caller, loan.borrowed_amount, debt_token, loan.end_time,
            )
            return loan

    def repay(self, caller: str, collateral_id: int, amount: Decimal) -> RepayReceipt:
        """Pay down a loan. Anyone may repay any loan."""
        with self._operation("repay"):
            return self._repay(caller, collateral_id, amount)

    def repay_full(self, caller: str, collateral_id: int) -> RepayReceipt:
        """Pay the loan's whole debt as of now and get the NFT back to the borrower."""
        with self._operation("repay_full"):
            loan = self._require_loan(collateral_id)
            if not loan.active:
                raise NoActiveLoan(f"No active loan for collateral #{collateral_id}")
            debt = project_loan(self.ledger, loan, self._rate_inputs(), self.config).total_debt
            return self._repay(caller, collateral_id, debt)

    def _repay(self, caller: str, collateral_id: int, amount: Decimal) -> RepayReceipt:
        before = load_loan(self.ledger, collateral_id)
        pending = compute_repayment(
            self.ledger, caller, collateral_id, amount, self._rate_inputs(), self.config,
        )
        self._execute(pending, "repay")
        after = load_loan(self.ledger, collateral_id)
        settlement = _settlement_between(before, after)
        closed = not after.active
        logger.info(
            "repay: collateral=%s payer=%s paid=%s (penalty=%s interest=%s principal=%s) closed=%s",
            collateral_id, caller, settlement.total,
            settlement.penalty, settlement.interest, settlement.principal, closed,
        )
        return RepayReceipt(
            collateral_id=collateral_id,
            payer=caller,
            amount_paid=settlement.total,
            settlement=settlement,
            remaining_debt=after.total_debt,
            closed=closed,
        )

    def liquidate(self, caller: str, collateral_id: int, max_repay_amount: Decimal) -> LiquidationReceipt:
        """Repay part of an unhealthy loan in exchange for discounted collateral."""
        with self._operation("liquidate"):
            before = self._require_loan(collateral_id)
            if not before.active:
                raise NoActiveLoan(f"No active loan for collateral #{collateral_id}")
            price_ratio = self._price_ratio(before.debt_token)
            pending = compute_liquidation(
                self.ledger, caller, collateral_id, max_repay_amount,
                price_ratio, self._rate_inputs(), self.config,
            )
            self._execute(pending, "liquidate")
            after = load_loan(self.ledger, collateral_id)

            seized = sum(
                (m.quantity for m in pending.moves
                 if m.unit_symbol == self.config.collateral_token and m.dest == caller),
                Decimal("0"),
            )
            repaid = sum(
                (m.quantity for m in pending.moves
                 if m.unit_symbol == before.debt_token and m.source == caller),
                Decimal("0"),
            )
            bad_debt = after.written_off_debt - before.written_off_debt
            self._record_bad_debt(collateral_id, before.debt_token, bad_debt)

            logger.info(
                "liquidate: collateral=%s liquidator=%s repaid=%s seized=%s remaining=%s slashed=%s",
                collateral_id, caller, repaid, seized, after.remaining_collateral_amount, after.slashed,
            )
            return LiquidationReceipt(
                collateral_id=collateral_id,
                liquidator=caller,
                repay_amount=repaid,
                collateral_seized=seized,
                settlement=_settlement_between(before, after),
                remaining_debt=after.total_debt,
                remaining_collateral=after.remaining_collateral_amount,
                closed=not after.active,
                slashed=after.slashed and not before.slashed,
                bad_debt=bad_debt,
            )

    def slash(self, caller: str, collateral_id: int) -> Loan:
        """Forfeit a closed position whose collateral fell below the threshold."""
        with self._operation("slash"):
            before = load_loan(self.ledger, collateral_id)
            pending = compute_slash(self.ledger, caller, collateral_id, self.config)
            self._execute(pending, "slash")
            after = load_loan(self.ledger, collateral_id)
            self._record_bad_debt(collateral_id, after.debt_token, after.written_off_debt - before.written_off_debt)
            logger.info("slash: collateral=%s caller=%s", collateral_id, caller)
            return after

    def claim_collateral(self, caller: str, collateral_id: int) -> Loan:
        """Borrower takes back the NFT of a closed loan."""
        with self._operation("claim_collateral"):
            pending = compute_claim(self.ledger, caller, collateral_id, self.config)
            self._execute(pending, "claim_collateral")
            logger.info("claim: collateral=%s borrower=%s", collateral_id, caller)
            return load_loan(self.ledger, collateral_id)

    def _record_bad_debt(self, collateral_id: int, debt_token: str, amount: Decimal) -> None:
        if amount <= 0:
            return
        self.bad_debt[debt_token] = self.bad_debt.get(debt_token, Decimal("0")) + amount
        logger.warning("bad debt: collateral=%s wrote off %s %s", collateral_id, amount, debt_token)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_loan(self, collateral_id: int) -> Optional[Loan]:
        """Stored loan record, without accrual applied."""
        return load_loan(self.ledger, collateral_id)

    def is_loan_active(self, collateral_id: int) -> bool:
        loan = load_loan(self.ledger, collateral_id)
        return loan is not None and loan.active

    def loan_ids(self) -> List[int]:
        """Collateral ids with a loan record, in ascending order."""
        ids = []
        for symbol in self.ledger.list_units():
            if self.ledger.get_unit(symbol).unit_type == UNIT_TYPE_COLLATERAL_LOAN:
                ids.append(self.ledger.get_unit_state(symbol)['collateral_id'])
        return sorted(ids)

    def get_loan_debt(self, collateral_id: int) -> AccrualProjection:
        """Principal, interest and penalty projected to now. Nothing is written."""
        loan = self._require_loan(collateral_id)
        return project_loan(self.ledger, loan, self._rate_inputs(), self.config)

    def _max_borrowable(self, collateral_id: int, debt_token: str) -> Decimal:
        loan = load_loan(self.ledger, collateral_id)
        if loan is not None and loan.active:
            amount = loan.remaining_collateral_amount
        else:
            amount = load_lock_record(self.ledger, collateral_id).amount
        limit = calculate_max_borrowable(amount, self._price_ratio(debt_token), self.config.ltv_bps)
        return self.ledger.get_unit(debt_token).round(limit)

    def max_borrowable(self, collateral_id: int, debt_token: str) -> Decimal:
        """
        Collateral value times LTV, in debt_token.

        Uses the loan's remaining collateral while a loan is active and the
        position's locked amount otherwise.
        """
        self._require_debt_token(debt_token)
        return self._max_borrowable(collateral_id, debt_token)

    def get_health_factor(self, collateral_id: int) -> Decimal:
        """max_borrowable * 1e18 / total_debt; Infinity with no debt."""
        loan = self._require_loan(collateral_id)
        if not loan.active:
            return Decimal("Infinity")
        debt = self.get_loan_debt(collateral_id).total_debt
        return calculate_health_factor(self._max_borrowable(collateral_id, loan.debt_token), debt)

    def is_liquidatable(self, collateral_id: int) -> bool:
        loan = load_loan(self.ledger, collateral_id)
        if loan is None or not loan.active:
            return False
        debt = self.get_loan_debt(collateral_id).total_debt
        return is_liquidatable(self._max_borrowable(collateral_id, loan.debt_token), debt)

    def get_loan_effective_rate(self, collateral_id: int) -> BorrowRate:
        """Borrow rate for an existing loan, from its remaining lock time now."""
        loan = self._require_loan(collateral_id)
        remaining = remaining_lock_seconds(loan.end_time, self.ledger.current_time)
        return calculate_borrow_rate(remaining, self._rate_inputs())

    def estimate_borrow_rate(self, collateral_id: int) -> BorrowRate:
        """Borrow rate a new loan against this position would pay right now."""
        record = load_lock_record(self.ledger, collateral_id)
        return calculate_borrow_rate(
            record.remaining_lock_time(self.ledger.current_time), self._rate_inputs(),
        )

    def can_slash(self, collateral_id: int) -> Tuple[bool, Decimal]:
        return can_slash_loan(load_loan(self.ledger, collateral_id), self.config.min_collateral_threshold)

    # ========================================================================
    # ADMIN
    # ========================================================================

    def allow_debt_token(self, token: str) -> None:
        self.ledger.get_unit(token)
        self.allowed_debt_tokens.add(token)
        logger.info("debt token allowed: %s", token)

    def disallow_debt_token(self, token: str) -> None:
        self.allowed_debt_tokens.discard(token)
        logger.info("debt token disallowed: %s", token)

    def set_min_collateral_threshold(self, threshold: Decimal) -> None:
        self.update_config(min_collateral_threshold=threshold)

    def update_config(self, **changes) -> None:
        """Replace config values; wallet ids cannot change once the pool exists."""
        fixed = {'custodian_wallet', 'staking_pool_wallet', 'sink_wallet', 'collateral_token'}
        if fixed & set(changes):
            raise ValueError(f"Cannot change {', '.join(sorted(fixed & set(changes)))} on a live pool")
        self.config = self.config.with_updates(**changes)
        logger.info("config updated: %s", ", ".join(f"{k}={v}" for k, v in sorted(changes.items())))

    def pause(self) -> None:
        self.paused = True
        logger.warning("pool paused")

    def unpause(self) -> None:
        self.paused = False
        logger.info("pool unpaused")
