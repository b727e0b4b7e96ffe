"""
keeper.py - Keeper engine

Liquidation and slashing are permissionless; somebody has to notice when a
loan turns unhealthy. KeeperEngine is that somebody.

Each step():
1. Advance ledger time
2. Walk every loan record in ascending collateral id order
3. Liquidate loans that are liquidatable, funded from the keeper wallet
4. Slash closed positions whose collateral is below the threshold

A failure on one loan is logged and the sweep moves on; the ledger's
transaction log is the record of what happened.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional
import logging

from .core import Transaction
from .errors import LendingError
from .pool import LendingPool

logger = logging.getLogger(__name__)


class KeeperEngine:
    """
    Polls a LendingPool and acts on unhealthy or slashable loans.

    Args:
        pool: the pool to watch
        keeper_wallet: wallet that pays for liquidations and receives the
            seized collateral
        max_repay_per_loan: cap on one liquidation; None means whatever
            the keeper holds of the loan's debt token
    """

    def __init__(
        self,
        pool: LendingPool,
        keeper_wallet: str,
        max_repay_per_loan: Optional[Decimal] = None,
    ):
        self.pool = pool
        self.ledger = pool.ledger
        self.keeper_wallet = keeper_wallet
        self.max_repay_per_loan = max_repay_per_loan
        if not self.ledger.is_registered(keeper_wallet):
            self.ledger.register_wallet(keeper_wallet)

    def _repay_budget(self, debt_token: str) -> Decimal:
        held = self.ledger.get_balance(self.keeper_wallet, debt_token)
        if self.max_repay_per_loan is None:
            return held
        return min(held, self.max_repay_per_loan)

    def step(self, timestamp: datetime) -> List[Transaction]:
        """
        Advance to timestamp and sweep every loan once.

        Returns:
            Transactions executed during the sweep.
        """
        self.ledger.advance_time(timestamp)
        start = len(self.ledger.transaction_log)

        for collateral_id in self.pool.loan_ids():
            try:
                self._process(collateral_id)
            except LendingError as e:
                logger.warning("keeper: collateral=%s skipped: %s: %s", collateral_id, type(e).__name__, e)

        return self.ledger.transaction_log[start:]

    def _process(self, collateral_id: int) -> None:
        if self.pool.is_liquidatable(collateral_id):
            loan = self.pool.get_loan(collateral_id)
            budget = self._repay_budget(loan.debt_token)
            if budget <= 0:
                logger.warning(
                    "keeper: collateral=%s liquidatable but keeper holds no %s",
                    collateral_id, loan.debt_token,
                )
                return
            receipt = self.pool.liquidate(self.keeper_wallet, collateral_id, budget)
            logger.info(
                "keeper: liquidated collateral=%s repaid=%s seized=%s",
                collateral_id, receipt.repay_amount, receipt.collateral_seized,
            )

        slashable, remaining = self.pool.can_slash(collateral_id)
        if slashable:
            self.pool.slash(self.keeper_wallet, collateral_id)
            logger.info("keeper: slashed collateral=%s remaining=%s", collateral_id, remaining)

    def run(
        self,
        timestamps: List[datetime],
        on_step: Optional[Callable[[datetime], None]] = None,
    ) -> List[Transaction]:
        """
        Step through timestamps in order.

        on_step(timestamp) runs before each sweep, e.g. to publish the
        prices for that instant to the oracle.
        """
        executed: List[Transaction] = []
        for timestamp in timestamps:
            if on_step is not None:
                on_step(timestamp)
            executed.extend(self.step(timestamp))
        return executed
