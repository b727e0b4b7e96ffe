"""Named failures raised by the lending pool."""

from .core import LedgerError


class LendingError(LedgerError):
    """Base class for lending errors. `category` groups them for callers."""
    category = "lending"


# input

class ZeroAmount(LendingError):
    """Amount must be greater than zero"""
    category = "input"


class UnsupportedDebtToken(LendingError):
    """Debt token is not on the pool's allow-list"""
    category = "input"


class InvalidCollateral(LendingError):
    """Collateral id does not name a staking position"""
    category = "input"


# state

class NoActiveLoan(LendingError):
    """No active loan exists for the collateral"""
    category = "state"


class LoanAlreadyExists(LendingError):
    """A loan record is already open against the collateral"""
    category = "state"


class CollateralUnlocked(LendingError):
    """Collateral lock has already expired"""
    category = "state"


class LoanStillActive(LendingError):
    """Loan still active"""
    category = "state"


class ProtocolPaused(LendingError):
    """Pool is paused"""
    category = "state"


class ReentrantCall(LendingError):
    """Pool operation entered while another is in progress"""
    category = "state"


# authorization

class NotBorrower(LendingError):
    """Caller is not the borrower"""
    category = "authorization"


class NotCollateralOwner(LendingError):
    """Caller does not own the staking position"""
    category = "authorization"


# temporal

class LoanOverdue(LendingError):
    """Loan overdue, cannot repay"""
    category = "temporal"


# economic

class BorrowLimitExceeded(LendingError):
    """Requested amount exceeds max borrowable"""
    category = "economic"


class InsufficientLiquidity(LendingError):
    """Custodian does not hold enough of the debt token"""
    category = "economic"


class NotLiquidatable(LendingError):
    """Position is healthy"""
    category = "economic"


class CannotSlash(LendingError):
    """Cannot slash"""
    category = "economic"


class CannotClaim(LendingError):
    """Remaining collateral is below the slash threshold"""
    category = "economic"


class TransferRejected(LendingError):
    """Ledger rejected the transaction; nothing was applied"""
    category = "economic"


# oracle

class StalePrice(LendingError):
    """Price feed has not been refreshed within its heartbeat"""
    category = "oracle"


class MissingPrice(LendingError):
    """Oracle has no price for the token"""
    category = "oracle"
