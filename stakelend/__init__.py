"""
stakelend - Borrowing against staking-position NFTs

A lending pool on top of a double-entry ledger. Users lock collateral
tokens in the staking program, receive a position NFT, and borrow a
stablecoin against it.

Usage:
    from stakelend import (
        Ledger, LendingPool, LendingConfig, StaticPriceOracle,
        StaticStakingSchedule, token, compute_stake,
    )

    ledger = Ledger("pool", datetime(2025, 1, 1))
    ledger.register_unit(token("USDX", "USD Stablecoin"))
    ledger.register_unit(token("STK", "Staking Token"))
    ledger.register_wallet("alice")

    pool = LendingPool(
        ledger,
        StaticPriceOracle({"USDX": 1, "STK": 2}),
        StaticStakingSchedule(Decimal("800")),
        debt_tokens=["USDX"],
    )

    ledger.execute(compute_stake(ledger, "alice", 1, Decimal("1000"),
                                 30 * 86400, "STK", "staking_pool"))
    pool.borrow_with_nft("alice", 1, "USDX", Decimal("1000"))
"""

from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    LedgerError,
    InsufficientFunds,
    BalanceConstraintViolation,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    whole_unit_transfer_rule,
    token,
    SYSTEM_WALLET,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_STAKE_POSITION,
    UNIT_TYPE_COLLATERAL_LOAN,
    BPS_SCALE,
    WAD,
)

from .ledger import Ledger

from .config import LendingConfig

from .errors import (
    LendingError,
    ZeroAmount,
    UnsupportedDebtToken,
    InvalidCollateral,
    NoActiveLoan,
    LoanAlreadyExists,
    CollateralUnlocked,
    LoanStillActive,
    ProtocolPaused,
    ReentrantCall,
    NotBorrower,
    NotCollateralOwner,
    LoanOverdue,
    BorrowLimitExceeded,
    InsufficientLiquidity,
    NotLiquidatable,
    CannotSlash,
    CannotClaim,
    TransferRejected,
    StalePrice,
    MissingPrice,
)

from .oracle import PriceOracle, PriceQuote, StaticPriceOracle, HeartbeatPriceOracle

from .staking import LockPeriod, StakingSchedule, StaticStakingSchedule, DEFAULT_LOCK_PERIODS

from .rates import (
    RateInputs,
    BorrowRate,
    calculate_period_yield,
    calculate_anti_arbitrage_rate,
    calculate_borrow_rate,
)

from .accrual import AccrualProjection, project_accrual, commit_accrual

from .units import (
    LockRecord,
    load_lock_record,
    owner_of,
    compute_stake,
    Loan,
    SettlementBreakdown,
    load_loan,
)

from .pool import LendingPool, RepayReceipt, LiquidationReceipt

from .keeper import KeeperEngine
