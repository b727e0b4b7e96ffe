"""
Units module - staking positions and the loans written against them.

- stake_position: the staking-position NFT and its lock record
- loan: the Loan record, settlement math and the compute_* transitions
"""

from .stake_position import (
    LockRecord,
    position_symbol,
    create_stake_position_unit,
    load_lock_record,
    owner_of,
    compute_stake,
)

from .loan import (
    Loan,
    SettlementBreakdown,
    loan_symbol,
    load_loan,
    to_state_dict,
    create_loan_unit,
    settle_payment,
    calculate_max_borrowable,
    calculate_health_factor,
    calculate_liquidation_amount,
    calculate_seized_collateral,
    is_liquidatable,
    can_slash_loan,
    compute_borrow,
    compute_repayment,
    compute_liquidation,
    compute_slash,
    compute_claim,
)
