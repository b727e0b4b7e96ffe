"""
Conformance Test Suite

Property-based checks of the invariants the lending pool must hold under
arbitrary use, grouped by invariant:
1. conservation.py - supplies, staking pool backing and NFT custody
2. atomicity.py - failed operations leave no trace
3. idempotency.py - replayed transactions apply once
4. determinism.py - identical operation sequences give identical ledgers
5. debt_invariants.py - accrual and repayment accounting
6. rate_invariants.py - borrow rate bounds
7. reentrancy.py - one mutating operation at a time

These tests use hypothesis for property-based testing.
"""
