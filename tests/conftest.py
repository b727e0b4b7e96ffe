"""
conftest.py - Shared pytest fixtures for stakelend tests

Provides common fixtures used across unit, functional and conformance tests:
- Bare ledgers (empty, with tokens and wallets)
- Pools with default and custom configs
- A pool with an open loan (2000 STK locked for 30 days, 75% of max borrowed)
"""

import pytest
from datetime import datetime
from decimal import Decimal

from stakelend import Ledger, LendingConfig, token

from tests.builders import T0, build_pool, open_loan


# =============================================================================
# LEDGER FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return Ledger("test", T0, verbose=False, test_mode=True)


@pytest.fixture
def token_ledger():
    """Ledger with USDX, STK and two wallets."""
    ledger = Ledger("test", datetime(2025, 1, 1), verbose=False, test_mode=True)
    ledger.register_unit(token("USDX", "USD Stablecoin"))
    ledger.register_unit(token("STK", "Staking Token"))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    return ledger


@pytest.fixture
def funded_ledger(token_ledger):
    """Token ledger with alice holding 10,000 USDX."""
    token_ledger.set_balance("alice", "USDX", Decimal("10000"))
    return token_ledger


# =============================================================================
# POOL FIXTURES
# =============================================================================

@pytest.fixture
def pool():
    """Default-config pool, STK and USDX both priced at 1."""
    return build_pool()


@pytest.fixture
def manual_slash_pool():
    """Pool that leaves slashing to an explicit slash() call."""
    return build_pool(config=LendingConfig(auto_slash=False))


@pytest.fixture
def loan_pool(pool):
    """
    Pool with loan #1 open: alice locked 2000 STK for 30 days at T0 and
    borrowed 1125 USDX (75% of the 1500 max).
    """
    open_loan(pool)
    return pool


@pytest.fixture
def manual_loan_pool(manual_slash_pool):
    open_loan(manual_slash_pool)
    return manual_slash_pool
