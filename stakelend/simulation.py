"""
simulation.py - Price paths and rate tables for exercising the pool.

generate_price_path() produces a geometric-Brownian-motion path:

    S(t+dt) = S(t) * exp((mu - 0.5*sigma^2)*dt + sigma*sqrt(dt)*Z),  Z ~ N(0,1)

vectorized with numpy and seeded for reproducibility. load_price_path()
feeds it into a HeartbeatPriceOracle so a KeeperEngine can be driven
through a market move.

rate_curve() tabulates the borrow-rate engine over many remaining lock
times at once.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Sequence, Tuple

import numpy as np

from .oracle import HeartbeatPriceOracle
from .rates import RateInputs, calculate_borrow_rate

SECONDS_PER_YEAR = 365.0 * 24 * 60 * 60


def generate_price_path(
    start_price: float,
    start_time: datetime,
    step: timedelta,
    num_steps: int,
    volatility: float,
    drift: float = 0.0,
    seed: int = 42,
) -> List[Tuple[datetime, Decimal]]:
    """
    GBM path of num_steps observations, the first at start_time.

    Args:
        start_price: S(0), must be positive
        step: spacing between observations
        volatility: annualized sigma (0.6 for 60%)
        drift: annualized mu
        seed: numpy Generator seed

    Returns:
        [(timestamp, price)], prices rounded to 12 decimal places.
    """
    if start_price <= 0:
        raise ValueError(f"start_price must be positive, got {start_price}")
    if num_steps < 1:
        raise ValueError(f"num_steps must be at least 1, got {num_steps}")
    if volatility < 0:
        raise ValueError(f"volatility cannot be negative, got {volatility}")

    rng = np.random.default_rng(seed)
    dt = step.total_seconds() / SECONDS_PER_YEAR
    shocks = rng.standard_normal(num_steps - 1)
    log_returns = (drift - 0.5 * volatility ** 2) * dt + volatility * np.sqrt(dt) * shocks
    prices = start_price * np.exp(np.concatenate(([0.0], np.cumsum(log_returns))))

    return [
        (start_time + step * i, Decimal(f"{price:.12f}"))
        for i, price in enumerate(prices)
    ]


def load_price_path(
    oracle: HeartbeatPriceOracle,
    token: str,
    path: Sequence[Tuple[datetime, Decimal]],
) -> None:
    for timestamp, price in path:
        oracle.add_price(token, timestamp, price)


def rate_curve(remaining_times: Sequence[int], inputs: RateInputs) -> Dict[str, np.ndarray]:
    """
    Borrow rates for each remaining lock time (seconds).

    Returns:
        {'remaining_time', 'effective_rate', 'anti_arbitrage_rate'} as float
        arrays of equal length, rates in bps.
    """
    remaining = np.asarray(remaining_times, dtype=np.int64)
    rates = [calculate_borrow_rate(int(t), inputs) for t in remaining]
    return {
        'remaining_time': remaining,
        'effective_rate': np.array([float(r.effective_rate) for r in rates]),
        'anti_arbitrage_rate': np.array([float(r.anti_arbitrage_rate) for r in rates]),
    }
