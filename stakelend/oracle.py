"""
oracle.py - Price feeds consumed by the lending pool.

Provides:
- PriceOracle: protocol the pool depends on
- PriceQuote: a price plus a liveness flag
- StaticPriceOracle: fixed prices, never stale
- HeartbeatPriceOracle: time series of observations; a quote is stale when
  the latest observation is older than the feed's heartbeat

Prices are normalized to a common quote currency, so the collateral/debt
price ratio is price(collateral) / price(debt).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple, Protocol, runtime_checkable
from bisect import bisect_right


@dataclass(frozen=True, slots=True)
class PriceQuote:
    """Price of one token and whether the feed behind it has gone quiet."""
    value: Decimal
    is_stale: bool = False
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.value, Decimal):
            object.__setattr__(self, 'value', Decimal(str(self.value)))


@runtime_checkable
class PriceOracle(Protocol):
    """
    Source of token prices.

    price() returns None when the oracle knows nothing about the token at
    or before `now`.
    """

    def price(self, token: str, now: datetime) -> Optional[PriceQuote]:
        ...


class StaticPriceOracle:
    """Time-independent prices. Quotes are never stale."""

    def __init__(self, prices: Dict[str, Decimal]):
        self.prices = {k: Decimal(str(v)) for k, v in prices.items()}

    def price(self, token: str, now: datetime) -> Optional[PriceQuote]:
        value = self.prices.get(token)
        if value is None:
            return None
        return PriceQuote(value=value)

    def set_price(self, token: str, price: Decimal) -> None:
        self.prices[token] = Decimal(str(price))

    def __repr__(self):
        return f"StaticPriceOracle({len(self.prices)} prices)"


class HeartbeatPriceOracle:
    """
    Price observations over time with a staleness timeout.

    The quote at `now` is the most recent observation at or before `now`.
    It is stale when now - observed_at > heartbeat. Tokens listed in
    `pegged` always quote 1 and are never stale.

    Example:
        oracle = HeartbeatPriceOracle(timedelta(hours=1), pegged={"USDX"})
        oracle.add_price("STK", datetime(2025, 1, 1), Decimal("2.5"))
        oracle.price("STK", datetime(2025, 1, 1, 0, 30))   # fresh
        oracle.price("STK", datetime(2025, 1, 1, 2))       # stale
    """

    def __init__(
        self,
        heartbeat: timedelta,
        price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None,
        pegged: Iterable[str] = (),
    ):
        if heartbeat <= timedelta(0):
            raise ValueError(f"heartbeat must be positive, got {heartbeat}")
        self.heartbeat = heartbeat
        self.pegged = frozenset(pegged)
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}
        for token, path in (price_paths or {}).items():
            if path:
                self.price_history[token] = sorted(
                    ((ts, Decimal(str(p))) for ts, p in path), key=lambda x: x[0]
                )

    def add_price(self, token: str, timestamp: datetime, price: Decimal) -> None:
        history = self.price_history.setdefault(token, [])
        history.append((timestamp, Decimal(str(price))))
        history.sort(key=lambda x: x[0])

    def add_prices(self, prices: Dict[str, Decimal], timestamp: datetime) -> None:
        for token, price in prices.items():
            self.add_price(token, timestamp, price)

    def price(self, token: str, now: datetime) -> Optional[PriceQuote]:
        if token in self.pegged:
            return PriceQuote(value=Decimal("1"), updated_at=now)

        history = self.price_history.get(token)
        if not history:
            return None

        idx = bisect_right([ts for ts, _ in history], now)
        if idx == 0:
            return None

        observed_at, value = history[idx - 1]
        return PriceQuote(
            value=value,
            is_stale=(now - observed_at) > self.heartbeat,
            updated_at=observed_at,
        )

    def get_all_timestamps(self, token: Optional[str] = None) -> List[datetime]:
        """Sorted observation times for one token, or for all tokens."""
        if token:
            return [ts for ts, _ in self.price_history.get(token, [])]
        stamps = set()
        for path in self.price_history.values():
            stamps.update(ts for ts, _ in path)
        return sorted(stamps)

    def __repr__(self):
        observations = sum(len(h) for h in self.price_history.values())
        return (f"HeartbeatPriceOracle({len(self.price_history)} tokens, "
                f"{observations} observations, heartbeat={self.heartbeat})")
