"""
Core types for the stakelend ledger substrate.

Everything the lending engine moves or records goes through the types in
this module:

1. LedgerView: the read-only protocol pure functions are written against
2. Move / UnitStateChange / PendingTransaction / Transaction: intent and fact
3. Unit: an asset definition (debt token, collateral token, staking-position
   NFT, loan record) carrying a frozen state dictionary
4. LedgerError and the ledger-level exceptions
5. Unit factories and transfer rules

Functions here never mutate ledger state. They build values that
Ledger.execute() later applies atomically.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
import copy
import hashlib
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT
# ============================================================================
#
# Token amounts carry 18 fractional digits and are multiplied by prices and
# rates before being quantized, so the working precision has to hold roughly
# 40 significant digits. prec=50 leaves headroom. No other module may change
# the global context; use decimal.localcontext() for local overrides.
#
_STAKELEND_DECIMAL_CONTEXT = getcontext()
_STAKELEND_DECIMAL_CONTEXT.prec = 50
_STAKELEND_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Issuance/burn wallet. Exempt from balance validation.
SYSTEM_WALLET = "system"

UNIT_TYPE_TOKEN = "TOKEN"
UNIT_TYPE_STAKE_POSITION = "STAKE_POSITION"
UNIT_TYPE_COLLATERAL_LOAN = "COLLATERAL_LOAN"

# Quantities whose magnitude is below this are treated as zero.
QUANTITY_EPSILON = Decimal("1e-18")

# ERC-20 style precision for fungible tokens.
TOKEN_DECIMAL_PLACES = 18

BPS_SCALE = Decimal("10000")
SECONDS_PER_DAY = Decimal("86400")

# Fixed-point "one" for health factors: 1e18 == 100%.
WAD = Decimal(10) ** 18

DECIMAL_ROUNDING = {
    UNIT_TYPE_TOKEN: ROUND_DOWN,
    UNIT_TYPE_STAKE_POSITION: ROUND_DOWN,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# wallet id -> quantity held, for one unit
Positions = Dict[str, Decimal]

# unit symbol -> quantity held, for one wallet
BalanceMap = Dict[str, Decimal]

# free-form state dictionary attached to a unit
UnitState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only access to ledger state.

    Pure functions take a LedgerView to declare that they only read. Ledger
    implements it (alongside its mutating methods); tests use FakeView.
    """

    @property
    def current_time(self) -> datetime:
        """Logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Balance of one unit in one wallet (zero when absent)."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Copy of the unit's state dictionary."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Non-zero holdings of a unit, keyed by wallet."""
        ...

    def list_wallets(self) -> Set[str]:
        """All registered wallet ids."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """The Unit registered under symbol."""
        ...

    def has_unit(self, symbol: str) -> bool:
        """Whether a unit is registered under symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of Ledger.execute().

    APPLIED: validated and applied.
    ALREADY_APPLIED: the same intent was executed before; nothing changed.
    REJECTED: validation failed; nothing changed.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Where a transaction came from, for the audit trail."""
    USER_ACTION = "user_action"
    CONTRACT = "contract"
    KEEPER = "keeper"
    SYSTEM = "system"
    EXTERNAL = "external"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for ledger and lending errors."""
    pass


class InsufficientFunds(LedgerError):
    """A move would take a wallet below the unit's minimum balance."""
    pass


class BalanceConstraintViolation(LedgerError):
    """A move would break a unit's min/max balance constraint."""
    pass


class TransferRuleViolation(LedgerError):
    """A move breaks the unit's transfer rule."""
    pass


class UnitNotRegistered(LedgerError):
    """The unit symbol is unknown to the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """The wallet id is unknown to the ledger."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Provenance of a transaction.

    Attributes:
        origin_type: USER_ACTION, KEEPER, SYSTEM, ...
        source_id: wallet or component that initiated it
        unit_symbol: the unit the operation is about, if any
        event_type: operation name (BORROW, REPAY, LIQUIDATE, SLASH, CLAIM, ...)
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Before/after snapshot of one unit's state.

    Keeping both sides lets the transaction log answer "what changed" and
    lets a reader reconstruct either side.
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Fields whose value differs, as name -> (old, new)."""
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        changes = {}
        for key in set(old) | set(new):
            if old.get(key) != new.get(key):
                changes[key] = (old.get(key), new.get(key))
        return changes


# ============================================================================
# MOVES AND TRANSACTIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A transfer of quantity units of unit_symbol from source to dest.

    contract_id names the operation that produced the move
    (e.g. "repay_LOAN-7"). Validated on construction.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        for name in ('source', 'dest', 'unit_symbol', 'contract_id'):
            value = getattr(self, name)
            if not value or not value.strip():
                raise ValueError(f"Move {name} cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if not self.quantity.is_finite():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if abs(self.quantity) < QUANTITY_EPSILON:
            raise ValueError("Move quantity is effectively zero")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}->{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """Canonical text for a Decimal: Decimal("1.0") and Decimal("1.00") agree."""
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """Order-independent, type-tagged serialization used for content hashing."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(item) for item in value) + "]"
    if isinstance(value, (set, frozenset)):
        return "<" + ",".join(_canonicalize(item) for item in sorted(value, key=str)) + ">"
    return f"R:{value!r}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[UnitStateChange, ...],
    origin: TransactionOrigin,
    units_to_create: Tuple['Unit', ...] = (),
) -> str:
    """
    Content hash of a transaction's intent.

    Depends only on what the transaction does, never on when it is executed,
    so re-submitting the same intent is detected by Ledger.execute().
    """
    parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.unit_symbol:
        parts.append(f"unit:{origin.unit_symbol}")
    if origin.event_type:
        parts.append(f"event:{origin.event_type}")

    for unit in sorted(units_to_create, key=lambda u: u.symbol):
        parts.append(f"unit_create:{unit.symbol}|{unit.unit_type}|{_canonicalize(unit.state)}")

    ordered_moves = sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id),
    )
    for m in ordered_moves:
        parts.append(f"move:{_normalize_decimal(m.quantity)}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}")

    for sc in sorted(state_changes, key=lambda s: s.unit):
        parts.append(f"state_change:{sc.unit}|{_canonicalize(sc.old_state)}|{_canonicalize(sc.new_state)}")

    return hashlib.sha256("|".join(parts).encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    Intent: moves and state changes that should be applied together.

    Built by pure functions, executed by Ledger.execute(). intent_id is
    derived from the content when not supplied.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            object.__setattr__(
                self, 'intent_id',
                _compute_intent_id(self.moves, self.state_changes, self.origin, self.units_to_create),
            )

    def is_empty(self) -> bool:
        """True when there is nothing to move, change or create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Assemble a PendingTransaction stamped with the view's current time.

    State snapshots are deep-copied so later mutation of the caller's dicts
    cannot leak into the transaction.

    Example:
        old = view.get_unit_state("LOAN-7")
        new = {**old, 'active': False}
        tx = build_transaction(view, [
            Move(Decimal("100"), "USDX", "alice", "custodian", "repay_LOAN-7"),
        ], [UnitStateChange("LOAN-7", old, new)])
    """
    if origin is None:
        origin = TransactionOrigin(origin_type=OriginType.CONTRACT, source_id="contract")

    copied = tuple(
        UnitStateChange(
            unit=sc.unit,
            old_state=copy.deepcopy(sc.old_state),
            new_state=copy.deepcopy(sc.new_state),
        )
        for sc in (state_changes or ())
    )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """A no-op PendingTransaction at the view's current time."""
    return PendingTransaction(
        moves=(),
        state_changes=(),
        origin=TransactionOrigin(OriginType.CONTRACT, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    Fact: an executed PendingTransaction as recorded in the ledger log.

    exec_id and sequence_number are assigned by the executing ledger;
    contract_ids is derived from the moves.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.contract_ids is None:
            object.__setattr__(self, 'contract_ids', frozenset(m.contract_id for m in self.moves))

    def describe(self) -> str:
        """Multi-line human-readable summary, used for verbose logging."""
        lines = [
            f"Transaction {self.exec_id} (intent {self.intent_id})",
            f"  origin: {self.origin}",
            f"  executed: {self.execution_time}",
        ]
        for unit in self.units_to_create:
            lines.append(f"  + unit {unit.symbol} ({unit.unit_type})")
        for i, move in enumerate(self.moves):
            lines.append(f"  [{i}] {move.quantity} {move.unit_symbol}: {move.source} -> {move.dest}")
        for sc in self.state_changes:
            for name, (old_val, new_val) in sorted(sc.changed_fields().items()):
                lines.append(f"  {sc.unit}.{name}: {old_val!r} -> {new_val!r}")
        return "\n".join(lines)


# Transfer rules raise TransferRuleViolation to veto a move.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Immutable, key-sorted form of a state dict."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Inverse of _freeze_state."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    An asset or record type registered with the ledger.

    Attributes:
        symbol: identifier ("USDX", "STK", "SPOS-7", "LOAN-7")
        name: human-readable name
        unit_type: TOKEN, STAKE_POSITION or COLLATERAL_LOAN
        min_balance / max_balance: per-wallet bounds
        decimal_places: rounding precision (None = no rounding)
        transfer_rule: optional veto on moves of this unit
        _frozen_state: state dict in frozen form; read through .state
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """A fresh dict of the unit's state on every access."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal, rounding: Optional[str] = None) -> Decimal:
        """
        Quantize value to this unit's precision.

        The rounding mode defaults to the unit type's entry in
        DECIMAL_ROUNDING; pass rounding to override (e.g. ROUND_UP for an
        amount the payer owes).
        """
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        mode = rounding or DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return value.quantize(quantizer, rounding=mode)


# ============================================================================
# TRANSFER RULES
# ============================================================================

def whole_unit_transfer_rule(view: LedgerView, move: Move) -> None:
    """
    Non-fungible units move one whole item at a time.

    Raises:
        TransferRuleViolation: if the quantity is not exactly 1.
    """
    if move.quantity != Decimal("1"):
        raise TransferRuleViolation(
            f"{move.unit_symbol} is non-fungible: moves must be exactly 1, got {move.quantity}"
        )


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def token(symbol: str, name: str, decimal_places: int = TOKEN_DECIMAL_PLACES) -> Unit:
    """
    Create a fungible token unit (debt stablecoin or collateral asset).

    Balances may not go negative; amounts are rounded down to
    decimal_places, as on-chain token transfers truncate.
    """
    if not symbol or not symbol.strip():
        raise ValueError("token symbol cannot be empty")
    if decimal_places < 0:
        raise ValueError(f"decimal_places cannot be negative, got {decimal_places}")
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_TOKEN,
        decimal_places=decimal_places,
        min_balance=Decimal("0"),
        _frozen_state=_freeze_state({'decimals': decimal_places}),
    )
