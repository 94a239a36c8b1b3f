"""
Core types and pure functions for the match ledger.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only match state, SmartContract for tick polling
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: MatchError and the domain-specific error types
4. Enums: ExecuteResult, OriginType, Direction, PositionStatus, RejectionReason
5. Unit factories and Decimal helpers shared by every other module

Players are wallets and every asset (currency, generators, positions, player
accounts) is a unit. Currency is issued from and burned to SYSTEM_WALLET, so
the total supply of every unit across all wallets is always zero.

All functions in this module are pure and operate on read-only views.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import (
    Decimal, ROUND_HALF_EVEN, ROUND_DOWN, ROUND_FLOOR, getcontext,
)
from enum import Enum
import copy
import hashlib
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All match arithmetic is Decimal. The global context is configured once at
# import so that PNL, collateral and cost calculations are deterministic.
# Nothing else in the package touches the global context.
#
_MATCH_DECIMAL_CONTEXT = getcontext()
_MATCH_DECIMAL_CONTEXT.prec = 50
_MATCH_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and burns (accrual, clicks, purchases,
# bankruptcy write-offs). Exempt from balance validation.
SYSTEM_WALLET = "system"

UNIT_TYPE_CASH = "CASH"
UNIT_TYPE_GENERATOR = "GENERATOR"
UNIT_TYPE_PLAYER_ACCOUNT = "PLAYER_ACCOUNT"
UNIT_TYPE_LEVERAGED_POSITION = "LEVERAGED_POSITION"

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

# Currency may be overdrawn: a balance below zero is debt, not an error.
DEFAULT_CASH_MIN_BALANCE = Decimal("-1000000000")

DECIMAL_ROUNDING = {
    UNIT_TYPE_CASH: ROUND_HALF_EVEN,
    UNIT_TYPE_GENERATOR: ROUND_DOWN,
    UNIT_TYPE_PLAYER_ACCOUNT: ROUND_DOWN,
    UNIT_TYPE_LEVERAGED_POSITION: ROUND_DOWN,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# wallet -> quantity for a single unit
Positions = Dict[str, Decimal]

# unit -> quantity for a single wallet
BalanceMap = Dict[str, Decimal]

UnitState = Dict[str, Any]

# player -> current price (which is that player's currency balance)
PriceMap = Dict[str, Decimal]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to match state.

    Contracts, transfer rules and valuation functions take a LedgerView to
    declare that they only read. The Ledger implements it; tests use FakeView.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the match."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a unit in a wallet (Decimal("0") if none)."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's state dictionary."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero holdings of a unit, keyed by wallet."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of registered wallet IDs."""
        ...

    def list_units(self) -> List[str]:
        """Return all registered unit symbols, sorted."""
        ...

    def list_holdings(self, wallet_id: str) -> List[str]:
        """Return the units a wallet holds a non-zero quantity of, sorted."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


class SmartContract(Protocol):
    """
    Protocol for tick-polled contracts.

    The TickDriver calls every registered contract once per pass for each unit
    of its unit type. A contract returns a PendingTransaction (empty when there
    is nothing to do).
    """

    def check_lifecycle(
        self,
        view: LedgerView,
        symbol: str,
        timestamp: datetime,
        prices: PriceMap,
    ) -> 'PendingTransaction':
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: validated and applied.
    ALREADY_APPLIED: same intent_id was already processed (idempotent).
    REJECTED: failed validation; nothing was mutated.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Where a transaction came from."""
    PLAYER = "player"        # open/close/buy/click issued by a player
    CONTRACT = "contract"    # tick-polled contract (liquidation, auto-close)
    CLOCK = "clock"          # passive production accrual
    SYSTEM = "system"        # match setup (player registration, funding)
    EXTERNAL = "external"    # collaborators outside the trading core


class Direction(Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1


class PositionStatus(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    LIQUIDATED = "LIQUIDATED"


class RejectionReason(Enum):
    """Reason codes for validation rejections reported back to the caller."""
    SELF_TRADE = "self_trade"
    TARGET_BELOW_MINIMUM = "target_below_minimum"
    INSUFFICIENT_AVAILABLE = "insufficient_available"
    STAKE_TOO_SMALL = "stake_too_small"
    STAKE_CAP_EXCEEDED = "stake_cap_exceeded"
    LIQUIDATION_BELOW_FLOOR = "liquidation_below_floor"
    INSUFFICIENT_FUNDS = "insufficient_funds"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class MatchError(Exception):
    """Base exception for all match errors."""
    pass


class TransferRuleViolation(MatchError):
    """Raised when a move violates the unit's transfer rule."""
    pass


class UnitNotRegistered(MatchError):
    pass


class PlayerNotRegistered(MatchError):
    pass


class PositionNotFound(MatchError):
    pass


class PositionNotOpen(MatchError):
    """Raised when closing a position that is already CLOSED or LIQUIDATED."""
    pass


class UnknownGeneratorKind(MatchError):
    pass


class TradeRejected(MatchError):
    """
    A command failed validation. Carries a RejectionReason.

    Raised by the compute_* builders; Match converts it into a structured
    result instead of letting it escape.
    """

    def __init__(self, reason: RejectionReason, message: str = ""):
        self.reason = reason
        super().__init__(message or reason.value)


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: Any, name: str = "value") -> Decimal:
    """
    Convert int/float/str/Decimal to a finite Decimal.

    Raises:
        ValueError: If the value is not numeric, NaN or infinite.
    """
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except ArithmeticError:
            raise ValueError(f"{name} must be numeric, got {value!r}") from None
    if result.is_nan() or result.is_infinite():
        raise ValueError(f"{name} must be finite, got {value!r}")
    return result


def floor_decimal(value: Decimal) -> Decimal:
    """Floor to an integral Decimal (toward negative infinity)."""
    return value.to_integral_value(rounding=ROUND_FLOOR)


def quantize_amount(unit: 'Unit', value: Decimal) -> Decimal:
    """
    Round an amount down to the unit's precision.

    Moves must already be at unit precision: the ledger rounds source and
    destination balances independently, and a half-way amount could round
    the two sides apart.
    """
    if unit.decimal_places is None:
        return value
    return value.quantize(Decimal(10) ** -unit.decimal_places, rounding=ROUND_DOWN)


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Provenance of a transaction.

    Attributes:
        origin_type: PLAYER, CONTRACT, CLOCK, SYSTEM or EXTERNAL
        source_id: player name or contract name
        unit_symbol: unit that triggered this, if any
        event_type: e.g. "OPEN", "CLOSE", "LIQUIDATION", "ACCRUAL"
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

    The ledger rejects the transaction if old_state no longer matches the
    unit's current state, so a change built against a stale view never lands.
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        return {
            key: (old.get(key), new.get(key))
            for key in set(old) | set(new)
            if old.get(key) != new.get(key)
        }


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of a unit between two wallets.

    Attributes:
        quantity: Amount to transfer (finite, non-zero Decimal).
        unit_symbol: Unit being transferred (e.g. "COOKIE", "GEN_GRANDMA").
        source: Wallet debited.
        dest: Wallet credited.
        contract_id: Identifier of what generated this move.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if abs(self.quantity) < QUANTITY_EPSILON:
            raise ValueError("Move quantity is effectively zero")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """Canonical string for a Decimal: Decimal("1.0") and Decimal("1.00") both give "1"."""
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """Deterministic serialization of state values for intent hashing."""
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
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(item) for item in value) + "]"
    return f"R:{value!r}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[UnitStateChange, ...],
    origin: TransactionOrigin,
    units_to_create: Tuple['Unit', ...] = (),
) -> str:
    """
    Content hash of a transaction's intent, used for idempotency.

    Built from moves, state changes, origin and created units only; the
    timestamp is excluded, so resubmitting the same command is a no-op.
    """
    parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.unit_symbol:
        parts.append(f"unit:{origin.unit_symbol}")
    if origin.event_type:
        parts.append(f"event:{origin.event_type}")

    for unit in sorted(units_to_create, key=lambda u: u.symbol):
        parts.append(f"unit_create:{unit.symbol}|{unit.unit_type}")

    ordered = sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id),
    )
    for m in ordered:
        parts.append(f"move:{_normalize_decimal(m.quantity)}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}")

    for sc in sorted(state_changes, key=lambda s: s.unit):
        parts.append(f"state_change:{sc.unit}|{_canonicalize(sc.old_state)}|{_canonicalize(sc.new_state)}")

    return hashlib.sha256("|".join(parts).encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction before execution: the INTENT.

    Built by the compute_* functions and contracts, then handed to
    Ledger.execute(), which validates it atomically and records a Transaction.
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
    Build a PendingTransaction stamped with the view's current time.

    State changes are deep-copied so callers can keep mutating their dicts.

    Example:
        moves = [Move(Decimal("15"), "COOKIE", "alice", SYSTEM_WALLET, "buy_grandma")]
        tx = build_transaction(view, moves, origin=TransactionOrigin(OriginType.PLAYER, "alice"))
    """
    if origin is None:
        origin = TransactionOrigin(OriginType.CONTRACT, "contract")

    copied: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """A PendingTransaction that does nothing."""
    return PendingTransaction(
        moves=(),
        state_changes=(),
        origin=TransactionOrigin(OriginType.CONTRACT, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed transaction: the FACT recorded in the ledger's log.

    Attributes:
        intent_id: content hash carried over from the PendingTransaction
        exec_id: unique execution id (ledger name + sequence + time)
        sequence_number: monotonic within the ledger
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

    def describe(self) -> List[str]:
        """Human-readable lines, used by verbose ledgers."""
        lines = [
            f"Transaction {self.exec_id}",
            f"  intent_id : {self.intent_id}",
            f"  time      : {self.execution_time}",
            f"  origin    : {self.origin}",
        ]
        for unit in self.units_to_create:
            lines.append(f"  + unit {unit.symbol} ({unit.name})")
        for i, move in enumerate(self.moves):
            lines.append(f"  [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}")
        for sc in self.state_changes:
            for name, (old_val, new_val) in sorted(sc.changed_fields().items()):
                lines.append(f"  {sc.unit}.{name}: {old_val!r} → {new_val!r}")
        return lines

    def __repr__(self) -> str:
        width = max(len(line) for line in self.describe()) + 2
        bar = "─" * width
        body = [f"│{line.ljust(width)}│" for line in self.describe()]
        return "\n".join([f"┌{bar}┐", *body, f"└{bar}┘"])


# Transfer rules validate moves and raise TransferRuleViolation if invalid.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Dict -> sorted tuple of (key, value) pairs."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of an asset type held in wallets.

    Attributes:
        symbol: Short identifier (e.g. "COOKIE", "GEN_BAKERY", "POS_000001").
        name: Human-readable name.
        unit_type: CASH, GENERATOR, PLAYER_ACCOUNT or LEVERAGED_POSITION.
        min_balance / max_balance: Per-wallet bounds (SYSTEM_WALLET is exempt).
        decimal_places: Rounding precision for balances (None = no rounding).
        transfer_rule: Optional validator for moves of this unit.
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
        """A fresh dict each call."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal) -> Decimal:
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        return value.quantize(quantizer, rounding=DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN))


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def cash(symbol: str, name: str, decimal_places: int = 2) -> Unit:
    """
    Create the match currency.

    The minimum balance is a large negative number: currency balances may go
    negative (debt) after a forced payment.
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_CASH,
        decimal_places=decimal_places,
        min_balance=DEFAULT_CASH_MIN_BALANCE,
        _frozen_state=_freeze_state({'issuer': SYSTEM_WALLET}),
    )
