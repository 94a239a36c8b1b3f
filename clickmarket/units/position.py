"""
position.py - Leveraged positions on another player's balance

A position is a bet by `owner` on the balance of `target`, which is that
player's price. Each position is its own ledger unit, POS_<n>. On open, one
unit moves target -> owner, so the owner holds +1 and the target -1: the
holders of a position unit are exactly its two counterparties. On close or
liquidation the unit moves back and the state records how it ended.

Stake is never moved on open. It stays in the owner's balance and is only
locked, i.e. excluded from the balance available for new commitments.

ARCHITECTURE:
    PositionTerms / PositionState: frozen dataclasses loaded once per call
    calculate_*: pure math on explicit inputs
    load_position / get_*: the only readers of LedgerView
    compute_*: combine the above into values or PendingTransactions

Key Formulas:
    long liquidation price  = entry * (1 - 1/leverage)
    short liquidation price = entry * (1 + 1/leverage)
    pnl at price P          = floor((P - entry) * stake * leverage * sign / entry)
    stake cap on a target   = floor((target balance + target collateral) * 0.5)
    merged entry            = (e1*s1 + e2*s2) / (s1 + s2)
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..config import MatchConfig, DEFAULT_CONFIG
from ..core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType, Direction, PositionStatus, RejectionReason,
    UNIT_TYPE_LEVERAGED_POSITION,
    TradeRejected, TransferRuleViolation, PositionNotFound, UnitNotRegistered,
    build_transaction, floor_decimal, quantize_amount, to_decimal, _freeze_state,
)
from .account import account_state_changes, require_player
from .generator import compute_collateral_value


POSITION_PREFIX = "POS_"


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class PositionTerms:
    """Fixed at open; never changes."""
    position_id: str
    owner: str
    target: str
    direction: Direction
    leverage: int
    opened_at: Optional[datetime]


@dataclass(frozen=True, slots=True)
class PositionState:
    """
    Mutable part of a position. Merges change stake, entry and liquidation
    price; close and liquidation fill in the closing fields.
    """
    stake: Decimal
    entry_price: Decimal
    liquidation_price: Decimal
    status: PositionStatus
    closed_at: Optional[datetime] = None
    close_price: Optional[Decimal] = None
    realized_pnl: Optional[Decimal] = None
    transferred: Optional[Decimal] = None

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN


@dataclass(frozen=True, slots=True)
class PositionSummary:
    """Read-only view of an open position, as shown to players."""
    position_id: str
    owner: str
    target: str
    direction: str
    stake: Decimal
    leverage: int
    entry_price: Decimal
    liquidation_price: Decimal
    current_price: Decimal
    unrealized_pnl: Decimal
    opened_at: Optional[datetime]


# ============================================================================
# INPUT VALIDATION
# ============================================================================

def parse_direction(direction: Any) -> Direction:
    if isinstance(direction, Direction):
        return direction
    try:
        return Direction(str(direction).lower())
    except ValueError:
        raise ValueError(f"direction must be 'long' or 'short', got {direction!r}") from None


def validate_leverage(leverage: Any, config: MatchConfig = DEFAULT_CONFIG) -> int:
    if isinstance(leverage, bool) or not isinstance(leverage, int):
        raise ValueError(f"leverage must be an integer, got {leverage!r}")
    if leverage < config.min_leverage:
        raise ValueError(f"leverage must be at least {config.min_leverage}, got {leverage}")
    if config.max_leverage is not None and leverage > config.max_leverage:
        raise ValueError(f"leverage cannot exceed {config.max_leverage}, got {leverage}")
    return leverage


def validate_stake(stake: Any) -> Decimal:
    stake = to_decimal(stake, "stake")
    if stake <= 0:
        raise ValueError(f"stake must be positive, got {stake}")
    return stake


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def calculate_liquidation_price(entry_price: Decimal, leverage: int, direction: Direction) -> Decimal:
    step = Decimal("1") / Decimal(leverage)
    if direction is Direction.LONG:
        return entry_price * (Decimal("1") - step)
    return entry_price * (Decimal("1") + step)


def calculate_pnl(
    entry_price: Decimal,
    price: Decimal,
    stake: Decimal,
    leverage: int,
    direction: Direction,
) -> Decimal:
    """
    Percentage-return PNL scaled by stake and leverage, floored.

    An entry price of 0 is treated as 1 in the denominator.
    """
    denominator = entry_price if entry_price != 0 else Decimal("1")
    return floor_decimal((price - entry_price) * stake * leverage * direction.sign / denominator)


def calculate_merged_entry(
    old_entry: Decimal,
    old_stake: Decimal,
    entry_price: Decimal,
    stake: Decimal,
) -> Decimal:
    return (old_entry * old_stake + entry_price * stake) / (old_stake + stake)


def is_liquidatable(direction: Direction, price: Decimal, liquidation_price: Decimal) -> bool:
    if direction is Direction.LONG:
        return price <= liquidation_price
    return price >= liquidation_price


def calculate_stake_cap(target_balance: Decimal, target_collateral: Decimal, ratio: Decimal) -> Decimal:
    return floor_decimal((target_balance + target_collateral) * ratio)


def calculate_open_rejection(
    self_trade: bool,
    target_balance: Decimal,
    available: Decimal,
    stake: Decimal,
    existing_on_target: Decimal,
    stake_cap: Decimal,
    direction: Direction,
    liquidation_price: Decimal,
    config: MatchConfig = DEFAULT_CONFIG,
) -> Optional[RejectionReason]:
    """First rule an open violates, checked in order, or None."""
    if self_trade:
        return RejectionReason.SELF_TRADE
    if target_balance < config.min_entry_price:
        return RejectionReason.TARGET_BELOW_MINIMUM
    if stake > available:
        return RejectionReason.INSUFFICIENT_AVAILABLE
    if stake < config.min_stake:
        return RejectionReason.STAKE_TOO_SMALL
    if existing_on_target + stake > stake_cap:
        return RejectionReason.STAKE_CAP_EXCEEDED
    if direction is Direction.LONG and liquidation_price < config.min_liquidation_floor:
        return RejectionReason.LIQUIDATION_BELOW_FLOOR
    return None


def calculate_max_stake(
    target_balance: Decimal,
    available: Decimal,
    existing_on_target: Decimal,
    stake_cap: Decimal,
    config: MatchConfig = DEFAULT_CONFIG,
) -> Decimal:
    """Largest whole stake an open would currently accept (0 if none)."""
    if target_balance < config.min_entry_price:
        return Decimal("0")
    limit = min(floor_decimal(available), stake_cap - existing_on_target)
    return limit if limit >= config.min_stake else Decimal("0")


# ============================================================================
# UNIT CREATION AND LOADING
# ============================================================================

def position_symbol(number: int) -> str:
    return f"{POSITION_PREFIX}{number:06d}"


def position_transfer_rule(view: LedgerView, move: Move) -> None:
    """Only the owner and target may hold a position unit."""
    state = view.get_unit_state(move.unit_symbol)
    parties = {state.get('owner'), state.get('target')}
    if move.source not in parties or move.dest not in parties:
        raise TransferRuleViolation(
            f"{move.unit_symbol}: {move.source} → {move.dest} is not between its counterparties"
        )


def to_state_dict(terms: PositionTerms, state: PositionState) -> Dict[str, Any]:
    """Inverse of load_position()."""
    return {
        'owner': terms.owner,
        'target': terms.target,
        'direction': terms.direction.value,
        'leverage': terms.leverage,
        'opened_at': terms.opened_at,
        'stake': state.stake,
        'entry_price': state.entry_price,
        'liquidation_price': state.liquidation_price,
        'status': state.status.value,
        'closed_at': state.closed_at,
        'close_price': state.close_price,
        'realized_pnl': state.realized_pnl,
        'transferred': state.transferred,
    }


def create_position_unit(terms: PositionTerms, state: PositionState) -> Unit:
    return Unit(
        symbol=terms.position_id,
        name=f"{terms.direction.value} {terms.leverage}x {terms.target} by {terms.owner}",
        unit_type=UNIT_TYPE_LEVERAGED_POSITION,
        min_balance=Decimal("-1"),
        max_balance=Decimal("1"),
        decimal_places=0,
        transfer_rule=position_transfer_rule,
        _frozen_state=_freeze_state(to_state_dict(terms, state)),
    )


def load_position(view: LedgerView, position_id: str) -> Tuple[PositionTerms, PositionState]:
    """
    Raises:
        PositionNotFound: no position unit with this id
    """
    try:
        unit = view.get_unit(position_id)
    except UnitNotRegistered:
        raise PositionNotFound(f"Position {position_id} not found") from None
    if unit.unit_type != UNIT_TYPE_LEVERAGED_POSITION:
        raise PositionNotFound(f"{position_id} is not a position")
    raw = view.get_unit_state(position_id)
    terms = PositionTerms(
        position_id=position_id,
        owner=raw['owner'],
        target=raw['target'],
        direction=Direction(raw['direction']),
        leverage=int(raw['leverage']),
        opened_at=raw.get('opened_at'),
    )
    state = PositionState(
        stake=raw['stake'],
        entry_price=raw['entry_price'],
        liquidation_price=raw['liquidation_price'],
        status=PositionStatus(raw['status']),
        closed_at=raw.get('closed_at'),
        close_price=raw.get('close_price'),
        realized_pnl=raw.get('realized_pnl'),
        transferred=raw.get('transferred'),
    )
    return terms, state


def list_position_ids(view: LedgerView) -> List[str]:
    """Every position ever opened in the match, oldest first."""
    return [
        symbol for symbol in view.list_units()
        if symbol.startswith(POSITION_PREFIX)
        and view.get_unit(symbol).unit_type == UNIT_TYPE_LEVERAGED_POSITION
    ]


def _held_positions(view: LedgerView, wallet: str, sign: int) -> List[Tuple[PositionTerms, PositionState]]:
    """
    Open positions on a wallet's books: sign +1 for those it owns, -1 for
    those against it. Only open positions have holders, so this reads the
    wallet's holdings instead of every position ever opened.
    """
    result = []
    for symbol in view.list_holdings(wallet):
        if not symbol.startswith(POSITION_PREFIX):
            continue
        if view.get_unit(symbol).unit_type != UNIT_TYPE_LEVERAGED_POSITION:
            continue
        if view.get_balance(wallet, symbol) * sign > 0:
            terms, state = load_position(view, symbol)
            if state.is_open:
                result.append((terms, state))
    return result


def get_open_positions(view: LedgerView, owner: str) -> List[Tuple[PositionTerms, PositionState]]:
    """Open positions held by `owner`, oldest first."""
    return _held_positions(view, owner, 1)


def get_positions_against(view: LedgerView, target: str) -> List[Tuple[PositionTerms, PositionState]]:
    """Open positions whose target is `target`, oldest first."""
    return _held_positions(view, target, -1)


def find_matching_position(
    view: LedgerView,
    owner: str,
    target: str,
    direction: Direction,
    leverage: int,
) -> Optional[str]:
    """Id of the open (owner, target, direction, leverage) position, if any."""
    for terms, _ in get_open_positions(view, owner):
        if terms.target == target and terms.direction is direction and terms.leverage == leverage:
            return terms.position_id
    return None


def compute_locked_stake(view: LedgerView, owner: str) -> Decimal:
    return sum((state.stake for _, state in get_open_positions(view, owner)), Decimal("0"))


def compute_available_balance(view: LedgerView, owner: str, config: MatchConfig = DEFAULT_CONFIG) -> Decimal:
    """Balance minus stakes locked in open positions."""
    return view.get_balance(owner, config.currency) - compute_locked_stake(view, owner)


def compute_unrealized_pnl(
    view: LedgerView,
    position_id: str,
    price: Optional[Decimal] = None,
    config: MatchConfig = DEFAULT_CONFIG,
) -> Decimal:
    """PNL of a position at `price` (default: the target's live balance)."""
    terms, state = load_position(view, position_id)
    if price is None:
        price = view.get_balance(terms.target, config.currency)
    return calculate_pnl(state.entry_price, price, state.stake, terms.leverage, terms.direction)


def summarize_position(
    view: LedgerView,
    terms: PositionTerms,
    state: PositionState,
    config: MatchConfig = DEFAULT_CONFIG,
) -> PositionSummary:
    price = view.get_balance(terms.target, config.currency)
    return PositionSummary(
        position_id=terms.position_id,
        owner=terms.owner,
        target=terms.target,
        direction=terms.direction.value,
        stake=state.stake,
        leverage=terms.leverage,
        entry_price=state.entry_price,
        liquidation_price=state.liquidation_price,
        current_price=price,
        unrealized_pnl=calculate_pnl(state.entry_price, price, state.stake, terms.leverage, terms.direction),
        opened_at=terms.opened_at,
    )


# ============================================================================
# OPEN
# ============================================================================

def _exposure_on_target(view: LedgerView, owner: str, target: str) -> Tuple[Decimal, Decimal]:
    """(stake locked across all of owner's positions, stake locked on target)."""
    locked = Decimal("0")
    on_target = Decimal("0")
    for terms, state in get_open_positions(view, owner):
        locked += state.stake
        if terms.target == target:
            on_target += state.stake
    return locked, on_target


def compute_max_stake(
    view: LedgerView,
    owner: str,
    target: str,
    config: MatchConfig = DEFAULT_CONFIG,
) -> Decimal:
    """Largest stake `owner` could put on `target` right now."""
    require_player(view, owner)
    require_player(view, target)
    if owner == target:
        return Decimal("0")
    target_balance = view.get_balance(target, config.currency)
    locked, on_target = _exposure_on_target(view, owner, target)
    available = view.get_balance(owner, config.currency) - locked
    cap = calculate_stake_cap(
        target_balance, compute_collateral_value(view, target, config), config.stake_cap_ratio,
    )
    return calculate_max_stake(target_balance, available, on_target, cap, config)


def compute_open_position(
    view: LedgerView,
    owner: str,
    target: str,
    direction: Any,
    stake: Any,
    leverage: Any,
    config: MatchConfig = DEFAULT_CONFIG,
) -> Tuple[PendingTransaction, str, bool]:
    """
    Open a position, or add to the matching open one.

    Returns:
        (pending transaction, position id, merged)

    Raises:
        ValueError: stake not a finite positive number, bad leverage or direction
        PlayerNotRegistered: unknown owner or target
        TradeRejected: a validation rule failed; carries the RejectionReason
    """
    direction = parse_direction(direction)
    leverage = validate_leverage(leverage, config)
    stake = validate_stake(stake)
    require_player(view, owner)
    require_player(view, target)
    stake = quantize_amount(view.get_unit(config.currency), stake)

    target_balance = view.get_balance(target, config.currency)
    locked, on_target = _exposure_on_target(view, owner, target)
    available = view.get_balance(owner, config.currency) - locked
    cap = calculate_stake_cap(
        target_balance, compute_collateral_value(view, target, config), config.stake_cap_ratio,
    )
    entry_price = target_balance
    liquidation_price = calculate_liquidation_price(entry_price, leverage, direction)

    reason = calculate_open_rejection(
        self_trade=owner == target,
        target_balance=target_balance,
        available=available,
        stake=stake,
        existing_on_target=on_target,
        stake_cap=cap,
        direction=direction,
        liquidation_price=liquidation_price,
        config=config,
    )
    if reason is not None:
        raise TradeRejected(reason, f"{owner} → {target}: {reason.value}")

    existing_id = find_matching_position(view, owner, target, direction, leverage)
    if existing_id is not None:
        terms, state = load_position(view, existing_id)
        new_entry = calculate_merged_entry(state.entry_price, state.stake, entry_price, stake)
        merged = PositionState(
            stake=state.stake + stake,
            entry_price=new_entry,
            liquidation_price=calculate_liquidation_price(new_entry, leverage, direction),
            status=PositionStatus.OPEN,
        )
        changes = [
            UnitStateChange(
                unit=existing_id,
                old_state=view.get_unit_state(existing_id),
                new_state=to_state_dict(terms, merged),
            ),
            *account_state_changes(view, {owner: {}}),
        ]
        origin = TransactionOrigin(OriginType.PLAYER, owner, existing_id, "MERGE")
        return build_transaction(view, [], changes, origin), existing_id, True

    position_id = position_symbol(len(list_position_ids(view)) + 1)
    terms = PositionTerms(
        position_id=position_id,
        owner=owner,
        target=target,
        direction=direction,
        leverage=leverage,
        opened_at=view.current_time,
    )
    state = PositionState(
        stake=stake,
        entry_price=entry_price,
        liquidation_price=liquidation_price,
        status=PositionStatus.OPEN,
    )
    unit = create_position_unit(terms, state)
    moves = [Move(Decimal("1"), position_id, target, owner, f"open_{position_id}")]
    origin = TransactionOrigin(OriginType.PLAYER, owner, position_id, "OPEN")
    pending = build_transaction(
        view, moves, account_state_changes(view, {owner: {}}), origin, units_to_create=(unit,),
    )
    return pending, position_id, False
