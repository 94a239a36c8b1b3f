"""
account.py - Player account units

Each player holds exactly one ACCT_<name> unit issued at registration. The
unit carries the per-player state that is not a balance: click power, the
bankruptcy flag and counter, and a nonce.

Every transaction that acts for a player bumps that player's nonce. Intent
ids are content hashes, so without the nonce two identical clicks in the same
tick would collapse into one.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping

from ..core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange, TransactionOrigin,
    OriginType, SYSTEM_WALLET, UNIT_TYPE_PLAYER_ACCOUNT,
    PlayerNotRegistered, TransferRuleViolation, UnitNotRegistered,
    build_transaction, floor_decimal, quantize_amount, to_decimal, _freeze_state,
)


ACCOUNT_PREFIX = "ACCT_"


@dataclass(frozen=True, slots=True)
class AccountState:
    player: str
    click_power: int
    clicks: int
    bankrupt: bool
    bankruptcies: int
    nonce: int


def account_symbol(player: str) -> str:
    return f"{ACCOUNT_PREFIX}{player}"


def account_transfer_rule(view: LedgerView, move: Move) -> None:
    """An account unit only ever moves between SYSTEM_WALLET and its player."""
    player = view.get_unit_state(move.unit_symbol).get('player')
    allowed = {SYSTEM_WALLET, player}
    if move.source not in allowed or move.dest not in allowed:
        raise TransferRuleViolation(
            f"{move.unit_symbol} can only move between {SYSTEM_WALLET} and {player}"
        )


def create_account_unit(player: str) -> Unit:
    """
    Create the account unit for a player.

    Raises:
        ValueError: empty name or the reserved system wallet name
    """
    if not player or not player.strip():
        raise ValueError("player name cannot be empty")
    if player == SYSTEM_WALLET:
        raise ValueError(f"'{SYSTEM_WALLET}' is reserved")
    return Unit(
        symbol=account_symbol(player),
        name=f"Account {player}",
        unit_type=UNIT_TYPE_PLAYER_ACCOUNT,
        min_balance=Decimal("0"),
        max_balance=Decimal("1"),
        decimal_places=0,
        transfer_rule=account_transfer_rule,
        _frozen_state=_freeze_state({
            'player': player,
            'click_power': 1,
            'clicks': 0,
            'bankrupt': False,
            'bankruptcies': 0,
            'nonce': 0,
        }),
    )


def is_player(view: LedgerView, name: str) -> bool:
    if name == SYSTEM_WALLET or name not in view.list_wallets():
        return False
    try:
        view.get_unit(account_symbol(name))
    except UnitNotRegistered:
        return False
    return True


def require_player(view: LedgerView, name: str) -> None:
    """Raises PlayerNotRegistered unless name is a registered player."""
    if not is_player(view, name):
        raise PlayerNotRegistered(f"Player {name!r} not registered")


def list_players(view: LedgerView) -> List[str]:
    """Registered players, sorted by name. Reads wallets, not the unit table."""
    players = []
    for name in view.list_wallets():
        if name == SYSTEM_WALLET:
            continue
        try:
            unit = view.get_unit(account_symbol(name))
        except UnitNotRegistered:
            continue
        if unit.unit_type == UNIT_TYPE_PLAYER_ACCOUNT:
            players.append(name)
    return sorted(players)


def load_account(view: LedgerView, player: str) -> AccountState:
    require_player(view, player)
    raw = view.get_unit_state(account_symbol(player))
    return AccountState(
        player=raw['player'],
        click_power=int(raw.get('click_power', 1)),
        clicks=int(raw.get('clicks', 0)),
        bankrupt=bool(raw.get('bankrupt', False)),
        bankruptcies=int(raw.get('bankruptcies', 0)),
        nonce=int(raw.get('nonce', 0)),
    )


def account_state_changes(
    view: LedgerView,
    updates: Mapping[str, Mapping[str, Any]],
) -> List[UnitStateChange]:
    """
    One UnitStateChange per touched player, nonce bumped.

    Args:
        updates: player -> fields to overwrite (may be empty to only bump the nonce)
    """
    changes = []
    for player in sorted(updates):
        symbol = account_symbol(player)
        old_state = view.get_unit_state(symbol)
        new_state = {**old_state, **updates[player], 'nonce': old_state.get('nonce', 0) + 1}
        changes.append(UnitStateChange(unit=symbol, old_state=old_state, new_state=new_state))
    return changes


def bankruptcy_update(view: LedgerView, player: str) -> Dict[str, Any]:
    """Fields to set on a player's account when they go bankrupt."""
    state = view.get_unit_state(account_symbol(player))
    return {'bankrupt': True, 'bankruptcies': state.get('bankruptcies', 0) + 1}


def calculate_click_upgrade_cost(level: int, base_cost: Decimal, growth: Decimal) -> Decimal:
    """Cost to go from click power `level` to `level + 1`: floor(base * growth^(level-1))."""
    if level < 1:
        raise ValueError(f"click level must be at least 1, got {level}")
    return floor_decimal(base_cost * growth ** (level - 1))


def compute_register_player(
    view: LedgerView,
    player: str,
    currency: str,
    starting_balance: Decimal = Decimal("0"),
) -> PendingTransaction:
    """
    Issue a player's account unit and starting balance.

    The wallet itself must already be registered on the ledger.

    Raises:
        ValueError: negative starting balance
    """
    starting_balance = to_decimal(starting_balance, "starting_balance")
    starting_balance = quantize_amount(view.get_unit(currency), starting_balance)
    if starting_balance < 0:
        raise ValueError(f"starting_balance cannot be negative, got {starting_balance}")

    unit = create_account_unit(player)
    moves = [Move(Decimal("1"), unit.symbol, SYSTEM_WALLET, player, f"register_{player}")]
    if starting_balance > 0:
        moves.append(Move(starting_balance, currency, SYSTEM_WALLET, player, f"fund_{player}"))
    origin = TransactionOrigin(OriginType.SYSTEM, "match", unit.symbol, "REGISTER")
    return build_transaction(view, moves, origin=origin, units_to_create=(unit,))


def compute_adjust_balance(
    view: LedgerView,
    player: str,
    delta: Decimal,
    currency: str,
    memo: str = "adjustment",
    origin_type: OriginType = OriginType.EXTERNAL,
) -> PendingTransaction:
    """
    Issue (delta > 0) or burn (delta < 0) currency for a player.

    This is the entry point for collaborators outside the trading core, such
    as the sabotage sub-game, and for funding players in tests and tutorials.
    Burns are not checked against the balance: the result may be debt.
    """
    require_player(view, player)
    delta = to_decimal(delta, "delta")
    delta = quantize_amount(view.get_unit(currency), delta)
    if delta == 0:
        raise ValueError("delta cannot be zero")
    source, dest = (SYSTEM_WALLET, player) if delta > 0 else (player, SYSTEM_WALLET)
    moves = [Move(abs(delta), currency, source, dest, f"{memo}_{player}")]
    changes = account_state_changes(view, {player: {}})
    origin = TransactionOrigin(origin_type, memo, account_symbol(player), "ADJUST")
    return build_transaction(view, moves, changes, origin)

