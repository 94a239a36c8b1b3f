"""
economy.py - Economy clock, prices and valuation

Price is balance: there is no separate price feed. The price of a player,
which every position against them references, is simply their currency
balance at the moment it is read.

Production rate is never stored. It is derived from generator holdings
each time it is needed, so it cannot drift from them.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Tuple

from .config import MatchConfig, DEFAULT_CONFIG
from .core import (
    LedgerView, Move, PendingTransaction, TransactionOrigin, OriginType, PriceMap,
    RejectionReason, SYSTEM_WALLET, TradeRejected,
    build_transaction, empty_pending_transaction, quantize_amount, to_decimal,
)
from .units.account import (
    account_state_changes, account_symbol, calculate_click_upgrade_cost,
    list_players, load_account, require_player,
)
from .units.generator import compute_collateral_value, compute_production_rate, generator_counts
from .units.position import (
    PositionSummary, compute_available_balance, compute_unrealized_pnl, get_open_positions,
    get_positions_against, summarize_position,
)


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    """Everything the presentation layer shows for one player."""
    player: str
    balance: Decimal
    available_balance: Decimal
    production_rate: Decimal
    click_power: int
    generator_counts: Mapping[str, int]
    collateral_value: Decimal
    net_worth: Decimal
    open_positions: Tuple[PositionSummary, ...]
    positions_against_me: Tuple[PositionSummary, ...]
    bankrupt: bool


# ============================================================================
# PRICES AND VALUATION
# ============================================================================

def current_price(view: LedgerView, player: str, config: MatchConfig = DEFAULT_CONFIG) -> Decimal:
    require_player(view, player)
    return view.get_balance(player, config.currency)


def current_prices(view: LedgerView, config: MatchConfig = DEFAULT_CONFIG) -> PriceMap:
    """player -> balance, for every player."""
    return {player: view.get_balance(player, config.currency) for player in list_players(view)}


def compute_collateral_net_worth(view: LedgerView, player: str, config: MatchConfig = DEFAULT_CONFIG) -> Decimal:
    """balance + generator collateral; the solvency measure used by forced payment."""
    require_player(view, player)
    return view.get_balance(player, config.currency) + compute_collateral_value(view, player, config)


def compute_net_worth(view: LedgerView, player: str, config: MatchConfig = DEFAULT_CONFIG) -> Decimal:
    """balance + generator collateral + unrealized PNL of the player's own open positions."""
    total = compute_collateral_net_worth(view, player, config)
    for terms, _ in get_open_positions(view, player):
        total += compute_unrealized_pnl(view, terms.position_id, config=config)
    return total


def calculate_accrual(rate: Decimal, dt: Decimal) -> Decimal:
    """Production over dt seconds. Negative dt (clock skew) accrues nothing."""
    if dt <= 0:
        return Decimal("0")
    return rate * dt


# ============================================================================
# CLOCK
# ============================================================================

def compute_accrual(
    view: LedgerView,
    dt: Any,
    config: MatchConfig = DEFAULT_CONFIG,
    players: Optional[Iterable[str]] = None,
    tag: Optional[str] = None,
) -> PendingTransaction:
    """
    Issue production_rate * dt to each player.

    Amounts are rounded down to currency precision; players with nothing to
    collect get no move.

    Args:
        dt: elapsed seconds; negative values are clamped to 0
        players: subset to advance (default: every player)
        tag: makes the contract ids unique per tick (default: current time)

    Raises:
        ValueError: dt is not a finite number
    """
    dt = to_decimal(dt, "dt")
    if dt <= 0:
        return empty_pending_transaction(view)
    tag = tag or view.current_time.isoformat()
    currency_unit = view.get_unit(config.currency)
    targets = list_players(view) if players is None else sorted(players)

    moves = []
    for player in targets:
        require_player(view, player)
        amount = quantize_amount(currency_unit, calculate_accrual(compute_production_rate(view, player), dt))
        if amount > 0:
            moves.append(Move(amount, config.currency, SYSTEM_WALLET, player, f"accrual_{tag}_{player}"))
    if not moves:
        return empty_pending_transaction(view)
    origin = TransactionOrigin(OriginType.CLOCK, "economy_clock", None, "ACCRUAL")
    return build_transaction(view, moves, origin=origin)


# ============================================================================
# CLICKING
# ============================================================================

def compute_click(view: LedgerView, player: str, config: MatchConfig = DEFAULT_CONFIG) -> PendingTransaction:
    """Issue click_power currency to the player."""
    account = load_account(view, player)
    moves = [Move(Decimal(account.click_power), config.currency, SYSTEM_WALLET, player, f"click_{player}")]
    changes = account_state_changes(view, {player: {'clicks': account.clicks + 1}})
    origin = TransactionOrigin(OriginType.PLAYER, player, account_symbol(player), "CLICK")
    return build_transaction(view, moves, changes, origin)


def compute_click_upgrade(
    view: LedgerView,
    player: str,
    config: MatchConfig = DEFAULT_CONFIG,
) -> Tuple[PendingTransaction, Decimal, int]:
    """
    Raise click power by one, paid from available balance.

    Returns:
        (pending transaction, cost, new click power)

    Raises:
        TradeRejected(INSUFFICIENT_FUNDS): available balance below the cost
    """
    account = load_account(view, player)
    cost = calculate_click_upgrade_cost(
        account.click_power, config.click_upgrade_base_cost, config.click_upgrade_growth,
    )
    available = compute_available_balance(view, player, config)
    if available < cost:
        raise TradeRejected(
            RejectionReason.INSUFFICIENT_FUNDS,
            f"{player} needs {cost} to upgrade clicks, has {available} available",
        )
    new_level = account.click_power + 1
    moves = [Move(cost, config.currency, player, SYSTEM_WALLET, f"click_upgrade_{player}")]
    changes = account_state_changes(view, {player: {'click_power': new_level}})
    origin = TransactionOrigin(OriginType.PLAYER, player, account_symbol(player), "CLICK_UPGRADE")
    return build_transaction(view, moves, changes, origin), cost, new_level


# ============================================================================
# SNAPSHOTS
# ============================================================================

def compute_snapshot(view: LedgerView, player: str, config: MatchConfig = DEFAULT_CONFIG) -> AccountSnapshot:
    account = load_account(view, player)
    balance = view.get_balance(player, config.currency)
    collateral = compute_collateral_value(view, player, config)
    mine = tuple(summarize_position(view, t, s, config) for t, s in get_open_positions(view, player))
    against = tuple(summarize_position(view, t, s, config) for t, s in get_positions_against(view, player))
    return AccountSnapshot(
        player=player,
        balance=balance,
        available_balance=balance - sum((p.stake for p in mine), Decimal("0")),
        production_rate=compute_production_rate(view, player),
        click_power=account.click_power,
        generator_counts=generator_counts(view, player),
        collateral_value=collateral,
        net_worth=balance + collateral + sum((p.unrealized_pnl for p in mine), Decimal("0")),
        open_positions=mine,
        positions_against_me=against,
        bankrupt=account.bankrupt,
    )
