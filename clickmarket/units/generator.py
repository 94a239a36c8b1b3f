"""
generator.py - Generator units (passive production assets)

Each generator kind is one ledger unit, GEN_<KIND>. A player's holding is
their balance of that unit: purchases move one unit from SYSTEM_WALLET to the
player, bankruptcy moves every unit back. The unit state carries the kind's
static terms, so the ledger alone is enough to value a holding.

Pure calculations (calculate_*) take explicit inputs. compute_* functions
read a LedgerView and return values or PendingTransactions.

Key Formulas:
    cost of the unit bought when `n` are already owned = floor(base * 1.15^n)
    collateral of a holding of n units = sum_{i<n} floor(base * 1.15^i * 0.9)
    production rate = sum over kinds of count * output
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, List, Mapping, Tuple

from ..config import GeneratorKind, MatchConfig, DEFAULT_CONFIG
from ..core import (
    LedgerView, Move, PendingTransaction, Unit, TransactionOrigin, OriginType,
    SYSTEM_WALLET, UNIT_TYPE_GENERATOR,
    TradeRejected, RejectionReason, TransferRuleViolation, UnknownGeneratorKind, UnitNotRegistered,
    build_transaction, floor_decimal, _freeze_state,
)
from .account import account_state_changes, require_player


GENERATOR_PREFIX = "GEN_"


def generator_symbol(kind: str) -> str:
    return f"{GENERATOR_PREFIX}{kind.upper()}"


def generator_transfer_rule(view: LedgerView, move: Move) -> None:
    """Generators are bought from and sold back to the system; players never trade them."""
    if SYSTEM_WALLET not in (move.source, move.dest):
        raise TransferRuleViolation(
            f"{move.unit_symbol}: {move.source} → {move.dest} bypasses {SYSTEM_WALLET}"
        )


def create_generator_unit(spec: GeneratorKind) -> Unit:
    return Unit(
        symbol=generator_symbol(spec.kind),
        name=spec.name,
        unit_type=UNIT_TYPE_GENERATOR,
        min_balance=Decimal("0"),
        decimal_places=0,
        transfer_rule=generator_transfer_rule,
        _frozen_state=_freeze_state({
            'kind': spec.kind,
            'name': spec.name,
            'base_cost': spec.base_cost,
            'output': spec.output,
        }),
    )


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

def calculate_purchase_cost(base_cost: Decimal, owned: int, growth: Decimal) -> Decimal:
    """Price of the next unit when `owned` are already held."""
    if owned < 0:
        raise ValueError(f"owned cannot be negative, got {owned}")
    return floor_decimal(base_cost * growth ** owned)


def calculate_holding_collateral(
    base_cost: Decimal,
    count: int,
    growth: Decimal,
    ratio: Decimal,
) -> Decimal:
    """Liquidation value of `count` units: each worth `ratio` of what it cost."""
    total = Decimal("0")
    for i in range(count):
        total += floor_decimal(base_cost * growth ** i * ratio)
    return total


def calculate_production_rate(
    counts: Mapping[str, int],
    outputs: Mapping[str, Decimal],
) -> Decimal:
    """Currency per second for a set of holdings."""
    return sum((outputs[kind] * count for kind, count in counts.items()), Decimal("0"))


# ============================================================================
# VIEW ADAPTERS
# ============================================================================

def list_generator_symbols(view: LedgerView) -> List[str]:
    return [
        symbol for symbol in view.list_units()
        if symbol.startswith(GENERATOR_PREFIX)
        and view.get_unit(symbol).unit_type == UNIT_TYPE_GENERATOR
    ]


def load_generator(view: LedgerView, kind: str) -> GeneratorKind:
    """
    Raises:
        UnknownGeneratorKind: kind is not registered in this match
    """
    if not isinstance(kind, str):
        raise UnknownGeneratorKind(f"Unknown generator kind: {kind!r}")
    symbol = generator_symbol(kind)
    try:
        unit = view.get_unit(symbol)
    except UnitNotRegistered:
        raise UnknownGeneratorKind(f"Unknown generator kind: {kind!r}") from None
    if unit.unit_type != UNIT_TYPE_GENERATOR:
        raise UnknownGeneratorKind(f"Unknown generator kind: {kind!r}")
    raw = view.get_unit_state(symbol)
    return GeneratorKind(raw['kind'], raw['name'], raw['base_cost'], raw['output'])


def load_generators(view: LedgerView) -> Dict[str, GeneratorKind]:
    specs = {}
    for symbol in list_generator_symbols(view):
        raw = view.get_unit_state(symbol)
        specs[raw['kind']] = GeneratorKind(raw['kind'], raw['name'], raw['base_cost'], raw['output'])
    return specs


def generator_counts(view: LedgerView, player: str) -> Dict[str, int]:
    """kind -> units held, for every registered kind (zeros included)."""
    return {
        kind: int(view.get_balance(player, generator_symbol(kind)))
        for kind in load_generators(view)
    }


def compute_production_rate(view: LedgerView, player: str) -> Decimal:
    specs = load_generators(view)
    counts = {kind: int(view.get_balance(player, generator_symbol(kind))) for kind in specs}
    return calculate_production_rate(counts, {kind: spec.output for kind, spec in specs.items()})


def compute_collateral_value(
    view: LedgerView,
    player: str,
    config: MatchConfig = DEFAULT_CONFIG,
) -> Decimal:
    """Generator collateral G for a player."""
    total = Decimal("0")
    for kind, spec in load_generators(view).items():
        count = int(view.get_balance(player, generator_symbol(kind)))
        if count:
            total += calculate_holding_collateral(
                spec.base_cost, count, config.growth_factor, config.collateral_ratio,
            )
    return total


def compute_purchase_cost(
    view: LedgerView,
    player: str,
    kind: str,
    config: MatchConfig = DEFAULT_CONFIG,
) -> Decimal:
    spec = load_generator(view, kind)
    owned = int(view.get_balance(player, generator_symbol(kind)))
    return calculate_purchase_cost(spec.base_cost, owned, config.growth_factor)


def generator_liquidation_moves(view: LedgerView, player: str, contract_id: str) -> List[Move]:
    """Moves returning every generator a player holds to SYSTEM_WALLET."""
    moves = []
    for symbol in list_generator_symbols(view):
        held = view.get_balance(player, symbol)
        if held > 0:
            moves.append(Move(held, symbol, player, SYSTEM_WALLET, contract_id))
    return moves


# ============================================================================
# PURCHASE
# ============================================================================

def compute_buy_generator(
    view: LedgerView,
    player: str,
    kind: str,
    config: MatchConfig = DEFAULT_CONFIG,
    locked: Decimal = Decimal("0"),
) -> Tuple[PendingTransaction, Decimal, int]:
    """
    Buy one generator of `kind`.

    The price is paid from available balance, i.e. balance minus `locked`
    (the stakes of the player's open positions).

    Returns:
        (pending transaction, cost, new count)

    Raises:
        PlayerNotRegistered: unknown player
        UnknownGeneratorKind: kind not registered
        TradeRejected(INSUFFICIENT_FUNDS): available balance below the cost
    """
    require_player(view, player)
    spec = load_generator(view, kind)
    symbol = generator_symbol(kind)
    owned = int(view.get_balance(player, symbol))
    cost = calculate_purchase_cost(spec.base_cost, owned, config.growth_factor)
    available = view.get_balance(player, config.currency) - locked
    if available < cost:
        raise TradeRejected(
            RejectionReason.INSUFFICIENT_FUNDS,
            f"{player} needs {cost} to buy {kind}, has {available} available",
        )

    moves = [
        Move(cost, config.currency, player, SYSTEM_WALLET, f"buy_{symbol}_{player}"),
        Move(Decimal("1"), symbol, SYSTEM_WALLET, player, f"buy_{symbol}_{player}"),
    ]
    changes = account_state_changes(view, {player: {}})
    origin = TransactionOrigin(OriginType.PLAYER, player, symbol, "BUY_GENERATOR")
    return build_transaction(view, moves, changes, origin), cost, owned + 1
