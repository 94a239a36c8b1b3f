"""
clickmarket - Trading core for a multiplayer clicker game with leverage

Every player is a tradeable asset whose price is their currency balance.
Players produce currency from generators and open leveraged long/short
positions on each other; all value moves through a double-entry ledger.

Usage:
    from clickmarket import Match

    match = Match("lobby-7")
    match.add_player("alice", 500)
    match.add_player("bob", 1000)

    opened = match.open_position("alice", "bob", "long", 100, 5)
    match.buy_generator("bob", "grandma")
    report = match.tick(0.1)

    closed = match.close_position("alice", opened.position_id)
    print(closed.pnl, match.snapshot("alice").net_worth)
"""

# Core types
from .core import (
    LedgerView,
    SmartContract,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    Direction,
    PositionStatus,
    RejectionReason,
    MatchError,
    TransferRuleViolation,
    UnitNotRegistered,
    PlayerNotRegistered,
    PositionNotFound,
    PositionNotOpen,
    UnknownGeneratorKind,
    TradeRejected,
    cash,
    to_decimal,
    quantize_amount,
    SYSTEM_WALLET,
    UNIT_TYPE_CASH,
    UNIT_TYPE_GENERATOR,
    UNIT_TYPE_PLAYER_ACCOUNT,
    UNIT_TYPE_LEVERAGED_POSITION,
    Positions,
    BalanceMap,
    UnitState,
    PriceMap,
)

# Ledger
from .ledger import Ledger

# Configuration
from .config import (
    GeneratorKind,
    MatchConfig,
    DEFAULT_CONFIG,
    DEFAULT_GENERATORS,
    TIMED_MATCH_CONFIG,
)

# Economy
from .economy import (
    AccountSnapshot,
    current_price,
    current_prices,
    compute_net_worth,
    compute_collateral_net_worth,
    calculate_accrual,
    compute_accrual,
    compute_click,
    compute_click_upgrade,
    compute_snapshot,
)

# Settlement
from .settlement import (
    PaymentOutcome,
    CloseOutcome,
    InsolvencyCheck,
    LiquidationContract,
    calculate_payment,
    plan_force_payment,
    compute_force_payment,
    compute_close_position,
    compute_liquidation,
    find_insolvent_targets,
)

# Commands and the tick loop
from .commands import (
    Command,
    CommandOutcome,
    CommandQueue,
    create_default_queue,
)
from .tick_driver import TickDriver, TickReport

# Match facade
from .match import (
    Match,
    OpenResult,
    CloseResult,
    PurchaseResult,
    UpgradeResult,
)

# Units
from .units import *
from .units import __all__ as _units_all


__all__ = [
    # Core
    'LedgerView',
    'SmartContract',
    'Move',
    'Transaction',
    'PendingTransaction',
    'TransactionOrigin',
    'OriginType',
    'build_transaction',
    'empty_pending_transaction',
    'Unit',
    'UnitStateChange',
    'ExecuteResult',
    'Direction',
    'PositionStatus',
    'RejectionReason',
    'MatchError',
    'TransferRuleViolation',
    'UnitNotRegistered',
    'PlayerNotRegistered',
    'PositionNotFound',
    'PositionNotOpen',
    'UnknownGeneratorKind',
    'TradeRejected',
    'cash',
    'to_decimal',
    'quantize_amount',
    'SYSTEM_WALLET',
    'UNIT_TYPE_CASH',
    'UNIT_TYPE_GENERATOR',
    'UNIT_TYPE_PLAYER_ACCOUNT',
    'UNIT_TYPE_LEVERAGED_POSITION',
    'Positions',
    'BalanceMap',
    'UnitState',
    'PriceMap',
    # Ledger
    'Ledger',
    # Config
    'GeneratorKind',
    'MatchConfig',
    'DEFAULT_CONFIG',
    'DEFAULT_GENERATORS',
    'TIMED_MATCH_CONFIG',
    # Economy
    'AccountSnapshot',
    'current_price',
    'current_prices',
    'compute_net_worth',
    'compute_collateral_net_worth',
    'calculate_accrual',
    'compute_accrual',
    'compute_click',
    'compute_click_upgrade',
    'compute_snapshot',
    # Settlement
    'PaymentOutcome',
    'CloseOutcome',
    'InsolvencyCheck',
    'LiquidationContract',
    'calculate_payment',
    'plan_force_payment',
    'compute_force_payment',
    'compute_close_position',
    'compute_liquidation',
    'find_insolvent_targets',
    # Commands / ticks
    'Command',
    'CommandOutcome',
    'CommandQueue',
    'create_default_queue',
    'TickDriver',
    'TickReport',
    # Match
    'Match',
    'OpenResult',
    'CloseResult',
    'PurchaseResult',
    'UpgradeResult',
] + list(_units_all)

__version__ = '1.0.0'
