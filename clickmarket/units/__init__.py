"""
Units module - Factories and functions for the assets a match tracks.

- Player account units (click power, bankruptcy, nonce)
- Generator units (production and collateral)
- Leveraged position units (one per position, owned by the trader)

All unit factories and related functions are re-exported here for convenience.
"""

# Player accounts
from .account import (
    ACCOUNT_PREFIX,
    AccountState,
    account_symbol,
    create_account_unit,
    is_player,
    require_player,
    list_players,
    load_account,
    calculate_click_upgrade_cost,
    compute_register_player,
    compute_adjust_balance,
)

# Generators
from .generator import (
    GENERATOR_PREFIX,
    generator_symbol,
    create_generator_unit,
    calculate_purchase_cost,
    calculate_holding_collateral,
    calculate_production_rate,
    load_generator,
    load_generators,
    generator_counts,
    compute_production_rate,
    compute_collateral_value,
    compute_purchase_cost,
    compute_buy_generator,
)

# Leveraged positions
from .position import (
    POSITION_PREFIX,
    PositionTerms,
    PositionState,
    PositionSummary,
    position_symbol,
    create_position_unit,
    calculate_liquidation_price,
    calculate_pnl,
    calculate_merged_entry,
    calculate_stake_cap,
    calculate_open_rejection,
    calculate_max_stake,
    is_liquidatable,
    load_position,
    list_position_ids,
    get_open_positions,
    get_positions_against,
    compute_locked_stake,
    compute_available_balance,
    compute_unrealized_pnl,
    compute_max_stake,
    compute_open_position,
)


__all__ = [
    # Accounts
    'ACCOUNT_PREFIX',
    'AccountState',
    'account_symbol',
    'create_account_unit',
    'is_player',
    'require_player',
    'list_players',
    'load_account',
    'calculate_click_upgrade_cost',
    'compute_register_player',
    'compute_adjust_balance',
    # Generators
    'GENERATOR_PREFIX',
    'generator_symbol',
    'create_generator_unit',
    'calculate_purchase_cost',
    'calculate_holding_collateral',
    'calculate_production_rate',
    'load_generator',
    'load_generators',
    'generator_counts',
    'compute_production_rate',
    'compute_collateral_value',
    'compute_purchase_cost',
    'compute_buy_generator',
    # Positions
    'POSITION_PREFIX',
    'PositionTerms',
    'PositionState',
    'PositionSummary',
    'position_symbol',
    'create_position_unit',
    'calculate_liquidation_price',
    'calculate_pnl',
    'calculate_merged_entry',
    'calculate_stake_cap',
    'calculate_open_rejection',
    'calculate_max_stake',
    'is_liquidatable',
    'load_position',
    'list_position_ids',
    'get_open_positions',
    'get_positions_against',
    'compute_locked_stake',
    'compute_available_balance',
    'compute_unrealized_pnl',
    'compute_max_stake',
    'compute_open_position',
]
