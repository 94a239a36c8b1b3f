"""
conftest.py - Shared pytest fixtures for match tests

Provides common fixtures used across unit and functional tests:
- Bare ledgers (currency and generators registered, no players)
- Player ledgers built through the real registration transaction
- Match facades with two or three funded players
- Conservation helpers
"""

import pytest
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from clickmarket import (
    Ledger, Match, MatchConfig, DEFAULT_CONFIG, ExecuteResult,
    cash, create_generator_unit, compute_register_player, compute_adjust_balance,
)

from tests.fake_view import FakeView


START = datetime(2025, 1, 1)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def add_player(ledger: Ledger, name: str, balance=0, config: MatchConfig = DEFAULT_CONFIG) -> str:
    """Register a player on a raw ledger the way Match does."""
    ledger.register_wallet(name)
    result = ledger.execute(compute_register_player(ledger, name, config.currency, balance))
    assert result == ExecuteResult.APPLIED
    return name


def set_cookies(ledger: Ledger, name: str, target, config: MatchConfig = DEFAULT_CONFIG) -> None:
    """Move a player's balance to `target` through a real adjustment."""
    delta = Decimal(str(target)) - ledger.get_balance(name, config.currency)
    if delta != 0:
        assert ledger.execute(compute_adjust_balance(ledger, name, delta, config.currency)) == ExecuteResult.APPLIED


def verify_conservation(ledger: Ledger) -> bool:
    """Every unit, currency included, totals zero across all wallets."""
    return ledger.verify_double_entry()['valid']


def make_match(balances: Dict[str, object], config: Optional[MatchConfig] = None) -> Match:
    match = Match("test", config or DEFAULT_CONFIG, start_time=START)
    for name, balance in balances.items():
        match.add_player(name, balance)
    return match


# =============================================================================
# LEDGER FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Ledger with the currency and default generator kinds, no players."""
    ledger = Ledger("test", START, verbose=False)
    ledger.register_unit(cash("COOKIE", "Cookie"))
    for spec in DEFAULT_CONFIG.generators:
        ledger.register_unit(create_generator_unit(spec))
    return ledger


@pytest.fixture
def ledger(empty_ledger):
    """alice (500) and bob (1000)."""
    add_player(empty_ledger, "alice", 500)
    add_player(empty_ledger, "bob", 1000)
    return empty_ledger


@pytest.fixture
def test_mode_ledger():
    """Raw ledger with set_balance() enabled, for ledger-level tests."""
    ledger = Ledger("test", START, verbose=False, test_mode=True)
    ledger.register_unit(cash("COOKIE", "Cookie"))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    return ledger


# =============================================================================
# MATCH FIXTURES
# =============================================================================

@pytest.fixture
def match():
    """Match with alice (500) and bob (1000)."""
    return make_match({"alice": 500, "bob": 1000})


@pytest.fixture
def three_player_match():
    """alice (5000), bob (1000), carol (2000)."""
    return make_match({"alice": 5000, "bob": 1000, "carol": 2000})


@pytest.fixture
def timed_match():
    """Two players, ten-second match at 10 Hz."""
    config = DEFAULT_CONFIG.with_overrides(duration_seconds=10)
    return make_match({"alice": 500, "bob": 1000}, config)


@pytest.fixture
def fake_view():
    """FakeView with COOKIE and the default generators, alice and bob funded."""
    units = {"COOKIE": cash("COOKIE", "Cookie")}
    for spec in DEFAULT_CONFIG.generators:
        unit = create_generator_unit(spec)
        units[unit.symbol] = unit
    return FakeView(
        balances={"alice": {"COOKIE": Decimal("500")}, "bob": {"COOKIE": Decimal("1000")}},
        units=units,
        time=START,
    )
