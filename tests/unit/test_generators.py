"""
test_generators.py - Unit tests for generator units

Tests:
- Cost curve and collateral formulas (pure)
- Production rate
- Purchase transaction and its rejection
- Transfer rule (players never trade generators)
- Liquidation moves used by bankruptcy
"""

import pytest
from decimal import Decimal

from clickmarket import (
    ExecuteResult, Move, RejectionReason, SYSTEM_WALLET, TradeRejected,
    UnknownGeneratorKind, DEFAULT_CONFIG, GeneratorKind,
    build_transaction, generator_symbol, calculate_purchase_cost,
    calculate_holding_collateral, calculate_production_rate,
    compute_buy_generator, compute_collateral_value, compute_production_rate,
    compute_purchase_cost, generator_counts, load_generator,
)
from clickmarket.units.generator import generator_liquidation_moves


def _buy(ledger, player, kind, times=1):
    for _ in range(times):
        pending, _, _ = compute_buy_generator(ledger, player, kind, DEFAULT_CONFIG)
        assert ledger.execute(pending) == ExecuteResult.APPLIED


class TestPureCalculations:

    @pytest.mark.parametrize("owned,cost", [(0, 15), (1, 17), (2, 19), (3, 22), (10, 60)])
    def test_purchase_cost_curve(self, owned, cost):
        assert calculate_purchase_cost(Decimal("15"), owned, Decimal("1.15")) == Decimal(cost)

    def test_purchase_cost_negative_owned_raises(self):
        with pytest.raises(ValueError):
            calculate_purchase_cost(Decimal("15"), -1, Decimal("1.15"))

    def test_holding_collateral(self):
        # floor(100*0.9) + floor(115*0.9) + floor(132.25*0.9) = 90 + 103 + 119
        value = calculate_holding_collateral(Decimal("100"), 3, Decimal("1.15"), Decimal("0.9"))
        assert value == Decimal("312")

    def test_holding_collateral_empty(self):
        assert calculate_holding_collateral(Decimal("100"), 0, Decimal("1.15"), Decimal("0.9")) == 0

    def test_production_rate(self):
        rate = calculate_production_rate(
            {"grandma": 3, "bakery": 2},
            {"grandma": Decimal("1"), "bakery": Decimal("5")},
        )
        assert rate == Decimal("13")


class TestGeneratorKind:

    def test_coerces_numbers(self):
        kind = GeneratorKind("grandma", "Grandma", 15, "1")
        assert kind.base_cost == Decimal("15")
        assert kind.output == Decimal("1")

    def test_non_positive_cost_raises(self):
        with pytest.raises(ValueError):
            GeneratorKind("free", "Free", 0, 1)

    def test_symbol(self):
        assert generator_symbol("wizard") == "GEN_WIZARD"


class TestPurchase:

    def test_buy_moves_cost_and_unit(self, ledger):
        pending, cost, new_count = compute_buy_generator(ledger, "alice", "grandma", DEFAULT_CONFIG)
        assert (cost, new_count) == (Decimal("15"), 1)
        assert ledger.execute(pending) == ExecuteResult.APPLIED
        assert ledger.get_balance("alice", "COOKIE") == Decimal("485")
        assert generator_counts(ledger, "alice")["grandma"] == 1

    def test_price_rises_with_holdings(self, ledger):
        _buy(ledger, "alice", "grandma", 2)
        assert compute_purchase_cost(ledger, "alice", "grandma") == Decimal("19")
        assert ledger.get_balance("alice", "COOKIE") == Decimal("500") - 15 - 17

    def test_insufficient_funds_rejected(self, ledger):
        with pytest.raises(TradeRejected) as exc:
            compute_buy_generator(ledger, "alice", "factory", DEFAULT_CONFIG, locked=Decimal("0.01"))
        assert exc.value.reason is RejectionReason.INSUFFICIENT_FUNDS

    def test_locked_stake_excluded(self, ledger):
        with pytest.raises(TradeRejected):
            compute_buy_generator(ledger, "alice", "bakery", DEFAULT_CONFIG, locked=Decimal("450"))

    def test_unknown_kind(self, ledger):
        with pytest.raises(UnknownGeneratorKind):
            load_generator(ledger, "spaceship")
        with pytest.raises(UnknownGeneratorKind):
            compute_buy_generator(ledger, "alice", "spaceship", DEFAULT_CONFIG)

    def test_production_and_collateral(self, ledger):
        _buy(ledger, "bob", "grandma", 2)
        _buy(ledger, "bob", "bakery")
        assert compute_production_rate(ledger, "bob") == Decimal("7")
        # grandma: 13 + 15, bakery: 90
        assert compute_collateral_value(ledger, "bob", DEFAULT_CONFIG) == Decimal("118")

    def test_supply_conserved(self, ledger):
        _buy(ledger, "bob", "grandma", 3)
        assert ledger.total_supply("GEN_GRANDMA") == 0
        assert ledger.get_balance(SYSTEM_WALLET, "GEN_GRANDMA") == Decimal("-3")


class TestTransferRule:

    def test_player_to_player_rejected(self, ledger):
        _buy(ledger, "alice", "grandma")
        result = ledger.execute(build_transaction(ledger, [
            Move(Decimal("1"), "GEN_GRANDMA", "alice", "bob", "gift")
        ]))
        assert result == ExecuteResult.REJECTED


class TestLiquidationMoves:

    def test_returns_every_kind_to_system(self, ledger):
        _buy(ledger, "bob", "grandma", 2)
        _buy(ledger, "bob", "bakery")
        moves = generator_liquidation_moves(ledger, "bob", "bankrupt_bob")
        assert {(m.unit_symbol, m.quantity, m.dest) for m in moves} == {
            ("GEN_BAKERY", Decimal("1"), SYSTEM_WALLET),
            ("GEN_GRANDMA", Decimal("2"), SYSTEM_WALLET),
        }

    def test_nothing_held(self, ledger):
        assert generator_liquidation_moves(ledger, "alice", "x") == []
