"""
test_tick_driver.py - Tick loop behaviour

Tests:
- Clock advance and dt handling
- Liquidation cascades within one tick, and max_passes
- Contract errors recorded without stopping the tick
- Only units someone still holds are polled
- run() bounds
- Verbose output
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from clickmarket import (
    DEFAULT_CONFIG, Match, TickDriver, UNIT_TYPE_GENERATOR, UNIT_TYPE_LEVERAGED_POSITION,
    create_default_queue, empty_pending_transaction,
)
from tests.conftest import START, make_match


def _cascade_setup(match):
    """alice long bob (liq 900), bob long carol (liq 1600); carol then drops to 1500."""
    first = match.open_position("alice", "bob", "long", 100, 10)
    second = match.open_position("bob", "carol", "long", 200, 5)
    assert first.success and second.success
    match.adjust_balance("carol", -500)
    return first.position_id, second.position_id


class TestClock:

    def test_tick_advances_time(self, match):
        report = match.tick()
        assert report.tick == 1
        assert report.dt == Decimal("0.1")
        assert match.current_time == START + timedelta(milliseconds=100)

    def test_negative_dt_clamped(self, match):
        match.buy_generator("bob", "grandma")
        before = match.balance("bob")
        report = match.tick(-3)
        assert report.dt == 0
        assert match.balance("bob") == before
        assert match.current_time == START

    def test_non_finite_dt_raises(self, match):
        with pytest.raises(ValueError):
            match.tick(float("nan"))

    def test_accrual_recorded_in_report(self, match):
        match.buy_generator("bob", "grandma")
        report = match.tick(1)
        assert [tx.origin.event_type for tx in report.transactions] == ["ACCRUAL"]


class TestCascades:

    def test_cascade_in_one_tick(self, three_player_match):
        first, second = _cascade_setup(three_player_match)
        report = three_player_match.tick()
        assert report.liquidated == [second, first]
        assert three_player_match.balance("alice") == Decimal("4900")
        assert three_player_match.balance("bob") == Decimal("900")
        assert three_player_match.balance("carol") == Decimal("1700")
        assert three_player_match.verify_conservation()

    def test_max_passes_defers_cascade(self):
        config = DEFAULT_CONFIG.with_overrides(max_passes=1)
        match = make_match({"alice": 5000, "bob": 1000, "carol": 2000}, config)
        first, second = _cascade_setup(match)
        assert match.tick().liquidated == [second]
        assert match.tick().liquidated == [first]

    def test_untouched_positions_survive(self, three_player_match):
        opened = three_player_match.open_position("carol", "alice", "short", 100, 2)
        _cascade_setup(three_player_match)
        three_player_match.tick()
        assert three_player_match.position(opened.position_id)[1].is_open


class TestContractErrors:

    def test_retired_positions_not_polled(self, match):
        polled = []

        def watch(view, symbol, timestamp, prices):
            polled.append(symbol)
            return empty_pending_transaction(view)

        first = match.open_position("alice", "bob", "long", 50, 2)
        second = match.open_position("alice", "bob", "short", 50, 2)
        match.close_position("alice", first.position_id)
        match.driver.register(UNIT_TYPE_LEVERAGED_POSITION, watch)
        match.tick()
        assert polled == [second.position_id]

    def test_contract_error_recorded(self, match):
        def broken_contract(view, symbol, timestamp, prices):
            raise ValueError("boom")

        match.driver.register(UNIT_TYPE_GENERATOR, broken_contract)
        match.buy_generator("bob", "grandma")
        match.queue_click("alice")
        report = match.tick()
        assert report.errors and "boom" in report.errors[0]
        assert report.commands[0].applied


class TestRun:

    def test_run_needs_bound(self, match):
        with pytest.raises(ValueError):
            match.run()

    def test_run_steps(self, match):
        reports = match.run(steps=5, dt=1)
        assert [r.tick for r in reports] == [1, 2, 3, 4, 5]
        assert match.elapsed == Decimal("5")

    def test_driver_on_raw_ledger(self, ledger):
        driver = TickDriver(ledger, DEFAULT_CONFIG, create_default_queue())
        report = driver.step()
        assert report.snapshots.keys() == {"alice", "bob"}
        assert driver.tick_count == 1


class TestVerbose:

    def test_liquidation_logged(self, capsys):
        match = Match("loud", start_time=START, verbose=True)
        match.add_player("alice", 500)
        match.add_player("bob", 1000)
        opened = match.open_position("alice", "bob", "long", 100, 5)
        match.adjust_balance("bob", -250)
        match.tick()
        out = capsys.readouterr().out
        assert "[REGISTER] COOKIE" in out
        assert f"[LIQUIDATION] {opened.position_id}" in out
