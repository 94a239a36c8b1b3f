"""
test_settlement.py - Unit tests for forced payment, close and liquidation

Tests:
- calculate_payment: solvent, bankrupt, already in debt
- compute_force_payment on a ledger (collateral liquidation, write-off)
- Manual close: profit, loss, loss cap, zero PNL, insolvent target
- Liquidation: stake forfeiture, contract polling
- Insolvency detection
"""

import pytest
from decimal import Decimal

from clickmarket import (
    DEFAULT_CONFIG, ExecuteResult, PositionNotFound, PositionNotOpen, PositionStatus,
    LiquidationContract, calculate_payment, compute_buy_generator, compute_close_position,
    compute_force_payment, compute_liquidation, compute_open_position, find_insolvent_targets,
    current_prices, generator_counts, load_account, load_position,
)
from tests.conftest import set_cookies


def _open(ledger, owner="alice", target="bob", direction="long", stake=100, leverage=5):
    pending, position_id, _ = compute_open_position(
        ledger, owner, target, direction, stake, leverage, DEFAULT_CONFIG,
    )
    assert ledger.execute(pending) == ExecuteResult.APPLIED
    return position_id


def _close(ledger, position_id, owner="alice"):
    pending, outcome = compute_close_position(ledger, owner, position_id, DEFAULT_CONFIG)
    assert ledger.execute(pending) == ExecuteResult.APPLIED
    return outcome


def _buy_grandmas(ledger, player, count):
    for _ in range(count):
        pending, _, _ = compute_buy_generator(ledger, player, "grandma", DEFAULT_CONFIG)
        assert ledger.execute(pending) == ExecuteResult.APPLIED


class TestCalculatePayment:

    def test_solvent(self):
        outcome = calculate_payment(Decimal("100"), Decimal("50"), Decimal("120"))
        assert not outcome.bankrupt
        assert outcome.paid == Decimal("120")
        assert outcome.balance_after == Decimal("-20")

    def test_exactly_solvent(self):
        outcome = calculate_payment(Decimal("100"), Decimal("50"), Decimal("150"))
        assert not outcome.bankrupt

    def test_bankrupt_pays_net_worth(self):
        outcome = calculate_payment(Decimal("100"), Decimal("28"), Decimal("200"))
        assert outcome.bankrupt
        assert outcome.paid == Decimal("128")
        assert outcome.collateral_sold == Decimal("28")
        assert outcome.written_off == Decimal("0")
        assert outcome.balance_after == Decimal("0")

    def test_bankrupt_in_debt_pays_nothing(self):
        outcome = calculate_payment(Decimal("-50"), Decimal("28"), Decimal("10"))
        assert outcome.bankrupt
        assert outcome.paid == Decimal("0")
        assert outcome.written_off == Decimal("22")

    def test_zero_amount_is_a_no_op(self):
        outcome = calculate_payment(Decimal("-0.01"), Decimal("0"), Decimal("0"))
        assert not outcome.bankrupt
        assert outcome.paid == 0
        assert outcome.balance_after == Decimal("-0.01")

    def test_negative_amount_raises(self):
        with pytest.raises(ValueError):
            calculate_payment(Decimal("1"), Decimal("0"), Decimal("-1"))


class TestForcePayment:

    def test_solvent_payment(self, ledger):
        pending, outcome = compute_force_payment(ledger, "bob", "alice", 300)
        assert ledger.execute(pending) == ExecuteResult.APPLIED
        assert not outcome.bankrupt
        assert ledger.get_balance("bob", "COOKIE") == Decimal("700")
        assert ledger.get_balance("alice", "COOKIE") == Decimal("800")

    def test_bankruptcy_liquidates_everything(self, ledger):
        _buy_grandmas(ledger, "bob", 2)
        set_cookies(ledger, "bob", 100)
        pending, outcome = compute_force_payment(ledger, "bob", "alice", 200)
        assert ledger.execute(pending) == ExecuteResult.APPLIED
        assert outcome.bankrupt and outcome.paid == Decimal("128")
        assert ledger.get_balance("bob", "COOKIE") == Decimal("0")
        assert ledger.get_balance("alice", "COOKIE") == Decimal("628")
        assert all(count == 0 for count in generator_counts(ledger, "bob").values())
        account = load_account(ledger, "bob")
        assert account.bankrupt and account.bankruptcies == 1
        assert ledger.verify_double_entry()['valid']

    def test_debt_written_off(self, ledger):
        _buy_grandmas(ledger, "bob", 2)
        set_cookies(ledger, "bob", -50)
        pending, outcome = compute_force_payment(ledger, "bob", "alice", 10)
        ledger.execute(pending)
        assert outcome.paid == Decimal("0")
        assert ledger.get_balance("bob", "COOKIE") == Decimal("0")
        assert ledger.get_balance("alice", "COOKIE") == Decimal("500")

    def test_payer_equals_payee_raises(self, ledger):
        with pytest.raises(ValueError):
            compute_force_payment(ledger, "bob", "bob", 10)


class TestClosePosition:

    def test_profit_paid_by_target(self, ledger):
        position_id = _open(ledger)
        set_cookies(ledger, "bob", 1100)
        outcome = _close(ledger, position_id)
        assert outcome.pnl == Decimal("50")
        assert outcome.transferred == Decimal("50")
        assert outcome.payer == "bob"
        assert ledger.get_balance("alice", "COOKIE") == Decimal("550")
        assert ledger.get_balance("bob", "COOKIE") == Decimal("1050")

    def test_loss_paid_by_owner(self, ledger):
        position_id = _open(ledger, direction="short", stake=50, leverage=2)
        set_cookies(ledger, "bob", 1200)
        outcome = _close(ledger, position_id)
        assert outcome.pnl == Decimal("-20")
        assert outcome.transferred == Decimal("-20")
        assert ledger.get_balance("alice", "COOKIE") == Decimal("480")
        assert ledger.get_balance("bob", "COOKIE") == Decimal("1220")

    def test_loss_capped_at_stake(self, ledger):
        position_id = _open(ledger)
        set_cookies(ledger, "bob", 700)
        outcome = _close(ledger, position_id)
        assert outcome.pnl == Decimal("-150")
        assert outcome.transferred == Decimal("-100")
        assert ledger.get_balance("alice", "COOKIE") == Decimal("400")

    def test_owner_loss_can_leave_debt(self, ledger):
        position_id = _open(ledger)
        set_cookies(ledger, "alice", 20)
        set_cookies(ledger, "bob", 900)
        outcome = _close(ledger, position_id)
        assert outcome.transferred == Decimal("-50")
        assert not outcome.bankrupt
        assert ledger.get_balance("alice", "COOKIE") == Decimal("-30")
        assert ledger.get_balance("bob", "COOKIE") == Decimal("950")
        assert not load_account(ledger, "alice").bankrupt

    def test_round_trip_at_same_price(self, ledger):
        position_id = _open(ledger)
        outcome = _close(ledger, position_id)
        assert outcome.pnl == 0 and outcome.payer is None
        assert ledger.get_balance("alice", "COOKIE") == Decimal("500")
        assert ledger.get_balance("bob", "COOKIE") == Decimal("1000")

    def test_close_retires_unit(self, ledger):
        position_id = _open(ledger)
        _close(ledger, position_id)
        assert ledger.get_positions(position_id) == {}
        _, state = load_position(ledger, position_id)
        assert state.status is PositionStatus.CLOSED
        assert state.close_price == Decimal("1000")
        assert state.closed_at == ledger.current_time

    def test_insolvent_target_goes_bankrupt(self, ledger):
        position_id = _open(ledger, stake=400, leverage=10)
        set_cookies(ledger, "bob", 2000)
        outcome = _close(ledger, position_id)
        assert outcome.pnl == Decimal("4000")
        assert outcome.bankrupt
        assert outcome.transferred == Decimal("2000")
        assert ledger.get_balance("bob", "COOKIE") == Decimal("0")
        assert ledger.get_balance("alice", "COOKIE") == Decimal("2500")
        assert load_account(ledger, "bob").bankrupt

    def test_not_owner(self, ledger):
        position_id = _open(ledger)
        with pytest.raises(PositionNotFound):
            compute_close_position(ledger, "bob", position_id, DEFAULT_CONFIG)

    def test_close_twice(self, ledger):
        position_id = _open(ledger)
        _close(ledger, position_id)
        with pytest.raises(PositionNotOpen):
            compute_close_position(ledger, "alice", position_id, DEFAULT_CONFIG)

    def test_mark_price_override(self, ledger):
        position_id = _open(ledger)
        _, outcome = compute_close_position(ledger, "alice", position_id, DEFAULT_CONFIG, mark_price=Decimal("1200"))
        assert outcome.pnl == Decimal("100")


class TestLiquidation:

    def test_forfeits_exactly_stake(self, ledger):
        position_id = _open(ledger)
        set_cookies(ledger, "bob", 300)
        pending, outcome = compute_liquidation(ledger, position_id, DEFAULT_CONFIG)
        assert ledger.execute(pending) == ExecuteResult.APPLIED
        assert outcome.status is PositionStatus.LIQUIDATED
        assert outcome.pnl == Decimal("-100")
        assert ledger.get_balance("alice", "COOKIE") == Decimal("400")
        assert ledger.get_balance("bob", "COOKIE") == Decimal("400")

    def test_owner_in_debt_still_forfeits_full_stake(self, ledger):
        _buy_grandmas(ledger, "alice", 1)
        position_id = _open(ledger)
        set_cookies(ledger, "alice", 50)
        set_cookies(ledger, "bob", 750)
        pending, outcome = compute_liquidation(ledger, position_id, DEFAULT_CONFIG)
        assert ledger.execute(pending) == ExecuteResult.APPLIED
        assert outcome.transferred == Decimal("-100")
        assert not outcome.bankrupt
        assert ledger.get_balance("alice", "COOKIE") == Decimal("-50")
        assert ledger.get_balance("bob", "COOKIE") == Decimal("850")
        assert generator_counts(ledger, "alice")["grandma"] == 1
        assert not load_account(ledger, "alice").bankrupt

    def test_not_crossed_raises(self, ledger):
        position_id = _open(ledger)
        with pytest.raises(ValueError, match="Cannot liquidate"):
            compute_liquidation(ledger, position_id, DEFAULT_CONFIG)

    def test_contract_noop_above_threshold(self, ledger):
        position_id = _open(ledger)
        contract = LiquidationContract(DEFAULT_CONFIG)
        pending = contract.check_lifecycle(ledger, position_id, ledger.current_time, current_prices(ledger))
        assert pending.is_empty()

    def test_contract_uses_price_map(self, ledger):
        position_id = _open(ledger)
        contract = LiquidationContract(DEFAULT_CONFIG)
        pending = contract.check_lifecycle(ledger, position_id, ledger.current_time, {"bob": Decimal("800")})
        assert pending.origin.event_type == "LIQUIDATION"

    def test_contract_skips_closed(self, ledger):
        position_id = _open(ledger)
        _close(ledger, position_id)
        contract = LiquidationContract(DEFAULT_CONFIG)
        assert contract.check_lifecycle(ledger, position_id, ledger.current_time, {"bob": Decimal("1")}).is_empty()

    def test_short_liquidation(self, ledger):
        position_id = _open(ledger, direction="short", stake=50, leverage=2)
        set_cookies(ledger, "bob", 1500)
        pending, _ = compute_liquidation(ledger, position_id, DEFAULT_CONFIG)
        ledger.execute(pending)
        assert ledger.get_balance("alice", "COOKIE") == Decimal("450")


class TestInsolvency:

    def test_solvent_target_not_reported(self, ledger):
        _open(ledger)
        set_cookies(ledger, "bob", 1500)
        assert find_insolvent_targets(ledger) == []

    def test_insolvent_target_reported(self, ledger):
        position_id = _open(ledger, stake=400, leverage=10)
        set_cookies(ledger, "bob", 2000)
        (check,) = find_insolvent_targets(ledger)
        assert check.target == "bob"
        assert check.mark_price == Decimal("2000")
        assert check.owed == Decimal("4000")
        assert check.position_ids == (position_id,)
