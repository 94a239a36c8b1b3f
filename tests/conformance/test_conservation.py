"""
Conservation Law Conformance Tests

INVARIANT: For all units u, at all times t:
    Σ_{w ∈ wallets} balance(w, u, t) = 0

Currency, generators, account units and position units are all issued by
SYSTEM_WALLET or created as a +1/-1 pair between counterparties, so any
sequence of game actions leaves every unit summing to zero.
"""

from hypothesis import given, settings, HealthCheck
from hypothesis import strategies as st
from decimal import Decimal

from clickmarket import MatchError, PositionNotOpen
from tests.conftest import make_match


PLAYERS = ["alice", "bob", "carol"]
KINDS = ["grandma", "bakery", "factory"]


@st.composite
def game_action(draw):
    kind = draw(st.sampled_from(["open", "close", "buy", "click", "upgrade", "adjust", "tick", "pay"]))
    player = draw(st.sampled_from(PLAYERS))
    other = draw(st.sampled_from([p for p in PLAYERS if p != player]))
    if kind == "open":
        return (kind, player, other,
                draw(st.sampled_from(["long", "short"])),
                draw(st.decimals(min_value=1, max_value=400, places=2)),
                draw(st.integers(min_value=2, max_value=20)))
    if kind == "close":
        return (kind, player, draw(st.integers(min_value=1, max_value=8)))
    if kind == "buy":
        return (kind, player, draw(st.sampled_from(KINDS)))
    if kind == "adjust":
        return (kind, player, draw(st.decimals(min_value=-800, max_value=800, places=2).filter(lambda d: d != 0)))
    if kind == "tick":
        return (kind, draw(st.decimals(min_value=0, max_value=5, places=1)))
    if kind == "pay":
        return (kind, player, other, draw(st.decimals(min_value=0, max_value=3000, places=2)))
    return (kind, player)


def apply_action(match, action):
    """Run one action, ignoring the failures the game expects."""
    kind = action[0]
    if kind == "open":
        match.open_position(*action[1:])
    elif kind == "close":
        _, player, n = action
        try:
            match.close_position(player, f"POS_{n:06d}")
        except (MatchError, PositionNotOpen):
            pass
    elif kind == "buy":
        match.buy_generator(action[1], action[2])
    elif kind == "click":
        match.click(action[1])
    elif kind == "upgrade":
        match.upgrade_click(action[1])
    elif kind == "adjust":
        match.adjust_balance(action[1], action[2])
    elif kind == "tick":
        match.tick(action[1])
    elif kind == "pay":
        match.force_payment(action[1], action[2], action[3])


class TestConservationProperties:
    """Property-based conservation tests."""

    @given(st.lists(game_action(), min_size=1, max_size=25))
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_every_unit_sums_to_zero(self, actions):
        """
        PROPERTY: After any sequence of game actions, every unit's total
        supply across all wallets is exactly zero.
        """
        match = make_match({"alice": 2000, "bob": 1000, "carol": 500})
        for action in actions:
            apply_action(match, action)
            report = match.ledger.verify_double_entry()
            assert report['valid'], report['discrepancies']

    @given(st.lists(game_action(), min_size=1, max_size=25))
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_position_units_held_by_counterparties_only(self, actions):
        """
        PROPERTY: An open position unit is held +1 by its owner and -1 by its
        target; a settled one is held by nobody.
        """
        match = make_match({"alice": 2000, "bob": 1000, "carol": 500})
        for action in actions:
            apply_action(match, action)
        for symbol in match.ledger.list_units():
            if not symbol.startswith("POS_"):
                continue
            terms, state = match.position(symbol)
            holders = match.ledger.get_positions(symbol)
            if state.is_open:
                assert holders == {terms.owner: Decimal("1"), terms.target: Decimal("-1")}
            else:
                assert holders == {}


class TestConservationExamples:

    def test_bankruptcy_conserves(self):
        match = make_match({"alice": 500, "bob": 1000})
        match.buy_generator("alice", "grandma")
        match.force_payment("alice", "bob", 5000)
        assert match.verify_conservation()
        assert match.ledger.total_supply("GEN_GRANDMA") == 0
