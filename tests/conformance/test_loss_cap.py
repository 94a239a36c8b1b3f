"""
Loss Cap Conformance Tests

INVARIANT: Closing a position never costs the owner more than its stake:
    owner_balance_after >= owner_balance_before - stake

The realized PNL recorded on the position is uncapped; only the amount
actually paid is limited.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from clickmarket import Direction, calculate_pnl
from tests.conftest import make_match


directions = st.sampled_from(["long", "short"])
leverages = st.integers(min_value=2, max_value=50)


class TestLossCapProperties:

    @given(direction=directions, leverage=leverages,
           stake=st.integers(min_value=1, max_value=500),
           move=st.integers(min_value=-900, max_value=3000))
    @settings(max_examples=200, deadline=None)
    def test_close_costs_at_most_stake(self, direction, leverage, stake, move):
        """
        PROPERTY: Whatever the target's balance does before the close, the
        owner loses at most the stake.
        """
        match = make_match({"alice": 1000, "bob": 1000})
        opened = match.open_position("alice", "bob", direction, stake, leverage)
        if not opened.success:
            return
        if move:
            match.adjust_balance("bob", move)
        before = match.balance("alice")

        closed = match.close_position("alice", opened.position_id)

        assert match.balance("alice") >= before - stake
        assert closed.transferred >= -stake
        if closed.pnl < 0:
            assert closed.transferred == max(closed.pnl, -Decimal(stake))
        assert match.verify_conservation()

    @given(entry=st.integers(min_value=100, max_value=10000),
           price=st.integers(min_value=-1000, max_value=20000),
           stake=st.integers(min_value=1, max_value=1000),
           leverage=leverages,
           direction=st.sampled_from(list(Direction)))
    @settings(max_examples=300)
    def test_pnl_is_floored_and_signed(self, entry, price, stake, leverage, direction):
        """
        PROPERTY: PNL is a whole number, zero at the entry price, and has the
        sign of the price move times the direction.
        """
        pnl = calculate_pnl(Decimal(entry), Decimal(price), Decimal(stake), leverage, direction)
        assert pnl == pnl.to_integral_value()
        move = (price - entry) * direction.sign
        if move == 0:
            assert pnl == 0
        elif move > 0:
            assert pnl >= 0
        else:
            assert pnl < 0
