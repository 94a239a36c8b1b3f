"""
settlement.py - Closing positions and forced payment

A target that owes an owner PNL pays through force payment:

    G = payer's generator collateral, N = payer balance + G
    N - amount >= 0  ->  payer balance -= amount (a negative balance is debt)
    N - amount <  0  ->  bankruptcy: every generator goes back to the system,
                         the system credits G, the payer pays max(N, 0) to the
                         payee, any remaining debt is written off, and the
                         payer ends at exactly 0 with the bankrupt flag set

Bankruptcy is binary and total. The payee never receives more than the
bankrupt payer actually had.

An owner's losses never go through force payment. The stake was locked when
the position opened, so the owner pays the target directly and may end in
debt: manual close pays min(|pnl|, stake) and liquidation forfeits exactly the
stake. Either way the settlement runs as one atomic transaction that also
returns the position unit to the target.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .config import MatchConfig, DEFAULT_CONFIG
from .core import (
    LedgerView, Move, PendingTransaction, UnitStateChange, TransactionOrigin, OriginType,
    PositionStatus, PriceMap, SYSTEM_WALLET,
    PositionNotFound, PositionNotOpen,
    build_transaction, empty_pending_transaction, quantize_amount, to_decimal,
)
from .units.account import account_state_changes, bankruptcy_update, list_players, require_player
from .units.generator import compute_collateral_value, generator_liquidation_moves
from .units.position import (
    PositionState, PositionTerms,
    calculate_pnl, get_positions_against, is_liquidatable, load_position, to_state_dict,
)


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class PaymentOutcome:
    """
    Result of a forced payment.

    Attributes:
        amount: requested amount
        paid: amount the payee actually receives
        bankrupt: whether the payment bankrupted the payer
        collateral_sold: generator collateral credited to the payer on bankruptcy
        written_off: debt forgiven by the system on bankruptcy
        balance_after: payer's balance after the payment
    """
    amount: Decimal
    paid: Decimal
    bankrupt: bool
    collateral_sold: Decimal
    written_off: Decimal
    balance_after: Decimal


@dataclass(frozen=True, slots=True)
class CloseOutcome:
    """
    Result of closing or liquidating a position.

    bankrupt refers to the target: only a target paying PNL can go bankrupt.
    transferred is signed from the owner's side: positive when the owner
    received money, negative when the owner paid.
    """
    position_id: str
    owner: str
    target: str
    status: PositionStatus
    price: Decimal
    pnl: Decimal
    transferred: Decimal
    payer: Optional[str]
    bankrupt: bool


@dataclass(frozen=True, slots=True)
class InsolvencyCheck:
    """A target that cannot cover the positive PNL owed on positions against it."""
    target: str
    mark_price: Decimal
    owed: Decimal
    net_worth: Decimal
    position_ids: Tuple[str, ...]


# ============================================================================
# FORCED PAYMENT
# ============================================================================

def calculate_payment(balance: Decimal, collateral: Decimal, amount: Decimal) -> PaymentOutcome:
    """
    Pure force-payment rule on explicit inputs.

    A zero amount is a no-op, even for a payer already underwater.
    """
    if amount < 0:
        raise ValueError(f"payment amount cannot be negative, got {amount}")
    net_worth = balance + collateral
    if amount == 0 or net_worth - amount >= 0:
        return PaymentOutcome(
            amount=amount,
            paid=amount,
            bankrupt=False,
            collateral_sold=Decimal("0"),
            written_off=Decimal("0"),
            balance_after=balance - amount,
        )
    paid = max(net_worth, Decimal("0"))
    return PaymentOutcome(
        amount=amount,
        paid=paid,
        bankrupt=True,
        collateral_sold=collateral,
        written_off=paid - net_worth,
        balance_after=Decimal("0"),
    )


def plan_force_payment(
    view: LedgerView,
    payer: str,
    payee: str,
    amount: Decimal,
    contract_id: str,
    config: MatchConfig = DEFAULT_CONFIG,
) -> Tuple[List[Move], PaymentOutcome]:
    """
    Moves for a forced payment, to embed in a larger transaction.

    The caller owns the payer's account state change: on bankruptcy it must
    merge bankruptcy_update() into it.
    """
    outcome = calculate_payment(
        view.get_balance(payer, config.currency),
        compute_collateral_value(view, payer, config),
        amount,
    )
    moves: List[Move] = []
    if outcome.bankrupt:
        moves.extend(generator_liquidation_moves(view, payer, f"{contract_id}_liquidate_generators"))
        if outcome.collateral_sold > 0:
            moves.append(Move(outcome.collateral_sold, config.currency, SYSTEM_WALLET, payer,
                              f"{contract_id}_collateral"))
    if outcome.paid > 0:
        moves.append(Move(outcome.paid, config.currency, payer, payee, contract_id))
    if outcome.written_off > 0:
        moves.append(Move(outcome.written_off, config.currency, SYSTEM_WALLET, payer,
                          f"{contract_id}_write_off"))
    return moves, outcome


def compute_force_payment(
    view: LedgerView,
    payer: str,
    payee: str,
    amount: Decimal,
    config: MatchConfig = DEFAULT_CONFIG,
    memo: str = "force_payment",
) -> Tuple[PendingTransaction, PaymentOutcome]:
    """
    Standalone forced payment from payer to payee.

    Raises:
        PlayerNotRegistered: unknown payer or payee
        ValueError: amount negative or not finite, or payer == payee
    """
    require_player(view, payer)
    require_player(view, payee)
    if payer == payee:
        raise ValueError("payer and payee must differ")
    amount = quantize_amount(view.get_unit(config.currency), to_decimal(amount, "amount"))
    moves, outcome = plan_force_payment(view, payer, payee, amount, f"{memo}_{payer}_{payee}", config)
    updates: Dict[str, Dict] = {payer: {}}
    if outcome.bankrupt:
        updates[payer] = bankruptcy_update(view, payer)
    origin = TransactionOrigin(OriginType.EXTERNAL, memo, None, "FORCE_PAYMENT")
    return build_transaction(view, moves, account_state_changes(view, updates), origin), outcome


# ============================================================================
# CLOSE AND LIQUIDATION
# ============================================================================

def _settle(
    view: LedgerView,
    terms: PositionTerms,
    state: PositionState,
    price: Decimal,
    payer: Optional[str],
    amount: Decimal,
    status: PositionStatus,
    pnl: Decimal,
    origin: TransactionOrigin,
    config: MatchConfig,
) -> Tuple[PendingTransaction, CloseOutcome]:
    """Build the single transaction that pays out and retires a position."""
    position_id = terms.position_id
    moves: List[Move] = []
    updates: Dict[str, Dict] = {terms.owner: {}}
    transferred = Decimal("0")
    bankrupt = False

    if payer == terms.owner and amount > 0:
        moves.append(Move(amount, config.currency, terms.owner, terms.target, f"settle_{position_id}"))
        transferred = -amount
    elif payer == terms.target and amount > 0:
        payment_moves, outcome = plan_force_payment(
            view, terms.target, terms.owner, amount, f"settle_{position_id}", config,
        )
        moves.extend(payment_moves)
        bankrupt = outcome.bankrupt
        if bankrupt:
            updates[terms.target] = bankruptcy_update(view, terms.target)
        transferred = outcome.paid

    moves.append(Move(Decimal("1"), position_id, terms.owner, terms.target, f"retire_{position_id}"))

    final_state = PositionState(
        stake=state.stake,
        entry_price=state.entry_price,
        liquidation_price=state.liquidation_price,
        status=status,
        closed_at=view.current_time,
        close_price=price,
        realized_pnl=pnl,
        transferred=transferred,
    )
    changes = [
        UnitStateChange(
            unit=position_id,
            old_state=view.get_unit_state(position_id),
            new_state=to_state_dict(terms, final_state),
        ),
        *account_state_changes(view, updates),
    ]
    pending = build_transaction(view, moves, changes, origin)
    outcome = CloseOutcome(
        position_id=position_id,
        owner=terms.owner,
        target=terms.target,
        status=status,
        price=price,
        pnl=pnl,
        transferred=transferred,
        payer=payer if amount > 0 else None,
        bankrupt=bankrupt,
    )
    return pending, outcome


def _load_open(view: LedgerView, position_id: str) -> Tuple[PositionTerms, PositionState]:
    terms, state = load_position(view, position_id)
    if not state.is_open:
        raise PositionNotOpen(f"Position {position_id} is {state.status.value}")
    return terms, state


def compute_close_position(
    view: LedgerView,
    owner: str,
    position_id: str,
    config: MatchConfig = DEFAULT_CONFIG,
    mark_price: Optional[Decimal] = None,
    origin: Optional[TransactionOrigin] = None,
) -> Tuple[PendingTransaction, CloseOutcome]:
    """
    Manually close a position at the target's live balance.

    pnl > 0: the target force-pays pnl to the owner.
    pnl < 0: the owner pays min(|pnl|, stake) straight to the target, even
        into debt; the owner is never bankrupted by a close.
    pnl == 0: nothing moves.

    Args:
        mark_price: settle at this price instead of the live balance
            (used by the insolvency auto-close)

    Raises:
        PlayerNotRegistered: unknown owner
        PositionNotFound: no such position, or it belongs to someone else
        PositionNotOpen: position already closed or liquidated
    """
    require_player(view, owner)
    terms, state = _load_open(view, position_id)
    if terms.owner != owner:
        raise PositionNotFound(f"Position {position_id} is not owned by {owner}")

    price = mark_price if mark_price is not None else view.get_balance(terms.target, config.currency)
    pnl = calculate_pnl(state.entry_price, price, state.stake, terms.leverage, terms.direction)

    if pnl > 0:
        payer, amount = terms.target, pnl
    elif pnl < 0:
        payer, amount = terms.owner, min(-pnl, state.stake)
    else:
        payer, amount = None, Decimal("0")

    if origin is None:
        origin = TransactionOrigin(OriginType.PLAYER, owner, position_id, "CLOSE")
    return _settle(view, terms, state, price, payer, amount, PositionStatus.CLOSED, pnl, origin, config)


def compute_liquidation(
    view: LedgerView,
    position_id: str,
    config: MatchConfig = DEFAULT_CONFIG,
    price: Optional[Decimal] = None,
) -> Tuple[PendingTransaction, CloseOutcome]:
    """
    Liquidate a position whose target price crossed the liquidation price.

    The owner forfeits the stake to the target; no PNL formula applies.

    Raises:
        PositionNotFound / PositionNotOpen
        ValueError: the position is not liquidatable at `price`
    """
    terms, state = _load_open(view, position_id)
    if price is None:
        price = view.get_balance(terms.target, config.currency)
    if not is_liquidatable(terms.direction, price, state.liquidation_price):
        raise ValueError(
            f"Cannot liquidate {position_id}: price {price} has not crossed {state.liquidation_price}"
        )
    origin = TransactionOrigin(OriginType.CONTRACT, "liquidation", position_id, "LIQUIDATION")
    return _settle(
        view, terms, state, price, terms.owner, state.stake,
        PositionStatus.LIQUIDATED, -state.stake, origin, config,
    )


class LiquidationContract:
    """
    Tick-polled contract for LEVERAGED_POSITION units.

    Liquidates an open position when its target's price (from `prices`,
    falling back to the live balance) has crossed the liquidation price.
    """

    def __init__(self, config: MatchConfig = DEFAULT_CONFIG):
        self.config = config

    def check_lifecycle(
        self,
        view: LedgerView,
        symbol: str,
        timestamp: datetime,
        prices: PriceMap,
    ) -> PendingTransaction:
        terms, state = load_position(view, symbol)
        if not state.is_open:
            return empty_pending_transaction(view)
        price = prices.get(terms.target)
        if price is None:
            price = view.get_balance(terms.target, self.config.currency)
        if not is_liquidatable(terms.direction, price, state.liquidation_price):
            return empty_pending_transaction(view)
        pending, _ = compute_liquidation(view, symbol, self.config, price)
        return pending


# ============================================================================
# INSOLVENCY AUTO-CLOSE
# ============================================================================

def find_insolvent_targets(view: LedgerView, config: MatchConfig = DEFAULT_CONFIG) -> List[InsolvencyCheck]:
    """
    Targets whose balance plus collateral cannot cover the positive PNL owed
    on the positions against them, marked at their current balance.
    """
    found = []
    for target in list_players(view):
        mark = view.get_balance(target, config.currency)
        owed = Decimal("0")
        ids = []
        for terms, state in get_positions_against(view, target):
            pnl = calculate_pnl(state.entry_price, mark, state.stake, terms.leverage, terms.direction)
            if pnl > 0:
                owed += pnl
                ids.append(terms.position_id)
        if not ids:
            continue
        net_worth = mark + compute_collateral_value(view, target, config)
        if net_worth - owed < 0:
            found.append(InsolvencyCheck(target, mark, owed, net_worth, tuple(ids)))
    return found
