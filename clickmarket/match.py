"""
match.py - The per-match facade

A Match owns one Ledger and one TickDriver. It is the only object the game
server talks to: immediate commands (open, close, buy, click) execute as
their own atomic transactions, queued commands wait for the next tick.

    match = Match("lobby-7")
    match.add_player("alice", 500)
    match.add_player("bob", 1000)
    result = match.open_position("alice", "bob", "long", 100, 5)
    match.tick(0.1)
    match.close_position("alice", result.position_id)
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .commands import (
    ACTION_BUY_GENERATOR, ACTION_CLICK, ACTION_CLOSE, ACTION_OPEN, ACTION_UPGRADE_CLICK,
    Command, CommandQueue, create_default_queue,
)
from .config import MatchConfig, DEFAULT_CONFIG
from .core import (
    ExecuteResult, MatchError, PendingTransaction, PositionStatus, RejectionReason,
    TradeRejected, UNIT_TYPE_LEVERAGED_POSITION, cash,
)
from .economy import AccountSnapshot, compute_click, compute_click_upgrade, compute_snapshot
from .ledger import Ledger
from .settlement import (
    LiquidationContract, PaymentOutcome, compute_close_position, compute_force_payment,
)
from .tick_driver import SnapshotListener, TickDriver, TickReport
from .units.account import (
    compute_adjust_balance, compute_register_player, list_players, load_account,
)
from .units.generator import compute_buy_generator, compute_purchase_cost, create_generator_unit, generator_symbol
from .units.position import (
    PositionState, PositionTerms, compute_locked_stake, compute_max_stake,
    compute_open_position, load_position,
)


@dataclass(frozen=True, slots=True)
class OpenResult:
    success: bool
    reason: Optional[RejectionReason] = None
    position_id: Optional[str] = None
    merged: bool = False
    message: str = ""


@dataclass(frozen=True, slots=True)
class CloseResult:
    """transferred is signed from the owner's side."""
    position_id: str
    pnl: Decimal
    transferred: Decimal
    bankrupt: bool
    status: PositionStatus


@dataclass(frozen=True, slots=True)
class PurchaseResult:
    success: bool
    new_count: int
    cost: Decimal
    reason: Optional[RejectionReason] = None


@dataclass(frozen=True, slots=True)
class UpgradeResult:
    success: bool
    click_power: int
    cost: Decimal
    reason: Optional[RejectionReason] = None


class Match:
    """
    One match: ledger, tick driver and command queue.

    Input validation errors (bad stake, unknown player or position) raise;
    game-rule rejections come back as unsuccessful results.
    """

    def __init__(
        self,
        name: str = "match",
        config: MatchConfig = DEFAULT_CONFIG,
        start_time: Optional[datetime] = None,
        verbose: bool = False,
    ):
        self.name = name
        self.config = config
        self.ledger = Ledger(name, start_time, verbose=verbose)
        self.ledger.register_unit(cash(config.currency, config.currency_name))
        for spec in config.generators:
            self.ledger.register_unit(create_generator_unit(spec))
        self.driver = self._build_driver(create_default_queue())

    def _build_driver(self, queue: CommandQueue) -> TickDriver:
        driver = TickDriver(self.ledger, self.config, queue)
        driver.register(UNIT_TYPE_LEVERAGED_POSITION, LiquidationContract(self.config))
        return driver

    def _execute(self, pending: PendingTransaction) -> ExecuteResult:
        result = self.ledger.execute(pending)
        if result == ExecuteResult.REJECTED:
            raise MatchError(f"Ledger rejected {pending.origin.event_type or 'transaction'}")
        return result

    # ========================================================================
    # PLAYERS
    # ========================================================================

    @property
    def players(self) -> List[str]:
        return list_players(self.ledger)

    def add_player(self, name: str, starting_balance: Any = 0) -> str:
        """
        Raises:
            ValueError: empty, reserved or duplicate name; negative balance
        """
        self.ledger.register_wallet(name)
        self._execute(compute_register_player(self.ledger, name, self.config.currency, starting_balance))
        return name

    def adjust_balance(self, name: str, delta: Any, memo: str = "adjustment") -> Decimal:
        """Issue or burn currency for a player. Returns the new balance."""
        self._execute(compute_adjust_balance(self.ledger, name, delta, self.config.currency, memo))
        return self.balance(name)

    def balance(self, name: str) -> Decimal:
        return self.ledger.get_balance(name, self.config.currency)

    def force_payment(self, payer: str, payee: str, amount: Any) -> PaymentOutcome:
        pending, outcome = compute_force_payment(self.ledger, payer, payee, amount, self.config)
        self._execute(pending)
        return outcome

    # ========================================================================
    # TRADING
    # ========================================================================

    def open_position(
        self,
        owner: str,
        target_name: str,
        direction: Any,
        stake: Any,
        leverage: Any,
    ) -> OpenResult:
        try:
            pending, position_id, merged = compute_open_position(
                self.ledger, owner, target_name, direction, stake, leverage, self.config,
            )
        except TradeRejected as e:
            return OpenResult(success=False, reason=e.reason, message=str(e))
        self._execute(pending)
        return OpenResult(success=True, position_id=position_id, merged=merged)

    def close_position(self, owner: str, position_id: str) -> CloseResult:
        """
        Raises:
            PositionNotFound: unknown position or not owned by `owner`
            PositionNotOpen: already closed or liquidated
        """
        pending, outcome = compute_close_position(self.ledger, owner, position_id, self.config)
        self._execute(pending)
        return CloseResult(position_id, outcome.pnl, outcome.transferred, outcome.bankrupt, outcome.status)

    def preview_close(self, owner: str, position_id: str) -> CloseResult:
        """What close_position would return right now, without changing the match."""
        return self.fork().close_position(owner, position_id)

    def max_stake(self, owner: str, target: str) -> Decimal:
        return compute_max_stake(self.ledger, owner, target, self.config)

    def position(self, position_id: str) -> Tuple[PositionTerms, PositionState]:
        return load_position(self.ledger, position_id)

    # ========================================================================
    # ECONOMY
    # ========================================================================

    def buy_generator(self, owner: str, kind: str) -> PurchaseResult:
        try:
            pending, cost, new_count = compute_buy_generator(
                self.ledger, owner, kind, self.config,
                locked=compute_locked_stake(self.ledger, owner),
            )
        except TradeRejected as e:
            owned = int(self.ledger.get_balance(owner, generator_symbol(kind)))
            cost = compute_purchase_cost(self.ledger, owner, kind, self.config)
            return PurchaseResult(False, owned, cost, e.reason)
        self._execute(pending)
        return PurchaseResult(True, new_count, cost)

    def click(self, name: str) -> Decimal:
        """Returns the amount earned."""
        power = load_account(self.ledger, name).click_power
        self._execute(compute_click(self.ledger, name, self.config))
        return Decimal(power)

    def upgrade_click(self, name: str) -> UpgradeResult:
        try:
            pending, cost, new_level = compute_click_upgrade(self.ledger, name, self.config)
        except TradeRejected as e:
            account = load_account(self.ledger, name)
            return UpgradeResult(False, account.click_power, Decimal("0"), e.reason)
        self._execute(pending)
        return UpgradeResult(True, new_level, cost)

    # ========================================================================
    # QUEUED COMMANDS
    # ========================================================================

    def submit(self, player: str, action: str, priority: int = 0, **params: Any) -> Command:
        """Queue a command for the next tick."""
        return self.driver.queue.submit(player, action, params, priority)

    def queue_open(self, owner: str, target_name: str, direction: Any, stake: Any, leverage: Any) -> Command:
        return self.submit(owner, ACTION_OPEN, target=target_name, direction=direction,
                           stake=stake, leverage=leverage)

    def queue_close(self, owner: str, position_id: str) -> Command:
        return self.submit(owner, ACTION_CLOSE, position_id=position_id)

    def queue_buy_generator(self, owner: str, kind: str) -> Command:
        return self.submit(owner, ACTION_BUY_GENERATOR, kind=kind)

    def queue_click(self, name: str) -> Command:
        return self.submit(name, ACTION_CLICK)

    def queue_upgrade_click(self, name: str) -> Command:
        return self.submit(name, ACTION_UPGRADE_CLICK)

    # ========================================================================
    # TIME
    # ========================================================================

    def tick(self, dt: Any = None) -> TickReport:
        return self.driver.step(dt)

    def run(self, steps: Optional[int] = None, dt: Any = None) -> List[TickReport]:
        return self.driver.run(steps, dt)

    @property
    def current_time(self) -> datetime:
        return self.ledger.current_time

    @property
    def elapsed(self) -> Decimal:
        return self.driver.elapsed

    @property
    def winner(self) -> Optional[str]:
        return self.driver.winner

    @property
    def is_over(self) -> bool:
        return self.driver.is_over

    # ========================================================================
    # OBSERVATION
    # ========================================================================

    def snapshot(self, name: str) -> AccountSnapshot:
        return compute_snapshot(self.ledger, name, self.config)

    def snapshots(self) -> Dict[str, AccountSnapshot]:
        return {name: self.snapshot(name) for name in self.players}

    def subscribe(self, listener: SnapshotListener) -> None:
        self.driver.subscribe(listener)

    def unsubscribe(self, listener: SnapshotListener) -> None:
        self.driver.unsubscribe(listener)

    def verify_conservation(self) -> bool:
        """True when every unit, currency included, totals zero across all wallets."""
        return self.ledger.verify_double_entry()['valid']

    # ========================================================================
    # FORKING
    # ========================================================================

    def fork(self) -> Match:
        """
        Independent copy of this match for prediction. Listeners and queued
        commands are not carried over; logging is off on the copy.
        """
        forked = Match.__new__(Match)
        forked.name = self.name
        forked.config = self.config
        forked.ledger = self.ledger.clone()
        forked.ledger.verbose = False
        forked.driver = forked._build_driver(create_default_queue())
        forked.driver.tick_count = self.driver.tick_count
        forked.driver.elapsed = self.driver.elapsed
        forked.driver.winner = self.driver.winner
        return forked
