"""
tick_driver.py - Periodic match loop

Execution order each step(dt):
1. Advance the ledger clock and accrue production for every player
2. Poll contracts (liquidation of positions whose price crossed the threshold)
3. Auto-close profitable positions against insolvent targets
4. Repeat 2-3 until nothing fires (cascades), bounded by max_passes
5. Drain queued player commands
6. Check the win/end condition
7. Emit a snapshot per player to every listener

Per-command and per-contract failures are recorded on the TickReport and
never stop the tick. The transaction log is the audit trail.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from .commands import CommandOutcome, CommandQueue, create_default_queue
from .config import MatchConfig, DEFAULT_CONFIG
from .core import (
    ExecuteResult, MatchError, PendingTransaction, SmartContract, Transaction,
    TradeRejected, TransactionOrigin, OriginType, UNIT_TYPE_PLAYER_ACCOUNT,
    to_decimal,
)
from .economy import AccountSnapshot, compute_accrual, compute_snapshot, current_prices
from .ledger import Ledger
from .settlement import compute_close_position, find_insolvent_targets
from .units.account import list_players
from .units.position import load_position


SnapshotListener = Callable[[Mapping[str, AccountSnapshot]], None]


@dataclass
class TickReport:
    tick: int
    time: datetime
    dt: Decimal
    transactions: List[Transaction] = field(default_factory=list)
    liquidated: List[str] = field(default_factory=list)
    auto_closed: List[str] = field(default_factory=list)
    bankruptcies: List[str] = field(default_factory=list)
    commands: List[CommandOutcome] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    snapshots: Dict[str, AccountSnapshot] = field(default_factory=dict)
    winner: Optional[str] = None
    finished: bool = False


class TickDriver:
    """
    Drives one match's ledger forward in time.

    Features:
    - Production accrual per tick
    - Contract polling by unit type, in sorted symbol order
    - Insolvency auto-close
    - Cascades (repeat until stable)
    - Queued commands drained after liquidation
    """

    def __init__(
        self,
        ledger: Ledger,
        config: MatchConfig = DEFAULT_CONFIG,
        queue: Optional[CommandQueue] = None,
        contracts: Optional[Dict[str, SmartContract]] = None,
    ):
        self.ledger = ledger
        self.config = config
        self.queue = queue or create_default_queue()
        self.contracts: Dict[str, SmartContract] = contracts or {}
        self.listeners: List[SnapshotListener] = []
        self.max_passes = config.max_passes
        self.verbose = ledger.verbose
        self.tick_count = 0
        self.elapsed = Decimal("0")
        self.winner: Optional[str] = None

    def register(self, unit_type: str, contract: SmartContract) -> None:
        """Poll `contract` for every held unit of `unit_type` on each pass."""
        self.contracts[unit_type] = contract

    def subscribe(self, listener: SnapshotListener) -> None:
        self.listeners.append(listener)

    def unsubscribe(self, listener: SnapshotListener) -> None:
        self.listeners.remove(listener)

    @property
    def is_over(self) -> bool:
        if self.winner is not None:
            return True
        duration = self.config.duration_seconds
        return duration is not None and self.elapsed >= duration

    # ========================================================================
    # STEP
    # ========================================================================

    def step(self, dt: Any = None) -> TickReport:
        """
        Advance the match by dt seconds (default: one tick at the configured
        rate). Negative dt is clamped to 0.

        Raises:
            MatchError: the match is already over
            ValueError: dt is not a finite number
        """
        if self.is_over:
            raise MatchError("Match is over")
        dt = self.config.tick_seconds if dt is None else to_decimal(dt, "dt")
        if dt < 0:
            dt = Decimal("0")

        self.tick_count += 1
        self.elapsed += dt
        self.ledger.advance_time(self.ledger.current_time + timedelta(seconds=float(dt)))
        report = TickReport(tick=self.tick_count, time=self.ledger.current_time, dt=dt)

        self._apply(compute_accrual(self.ledger, dt, self.config, tag=f"t{self.tick_count}"), report, "accrual")

        for _ in range(self.max_passes):
            fired = self._poll_contracts(report)
            if self.config.auto_close_insolvent:
                fired += self._auto_close_insolvent(report)
            if not fired:
                break

        self._drain_commands(report)
        self._check_winner(report)
        self._emit(report)
        return report

    def run(self, steps: Optional[int] = None, dt: Any = None) -> List[TickReport]:
        """
        Step until the match is over, or `steps` ticks have run.

        Raises:
            ValueError: neither steps nor a match duration bounds the loop
        """
        if steps is None and self.config.duration_seconds is None:
            raise ValueError("run() needs steps when the match has no duration")
        reports = []
        while not self.is_over and (steps is None or len(reports) < steps):
            reports.append(self.step(dt))
        return reports

    # ========================================================================
    # PHASES
    # ========================================================================

    def _apply(self, pending: PendingTransaction, report: TickReport, label: str) -> bool:
        """Execute and record. Returns True if a transaction was applied."""
        if pending.is_empty():
            return False
        result = self.ledger.execute(pending)
        if result == ExecuteResult.REJECTED:
            report.errors.append(f"{label}: rejected by ledger")
            return False
        if result == ExecuteResult.ALREADY_APPLIED:
            return False
        tx = self.ledger.transaction_log[-1]
        report.transactions.append(tx)
        self._note_bankruptcies(tx, report)
        return True

    def _note_bankruptcies(self, tx: Transaction, report: TickReport) -> None:
        for sc in tx.state_changes:
            if self.ledger.get_unit(sc.unit).unit_type != UNIT_TYPE_PLAYER_ACCOUNT:
                continue
            if 'bankruptcies' in sc.changed_fields():
                player = sc.new_state['player']
                report.bankruptcies.append(player)
                if self.verbose:
                    print(f"[BANKRUPTCY] {player}")

    def _poll_contracts(self, report: TickReport) -> int:
        """Poll the contract of every unit someone still holds; retired positions have no holders."""
        fired = 0
        prices = current_prices(self.ledger, self.config)
        timestamp = self.ledger.current_time
        for symbol in self.ledger.list_held_units():
            contract = self.contracts.get(self.ledger.get_unit(symbol).unit_type)
            if contract is None:
                continue
            try:
                if hasattr(contract, 'check_lifecycle'):
                    pending = contract.check_lifecycle(self.ledger, symbol, timestamp, prices)
                else:
                    pending = contract(self.ledger, symbol, timestamp, prices)
            except (MatchError, ValueError) as e:
                report.errors.append(f"{symbol}: {e}")
                continue
            if not isinstance(pending, PendingTransaction):
                raise MatchError(f"Contract for {symbol} must return PendingTransaction, got {type(pending)}")
            if self._apply(pending, report, symbol):
                fired += 1
                if pending.origin.event_type == "LIQUIDATION":
                    report.liquidated.append(symbol)
                    if self.verbose:
                        print(f"[LIQUIDATION] {symbol}")
        return fired

    def _auto_close_insolvent(self, report: TickReport) -> int:
        """
        Close every profitable position against a target that cannot cover
        them all, at the price the target had when the check ran.
        """
        fired = 0
        for check in find_insolvent_targets(self.ledger, self.config):
            if self.verbose:
                print(f"[AUTO_CLOSE] {check.target} owes {check.owed}, net worth {check.net_worth}")
            for position_id in check.position_ids:
                origin = TransactionOrigin(OriginType.CONTRACT, "insolvency_auto_close", position_id, "AUTO_CLOSE")
                try:
                    terms, _ = load_position(self.ledger, position_id)
                    pending, _ = compute_close_position(
                        self.ledger, terms.owner, position_id, self.config,
                        mark_price=check.mark_price, origin=origin,
                    )
                except MatchError as e:
                    report.errors.append(f"{position_id}: {e}")
                    continue
                if self._apply(pending, report, position_id):
                    fired += 1
                    report.auto_closed.append(position_id)
        return fired

    def _drain_commands(self, report: TickReport) -> None:
        """
        Commands are popped one at a time: an unexpected handler exception
        propagates out of step() with every later command still queued.
        """
        while self.queue.pending_count():
            command = self.queue.pop_next()
            try:
                pending = self.queue.build(command, self.ledger, self.config)
            except TradeRejected as e:
                outcome = CommandOutcome(command, "rejected", e.reason, str(e))
            except (MatchError, ValueError) as e:
                outcome = CommandOutcome(command, "error", None, str(e))
            else:
                result = self.ledger.execute(pending)
                if result == ExecuteResult.REJECTED:
                    outcome = CommandOutcome(command, "error", None, "rejected by ledger")
                else:
                    outcome = CommandOutcome(command, "applied")
                    if result == ExecuteResult.APPLIED and not pending.is_empty():
                        tx = self.ledger.transaction_log[-1]
                        report.transactions.append(tx)
                        self._note_bankruptcies(tx, report)
            report.commands.append(outcome)
            if self.verbose:
                print(f"[COMMAND] {command.command_id}: {outcome.status} {outcome.detail}".rstrip())

    def _check_winner(self, report: TickReport) -> None:
        goal = self.config.win_goal
        if self.winner is None and goal is not None:
            prices = current_prices(self.ledger, self.config)
            reached = [(balance, player) for player, balance in prices.items() if balance >= goal]
            if reached:
                # highest balance wins; ties go to the first name
                self.winner = min(reached, key=lambda bp: (-bp[0], bp[1]))[1]
                if self.verbose:
                    print(f"[WINNER] {self.winner}")
        report.winner = self.winner
        report.finished = self.is_over

    def _emit(self, report: TickReport) -> None:
        report.snapshots = {
            player: compute_snapshot(self.ledger, player, self.config)
            for player in list_players(self.ledger)
        }
        for listener in list(self.listeners):
            listener(report.snapshots)
