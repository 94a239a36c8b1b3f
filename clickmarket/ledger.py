"""
ledger.py - Stateful double-entry store for one match

The Ledger is the single writer of match state. Everything else in the
package is a pure function over a LedgerView that returns a
PendingTransaction; only Ledger.execute() applies one.

Key responsibilities:
    - Implements LedgerView for read-only access by pure functions
    - Executes transactions atomically (all moves and state changes or none)
    - Rejects transactions built against stale unit state
    - Keeps the transaction log and the logical match clock
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Set, Optional, Tuple, Any
import copy

from .core import (
    Move, Transaction, Unit, PendingTransaction,
    ExecuteResult, Positions, UnitState, BalanceMap,
    QUANTITY_EPSILON, SYSTEM_WALLET,
    MatchError, TransferRuleViolation, UnitNotRegistered, PlayerNotRegistered,
    _freeze_state,
)


class Ledger:
    """
    Double-entry ledger with validation and an audit log.

    Not thread-safe: a match owns exactly one Ledger and serializes every
    command and tick through it.

    Example:
        ledger = Ledger("match-1", verbose=False)
        ledger.register_unit(cash("COOKIE", "Cookie"))
        ledger.register_wallet("alice")
        ledger.execute(build_transaction(ledger, [
            Move(Decimal("500"), "COOKIE", SYSTEM_WALLET, "alice", "fund_alice")
        ]))
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False,
    ):
        """
        Args:
            name: Ledger identifier, used in exec ids
            initial_time: Match start time (default: 1970-01-01)
            verbose: Print registrations and transactions
            test_mode: Allow set_balance() for test setup
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # unit -> {wallet -> quantity}, non-zero holdings only
        self._holders: Dict[str, Dict[str, Decimal]] = defaultdict(dict)
        # wallet -> units it holds a non-zero quantity of
        self._holdings: Dict[str, Set[str]] = defaultdict(set)

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Raises:
            PlayerNotRegistered: unknown wallet
            UnitNotRegistered: unknown unit
        """
        if wallet_id not in self.registered_wallets:
            raise PlayerNotRegistered(f"Player {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Deep copy of the unit's state; safe to mutate."""
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return copy.deepcopy(self.units[unit_symbol].state)

    def get_positions(self, unit_symbol: str) -> Positions:
        return dict(self._holders.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        return sorted(self.units.keys())

    def list_holdings(self, wallet_id: str) -> List[str]:
        """Units the wallet holds a non-zero quantity of, sorted."""
        return sorted(self._holdings.get(wallet_id, ()))

    def list_held_units(self) -> List[str]:
        """Units with at least one non-zero holder, sorted."""
        return sorted(self._holders)

    def get_unit(self, symbol: str) -> Unit:
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        if wallet_id not in self.registered_wallets:
            raise PlayerNotRegistered(f"Player {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def is_registered(self, wallet_id: str) -> bool:
        return wallet_id in self.registered_wallets

    def total_supply(self, unit_symbol: str) -> Decimal:
        """Sum of a unit over every wallet, system included. Zero for issued units."""
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def verify_double_entry(
        self,
        expected_supplies: Optional[Dict[str, Decimal]] = None,
        tolerance: Decimal = Decimal("1e-9"),
    ) -> Dict[str, Any]:
        """
        Check conservation for every unit.

        Every unit in a match is issued by SYSTEM_WALLET, so without
        expected_supplies each unit is expected to total zero.

        Returns:
            {'valid': bool, 'supplies': {unit: total}, 'discrepancies': [...]}
        """
        expected_supplies = expected_supplies or {}
        supplies = {}
        discrepancies = []
        for unit_symbol in sorted(self.units):
            actual = self.total_supply(unit_symbol)
            supplies[unit_symbol] = actual
            expected = expected_supplies.get(unit_symbol, Decimal("0"))
            if abs(actual - expected) > tolerance:
                discrepancies.append({
                    'unit': unit_symbol,
                    'expected': expected,
                    'actual': actual,
                    'difference': actual - expected,
                })
        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # TIME
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """Move the clock forward. Raises ValueError on a backwards move."""
        if new_time < self._current_time:
            raise ValueError(f"Cannot move time backwards: {new_time} < {self._current_time}")
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        if not wallet_id or not wallet_id.strip():
            raise ValueError("Wallet id cannot be empty")
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            rule = f", rule={unit.transfer_rule.__name__}" if unit.transfer_rule else ""
            print(f"[REGISTER] {unit.symbol} ({unit.name}) [{unit.unit_type}]{rule}")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Overwrite a balance directly. Test mode only: it breaks conservation.

        Raises:
            MatchError: if test_mode is off
        """
        if not self._test_mode:
            raise MatchError("set_balance() is only available with test_mode=True")
        if wallet_id not in self.registered_wallets:
            raise PlayerNotRegistered(f"Player {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        self.balances[wallet_id][unit_symbol] = quantity
        self._index_holding(wallet_id, unit_symbol, quantity)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Validate and apply a PendingTransaction atomically.

        Idempotent on intent_id. Units in units_to_create are registered for
        validation and removed again if the transaction is rejected.

        Returns:
            APPLIED, ALREADY_APPLIED or REJECTED
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"[ALREADY_APPLIED] intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED

        added: List[str] = []
        for unit in pending.units_to_create:
            if unit.symbol not in self.units:
                self.units[unit.symbol] = unit
                added.append(unit.symbol)

        ok, reason = self._validate_pending(pending)
        if not ok:
            for symbol in added:
                del self.units[symbol]
            if self.verbose:
                print(f"[REJECTED] {reason}")
            return ExecuteResult.REJECTED

        if self.verbose:
            for symbol in added:
                unit = self.units[symbol]
                print(f"[REGISTER] {unit.symbol} ({unit.name}) [{unit.unit_type}]")

        sequence = self._next_sequence
        self._next_sequence += 1
        micros = int(self._current_time.timestamp() * 1_000_000)
        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=f"exec:{self.name}:{sequence:012d}:{micros}",
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        self._apply_moves(tx.moves)
        for sc in tx.state_changes:
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            print(repr(tx))
        return ExecuteResult.APPLIED

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Checks, in order: timestamp, registration, transfer rules, stale
        state, then per-wallet balance bounds on the net effect.
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"unit not registered: {move.unit_symbol}"
            if move.source not in self.registered_wallets:
                return False, f"wallet not registered: {move.source}"
            if move.dest not in self.registered_wallets:
                return False, f"wallet not registered: {move.dest}"
            unit = self.units[move.unit_symbol]
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except TransferRuleViolation as e:
                    return False, str(e)

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return False, f"unit not registered: {sc.unit}"
            if sc.old_state is not None and sc.old_state != self.units[sc.unit].state:
                return False, f"stale state for {sc.unit}"

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            src = (move.source, move.unit_symbol)
            dst = (move.dest, move.unit_symbol)
            net[src] = unit.round(net.get(src, Decimal("0")) - move.quantity)
            net[dst] = unit.round(net.get(dst, Decimal("0")) + move.quantity)

        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[unit_sym]
            proposed = unit.round(self.balances[wallet][unit_sym] + delta)
            if proposed < unit.min_balance:
                return False, f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _index_holding(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        if abs(quantity) > QUANTITY_EPSILON:
            self._holders[unit_symbol][wallet_id] = quantity
            self._holdings[wallet_id].add(unit_symbol)
            return
        holders = self._holders.get(unit_symbol)
        if holders is not None:
            holders.pop(wallet_id, None)
            if not holders:
                del self._holders[unit_symbol]
        self._holdings[wallet_id].discard(unit_symbol)

    def _apply_moves(self, moves: Tuple[Move, ...]) -> None:
        for move in moves:
            unit = self.units[move.unit_symbol]
            src = unit.round(self.balances[move.source][move.unit_symbol] - move.quantity)
            self.balances[move.source][move.unit_symbol] = src
            self._index_holding(move.source, move.unit_symbol, src)
            dst = unit.round(self.balances[move.dest][move.unit_symbol] + move.quantity)
            self.balances[move.dest][move.unit_symbol] = dst
            self._index_holding(move.dest, move.unit_symbol, dst)

    # ========================================================================
    # CLONING
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Fully independent copy of this ledger.

        Used for optimistic prediction: a client or tutorial mirror runs the
        same commands against a clone and throws it away.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        cloned.units = {
            symbol: replace(unit, _frozen_state=_freeze_state(copy.deepcopy(unit.state)))
            for symbol, unit in self.units.items()
        }
        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence
        cloned.balances = {
            wallet: defaultdict(lambda: Decimal("0"), bals)
            for wallet, bals in self.balances.items()
        }
        cloned._holders = defaultdict(dict)
        for unit_symbol, holders in self._holders.items():
            cloned._holders[unit_symbol] = dict(holders)
        cloned._holdings = defaultdict(set)
        for wallet, held in self._holdings.items():
            cloned._holdings[wallet] = set(held)
        return cloned
