"""
commands.py - Queued player commands

Commands that arrive while a tick is being processed are queued and drained
by the TickDriver after liquidations, so a position liquidated in a tick
cannot also be closed by a command queued in that tick.

- Command: immutable record of what a player asked for
- CommandQueue: priority queue (priority, then arrival order) plus a
  dict of handler functions
- Handlers: plain functions (command, view, config) -> PendingTransaction
  that delegate to the compute_* builders
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
import heapq

from .config import MatchConfig
from .core import LedgerView, PendingTransaction, RejectionReason
from .economy import compute_click, compute_click_upgrade
from .settlement import compute_close_position
from .units.generator import compute_buy_generator
from .units.position import compute_locked_stake, compute_open_position


ACTION_OPEN = "open"
ACTION_CLOSE = "close"
ACTION_BUY_GENERATOR = "buy_generator"
ACTION_CLICK = "click"
ACTION_UPGRADE_CLICK = "upgrade_click"


@dataclass(frozen=True, slots=True)
class Command:
    """
    Sorting: priority (lower first), then sequence (arrival order).

    Attributes:
        sequence: arrival number assigned by the queue
        player: who issued the command
        action: handler key ("open", "close", ...)
        params: frozen (key, value) pairs
    """
    sequence: int
    player: str
    action: str
    params: tuple = ()
    priority: int = 0

    def __lt__(self, other: 'Command') -> bool:
        return (self.priority, self.sequence) < (other.priority, other.sequence)

    @property
    def params_dict(self) -> Dict[str, Any]:
        return dict(self.params)

    @property
    def command_id(self) -> str:
        return f"{self.action}:{self.player}:{self.sequence}"


@dataclass(frozen=True, slots=True)
class CommandOutcome:
    """What happened to a drained command: applied, rejected or failed."""
    command: Command
    status: str
    reason: Optional[RejectionReason] = None
    detail: str = ""

    @property
    def applied(self) -> bool:
        return self.status == "applied"


CommandHandler = Callable[[Command, LedgerView, MatchConfig], PendingTransaction]


class CommandQueue:
    def __init__(self):
        self._heap: List[Command] = []
        self._handlers: Dict[str, CommandHandler] = {}
        self._required: Dict[str, Tuple[str, ...]] = {}
        self._next_sequence = 0

    def register(self, action: str, handler: CommandHandler, required: Tuple[str, ...] = ()) -> None:
        """Register a handler; `required` names params that must be present and not None."""
        self._handlers[action] = handler
        self._required[action] = tuple(required)

    def submit(
        self,
        player: str,
        action: str,
        params: Optional[Mapping[str, Any]] = None,
        priority: int = 0,
    ) -> Command:
        """
        Queue a command.

        Raises:
            ValueError: no handler registered for action, or a required
                param is missing or None
        """
        if action not in self._handlers:
            raise ValueError(f"No handler registered for action {action!r}")
        params = dict(params or {})
        missing = [key for key in self._required[action] if params.get(key) is None]
        if missing:
            raise ValueError(f"{action!r} is missing params: {', '.join(missing)}")
        command = Command(
            sequence=self._next_sequence,
            player=player,
            action=action,
            params=tuple(sorted(params.items())),
            priority=priority,
        )
        self._next_sequence += 1
        heapq.heappush(self._heap, command)
        return command

    def pop_next(self) -> Optional[Command]:
        """Remove and return the next command, or None when the queue is empty."""
        return heapq.heappop(self._heap) if self._heap else None

    def drain(self) -> List[Command]:
        """Remove and return every queued command, in execution order."""
        drained = []
        while self._heap:
            drained.append(heapq.heappop(self._heap))
        return drained

    def build(self, command: Command, view: LedgerView, config: MatchConfig) -> PendingTransaction:
        """
        Run a command's handler. Handler exceptions propagate unchanged;
        the TickDriver records them against the command.
        """
        return self._handlers[command.action](command, view, config)

    def pending_count(self) -> int:
        return len(self._heap)

    def peek_next(self) -> Optional[Command]:
        return self._heap[0] if self._heap else None


# ============================================================================
# HANDLERS
# ============================================================================

def handle_open(command: Command, view: LedgerView, config: MatchConfig) -> PendingTransaction:
    p = command.params_dict
    pending, _, _ = compute_open_position(
        view, command.player, p["target"], p["direction"], p["stake"], p["leverage"], config,
    )
    return pending


def handle_close(command: Command, view: LedgerView, config: MatchConfig) -> PendingTransaction:
    pending, _ = compute_close_position(view, command.player, command.params_dict["position_id"], config)
    return pending


def handle_buy_generator(command: Command, view: LedgerView, config: MatchConfig) -> PendingTransaction:
    pending, _, _ = compute_buy_generator(
        view, command.player, command.params_dict["kind"], config,
        locked=compute_locked_stake(view, command.player),
    )
    return pending


def handle_click(command: Command, view: LedgerView, config: MatchConfig) -> PendingTransaction:
    return compute_click(view, command.player, config)


def handle_upgrade_click(command: Command, view: LedgerView, config: MatchConfig) -> PendingTransaction:
    pending, _, _ = compute_click_upgrade(view, command.player, config)
    return pending


DEFAULT_HANDLERS: Dict[str, CommandHandler] = {
    ACTION_OPEN: handle_open,
    ACTION_CLOSE: handle_close,
    ACTION_BUY_GENERATOR: handle_buy_generator,
    ACTION_CLICK: handle_click,
    ACTION_UPGRADE_CLICK: handle_upgrade_click,
}


REQUIRED_PARAMS: Dict[str, Tuple[str, ...]] = {
    ACTION_OPEN: ("target", "direction", "stake", "leverage"),
    ACTION_CLOSE: ("position_id",),
    ACTION_BUY_GENERATOR: ("kind",),
}


def create_default_queue() -> CommandQueue:
    queue = CommandQueue()
    for action, handler in DEFAULT_HANDLERS.items():
        queue.register(action, handler, REQUIRED_PARAMS.get(action, ()))
    return queue
