"""
config.py - Match constants and configuration

Module-level constants hold the tuned game numbers. MatchConfig bundles them
into one immutable object passed to the Match, TickDriver and the compute_*
functions that need them.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Mapping, Optional, Tuple

from .core import to_decimal


# Trading
MIN_ENTRY_PRICE = Decimal("100")       # targets below this balance are not tradeable
MIN_LIQUIDATION_FLOOR = Decimal("10")  # longs whose liquidation price is below this are rejected
STAKE_CAP_RATIO = Decimal("0.5")       # share of target net worth one owner may have at risk
MIN_STAKE = Decimal("1")
MIN_LEVERAGE = 2

# Generators
GROWTH_FACTOR = Decimal("1.15")
COLLATERAL_RATIO = Decimal("0.9")

# Clicking
CLICK_UPGRADE_BASE_COST = Decimal("100")
CLICK_UPGRADE_GROWTH = Decimal("5")

# Match
DEFAULT_CURRENCY = "COOKIE"
DEFAULT_TICK_RATE_HZ = 10
WIN_GOAL = Decimal("100000000")
DEFAULT_DURATION_SECONDS = 360


@dataclass(frozen=True, slots=True)
class GeneratorKind:
    """
    Static definition of a generator kind.

    Attributes:
        kind: lower-case key ("grandma")
        name: display name
        base_cost: cost of the first unit
        output: currency produced per unit per second
    """
    kind: str
    name: str
    base_cost: Decimal
    output: Decimal

    def __post_init__(self):
        if not self.kind or not self.kind.strip():
            raise ValueError("Generator kind cannot be empty")
        object.__setattr__(self, 'base_cost', to_decimal(self.base_cost, "base_cost"))
        object.__setattr__(self, 'output', to_decimal(self.output, "output"))
        if self.base_cost <= 0:
            raise ValueError(f"base_cost must be positive, got {self.base_cost}")
        if self.output < 0:
            raise ValueError(f"output cannot be negative, got {self.output}")


DEFAULT_GENERATORS: Tuple[GeneratorKind, ...] = (
    GeneratorKind("grandma", "Grandma", Decimal("15"), Decimal("1")),
    GeneratorKind("bakery", "Bakery", Decimal("100"), Decimal("5")),
    GeneratorKind("factory", "Factory", Decimal("500"), Decimal("20")),
    GeneratorKind("mine", "Mine", Decimal("2000"), Decimal("100")),
    GeneratorKind("bank", "Bank", Decimal("10000"), Decimal("500")),
    GeneratorKind("temple", "Temple", Decimal("50000"), Decimal("2500")),
    GeneratorKind("wizard", "Wizard Tower", Decimal("200000"), Decimal("10000")),
    GeneratorKind("portal", "Portal", Decimal("1000000"), Decimal("50000")),
    GeneratorKind("prism", "Prism", Decimal("5000000"), Decimal("250000")),
    GeneratorKind("universe", "Universe", Decimal("25000000"), Decimal("1000000")),
)


@dataclass(frozen=True, slots=True)
class MatchConfig:
    """
    Immutable configuration for one match.

    Numeric fields accept int/float/str and are converted to Decimal.
    max_leverage and duration_seconds are optional; None means unbounded.
    """
    currency: str = DEFAULT_CURRENCY
    currency_name: str = "Cookie"
    min_entry_price: Decimal = MIN_ENTRY_PRICE
    min_liquidation_floor: Decimal = MIN_LIQUIDATION_FLOOR
    stake_cap_ratio: Decimal = STAKE_CAP_RATIO
    min_stake: Decimal = MIN_STAKE
    min_leverage: int = MIN_LEVERAGE
    max_leverage: Optional[int] = None
    growth_factor: Decimal = GROWTH_FACTOR
    collateral_ratio: Decimal = COLLATERAL_RATIO
    click_upgrade_base_cost: Decimal = CLICK_UPGRADE_BASE_COST
    click_upgrade_growth: Decimal = CLICK_UPGRADE_GROWTH
    tick_rate_hz: int = DEFAULT_TICK_RATE_HZ
    win_goal: Optional[Decimal] = WIN_GOAL
    duration_seconds: Optional[Decimal] = None
    auto_close_insolvent: bool = True
    max_passes: int = 10
    generators: Tuple[GeneratorKind, ...] = field(default=DEFAULT_GENERATORS)

    def __post_init__(self):
        for name in (
            'min_entry_price', 'min_liquidation_floor', 'stake_cap_ratio', 'min_stake',
            'growth_factor', 'collateral_ratio', 'click_upgrade_base_cost', 'click_upgrade_growth',
        ):
            object.__setattr__(self, name, to_decimal(getattr(self, name), name))
        if self.win_goal is not None:
            object.__setattr__(self, 'win_goal', to_decimal(self.win_goal, 'win_goal'))
        if self.duration_seconds is not None:
            object.__setattr__(self, 'duration_seconds', to_decimal(self.duration_seconds, 'duration_seconds'))
        object.__setattr__(self, 'generators', tuple(self.generators))

        if self.min_leverage < 2:
            raise ValueError(f"min_leverage must be at least 2, got {self.min_leverage}")
        if self.max_leverage is not None and self.max_leverage < self.min_leverage:
            raise ValueError("max_leverage cannot be below min_leverage")
        if self.tick_rate_hz <= 0:
            raise ValueError(f"tick_rate_hz must be positive, got {self.tick_rate_hz}")
        if self.max_passes < 1:
            raise ValueError(f"max_passes must be at least 1, got {self.max_passes}")
        if not Decimal("0") < self.collateral_ratio <= Decimal("1"):
            raise ValueError(f"collateral_ratio must be in (0, 1], got {self.collateral_ratio}")
        if self.growth_factor < Decimal("1"):
            raise ValueError(f"growth_factor must be at least 1, got {self.growth_factor}")
        kinds = [g.kind for g in self.generators]
        if len(set(kinds)) != len(kinds):
            raise ValueError(f"duplicate generator kinds: {kinds}")

    @property
    def tick_seconds(self) -> Decimal:
        """Length of one tick at the configured rate."""
        return Decimal("1") / Decimal(self.tick_rate_hz)

    @property
    def generator_kinds(self) -> Mapping[str, GeneratorKind]:
        return {g.kind: g for g in self.generators}

    def with_overrides(self, **overrides) -> MatchConfig:
        return replace(self, **overrides)


DEFAULT_CONFIG = MatchConfig()

# Six-minute timed multiplayer matches.
TIMED_MATCH_CONFIG = MatchConfig(duration_seconds=DEFAULT_DURATION_SECONDS)
