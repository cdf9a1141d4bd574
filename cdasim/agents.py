# cdasim/agents.py
"""
Trader strategies.

Every agent is either a buyer or a seller with a private value (a
seller's value is its cost), redrawn at the start of each period. When
solicited it may submit one limit order for its units; after that it
reports exhaustion by returning None until the next period.

Strategies only decide the limit price (`quote`). Book state reaches
them exclusively through the read-only MarketSnapshot.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

import numpy as np

from .errors import ConfigurationError
from .models import MarketSnapshot, Order, OwnerId, Side


class ShadingStyle(Enum):
    STANDARD = "Standard"
    EXPONENTIAL = "Exponential"
    SHIFT = "Shift"
    CORRECT = "Correct"

    @classmethod
    def parse(cls, name: str) -> "ShadingStyle":
        for style in cls:
            if style.value == name or style.name == name.upper():
                return style
        raise ConfigurationError(f"unknown style: {name!r}")


def shade(value: float, buyer: bool, shading: float, style: ShadingStyle) -> float:
    """Limit price for a markup trader. For shading >= 0 buyers never bid above value and sellers never ask below cost."""
    if buyer:
        if style is ShadingStyle.EXPONENTIAL:
            return value * math.exp(-shading)
        if style is ShadingStyle.SHIFT:
            return value - shading
        return value * (1.0 - shading)
    if style is ShadingStyle.STANDARD:
        return value * (1.0 + shading)
    if style is ShadingStyle.CORRECT:
        return value + (1.0 - value) * shading
    if style is ShadingStyle.EXPONENTIAL:
        return value * math.exp(shading)
    return value + shading


class Agent(ABC):
    def __init__(self, owner: OwnerId, buyer: bool, strategy: str = "", units: int = 1) -> None:
        self.owner = owner
        self.buyer = buyer
        self.strategy = strategy
        self.units = units
        self.value: float = 0.0
        self.utility: float = 0.0
        self.traded: int = 0
        self.ce_traded: int = 0
        self.submitted: bool = False
        self.rng: Optional[np.random.Generator] = None
        self.low: float = 0.0
        self.high: float = 1.0

    @property
    def side(self) -> Side:
        return Side.BUY if self.buyer else Side.SELL

    @property
    def sign(self) -> float:
        return 1.0 if self.buyer else -1.0

    @property
    def role(self) -> str:
        return "buyers" if self.buyer else "sellers"

    def reset(self) -> None:
        self.utility = 0.0
        self.traded = 0
        self.submitted = False

    def resample(self, rng: np.random.Generator, low: float = 0.0, high: float = 1.0) -> None:
        self.rng = rng
        self.low, self.high = low, high
        self.value = float(rng.uniform(low, high))
        self.ce_traded = 0
        self.reset()

    def transact(self, price: float, qty: int = 1) -> None:
        self.utility += (self.value - price) * self.sign * qty
        self.traded += qty

    @abstractmethod
    def quote(self, snapshot: MarketSnapshot) -> Optional[float]:
        """Limit price to submit, or None to stay out."""

    def next_order(self, snapshot: MarketSnapshot) -> Optional[Order]:
        if self.submitted:
            return None
        self.submitted = True
        price = self.quote(snapshot)
        if price is None:
            return None
        return snapshot.make_order(self.side, price, self.units, self.owner)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(owner={self.owner!r}, {self.role}, value={self.value:.4f})"


class Markup(Agent):
    """Shades its price away from value by `shading` according to `style`."""

    def __init__(
        self,
        owner: OwnerId,
        buyer: bool,
        shading: float,
        style: ShadingStyle = ShadingStyle.STANDARD,
        strategy: str = "",
        units: int = 1,
    ) -> None:
        super().__init__(owner, buyer, strategy or f"{shading}_{style.value}", units)
        self.shading = shading
        self.style = style

    def quote(self, snapshot: MarketSnapshot) -> Optional[float]:
        return shade(self.value, self.buyer, self.shading, self.style)


class Truthful(Markup):
    def __init__(self, owner: OwnerId, buyer: bool, strategy: str = "truthful", units: int = 1) -> None:
        super().__init__(owner, buyer, 0.0, ShadingStyle.CORRECT, strategy, units)


class ZeroIntelligence(Agent):
    """Budget-constrained random quotes (ZI-C): never trades at a loss."""

    def quote(self, snapshot: MarketSnapshot) -> Optional[float]:
        if self.rng is None:
            raise RuntimeError("ZeroIntelligence agent used before resample()")
        if self.buyer:
            return float(self.rng.uniform(self.low, self.value))
        return float(self.rng.uniform(self.value, self.high))


def parse_strategy(
    strat: str,
    owner: OwnerId,
    buyer: bool,
    default_style: ShadingStyle = ShadingStyle.STANDARD,
    units: int = 1,
) -> Agent:
    """
    Build an agent from a strategy string:
      "0.3"              markup 0.3 with default_style
      "0.3_Exponential"  markup 0.3 with an explicit style
      "truthful" / "zi"  named strategies
    """
    name = strat.strip()
    if name.lower() == "truthful":
        return Truthful(owner, buyer, strategy=strat, units=units)
    if name.lower() in ("zi", "zic", "zero_intelligence"):
        return ZeroIntelligence(owner, buyer, strategy=strat, units=units)
    head, _, tail = name.partition("_")
    try:
        shading = float(head)
    except ValueError as e:
        raise ConfigurationError(f"couldn't parse strategy {strat!r}") from e
    if not math.isfinite(shading) or shading < 0:
        raise ConfigurationError(f"shading must be a non-negative number, got {strat!r}")
    style = ShadingStyle.parse(tail) if tail else default_style
    return Markup(owner, buyer, shading, style, strategy=strat, units=units)
