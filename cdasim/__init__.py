# cdasim/__init__.py
"""
Market simulator: continuous double auction and call market engines.

Export the primary types and entry points for convenience.
"""
from .models import Side, MarketMode, Order, RestingOrder, Trade, Fill, ClearingResult, MarketSnapshot
from .errors import SimulationError, InvalidOrderError, NotFoundError, ConfigurationError
from .core import OrderBook
from .matcher import Matcher, SelfTradePolicy
from .clearer import Clearer, ClearingPriceRule
from .agents import Agent, Markup, Truthful, ZeroIntelligence, ShadingStyle
from .events import EventLog
from .sim import SimConfig, SimState, Simulator

__all__ = [
    "Side",
    "MarketMode",
    "Order",
    "RestingOrder",
    "Trade",
    "Fill",
    "ClearingResult",
    "MarketSnapshot",
    "SimulationError",
    "InvalidOrderError",
    "NotFoundError",
    "ConfigurationError",
    "OrderBook",
    "Matcher",
    "SelfTradePolicy",
    "Clearer",
    "ClearingPriceRule",
    "Agent",
    "Markup",
    "Truthful",
    "ZeroIntelligence",
    "ShadingStyle",
    "EventLog",
    "SimConfig",
    "SimState",
    "Simulator",
]

__version__ = "0.1.0"
