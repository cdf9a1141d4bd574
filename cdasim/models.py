# cdasim/models.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Dict, Hashable, List, Optional, Tuple


class Side(Enum):
    BUY = 1
    SELL = -1

    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class MarketMode(Enum):
    CDA = auto()    # continuous double auction
    CALL = auto()   # periodic batch clearing at one price


OrderId = Hashable
OwnerId = Hashable


@dataclass(frozen=True, slots=True)
class Order:
    """
    A trader's limit order. Immutable once created.
    - price: limit price
    - qty: original quantity (positive int)
    - seq: arrival sequence, breaks price ties by time
    - owner: trader identifier
    Validation happens at the engine boundary, not here.
    """
    id: OrderId
    side: Side
    price: float
    qty: int
    seq: int
    owner: OwnerId = None


@dataclass(slots=True)
class RestingOrder:
    """An order sitting in the book with its outstanding quantity."""
    order: Order
    remaining: int

    @classmethod
    def of(cls, order: Order) -> "RestingOrder":
        return cls(order=order, remaining=order.qty)

    @property
    def id(self) -> OrderId:
        return self.order.id

    @property
    def side(self) -> Side:
        return self.order.side

    @property
    def price(self) -> float:
        return self.order.price

    @property
    def seq(self) -> int:
        return self.order.seq

    @property
    def owner(self) -> OwnerId:
        return self.order.owner

    @property
    def is_active(self) -> bool:
        return self.remaining > 0


@dataclass(frozen=True, slots=True)
class Trade:
    """
    Trade record emitted by the matcher or derived from a clearing.
    price: the resting order's limit in continuous trading, the
           clearing price in a call market
    ts: simulation time of the execution
    """
    buy_id: OrderId
    sell_id: OrderId
    price: float
    qty: int
    ts: int
    buyer: OwnerId = None
    seller: OwnerId = None


@dataclass(frozen=True, slots=True)
class Fill:
    """Executed quantity of one order in a batch clearing."""
    order_id: OrderId
    side: Side
    owner: OwnerId
    price: float
    qty: int


@dataclass(frozen=True, slots=True)
class ClearingResult:
    clearing_price: Optional[float]
    fills: Tuple[Fill, ...] = ()
    ts: int = 0

    @property
    def volume(self) -> int:
        return sum(f.qty for f in self.fills if f.side is Side.BUY)

    @property
    def executions(self) -> List[Tuple[OrderId, int]]:
        return [(f.order_id, f.qty) for f in self.fills]

    def executed(self, order_id: OrderId) -> int:
        for f in self.fills:
            if f.order_id == order_id:
                return f.qty
        return 0

    def by_owner(self) -> Dict[OwnerId, int]:
        out: Dict[OwnerId, int] = {}
        for f in self.fills:
            out[f.owner] = out.get(f.owner, 0) + f.qty
        return out


@dataclass(frozen=True, slots=True)
class MarketSnapshot:
    """
    What an agent may observe when solicited. Quotes are None when the
    information regime is blind (call market) or the side is empty.
    seq is the arrival sequence the driver reserved for this solicitation.
    """
    period: int
    time: int
    seq: int
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    last_price: Optional[float] = None
    mode: MarketMode = MarketMode.CDA

    @property
    def spread(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return self.best_ask - self.best_bid

    def make_order(self, side: Side, price: float, qty: int, owner: OwnerId) -> Order:
        return Order(id=self.seq, side=side, price=float(price), qty=int(qty), seq=self.seq, owner=owner)
