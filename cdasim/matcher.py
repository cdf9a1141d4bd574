# cdasim/matcher.py
from __future__ import annotations

import logging
from enum import Enum, auto
from typing import List, Optional

from .core import OrderBook, validate_order
from .errors import InvalidOrderError
from .models import Order, RestingOrder, Side, Trade

logger = logging.getLogger(__name__)


class SelfTradePolicy(Enum):
    ALLOW = auto()            # owner may trade against itself
    CANCEL_INCOMING = auto()  # stop matching, discard the incoming remainder
    CANCEL_RESTING = auto()   # pull the owner's resting order and keep matching


class Matcher:
    """
    Continuous double auction against an OrderBook.

    An incoming order trades with the best opposite order while prices
    cross (bid >= ask). Each execution happens at the resting order's
    limit, so the incoming side receives any price improvement. A
    partially filled resting order keeps its place at the front of its
    level. Whatever remains of the incoming order rests afterwards.

    all_or_none forbids partial executions of the incoming order: if it
    crosses the book but the reachable liquidity (after the self-trade
    policy) is short of its full quantity, nothing trades and the order is
    dropped. An order that crosses nothing rests as usual.
    """

    def __init__(
        self,
        book: Optional[OrderBook] = None,
        self_trade: SelfTradePolicy = SelfTradePolicy.ALLOW,
        all_or_none: bool = False,
    ) -> None:
        self.book = book if book is not None else OrderBook()
        self.self_trade = self_trade
        self.all_or_none = all_or_none

    @staticmethod
    def crosses(incoming: Order, resting: RestingOrder) -> bool:
        if incoming.side is Side.BUY:
            return resting.price <= incoming.price
        return resting.price >= incoming.price

    def _available(self, order: Order) -> int:
        """Opposite quantity the match loop would actually reach under the self-trade policy."""
        if order.owner is None or self.self_trade is SelfTradePolicy.ALLOW:
            return self.book.executable_qty(order)
        if self.self_trade is SelfTradePolicy.CANCEL_INCOMING:
            return self.book.executable_qty(order, stop_owner=order.owner)
        return self.book.executable_qty(order, skip_owner=order.owner)

    def submit(self, order: Order, ts: Optional[int] = None) -> List[Trade]:
        validate_order(order)
        if order.id in self.book:
            raise InvalidOrderError(f"duplicate order id {order.id!r}", order.id)
        ts = order.seq if ts is None else ts

        if self.all_or_none:
            available = self._available(order)
            if 0 < available < order.qty:
                logger.debug("all-or-none %r: book can absorb %d of %d", order.id, available, order.qty)
                return []

        incoming = RestingOrder.of(order)
        trades: List[Trade] = []
        opposite = order.side.opposite()
        while incoming.is_active:
            maker = self.book.best(opposite)
            if maker is None or not self.crosses(order, maker):
                break
            if maker.owner is not None and maker.owner == order.owner:
                if self.self_trade is SelfTradePolicy.CANCEL_INCOMING:
                    logger.debug("self-trade %r vs %r: incoming remainder %d dropped", order.id, maker.id, incoming.remaining)
                    incoming.remaining = 0
                    break
                if self.self_trade is SelfTradePolicy.CANCEL_RESTING:
                    logger.debug("self-trade %r vs %r: resting order pulled", order.id, maker.id)
                    self.book.remove(maker.id)
                    continue
                logger.debug("self-trade %r vs %r allowed", order.id, maker.id)

            qty = min(incoming.remaining, maker.remaining)
            price = maker.price
            if order.side is Side.BUY:
                trade = Trade(buy_id=order.id, sell_id=maker.id, price=price, qty=qty, ts=ts, buyer=order.owner, seller=maker.owner)
            else:
                trade = Trade(buy_id=maker.id, sell_id=order.id, price=price, qty=qty, ts=ts, buyer=maker.owner, seller=order.owner)
            incoming.remaining -= qty
            self.book.reduce_quantity(maker.id, qty)
            trades.append(trade)

        if incoming.is_active:
            self.book.insert(incoming)
        return trades
