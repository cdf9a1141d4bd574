# cdasim/core.py
from __future__ import annotations

import heapq
import math
from collections import deque, defaultdict
from typing import Deque, Dict, List, Optional, Set, Tuple, Union

from .errors import InvalidOrderError, NotFoundError
from .models import Order, OrderId, OwnerId, RestingOrder, Side


def validate_order(order: Order) -> None:
    """Raise InvalidOrderError unless price and qty are strictly positive."""
    if isinstance(order.qty, bool) or not isinstance(order.qty, int) or order.qty <= 0:
        raise InvalidOrderError(f"qty must be a positive integer, got {order.qty!r}", order.id)
    if order.price is None or not math.isfinite(order.price) or order.price <= 0:
        raise InvalidOrderError(f"price must be positive and finite, got {order.price!r}", order.id)
    if not isinstance(order.side, Side):
        raise InvalidOrderError(f"unknown side {order.side!r}", order.id)


class OrderBook:
    """
    Price-time priority book of resting limit orders.
    Data structures:
      - dict[price]->deque per side, each deque ordered by arrival seq
      - heaps for best price discovery (lazy cleanup)
      - id_index from order id to its RestingOrder
    Invariants (checked via assert_invariants, or after every mutation
    when check_invariants=True):
      - no crossed book (best_bid < best_ask) unless one side is empty
      - strictly increasing seq within a price level
      - every indexed order sits in its level with remaining > 0
    """

    def __init__(self, check_invariants: bool = False) -> None:
        self._bids: Dict[float, Deque[RestingOrder]] = defaultdict(deque)
        self._asks: Dict[float, Deque[RestingOrder]] = defaultdict(deque)
        self._bid_heap: List[float] = []  # negative prices for max-heap behavior
        self._ask_heap: List[float] = []
        self._id_index: Dict[OrderId, RestingOrder] = {}
        self._check: bool = check_invariants

    def __len__(self) -> int:
        return len(self._id_index)

    def __contains__(self, order_id: OrderId) -> bool:
        return order_id in self._id_index

    def _side_book(self, side: Side) -> Dict[float, Deque[RestingOrder]]:
        return self._bids if side is Side.BUY else self._asks

    def _best_bid_price(self) -> Optional[float]:
        while self._bid_heap:
            p = -self._bid_heap[0]
            if self._bids.get(p):
                return p
            heapq.heappop(self._bid_heap)  # stale
        return None

    def _best_ask_price(self) -> Optional[float]:
        while self._ask_heap:
            p = self._ask_heap[0]
            if self._asks.get(p):
                return p
            heapq.heappop(self._ask_heap)  # stale
        return None

    def best_bid_price(self) -> Optional[float]:
        return self._best_bid_price()

    def best_ask_price(self) -> Optional[float]:
        return self._best_ask_price()

    def best_bid(self) -> Optional[RestingOrder]:
        p = self._best_bid_price()
        return None if p is None else self._bids[p][0]

    def best_ask(self) -> Optional[RestingOrder]:
        p = self._best_ask_price()
        return None if p is None else self._asks[p][0]

    def best(self, side: Side) -> Optional[RestingOrder]:
        return self.best_bid() if side is Side.BUY else self.best_ask()

    def get(self, order_id: OrderId) -> Optional[RestingOrder]:
        return self._id_index.get(order_id)

    def insert(self, order: Union[Order, RestingOrder]) -> RestingOrder:
        resting = order if isinstance(order, RestingOrder) else RestingOrder.of(order)
        validate_order(resting.order)
        if resting.remaining <= 0 or resting.remaining > resting.order.qty:
            raise InvalidOrderError(f"remaining {resting.remaining} outside (0, {resting.order.qty}]", resting.id)
        if resting.id in self._id_index:
            raise InvalidOrderError(f"duplicate order id {resting.id!r}", resting.id)

        price = float(resting.price)
        book = self._side_book(resting.side)
        level = book.get(price)
        if not level:
            if resting.side is Side.BUY:
                heapq.heappush(self._bid_heap, -price)
            else:
                heapq.heappush(self._ask_heap, price)
            level = book[price]
            level.append(resting)
        elif level[-1].seq < resting.seq:
            level.append(resting)
        else:
            # older arrival re-entering the book (carry-over): keep seq order
            for i, o in enumerate(level):
                if o.seq == resting.seq:
                    raise InvalidOrderError(f"seq {resting.seq} already resting at price {price}", resting.id)
                if o.seq > resting.seq:
                    level.insert(i, resting)
                    break
        self._id_index[resting.id] = resting
        if self._check:
            self.assert_invariants()
        return resting

    def remove(self, order_id: OrderId) -> RestingOrder:
        resting = self._id_index.get(order_id)
        if resting is None:
            raise NotFoundError(order_id)
        book = self._side_book(resting.side)
        level = book.get(resting.price)
        if not level:
            raise NotFoundError(order_id)
        if level[0] is resting:
            level.popleft()
        else:
            level.remove(resting)
        if not level:
            book.pop(resting.price, None)
        del self._id_index[order_id]
        if self._check:
            self.assert_invariants()
        return resting

    def reduce_quantity(self, order_id: OrderId, amount: int) -> int:
        """Decrement remaining quantity; drops the order when it reaches 0. Returns what is left."""
        resting = self._id_index.get(order_id)
        if resting is None:
            raise NotFoundError(order_id)
        if amount <= 0 or amount > resting.remaining:
            raise InvalidOrderError(f"cannot reduce {order_id!r} by {amount} (remaining {resting.remaining})", order_id)
        resting.remaining -= amount
        if resting.remaining == 0:
            self.remove(order_id)
        return resting.remaining

    def clear(self) -> List[RestingOrder]:
        """Empty the book, returning what was resting in priority order per side."""
        out = [o for _, q in self.levels_detail(Side.BUY) for o in q]
        out += [o for _, q in self.levels_detail(Side.SELL) for o in q]
        self._bids.clear()
        self._asks.clear()
        self._bid_heap.clear()
        self._ask_heap.clear()
        self._id_index.clear()
        return out

    def executable_qty(
        self,
        order: Order,
        limit: Optional[int] = None,
        skip_owner: Optional[OwnerId] = None,
        stop_owner: Optional[OwnerId] = None,
    ) -> int:
        """
        Quantity on the opposite side that crosses order.price, walked in
        priority order and stopping once limit is reached. Orders of
        skip_owner are not counted; the walk ends at the first order of
        stop_owner.
        """
        need = order.qty if limit is None else limit
        total = 0
        for p, level in self.levels_detail(order.side.opposite()):
            if (p > order.price) if order.side is Side.BUY else (p < order.price):
                break
            for resting in level:
                if stop_owner is not None and resting.owner == stop_owner:
                    return total
                if skip_owner is not None and resting.owner == skip_owner:
                    continue
                total += resting.remaining
                if total >= need:
                    return total
        return total

    def owners(self) -> Set[OwnerId]:
        """Owners with at least one resting order."""
        return {o.owner for o in self._id_index.values() if o.owner is not None}

    def depth_at_price(self, side: Side, price: float) -> int:
        book = self._side_book(side)
        return sum(o.remaining for o in book.get(price, ()))

    def total_depth(self, side: Side) -> int:
        book = self._side_book(side)
        return sum(o.remaining for q in book.values() for o in q)

    def levels(self, side: Side) -> List[Tuple[float, int]]:
        return [(p, sum(o.remaining for o in q)) for p, q in self.levels_detail(side)]

    def levels_detail(self, side: Side) -> List[Tuple[float, Tuple[RestingOrder, ...]]]:
        book = self._side_book(side)
        keys = sorted((p for p, q in book.items() if q), reverse=side is Side.BUY)
        return [(p, tuple(book[p])) for p in keys]

    def assert_invariants(self) -> None:
        bb = self._best_bid_price()
        ba = self._best_ask_price()
        if bb is not None and ba is not None:
            assert bb < ba, f"Crossed book: best_bid={bb} best_ask={ba}"
        seen = 0
        for label, book in (("BID", self._bids), ("ASK", self._asks)):
            for p, q in book.items():
                last_seq = None
                for o in q:
                    assert o.price == p, f"{label} {o.id!r} filed at {p} but priced {o.price}"
                    assert o.remaining > 0, f"{label} {o.id!r} resting with remaining {o.remaining}"
                    assert last_seq is None or o.seq > last_seq, f"Time priority violated at {label} {p}"
                    assert self._id_index.get(o.id) is o, f"{label} {o.id!r} missing from index"
                    last_seq = o.seq
                    seen += 1
        assert seen == len(self._id_index), "Index holds orders that are not in the book"

    def snapshot_top(self) -> Tuple[Optional[float], Optional[float], int, int]:
        bb = self._best_bid_price()
        ba = self._best_ask_price()
        bid_depth = self.depth_at_price(Side.BUY, bb) if bb is not None else 0
        ask_depth = self.depth_at_price(Side.SELL, ba) if ba is not None else 0
        return (bb, ba, bid_depth, ask_depth)
