# cdasim/clearer.py
"""
Uniform-price batch clearing for call markets.

The clearing price maximises executed volume
``min(demand(p), supply(p))`` where ``demand(p)`` is the bid quantity
priced at or above ``p`` and ``supply(p)`` the ask quantity priced at or
below ``p``. Only submitted limit prices need to be examined: both
step functions are constant between them. The maximisers form a closed
interval ``[lo, hi]`` and the ClearingPriceRule picks one point of it.

Rationing: each side fills its eligible price levels in priority order.
The first level that cannot be filled completely is split pro rata,
``floor(qty * available / level_total)``, and the leftover units are
handed out one at a time by ascending arrival sequence.
"""
from __future__ import annotations

import logging
from enum import Enum, auto
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np

from .core import validate_order
from .errors import InvalidOrderError
from .models import ClearingResult, Fill, Order, Side, Trade

logger = logging.getLogger(__name__)


class ClearingPriceRule(Enum):
    MIDPOINT = auto()  # centre of the volume-maximising interval (k = 1/2)
    LOW = auto()       # buyer-favourable end
    HIGH = auto()      # seller-favourable end


def _priority(order: Order) -> Tuple[float, int]:
    return (-order.price, order.seq) if order.side is Side.BUY else (order.price, order.seq)


def _ration(orders: Sequence[Order], available: int) -> Dict[object, int]:
    """Allocate `available` units over priority-sorted orders of one side."""
    alloc: Dict[object, int] = {}
    i = 0
    while i < len(orders) and available > 0:
        price = orders[i].price
        j = i
        while j < len(orders) and orders[j].price == price:
            j += 1
        level = orders[i:j]
        level_total = sum(o.qty for o in level)
        if level_total <= available:
            for o in level:
                alloc[o.id] = o.qty
            available -= level_total
        else:
            shares = {o.id: (o.qty * available) // level_total for o in level}
            leftover = available - sum(shares.values())
            for o in sorted(level, key=lambda o: o.seq):
                if leftover == 0:
                    break
                if shares[o.id] < o.qty:
                    shares[o.id] += 1
                    leftover -= 1
            alloc.update({k: v for k, v in shares.items() if v > 0})
            available = 0
        i = j
    return alloc


class Clearer:
    """Stateless: clear() depends only on its arguments."""

    def __init__(self, rule: ClearingPriceRule = ClearingPriceRule.MIDPOINT) -> None:
        self.rule = rule

    def schedules(self, orders: Iterable[Order]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Candidate prices (ascending) with aggregate demand and supply at each."""
        orders = list(orders)
        prices = np.unique(np.array([o.price for o in orders], dtype=float))
        bid_px = np.array([o.price for o in orders if o.side is Side.BUY], dtype=float)
        bid_q = np.array([o.qty for o in orders if o.side is Side.BUY], dtype=np.int64)
        ask_px = np.array([o.price for o in orders if o.side is Side.SELL], dtype=float)
        ask_q = np.array([o.qty for o in orders if o.side is Side.SELL], dtype=np.int64)
        demand = (bid_q[None, :] * (bid_px[None, :] >= prices[:, None])).sum(axis=1)
        supply = (ask_q[None, :] * (ask_px[None, :] <= prices[:, None])).sum(axis=1)
        return prices, demand.astype(np.int64), supply.astype(np.int64)

    def _pick(self, lo: float, hi: float) -> float:
        if self.rule is ClearingPriceRule.LOW:
            return lo
        if self.rule is ClearingPriceRule.HIGH:
            return hi
        return (lo + hi) / 2.0

    def clear(self, orders: Iterable[Order], ts: int = 0) -> ClearingResult:
        orders = list(orders)
        seen = set()
        for o in orders:
            validate_order(o)
            if o.id in seen:
                raise InvalidOrderError(f"duplicate order id {o.id!r}", o.id)
            seen.add(o.id)

        bids = sorted((o for o in orders if o.side is Side.BUY), key=_priority)
        asks = sorted((o for o in orders if o.side is Side.SELL), key=_priority)
        if not bids or not asks:
            return ClearingResult(clearing_price=None, fills=(), ts=ts)

        prices, demand, supply = self.schedules(orders)
        volume = np.minimum(demand, supply)
        best = int(volume.max())
        if best == 0:
            return ClearingResult(clearing_price=None, fills=(), ts=ts)
        tied = prices[volume == best]
        price = self._pick(float(tied[0]), float(tied[-1]))

        bid_alloc = _ration([o for o in bids if o.price >= price], best)
        ask_alloc = _ration([o for o in asks if o.price <= price], best)
        fills = [Fill(o.id, o.side, o.owner, price, bid_alloc[o.id]) for o in bids if o.id in bid_alloc]
        fills += [Fill(o.id, o.side, o.owner, price, ask_alloc[o.id]) for o in asks if o.id in ask_alloc]
        logger.debug("cleared %d orders at %.6g, volume %d (interval [%g, %g])", len(orders), price, best, tied[0], tied[-1])
        return ClearingResult(clearing_price=price, fills=tuple(fills), ts=ts)


def pair_fills(result: ClearingResult) -> List[Trade]:
    """Turn a clearing into bilateral trades by walking both sides in priority order."""
    if result.clearing_price is None:
        return []
    buys = [[f, f.qty] for f in result.fills if f.side is Side.BUY]
    sells = [[f, f.qty] for f in result.fills if f.side is Side.SELL]
    trades: List[Trade] = []
    i = j = 0
    while i < len(buys) and j < len(sells):
        b, s = buys[i], sells[j]
        qty = min(b[1], s[1])
        trades.append(Trade(
            buy_id=b[0].order_id, sell_id=s[0].order_id, price=result.clearing_price,
            qty=qty, ts=result.ts, buyer=b[0].owner, seller=s[0].owner,
        ))
        b[1] -= qty
        s[1] -= qty
        if b[1] == 0:
            i += 1
        if s[1] == 0:
            j += 1
    return trades


def unfilled(orders: Iterable[Order], result: ClearingResult) -> List[Order]:
    """Remainders of orders the clearing did not fully execute, same id and seq."""
    done = dict(result.executions)
    out: List[Order] = []
    for o in orders:
        left = o.qty - done.get(o.id, 0)
        if left > 0:
            out.append(Order(id=o.id, side=o.side, price=o.price, qty=left, seq=o.seq, owner=o.owner))
    return out
