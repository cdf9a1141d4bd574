# tests/test_properties.py
from __future__ import annotations

import hypothesis.strategies as st
from hypothesis import given, settings

from cdasim.clearer import Clearer, pair_fills
from cdasim.core import OrderBook
from cdasim.matcher import Matcher
from cdasim.models import Order, Side


@st.composite
def order_flow(draw, min_size=1, max_size=120):
    n = draw(st.integers(min_value=min_size, max_value=max_size))
    out = []
    for i in range(1, n + 1):
        side = draw(st.sampled_from([Side.BUY, Side.SELL]))
        # coarse grid so price ties are common
        price = draw(st.integers(min_value=90, max_value=110)) / 10.0
        qty = draw(st.integers(min_value=1, max_value=50))
        owner = draw(st.integers(min_value=0, max_value=5))
        out.append(Order(id=i, side=side, price=price, qty=qty, seq=i, owner=owner))
    return out


@given(order_flow(min_size=20))
@settings(deadline=None, max_examples=50)
def test_cda_invariants_random_sequence(seq):
    m = Matcher(OrderBook(check_invariants=True))
    limits = {o.id: o for o in seq}
    executed = {o.id: 0 for o in seq}
    for o in seq:
        for t in m.submit(o):
            b, s = limits[t.buy_id], limits[t.sell_id]
            assert t.price <= b.price
            assert t.price >= s.price
            assert t.qty > 0
            # the older order sets the price
            assert t.price == (b.price if b.seq < s.seq else s.price)
            executed[t.buy_id] += t.qty
            executed[t.sell_id] += t.qty
        bb, ba = m.book.best_bid_price(), m.book.best_ask_price()
        assert bb is None or ba is None or bb < ba
    m.book.assert_invariants()
    for oid, q in executed.items():
        resting = m.book.get(oid)
        left = resting.remaining if resting is not None else 0
        assert q + left <= limits[oid].qty


@given(order_flow(min_size=2, max_size=60))
@settings(deadline=None, max_examples=50)
def test_time_priority_within_price(seq):
    m = Matcher()
    first_fill_seq = {}
    limits = {o.id: o for o in seq}
    for o in seq:
        for t in m.submit(o):
            maker = t.sell_id if o.side is Side.BUY else t.buy_id
            key = (limits[maker].side, limits[maker].price)
            # makers at one price are consumed oldest first
            assert limits[maker].seq >= first_fill_seq.get(key, 0)
            first_fill_seq[key] = limits[maker].seq


@given(order_flow(min_size=2, max_size=60))
@settings(deadline=None, max_examples=50)
def test_call_clearing_maximises_volume(orders):
    c = Clearer()
    res = c.clear(orders)
    bids = [o for o in orders if o.side is Side.BUY]
    asks = [o for o in orders if o.side is Side.SELL]

    def volume_at(p):
        return min(sum(o.qty for o in bids if o.price >= p), sum(o.qty for o in asks if o.price <= p))

    best = max((volume_at(o.price) for o in orders), default=0)
    assert res.volume == best
    if best == 0:
        assert res.clearing_price is None
        return
    p = res.clearing_price
    assert volume_at(p) == best
    by_id = {o.id: o for o in orders}
    buy_total = sell_total = 0
    for f in res.fills:
        o = by_id[f.order_id]
        assert 0 < f.qty <= o.qty
        if o.side is Side.BUY:
            assert o.price >= p
            buy_total += f.qty
        else:
            assert o.price <= p
            sell_total += f.qty
    assert buy_total == sell_total == best
    assert sum(t.qty for t in pair_fills(res)) == best
    assert c.clear(orders) == res
