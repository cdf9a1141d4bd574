# tests/test_sim.py
from __future__ import annotations

import json
import logging
import math

import pandas as pd
import pytest

from cdasim.agents import Agent, Truthful
from cdasim.errors import ConfigurationError, NotFoundError, SimulationError
from cdasim.models import MarketMode, Side
from cdasim.sim import SimConfig, SimState, Simulator, build_agents, competitive_equilibrium, save_artifacts


def small(**kw):
    base = dict(seed=7, n_periods=20, buyers={"0.1": 5, "zi": 3}, sellers={"0.1": 5, "zi": 3}, check_invariants=True)
    base.update(kw)
    return SimConfig(**base)


def test_cda_run_produces_consistent_artifacts():
    sim = Simulator(small())
    art = sim.run()
    assert sim.state is SimState.TERMINAL
    assert len(art.periods) == 20
    assert set(art.trades.columns) >= {"period", "buy_id", "sell_id", "price", "qty"}
    assert (art.trades["qty"] > 0).all()
    assert art.clearings.empty
    # each agent trades at most its single unit per period
    assert (art.payoffs["traded"] <= 1).all()
    bought = art.payoffs[art.payoffs.role == "buyers"].groupby("period")["traded"].sum()
    sold = art.payoffs[art.payoffs.role == "sellers"].groupby("period")["traded"].sum()
    assert (bought == sold).all()
    assert (art.periods["volume"] == bought.values).all()
    assert not art.snapshots.empty


@pytest.mark.parametrize("mode", [MarketMode.CDA, MarketMode.CALL])
def test_surplus_decomposition_identity(mode):
    art = Simulator(small(mode=mode, n_periods=30)).run()
    for row in art.periods.to_dict("records"):
        assert math.isclose(
            row["ce_surplus"], row["surplus"] + row["im_surplus"] + row["em_surplus"], abs_tol=1e-9
        )


def test_truthful_call_market_is_efficient():
    cfg = SimConfig(seed=3, mode=MarketMode.CALL, n_periods=25, buyers={"truthful": 6}, sellers={"truthful": 6})
    art = Simulator(cfg).run()
    traded = art.periods[art.periods["ce_surplus"] > 0]
    assert len(traded) > 0
    assert (traded["efficiency"].round(9) == 1.0).all()
    assert (art.clearings["clearing_price"].dropna().values == art.periods["clearing_price"].dropna().values).all()


def test_same_seed_reproduces_trades():
    a = Simulator(small()).run()
    b = Simulator(small()).run()
    pd.testing.assert_frame_equal(a.trades, b.trades)
    pd.testing.assert_frame_equal(a.periods, b.periods)
    c = Simulator(small(seed=8)).run()
    assert not a.trades.equals(c.trades)


def test_call_market_trades_at_single_price_per_period():
    art = Simulator(small(mode=MarketMode.CALL)).run()
    assert not art.trades.empty
    assert (art.trades.groupby("period")["price"].nunique() == 1).all()
    assert len(art.clearings) == 20
    assert art.snapshots.empty


def test_invalid_orders_are_rejected_and_logged(caplog):
    # standard shading of 1.0 bids zero: every buyer order is invalid
    cfg = small(buyers={"1.0": 4}, sellers={"0.0": 4}, n_periods=3)
    with caplog.at_level(logging.WARNING, logger="cdasim.sim"):
        art = Simulator(cfg).run()
    assert art.reject_count == 12
    assert art.trades.empty
    assert (art.periods["rejected"] == 4).all()
    assert "rejected order" in caplog.text


def test_steps_per_period_limits_solicitation():
    cfg = small(steps_per_period=2, orders_per_step=3, n_periods=4)
    sim = Simulator(cfg)
    art = sim.run()
    assert (art.periods["steps"] == 2).all()
    assert art.order_count <= 4 * 6


def test_carry_over_keeps_cda_book():
    sim = Simulator(small(carry_over=True, n_periods=3))
    sim.run()
    kept = len(sim.book)
    sim2 = Simulator(small(carry_over=False, n_periods=3))
    sim2.run()
    assert len(sim2.book) == 0
    assert kept > 0


def test_carry_over_reenters_call_orders():
    sim = Simulator(small(mode=MarketMode.CALL, carry_over=True, n_periods=2))
    sim.run()
    assert sim.pending
    assert all(o.qty > 0 for o in sim.pending)


@pytest.mark.parametrize("mode", [MarketMode.CDA, MarketMode.CALL])
def test_carried_orders_keep_one_order_per_agent(mode):
    cfg = SimConfig(seed=7, mode=mode, n_periods=40, buyers={"0.3": 6}, sellers={"0.3": 6}, carry_over=True)
    art = Simulator(cfg).run()
    assert (art.payoffs["traded"] <= cfg.units).all()
    # a markup trader fills at or better than its value
    assert (art.payoffs["payoff"] >= -1e-12).all()
    carried = art.payoffs.sort_values("period").groupby("owner")["value"].apply(lambda v: (v.diff() == 0).any())
    assert carried.any()


def test_all_or_none_run_trades():
    art = Simulator(small(all_or_none=True)).run()
    assert not art.trades.empty
    assert (art.payoffs["traded"] <= 1).all()


def test_blind_call_market_snapshots():
    seen = []

    class Spy(Truthful):
        def quote(self, snapshot):
            seen.append(snapshot)
            return super().quote(snapshot)

    agents = [Spy(f"b{i}", True) for i in range(3)] + [Spy(f"s{i}", False) for i in range(3)]
    Simulator(small(mode=MarketMode.CALL, n_periods=1), agents=agents).run()
    assert len(seen) == 6
    assert all(s.best_bid is None and s.best_ask is None for s in seen)
    assert len({s.seq for s in seen}) == 6


def test_rerun_is_an_error():
    sim = Simulator(small(n_periods=1))
    sim.run()
    with pytest.raises(SimulationError):
        sim.run()


@pytest.mark.parametrize("kw", [
    dict(n_periods=0),
    dict(buyers={}),
    dict(sellers={"0.1": 0}),
    dict(buyers={"bogus": 3}),
    dict(value_low=1.0, value_high=1.0),
    dict(orders_per_step=0),
    dict(steps_per_period=0),
    dict(mode="cda"),
])
def test_configuration_errors(kw):
    with pytest.raises(ConfigurationError):
        Simulator(small(**kw))


def test_duplicate_owners_rejected():
    agents = [Truthful("x", True), Truthful("x", False)]
    with pytest.raises(ConfigurationError):
        Simulator(small(), agents=agents)


def test_internal_inconsistency_aborts_run():
    class Saboteur(Agent):
        def quote(self, snapshot):
            # corrupt the shared book: remove something that is not there
            sim.book.remove("ghost")

    sim = Simulator(small(n_periods=1), agents=[Saboteur("b0", True), Truthful("s0", False)])
    with pytest.raises(NotFoundError):
        sim.run()


def test_competitive_equilibrium_marks_traders():
    agents = build_agents(SimConfig(buyers={"truthful": 2}, sellers={"truthful": 2}))
    for a, v in zip(agents, [1.0, 0.3, 0.7, 0.01]):
        a.value = v
    price = competitive_equilibrium(agents)
    assert math.isclose(price, 0.505)
    assert [a.ce_traded for a in agents] == [1, 0, 0, 1]
    assert [a.side for a in agents] == [Side.BUY, Side.BUY, Side.SELL, Side.SELL]


def test_from_egta_spec():
    spec = {"assignment": {"buyers": {"0.2": 3}, "sellers": {"0.1_Shift": 2}}, "configuration": {"cda": False, "style": "Exponential"}}
    cfg = SimConfig.from_egta(spec, seed=1)
    assert cfg.mode is MarketMode.CALL
    assert cfg.buyers == {"0.2": 3}
    assert cfg.style.value == "Exponential"
    with pytest.raises(ConfigurationError):
        SimConfig.from_egta({"assignment": {"buyers": 3}})


def test_save_artifacts_writes_schema_tagged_manifest(tmp_path):
    cfg = small(n_periods=2)
    art = Simulator(cfg).run()
    files = save_artifacts(art, str(tmp_path), cfg)
    manifest = json.loads(open(files["manifest"], encoding="utf-8").read())
    assert manifest["schema"] == "cdasim/1"
    assert manifest["config"]["mode"] == "CDA"
    trades = pd.read_csv(files["trades_csv"])
    assert len(trades) == len(art.trades)
