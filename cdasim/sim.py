# cdasim/sim.py
from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd

from .agents import Agent, ShadingStyle, parse_strategy
from .clearer import Clearer, ClearingPriceRule, pair_fills, unfilled
from .core import OrderBook, validate_order
from .errors import ConfigurationError, InvalidOrderError, SimulationError
from .events import SCHEMA, EventLog
from .matcher import Matcher, SelfTradePolicy
from .metrics import period_features
from .models import MarketMode, MarketSnapshot, Order, OwnerId, Trade

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SimConfig:
    seed: Optional[int] = 30
    mode: MarketMode = MarketMode.CDA
    n_periods: int = 100
    buyers: Dict[str, int] = field(default_factory=lambda: {"0.0": 10})
    sellers: Dict[str, int] = field(default_factory=lambda: {"0.0": 10})
    style: ShadingStyle = ShadingStyle.STANDARD
    units: int = 1
    value_low: float = 0.0
    value_high: float = 1.0
    steps_per_period: Optional[int] = None   # None: until every agent was solicited
    orders_per_step: int = 1
    carry_over: bool = False
    self_trade: SelfTradePolicy = SelfTradePolicy.ALLOW
    all_or_none: bool = False
    clearing_rule: ClearingPriceRule = ClearingPriceRule.MIDPOINT
    visible_book: Optional[bool] = None      # None: quotes visible in CDA, blind in call
    check_invariants: bool = False
    snapshot_every: int = 1

    def validate(self) -> None:
        if not isinstance(self.mode, MarketMode):
            raise ConfigurationError(f"unknown market mode {self.mode!r}")
        if self.n_periods <= 0:
            raise ConfigurationError("n_periods must be positive")
        if self.units <= 0:
            raise ConfigurationError("units must be positive")
        if self.orders_per_step <= 0:
            raise ConfigurationError("orders_per_step must be positive")
        if self.steps_per_period is not None and self.steps_per_period <= 0:
            raise ConfigurationError("steps_per_period must be positive")
        if self.snapshot_every <= 0:
            raise ConfigurationError("snapshot_every must be positive")
        if not self.value_low < self.value_high:
            raise ConfigurationError(f"empty value range [{self.value_low}, {self.value_high}]")
        for role, mix in (("buyers", self.buyers), ("sellers", self.sellers)):
            if any(n < 0 for n in mix.values()):
                raise ConfigurationError(f"negative agent count among {role}")
            if sum(mix.values()) == 0:
                raise ConfigurationError(f"no {role}")
            for strat in mix:
                parse_strategy(strat, None, role == "buyers", self.style)

    @property
    def quotes_visible(self) -> bool:
        if self.visible_book is None:
            return self.mode is MarketMode.CDA
        return self.visible_book

    @classmethod
    def from_egta(cls, spec: Dict[str, Any], **overrides: Any) -> "SimConfig":
        """
        Read an egtaonline simulation spec:
        {"assignment": {"buyers": {strat: n}, "sellers": {strat: n}},
         "configuration": {"cda": true, "style": "Standard"}}
        """
        try:
            assignment = spec["assignment"]
            buyers = {str(k): int(v) for k, v in assignment["buyers"].items()}
            sellers = {str(k): int(v) for k, v in assignment["sellers"].items()}
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"malformed assignment: {e}") from e
        conf = spec.get("configuration") or {}
        style = ShadingStyle.parse(conf["style"]) if conf.get("style") else ShadingStyle.STANDARD
        mode = MarketMode.CDA if conf.get("cda", True) else MarketMode.CALL
        return cls(mode=mode, buyers=buyers, sellers=sellers, style=style, **overrides)


@dataclass(slots=True)
class SimArtifacts:
    trades: pd.DataFrame
    clearings: pd.DataFrame
    periods: pd.DataFrame
    payoffs: pd.DataFrame
    snapshots: pd.DataFrame
    latencies_ns: np.ndarray
    order_count: int
    reject_count: int


class SimState(Enum):
    IDLE = auto()
    COLLECTING = auto()
    MATCHING = auto()
    CLEARING = auto()
    RECORDING = auto()
    TERMINAL = auto()


class SimulationContext:
    """Everything one run mutates. Nothing here is shared between runs."""

    def __init__(self, cfg: SimConfig) -> None:
        self.rng = np.random.default_rng(cfg.seed)
        self.book = OrderBook(check_invariants=cfg.check_invariants)
        self.matcher = Matcher(self.book, self_trade=cfg.self_trade, all_or_none=cfg.all_or_none)
        self.clearer = Clearer(cfg.clearing_rule)
        self.log = EventLog()
        self._seq = 0
        self.last_price: Optional[float] = None

    def next_seq(self) -> int:
        self._seq += 1
        return self._seq

    @property
    def seq(self) -> int:
        return self._seq


def build_agents(cfg: SimConfig) -> List[Agent]:
    agents: List[Agent] = []
    for role, mix, buyer in (("b", cfg.buyers, True), ("s", cfg.sellers, False)):
        i = 0
        for strat in sorted(mix):
            for _ in range(mix[strat]):
                agents.append(parse_strategy(strat, f"{role}{i}", buyer, cfg.style, cfg.units))
                i += 1
    return agents


def competitive_equilibrium(agents: Sequence[Agent], rule: ClearingPriceRule = ClearingPriceRule.MIDPOINT) -> Optional[float]:
    """Clear truthful orders and mark each agent's ce_traded. Returns the CE price."""
    orders = []
    for k, a in enumerate(agents):
        a.ce_traded = 0
        if a.value > 0:
            orders.append(Order(id=k, side=a.side, price=a.value, qty=a.units, seq=k, owner=k))
    result = Clearer(rule).clear(orders)
    for k, qty in result.by_owner().items():
        agents[k].ce_traded = qty
    return result.clearing_price


class Simulator:
    """
    Drives agents through n_periods trading periods.

    CDA: each step solicits orders_per_step agents (random permutation per
    period) and feeds every order straight to the matcher.
    CALL: orders accumulate unmatched and clear in one batch at the end of
    the period.
    A period ends after steps_per_period steps or once no agent is left to
    solicit.
    """

    def __init__(self, cfg: SimConfig, agents: Optional[List[Agent]] = None) -> None:
        cfg.validate()
        self.cfg = cfg
        self.ctx = SimulationContext(cfg)
        self.agents = agents if agents is not None else build_agents(cfg)
        if not self.agents:
            raise ConfigurationError("no agents")
        owners = [a.owner for a in self.agents]
        if len(set(owners)) != len(owners):
            raise ConfigurationError("agent owners must be unique")
        self.state = SimState.IDLE
        self.pending: List[Order] = []
        self.reject_count = 0
        self.order_count = 0
        self._latencies: List[int] = []
        self._period_rows: List[Dict[str, Any]] = []
        self._payoff_rows: List[Dict[str, Any]] = []
        self._snaps: List[Tuple[int, int, Optional[float], Optional[float], int, int]] = []
        self._by_owner = {a.owner: a for a in self.agents}

    @property
    def book(self) -> OrderBook:
        return self.ctx.book

    @property
    def log(self) -> EventLog:
        return self.ctx.log

    def _snapshot(self, period: int, step: int) -> MarketSnapshot:
        seq = self.ctx.next_seq()
        if self.cfg.quotes_visible:
            return MarketSnapshot(
                period=period, time=step, seq=seq,
                best_bid=self.book.best_bid_price(), best_ask=self.book.best_ask_price(),
                last_price=self.ctx.last_price, mode=self.cfg.mode,
            )
        return MarketSnapshot(period=period, time=step, seq=seq, mode=self.cfg.mode)

    def _settle(self, trades: Sequence[Trade]) -> None:
        for t in trades:
            self._by_owner[t.buyer].transact(t.price, t.qty)
            self._by_owner[t.seller].transact(t.price, t.qty)
            self.ctx.last_price = t.price

    def _match(self, period: int, step: int, order: Order) -> None:
        self.state = SimState.MATCHING
        t0 = time.perf_counter_ns()
        try:
            trades = self.ctx.matcher.submit(order, ts=order.seq)
        except InvalidOrderError as e:
            self.reject_count += 1
            logger.warning("period %d: rejected order %r from %r: %s", period, order.id, order.owner, e)
            return
        finally:
            self._latencies.append(time.perf_counter_ns() - t0)
        self.state = SimState.RECORDING
        self.log.record_trades(period, step, trades)
        self._settle(trades)

    def _collect(self, period: int, order: Order) -> None:
        try:
            validate_order(order)
        except InvalidOrderError as e:
            self.reject_count += 1
            logger.warning("period %d: rejected order %r from %r: %s", period, order.id, order.owner, e)
            return
        self.pending.append(order)

    def _clear(self, period: int) -> Optional[float]:
        self.state = SimState.CLEARING
        t0 = time.perf_counter_ns()
        result = self.ctx.clearer.clear(self.pending, ts=self.ctx.seq)
        self._latencies.append(time.perf_counter_ns() - t0)
        self.state = SimState.RECORDING
        trades = pair_fills(result)
        self.log.record_clearing(period, result)
        self.log.record_trades(period, -1, trades)
        self._settle(trades)
        self.pending = unfilled(self.pending, result) if self.cfg.carry_over else []
        return result.clearing_price

    def _live_owners(self) -> Set[OwnerId]:
        """Agents whose order survived the previous period (carry-over only)."""
        if not self.cfg.carry_over:
            return set()
        if self.cfg.mode is MarketMode.CDA:
            return self.book.owners()
        return {o.owner for o in self.pending}

    def run_period(self, period: int) -> Dict[str, Any]:
        cfg = self.cfg
        rng = self.ctx.rng
        rejected_before = self.reject_count
        self.state = SimState.COLLECTING
        live = self._live_owners()
        for a in self.agents:
            if a.owner in live:
                # a carried order is still working: keep the value it was priced on, no new order
                a.reset()
                a.submitted = True
            else:
                a.resample(rng, cfg.value_low, cfg.value_high)
        ce_price = competitive_equilibrium(self.agents, cfg.clearing_rule)

        queue = [self.agents[i] for i in rng.permutation(len(self.agents))]
        max_steps = cfg.steps_per_period if cfg.steps_per_period is not None else len(queue)
        step = 0
        while step < max_steps and queue:
            self.state = SimState.COLLECTING
            batch, queue = queue[:cfg.orders_per_step], queue[cfg.orders_per_step:]
            for agent in batch:
                order = agent.next_order(self._snapshot(period, step))
                if order is None:
                    continue
                self.order_count += 1
                if cfg.mode is MarketMode.CDA:
                    self._match(period, step, order)
                else:
                    self._collect(period, order)
            if cfg.mode is MarketMode.CDA and (step + 1) % cfg.snapshot_every == 0:
                self._snaps.append((period, step, *self.book.snapshot_top()))
            step += 1

        clearing_price = self._clear(period) if cfg.mode is MarketMode.CALL else None
        self.state = SimState.RECORDING
        trades = self.log.trades(period)
        volume = sum(t.qty for t in trades)
        notional = sum(t.price * t.qty for t in trades)
        row: Dict[str, Any] = {"period": period, "steps": step}
        row.update(period_features(self.agents, ce_price))
        row.update(
            volume=volume,
            avg_price=notional / volume if volume else float("nan"),
            clearing_price=clearing_price,
            rejected=self.reject_count - rejected_before,
        )
        self._period_rows.append(row)
        for a in self.agents:
            self._payoff_rows.append({
                "period": period, "owner": a.owner, "role": a.role, "strategy": a.strategy,
                "value": a.value, "payoff": a.utility, "traded": a.traded, "ce_traded": a.ce_traded,
            })
        if cfg.mode is MarketMode.CDA and not cfg.carry_over:
            self.book.clear()
        logger.info(
            "period %d: volume=%d surplus=%.4f ce_surplus=%.4f", period, volume, row["surplus"], row["ce_surplus"]
        )
        return row

    def run(self) -> SimArtifacts:
        if self.state is not SimState.IDLE:
            raise SimulationError(f"simulator already ran (state {self.state.name})")
        cfg = self.cfg
        logger.info(
            "starting %s run: %d periods, %d agents, seed=%s",
            cfg.mode.name, cfg.n_periods, len(self.agents), cfg.seed,
        )
        for period in range(cfg.n_periods):
            self.run_period(period)
        self.state = SimState.TERMINAL
        logger.info("run finished: %d orders, %d trades, %d rejected", self.order_count, len(self.log.trades()), self.reject_count)
        return self.artifacts()

    def artifacts(self) -> SimArtifacts:
        periods = pd.DataFrame(self._period_rows)
        if not periods.empty:
            periods[["ce_price", "clearing_price"]] = periods[["ce_price", "clearing_price"]].astype(float)
        return SimArtifacts(
            trades=self.log.trades_frame(),
            clearings=self.log.clearings_frame(),
            periods=periods,
            payoffs=pd.DataFrame(self._payoff_rows),
            snapshots=pd.DataFrame(self._snaps, columns=["period", "step", "best_bid", "best_ask", "bid_depth", "ask_depth"]),
            latencies_ns=np.array(self._latencies, dtype=np.int64),
            order_count=self.order_count,
            reject_count=self.reject_count,
        )


def save_artifacts(art: SimArtifacts, out_dir: str, cfg: Optional[SimConfig] = None) -> Dict[str, str]:
    ts = pd.Timestamp.now(tz="UTC").strftime("%Y%m%d_%H%M%S")
    base = Path(out_dir)
    (base / "figures").mkdir(parents=True, exist_ok=True)
    files = {}
    for name in ("trades", "clearings", "periods", "payoffs", "snapshots"):
        path = base / f"{name}_{ts}.csv"
        getattr(art, name).to_csv(path, index=False)
        files[f"{name}_csv"] = str(path)

    lat_path = base / f"latencies_{ts}.csv"
    pd.DataFrame({"latency_ns": art.latencies_ns}).to_csv(lat_path, index=False)
    files["latencies_csv"] = str(lat_path)

    manifest = {"schema": SCHEMA, "created": ts, "files": dict(files)}
    if cfg is not None:
        manifest["config"] = {k: (v.name if isinstance(v, Enum) else v) for k, v in asdict(cfg).items()}
    manifest_path = base / f"manifest_{ts}.json"
    manifest_path.write_text(json.dumps(manifest, indent=2, default=str), encoding="utf-8")
    files["manifest"] = str(manifest_path)
    return files
