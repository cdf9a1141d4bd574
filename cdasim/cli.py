# cdasim/cli.py
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

import pandas as pd

from .agents import ShadingStyle
from .clearer import ClearingPriceRule
from .errors import ConfigurationError
from .matcher import SelfTradePolicy
from .metrics import summarize_latency_ns, summarize_periods
from .models import MarketMode
from .sim import SimArtifacts, SimConfig, Simulator, save_artifacts
from .viz import plot_latency_hist, plot_period_metrics, plot_timeseries_metrics


def parse_mix(items: Optional[List[str]]) -> Dict[str, int]:
    """["0.2=5", "zi=3"] -> {"0.2": 5, "zi": 3}"""
    mix: Dict[str, int] = {}
    for item in items or []:
        strat, sep, count = item.rpartition("=")
        if not sep or not strat:
            raise ConfigurationError(f"expected STRATEGY=COUNT, got {item!r}")
        try:
            mix[strat] = mix.get(strat, 0) + int(count)
        except ValueError as e:
            raise ConfigurationError(f"count in {item!r} is not an integer") from e
    return mix


def run_sim(args: argparse.Namespace) -> None:
    cfg = SimConfig(
        seed=args.seed,
        mode=MarketMode[args.mode.upper()],
        n_periods=args.periods,
        buyers=parse_mix(args.buyers) or {"0.0": 10},
        sellers=parse_mix(args.sellers) or {"0.0": 10},
        style=ShadingStyle.parse(args.style),
        units=args.units,
        value_low=args.value_low,
        value_high=args.value_high,
        steps_per_period=args.steps_per_period,
        orders_per_step=args.orders_per_step,
        carry_over=args.carry_over,
        self_trade=SelfTradePolicy[args.self_trade.upper()],
        all_or_none=args.all_or_none,
        clearing_rule=ClearingPriceRule[args.clearing_rule.upper()],
        check_invariants=args.check_invariants,
    )
    sim = Simulator(cfg)
    art: SimArtifacts = sim.run()
    out_dir = args.report
    paths = save_artifacts(art, out_dir, cfg)
    fig_paths = plot_period_metrics(art.periods, out_dir)
    fig_paths.update(plot_timeseries_metrics(art.snapshots, out_dir))
    summary = summarize_periods(art.periods)
    print(json.dumps({"saved": {**paths, **fig_paths}, "summary": summary}, indent=2))


def run_bench(args: argparse.Namespace) -> None:
    cfg = SimConfig(seed=args.seed, n_periods=args.periods, buyers={"zi": args.agents}, sellers={"zi": args.agents}, carry_over=True)
    art = Simulator(cfg).run()
    out_dir = args.report
    Path(out_dir).mkdir(parents=True, exist_ok=True)
    lat_png = plot_latency_hist(art.latencies_ns, out_dir)
    summary = summarize_latency_ns(art.latencies_ns)
    df = pd.DataFrame([summary])
    csv = Path(out_dir) / "benchmark_summary.csv"
    df.to_csv(csv, index=False)
    print(json.dumps({"benchmark": summary, "latency_hist": lat_png, "csv": str(csv)}, indent=2))


def observations(spec: Dict[str, Any], num_obs: int, seed: Optional[int] = None) -> List[Dict[str, Any]]:
    """One egtaonline observation (player payoffs + features) per simulated period."""
    cfg = SimConfig.from_egta(spec, seed=seed, n_periods=num_obs)
    art = Simulator(cfg).run()
    feature_cols = ["surplus", "ce_surplus", "im_surplus", "em_surplus", "ce_price"]
    out = []
    for row in art.periods.to_dict("records"):
        players = art.payoffs[art.payoffs["period"] == row["period"]]
        features = {k: (None if pd.isna(row[k]) else float(row[k])) for k in feature_cols}
        out.append({
            "players": [
                {"role": p["role"], "strategy": p["strategy"], "payoff": float(p["payoff"])}
                for p in players.to_dict("records")
            ],
            "features": features,
        })
    return out


def run_egta(args: argparse.Namespace, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> None:
    stdin = sys.stdin if stdin is None else stdin
    stdout = sys.stdout if stdout is None else stdout
    seed = args.seed
    for n, line in enumerate(stdin):
        if not line.strip():
            continue
        try:
            spec = json.loads(line)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"line {n + 1}: malformed JSON: {e}") from e
        if not isinstance(spec, dict):
            raise ConfigurationError(f"line {n + 1}: expected a JSON object")
        for obs in observations(spec, args.obs, seed=None if seed is None else seed + n):
            stdout.write(json.dumps(obs))
            stdout.write("\n")
            if args.flush:
                stdout.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cdasim", description="CDA / call market simulator")
    parser.add_argument("--log-level", type=str, default="WARNING")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_sim = sub.add_parser("sim", help="Run simulation and save artifacts")
    p_sim.add_argument("--seed", type=int, default=30)
    p_sim.add_argument("--mode", choices=["cda", "call"], default="cda")
    p_sim.add_argument("--periods", type=int, default=100)
    p_sim.add_argument("--buyers", nargs="*", metavar="STRAT=N", help="e.g. 0.2=5 0.1_Shift=5 zi=3")
    p_sim.add_argument("--sellers", nargs="*", metavar="STRAT=N")
    p_sim.add_argument("--style", type=str, default="Standard")
    p_sim.add_argument("--units", type=int, default=1)
    p_sim.add_argument("--value-low", type=float, default=0.0)
    p_sim.add_argument("--value-high", type=float, default=1.0)
    p_sim.add_argument("--steps-per-period", type=int, default=None)
    p_sim.add_argument("--orders-per-step", type=int, default=1)
    p_sim.add_argument("--carry-over", action="store_true")
    p_sim.add_argument("--self-trade", choices=[p.name.lower() for p in SelfTradePolicy], default="allow")
    p_sim.add_argument("--all-or-none", action="store_true")
    p_sim.add_argument("--clearing-rule", choices=[r.name.lower() for r in ClearingPriceRule], default="midpoint")
    p_sim.add_argument("--check-invariants", action="store_true")
    p_sim.add_argument("--report", type=str, default="results")
    p_sim.set_defaults(func=run_sim)

    p_egta = sub.add_parser(
        "egta",
        help="Read JSON spec lines from stdin, write observations to stdout",
        description=(
            'Each input line: {"assignment": {"buyers": {STRAT: COUNT}, "sellers": {STRAT: COUNT}}, '
            '"configuration": {"cda": true, "style": "Standard"}}. STRAT is a shading in [0, 1] '
            "optionally suffixed with _Standard, _Exponential, _Shift or _Correct."
        ),
    )
    p_egta.add_argument("obs", type=int, nargs="?", default=1, help="Number of observations per spec line")
    p_egta.add_argument("--flush", action="store_true", help="Flush stdout after every observation")
    p_egta.add_argument("--seed", type=int, default=None)
    p_egta.set_defaults(func=run_egta)

    p_bench = sub.add_parser("bench", help="Run matching microbenchmark")
    p_bench.add_argument("--seed", type=int, default=30)
    p_bench.add_argument("--periods", type=int, default=200)
    p_bench.add_argument("--agents", type=int, default=500)
    p_bench.add_argument("--report", type=str, default="results")
    p_bench.set_defaults(func=run_bench)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        args.func(args)
    except ConfigurationError as e:
        parser.exit(2, f"cdasim: configuration error: {e}\n")


if __name__ == "__main__":
    main()
