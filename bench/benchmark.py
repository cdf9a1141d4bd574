# bench/benchmark.py
from __future__ import annotations

import json
from pathlib import Path
import pandas as pd

from cdasim.sim import SimConfig, Simulator
from cdasim.metrics import summarize_latency_ns, summarize_periods
from cdasim.models import MarketMode
from cdasim.viz import plot_latency_hist


def main() -> None:
    out = {}
    for mode in (MarketMode.CDA, MarketMode.CALL):
        cfg = SimConfig(seed=123, mode=mode, n_periods=200, buyers={"zi": 250}, sellers={"zi": 250})
        art = Simulator(cfg).run()
        out[mode.name] = {"latency": summarize_latency_ns(art.latencies_ns), "periods": summarize_periods(art.periods)}
        if mode is MarketMode.CDA:
            Path("results").mkdir(parents=True, exist_ok=True)
            out["latency_hist"] = plot_latency_hist(art.latencies_ns, "results")

    pd.DataFrame([{"mode": m, **v["latency"]} for m, v in out.items() if m != "latency_hist"]).to_csv(
        "results/benchmark_summary.csv", index=False
    )
    print(json.dumps(out, indent=2))


if __name__ == "__main__":
    main()
