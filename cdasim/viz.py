# cdasim/viz.py
from __future__ import annotations

from pathlib import Path
from typing import Dict

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .metrics import l1_metrics_from_snapshots


def _save(figdir: Path, name: str) -> str:
    p = figdir / name
    plt.tight_layout()
    plt.savefig(p)
    plt.close()
    return str(p)


def plot_period_metrics(periods: pd.DataFrame, out_dir: str) -> Dict[str, str]:
    paths: Dict[str, str] = {}
    if periods.empty:
        return paths
    figdir = Path(out_dir) / "figures"
    figdir.mkdir(parents=True, exist_ok=True)

    plt.figure()
    periods.set_index("period")["efficiency"].plot(title="Allocative efficiency")
    plt.xlabel("period")
    plt.ylabel("surplus / CE surplus")
    paths["efficiency_png"] = _save(figdir, "efficiency.png")

    plt.figure()
    idx = periods.set_index("period")
    idx["avg_price"].plot(label="avg trade price", marker=".", linestyle="none")
    idx["ce_price"].plot(label="CE price", alpha=0.6)
    plt.legend()
    plt.title("Transaction vs equilibrium price")
    plt.xlabel("period")
    plt.ylabel("price")
    paths["prices_png"] = _save(figdir, "prices.png")

    plt.figure()
    idx[["im_surplus", "em_surplus"]].plot(ax=plt.gca())
    plt.title("Surplus lost (intra- / extra-marginal)")
    plt.xlabel("period")
    plt.ylabel("surplus")
    paths["losses_png"] = _save(figdir, "losses.png")
    return paths


def plot_timeseries_metrics(snaps: pd.DataFrame, out_dir: str) -> Dict[str, str]:
    paths: Dict[str, str] = {}
    if snaps.empty:
        return paths
    metrics = l1_metrics_from_snapshots(snaps)

    figdir = Path(out_dir) / "figures"
    figdir.mkdir(parents=True, exist_ok=True)

    plt.figure()
    metrics.spread.plot(title="Spread (L1)")
    plt.xlabel("snapshot")
    plt.ylabel("price")
    paths["spread_png"] = _save(figdir, "spread.png")

    plt.figure()
    metrics.mid.plot(title="Mid price (L1)")
    plt.xlabel("snapshot")
    plt.ylabel("price")
    paths["mid_png"] = _save(figdir, "mid.png")

    plt.figure()
    metrics.bid_depth.plot(label="bid_depth")
    metrics.ask_depth.plot(label="ask_depth")
    plt.legend()
    plt.title("L1 Depths")
    plt.xlabel("snapshot")
    plt.ylabel("units")
    paths["depths_png"] = _save(figdir, "depths.png")

    plt.figure()
    metrics.imbalance.plot(title="L1 depth imbalance")
    plt.xlabel("snapshot")
    plt.ylabel("(bid - ask) / (bid + ask)")
    paths["imbalance_png"] = _save(figdir, "imbalance.png")
    return paths


def plot_latency_hist(latencies_ns: np.ndarray, out_dir: str) -> str:
    figdir = Path(out_dir) / "figures"
    figdir.mkdir(parents=True, exist_ok=True)
    plt.figure()
    us = latencies_ns / 1_000.0
    plt.hist(us, bins=50)
    plt.title("Matching Latency Histogram (μs)")
    plt.xlabel("latency (μs)")
    plt.ylabel("count")
    return _save(figdir, "latency_hist.png")
