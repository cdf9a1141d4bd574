# cdasim/metrics.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .agents import Agent


@dataclass(slots=True)
class SeriesMetrics:
    spread: pd.Series
    mid: pd.Series
    bid_depth: pd.Series
    ask_depth: pd.Series
    imbalance: pd.Series


def l1_metrics_from_snapshots(df: pd.DataFrame) -> SeriesMetrics:
    best_bid = df["best_bid"].astype(float)
    best_ask = df["best_ask"].astype(float)
    spread = (best_ask - best_bid).ffill()
    mid = ((best_ask + best_bid) / 2.0).ffill()
    bid_depth = df["bid_depth"].astype(float)
    ask_depth = df["ask_depth"].astype(float)
    imbalance = (bid_depth - ask_depth) / (bid_depth + ask_depth + 1e-9)
    return SeriesMetrics(spread=spread, mid=mid, bid_depth=bid_depth, ask_depth=ask_depth, imbalance=imbalance)


def period_features(agents: Sequence[Agent], ce_price: Optional[float]) -> Dict[str, Optional[float]]:
    """
    Welfare decomposition of one period against the competitive equilibrium.
    im_surplus: surplus intra-marginal traders lost by not trading
    em_surplus: surplus destroyed by extra-marginal traders who did trade
    so that ce_surplus == surplus + im_surplus + em_surplus.
    """
    surplus = float(sum(a.utility for a in agents))
    if ce_price is None:
        ce_surplus = 0.0
        im_surplus = 0.0
        em_surplus = ce_surplus - surplus
    else:
        ce_surplus = float(sum(a.sign * (a.value - ce_price) * a.ce_traded for a in agents))
        im_surplus = 0.0
        em_surplus = 0.0
        for a in agents:
            delta = a.traded - a.ce_traded
            if delta > 0:
                em_surplus += a.sign * (ce_price - a.value) * delta
            elif delta < 0:
                im_surplus += a.sign * (a.value - ce_price) * -delta
    return {
        "surplus": surplus,
        "ce_surplus": ce_surplus,
        "im_surplus": float(im_surplus),
        "em_surplus": float(em_surplus),
        "ce_price": ce_price,
        "efficiency": surplus / ce_surplus if ce_surplus > 0 else float("nan"),
    }


def summarize_periods(periods: pd.DataFrame) -> Dict[str, float]:
    if periods.empty:
        return {"periods": 0, "mean_efficiency": float("nan"), "mean_volume": 0.0, "price_rmse": float("nan")}
    dev = (periods["avg_price"] - periods["ce_price"]).dropna()
    return {
        "periods": int(len(periods)),
        "mean_efficiency": float(periods["efficiency"].mean()),
        "mean_volume": float(periods["volume"].mean()),
        "price_rmse": float(np.sqrt((dev ** 2).mean())) if len(dev) else float("nan"),
    }


def summarize_latency_ns(latencies: np.ndarray) -> Dict[str, float]:
    if latencies.size == 0:
        return {"p50_ns": 0.0, "p90_ns": 0.0, "p99_ns": 0.0, "ops_per_sec": 0.0}
    p50 = float(np.percentile(latencies, 50))
    p90 = float(np.percentile(latencies, 90))
    p99 = float(np.percentile(latencies, 99))
    mean_ns = float(latencies.mean())
    ops = 1e9 / mean_ns if mean_ns > 0 else 0.0
    return {"p50_ns": p50, "p90_ns": p90, "p99_ns": p99, "ops_per_sec": ops}
