#!/usr/bin/env python3
"""
Vectorized snapshot scorer
===========================
Scores a whole monthly snapshot held in a DataFrame with pandas groupby
operations. Used to (re)generate historical score tables, where the input
already lives in a frame and thousands of funds are scored at once.

It satisfies the same contract as ScoringOrchestrator (same statistics,
robust fallback, winsorization, direction fix, weighted combination and
fractional-ranking percentiles) and is held to it by
tests/test_equivalence.py: composite scores agree within 1e-6 and
percentiles agree exactly.

Input columns:  fund_id, peer_group_id, [is_benchmark], one column per metric
Output columns: fund_id, peer_group_id, is_benchmark, composite_score,
                percentile, weighted_z, metrics_used, band,
                <metric>_z, <metric>_winsorized, <metric>_robust
"""

import logging
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from metric_catalog import MetricCatalog, WeightResolver, score_band
from schemas import FundObservation, RunConfig

logger = logging.getLogger(__name__)

ScoringConfig = RunConfig.ScoringConfig


def frame_from_observations(observations: Iterable[FundObservation],
                            metric_ids: Optional[list[str]] = None) -> pd.DataFrame:
    """Flatten FundObservations into one row per fund."""
    rows = []
    for o in observations:
        rec = {"fund_id": o.fund_id, "peer_group_id": o.peer_group_id,
               "as_of_date": o.as_of_date, "is_benchmark": o.is_benchmark}
        rec.update(o.metrics)
        rows.append(rec)
    df = pd.DataFrame(rows)
    for m in metric_ids or []:
        if m not in df.columns:
            df[m] = np.nan
    return df


def _row_weights(df: pd.DataFrame, metric_id: str, default: float,
                 resolver: Optional[WeightResolver]) -> pd.Series:
    if resolver is None or not resolver.has_overrides:
        return pd.Series(default, index=df.index, dtype=float)
    return pd.Series(
        [resolver.weight_for(f, g, metric_id)
         for f, g in zip(df["fund_id"], df["peer_group_id"])],
        index=df.index, dtype=float)


def _near_zero(x: pd.Series, ref: pd.Series, eps: float) -> pd.Series:
    scale = np.maximum(1.0, ref.abs().fillna(0.0))
    return x.isna() | (x.abs() <= eps * scale)


def score_snapshot_frame(df: pd.DataFrame,
                         catalog: MetricCatalog,
                         cfg: Optional[ScoringConfig] = None,
                         resolver: Optional[WeightResolver] = None) -> pd.DataFrame:
    cfg = cfg or ScoringConfig()
    metrics = list(catalog.enabled)
    out_cols = ["fund_id", "peer_group_id", "is_benchmark", "composite_score",
                "percentile", "weighted_z", "metrics_used", "band"]
    if df.empty or not metrics:
        return pd.DataFrame(columns=out_cols)

    df = df.drop_duplicates("fund_id", keep="first").reset_index(drop=True)
    groups = df["peer_group_id"].astype(str)
    if "is_benchmark" in df.columns:
        is_bench = df["is_benchmark"].fillna(False).astype(bool)
    else:
        is_bench = pd.Series(False, index=df.index)
    in_stats = ~is_bench if cfg.exclude_benchmarks_from_statistics else pd.Series(True, index=df.index)

    values = pd.DataFrame(index=df.index)
    for d in metrics:
        col = df[d.id] if d.id in df.columns else pd.Series(np.nan, index=df.index)
        values[d.id] = pd.to_numeric(col, errors="coerce").replace([np.inf, -np.inf], np.nan)

    out = df[["fund_id", "peer_group_id"]].copy()
    out["is_benchmark"] = is_bench
    weighted_sum = pd.Series(0.0, index=df.index)
    weight_sum = pd.Series(0.0, index=df.index)
    used = pd.Series(0, index=df.index)
    qw = cfg.quantile_winsorization
    eps = cfg.degenerate_std_epsilon

    with np.errstate(divide="ignore", invalid="ignore"):
        for d in metrics:
            x = values[d.id]
            pop = x.where(in_stats)
            if qw.enabled:
                g = pop.groupby(groups)
                lo = groups.map(g.quantile(qw.q_lo))
                hi = groups.map(g.quantile(qw.q_hi))
                pop = pop.clip(lo, hi)
                x = x.where(lo.isna(), x.clip(lo, hi))
            g = pop.groupby(groups)
            n = groups.map(g.count()).fillna(0)
            mean = groups.map(g.mean())
            std = groups.map(g.std(ddof=1)).fillna(0.0)
            median = groups.map(g.median())
            mad = groups.map((pop - median).abs().groupby(groups).median())

            degenerate = (n < cfg.min_group_size) | _near_zero(std, mean, eps)
            mad_zero = _near_zero(mad, median, eps)
            z_std = (x - mean) / std
            z_rob = cfg.robust_z_constant * (x - median) / mad
            raw = np.where(degenerate, np.where(mad_zero, 0.0, z_rob), z_std)
            raw = pd.Series(raw, index=df.index)
            z = raw.clip(-cfg.clip_bound, cfg.clip_bound)
            winsorized = z != raw
            if not d.higher_is_better:
                z = -z
            valid = x.notna() & (n > 0)

            out[f"{d.id}_z"] = z.where(valid)
            out[f"{d.id}_winsorized"] = winsorized & valid
            out[f"{d.id}_robust"] = degenerate & valid

            w = _row_weights(df, d.id, d.weight, resolver)
            weighted_sum += (z * w).where(valid, 0.0)
            weight_sum += w.where(valid, 0.0)
            used += valid.astype(int)

    keep = used > 0
    if cfg.min_metric_coverage > 0:
        coverage = values.notna().sum(axis=1) / len(metrics)
        keep &= coverage >= cfg.min_metric_coverage
    keep &= weight_sum > 0

    weighted_z = weighted_sum / weight_sum.where(weight_sum > 0)
    tg = cfg.tiny_group
    if tg.enabled:
        peers = groups.map(in_stats.groupby(groups).sum())
        weighted_z = weighted_z.where(peers > tg.neutral_threshold, weighted_z * tg.shrink)

    out["weighted_z"] = weighted_z
    out["composite_score"] = (50.0 + weighted_z * cfg.score_scale).clip(0.0, 100.0)
    out["metrics_used"] = used
    dropped = int((~keep).sum())
    if dropped:
        logger.info("Snapshot scorer: %d funds without usable metrics dropped", dropped)
    out = out[keep].copy()

    key = out["composite_score"].map(lambda s: round(float(s), cfg.rank_precision))
    rank = key.groupby(out["peer_group_id"]).rank(method="average")
    size = out.groupby("peer_group_id")["fund_id"].transform("size")
    out["percentile"] = np.where(size > 1, 100.0 * (rank - 1) / (size - 1).clip(lower=1), 50.0)
    out["band"] = out["composite_score"].map(score_band)

    out = out.sort_values(["peer_group_id", "composite_score", "fund_id"],
                          ascending=[True, False, True]).reset_index(drop=True)
    metric_cols = [c for c in out.columns if c not in out_cols]
    return out[out_cols + metric_cols]
