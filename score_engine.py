#!/usr/bin/env python3
"""
Fund Scoring Engine - Core Statistics and Scoring Stages
=========================================================
Pure functions that turn one peer group's fund observations into score
results. Every stage takes explicit inputs and returns explicit outputs,
so the orchestrator can run groups in parallel and tests can exercise each
stage on its own.

Pipeline per peer group:
  A. Metric statistics (n, mean, sample std, median, MAD, quartiles)
  B. Outlier winsorizer (clip z-scores to +/- bound)
  C. Score normalizer with robust (median/MAD) fallback + direction fix
  D. Composite combiner (weighted mean of available z-scores -> 0..100)
  E. Percentile ranker (fractional ranking within the group)

Missing data rule: a None metric value is excluded from that metric's
statistics and from the fund's composite. It is never treated as zero.
"""

import logging
import math
from datetime import date
from typing import Iterable, Optional, Sequence

import numpy as np
from scipy.stats import median_abs_deviation, norm, rankdata

from metric_catalog import MetricCatalog, WeightResolver, score_band
from schemas import (
    FundObservation,
    MetricDefinition,
    MetricStatistics,
    RunConfig,
    ScoreBreakdown,
    ScoreResult,
    SkippedItem,
)

logger = logging.getLogger(__name__)

ScoringConfig = RunConfig.ScoringConfig


def _finite_array(values: Iterable[Optional[float]]) -> np.ndarray:
    """Drop None / NaN / Inf and return a float array."""
    out = [float(v) for v in values
           if v is not None and math.isfinite(float(v))]
    return np.asarray(out, dtype=float)


def _near_zero(x: Optional[float], scale: Optional[float], eps: float) -> bool:
    if x is None:
        return True
    ref = max(1.0, abs(scale)) if scale is not None else 1.0
    return abs(x) <= eps * ref


def statistics_population(observations: Sequence[FundObservation],
                          exclude_benchmarks: bool = True) -> list[FundObservation]:
    """Observations that feed group statistics (benchmarks are scored but excluded)."""
    if not exclude_benchmarks:
        return list(observations)
    return [o for o in observations if not o.is_benchmark]


# =========================================================================
# A. Metric statistics
# =========================================================================
def quantile_bounds(values: np.ndarray, q_lo: float, q_hi: float):
    """Linear-interpolated quantile clip bounds, or (None, None) when empty."""
    if values.size == 0:
        return None, None
    lo, hi = np.quantile(values, [q_lo, q_hi])
    return float(lo), float(hi)


def compute_metric_statistics(values: Iterable[Optional[float]],
                              group_id: str,
                              metric_id: str,
                              as_of_date: Optional[date] = None,
                              min_group_size: int = 6,
                              std_epsilon: float = 1e-12,
                              clip_quantiles: Optional[tuple[float, float]] = None,
                              ) -> MetricStatistics:
    """Distribution summary for one metric inside one peer group.

    Standard deviation is the sample estimate (ddof=1); n <= 1 yields 0.
    MAD is unscaled. n == 0 raises nothing: the result is degenerate and
    the metric is skipped for every fund of the group.

    With ``clip_quantiles`` the raw values are first clipped to the
    group's [q_lo, q_hi] quantiles and the bounds are recorded so the same
    clipping can be applied to each fund's own value.
    """
    arr = _finite_array(values)
    n = int(arr.size)
    if n == 0:
        return MetricStatistics(group_id=group_id, metric_id=metric_id,
                                as_of_date=as_of_date, n=0, is_degenerate=True)

    clip_lo = clip_hi = None
    if clip_quantiles is not None:
        clip_lo, clip_hi = quantile_bounds(arr, *clip_quantiles)
        arr = np.clip(arr, clip_lo, clip_hi)

    mean = float(np.mean(arr))
    std = float(np.std(arr, ddof=1)) if n > 1 else 0.0
    median = float(np.median(arr))
    mad = float(median_abs_deviation(arr, scale=1.0))
    q1, q3 = (float(q) for q in np.quantile(arr, [0.25, 0.75]))

    degenerate = n < min_group_size or _near_zero(std, mean, std_epsilon)
    return MetricStatistics(
        group_id=group_id, metric_id=metric_id, as_of_date=as_of_date,
        n=n, mean=mean, std_dev=std, median=median, mad=mad,
        q1=q1, q3=q3, min=float(arr.min()), max=float(arr.max()),
        clip_lo=clip_lo, clip_hi=clip_hi,
        is_degenerate=degenerate,
    )


def compute_group_statistics(group_id: str,
                             observations: Sequence[FundObservation],
                             catalog: MetricCatalog,
                             cfg: ScoringConfig,
                             as_of_date: Optional[date] = None,
                             ) -> dict[str, MetricStatistics]:
    """Statistics for every enabled metric of one peer group.

    Never raises on a degenerate or empty metric; it is marked and the
    normalizer takes the robust path (or skips the metric when n == 0).
    """
    population = statistics_population(
        observations, cfg.exclude_benchmarks_from_statistics)
    qw = cfg.quantile_winsorization
    clip = (qw.q_lo, qw.q_hi) if qw.enabled else None

    stats = {}
    for d in catalog.enabled:
        s = compute_metric_statistics(
            (o.value(d.id) for o in population),
            group_id, d.id, as_of_date=as_of_date,
            min_group_size=cfg.min_group_size,
            std_epsilon=cfg.degenerate_std_epsilon,
            clip_quantiles=clip,
        )
        if s.n == 0:
            logger.info("Group %s: no observations for %s, metric skipped",
                        group_id, d.id)
        elif s.is_degenerate:
            logger.info("Group %s: degenerate statistics for %s (n=%d, std=%.4g), "
                        "robust fallback", group_id, d.id, s.n, s.std_dev)
        stats[d.id] = s
    return stats


# =========================================================================
# B. Outlier winsorizer
# =========================================================================
def winsorize_z(z: float, bound: float = 3.0) -> tuple[float, bool]:
    """Clamp a z-score to [-bound, +bound]; flag when the value changed."""
    clipped = min(max(z, -bound), bound)
    return clipped, clipped != z


# =========================================================================
# C. Score normalizer / robust scaler
# =========================================================================
def robust_z(value: float, median: float, mad: float,
             constant: float = 0.6745) -> float:
    """Median/MAD z-score; 0.6745 rescales MAD to a normal-sigma equivalent."""
    return constant * (value - median) / mad


def normalize_value(value: float,
                    stats: MetricStatistics,
                    definition: MetricDefinition,
                    cfg: ScoringConfig) -> tuple[float, bool, bool]:
    """Winsorized, direction-corrected z-score for one fund/metric.

    Returns (z_score, winsorized, used_robust_fallback). Higher z is always
    better after the direction fix. Degenerate statistics take the robust
    path; when MAD is also ~0 the metric carries no signal and z is 0.
    """
    if stats.clip_lo is not None:
        value = min(max(value, stats.clip_lo), stats.clip_hi)

    used_robust = stats.is_degenerate
    if not used_robust:
        raw = (value - stats.mean) / stats.std_dev
    elif _near_zero(stats.mad, stats.median, cfg.degenerate_std_epsilon):
        raw = 0.0
    else:
        raw = robust_z(value, stats.median, stats.mad, cfg.robust_z_constant)

    z, winsorized = winsorize_z(raw, cfg.clip_bound)
    if not definition.higher_is_better:
        z = -z
    # normalise -0.0 so repeated runs serialize identically
    return z + 0.0, winsorized, used_robust


def normal_percentile(z: float) -> float:
    """Normal-approximation percentile of a (direction-corrected) z-score."""
    return float(min(100.0, max(0.0, norm.cdf(z) * 100.0)))


def metric_coverage(observation: FundObservation, catalog: MetricCatalog) -> float:
    enabled = catalog.enabled
    if not enabled:
        return 0.0
    present = sum(1 for d in enabled if observation.value(d.id) is not None)
    return present / len(enabled)


def normalize_group(group_id: str,
                    observations: Sequence[FundObservation],
                    statistics: dict[str, MetricStatistics],
                    catalog: MetricCatalog,
                    resolver: WeightResolver,
                    cfg: ScoringConfig,
                    ) -> tuple[dict[str, tuple[ScoreBreakdown, ...]], list[SkippedItem]]:
    """Per-metric breakdown entries for every fund of the group."""
    breakdowns: dict[str, tuple[ScoreBreakdown, ...]] = {}
    skipped: list[SkippedItem] = []

    for obs in observations:
        if cfg.min_metric_coverage > 0:
            cov = metric_coverage(obs, catalog)
            if cov < cfg.min_metric_coverage:
                logger.warning("Fund %s (%s): coverage %.0f%% below threshold, skipped",
                               obs.fund_id, group_id, cov * 100)
                skipped.append(SkippedItem(kind="fund", id=obs.fund_id,
                                           group_id=group_id,
                                           reason="insufficient_coverage"))
                continue

        entries = []
        for d in catalog.enabled:
            value = obs.value(d.id)
            stats = statistics.get(d.id)
            if value is None or stats is None or stats.n == 0:
                continue
            z, winsorized, used_robust = normalize_value(value, stats, d, cfg)
            weight = resolver.weight_for(obs.fund_id, group_id, d.id)
            entries.append(ScoreBreakdown(
                fund_id=obs.fund_id, metric_id=d.id, raw_value=value,
                z_score=z, winsorized=winsorized,
                used_robust_fallback=used_robust,
                weight=weight, weighted_z=z * weight,
                normal_percentile=normal_percentile(z),
            ))
        breakdowns[obs.fund_id] = tuple(entries)
    return breakdowns, skipped


# =========================================================================
# D. Composite score combiner
# =========================================================================
def scale_score(weighted_z: float, scale: float = 15.0) -> float:
    """Map a weighted z onto 0..100 (50 = peer average), saturating at the ends."""
    return min(100.0, max(0.0, 50.0 + weighted_z * scale))


def combine_scores(entries: Sequence[ScoreBreakdown],
                   scale: float = 15.0,
                   shrink: float = 1.0) -> Optional[tuple[float, float]]:
    """Weighted mean of the available z-scores -> (composite, weighted_z).

    Missing metrics are absent from ``entries`` and therefore excluded from
    both numerator and denominator. Returns None when nothing carries
    weight (no usable metric).
    """
    total_w = math.fsum(e.weight for e in entries)
    if not entries or total_w <= 0:
        return None
    weighted_z = math.fsum(e.weight * e.z_score for e in entries) / total_w
    weighted_z *= shrink
    return scale_score(weighted_z, scale), weighted_z + 0.0


def group_shrink(observations: Sequence[FundObservation], cfg: ScoringConfig) -> float:
    """Tiny-group pull toward neutral (1.0 when disabled or not tiny)."""
    tg = cfg.tiny_group
    if not tg.enabled:
        return 1.0
    peers = len(statistics_population(observations, cfg.exclude_benchmarks_from_statistics))
    return tg.shrink if peers <= tg.neutral_threshold else 1.0


def combine_group(group_id: str,
                  observations: Sequence[FundObservation],
                  breakdowns: dict[str, tuple[ScoreBreakdown, ...]],
                  cfg: ScoringConfig,
                  ) -> tuple[dict[str, tuple[float, float]], list[SkippedItem]]:
    composites: dict[str, tuple[float, float]] = {}
    skipped: list[SkippedItem] = []
    shrink = group_shrink(observations, cfg)
    for obs in observations:
        if obs.fund_id not in breakdowns:
            continue
        combined = combine_scores(breakdowns[obs.fund_id], cfg.score_scale, shrink)
        if combined is None:
            logger.warning("Fund %s (%s): no usable metrics, excluded from results",
                           obs.fund_id, group_id)
            skipped.append(SkippedItem(kind="fund", id=obs.fund_id,
                                       group_id=group_id,
                                       reason="no_usable_metrics"))
            continue
        composites[obs.fund_id] = combined
    return composites, skipped


# =========================================================================
# E. Percentile ranker
# =========================================================================
def rank_percentiles(scores: Sequence[float], precision: int = 9) -> list[float]:
    """Within-group percentiles, 0..100, higher = better.

    Position i (0-indexed, ascending) of n gets 100 * i / (n - 1); a single
    fund gets 50. Tied scores share the mean percentile of the positions
    their block spans (fractional ranking). Scores are compared after
    rounding to ``precision`` decimals.
    """
    n = len(scores)
    if n == 0:
        return []
    if n == 1:
        return [50.0]
    keys = [round(float(s), precision) for s in scores]
    ranks = rankdata(keys, method="average")
    return [float(100.0 * (r - 1) / (n - 1)) for r in ranks]


def rank_group(group_id: str,
               as_of_date: date,
               observations: Sequence[FundObservation],
               breakdowns: dict[str, tuple[ScoreBreakdown, ...]],
               composites: dict[str, tuple[float, float]],
               cfg: ScoringConfig,
               metrics_possible: int,
               ) -> list[ScoreResult]:
    """Assemble immutable ScoreResults, ordered best first then by fund id."""
    scored = [o for o in observations if o.fund_id in composites]
    pct = rank_percentiles([composites[o.fund_id][0] for o in scored],
                           cfg.rank_precision)
    results = []
    for obs, p in zip(scored, pct):
        composite, weighted_z = composites[obs.fund_id]
        entries = breakdowns[obs.fund_id]
        results.append(ScoreResult(
            fund_id=obs.fund_id, group_id=group_id, as_of_date=as_of_date,
            composite_score=composite, percentile=p, breakdown=entries,
            weighted_z=weighted_z, metrics_used=len(entries),
            metrics_possible=metrics_possible,
            is_benchmark=obs.is_benchmark, band=score_band(composite),
        ))
    results.sort(key=lambda r: (-r.composite_score, r.fund_id))
    return results


# =========================================================================
# F. One peer group end-to-end
# =========================================================================
def score_peer_group(group_id: str,
                     as_of_date: date,
                     observations: Sequence[FundObservation],
                     catalog: MetricCatalog,
                     resolver: WeightResolver,
                     cfg: ScoringConfig,
                     ) -> tuple[list[ScoreResult], dict[str, MetricStatistics], list[SkippedItem]]:
    """Statistics -> normalize -> combine -> rank for a single group."""
    observations = sorted(observations, key=lambda o: o.fund_id)
    stats = compute_group_statistics(group_id, observations, catalog, cfg, as_of_date)
    breakdowns, skipped = normalize_group(group_id, observations, stats,
                                          catalog, resolver, cfg)
    composites, skipped_c = combine_group(group_id, observations, breakdowns, cfg)
    results = rank_group(group_id, as_of_date, observations, breakdowns,
                         composites, cfg, len(catalog.enabled))
    return results, stats, skipped + skipped_c
