#!/usr/bin/env python3
"""
Score reports: group summaries, review candidates, top/bottom performer
views and tabular/Excel export of ScoreResults.

Everything here is a read-only view over results produced by the
orchestrator; nothing feeds back into scoring.
"""

from collections import defaultdict
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd
from openpyxl import Workbook

from metric_catalog import SCORE_BANDS
from schemas import RunConfig, ScoreResult

ReviewConfig = RunConfig.ReviewConfig


def by_group(results: Iterable[ScoreResult]) -> dict[str, list[ScoreResult]]:
    groups: dict[str, list[ScoreResult]] = defaultdict(list)
    for r in results:
        groups[r.group_id].append(r)
    return dict(sorted(groups.items()))


# =========================================================================
# A. Top / bottom performers
# =========================================================================
def _ordered(results: Iterable[ScoreResult], include_benchmarks: bool):
    pool = [r for r in results if include_benchmarks or not r.is_benchmark]
    return sorted(pool, key=lambda r: (-r.composite_score, r.fund_id))


def top_performers(results: Iterable[ScoreResult], n: int = 10,
                   group_id: Optional[str] = None,
                   include_benchmarks: bool = False) -> list[ScoreResult]:
    """Best ``n`` funds, optionally within one peer group."""
    if group_id is not None:
        results = [r for r in results if r.group_id == group_id]
    return _ordered(results, include_benchmarks)[:n]


def bottom_performers(results: Iterable[ScoreResult], n: int = 10,
                      group_id: Optional[str] = None,
                      include_benchmarks: bool = False) -> list[ScoreResult]:
    """Worst ``n`` funds, worst first."""
    if group_id is not None:
        results = [r for r in results if r.group_id == group_id]
    ordered = _ordered(results, include_benchmarks)
    return list(reversed(ordered))[:n]


# =========================================================================
# B. Group summary
# =========================================================================
def summarize_group(results: list[ScoreResult]) -> dict:
    """Fund count, average/median score, extremes and band distribution."""
    funds = [r for r in results if not r.is_benchmark]
    bench = next((r for r in results if r.is_benchmark), None)
    scores = np.array([r.composite_score for r in funds], dtype=float)
    distribution = {label: 0 for _, label, _ in SCORE_BANDS}
    for r in funds:
        distribution[r.band] = distribution.get(r.band, 0) + 1
    ordered = _ordered(funds, include_benchmarks=False)
    return {
        "fund_count": len(funds),
        "average_score": round(float(scores.mean()), 2) if len(scores) else None,
        "median_score": round(float(np.median(scores)), 2) if len(scores) else None,
        "top_performer": ordered[0].fund_id if ordered else None,
        "bottom_performer": ordered[-1].fund_id if ordered else None,
        "benchmark_score": bench.composite_score if bench else None,
        "distribution": distribution,
    }


def summarize_run(results: Iterable[ScoreResult]) -> dict[str, dict]:
    return {gid: summarize_group(rs) for gid, rs in by_group(results).items()}


# =========================================================================
# C. Review candidates
# =========================================================================
def identify_review_candidates(results: Iterable[ScoreResult],
                               cfg: Optional[ReviewConfig] = None) -> list[dict]:
    """Funds flagged for analyst review, with the reasons.

    Benchmarks are never flagged; they provide the reference score for the
    "underperforming benchmark" rule within their own group.
    """
    cfg = cfg or ReviewConfig()
    out = []
    for gid, group in by_group(results).items():
        bench = next((r for r in group if r.is_benchmark), None)
        for r in sorted(group, key=lambda r: r.fund_id):
            if r.is_benchmark:
                continue
            reasons = []
            if r.composite_score < cfg.min_score:
                reasons.append(f"Below average score (<{cfg.min_score:g})")
            if r.percentile < cfg.min_percentile:
                reasons.append("Bottom quartile in peer group")
            sharpe = r.breakdown_for(cfg.sharpe_metric)
            if sharpe is not None and sharpe.normal_percentile < cfg.min_sharpe_percentile:
                reasons.append("Poor risk-adjusted returns")
            expense = r.breakdown_for(cfg.expense_metric)
            if expense is not None and expense.normal_percentile < cfg.min_expense_percentile:
                reasons.append("High expense ratio (bottom quartile)")
            down = r.breakdown_for(cfg.down_capture_metric)
            if down is not None and down.raw_value > cfg.max_down_capture:
                reasons.append(f"High downside capture (>{cfg.max_down_capture:g}%)")
            if bench is not None and r.composite_score < bench.composite_score - cfg.benchmark_gap:
                reasons.append(f"Underperforming benchmark by {cfg.benchmark_gap:g}+ points")
            if reasons:
                out.append({
                    "fund_id": r.fund_id,
                    "group_id": gid,
                    "composite_score": r.composite_score,
                    "percentile": r.percentile,
                    "reasons": reasons,
                })
    return out


# =========================================================================
# D. Tabular export
# =========================================================================
def results_to_frame(results: Iterable[ScoreResult],
                     include_breakdown: bool = True) -> pd.DataFrame:
    """One row per fund; optional <metric>_z columns from the breakdown."""
    rows = []
    for r in results:
        rec = {
            "fund_id": r.fund_id,
            "peer_group_id": r.group_id,
            "as_of_date": r.as_of_date,
            "is_benchmark": r.is_benchmark,
            "composite_score": r.composite_score,
            "percentile": r.percentile,
            "weighted_z": r.weighted_z,
            "metrics_used": r.metrics_used,
            "band": r.band,
        }
        if include_breakdown:
            for b in r.breakdown:
                rec[f"{b.metric_id}_z"] = b.z_score
                rec[f"{b.metric_id}_winsorized"] = b.winsorized
                rec[f"{b.metric_id}_robust"] = b.used_robust_fallback
        rows.append(rec)
    return pd.DataFrame(rows)


def write_excel(df: pd.DataFrame, path: str | Path, sheet: str = "FundScores") -> str:
    """Data-only workbook (openpyxl), scores rounded for display."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    wb = Workbook()
    ws = wb.active
    ws.title = sheet
    ws.append(list(df.columns))
    for row in df.itertuples(index=False):
        vals = []
        for col, v in zip(df.columns, row):
            if isinstance(v, float) and np.isnan(v):
                vals.append(None)
            elif col in ("composite_score", "percentile"):
                vals.append(round(float(v), 1))
            elif isinstance(v, (float, np.floating)):
                vals.append(round(float(v), 4))
            elif isinstance(v, np.bool_):
                vals.append(bool(v))
            elif isinstance(v, np.integer):
                vals.append(int(v))
            else:
                vals.append(v)
        ws.append(vals)
    wb.save(str(path))
    return str(path)
