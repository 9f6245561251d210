#!/usr/bin/env python3
"""
Fund Scoring Engine — Command-Line Entry Point
===============================================
Single-command scoring of a snapshot CSV:
    python run_scoring.py --snapshot data/snapshot.csv
    python run_scoring.py --snapshot data/snapshot.csv --as-of 2024-06-30
    python run_scoring.py --snapshot data/snapshot.csv --groups "Large Blend,Small Value"
    python run_scoring.py --snapshot data/snapshot.csv --fund VFIAX
    python run_scoring.py --snapshot data/snapshot.csv --engine snapshot

Outputs (under output.dir from config.yaml): fund_scores_<as_of>.csv, the
Excel workbook and run_log.{csv,md}; run artifacts go to runs/<run_id>/.
With --engine snapshot the score files come from the vectorized scorer; the
console summary and review candidates are still built from the orchestrator run.
"""

import argparse
import sys
import time
from pathlib import Path

import pandas as pd
from pydantic import ValidationError

from instrumentation import EventLog, trace_event
from metric_catalog import CONFIG_PATH, CatalogError, build_catalog, load_config
from peer_groups import CsvSnapshotSource, SourceUnavailableError
from run_context import RunContext
from schemas import RunConfig
from score_orchestrator import ScoringOrchestrator, ScoringTimeoutError
from score_reports import (
    identify_review_candidates,
    results_to_frame,
    summarize_run,
    top_performers,
    write_excel,
)
from snapshot_scorer import score_snapshot_frame

ROOT = Path(__file__).resolve().parent


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Fund Scoring Engine")
    p.add_argument("--snapshot", required=True,
                   help="Snapshot CSV (fund_id, peer_group_id, as_of_date, metrics...)")
    p.add_argument("--as-of", type=str, default="",
                   help="As-of date (YYYY-MM-DD); default: latest date in the snapshot")
    p.add_argument("--groups", type=str, default="",
                   help="Comma-separated peer group ids to score")
    p.add_argument("--fund", type=str, default="",
                   help="Score a single fund (preview mode)")
    p.add_argument("--top", type=int, default=5,
                   help="Top performers to print per group")
    p.add_argument("--config", type=str, default=str(CONFIG_PATH),
                   help="Path to config.yaml")
    p.add_argument("--engine", choices=["orchestrator", "snapshot"],
                   default="orchestrator",
                   help="Engine for the score files: orchestrator (default) or the "
                        "vectorized snapshot scorer. The printed summary, review "
                        "candidates and skipped list always come from the orchestrator run")
    p.add_argument("--no-excel", action="store_true",
                   help="Skip the Excel workbook")
    p.add_argument("--verbose", action="store_true",
                   help="Debug-level console logging")
    return p.parse_args(argv)


# ---------------------------------------------------------------------------
# Config loader with error handling
# ---------------------------------------------------------------------------
def load_config_safe(path: str):
    """Load and validate config.yaml; exit with a clear message on failure."""
    config_path = Path(path)
    if not config_path.exists():
        print(f"\n  ERROR: config not found at {config_path}")
        sys.exit(1)
    try:
        cfg = load_config(config_path)
        rc = RunConfig(**cfg)
        build_catalog(rc)
    except (ValueError, ValidationError, CatalogError) as e:
        print(f"\n  ERROR: Invalid configuration {config_path}: {e}")
        sys.exit(1)
    return cfg, rc


def _latest_as_of(source: CsvSnapshotSource):
    df = source._load()
    if df.empty:
        return None
    return max(df["as_of_date"])


def print_summary(as_of, frame: pd.DataFrame, skipped_counts: dict,
                  summaries: dict, top: dict, n_review: int, elapsed: float,
                  engine: str = "orchestrator"):
    print()
    print("============================================")
    print(f"  FUND SCORING — RUN SUMMARY ({as_of})")
    print("============================================")
    print(f"Score files engine:       {engine}"
          + (" (summary from orchestrator)" if engine != "orchestrator" else ""))
    print(f"Funds scored:             {len(frame)}")
    print(f"Peer groups scored:       {frame['peer_group_id'].nunique() if len(frame) else 0}")
    print(f"Skipped:                  {sum(skipped_counts.values())} {skipped_counts or ''}")
    print(f"Review candidates:        {n_review}")
    print("--------------------------------------------")
    for gid, summary in summaries.items():
        print(f"{gid}: n={summary['fund_count']} avg={summary['average_score']} "
              f"median={summary['median_score']} bench={summary['benchmark_score']}")
        for i, r in enumerate(top.get(gid, []), 1):
            print(f"  {i:2d}. {r.fund_id:10s} {r.composite_score:6.1f}  pct={r.percentile:5.1f}  {r.band}")
    print("--------------------------------------------")
    print(f"Total runtime:            {elapsed:.1f}s")
    print("============================================")


def main(argv=None):
    t0 = time.time()
    args = parse_args(argv)
    cfg, rc = load_config_safe(args.config)

    with RunContext(verbose=args.verbose) as ctx:
        return score(args, cfg, rc, ctx, t0)


def score(args, cfg: dict, rc: RunConfig, ctx: RunContext, t0: float) -> int:
    ctx.save_config(cfg)
    event_log = EventLog()
    source = CsvSnapshotSource(args.snapshot)
    orch = ScoringOrchestrator.from_config(source, rc, event_log=event_log)
    out_dir = ROOT / rc.output.dir

    try:
        as_of = pd.Timestamp(args.as_of).date() if args.as_of else _latest_as_of(source)
    except SourceUnavailableError as e:
        print(f"\n  ERROR: {e}")
        return 2
    if as_of is None:
        print("\n  Snapshot is empty, nothing to score.")
        return 0
    groups = [g.strip() for g in args.groups.split(",") if g.strip()] or None
    ctx.log.info(f"Scoring as of {as_of}", extra={"as_of": str(as_of), "phase": "init"})

    # ---- Preview mode ----
    if args.fund:
        try:
            result = orch.score_single_fund(as_of, args.fund)
        except (SourceUnavailableError, ScoringTimeoutError) as e:
            print(f"\n  ERROR: {e}")
            return 2
        if result is None:
            print(f"\n  {args.fund}: not found or not scorable on {as_of}")
            return 1
        print(f"\n  {result.fund_id} [{result.group_id}] {result.composite_score:.1f} "
              f"({result.band}), percentile {result.percentile:.1f}")
        for b in result.breakdown:
            flags = "".join([" W" if b.winsorized else "", " R" if b.used_robust_fallback else ""])
            print(f"    {b.metric_id:24s} raw={b.raw_value:10.4f} z={b.z_score:+.3f} w={b.weight:.3f}{flags}")
        return 0

    # ---- Bulk mode ----
    try:
        run = orch.run(as_of, groups)
    except (SourceUnavailableError, ScoringTimeoutError) as e:
        print(f"\n  ERROR: {e}")
        ctx.save_metadata({"as_of": str(as_of), "error": str(e)})
        return 2

    if args.engine == "snapshot":
        with trace_event(event_log, "CALC", "Vectorized snapshot scoring"):
            df = source.frame(as_of)
            if groups:
                df = df[df["peer_group_id"].isin(groups)]
            frame = score_snapshot_frame(df, orch.catalog, rc.scoring, orch.resolver)
    else:
        frame = results_to_frame(run.results)

    out_dir.mkdir(parents=True, exist_ok=True)
    csv_path = out_dir / f"fund_scores_{as_of}.csv"
    with trace_event(event_log, "WRITE", "Write scores CSV", details=str(csv_path)):
        frame.to_csv(csv_path, index=False)
    if not args.no_excel and len(frame):
        with trace_event(event_log, "WRITE", "Write Excel workbook"):
            write_excel(frame, out_dir / rc.output.excel_file, rc.output.scores_sheet)
    if len(frame):
        ctx.save_artifact("scores", frame)
    ctx.save_skipped(run.skipped)
    event_log.flush_all(out_dir)

    summaries = summarize_run(run.results)
    top = {gid: top_performers(run.results, args.top, group_id=gid) for gid in summaries}
    review = identify_review_candidates(run.results, rc.review)
    elapsed = time.time() - t0
    print_summary(as_of, frame, run.skipped_counts(), summaries, top, len(review), elapsed,
                  engine=args.engine)

    ctx.save_metadata({
        "as_of": str(as_of),
        "engine": args.engine,
        "config_hash": ctx.config_hash(cfg),
        "groups": groups,
        "funds_scored": len(frame),
        "skipped": run.skipped_counts(),
        "state_history": [s.value for s in run.state_history],
        "review_candidates": len(review),
    })
    print(f"\n  Run artifacts saved to: runs/{ctx.run_id}/")
    return 0


if __name__ == "__main__":
    sys.exit(main())
