#!/usr/bin/env python3
"""
Scoring Orchestrator - public entry point of the Fund Scoring Engine
=====================================================================
Runs peer-group resolution, statistics, normalization, combination and
ranking for a whole as-of date (bulk mode) or for the group of a single
fund (preview mode). Both modes go through the same code path: a single
fund is always scored by recomputing its full peer group.

State machine (recorded on every ScoringRun):

    IDLE -> RESOLVING_GROUPS -> COMPUTING_STATISTICS -> NORMALIZING
         -> COMBINING -> RANKING -> DONE          (FAILED from any step)

Peer groups are independent, so each stage fans out across groups on a
ThreadPoolExecutor. Results are assembled in group-id order, which makes
the output independent of worker completion order.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Callable, Iterable, Optional

import pandas as pd

from instrumentation import EventLog, trace_event
from metric_catalog import MetricCatalog, WeightResolver, build_catalog
from peer_groups import ObservationSource, SourceUnavailableError, assign_observations
from schemas import (
    FundObservation,
    MetricStatistics,
    PeerGroup,
    RunConfig,
    ScoreResult,
    SkippedItem,
)
from score_engine import (
    combine_group,
    compute_group_statistics,
    normalize_group,
    rank_group,
)

logger = logging.getLogger(__name__)


class ScoringTimeoutError(TimeoutError):
    """A scoring run exceeded execution.timeout_seconds; nothing is surfaced."""


class RunState(str, Enum):
    IDLE = "idle"
    RESOLVING_GROUPS = "resolving_groups"
    COMPUTING_STATISTICS = "computing_statistics"
    NORMALIZING = "normalizing"
    COMBINING = "combining"
    RANKING = "ranking"
    DONE = "done"
    FAILED = "failed"


# (as_of_date, group_id, metric_id) -> MetricStatistics
StatisticsCache = dict[tuple[date, str, str], MetricStatistics]


@dataclass
class ScoringRun:
    """Outcome of one scoring request: results, skips, statistics, states."""
    as_of_date: date
    group_filter: Optional[tuple[str, ...]] = None
    state: RunState = RunState.IDLE
    state_history: list[RunState] = field(default_factory=lambda: [RunState.IDLE])
    results: list[ScoreResult] = field(default_factory=list)
    skipped: list[SkippedItem] = field(default_factory=list)
    statistics: StatisticsCache = field(default_factory=dict)
    groups_scored: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def transition(self, state: RunState):
        logger.debug("Run %s: %s -> %s", self.as_of_date, self.state.value, state.value)
        self.state = state
        self.state_history.append(state)

    @property
    def ok(self) -> bool:
        return self.state == RunState.DONE

    def skipped_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for s in self.skipped:
            counts[s.reason] = counts.get(s.reason, 0) + 1
        return dict(sorted(counts.items()))

    def result_for(self, fund_id: str) -> Optional[ScoreResult]:
        for r in self.results:
            if r.fund_id == fund_id:
                return r
        return None

    def group_statistics(self, group_id: str) -> dict[str, MetricStatistics]:
        return {m: s for (_, g, m), s in self.statistics.items() if g == group_id}


class ScoringOrchestrator:
    """Bulk and single-fund scoring over an ObservationSource.

    Usage:
        orch = ScoringOrchestrator.from_config(source, run_config)
        results = orch.score_as_of(date(2024, 6, 30))
        one = orch.score_single_fund(date(2024, 6, 30), "VFIAX")
    """

    def __init__(self, source: ObservationSource,
                 catalog: MetricCatalog,
                 resolver: Optional[WeightResolver] = None,
                 config: Optional[RunConfig] = None,
                 event_log: Optional[EventLog] = None):
        self.source = source
        self.catalog = catalog
        self.resolver = resolver or WeightResolver(catalog)
        self.config = config or RunConfig()
        self.event_log = event_log
        self.last_run: Optional[ScoringRun] = None

    @classmethod
    def from_config(cls, source: ObservationSource, config: RunConfig,
                    event_log: Optional[EventLog] = None) -> "ScoringOrchestrator":
        catalog, resolver = build_catalog(config)
        return cls(source, catalog, resolver, config, event_log)

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------
    def score_as_of(self, as_of_date, group_filter: Optional[Iterable[str]] = None
                    ) -> list[ScoreResult]:
        """Bulk entry point: every scorable fund of the (filtered) universe."""
        return self.run(as_of_date, group_filter).results

    def score_single_fund(self, as_of_date, fund_id: str) -> Optional[ScoreResult]:
        """Preview entry point. Recomputes the fund's full peer group.

        Returns None when the fund or its group cannot be resolved, or the
        fund has no usable metric on that date.
        """
        as_of_date = pd.Timestamp(as_of_date).date()
        groups = self._read_source(lambda: self.source.get_peer_groups(as_of_date))
        owners = sorted(g.group_id for g in groups if fund_id in g.member_fund_ids)
        if not owners:
            logger.info("Fund %s not found in any peer group on %s", fund_id, as_of_date)
            return None
        run = self.run(as_of_date, group_filter=owners[:1], peer_groups=groups)
        result = run.result_for(fund_id)
        if result is None:
            reasons = [s.reason for s in run.skipped if s.id == fund_id]
            logger.info("Fund %s could not be scored on %s (%s)", fund_id,
                        as_of_date, ", ".join(reasons) or "unknown")
        return result

    def run(self, as_of_date, group_filter: Optional[Iterable[str]] = None,
            peer_groups: Optional[list[PeerGroup]] = None) -> ScoringRun:
        """Full state-machine run; returns results plus skipped items.

        ``peer_groups`` skips the source lookup when the caller has already
        resolved the as-of groups.
        """
        as_of_date = pd.Timestamp(as_of_date).date()
        wanted = tuple(sorted(set(group_filter))) if group_filter is not None else None
        run = ScoringRun(as_of_date=as_of_date, group_filter=wanted)
        self.last_run = run
        t0 = time.monotonic()
        try:
            buckets = self._resolve(run, peer_groups)
            self._score_groups(run, buckets, t0)
            run.transition(RunState.DONE)
        except Exception as e:
            run.error = f"{type(e).__name__}: {e}"
            run.transition(RunState.FAILED)
            logger.error("Scoring run %s failed in %s: %s", as_of_date,
                         run.state_history[-2].value, run.error)
            raise

        logger.info("Scoring %s complete: %d funds scored across %d groups, %d skipped %s",
                    as_of_date, len(run.results), len(run.groups_scored),
                    len(run.skipped), run.skipped_counts() or "")
        return run

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _read_source(self, call: Callable):
        try:
            return call()
        except SourceUnavailableError:
            raise
        except Exception as e:
            raise SourceUnavailableError(f"Observation source unreachable: {e}") from e

    def _resolve(self, run: ScoringRun,
                 peer_groups: Optional[list[PeerGroup]] = None
                 ) -> dict[str, list[FundObservation]]:
        run.transition(RunState.RESOLVING_GROUPS)
        as_of = run.as_of_date
        with trace_event(self.event_log, "RESOLVE", "Resolve peer groups",
                         details=f"as_of={as_of}"):
            groups = peer_groups
            if groups is None:
                groups = self._read_source(lambda: self.source.get_peer_groups(as_of))
            # Membership decides the bucket, so every observation is read
            # even when only some groups are scored.
            observations = self._read_source(lambda: self.source.get_observations(as_of))
            buckets, skipped = assign_observations(groups, observations, as_of)

            if run.group_filter is not None:
                for gid in run.group_filter:
                    if gid not in buckets:
                        logger.warning("Peer group %s not found on %s", gid, as_of)
                        run.skipped.append(SkippedItem(kind="group", id=gid,
                                                       reason="unknown_group"))
                buckets = {g: obs for g, obs in buckets.items() if g in run.group_filter}
                skipped = [s for s in skipped if s.group_id in run.group_filter]
            run.skipped.extend(skipped)

        for gid in [g for g, obs in buckets.items() if not obs]:
            logger.warning("Peer group %s has no observations on %s", gid, as_of)
            run.skipped.append(SkippedItem(kind="group", id=gid, reason="empty_group"))
            del buckets[gid]
        return buckets

    def _score_groups(self, run: ScoringRun,
                      buckets: dict[str, list[FundObservation]], t0: float):
        cfg = self.config.scoring
        as_of = run.as_of_date
        timeout = self.config.execution.timeout_seconds
        deadline = t0 + timeout if timeout else None
        n_possible = len(self.catalog.enabled)
        gids = sorted(buckets)

        pool = ThreadPoolExecutor(max_workers=self.config.execution.max_workers,
                                  thread_name_prefix="score")
        try:
            run.transition(RunState.COMPUTING_STATISTICS)
            with trace_event(self.event_log, "STATS", "Group statistics",
                             details=f"groups={len(gids)}"):
                stats = self._fan_out(pool, run, gids, deadline, lambda g: compute_group_statistics(
                    g, buckets[g], self.catalog, cfg, as_of))
            for gid, by_metric in stats.items():
                for mid, s in by_metric.items():
                    run.statistics[(as_of, gid, mid)] = s

            run.transition(RunState.NORMALIZING)
            with trace_event(self.event_log, "NORMALIZE", "Normalize metrics"):
                normalized = self._fan_out(pool, run, list(stats), deadline, lambda g: normalize_group(
                    g, buckets[g], stats[g], self.catalog, self.resolver, cfg))
            breakdowns = {}
            for gid, (bd, skipped) in normalized.items():
                breakdowns[gid] = bd
                run.skipped.extend(skipped)

            run.transition(RunState.COMBINING)
            with trace_event(self.event_log, "COMBINE", "Combine composite scores"):
                combined = self._fan_out(pool, run, list(breakdowns), deadline, lambda g: combine_group(
                    g, buckets[g], breakdowns[g], cfg))
            composites = {}
            for gid, (comp, skipped) in combined.items():
                composites[gid] = comp
                run.skipped.extend(skipped)

            run.transition(RunState.RANKING)
            with trace_event(self.event_log, "RANK", "Rank within peer groups"):
                ranked = self._fan_out(pool, run, list(composites), deadline, lambda g: rank_group(
                    g, as_of, buckets[g], breakdowns[g], composites[g], cfg, n_possible))
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        for gid in sorted(ranked):
            run.results.extend(ranked[gid])
            if ranked[gid]:
                run.groups_scored.append(gid)

    def _fan_out(self, pool: ThreadPoolExecutor, run: ScoringRun,
                 gids: list[str], deadline: Optional[float], fn: Callable) -> dict:
        """Run ``fn(group_id)`` for every group; collect results in gid order.

        A group that fails on its own data (ValueError / ArithmeticError) is
        dropped and reported; it never blocks the other groups.
        """
        futures = {gid: pool.submit(fn, gid) for gid in gids}
        out = {}
        for gid in gids:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                out[gid] = futures[gid].result(timeout=remaining)
            except FuturesTimeout as e:
                for f in futures.values():
                    f.cancel()
                raise ScoringTimeoutError(
                    f"Scoring {run.as_of_date} exceeded "
                    f"{self.config.execution.timeout_seconds}s") from e
            except (ValueError, ArithmeticError) as e:
                logger.exception("Peer group %s failed during %s", gid, run.state.value)
                run.skipped.append(SkippedItem(kind="group", id=gid,
                                               reason=f"group_failed: {e}"))
        return out
