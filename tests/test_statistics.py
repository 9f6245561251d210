"""Tests for per-group metric statistics.

Verifies that:
- Sample standard deviation (ddof=1), median and unscaled MAD are used
- Missing values (None / NaN / Inf) are excluded, never treated as zero
- Small or constant groups are flagged degenerate
- Quantile clipping records its bounds
- Benchmarks are kept out of the statistics population
"""

import math
import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from schemas import RunConfig
from score_engine import (
    compute_group_statistics,
    compute_metric_statistics,
    statistics_population,
)


class TestMetricStatistics:
    def test_basic_summary(self):
        s = compute_metric_statistics([1, 2, 3, 4, 5, 6], "G", "m")
        assert s.n == 6
        assert s.mean == pytest.approx(3.5)
        assert s.std_dev == pytest.approx(math.sqrt(3.5))
        assert s.median == pytest.approx(3.5)
        assert s.mad == pytest.approx(1.5)
        assert s.min == 1 and s.max == 6
        assert not s.is_degenerate

    def test_sample_not_population_std(self):
        vals = [2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0]
        s = compute_metric_statistics(vals, "G", "m")
        assert s.std_dev == pytest.approx(np.std(vals, ddof=1))
        assert s.std_dev != pytest.approx(np.std(vals, ddof=0))

    def test_missing_values_excluded(self):
        s = compute_metric_statistics([1.0, None, float("nan"), float("inf"), 3.0],
                                      "G", "m", min_group_size=2)
        assert s.n == 2
        assert s.mean == pytest.approx(2.0)

    def test_empty_is_degenerate(self):
        s = compute_metric_statistics([None, None], "G", "m")
        assert s.n == 0
        assert s.is_empty
        assert s.is_degenerate
        assert s.mean is None

    def test_single_value_zero_std(self):
        s = compute_metric_statistics([4.2], "G", "m")
        assert s.n == 1
        assert s.std_dev == 0.0
        assert s.is_degenerate

    def test_below_min_group_size_is_degenerate(self):
        s = compute_metric_statistics([1, 2, 3, 4, 5], "G", "m", min_group_size=6)
        assert s.is_degenerate
        s = compute_metric_statistics([1, 2, 3, 4, 5], "G", "m", min_group_size=5)
        assert not s.is_degenerate

    def test_constant_values_degenerate(self):
        s = compute_metric_statistics([5.0] * 10, "G", "m")
        assert s.std_dev == 0.0
        assert s.mad == 0.0
        assert s.is_degenerate

    def test_float_noise_still_degenerate(self):
        """Values equal up to rounding noise count as constant."""
        vals = [0.1 + 0.2] * 4 + [0.3] * 4
        s = compute_metric_statistics(vals, "G", "m")
        assert s.is_degenerate

    def test_quantile_clip_bounds_recorded(self):
        vals = list(range(1, 101))
        s = compute_metric_statistics(vals, "G", "m", clip_quantiles=(0.01, 0.99))
        assert s.clip_lo == pytest.approx(1.99)
        assert s.clip_hi == pytest.approx(99.01)
        assert s.max == pytest.approx(99.01)
        assert s.min == pytest.approx(1.99)

    def test_no_clip_by_default(self):
        s = compute_metric_statistics(list(range(10)), "G", "m")
        assert s.clip_lo is None and s.clip_hi is None


class TestGroupStatistics:
    def test_every_enabled_metric_present(self, small_universe, two_metric_catalog,
                                          scoring_cfg, as_of):
        lb = [o for o in small_universe if o.peer_group_id == "Large Blend"]
        stats = compute_group_statistics("Large Blend", lb, two_metric_catalog,
                                         scoring_cfg, as_of)
        assert set(stats) == {"one_year_return", "expense_ratio"}
        s = stats["one_year_return"]
        assert s.n == 5
        assert s.median == pytest.approx(11.0)
        assert s.mad == pytest.approx(1.0)
        assert s.is_degenerate  # 5 < min_group_size
        assert s.as_of_date == as_of

    def test_benchmarks_excluded_from_population(self, make_obs, two_metric_catalog,
                                                 scoring_cfg):
        funds = [make_obs(f"F{i}", "G", one_year_return=float(i), expense_ratio=0.5)
                 for i in range(8)]
        bench = make_obs("BM", "G", is_benchmark=True,
                         one_year_return=1000.0, expense_ratio=0.0)
        with_bench = compute_group_statistics("G", funds + [bench],
                                              two_metric_catalog, scoring_cfg)
        without = compute_group_statistics("G", funds, two_metric_catalog, scoring_cfg)
        assert with_bench == without

    def test_benchmarks_included_when_configured(self, make_obs, two_metric_catalog):
        cfg = RunConfig.ScoringConfig(exclude_benchmarks_from_statistics=False)
        obs = [make_obs("F1", "G", one_year_return=1.0),
               make_obs("BM", "G", is_benchmark=True, one_year_return=3.0)]
        assert len(statistics_population(obs, cfg.exclude_benchmarks_from_statistics)) == 2
        stats = compute_group_statistics("G", obs, two_metric_catalog, cfg)
        assert stats["one_year_return"].n == 2
        assert stats["one_year_return"].mean == pytest.approx(2.0)

    def test_metric_with_no_data(self, make_obs, two_metric_catalog, scoring_cfg):
        obs = [make_obs(f"F{i}", "G", one_year_return=float(i)) for i in range(6)]
        stats = compute_group_statistics("G", obs, two_metric_catalog, scoring_cfg)
        assert stats["expense_ratio"].n == 0
        assert stats["one_year_return"].n == 6

    def test_disabled_metric_ignored(self, make_obs, scoring_cfg):
        from metric_catalog import MetricCatalog
        from schemas import MetricDefinition
        catalog = MetricCatalog([
            MetricDefinition(id="a", weight=1.0),
            MetricDefinition(id="b", weight=1.0, enabled=False),
        ])
        obs = [make_obs("F1", "G", a=1.0, b=2.0)]
        assert set(compute_group_statistics("G", obs, catalog, scoring_cfg)) == {"a"}
