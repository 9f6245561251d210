"""Shared fixtures for Fund Scoring Engine tests."""

import sys
from datetime import date
from pathlib import Path

import numpy as np
import pytest
import yaml

# Ensure project root is importable
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from metric_catalog import MetricCatalog, WeightResolver  # noqa: E402
from peer_groups import InMemoryObservationSource  # noqa: E402
from schemas import FundObservation, MetricDefinition, RunConfig  # noqa: E402

AS_OF = date(2024, 6, 30)


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def cfg():
    """Load the production config.yaml."""
    with open(ROOT / "config.yaml") as f:
        return yaml.safe_load(f)


@pytest.fixture
def run_config(cfg):
    return RunConfig(**cfg)


@pytest.fixture
def scoring_cfg():
    return RunConfig.ScoringConfig()


@pytest.fixture
def two_metric_catalog():
    """1-year return (higher better, 0.7) + expense ratio (lower better, 0.3)."""
    return MetricCatalog([
        MetricDefinition(id="one_year_return", direction="higher_is_better", weight=0.7),
        MetricDefinition(id="expense_ratio", direction="lower_is_better", weight=0.3),
    ])


@pytest.fixture
def two_metric_resolver(two_metric_catalog):
    return WeightResolver(two_metric_catalog)


@pytest.fixture
def make_obs():
    """Factory: make_obs("F1", "Large Blend", one_year_return=10.0, ...)."""
    def _make(fund_id, group, as_of_date=AS_OF, is_benchmark=False, **metrics):
        return FundObservation(fund_id=fund_id, peer_group_id=group,
                               as_of_date=as_of_date, is_benchmark=is_benchmark,
                               metrics=metrics)
    return _make


@pytest.fixture
def small_universe(make_obs):
    """8 funds: Large Blend (5) and Small Value (3). Both below min_group_size."""
    return [
        make_obs("F1", "Large Blend", one_year_return=10.0, expense_ratio=0.5),
        make_obs("F2", "Large Blend", one_year_return=12.0, expense_ratio=0.2),
        make_obs("F3", "Large Blend", one_year_return=8.0, expense_ratio=0.9),
        make_obs("F4", "Large Blend", one_year_return=15.0, expense_ratio=0.4),
        make_obs("F5", "Large Blend", one_year_return=11.0, expense_ratio=0.3),
        make_obs("S1", "Small Value", one_year_return=5.0, expense_ratio=1.0),
        make_obs("S2", "Small Value", one_year_return=7.0, expense_ratio=0.8),
        make_obs("S3", "Small Value", one_year_return=6.0, expense_ratio=1.2),
    ]


@pytest.fixture
def large_universe(make_obs):
    """3 peer groups x 12 funds with ~10% missing values and one benchmark per group."""
    rng = np.random.default_rng(42)
    obs = []
    for g, (mu_ret, mu_exp) in {"Large Blend": (12.0, 0.45),
                                "Mid Growth": (15.0, 0.80),
                                "Small Value": (9.0, 1.10)}.items():
        for i in range(12):
            metrics = {
                "one_year_return": float(rng.normal(mu_ret, 4.0)),
                "three_year_return": float(rng.normal(mu_ret * 0.8, 3.0)),
                "sharpe_ratio": float(rng.normal(0.8, 0.3)),
                "expense_ratio": float(abs(rng.normal(mu_exp, 0.25))),
                "beta": float(rng.normal(1.0, 0.15)),
            }
            for k in list(metrics):
                if rng.random() < 0.10:
                    metrics[k] = None
            fid = f"{g[:2].upper()}{i:02d}"
            obs.append(make_obs(fid, g, is_benchmark=(i == 0), **metrics))
    return obs


@pytest.fixture
def source_for():
    """Factory: InMemoryObservationSource over a list of observations."""
    def _make(observations, peer_groups=None):
        return InMemoryObservationSource(observations, peer_groups)
    return _make
