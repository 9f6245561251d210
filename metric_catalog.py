#!/usr/bin/env python3
"""
Metric Catalog for the Fund Scoring Engine
===========================================
Static description of the scorable fund metrics (id, direction of
"goodness", weight) plus the scoped weight resolver and score bands.

The catalog is built once at process start from config.yaml (or from
DEFAULT_FUND_METRICS) and never mutated afterwards. Validation failures
(duplicate ids, negative weights, overrides naming unknown metrics) raise
CatalogError, which is fatal at startup.
"""

from pathlib import Path
from typing import Iterable, Optional

import yaml
from pydantic import ValidationError

from schemas import Direction, MetricDefinition, RunConfig, WeightOverride

ROOT = Path(__file__).resolve().parent
CONFIG_PATH = ROOT / "config.yaml"


class CatalogError(ValueError):
    """Malformed metric catalog or weight overrides."""


# =========================================================================
# A. Default fund metrics (returns, risk, cost, management)
# =========================================================================
_HI = Direction.HIGHER_IS_BETTER
_LO = Direction.LOWER_IS_BETTER

DEFAULT_FUND_METRICS = [
    # (id, label, description, category, direction, weight)
    ("ytd_return", "YTD Return", "Year-to-date total return (%)", "Returns", _HI, 0.15),
    ("one_year_return", "1-Year Return", "Trailing 1-year total return (%)", "Returns", _HI, 0.25),
    ("three_year_return", "3-Year Return", "Trailing 3-year annualized return (%)", "Returns", _HI, 0.20),
    ("five_year_return", "5-Year Return", "Trailing 5-year annualized return (%)", "Returns", _HI, 0.00),
    ("ten_year_return", "10-Year Return", "Trailing 10-year annualized return (%)", "Returns", _HI, 0.00),
    ("sharpe_ratio", "Sharpe Ratio (3Y)", "Risk-adjusted return efficiency (3y)", "Risk", _HI, 0.15),
    ("standard_deviation_3y", "Std Deviation (3Y)", "Total volatility over 3 years", "Risk", _LO, 0.00),
    ("standard_deviation_5y", "Std Deviation (5Y)", "Total volatility over 5 years", "Risk", _LO, 0.00),
    ("up_capture_ratio", "Up Capture (3Y)", "Percent of market gains captured (3y)", "Risk", _HI, 0.00),
    ("down_capture_ratio", "Down Capture (3Y)", "Percent of market losses captured (3y)", "Risk", _LO, 0.00),
    ("alpha", "Alpha (5Y)", "Excess return vs benchmark (5y)", "Risk", _HI, 0.10),
    ("beta", "Beta", "Market sensitivity (1.0 = market)", "Risk", _LO, 0.05),
    ("expense_ratio", "Expense Ratio", "Annual fund expenses (% of assets)", "Cost", _LO, 0.10),
    ("manager_tenure", "Manager Tenure", "Longest manager tenure (years)", "Management", _HI, 0.00),
]


def default_metric_definitions() -> list[MetricDefinition]:
    return [
        MetricDefinition(id=mid, label=label, description=desc,
                         category=cat, direction=direction, weight=w)
        for mid, label, desc, cat, direction, w in DEFAULT_FUND_METRICS
    ]


# =========================================================================
# B. Catalog
# =========================================================================
class MetricCatalog:
    """Immutable, validated collection of MetricDefinitions."""

    def __init__(self, definitions: Iterable[MetricDefinition]):
        defs = []
        seen = set()
        for d in definitions:
            if not isinstance(d, MetricDefinition):
                try:
                    d = MetricDefinition(**d)
                except ValidationError as e:
                    raise CatalogError(f"Invalid metric definition: {e}") from e
            if d.id in seen:
                raise CatalogError(f"Duplicate metric id '{d.id}'")
            seen.add(d.id)
            defs.append(d)
        self._defs = tuple(defs)
        self._by_id = {d.id: d for d in defs}

    def __iter__(self):
        return iter(self._defs)

    def __len__(self) -> int:
        return len(self._defs)

    def __contains__(self, metric_id: str) -> bool:
        return metric_id in self._by_id

    def get(self, metric_id: str) -> Optional[MetricDefinition]:
        return self._by_id.get(metric_id)

    @property
    def enabled(self) -> tuple[MetricDefinition, ...]:
        """Enabled metrics, in catalog order."""
        return tuple(d for d in self._defs if d.enabled)

    @property
    def metric_ids(self) -> list[str]:
        return [d.id for d in self.enabled]

    def list_by_category(self) -> dict[str, list[MetricDefinition]]:
        groups: dict[str, list[MetricDefinition]] = {}
        for d in self._defs:
            groups.setdefault(d.category or "Other", []).append(d)
        return groups


def list_metrics_by_category(catalog: MetricCatalog) -> dict[str, list[str]]:
    """Metric ids grouped by category, for methodology panels."""
    return {cat: [d.id for d in defs]
            for cat, defs in catalog.list_by_category().items()}


# =========================================================================
# C. Scoped weight resolver
# =========================================================================
class WeightResolver:
    """Precedence-aware weight lookup: fund -> peer_group -> global -> catalog.

    Usage:
        resolver = WeightResolver(catalog, overrides)
        w = resolver.weight_for("VFIAX", "Large Blend", "sharpe_ratio")
    """

    def __init__(self, catalog: MetricCatalog,
                 overrides: Iterable[WeightOverride] = ()):
        self.catalog = catalog
        self._global: dict[str, float] = {}
        self._group: dict[tuple[str, str], float] = {}
        self._fund: dict[tuple[str, str], float] = {}
        for o in overrides:
            if not isinstance(o, WeightOverride):
                try:
                    o = WeightOverride(**o)
                except ValidationError as e:
                    raise CatalogError(f"Invalid weight override: {e}") from e
            if o.metric_id not in catalog:
                raise CatalogError(
                    f"Weight override references unknown metric '{o.metric_id}'")
            if o.scope == "global":
                self._global[o.metric_id] = o.weight
            elif o.scope == "peer_group":
                self._group[(o.scope_value.strip(), o.metric_id)] = o.weight
            else:
                self._fund[(o.scope_value.strip(), o.metric_id)] = o.weight

    @property
    def has_overrides(self) -> bool:
        return bool(self._global or self._group or self._fund)

    def weight_source(self, fund_id: str, group_id: str,
                      metric_id: str) -> tuple[str, float]:
        key = (fund_id, metric_id)
        if key in self._fund:
            return "fund", self._fund[key]
        key = (group_id, metric_id)
        if key in self._group:
            return "peer_group", self._group[key]
        if metric_id in self._global:
            return "global", self._global[metric_id]
        d = self.catalog.get(metric_id)
        return "default", (d.weight if d is not None else 0.0)

    def weight_for(self, fund_id: str, group_id: str, metric_id: str) -> float:
        return self.weight_source(fund_id, group_id, metric_id)[1]

    def debug_snapshot(self) -> dict:
        return {
            "metrics": len(self.catalog),
            "counts": {
                "global": len(self._global),
                "peer_group": len(self._group),
                "fund": len(self._fund),
            },
        }


# =========================================================================
# D. Score bands
# =========================================================================
SCORE_BANDS = [
    # (min score, label, color)
    (60, "Strong", "#16a34a"),
    (55, "Healthy", "#22c55e"),
    (45, "Neutral", "#6b7280"),
    (40, "Caution", "#eab308"),
    (0, "Weak", "#dc2626"),
]


def score_band(score: float) -> str:
    for lo, label, _ in SCORE_BANDS:
        if score >= lo:
            return label
    return ""


def score_color(score: float) -> str:
    for lo, _, color in SCORE_BANDS:
        if score >= lo:
            return color
    return "#000000"


# =========================================================================
# E. Config loading
# =========================================================================
def load_config(path: Path = CONFIG_PATH) -> dict:
    """Load YAML configuration file."""
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    if not isinstance(cfg, dict):
        raise ValueError(f"{path} is empty or malformed")
    return cfg


def load_run_config(path: Path = CONFIG_PATH) -> RunConfig:
    """Load and validate config.yaml; metric problems surface as CatalogError."""
    raw = load_config(path)
    try:
        return RunConfig(**raw)
    except ValidationError as e:
        raise CatalogError(f"Invalid configuration in {path}: {e}") from e


def build_catalog(rc: RunConfig) -> tuple[MetricCatalog, WeightResolver]:
    """Catalog + resolver from a validated RunConfig.

    An empty ``metrics`` section falls back to DEFAULT_FUND_METRICS.
    """
    defs = rc.metrics or default_metric_definitions()
    catalog = MetricCatalog(defs)
    return catalog, WeightResolver(catalog, rc.weight_overrides)
