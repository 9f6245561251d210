#!/usr/bin/env python3
"""
Typed schemas for the Fund Scoring Engine.

Provides Pydantic models for data validation at engine boundaries.
These schemas are documentation-as-code: they define what the engine
consumes (metric definitions, fund observations, peer groups), what it
produces (statistics, breakdowns, score results), and the shape of
config.yaml.
"""

import math
from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =========================================================================
# Metric catalog entries
# =========================================================================

class Direction(str, Enum):
    HIGHER_IS_BETTER = "higher_is_better"
    LOWER_IS_BETTER = "lower_is_better"


class MetricDefinition(BaseModel):
    """One scorable metric: id, direction of goodness and weight.

    Weights across metrics need not sum to 1; the combiner normalizes by
    the weights a fund actually has data for.
    """
    id: str = Field(min_length=1)
    direction: Direction = Direction.HIGHER_IS_BETTER
    weight: float = 0.0
    label: Optional[str] = None
    description: str = ""
    category: str = "Other"
    enabled: bool = True

    model_config = ConfigDict(frozen=True)

    @field_validator("weight")
    @classmethod
    def weight_non_negative(cls, v: float) -> float:
        if not math.isfinite(v) or v < 0:
            raise ValueError(f"Weight must be >= 0, got {v}")
        return v

    @property
    def higher_is_better(self) -> bool:
        return self.direction == Direction.HIGHER_IS_BETTER

    @property
    def display_name(self) -> str:
        return self.label or self.id


class WeightOverride(BaseModel):
    """Scoped weight override (fund -> peer_group -> global precedence)."""
    scope: str
    scope_value: Optional[str] = None
    metric_id: str
    weight: float

    model_config = ConfigDict(frozen=True)

    @field_validator("scope")
    @classmethod
    def known_scope(cls, v: str) -> str:
        if v not in ("global", "peer_group", "fund"):
            raise ValueError(f"Unknown override scope '{v}'")
        return v

    @field_validator("weight")
    @classmethod
    def weight_non_negative(cls, v: float) -> float:
        if not math.isfinite(v) or v < 0:
            raise ValueError(f"Weight must be >= 0, got {v}")
        return v

    @model_validator(mode="after")
    def scoped_override_has_value(self) -> "WeightOverride":
        if self.scope != "global" and not (self.scope_value or "").strip():
            raise ValueError(f"Override scope '{self.scope}' requires scope_value")
        return self


# =========================================================================
# Inputs from collaborators
# =========================================================================

class FundObservation(BaseModel):
    """Metrics for one fund on one as-of date.

    None means "metric unavailable"; NaN and +/-Inf are coerced to None
    here so they can never propagate into a score.
    """
    fund_id: str = Field(min_length=1)
    peer_group_id: str
    as_of_date: date
    metrics: dict[str, Optional[float]] = {}
    is_benchmark: bool = False
    name: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("metrics", mode="before")
    @classmethod
    def missing_values_to_none(cls, v):
        if v is None:
            return {}
        cleaned = {}
        for key, val in dict(v).items():
            if val is None:
                cleaned[key] = None
                continue
            try:
                num = float(val)
            except (TypeError, ValueError):
                cleaned[key] = None
                continue
            cleaned[key] = num if math.isfinite(num) else None
        return cleaned

    def value(self, metric_id: str) -> Optional[float]:
        return self.metrics.get(metric_id)


class PeerGroup(BaseModel):
    group_id: str = Field(min_length=1)
    member_fund_ids: frozenset[str] = frozenset()

    model_config = ConfigDict(frozen=True)


# =========================================================================
# Engine outputs
# =========================================================================

class MetricStatistics(BaseModel):
    """Distribution summary of one metric inside one peer group."""
    group_id: str
    metric_id: str
    as_of_date: Optional[date] = None
    n: int = Field(0, ge=0)
    mean: Optional[float] = None
    std_dev: Optional[float] = None
    median: Optional[float] = None
    mad: Optional[float] = None
    q1: Optional[float] = None
    q3: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    clip_lo: Optional[float] = None   # quantile winsorization bounds, if enabled
    clip_hi: Optional[float] = None
    is_degenerate: bool = True

    model_config = ConfigDict(frozen=True)

    @property
    def is_empty(self) -> bool:
        return self.n == 0


class ScoreBreakdown(BaseModel):
    """Per (fund, metric) normalization audit record."""
    fund_id: str
    metric_id: str
    raw_value: float
    z_score: float
    winsorized: bool = False
    used_robust_fallback: bool = False
    weight: float = 0.0
    weighted_z: float = 0.0
    normal_percentile: float = Field(50.0, ge=0, le=100)

    model_config = ConfigDict(frozen=True)


class ScoreResult(BaseModel):
    """Final, immutable score record for one fund on one as-of date."""
    fund_id: str
    group_id: str
    as_of_date: date
    composite_score: float = Field(ge=0, le=100)
    percentile: float = Field(ge=0, le=100)
    breakdown: tuple[ScoreBreakdown, ...] = ()
    weighted_z: float = 0.0
    metrics_used: int = 0
    metrics_possible: int = 0
    is_benchmark: bool = False
    band: str = ""

    model_config = ConfigDict(frozen=True)

    def breakdown_for(self, metric_id: str) -> Optional[ScoreBreakdown]:
        for item in self.breakdown:
            if item.metric_id == metric_id:
                return item
        return None


class SkippedItem(BaseModel):
    """A fund or group dropped from a run, with the reason."""
    kind: str  # "fund" | "group"
    id: str
    group_id: Optional[str] = None
    reason: str

    model_config = ConfigDict(frozen=True)


# =========================================================================
# RunConfig: top-level config schema
# =========================================================================

class QuantileWinsorizationConfig(BaseModel):
    """Optional clipping of raw values to per-group quantiles."""
    enabled: bool = False
    q_lo: float = Field(0.01, ge=0, le=1)
    q_hi: float = Field(0.99, ge=0, le=1)

    @model_validator(mode="after")
    def ordered(self) -> "QuantileWinsorizationConfig":
        if self.q_lo >= self.q_hi:
            raise ValueError(
                f"q_lo must be < q_hi (got {self.q_lo}, {self.q_hi})")
        return self


class TinyGroupConfig(BaseModel):
    """Optional shrink of very small peer groups toward a neutral 50."""
    enabled: bool = False
    neutral_threshold: int = Field(2, ge=1)
    shrink: float = Field(0.25, ge=0, le=1)


class RunConfig(BaseModel):
    """Schema for validated config.yaml contents."""

    class ScoringConfig(BaseModel):
        min_group_size: int = Field(6, ge=2)
        clip_bound: float = Field(3.0, gt=0)
        score_scale: float = Field(15.0, gt=0)
        robust_z_constant: float = Field(0.6745, gt=0)
        degenerate_std_epsilon: float = Field(1e-12, ge=0)
        rank_precision: int = Field(9, ge=0, le=15)
        min_metric_coverage: float = Field(0.0, ge=0, le=1)
        exclude_benchmarks_from_statistics: bool = True
        quantile_winsorization: QuantileWinsorizationConfig = QuantileWinsorizationConfig()
        tiny_group: TinyGroupConfig = TinyGroupConfig()

    class ExecutionConfig(BaseModel):
        max_workers: int = Field(4, ge=1, le=64)
        timeout_seconds: Optional[float] = Field(300, gt=0)

    class ReviewConfig(BaseModel):
        min_score: float = 45
        min_percentile: float = 25
        sharpe_metric: str = "sharpe_ratio"
        min_sharpe_percentile: float = 30
        expense_metric: str = "expense_ratio"
        min_expense_percentile: float = 25
        down_capture_metric: str = "down_capture_ratio"
        max_down_capture: float = 110
        benchmark_gap: float = 5

    class OutputConfig(BaseModel):
        dir: str = "output"
        excel_file: str = "fund_scores.xlsx"
        scores_sheet: str = "FundScores"

    scoring: ScoringConfig = ScoringConfig()
    execution: ExecutionConfig = ExecutionConfig()
    metrics: list[MetricDefinition] = []
    weight_overrides: list[WeightOverride] = []
    review: ReviewConfig = ReviewConfig()
    output: OutputConfig = OutputConfig()

    @model_validator(mode="after")
    def metric_ids_unique(self) -> "RunConfig":
        seen = set()
        for m in self.metrics:
            if m.id in seen:
                raise ValueError(f"Duplicate metric id '{m.id}'")
            seen.add(m.id)
        return self
