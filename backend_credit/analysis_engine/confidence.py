"""
Confidence scoring for credit dimensions.

Confidence starts at a neutral baseline and moves by four additive factors:
data sufficiency, freshness, trend consistency and agreement with the
user's other dimensions. Deterministic for identical (profile, now_ts).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from backend_credit.analysis_engine.models import (
    CONFIDENCE_MAX,
    CONFIDENCE_MIN,
    SCORE_MAX,
    SCORE_MIN,
    CreditProfile,
    Dimension,
    TrendDirection,
    clamp,
)

DEFAULT_BASELINE = 50
DEFAULT_MIN_DATA_POINTS = 5
DEFAULT_MAX_DATA_POINTS = 100
DEFAULT_INTERVAL_FACTOR = 2.0
DEFAULT_CROSS_DIMENSION_MAX_BONUS = 15
DEFAULT_CROSS_DIMENSION_DEVIATION_SCALE = 200.0
DEFAULT_NO_CROSS_DIMENSION_PENALTY = -10

HOUR_SEC = 3600
DAY_SEC = 24 * HOUR_SEC
WEEK_SEC = 7 * DAY_SEC


class DataSufficiency(str, Enum):
    INSUFFICIENT = "insufficient"
    MINIMAL = "minimal"
    ADEQUATE = "adequate"
    EXCELLENT = "excellent"


class DataQuality(str, Enum):
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


@dataclass
class ConfidenceConfig:
    baseline: int = DEFAULT_BASELINE
    min_data_points: int = DEFAULT_MIN_DATA_POINTS
    max_data_points: int = DEFAULT_MAX_DATA_POINTS
    interval_factor: float = DEFAULT_INTERVAL_FACTOR
    sufficiency_deltas: dict[DataSufficiency, int] = field(
        default_factory=lambda: {
            DataSufficiency.INSUFFICIENT: -30,
            DataSufficiency.MINIMAL: -10,
            DataSufficiency.ADEQUATE: 10,
            DataSufficiency.EXCELLENT: 25,
        }
    )
    # (max age exclusive in seconds, delta); older than every band gets stale_delta
    freshness_bands: tuple[tuple[int, int], ...] = ((HOUR_SEC, 15), (DAY_SEC, 5), (WEEK_SEC, -5))
    stale_delta: int = -20
    trend_deltas: dict[TrendDirection, int] = field(
        default_factory=lambda: {
            TrendDirection.STABLE: 10,
            TrendDirection.IMPROVING: 5,
            TrendDirection.DECLINING: -5,
        }
    )
    cross_dimension_max_bonus: int = DEFAULT_CROSS_DIMENSION_MAX_BONUS
    cross_dimension_deviation_scale: float = DEFAULT_CROSS_DIMENSION_DEVIATION_SCALE
    no_cross_dimension_penalty: int = DEFAULT_NO_CROSS_DIMENSION_PENALTY


@dataclass(frozen=True)
class ConfidenceResult:
    """Confidence for one dimension plus the factor breakdown behind it."""

    dimension: Dimension
    confidence: int
    interval: tuple[int, int]
    sufficiency: DataSufficiency
    factors: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimension": self.dimension.value,
            "confidence": self.confidence,
            "interval": {"lower": self.interval[0], "upper": self.interval[1]},
            "sufficiency": self.sufficiency.value,
            "factors": dict(self.factors),
        }


@dataclass(frozen=True)
class ProfileConfidence:
    overall_confidence: int
    dimensions: dict[Dimension, ConfidenceResult]
    data_quality: DataQuality
    recommendations: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_confidence": self.overall_confidence,
            "dimensions": {d.value: r.to_dict() for d, r in self.dimensions.items()},
            "data_quality": self.data_quality.value,
            "recommendations": list(self.recommendations),
        }


class ConfidenceAnalyzer:
    """Stateless; safe to share across threads."""

    def __init__(self, config: ConfidenceConfig | None = None) -> None:
        self._config = config or ConfidenceConfig()

    @property
    def config(self) -> ConfidenceConfig:
        return self._config

    def classify_sufficiency(self, data_points: int) -> DataSufficiency:
        c = self._config
        if data_points < c.min_data_points:
            return DataSufficiency.INSUFFICIENT
        if data_points < c.min_data_points * 2:
            return DataSufficiency.MINIMAL
        if data_points < c.max_data_points * 0.5:
            return DataSufficiency.ADEQUATE
        return DataSufficiency.EXCELLENT

    def freshness_delta(self, age_sec: float) -> int:
        for max_age, delta in self._config.freshness_bands:
            if age_sec < max_age:
                return delta
        return self._config.stale_delta

    def cross_dimension_delta(self, dimension: Dimension, profile: CreditProfile) -> int:
        c = self._config
        others = [
            dim.score for d, dim in profile.dimensions.items() if d != dimension and dim.score > 0
        ]
        if not others:
            return c.no_cross_dimension_penalty
        mean = sum(others) / len(others)
        deviation = abs(profile.dimensions[dimension].score - mean)
        consistency = 1.0 - min(deviation / c.cross_dimension_deviation_scale, 1.0)
        return int(round(c.cross_dimension_max_bonus * consistency))

    def calculate_confidence(
        self,
        dimension: Dimension | str,
        profile: CreditProfile,
        now_ts: float | None = None,
    ) -> ConfidenceResult:
        """
        Confidence (0-100) and score interval for one dimension.

        Args:
            dimension: Dimension enum or key.
            profile: Profile to evaluate; not modified.
            now_ts: Reference time for freshness (defaults to time.time()).

        Returns:
            ConfidenceResult with the clamped confidence, the interval
            score +/- (100 - confidence) * interval_factor clamped to [0, 1000],
            the sufficiency class and per-factor deltas.
        """
        dimension = Dimension.parse(dimension)
        now_ts = now_ts if now_ts is not None else time.time()
        c = self._config
        dim = profile.dimensions[dimension]

        sufficiency = self.classify_sufficiency(dim.data_points)
        age = max(0.0, now_ts - dim.last_calculated)
        factors = {
            "data_sufficiency": c.sufficiency_deltas.get(sufficiency, 0),
            "freshness": self.freshness_delta(age),
            "trend_consistency": c.trend_deltas.get(dim.trend, 0),
            "cross_dimension": self.cross_dimension_delta(dimension, profile),
        }
        confidence = int(round(clamp(c.baseline + sum(factors.values()), CONFIDENCE_MIN, CONFIDENCE_MAX)))

        margin = (CONFIDENCE_MAX - confidence) * c.interval_factor
        lower = int(round(clamp(dim.score - margin, SCORE_MIN, SCORE_MAX)))
        upper = int(round(clamp(dim.score + margin, SCORE_MIN, SCORE_MAX)))
        return ConfidenceResult(
            dimension=dimension,
            confidence=confidence,
            interval=(lower, upper),
            sufficiency=sufficiency,
            factors=factors,
        )

    def overall_profile_confidence(self, profile: CreditProfile, now_ts: float | None = None) -> ProfileConfidence:
        """Aggregate confidence over the dimensions that have data, with data quality and recommendations."""
        now_ts = now_ts if now_ts is not None else time.time()
        results = {d: self.calculate_confidence(d, profile, now_ts) for d in Dimension}
        with_data = [d for d in Dimension if profile.dimensions[d].data_points > 0]
        if with_data:
            overall = int(round(sum(results[d].confidence for d in with_data) / len(with_data)))
        else:
            overall = 0
        total_points = sum(profile.dimensions[d].data_points for d in Dimension)
        quality = self._data_quality(total_points, len(with_data))
        return ProfileConfidence(
            overall_confidence=overall,
            dimensions=results,
            data_quality=quality,
            recommendations=self._recommendations(profile, results, now_ts),
        )

    def _data_quality(self, total_points: int, active_dimensions: int) -> DataQuality:
        c = self._config
        if total_points >= c.max_data_points and active_dimensions >= 4:
            return DataQuality.EXCELLENT
        if total_points >= c.max_data_points * 0.5 and active_dimensions >= 3:
            return DataQuality.GOOD
        if total_points >= c.min_data_points * 2 and active_dimensions >= 2:
            return DataQuality.FAIR
        return DataQuality.POOR

    def _recommendations(
        self,
        profile: CreditProfile,
        results: dict[Dimension, ConfidenceResult],
        now_ts: float,
    ) -> list[str]:
        recs: list[str] = []
        insufficient = [d.value for d, r in results.items() if r.sufficiency == DataSufficiency.INSUFFICIENT]
        if insufficient:
            recs.append(f"Increase activity in: {', '.join(insufficient)}")
        stale = [
            d.value
            for d in Dimension
            if profile.dimensions[d].data_points > 0
            and now_ts - profile.dimensions[d].last_calculated >= WEEK_SEC
        ]
        if stale:
            recs.append(f"Recent activity needed for: {', '.join(stale)}")
        declining = [d.value for d in Dimension if profile.dimensions[d].trend == TrendDirection.DECLINING]
        if declining:
            recs.append(f"Address declining trends in: {', '.join(declining)}")
        active = sum(1 for d in Dimension if profile.dimensions[d].data_points > 0)
        if active < 3:
            recs.append("Diversify on-chain activity across more credit dimensions")
        return recs
