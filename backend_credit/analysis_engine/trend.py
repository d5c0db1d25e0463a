"""
Score trend analysis per (user, dimension).

Keeps a bounded, append-only score history per user and dimension and
derives trend direction, strength, volatility, momentum, projected score
and trend duration from it. analyze_trend() is pure over a history
snapshot; the history store is guarded by a lock.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from typing import Any, Iterable, Sequence

import numpy as np

from backend_credit.analysis_engine.models import (
    NEUTRAL_SCORE,
    SCORE_MAX,
    SCORE_MIN,
    Dimension,
    ScoreHistory,
    TrendDirection,
    clamp,
)
from backend_credit.credit_logging import get_logger

logger = get_logger(__name__)

DEFAULT_MIN_DATA_POINTS_FOR_TREND = 3
DEFAULT_STABLE_TREND_THRESHOLD = 10.0
DEFAULT_VOLATILITY_WINDOW = 10
DEFAULT_MOMENTUM_WINDOW = 5
DEFAULT_PROJECTION_DAYS = 30
DEFAULT_HISTORY_LIMIT = 100
DEFAULT_MAX_SLOPE = 50.0
DEFAULT_TIMEFRAMES_DAYS: tuple[int, ...] = (7, 30, 90, 180)

DAY_SEC = 24 * 3600


@dataclass
class TrendConfig:
    min_data_points_for_trend: int = DEFAULT_MIN_DATA_POINTS_FOR_TREND
    stable_trend_threshold: float = DEFAULT_STABLE_TREND_THRESHOLD
    volatility_window: int = DEFAULT_VOLATILITY_WINDOW
    momentum_window: int = DEFAULT_MOMENTUM_WINDOW
    projection_days: int = DEFAULT_PROJECTION_DAYS
    history_limit: int = DEFAULT_HISTORY_LIMIT
    max_slope: float = DEFAULT_MAX_SLOPE


@dataclass(frozen=True)
class TrendAnalysis:
    dimension: Dimension | None
    trend: TrendDirection
    trend_strength: float
    """Normalized absolute slope, 0-100."""
    trend_duration_sec: float
    projected_score: int
    volatility: float
    momentum: float
    """-100..100; positive when the recent trend outpaces the overall one."""
    data_points: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimension": self.dimension.value if self.dimension else None,
            "trend": self.trend.value,
            "trend_strength": round(self.trend_strength, 2),
            "trend_duration_sec": self.trend_duration_sec,
            "projected_score": self.projected_score,
            "volatility": round(self.volatility, 2),
            "momentum": round(self.momentum, 2),
            "data_points": self.data_points,
        }


@dataclass(frozen=True)
class HistoricalAnalysis:
    timeframe: str
    score_change: int
    percentage_change: float
    average_score: float
    highest_score: int
    lowest_score: int
    trend: TrendDirection

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeframe": self.timeframe,
            "score_change": self.score_change,
            "percentage_change": round(self.percentage_change, 2),
            "average_score": round(self.average_score, 2),
            "highest_score": self.highest_score,
            "lowest_score": self.lowest_score,
            "trend": self.trend.value,
        }


def _slope(x: np.ndarray, y: np.ndarray) -> tuple[float, float] | None:
    """OLS (slope, intercept); None when x has no spread."""
    if len(x) < 2 or float(np.ptp(x)) == 0.0:
        return None
    x_mean = float(x.mean())
    y_mean = float(y.mean())
    dx = x - x_mean
    slope = float(np.dot(dx, y - y_mean) / np.dot(dx, dx))
    return slope, y_mean - slope * x_mean


class TrendAnalyzer:
    """Owns per-user score history; analysis methods read snapshots of it."""

    def __init__(self, config: TrendConfig | None = None) -> None:
        self._config = config or TrendConfig()
        self._lock = threading.Lock()
        self._history: dict[str, dict[Dimension, deque[ScoreHistory]]] = defaultdict(dict)

    @property
    def config(self) -> TrendConfig:
        return self._config

    # --- history store ---------------------------------------------------

    def record(
        self,
        user_address: str,
        dimension: Dimension,
        score: int,
        confidence: int,
        trigger: str,
        ts: float | None = None,
    ) -> ScoreHistory:
        entry = ScoreHistory(
            timestamp=ts if ts is not None else time.time(),
            dimension=dimension,
            score=score,
            confidence=confidence,
            trigger=trigger,
        )
        self.append(user_address, entry)
        return entry

    def append(self, user_address: str, entry: ScoreHistory) -> None:
        with self._lock:
            per_user = self._history[user_address]
            buf = per_user.get(entry.dimension)
            if buf is None:
                buf = deque(maxlen=self._config.history_limit)
                per_user[entry.dimension] = buf
            buf.append(entry)

    def seed(self, user_address: str, entries: Iterable[ScoreHistory]) -> None:
        """Load persisted history for a user not yet seen by this process."""
        with self._lock:
            if user_address in self._history and self._history[user_address]:
                return
            per_user = self._history[user_address]
            for entry in sorted(entries, key=lambda e: e.timestamp):
                buf = per_user.setdefault(entry.dimension, deque(maxlen=self._config.history_limit))
                buf.append(entry)

    def history(self, user_address: str, dimension: Dimension) -> list[ScoreHistory]:
        with self._lock:
            per_user = self._history.get(user_address)
            if not per_user:
                return []
            return list(per_user.get(dimension, ()))

    def clear_user(self, user_address: str) -> bool:
        with self._lock:
            return self._history.pop(user_address, None) is not None

    # --- analysis ----------------------------------------------------------

    def classify_slope(self, scores: Sequence[float]) -> tuple[TrendDirection, float]:
        """Trend label and strength from the OLS slope of score vs index."""
        n = len(scores)
        if n < 2:
            return TrendDirection.STABLE, 0.0
        fit = _slope(np.arange(n, dtype=float), np.asarray(scores, dtype=float))
        if fit is None:
            return TrendDirection.STABLE, 0.0
        slope = fit[0]
        band = self._config.stable_trend_threshold / n
        if slope > band:
            trend = TrendDirection.IMPROVING
        elif slope < -band:
            trend = TrendDirection.DECLINING
        else:
            trend = TrendDirection.STABLE
        strength = min(abs(slope) / self._config.max_slope * 100.0, 100.0)
        return trend, strength

    def _volatility(self, scores: Sequence[float]) -> float:
        if len(scores) < 2:
            return 0.0
        recent = np.asarray(scores[-self._config.volatility_window :], dtype=float)
        return float(min(np.std(recent), 100.0))

    def _momentum(self, scores: Sequence[float]) -> float:
        if len(scores) < 3:
            return 0.0
        recent_trend, recent_strength = self.classify_slope(scores[-self._config.momentum_window :])
        overall_trend, overall_strength = self.classify_slope(scores)
        momentum = 0.0
        if recent_trend == TrendDirection.IMPROVING and overall_trend == TrendDirection.IMPROVING:
            momentum = recent_strength - overall_strength
        elif recent_trend == TrendDirection.DECLINING and overall_trend == TrendDirection.DECLINING:
            momentum = -(recent_strength - overall_strength)
        elif recent_trend == TrendDirection.IMPROVING:
            momentum = recent_strength
        elif recent_trend == TrendDirection.DECLINING:
            momentum = -recent_strength
        return clamp(momentum, -100.0, 100.0)

    def _projection(self, scores: Sequence[float], timestamps: Sequence[float]) -> int:
        if len(scores) < 2:
            return int(scores[0]) if scores else NEUTRAL_SCORE
        t = np.asarray(timestamps, dtype=float)
        t = t - t[0]
        fit = _slope(t, np.asarray(scores, dtype=float))
        if fit is None:
            return int(scores[-1])
        slope, intercept = fit
        future = t[-1] + self._config.projection_days * DAY_SEC
        return int(clamp(round(slope * future + intercept), SCORE_MIN, SCORE_MAX))

    def _segment_trend(self, diff: float) -> TrendDirection:
        band = self._config.stable_trend_threshold
        if diff > band:
            return TrendDirection.IMPROVING
        if diff < -band:
            return TrendDirection.DECLINING
        return TrendDirection.STABLE

    def _duration(self, history: Sequence[ScoreHistory], current: TrendDirection) -> float:
        if len(history) < 2:
            return 0.0
        start = len(history) - 1
        for i in range(len(history) - 2, -1, -1):
            if self._segment_trend(history[i + 1].score - history[i].score) != current:
                break
            start = i
        return float(history[-1].timestamp - history[start].timestamp)

    def analyze_trend(self, history: Sequence[ScoreHistory]) -> TrendAnalysis:
        """
        Trend analysis of one (user, dimension) history.

        Below min_data_points_for_trend entries the neutral default is
        returned: stable, zero strength/volatility/momentum/duration and the
        last known score (or 500) as projection.
        """
        ordered = sorted(history, key=lambda h: h.timestamp)
        dimension = ordered[-1].dimension if ordered else None
        if len(ordered) < self._config.min_data_points_for_trend:
            return TrendAnalysis(
                dimension=dimension,
                trend=TrendDirection.STABLE,
                trend_strength=0.0,
                trend_duration_sec=0.0,
                projected_score=ordered[-1].score if ordered else NEUTRAL_SCORE,
                volatility=0.0,
                momentum=0.0,
                data_points=len(ordered),
            )

        scores = [h.score for h in ordered]
        timestamps = [h.timestamp for h in ordered]
        trend, strength = self.classify_slope(scores)
        return TrendAnalysis(
            dimension=dimension,
            trend=trend,
            trend_strength=strength,
            trend_duration_sec=self._duration(ordered, trend),
            projected_score=self._projection(scores, timestamps),
            volatility=self._volatility(scores),
            momentum=self._momentum(scores),
            data_points=len(ordered),
        )

    def analyze(self, user_address: str, dimension: Dimension) -> TrendAnalysis:
        analysis = self.analyze_trend(self.history(user_address, dimension))
        if analysis.dimension is None:
            analysis = replace(analysis, dimension=dimension)
        return analysis

    def trend_summary(self, user_address: str) -> dict[Dimension, TrendAnalysis]:
        return {d: self.analyze(user_address, d) for d in Dimension}

    def historical_analysis(
        self,
        user_address: str,
        dimension: Dimension,
        now_ts: float | None = None,
        timeframes_days: Sequence[int] = DEFAULT_TIMEFRAMES_DAYS,
    ) -> list[HistoricalAnalysis]:
        """Score change, average, high and low over each trailing timeframe that has entries."""
        now_ts = now_ts if now_ts is not None else time.time()
        entries = sorted(self.history(user_address, dimension), key=lambda h: h.timestamp)
        analyses: list[HistoricalAnalysis] = []
        for days in timeframes_days:
            cutoff = now_ts - days * DAY_SEC
            scores = [h.score for h in entries if h.timestamp >= cutoff]
            if not scores:
                continue
            first, last = scores[0], scores[-1]
            analyses.append(
                HistoricalAnalysis(
                    timeframe=f"{days}d",
                    score_change=last - first,
                    percentage_change=((last - first) / first * 100.0) if first > 0 else 0.0,
                    average_score=float(np.mean(scores)),
                    highest_score=max(scores),
                    lowest_score=min(scores),
                    trend=self.classify_slope(scores)[0],
                )
            )
        logger.debug(
            "trend_historical_analysis",
            user_address=user_address,
            dimension=dimension.value,
            timeframes=len(analyses),
        )
        return analyses
