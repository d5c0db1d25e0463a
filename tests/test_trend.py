"""
Pytest tests for TrendAnalyzer: default below the trend threshold, slope
classification, volatility, projection, duration and timeframe analysis.
"""

from __future__ import annotations

import pytest

USER = "0x742d35cc6634c0532925a3b844bc454e4438f44e"
NOW = 1_700_000_000.0
DAY = 24 * 3600


def _history(scores, step=DAY, start=NOW):
    from backend_credit.analysis_engine.models import Dimension, ScoreHistory

    return [
        ScoreHistory(
            timestamp=start + i * step,
            dimension=Dimension.DEFI_RELIABILITY,
            score=s,
            confidence=60,
            trigger=f"0xtx{i}",
        )
        for i, s in enumerate(scores)
    ]


def test_below_min_points_is_stable_default():
    """Fewer than three entries: stable, zero strength, projection equals last score."""
    from backend_credit.analysis_engine.models import TrendDirection
    from backend_credit.analysis_engine.trend import TrendAnalyzer

    analysis = TrendAnalyzer().analyze_trend(_history([500, 700]))
    assert analysis.trend == TrendDirection.STABLE
    assert analysis.trend_strength == 0.0
    assert analysis.volatility == 0.0
    assert analysis.momentum == 0.0
    assert analysis.projected_score == 700
    assert analysis.data_points == 2


def test_empty_history_projects_neutral():
    from backend_credit.analysis_engine.trend import TrendAnalyzer

    analysis = TrendAnalyzer().analyze_trend([])
    assert analysis.projected_score == 500
    assert analysis.dimension is None


def test_improving_trend():
    """Steady +20/day: improving, strength 40, duration spans the whole run, projection clamped."""
    from backend_credit.analysis_engine.models import TrendDirection
    from backend_credit.analysis_engine.trend import TrendAnalyzer

    analysis = TrendAnalyzer().analyze_trend(_history([500, 520, 540, 560]))
    assert analysis.trend == TrendDirection.IMPROVING
    assert analysis.trend_strength == pytest.approx(40.0)
    assert analysis.trend_duration_sec == pytest.approx(3 * DAY)
    assert analysis.volatility > 0
    # 500 + 20 * (3 + 30) days exceeds the scale
    assert analysis.projected_score == 1000


def test_declining_trend_projection():
    from backend_credit.analysis_engine.models import TrendDirection
    from backend_credit.analysis_engine.trend import TrendAnalyzer

    analysis = TrendAnalyzer().analyze_trend(_history([600, 590, 580, 570]))
    assert analysis.trend == TrendDirection.DECLINING
    # 600 - 10 * 33
    assert analysis.projected_score == 270


def test_flat_history_is_stable():
    from backend_credit.analysis_engine.models import TrendDirection
    from backend_credit.analysis_engine.trend import TrendAnalyzer

    analysis = TrendAnalyzer().analyze_trend(_history([500, 501, 499, 500, 500]))
    assert analysis.trend == TrendDirection.STABLE
    assert analysis.volatility < 5


def test_history_order_does_not_matter():
    from backend_credit.analysis_engine.trend import TrendAnalyzer

    analyzer = TrendAnalyzer()
    entries = _history([500, 520, 540, 560])
    assert analyzer.analyze_trend(list(reversed(entries))) == analyzer.analyze_trend(entries)


def test_momentum_when_recent_turns_up():
    """A late upswing after a flat stretch gives positive momentum."""
    from backend_credit.analysis_engine.trend import TrendAnalyzer

    scores = [500] * 6 + [500, 540, 580, 620, 660]
    analysis = TrendAnalyzer().analyze_trend(_history(scores))
    assert analysis.momentum > 0


def test_record_and_history_limit():
    """Per-(user, dimension) history is bounded; oldest entries drop first."""
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.trend import TrendAnalyzer, TrendConfig

    analyzer = TrendAnalyzer(TrendConfig(history_limit=3))
    for i in range(5):
        analyzer.record(USER, Dimension.DEFI_RELIABILITY, 500 + i, 60, f"0xtx{i}", ts=NOW + i)
    hist = analyzer.history(USER, Dimension.DEFI_RELIABILITY)
    assert [h.score for h in hist] == [502, 503, 504]
    assert analyzer.history(USER, Dimension.STAKING_COMMITMENT) == []


def test_seed_only_for_unseen_user():
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.trend import TrendAnalyzer

    analyzer = TrendAnalyzer()
    analyzer.seed(USER, _history([500, 520]))
    analyzer.seed(USER, _history([900, 910, 920]))
    assert [h.score for h in analyzer.history(USER, Dimension.DEFI_RELIABILITY)] == [500, 520]
    assert analyzer.clear_user(USER) is True
    assert analyzer.history(USER, Dimension.DEFI_RELIABILITY) == []


def test_analyze_unknown_user_reports_dimension():
    from backend_credit.analysis_engine.models import Dimension, TrendDirection
    from backend_credit.analysis_engine.trend import TrendAnalyzer

    summary = TrendAnalyzer().trend_summary(USER)
    assert set(summary) == set(Dimension)
    for dim, analysis in summary.items():
        assert analysis.dimension == dim
        assert analysis.trend == TrendDirection.STABLE


def test_historical_analysis_timeframes():
    """Only timeframes that contain entries are reported."""
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.trend import TrendAnalyzer

    analyzer = TrendAnalyzer()
    # Entries at NOW-40d .. NOW-1d
    analyzer.seed(USER, _history([500, 530, 560, 600], step=13 * DAY, start=NOW - 40 * DAY))
    result = {h.timeframe: h for h in analyzer.historical_analysis(USER, Dimension.DEFI_RELIABILITY, now_ts=NOW)}
    assert set(result) == {"7d", "30d", "90d", "180d"}
    assert result["7d"].score_change == 0
    assert result["90d"].score_change == 100
    assert result["90d"].highest_score == 600
    assert result["90d"].lowest_score == 500
    assert result["90d"].percentage_change == pytest.approx(20.0)
    assert result["30d"].score_change == 70
