"""
Pytest tests for ConfidenceAnalyzer: factor deltas, intervals and profile-level aggregation.
"""

from __future__ import annotations

USER = "0x742d35cc6634c0532925a3b844bc454e4438f44e"
NOW = 1_700_000_000.0
DAY = 24 * 3600


def _profile():
    from backend_credit.analysis_engine.models import CreditProfile

    return CreditProfile.new(USER, now_ts=NOW)


def test_new_user_confidence():
    """Fresh default profile: insufficient data, fresh, stable, consistent with other dimensions -> 60."""
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer, DataSufficiency
    from backend_credit.analysis_engine.models import Dimension

    result = ConfidenceAnalyzer().calculate_confidence(Dimension.DEFI_RELIABILITY, _profile(), NOW)
    assert result.confidence == 60
    assert result.sufficiency == DataSufficiency.INSUFFICIENT
    assert result.factors == {
        "data_sufficiency": -30,
        "freshness": 15,
        "trend_consistency": 10,
        "cross_dimension": 15,
    }
    # margin = (100 - 60) * 2
    assert result.interval == (420, 580)


def test_confidence_is_deterministic():
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer

    analyzer = ConfidenceAnalyzer()
    profile = _profile()
    a = analyzer.calculate_confidence("stakingCommitment", profile, NOW + 5 * DAY)
    b = analyzer.calculate_confidence("stakingCommitment", profile, NOW + 5 * DAY)
    assert a == b


def test_stale_data_lowers_confidence():
    """Older than a week: stale penalty replaces the freshness bonus."""
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer
    from backend_credit.analysis_engine.models import Dimension

    analyzer = ConfidenceAnalyzer()
    fresh = analyzer.calculate_confidence(Dimension.DEFI_RELIABILITY, _profile(), NOW + 60)
    stale = analyzer.calculate_confidence(Dimension.DEFI_RELIABILITY, _profile(), NOW + 8 * DAY)
    assert stale.factors["freshness"] == -20
    assert stale.confidence == 25
    assert fresh.confidence > stale.confidence


def test_freshness_bands():
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer

    analyzer = ConfidenceAnalyzer()
    assert analyzer.freshness_delta(10) == 15
    assert analyzer.freshness_delta(2 * 3600) == 5
    assert analyzer.freshness_delta(3 * DAY) == -5
    assert analyzer.freshness_delta(30 * DAY) == -20


def test_no_other_dimensions_penalty():
    """When every other dimension has score 0 the cross-dimension factor is a penalty."""
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer
    from backend_credit.analysis_engine.models import Dimension

    profile = _profile()
    for d in Dimension:
        if d != Dimension.DEFI_RELIABILITY:
            profile.dimensions[d].score = 0
    result = ConfidenceAnalyzer().calculate_confidence(Dimension.DEFI_RELIABILITY, profile, NOW)
    assert result.factors["cross_dimension"] == -10
    assert result.confidence == 35


def test_outlier_dimension_gets_no_consistency_bonus():
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer
    from backend_credit.analysis_engine.models import Dimension

    profile = _profile()
    profile.dimensions[Dimension.DEFI_RELIABILITY].score = 900
    result = ConfidenceAnalyzer().calculate_confidence(Dimension.DEFI_RELIABILITY, profile, NOW)
    assert result.factors["cross_dimension"] == 0


def test_confidence_clamped_and_interval_collapses():
    """Plenty of fresh, stable data clamps at 100; interval narrows to the score itself."""
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer, DataSufficiency
    from backend_credit.analysis_engine.models import Dimension

    profile = _profile()
    dim = profile.dimensions[Dimension.DEFI_RELIABILITY]
    dim.data_points = 60
    dim.score = 510
    result = ConfidenceAnalyzer().calculate_confidence(Dimension.DEFI_RELIABILITY, profile, NOW)
    assert result.sufficiency == DataSufficiency.EXCELLENT
    assert result.confidence == 100
    assert result.interval == (510, 510)


def test_interval_clamped_to_score_range():
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer
    from backend_credit.analysis_engine.models import Dimension

    profile = _profile()
    profile.dimensions[Dimension.LIQUIDITY_PROVIDER].score = 990
    lower, upper = ConfidenceAnalyzer().calculate_confidence(Dimension.LIQUIDITY_PROVIDER, profile, NOW).interval
    assert upper == 1000
    assert lower < 990


def test_sufficiency_classes():
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer, DataSufficiency

    analyzer = ConfidenceAnalyzer()
    assert analyzer.classify_sufficiency(0) == DataSufficiency.INSUFFICIENT
    assert analyzer.classify_sufficiency(5) == DataSufficiency.MINIMAL
    assert analyzer.classify_sufficiency(10) == DataSufficiency.ADEQUATE
    assert analyzer.classify_sufficiency(50) == DataSufficiency.EXCELLENT


def test_overall_profile_confidence_empty_profile():
    """No applied data anywhere: overall 0, poor quality, recommendations to diversify."""
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer, DataQuality

    result = ConfidenceAnalyzer().overall_profile_confidence(_profile(), NOW)
    assert result.overall_confidence == 0
    assert result.data_quality == DataQuality.POOR
    assert any("Diversify" in r for r in result.recommendations)
    assert len(result.dimensions) == 5
    assert result.to_dict()["data_quality"] == "poor"


def test_overall_profile_confidence_averages_active_dimensions():
    from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer
    from backend_credit.analysis_engine.models import Dimension

    analyzer = ConfidenceAnalyzer()
    profile = _profile()
    profile.dimensions[Dimension.DEFI_RELIABILITY].data_points = 12
    profile.dimensions[Dimension.STAKING_COMMITMENT].data_points = 12
    result = analyzer.overall_profile_confidence(profile, NOW)
    expected = round(
        (
            result.dimensions[Dimension.DEFI_RELIABILITY].confidence
            + result.dimensions[Dimension.STAKING_COMMITMENT].confidence
        )
        / 2
    )
    assert result.overall_confidence == expected
