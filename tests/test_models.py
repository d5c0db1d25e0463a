"""
Pytest tests for credit data models: dimension keys, event validation, profile shape.
"""

from __future__ import annotations

import pytest

USER = "0x742d35cc6634c0532925a3b844bc454e4438f44e"


def test_dimension_parse_accepts_value_and_name():
    """camelCase values and snake_case names resolve to the same dimension; unknown keys raise."""
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.core.exceptions import EventValidationError

    assert Dimension.parse("defiReliability") is Dimension.DEFI_RELIABILITY
    assert Dimension.parse("liquidity_provider") is Dimension.LIQUIDITY_PROVIDER
    assert Dimension.parse("GOVERNANCE_PARTICIPATION") is Dimension.GOVERNANCE_PARTICIPATION
    assert Dimension.parse(Dimension.STAKING_COMMITMENT) is Dimension.STAKING_COMMITMENT
    with pytest.raises(EventValidationError):
        Dimension.parse("creditCardDebt")


def test_new_profile_is_neutral():
    """Default profile: five dimensions at 500, zero confidence, zero data points."""
    from backend_credit.analysis_engine.models import CreditProfile, Dimension, TrendDirection

    profile = CreditProfile.new(USER, now_ts=1000.0)
    assert set(profile.dimensions) == set(Dimension)
    for dim in profile.dimensions.values():
        assert dim.score == 500
        assert dim.confidence == 0
        assert dim.data_points == 0
        assert dim.trend == TrendDirection.STABLE
    assert profile.last_updated == 1000.0


def test_profile_requires_all_dimensions():
    from backend_credit.analysis_engine.models import CreditProfile, Dimension, ScoreDimension

    with pytest.raises(ValueError):
        CreditProfile(user_address=USER, dimensions={Dimension.DEFI_RELIABILITY: ScoreDimension()})


def test_profile_snapshot_is_independent():
    """Mutating a snapshot never touches the original."""
    from backend_credit.analysis_engine.models import CreditProfile, Dimension

    profile = CreditProfile.new(USER, now_ts=1000.0)
    copy = profile.snapshot()
    copy.dimensions[Dimension.DEFI_RELIABILITY].score = 900
    assert profile.dimensions[Dimension.DEFI_RELIABILITY].score == 500


def test_profile_dict_round_trip():
    from backend_credit.analysis_engine.models import CreditProfile, Dimension, TrendDirection

    profile = CreditProfile.new(USER, now_ts=1000.0)
    profile.dimensions[Dimension.STAKING_COMMITMENT].score = 640
    profile.dimensions[Dimension.STAKING_COMMITMENT].trend = TrendDirection.IMPROVING
    restored = CreditProfile.from_dict(profile.to_dict())
    assert restored.dimensions[Dimension.STAKING_COMMITMENT].score == 640
    assert restored.dimensions[Dimension.STAKING_COMMITMENT].trend == TrendDirection.IMPROVING
    assert restored.user_address == USER


@pytest.mark.parametrize(
    "overrides",
    [
        {"impacts": {"unknownDimension": 0.5}},
        {"impacts": {"defiReliability": 1.2}},
        {"impacts": {"defiReliability": -0.1}},
        {"risk_score": 1.5},
        {"risk_score": float("nan")},
        {"data_weight": -1.0},
        {"value_eth": -0.5},
        {"data_weight": float("inf")},
        {"value_eth": float("inf")},
        {"timestamp": float("inf")},
        {"impacts": {"defiReliability": float("inf")}},
        {"tx_hash": ""},
        {"user_address": "  "},
    ],
)
def test_event_validation_rejects_malformed(overrides):
    """Out-of-range weights, unknown dimension keys and empty identifiers are rejected at construction."""
    from backend_credit.analysis_engine.models import CategorizedEvent
    from backend_credit.core.exceptions import EventValidationError

    fields = {
        "tx_hash": "0xabc",
        "user_address": USER,
        "impacts": {"defiReliability": 0.5},
        "risk_score": 0.2,
    }
    fields.update(overrides)
    with pytest.raises(EventValidationError):
        CategorizedEvent(**fields)


def test_event_from_dict_camel_case():
    """Loose dicts with camelCase keys normalize to dimension enums."""
    from backend_credit.analysis_engine.models import CategorizedEvent, Dimension

    event = CategorizedEvent.from_dict(
        {
            "hash": "0xdef",
            "userAddress": USER,
            "creditDimensions": {"stakingCommitment": 0.7, "defi_reliability": 0.2},
            "riskScore": 0.1,
            "dataWeight": 2.0,
            "protocol": "Lido",
            "timestamp": 1234.0,
            "valueEth": 3.0,
        }
    )
    assert event.tx_hash == "0xdef"
    assert event.impact(Dimension.STAKING_COMMITMENT) == 0.7
    assert event.impact(Dimension.DEFI_RELIABILITY) == 0.2
    assert event.impact(Dimension.GOVERNANCE_PARTICIPATION) == 0.0
    assert event.data_weight == 2.0
    assert event.to_dict()["impacts"]["stakingCommitment"] == 0.7


def test_score_update_delta():
    from backend_credit.analysis_engine.models import Dimension, ScoreUpdate

    update = ScoreUpdate(Dimension.DEFI_RELIABILITY, 500, 481, 60, -0.38, "decreased")
    assert update.delta == -19
    assert update.to_dict()["dimension"] == "defiReliability"
