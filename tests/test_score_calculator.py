"""
Pytest tests for ScoreCalculator: impact formula, multipliers, clamping and adverse events.
"""

from __future__ import annotations

import pytest

USER = "0x742d35cc6634c0532925a3b844bc454e4438f44e"


def _profile():
    from backend_credit.analysis_engine.models import CreditProfile

    return CreditProfile.new(USER, now_ts=1000.0)


def test_aave_lending_event_raises_defi_score(make_event):
    """Aave V2 lending event on a fresh profile: +19 on defiReliability, nothing else touched."""
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    profile = _profile()
    updates = ScoreCalculator().calculate_score_updates(profile, make_event())
    assert len(updates) == 1
    u = updates[0]
    assert u.dimension == Dimension.DEFI_RELIABILITY
    assert u.old_score == 500
    assert u.new_score == 519
    assert u.impact > 0
    assert u.reason == "DeFi reliability increased due to Aave V2 interaction"
    # Calculator is pure
    assert profile.dimensions[Dimension.DEFI_RELIABILITY].score == 500
    assert profile.dimensions[Dimension.DEFI_RELIABILITY].data_points == 0


def test_zero_impact_event_yields_no_updates(make_event):
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    event = make_event(impacts={Dimension.DEFI_RELIABILITY: 0.0})
    assert ScoreCalculator().calculate_score_updates(_profile(), event) == []


def test_negligible_change_is_dropped(make_event):
    """Changes that round below one point are not proposed."""
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    event = make_event(impacts={Dimension.TRADING_CONSISTENCY: 0.01}, protocol=None, value_eth=0.001)
    assert ScoreCalculator().calculate_score_updates(_profile(), event) == []


def test_protocol_bonus_lookup():
    """Case-insensitive table lookup; unknown or missing protocol contributes nothing."""
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    calc = ScoreCalculator()
    assert calc.protocol_bonus("Aave V2") == 0.3
    assert calc.protocol_bonus("  AAVE v2 ") == 0.3
    assert calc.protocol_bonus("MakerDAO Governance") == 0.4
    assert calc.protocol_bonus("SomeNewDex") == 0.0
    assert calc.protocol_bonus(None) == 0.0


def test_unknown_protocol_scores_lower(make_event):
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    calc = ScoreCalculator()
    known = calc.calculate_score_updates(_profile(), make_event())[0]
    unknown = calc.calculate_score_updates(_profile(), make_event(protocol="SomeNewDex"))[0]
    assert 0 < unknown.delta < known.delta


@pytest.mark.parametrize(
    "value,expected",
    [(0.005, 0.5), (0.05, 0.8), (0.1, 1.0), (5.0, 1.2), (50.0, 1.4), (500.0, 1.6)],
)
def test_value_multiplier_bands(value, expected):
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    assert ScoreCalculator().value_multiplier(value) == expected


def test_adverse_event_lowers_score(make_event):
    """Risk at or above the adverse cutoff turns the impact negative."""
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    event = make_event(risk_score=0.75, protocol=None)
    updates = ScoreCalculator().calculate_score_updates(_profile(), event)
    assert len(updates) == 1
    assert updates[0].dimension == Dimension.DEFI_RELIABILITY
    assert updates[0].new_score == 490
    assert updates[0].impact < 0
    assert "decreased" in updates[0].reason


def test_scores_are_clamped(make_event):
    """New scores never leave [0, 1000]."""
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    calc = ScoreCalculator()
    high = _profile()
    high.dimensions[Dimension.DEFI_RELIABILITY].score = 995
    up = calc.calculate_score_updates(high, make_event())[0]
    assert up.new_score == 1000

    low = _profile()
    low.dimensions[Dimension.DEFI_RELIABILITY].score = 3
    down = calc.calculate_score_updates(low, make_event(risk_score=0.95, protocol=None))[0]
    assert down.new_score == 0


def test_multi_dimension_event(make_event):
    """Every touched dimension gets its own candidate; dimension rules differ."""
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    event = make_event(
        impacts={Dimension.STAKING_COMMITMENT: 0.8, Dimension.GOVERNANCE_PARTICIPATION: 0.8},
        protocol="MakerDAO Governance",
        risk_score=0.1,
        value_eth=2.0,
    )
    updates = {u.dimension: u for u in ScoreCalculator().calculate_score_updates(_profile(), event)}
    assert set(updates) == {Dimension.STAKING_COMMITMENT, Dimension.GOVERNANCE_PARTICIPATION}
    assert updates[Dimension.GOVERNANCE_PARTICIPATION].delta > updates[Dimension.STAKING_COMMITMENT].delta > 0


def test_frequency_bonus_grows_with_data_points(make_event):
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    calc = ScoreCalculator()
    fresh = _profile()
    seasoned = _profile()
    seasoned.dimensions[Dimension.DEFI_RELIABILITY].data_points = 50
    event = make_event()
    assert calc.calculate_impact(Dimension.DEFI_RELIABILITY, seasoned, event) > calc.calculate_impact(
        Dimension.DEFI_RELIABILITY, fresh, event
    )


def test_with_weights_returns_new_calculator(make_event):
    """Overrides produce a new calculator; the original keeps its weights."""
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    calc = ScoreCalculator()
    doubled = calc.with_weights(score_scale=100.0)
    assert calc.config.score_scale == 50.0
    assert doubled.calculate_score_updates(_profile(), make_event())[0].new_score == 537
    assert calc.get_weights()["transaction_value"] == 0.3
    with pytest.raises(TypeError):
        calc.with_weights(no_such_weight=1.0)


def test_update_confidence_bounds(make_event):
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.analysis_engine.scorer import ScoreCalculator

    calc = ScoreCalculator()
    conf = calc.update_confidence(_profile(), Dimension.DEFI_RELIABILITY, make_event(data_weight=20.0))
    assert conf == 100
    conf = calc.update_confidence(_profile(), Dimension.DEFI_RELIABILITY, make_event())
    assert 0 <= conf <= 100
