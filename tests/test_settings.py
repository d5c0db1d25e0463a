"""
Pytest tests for environment-driven settings and the component configs built from them.
"""

from __future__ import annotations

import pytest


def test_defaults(monkeypatch):
    """Without overrides: 4h / 24h SLAs, confidence gate 50, in-memory store."""
    for name in ("POSITIVE_UPDATE_SLA_SEC", "NEGATIVE_UPDATE_SLA_SEC", "MIN_CONFIDENCE_THRESHOLD", "DB_PATH"):
        monkeypatch.delenv(name, raising=False)
    from backend_credit.config import get_settings

    settings = get_settings()
    assert settings.positive_update_sla_sec == 4 * 3600
    assert settings.negative_update_sla_sec == 24 * 3600
    assert settings.min_confidence_threshold == 50
    assert settings.db_path is None
    assert settings.scheduler_config().positive_sla_sec == 4 * 3600
    assert settings.engine_config().min_confidence == 50


def test_env_overrides(monkeypatch):
    from backend_credit.config import get_settings

    monkeypatch.setenv("POSITIVE_UPDATE_SLA_SEC", "600")
    monkeypatch.setenv("MIN_CONFIDENCE_THRESHOLD", "70")
    monkeypatch.setenv("IMMEDIATE_ESCALATION", "false")
    monkeypatch.setenv("ANOMALY_FRAUD_CLUSTER_SIZE", "4")
    monkeypatch.setenv("MIN_DATA_POINTS_FOR_TREND", "5")

    settings = get_settings()
    assert settings.scheduler_config().positive_sla_sec == 600.0
    assert settings.engine_config().min_confidence == 70
    assert settings.engine_config().immediate_escalation is False
    assert settings.anomaly_config().fraud_cluster_size == 4
    assert settings.trend_config().min_data_points_for_trend == 5


def test_weight_tables_from_json(monkeypatch):
    """Protocol and dimension weight overrides merge into the default tables."""
    from backend_credit.analysis_engine.models import Dimension
    from backend_credit.config import get_settings

    monkeypatch.setenv("PROTOCOL_WEIGHTS_JSON", '{"Curve": 0.2, "Aave V2": 0.1}')
    monkeypatch.setenv("DIMENSION_WEIGHTS_JSON", '{"staking_commitment": 2.0}')
    config = get_settings().calculator_config()
    assert config.protocol_bonuses["curve"] == 0.2
    assert config.protocol_bonuses["aave v2"] == 0.1
    assert config.protocol_bonuses["uniswap v3"] == 0.2
    staking = config.dimension_rules[Dimension.STAKING_COMMITMENT]
    assert staking.base_multiplier == 2.0
    assert staking.low_risk_multiplier == 1.4


def test_invalid_values_raise(monkeypatch):
    from backend_credit.config import get_settings

    monkeypatch.setenv("PROTOCOL_WEIGHTS_JSON", "[1, 2]")
    with pytest.raises(ValueError):
        get_settings()
    monkeypatch.delenv("PROTOCOL_WEIGHTS_JSON")
    monkeypatch.setenv("API_PORT", "not-a-port")
    with pytest.raises(ValueError):
        get_settings()


def test_unknown_dimension_weight_rejected(monkeypatch):
    from backend_credit.config import get_settings
    from backend_credit.core.exceptions import EventValidationError

    monkeypatch.setenv("DIMENSION_WEIGHTS_JSON", '{"creditCardDebt": 1.0}')
    with pytest.raises(EventValidationError):
        get_settings().calculator_config()
