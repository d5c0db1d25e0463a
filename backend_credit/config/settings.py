"""
Application settings and environment configuration.

Responsibilities:
- Load configuration from environment variables and the project .env file.
- Provide defaults for every tunable (SLA durations, confidence gate,
  anomaly thresholds, retry policy, sweep interval, weighting tables).
- Build the per-component config dataclasses from one EngineSettings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from backend_credit.analysis_engine.anomaly import AnomalyConfig
from backend_credit.analysis_engine.models import Dimension
from backend_credit.analysis_engine.scorer import (
    DEFAULT_DIMENSION_RULES,
    DEFAULT_PROTOCOL_BONUSES,
    CalculatorConfig,
    DimensionRule,
)
from backend_credit.analysis_engine.trend import TrendConfig
from backend_credit.scheduler.engine import SchedulerConfig
from backend_credit.scoring_engine.service import EngineConfig

# Project root: config is backend_credit/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_ROOT = _CONFIG_DIR.parent.parent
_ENV_PATH = _ROOT / ".env"

_TRUE = ("1", "true", "yes", "on")


def load_credit_env() -> None:
    """Load .env from project root. Existing environment variables win."""
    load_dotenv(_ENV_PATH, override=False)


def _env_str(name: str, default: str) -> str:
    return (os.getenv(name) or default).strip() or default


def _env_float(name: str, default: float) -> float:
    return float(_env_str(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(_env_str(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE


def _env_json(name: str) -> dict[str, Any]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"{name} must be a JSON object")
    return data


@dataclass
class EngineSettings:
    """All tunables; every field has an env variable of the same name upper-cased."""

    positive_update_sla_sec: float = 4 * 3600
    negative_update_sla_sec: float = 24 * 3600
    min_confidence_threshold: int = 50
    min_data_points_for_trend: int = 3
    anomaly_volume_ratio: float = 10.0
    anomaly_frequency_ratio: float = 5.0
    anomaly_fraud_cluster_size: int = 3
    anomaly_fraud_window_sec: float = 30 * 60
    scheduler_max_attempts: int = 3
    scheduler_sweep_interval_sec: float = 30.0
    immediate_escalation: bool = True
    negative_risk_cutoff: float = 0.7
    store_timeout_sec: float = 5.0
    worker_count: int = 8
    db_path: str | None = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    protocol_weights: dict[str, float] = field(default_factory=dict)
    """Overrides/additions to the protocol bonus table (lower-cased names)."""
    dimension_weights: dict[str, float] = field(default_factory=dict)
    """Per-dimension base multiplier overrides keyed by dimension name."""

    def calculator_config(self) -> CalculatorConfig:
        protocols = dict(DEFAULT_PROTOCOL_BONUSES)
        protocols.update({k.strip().lower(): float(v) for k, v in self.protocol_weights.items()})
        rules: dict[Dimension, DimensionRule] = dict(DEFAULT_DIMENSION_RULES)
        for key, mult in self.dimension_weights.items():
            dim = Dimension.parse(key)
            rule = rules.get(dim, DimensionRule())
            rules[dim] = replace(rule, base_multiplier=float(mult))
        return CalculatorConfig(
            adverse_risk_cutoff=self.negative_risk_cutoff,
            protocol_bonuses=protocols,
            dimension_rules=rules,
        )

    def trend_config(self) -> TrendConfig:
        return TrendConfig(min_data_points_for_trend=self.min_data_points_for_trend)

    def anomaly_config(self) -> AnomalyConfig:
        return AnomalyConfig(
            volume_ratio=self.anomaly_volume_ratio,
            frequency_ratio=self.anomaly_frequency_ratio,
            fraud_cluster_size=self.anomaly_fraud_cluster_size,
            fraud_window_sec=self.anomaly_fraud_window_sec,
        )

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            positive_sla_sec=self.positive_update_sla_sec,
            negative_sla_sec=self.negative_update_sla_sec,
            sweep_interval_sec=self.scheduler_sweep_interval_sec,
            max_attempts=self.scheduler_max_attempts,
        )

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            min_confidence=self.min_confidence_threshold,
            negative_risk_cutoff=self.negative_risk_cutoff,
            immediate_escalation=self.immediate_escalation,
            store_timeout_sec=self.store_timeout_sec,
        )


def get_settings() -> EngineSettings:
    """
    Return settings read from the environment (after loading .env).

    Raises:
        ValueError: a numeric or JSON variable cannot be parsed.
    """
    load_credit_env()
    d = EngineSettings()
    db_path = (os.getenv("DB_PATH") or "").strip() or None
    return EngineSettings(
        positive_update_sla_sec=_env_float("POSITIVE_UPDATE_SLA_SEC", d.positive_update_sla_sec),
        negative_update_sla_sec=_env_float("NEGATIVE_UPDATE_SLA_SEC", d.negative_update_sla_sec),
        min_confidence_threshold=_env_int("MIN_CONFIDENCE_THRESHOLD", d.min_confidence_threshold),
        min_data_points_for_trend=_env_int("MIN_DATA_POINTS_FOR_TREND", d.min_data_points_for_trend),
        anomaly_volume_ratio=_env_float("ANOMALY_VOLUME_RATIO", d.anomaly_volume_ratio),
        anomaly_frequency_ratio=_env_float("ANOMALY_FREQUENCY_RATIO", d.anomaly_frequency_ratio),
        anomaly_fraud_cluster_size=_env_int("ANOMALY_FRAUD_CLUSTER_SIZE", d.anomaly_fraud_cluster_size),
        anomaly_fraud_window_sec=_env_float("ANOMALY_FRAUD_WINDOW_SEC", d.anomaly_fraud_window_sec),
        scheduler_max_attempts=_env_int("SCHEDULER_MAX_ATTEMPTS", d.scheduler_max_attempts),
        scheduler_sweep_interval_sec=_env_float("SCHEDULER_SWEEP_INTERVAL_SEC", d.scheduler_sweep_interval_sec),
        immediate_escalation=_env_bool("IMMEDIATE_ESCALATION", d.immediate_escalation),
        negative_risk_cutoff=_env_float("NEGATIVE_RISK_CUTOFF", d.negative_risk_cutoff),
        store_timeout_sec=_env_float("STORE_TIMEOUT_SEC", d.store_timeout_sec),
        worker_count=_env_int("WORKER_COUNT", d.worker_count),
        db_path=db_path,
        api_host=_env_str("API_HOST", d.api_host),
        api_port=_env_int("API_PORT", d.api_port),
        protocol_weights=_env_json("PROTOCOL_WEIGHTS_JSON"),
        dimension_weights=_env_json("DIMENSION_WEIGHTS_JSON"),
    )
