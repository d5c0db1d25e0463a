"""
Analysis engine package — credit score computation and behavior analysis.

Consumes categorized on-chain events and produces per-dimension score
updates, confidence estimates, trend analyses and anomaly reports.
"""

from backend_credit.analysis_engine.models import (
    CategorizedEvent,
    CreditProfile,
    Dimension,
    ScoreDimension,
    ScoreHistory,
    ScoreUpdate,
    TrendDirection,
)
from backend_credit.analysis_engine.scorer import CalculatorConfig, DimensionRule, ScoreCalculator
from backend_credit.analysis_engine.confidence import (
    ConfidenceAnalyzer,
    ConfidenceConfig,
    ConfidenceResult,
    DataQuality,
    DataSufficiency,
    ProfileConfidence,
)
from backend_credit.analysis_engine.trend import (
    HistoricalAnalysis,
    TrendAnalysis,
    TrendAnalyzer,
    TrendConfig,
)
from backend_credit.analysis_engine.anomaly import (
    AnomalyConfig,
    AnomalyDetector,
    AnomalyPattern,
    AnomalyReport,
    AnomalySeverity,
    AnomalyType,
    severity_for_ratio,
)

__all__ = [
    "CategorizedEvent",
    "CreditProfile",
    "Dimension",
    "ScoreDimension",
    "ScoreHistory",
    "ScoreUpdate",
    "TrendDirection",
    "CalculatorConfig",
    "DimensionRule",
    "ScoreCalculator",
    "ConfidenceAnalyzer",
    "ConfidenceConfig",
    "ConfidenceResult",
    "DataQuality",
    "DataSufficiency",
    "ProfileConfidence",
    "HistoricalAnalysis",
    "TrendAnalysis",
    "TrendAnalyzer",
    "TrendConfig",
    "AnomalyConfig",
    "AnomalyDetector",
    "AnomalyPattern",
    "AnomalyReport",
    "AnomalySeverity",
    "AnomalyType",
    "severity_for_ratio",
]
