"""
Scoring engine package — the public entry point for event processing.

ScoringEngineService wires the calculator, confidence analyzer, trend
analyzer, anomaly detector, update scheduler and profile store together.
"""

from backend_credit.scoring_engine.service import (
    EngineConfig,
    ScoreUpdateResult,
    ScoringEngineService,
    UserLockRegistry,
)

__all__ = [
    "EngineConfig",
    "ScoreUpdateResult",
    "ScoringEngineService",
    "UserLockRegistry",
]
