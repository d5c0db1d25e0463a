"""
Data models for the credit scoring engine.

Credit profiles (five fixed dimensions), categorized input events, score
updates and history entries. Plain dataclasses; no ORM coupling so the
profile store stays swappable.
"""

from __future__ import annotations

import copy
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from backend_credit.core.exceptions import EventValidationError

SCORE_MIN = 0
SCORE_MAX = 1000
NEUTRAL_SCORE = 500
CONFIDENCE_MIN = 0
CONFIDENCE_MAX = 100


class Dimension(str, Enum):
    """The five facets of on-chain credit behavior."""

    DEFI_RELIABILITY = "defiReliability"
    TRADING_CONSISTENCY = "tradingConsistency"
    STAKING_COMMITMENT = "stakingCommitment"
    GOVERNANCE_PARTICIPATION = "governanceParticipation"
    LIQUIDITY_PROVIDER = "liquidityProvider"

    @classmethod
    def parse(cls, raw: str | Dimension) -> Dimension:
        """
        Accept enum values, camelCase keys ("defiReliability") or snake_case
        keys ("defi_reliability"). Raises EventValidationError when unknown.
        """
        if isinstance(raw, Dimension):
            return raw
        key = str(raw).strip()
        for dim in cls:
            if key == dim.value or key.lower() == dim.name.lower():
                return dim
        raise EventValidationError(f"Unknown credit dimension: {raw!r}", dimension=str(raw))


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class ScoreDimension:
    """
    Score state for one dimension of one user.

    Mutated only by ScoringEngineService when it commits a
    confidence-approved update; callers only ever see copies.
    """

    score: int = NEUTRAL_SCORE
    """Current score on the 0-1000 scale."""
    confidence: int = 0
    """0-100 estimate of how trustworthy the score is."""
    data_points: int = 0
    """Number of applied updates; never decreases."""
    trend: TrendDirection = TrendDirection.STABLE
    last_calculated: float = 0.0
    """Unix timestamp (seconds) of the last applied update."""
    trend_strength: float = 0.0
    volatility: float = 0.0
    momentum: float = 0.0
    projected_score: int = NEUTRAL_SCORE

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "confidence": self.confidence,
            "data_points": self.data_points,
            "trend": self.trend.value,
            "last_calculated": self.last_calculated,
            "trend_strength": round(self.trend_strength, 2),
            "volatility": round(self.volatility, 2),
            "momentum": round(self.momentum, 2),
            "projected_score": self.projected_score,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ScoreDimension:
        return cls(
            score=int(data.get("score", NEUTRAL_SCORE)),
            confidence=int(data.get("confidence", 0)),
            data_points=int(data.get("data_points", 0)),
            trend=TrendDirection(data.get("trend", TrendDirection.STABLE.value)),
            last_calculated=float(data.get("last_calculated", 0.0)),
            trend_strength=float(data.get("trend_strength", 0.0)),
            volatility=float(data.get("volatility", 0.0)),
            momentum=float(data.get("momentum", 0.0)),
            projected_score=int(data.get("projected_score", NEUTRAL_SCORE)),
        )


@dataclass
class CreditProfile:
    """One user's credit profile: always exactly five dimensions."""

    user_address: str
    dimensions: dict[Dimension, ScoreDimension]
    last_updated: float = 0.0

    def __post_init__(self) -> None:
        missing = [d for d in Dimension if d not in self.dimensions]
        extra = [k for k in self.dimensions if not isinstance(k, Dimension)]
        if missing or extra:
            raise ValueError(
                f"CreditProfile requires exactly the five dimensions; missing={missing} extra={extra}"
            )

    @classmethod
    def new(cls, user_address: str, now_ts: float | None = None) -> CreditProfile:
        """Default profile: every dimension at neutral score, zero confidence and data points."""
        now_ts = now_ts if now_ts is not None else time.time()
        return cls(
            user_address=user_address,
            dimensions={d: ScoreDimension(last_calculated=now_ts) for d in Dimension},
            last_updated=now_ts,
        )

    def snapshot(self) -> CreditProfile:
        """Deep copy for handing to callers and the scheduler."""
        return copy.deepcopy(self)

    def scores(self) -> dict[str, int]:
        return {d.value: dim.score for d, dim in self.dimensions.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_address": self.user_address,
            "dimensions": {d.value: dim.to_dict() for d, dim in self.dimensions.items()},
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CreditProfile:
        raw_dims = data.get("dimensions") or {}
        dims = {Dimension.parse(k): ScoreDimension.from_dict(v) for k, v in raw_dims.items()}
        return cls(
            user_address=str(data["user_address"]),
            dimensions=dims,
            last_updated=float(data.get("last_updated", 0.0)),
        )


def _check_unit_interval(name: str, value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise EventValidationError(f"{name} must be a number", field=name) from e
    if math.isnan(value) or value < 0.0 or value > 1.0:
        raise EventValidationError(f"{name} must be within [0, 1], got {value}", field=name, value=str(value))
    return value


@dataclass(frozen=True)
class CategorizedEvent:
    """
    Pre-categorized blockchain event, immutable once received.

    Validated at construction: dimension keys must be one of the five
    dimensions, impact weights and risk score in [0, 1], data weight and
    value non-negative.
    """

    tx_hash: str
    user_address: str
    impacts: Mapping[Dimension, float]
    risk_score: float
    data_weight: float = 1.0
    protocol: str | None = None
    timestamp: float = field(default_factory=time.time)
    value_eth: float = 0.0
    """Transaction value in native units; drives the value multiplier."""

    def __post_init__(self) -> None:
        if not self.tx_hash or not str(self.tx_hash).strip():
            raise EventValidationError("tx_hash must be non-empty", field="tx_hash")
        if not self.user_address or not str(self.user_address).strip():
            raise EventValidationError("user_address must be non-empty", field="user_address")
        impacts: dict[Dimension, float] = {}
        for key, weight in dict(self.impacts).items():
            dim = Dimension.parse(key)
            impacts[dim] = _check_unit_interval(f"impact.{dim.value}", weight)
        object.__setattr__(self, "impacts", impacts)
        object.__setattr__(self, "risk_score", _check_unit_interval("risk_score", self.risk_score))
        for name in ("data_weight", "value_eth", "timestamp"):
            raw = getattr(self, name)
            try:
                val = float(raw)
            except (TypeError, ValueError) as e:
                raise EventValidationError(f"{name} must be a number", field=name) from e
            if not math.isfinite(val) or val < 0:
                raise EventValidationError(
                    f"{name} must be a finite non-negative number, got {val}", field=name, value=str(val)
                )
            object.__setattr__(self, name, val)

    def impact(self, dimension: Dimension) -> float:
        return self.impacts.get(dimension, 0.0)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CategorizedEvent:
        """Build from a loose dict (camelCase or snake_case keys)."""
        impacts = data.get("impacts", data.get("credit_dimensions", data.get("creditDimensions")))
        if not isinstance(impacts, Mapping):
            raise EventValidationError("impacts must be a mapping of dimension -> weight", field="impacts")
        return cls(
            tx_hash=str(data.get("tx_hash", data.get("hash", ""))),
            user_address=str(data.get("user_address", data.get("userAddress", ""))),
            impacts=impacts,
            risk_score=data.get("risk_score", data.get("riskScore", 0.0)),
            data_weight=data.get("data_weight", data.get("dataWeight", 1.0)),
            protocol=data.get("protocol"),
            timestamp=data.get("timestamp", time.time()),
            value_eth=data.get("value_eth", data.get("valueEth", 0.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "user_address": self.user_address,
            "impacts": {d.value: w for d, w in self.impacts.items()},
            "risk_score": self.risk_score,
            "data_weight": self.data_weight,
            "protocol": self.protocol,
            "timestamp": self.timestamp,
            "value_eth": self.value_eth,
        }


@dataclass(frozen=True)
class ScoreUpdate:
    """Candidate (or applied) change to one dimension; lives within one event cycle."""

    dimension: Dimension
    old_score: int
    new_score: int
    confidence: int
    impact: float
    """Signed impact magnitude before scaling to score points."""
    reason: str

    @property
    def delta(self) -> int:
        return self.new_score - self.old_score

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimension": self.dimension.value,
            "old_score": self.old_score,
            "new_score": self.new_score,
            "confidence": self.confidence,
            "impact": round(self.impact, 6),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ScoreHistory:
    """Append-only history entry for one (user, dimension)."""

    timestamp: float
    dimension: Dimension
    score: int
    confidence: int
    trigger: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "dimension": self.dimension.value,
            "score": self.score,
            "confidence": self.confidence,
            "trigger": self.trigger,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ScoreHistory:
        return cls(
            timestamp=float(data["timestamp"]),
            dimension=Dimension.parse(data["dimension"]),
            score=int(data["score"]),
            confidence=int(data["confidence"]),
            trigger=str(data.get("trigger", "")),
        )
