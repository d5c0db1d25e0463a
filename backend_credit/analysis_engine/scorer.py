"""
Credit score computation: per-dimension candidate updates from one event.

Responsibilities:
- Turn a categorized event's dimension impact weights into signed score deltas.
- Apply value, risk, data-weight, dimension and protocol multipliers.
- Drop negligible changes so history does not churn.

Pure: ScoreCalculator never mutates the profile it is given.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from backend_credit.analysis_engine.models import (
    CONFIDENCE_MAX,
    CONFIDENCE_MIN,
    SCORE_MAX,
    SCORE_MIN,
    CategorizedEvent,
    CreditProfile,
    Dimension,
    ScoreUpdate,
    clamp,
)

# Weighted factors
DEFAULT_TRANSACTION_VALUE_WEIGHT = 0.3
DEFAULT_PROTOCOL_RELIABILITY_WEIGHT = 0.25
DEFAULT_FREQUENCY_BONUS_WEIGHT = 0.2
DEFAULT_RISK_PENALTY_WEIGHT = 0.15
DEFAULT_DATA_WEIGHT_COEFFICIENT = 0.1

DEFAULT_SCORE_SCALE = 50.0
DEFAULT_MIN_SCORE_CHANGE = 1
DEFAULT_MAX_PROTOCOL_MULTIPLIER = 1.5
DEFAULT_ADVERSE_RISK_CUTOFF = 0.7
DEFAULT_ADVERSE_IMPACT_SCALE = 1.0
DEFAULT_FREQUENCY_CAP = 1.5
DEFAULT_FREQUENCY_STEP = 0.01

# (upper bound exclusive, multiplier); last band applies above every bound
DEFAULT_VALUE_BANDS: tuple[tuple[float, float], ...] = (
    (0.01, 0.5),
    (0.1, 0.8),
    (1.0, 1.0),
    (10.0, 1.2),
    (100.0, 1.4),
)
DEFAULT_TOP_VALUE_MULTIPLIER = 1.6

DEFAULT_PROTOCOL_BONUSES: dict[str, float] = {
    "aave v2": 0.3,
    "aave v3": 0.25,
    "compound v2": 0.28,
    "makerdao": 0.35,
    "makerdao governance": 0.4,
    "uniswap v2": 0.15,
    "uniswap v3": 0.2,
}


@dataclass(frozen=True)
class DimensionRule:
    """
    Dimension-specific multiplier rule.

    base_multiplier always applies; the conditional multipliers apply when
    their condition holds (risk strictly below / above a bound, value strictly
    above a bound, protocol name containing a keyword).
    """

    base_multiplier: float = 1.0
    uses_protocol_bonus: bool = False
    low_risk_below: float | None = None
    low_risk_multiplier: float = 1.0
    high_risk_above: float | None = None
    high_risk_multiplier: float = 1.0
    high_value_above: float | None = None
    high_value_multiplier: float = 1.0
    protocol_keyword: str | None = None
    protocol_keyword_multiplier: float = 1.0


DEFAULT_DIMENSION_RULES: dict[Dimension, DimensionRule] = {
    Dimension.DEFI_RELIABILITY: DimensionRule(
        uses_protocol_bonus=True,
        low_risk_below=0.3,
        low_risk_multiplier=1.2,
        high_value_above=10.0,
        high_value_multiplier=1.1,
    ),
    Dimension.TRADING_CONSISTENCY: DimensionRule(
        base_multiplier=1.1,
        high_risk_above=0.7,
        high_risk_multiplier=0.8,
    ),
    Dimension.STAKING_COMMITMENT: DimensionRule(
        base_multiplier=1.3,
        low_risk_below=0.2,
        low_risk_multiplier=1.4,
    ),
    Dimension.GOVERNANCE_PARTICIPATION: DimensionRule(
        base_multiplier=1.5 * 1.2,
        protocol_keyword="governance",
        protocol_keyword_multiplier=1.3,
    ),
    Dimension.LIQUIDITY_PROVIDER: DimensionRule(
        base_multiplier=1.2,
        high_value_above=50.0,
        high_value_multiplier=1.25,
    ),
}

_REASON_LABELS = {
    Dimension.DEFI_RELIABILITY: "DeFi reliability",
    Dimension.TRADING_CONSISTENCY: "Trading consistency",
    Dimension.STAKING_COMMITMENT: "Staking commitment",
    Dimension.GOVERNANCE_PARTICIPATION: "Governance participation",
    Dimension.LIQUIDITY_PROVIDER: "Liquidity provision",
}


@dataclass
class CalculatorConfig:
    """Tunable weights for ScoreCalculator."""

    transaction_value_weight: float = DEFAULT_TRANSACTION_VALUE_WEIGHT
    protocol_reliability_weight: float = DEFAULT_PROTOCOL_RELIABILITY_WEIGHT
    frequency_bonus_weight: float = DEFAULT_FREQUENCY_BONUS_WEIGHT
    risk_penalty_weight: float = DEFAULT_RISK_PENALTY_WEIGHT
    data_weight_coefficient: float = DEFAULT_DATA_WEIGHT_COEFFICIENT
    score_scale: float = DEFAULT_SCORE_SCALE
    min_score_change: int = DEFAULT_MIN_SCORE_CHANGE
    max_protocol_multiplier: float = DEFAULT_MAX_PROTOCOL_MULTIPLIER
    adverse_risk_cutoff: float = DEFAULT_ADVERSE_RISK_CUTOFF
    adverse_impact_scale: float = DEFAULT_ADVERSE_IMPACT_SCALE
    frequency_cap: float = DEFAULT_FREQUENCY_CAP
    frequency_step: float = DEFAULT_FREQUENCY_STEP
    value_bands: tuple[tuple[float, float], ...] = DEFAULT_VALUE_BANDS
    top_value_multiplier: float = DEFAULT_TOP_VALUE_MULTIPLIER
    protocol_bonuses: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_PROTOCOL_BONUSES))
    dimension_rules: dict[Dimension, DimensionRule] = field(
        default_factory=lambda: dict(DEFAULT_DIMENSION_RULES)
    )


class ScoreCalculator:
    """Computes candidate ScoreUpdates for one (profile, event) pair."""

    def __init__(self, config: CalculatorConfig | None = None) -> None:
        self._config = config or CalculatorConfig()

    @property
    def config(self) -> CalculatorConfig:
        return self._config

    def get_weights(self) -> dict[str, float]:
        c = self._config
        return {
            "transaction_value": c.transaction_value_weight,
            "protocol_reliability": c.protocol_reliability_weight,
            "frequency_bonus": c.frequency_bonus_weight,
            "risk_penalty": c.risk_penalty_weight,
            "data_weight": c.data_weight_coefficient,
        }

    def with_weights(self, **overrides: Any) -> ScoreCalculator:
        """Return a new calculator with config fields overridden (unknown names raise TypeError)."""
        return ScoreCalculator(replace(self._config, **overrides))

    def value_multiplier(self, value: float) -> float:
        for upper, mult in self._config.value_bands:
            if value < upper:
                return mult
        return self._config.top_value_multiplier

    def protocol_bonus(self, protocol: str | None) -> float:
        """Case-insensitive table lookup; unknown or missing protocol gives 0."""
        if not protocol:
            return 0.0
        return float(self._config.protocol_bonuses.get(protocol.strip().lower(), 0.0))

    def _dimension_multiplier(self, dimension: Dimension, event: CategorizedEvent) -> float:
        rule = self._config.dimension_rules.get(dimension, DimensionRule())
        mult = rule.base_multiplier
        if rule.low_risk_below is not None and event.risk_score < rule.low_risk_below:
            mult *= rule.low_risk_multiplier
        if rule.high_risk_above is not None and event.risk_score > rule.high_risk_above:
            mult *= rule.high_risk_multiplier
        if rule.high_value_above is not None and event.value_eth > rule.high_value_above:
            mult *= rule.high_value_multiplier
        if rule.protocol_keyword and event.protocol and rule.protocol_keyword in event.protocol.lower():
            mult *= rule.protocol_keyword_multiplier
        return mult

    def calculate_impact(self, dimension: Dimension, profile: CreditProfile, event: CategorizedEvent) -> float:
        """
        Signed impact for one dimension before scaling to score points.

        Returns 0.0 when the event carries no weight for the dimension.
        """
        c = self._config
        weight = event.impact(dimension)
        if weight <= 0:
            return 0.0
        bonus = self.protocol_bonus(event.protocol)

        impact = (
            weight
            * self.value_multiplier(event.value_eth)
            * (1.0 - event.risk_score * c.risk_penalty_weight)
            * (1.0 + event.data_weight * c.data_weight_coefficient)
        )

        # Protocol-driven factors are capped together; the rest of the rule applies uncapped
        rule = c.dimension_rules.get(dimension, DimensionRule())
        protocol_mult = (1.0 + bonus if rule.uses_protocol_bonus else 1.0) * (
            1.0 + bonus * c.protocol_reliability_weight
        )
        capped = min(protocol_mult, c.max_protocol_multiplier)
        impact *= self._dimension_multiplier(dimension, event) * capped

        data_points = profile.dimensions[dimension].data_points
        frequency = min(1.0 + data_points * c.frequency_step, c.frequency_cap)
        impact *= frequency * c.frequency_bonus_weight

        if event.risk_score >= c.adverse_risk_cutoff:
            impact = -impact * c.adverse_impact_scale
        return impact

    def update_confidence(self, profile: CreditProfile, dimension: Dimension, event: CategorizedEvent) -> int:
        """Evidence confidence for this single event (not the analyzer's profile confidence)."""
        data_points = profile.dimensions[dimension].data_points
        conf = 50.0
        conf += min(data_points * 2, 30)
        conf += event.data_weight * 10
        conf += (1.0 - event.risk_score) * 15
        conf += self.protocol_bonus(event.protocol) * 10
        return int(round(clamp(conf, CONFIDENCE_MIN, CONFIDENCE_MAX)))

    def calculate_score_updates(self, profile: CreditProfile, event: CategorizedEvent) -> list[ScoreUpdate]:
        """
        Candidate updates for every dimension the event touches.

        Args:
            profile: Current (pre-update) profile; not modified.
            event: Validated categorized event.

        Returns:
            One ScoreUpdate per dimension whose rounded, clamped change is at
            least min_score_change. Empty for an all-zero-impact event.
        """
        updates: list[ScoreUpdate] = []
        for dimension in Dimension:
            impact = self.calculate_impact(dimension, profile, event)
            if impact == 0.0:
                continue
            old = profile.dimensions[dimension].score
            new = int(clamp(round(old + impact * self._config.score_scale), SCORE_MIN, SCORE_MAX))
            if abs(new - old) < self._config.min_score_change:
                continue
            updates.append(
                ScoreUpdate(
                    dimension=dimension,
                    old_score=old,
                    new_score=new,
                    confidence=self.update_confidence(profile, dimension, event),
                    impact=impact,
                    reason=self._reason(dimension, event, impact),
                )
            )
        return updates

    @staticmethod
    def _reason(dimension: Dimension, event: CategorizedEvent, impact: float) -> str:
        verb = "increased" if impact > 0 else "decreased"
        label = _REASON_LABELS.get(dimension, dimension.value)
        if event.protocol:
            return f"{label} {verb} due to {event.protocol} interaction"
        return f"{label} {verb} due to on-chain activity"
