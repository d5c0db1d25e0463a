"""
Scheduled update records, SLA violations and scheduling failures.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from backend_credit.analysis_engine.models import CreditProfile, ScoreUpdate


class UpdatePriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    IMMEDIATE = "immediate"

    @property
    def rank(self) -> int:
        """Queue order: lower rank is processed first."""
        return PRIORITY_RANK[self]


PRIORITY_RANK: dict[UpdatePriority, int] = {
    UpdatePriority.IMMEDIATE: 0,
    UpdatePriority.HIGH: 1,
    UpdatePriority.NORMAL: 2,
}


class SlaClass(str, Enum):
    POSITIVE = "positive"
    """Score-improving update; short SLA."""
    NEGATIVE = "negative"
    """Score-harming or neutral update; long SLA."""


class UpdateState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    RETRY = "retry"
    ABANDONED = "abandoned"


@dataclass
class ScheduledUpdate:
    """
    One user's applied updates waiting to become externally visible.

    priority and attempts change across retries; the profile is a snapshot
    taken at scheduling time and never mutated.
    """

    user_address: str
    profile: CreditProfile
    updates: list[ScoreUpdate]
    priority: UpdatePriority
    sla_class: SlaClass
    scheduled_at: float
    deadline: float
    attempts: int = 0
    state: UpdateState = UpdateState.QUEUED
    update_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    processed_at: float | None = None
    last_error: str | None = None

    @property
    def sla_sec(self) -> float:
        return self.deadline - self.scheduled_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "update_id": self.update_id,
            "user_address": self.user_address,
            "updates": [u.to_dict() for u in self.updates],
            "priority": self.priority.value,
            "sla_class": self.sla_class.value,
            "scheduled_at": self.scheduled_at,
            "deadline": self.deadline,
            "attempts": self.attempts,
            "state": self.state.value,
            "processed_at": self.processed_at,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class SlaViolation:
    update_id: str
    user_address: str
    sla_class: SlaClass
    priority: UpdatePriority
    sla_sec: float
    latency_sec: float
    detected_at: float

    @property
    def overage_sec(self) -> float:
        return self.latency_sec - self.sla_sec

    def to_dict(self) -> dict[str, Any]:
        return {
            "update_id": self.update_id,
            "user_address": self.user_address,
            "sla_class": self.sla_class.value,
            "priority": self.priority.value,
            "sla_sec": self.sla_sec,
            "latency_sec": round(self.latency_sec, 3),
            "overage_sec": round(self.overage_sec, 3),
            "detected_at": self.detected_at,
        }


@dataclass(frozen=True)
class SchedulingFailure:
    """Abandoned update: publish failed max_attempts times."""

    update_id: str
    user_address: str
    attempts: int
    error: str
    failed_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "update_id": self.update_id,
            "user_address": self.user_address,
            "attempts": self.attempts,
            "error": self.error,
            "failed_at": self.failed_at,
        }
