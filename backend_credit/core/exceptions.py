"""
Application-level exceptions.

Validation errors surface synchronously to the event producer. Scheduling
failures, SLA violations and anomalies are recorded internally instead of
being raised (see UpdateScheduler and AnomalyDetector).
"""

from __future__ import annotations

from typing import Any


class CreditEngineError(Exception):
    """Base class for all engine errors."""

    code = "credit_engine_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class EventValidationError(CreditEngineError, ValueError):
    """Malformed event input: unknown dimension key, out-of-range weight, etc."""

    code = "invalid_event"


class SchedulerShutdownError(CreditEngineError):
    """schedule() called after scheduler shutdown began."""

    code = "scheduler_shutdown"


class PublishError(CreditEngineError):
    """Downstream publish of a scheduled update failed (transient, retried)."""

    code = "publish_failed"


class StoreError(CreditEngineError):
    """Profile store call failed."""

    code = "store_error"


class StoreTimeoutError(StoreError):
    """Profile store call exceeded its timeout."""

    code = "store_timeout"


class EngineNotRunningError(CreditEngineError):
    """Work submitted to a worker pool that is shut down."""

    code = "engine_not_running"


class CommitAbandonedError(StoreError):
    """Commit vetoed by a caller that stopped waiting for it; nothing was written."""

    code = "commit_abandoned"
