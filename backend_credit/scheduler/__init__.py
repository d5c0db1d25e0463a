# Update scheduling: SLA classes, priority queue, periodic sweep, retries.

from backend_credit.scheduler.engine import SchedulerConfig, UpdateScheduler
from backend_credit.scheduler.models import (
    ScheduledUpdate,
    SchedulingFailure,
    SlaClass,
    SlaViolation,
    UpdatePriority,
    UpdateState,
)

__all__ = [
    "SchedulerConfig",
    "UpdateScheduler",
    "ScheduledUpdate",
    "SchedulingFailure",
    "SlaClass",
    "SlaViolation",
    "UpdatePriority",
    "UpdateState",
]
