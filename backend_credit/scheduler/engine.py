"""
Update scheduler: SLA-bound publication of applied score updates.

Items are ordered by priority (immediate > high > normal), then deadline.
Immediate items bypass the queue and are published inline. A periodic
sweep publishes queued items whose deadline has passed or whose
priority-specific early window has opened, so work is batched instead of
fired at each exact deadline. Failed publishes are retried at high
priority up to max_attempts, then abandoned and reported.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from backend_credit.analysis_engine.models import CreditProfile, ScoreUpdate
from backend_credit.core.exceptions import SchedulerShutdownError
from backend_credit.credit_logging import get_logger
from backend_credit.scheduler.models import (
    ScheduledUpdate,
    SchedulingFailure,
    SlaClass,
    SlaViolation,
    UpdatePriority,
    UpdateState,
)

logger = get_logger(__name__)

DEFAULT_POSITIVE_SLA_SEC = 4 * 3600
DEFAULT_NEGATIVE_SLA_SEC = 24 * 3600
DEFAULT_IMMEDIATE_SLA_SEC = 5 * 60
DEFAULT_SWEEP_INTERVAL_SEC = 30.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_HIGH_EARLY_WINDOW_SEC = 30 * 60
DEFAULT_NORMAL_EARLY_WINDOW_SEC = 60 * 60
DEFAULT_RECORD_LIMIT = 1000
DEFAULT_JOIN_TIMEOUT_SEC = 5.0

PublishFn = Callable[[ScheduledUpdate], None]
FailureListener = Callable[[ScheduledUpdate, SchedulingFailure], None]


@dataclass
class SchedulerConfig:
    """SLA durations, sweep cadence and retry policy."""

    positive_sla_sec: float = DEFAULT_POSITIVE_SLA_SEC
    negative_sla_sec: float = DEFAULT_NEGATIVE_SLA_SEC
    immediate_sla_sec: float = DEFAULT_IMMEDIATE_SLA_SEC
    sweep_interval_sec: float = DEFAULT_SWEEP_INTERVAL_SEC
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    early_windows_sec: dict[UpdatePriority, float] = field(
        default_factory=lambda: {
            UpdatePriority.HIGH: DEFAULT_HIGH_EARLY_WINDOW_SEC,
            UpdatePriority.NORMAL: DEFAULT_NORMAL_EARLY_WINDOW_SEC,
        }
    )
    record_limit: int = DEFAULT_RECORD_LIMIT
    join_timeout_sec: float = DEFAULT_JOIN_TIMEOUT_SEC

    def sla_for(self, sla_class: SlaClass) -> float:
        if sla_class == SlaClass.POSITIVE:
            return self.positive_sla_sec
        return self.negative_sla_sec


class UpdateScheduler:
    """
    Priority queue of ScheduledUpdates with a timer-driven sweep thread.

    schedule() and sweep() share one queue lock; sweep pops due items under
    the lock and publishes them after releasing it.
    """

    def __init__(
        self,
        publish: PublishFn,
        config: SchedulerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._publish = publish
        self._config = config or SchedulerConfig()
        self._clock = clock
        self._heap: list[tuple[int, float, int, ScheduledUpdate]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._shutdown = False
        self._thread: threading.Thread | None = None
        self._failure_listeners: list[FailureListener] = []
        self._violations: deque[SlaViolation] = deque(maxlen=self._config.record_limit)
        self._failures: deque[SchedulingFailure] = deque(maxlen=self._config.record_limit)
        self._processed = 0
        self._retried = 0
        self._abandoned = 0
        self._total_latency = 0.0

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # --- scheduling --------------------------------------------------------

    def schedule(
        self,
        user_address: str,
        profile: CreditProfile,
        updates: list[ScoreUpdate],
        priority: UpdatePriority = UpdatePriority.NORMAL,
        sla_class: SlaClass = SlaClass.NEGATIVE,
    ) -> ScheduledUpdate:
        """
        Queue applied updates for publication.

        The deadline is scheduled_at plus the SLA for sla_class. Immediate
        items are published before this call returns.

        Raises:
            SchedulerShutdownError: shutdown has begun. The rejected item is
                recorded as a scheduling failure first.
        """
        now = self._clock()
        item = ScheduledUpdate(
            user_address=user_address,
            profile=profile.snapshot(),
            updates=list(updates),
            priority=UpdatePriority(priority),
            sla_class=SlaClass(sla_class),
            scheduled_at=now,
            deadline=now + self._config.sla_for(SlaClass(sla_class)),
        )
        if self._shutdown:
            error = SchedulerShutdownError(
                "Scheduler is shutting down; update rejected",
                user_address=user_address,
                update_id=item.update_id,
            )
            self._abandon(item, error)
            raise error
        if item.priority == UpdatePriority.IMMEDIATE:
            logger.info(
                "scheduler_immediate",
                user_address=user_address,
                update_id=item.update_id,
                updates=len(item.updates),
            )
            self._process(item)
            return item

        self._push(item)
        logger.debug(
            "scheduler_update_queued",
            user_address=user_address,
            update_id=item.update_id,
            priority=item.priority,
            sla_class=item.sla_class,
            deadline=item.deadline,
        )
        return item

    def _push(self, item: ScheduledUpdate) -> None:
        item.state = UpdateState.QUEUED if item.attempts == 0 else UpdateState.RETRY
        with self._lock:
            heapq.heappush(self._heap, (item.priority.rank, item.deadline, next(self._seq), item))

    def _is_due(self, item: ScheduledUpdate, now: float) -> bool:
        if item.deadline <= now:
            return True
        window = self._config.early_windows_sec.get(item.priority, 0.0)
        return item.deadline - now <= window

    def sweep(self, now: float | None = None) -> int:
        """
        Publish every due item. Returns the number of items processed.

        Due items are removed from the queue under the lock, then published
        in (priority, deadline) order without holding it.
        """
        now = now if now is not None else self._clock()
        with self._lock:
            due = [entry for entry in self._heap if self._is_due(entry[3], now)]
            if due:
                self._heap = [entry for entry in self._heap if not self._is_due(entry[3], now)]
                heapq.heapify(self._heap)
            remaining = len(self._heap)
        due.sort(key=lambda e: (e[0], e[1], e[2]))
        for _, _, _, item in due:
            self._process(item, now=now)
        logger.debug("scheduler_sweep_done", processed=len(due), remaining=remaining)
        return len(due)

    def _process(self, item: ScheduledUpdate, now: float | None = None) -> None:
        item.state = UpdateState.PROCESSING
        item.attempts += 1
        try:
            self._publish(item)
        except Exception as e:
            self._handle_failure(item, e)
            return

        processed_at = max(now if now is not None else self._clock(), item.scheduled_at)
        item.processed_at = processed_at
        item.state = UpdateState.DONE
        latency = processed_at - item.scheduled_at
        with self._stats_lock:
            self._processed += 1
            self._total_latency += latency
        self._check_sla(item, latency, processed_at)

    def _check_sla(self, item: ScheduledUpdate, latency: float, at: float) -> None:
        sla = item.sla_sec
        if item.priority == UpdatePriority.IMMEDIATE:
            sla = min(sla, self._config.immediate_sla_sec)
        if latency <= sla:
            return
        violation = SlaViolation(
            update_id=item.update_id,
            user_address=item.user_address,
            sla_class=item.sla_class,
            priority=item.priority,
            sla_sec=sla,
            latency_sec=latency,
            detected_at=at,
        )
        with self._stats_lock:
            self._violations.append(violation)
        logger.warning(
            "scheduler_sla_violation",
            user_address=item.user_address,
            update_id=item.update_id,
            sla_class=item.sla_class,
            sla_sec=sla,
            latency_sec=round(latency, 3),
            overage_sec=round(violation.overage_sec, 3),
        )

    def _handle_failure(self, item: ScheduledUpdate, error: Exception) -> None:
        item.last_error = str(error)
        if item.attempts < self._config.max_attempts and not self._shutdown:
            item.priority = UpdatePriority.HIGH
            with self._stats_lock:
                self._retried += 1
            logger.warning(
                "scheduler_update_retry",
                user_address=item.user_address,
                update_id=item.update_id,
                attempts=item.attempts,
                error=str(error),
            )
            self._push(item)
            return
        self._abandon(item, error)

    def _abandon(self, item: ScheduledUpdate, error: Exception) -> None:
        item.state = UpdateState.ABANDONED
        failure = SchedulingFailure(
            update_id=item.update_id,
            user_address=item.user_address,
            attempts=item.attempts,
            error=str(error),
            failed_at=self._clock(),
        )
        with self._stats_lock:
            self._abandoned += 1
            self._failures.append(failure)
            listeners = list(self._failure_listeners)
        logger.error(
            "scheduler_update_abandoned",
            user_address=item.user_address,
            update_id=item.update_id,
            attempts=item.attempts,
            error=str(error),
        )
        for listener in listeners:
            try:
                listener(item, failure)
            except Exception as e:
                logger.warning("scheduler_failure_listener_error", error=str(e))

    # --- lifecycle ---------------------------------------------------------

    def _run(self) -> None:
        logger.info("scheduler_started", sweep_interval_sec=self._config.sweep_interval_sec)
        while not self._stop_event.wait(self._config.sweep_interval_sec):
            try:
                self.sweep()
            except Exception as e:
                logger.exception("scheduler_sweep_error", error=str(e))
        logger.info("scheduler_stopped")

    def start(self) -> None:
        if self.running:
            return
        self._shutdown = False
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="update-scheduler", daemon=True)
        self._thread.start()

    def stop(self, drain: bool = False) -> None:
        """
        Reject new schedule() calls, stop the sweep timer and join it.

        drain=True publishes everything still queued, due or not.
        """
        self._shutdown = True
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._config.join_timeout_sec)
            self._thread = None
        if drain:
            with self._lock:
                pending = sorted(self._heap, key=lambda e: (e[0], e[1], e[2]))
                self._heap = []
            for _, _, _, item in pending:
                self._process(item)

    # --- introspection -----------------------------------------------------

    def add_failure_listener(self, listener: FailureListener) -> None:
        with self._stats_lock:
            self._failure_listeners.append(listener)

    def pending_for(self, user_address: str) -> list[ScheduledUpdate]:
        with self._lock:
            entries = sorted(self._heap, key=lambda e: (e[0], e[1], e[2]))
        return [item for _, _, _, item in entries if item.user_address == user_address]

    def cancel(self, user_address: str) -> int:
        """Drop all queued items for a user. Returns how many were removed."""
        with self._lock:
            before = len(self._heap)
            self._heap = [e for e in self._heap if e[3].user_address != user_address]
            heapq.heapify(self._heap)
            removed = before - len(self._heap)
        if removed:
            logger.info("scheduler_cancelled", user_address=user_address, removed=removed)
        return removed

    def queue_size(self) -> int:
        with self._lock:
            return len(self._heap)

    def get_failures(self) -> list[SchedulingFailure]:
        with self._stats_lock:
            return list(self._failures)

    def get_sla_violations(self) -> list[SlaViolation]:
        with self._stats_lock:
            return list(self._violations)

    def get_status(self) -> dict[str, object]:
        queue_size = self.queue_size()
        with self._stats_lock:
            avg = self._total_latency / self._processed if self._processed else 0.0
            return {
                "running": self.running,
                "shutting_down": self._shutdown,
                "queue_size": queue_size,
                "processed": self._processed,
                "retried": self._retried,
                "abandoned": self._abandoned,
                "average_latency_sec": round(avg, 3),
                "sla_violations": len(self._violations),
            }
