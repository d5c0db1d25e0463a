"""
Event worker pool: parallel across users, serialized per user.

Each worker is a single-thread executor; an event is routed to a worker by
a stable hash of its user address, so repeated events for one address
always run on the same worker in arrival order. A heartbeat thread logs
queue depth and processed/error counters.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Mapping

from backend_credit.analysis_engine.models import CategorizedEvent
from backend_credit.core.exceptions import EngineNotRunningError
from backend_credit.credit_logging import get_logger
from backend_credit.database.store import stable_hash
from backend_credit.scheduler.models import UpdatePriority
from backend_credit.scoring_engine.service import ScoreUpdateResult, ScoringEngineService

logger = get_logger(__name__)

DEFAULT_WORKER_COUNT = 8
DEFAULT_HEARTBEAT_INTERVAL_SEC = 30.0


@dataclass
class WorkerConfig:
    """Configuration for the event worker pool."""

    worker_count: int = DEFAULT_WORKER_COUNT
    heartbeat_interval_sec: float = DEFAULT_HEARTBEAT_INTERVAL_SEC

    def __post_init__(self) -> None:
        if self.worker_count < 1:
            raise ValueError("worker_count must be >= 1")


@dataclass
class WorkerState:
    """Mutable state for heartbeat and monitoring."""

    last_user_processed: str | None = None
    last_processed_at: float | None = None
    last_error: str | None = None
    processed_count: int = 0
    error_count: int = 0
    in_flight: int = 0


class EventWorkerPool:
    """Routes process_event calls onto per-user single-writer workers."""

    def __init__(self, engine: ScoringEngineService, config: WorkerConfig | None = None) -> None:
        self._engine = engine
        self._config = config or WorkerConfig()
        self._workers = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"credit-worker-{i}")
            for i in range(self._config.worker_count)
        ]
        self._state = WorkerState()
        self._state_lock = threading.Lock()
        self._closed = False
        self._submit_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None

    @property
    def worker_count(self) -> int:
        return len(self._workers)

    def worker_index(self, user_address: str) -> int:
        return stable_hash(user_address) % len(self._workers)

    def _run(
        self,
        user_address: str,
        event: CategorizedEvent | Mapping[str, Any],
        priority: UpdatePriority | str,
    ) -> ScoreUpdateResult:
        try:
            result = self._engine.process_event(user_address, event, priority)
        except Exception as e:
            with self._state_lock:
                self._state.error_count += 1
                self._state.last_error = str(e)
                self._state.in_flight -= 1
            logger.warning("worker_event_failed", user_address=user_address, error=str(e))
            raise
        with self._state_lock:
            self._state.processed_count += 1
            self._state.last_user_processed = user_address
            self._state.last_processed_at = time.time()
            self._state.in_flight -= 1
        return result

    def submit(
        self,
        user_address: str,
        event: CategorizedEvent | Mapping[str, Any],
        priority: UpdatePriority | str = UpdatePriority.NORMAL,
    ) -> Future[ScoreUpdateResult]:
        """
        Queue an event on its user's worker.

        Raises:
            EngineNotRunningError: the pool has been shut down.
        """
        with self._submit_lock:
            if self._closed:
                raise EngineNotRunningError("Worker pool is shut down", user_address=user_address)
            with self._state_lock:
                self._state.in_flight += 1
            return self._workers[self.worker_index(user_address)].submit(
                self._run, user_address, event, priority
            )

    def state(self) -> dict[str, Any]:
        with self._state_lock:
            s = self._state
            return {
                "worker_count": len(self._workers),
                "closed": self._closed,
                "in_flight": s.in_flight,
                "processed_count": s.processed_count,
                "error_count": s.error_count,
                "last_user_processed": s.last_user_processed,
                "last_processed_at": s.last_processed_at,
                "last_error": s.last_error,
            }

    def _heartbeat(self) -> None:
        interval = max(1.0, self._config.heartbeat_interval_sec)
        while not self._stop_event.wait(interval):
            logger.info("worker_heartbeat", **self.state())

    def start(self) -> None:
        if self._heartbeat_thread is not None:
            return
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat, name="credit-worker-heartbeat", daemon=True
        )
        self._heartbeat_thread.start()
        logger.info("worker_started", worker_count=len(self._workers))

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting events; with wait=True, queued and in-flight events finish first."""
        with self._submit_lock:
            self._closed = True
        self._stop_event.set()
        for worker in self._workers:
            worker.shutdown(wait=wait)
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(timeout=5.0)
            self._heartbeat_thread = None
        logger.info("worker_stopped", **self.state())
