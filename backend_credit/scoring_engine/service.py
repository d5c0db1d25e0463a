"""
Scoring engine service: the per-event orchestration entry point.

process_event() runs, under a per-user lock: load state, anomaly checks,
negative-behavior escalation, candidate score updates, the confidence gate,
trend refresh, one atomic commit to the profile store, and hand-off to the
UpdateScheduler. Subscribers see updates only when the scheduler publishes
them.
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from concurrent.futures import wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterator, Mapping

from backend_credit.analysis_engine.anomaly import AnomalyDetector, AnomalyReport, AnomalySeverity
from backend_credit.analysis_engine.confidence import ConfidenceAnalyzer, ConfidenceResult
from backend_credit.analysis_engine.models import (
    CategorizedEvent,
    CreditProfile,
    Dimension,
    ScoreHistory,
    ScoreUpdate,
)
from backend_credit.analysis_engine.scorer import ScoreCalculator
from backend_credit.analysis_engine.trend import TrendAnalyzer
from backend_credit.core.exceptions import (
    EngineNotRunningError,
    EventValidationError,
    PublishError,
    SchedulerShutdownError,
    StoreError,
    StoreTimeoutError,
)
from backend_credit.core.settled import first_failure, run_settled
from backend_credit.credit_logging import event_context, get_logger
from backend_credit.database.store import CommitGuard, InMemoryProfileStore, ProfileStore, stable_hash
from backend_credit.scheduler.engine import SchedulerConfig, UpdateScheduler
from backend_credit.scheduler.models import ScheduledUpdate, SlaClass, UpdatePriority

logger = get_logger(__name__)

DEFAULT_MIN_CONFIDENCE = 50
DEFAULT_NEGATIVE_RISK_CUTOFF = 0.7
DEFAULT_STORE_TIMEOUT_SEC = 5.0
DEFAULT_LOCK_STRIPES = 64
DEFAULT_IO_WORKERS = 4
DEFAULT_ANOMALY_WINDOW_SEC = 24 * 3600

ESCALATING_SEVERITIES = frozenset({AnomalySeverity.HIGH, AnomalySeverity.CRITICAL})

Subscriber = Callable[[str, ScoreUpdate], None]


@dataclass
class EngineConfig:
    """Orchestration policy: confidence gate, escalation and store timeouts."""

    min_confidence: int = DEFAULT_MIN_CONFIDENCE
    negative_risk_cutoff: float = DEFAULT_NEGATIVE_RISK_CUTOFF
    """Events at or above this risk count as negative behavior."""
    immediate_escalation: bool = True
    store_timeout_sec: float = DEFAULT_STORE_TIMEOUT_SEC
    lock_stripes: int = DEFAULT_LOCK_STRIPES
    io_workers: int = DEFAULT_IO_WORKERS
    escalating_severities: frozenset[AnomalySeverity] = field(
        default_factory=lambda: ESCALATING_SEVERITIES
    )


@dataclass(frozen=True)
class ScoreUpdateResult:
    """Outcome of one process_event call. Empty updated_dimensions means nothing was applied."""

    user_address: str
    updated_dimensions: list[Dimension]
    old_scores: dict[Dimension, int]
    new_scores: dict[Dimension, int]
    anomalies: list[AnomalyReport]
    latency_sec: float
    confidence: int
    """Minimum confidence among applied updates; 0 when none were applied."""
    priority: UpdatePriority
    sla_class: SlaClass | None
    update_id: str | None = None
    updates: list[ScoreUpdate] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return bool(self.updated_dimensions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_address": self.user_address,
            "updated_dimensions": [d.value for d in self.updated_dimensions],
            "old_scores": {d.value: s for d, s in self.old_scores.items()},
            "new_scores": {d.value: s for d, s in self.new_scores.items()},
            "anomalies": [a.to_dict() for a in self.anomalies],
            "latency_sec": round(self.latency_sec, 6),
            "confidence": self.confidence,
            "priority": self.priority.value,
            "sla_class": self.sla_class.value if self.sla_class else None,
            "update_id": self.update_id,
            "updates": [u.to_dict() for u in self.updates],
        }


class UserLockRegistry:
    """
    Striped per-user locks. A user always maps to the same stripe (stable
    hash), so events for one user serialize while other users proceed.
    """

    def __init__(self, stripes: int = DEFAULT_LOCK_STRIPES) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [threading.Lock() for _ in range(stripes)]

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, user_address: str) -> threading.Lock:
        return self._locks[stable_hash(user_address) % len(self._locks)]

    @contextmanager
    def all_locks(self) -> Iterator[None]:
        """Hold every stripe; returns once all in-flight holders have released."""
        acquired: list[threading.Lock] = []
        try:
            for lock in self._locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class ScoringEngineService:
    """
    Top-level orchestrator.

    Owns the per-user locks, the subscriber list and the component
    instances. Profiles and history live in the injected ProfileStore;
    callers only ever receive snapshots.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: ProfileStore | None = None,
        clock: Callable[[], float] = time.time,
        calculator: ScoreCalculator | None = None,
        confidence: ConfidenceAnalyzer | None = None,
        trend: TrendAnalyzer | None = None,
        anomaly: AnomalyDetector | None = None,
        scheduler_config: SchedulerConfig | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._store = store or InMemoryProfileStore()
        self._clock = clock
        self._calculator = calculator or ScoreCalculator()
        self._confidence = confidence or ConfidenceAnalyzer()
        self._trend = trend or TrendAnalyzer()
        self._anomaly = anomaly or AnomalyDetector()
        self._scheduler = UpdateScheduler(self.publish, scheduler_config, clock=clock)
        self._locks = UserLockRegistry(self._config.lock_stripes)
        self._io = ThreadPoolExecutor(
            max_workers=self._config.io_workers, thread_name_prefix="credit-store"
        )
        self._subscribers: list[Subscriber] = []
        self._subscribers_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stopping = False
        self._running = False
        self._stats = {
            "events_processed": 0,
            "events_invalid": 0,
            "events_failed": 0,
            "updates_applied": 0,
            "gate_rejections": 0,
            "escalations": 0,
            "published_updates": 0,
        }

    # --- components ----------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def scheduler(self) -> UpdateScheduler:
        return self._scheduler

    @property
    def trend_analyzer(self) -> TrendAnalyzer:
        return self._trend

    @property
    def anomaly_detector(self) -> AnomalyDetector:
        return self._anomaly

    @property
    def store(self) -> ProfileStore:
        return self._store

    @property
    def locks(self) -> UserLockRegistry:
        return self._locks

    def _count(self, key: str, n: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += n

    # --- store access ----------------------------------------------------------

    def _store_call(self, name: str, fn: Callable[[], Any]) -> Any:
        outcome = run_settled([(name, fn)], self._io, timeout=self._config.store_timeout_sec)[0]
        if not outcome.ok:
            raise self._as_store_error(outcome.name, outcome.error)
        return outcome.value

    @staticmethod
    def _as_store_error(name: str, error: BaseException | None) -> StoreError:
        if isinstance(error, StoreError):
            return error
        wrapped = StoreError(f"{name} failed: {error}", call=name)
        wrapped.__cause__ = error
        return wrapped

    def _load_state(self, user_address: str) -> tuple[CreditProfile, list[ScoreHistory]]:
        outcomes = run_settled(
            [
                ("load_profile", lambda: self._store.load_profile(user_address)),
                ("load_history", lambda: self._store.load_history(user_address)),
            ],
            self._io,
            timeout=self._config.store_timeout_sec,
        )
        failed = first_failure(outcomes)
        if failed is not None:
            raise self._as_store_error(failed.name, failed.error)
        profile, history = outcomes[0].value, outcomes[1].value
        if profile is None:
            profile = CreditProfile.new(user_address, self._clock())
        return profile, history or []

    def _commit(self, profile: CreditProfile, entries: list[ScoreHistory]) -> None:
        """
        Write history and profile in one store call, bounded by store_timeout_sec.

        Called with the user's lock held. On timeout the write is abandoned
        and this waits for it to unwind before raising, so a late write can
        never land on top of the user's next event.
        """
        guard = CommitGuard()
        future = self._io.submit(self._store.commit, profile, entries, guard)
        timeout = self._config.store_timeout_sec
        try:
            future.result(timeout=timeout)
            return
        except FutureTimeoutError:
            pass
        except Exception as e:
            raise self._as_store_error("commit", e)

        if not guard.abandon():
            logger.warning("engine_commit_slow", timeout_sec=timeout)
            return
        future.cancel()
        wait_futures([future])
        logger.error("engine_commit_abandoned", timeout_sec=timeout)
        raise StoreTimeoutError(
            f"commit did not complete within {timeout:.2f}s",
            call="commit",
            timeout_sec=timeout,
        )

    # --- event processing ----------------------------------------------------

    @staticmethod
    def _coerce_event(user_address: str, event: CategorizedEvent | Mapping[str, Any]) -> CategorizedEvent:
        if not isinstance(event, CategorizedEvent):
            if not isinstance(event, Mapping):
                raise EventValidationError("event must be a CategorizedEvent or mapping")
            event = CategorizedEvent.from_dict(event)
        if event.user_address != user_address:
            raise EventValidationError(
                "event user_address does not match the target user",
                user_address=user_address,
                event_user_address=event.user_address,
            )
        return event

    def _is_negative(self, event: CategorizedEvent, anomalies: list[AnomalyReport]) -> bool:
        if event.risk_score >= self._config.negative_risk_cutoff:
            return True
        return any(a.severity in self._config.escalating_severities for a in anomalies)

    def process_event(
        self,
        user_address: str,
        event: CategorizedEvent | Mapping[str, Any],
        priority_hint: UpdatePriority | str = UpdatePriority.NORMAL,
    ) -> ScoreUpdateResult:
        """
        Score one categorized event for one user.

        Args:
            user_address: Target user; must match event.user_address.
            event: CategorizedEvent or a dict accepted by CategorizedEvent.from_dict.
            priority_hint: Caller's scheduling priority; negative behavior
                overrides it with immediate when escalation is enabled.

        Returns:
            ScoreUpdateResult; empty updated_dimensions when the event had no
            effect or every candidate failed the confidence gate.

        Raises:
            EventValidationError: malformed event (nothing is mutated).
            EngineNotRunningError: the engine is stopping.
            StoreError: the profile store failed or timed out.
        """
        started = time.perf_counter()
        try:
            event = self._coerce_event(user_address, event)
            try:
                priority = UpdatePriority(priority_hint)
            except ValueError as e:
                raise EventValidationError(f"Unknown priority: {priority_hint!r}") from e
        except EventValidationError:
            self._count("events_invalid")
            raise
        if self._stopping:
            raise EngineNotRunningError("Scoring engine is stopping", user_address=user_address)

        with event_context(user_address=user_address, tx_hash=event.tx_hash):
            with self._locks.lock_for(user_address):
                # stop() may have begun while this event waited for the lock
                if self._stopping:
                    raise EngineNotRunningError("Scoring engine is stopping", user_address=user_address)
                try:
                    result = self._process_locked(user_address, event, priority, started)
                except StoreError as e:
                    self._count("events_failed")
                    logger.error("engine_event_failed", error=str(e), code=e.code)
                    raise
        self._count("events_processed")
        return result

    def _schedule(
        self,
        user_address: str,
        profile: CreditProfile,
        updates: list[ScoreUpdate],
        priority: UpdatePriority,
        sla_class: SlaClass,
    ) -> str | None:
        """
        Hand committed updates to the scheduler. A rejected hand-off is kept
        in the scheduler's failure log; the committed profile stands.
        """
        try:
            return self._scheduler.schedule(user_address, profile, updates, priority, sla_class).update_id
        except SchedulerShutdownError as e:
            logger.error("engine_schedule_rejected", error=e.message, updates=len(updates))
            return None

    def _gate_view(self, profile: CreditProfile, dimension: Dimension, now: float) -> CreditProfile:
        """Profile as it would look with this event counted: one more data point, fresh."""
        view = profile.snapshot()
        dim = view.dimensions[dimension]
        dim.data_points += 1
        dim.last_calculated = now
        return view

    def _process_locked(
        self,
        user_address: str,
        event: CategorizedEvent,
        priority: UpdatePriority,
        started: float,
    ) -> ScoreUpdateResult:
        now = self._clock()
        profile, stored_history = self._load_state(user_address)
        if stored_history:
            self._trend.seed(user_address, stored_history)

        anomalies = self._anomaly.detect_anomalies(user_address, event, now_ts=now)

        if self._is_negative(event, anomalies) and self._config.immediate_escalation:
            if priority != UpdatePriority.IMMEDIATE:
                self._count("escalations")
                logger.warning(
                    "engine_immediate_escalation",
                    risk_score=event.risk_score,
                    anomalies=[a.severity for a in anomalies],
                    requested_priority=priority,
                )
            priority = UpdatePriority.IMMEDIATE

        approved: list[ScoreUpdate] = []
        for candidate in self._calculator.calculate_score_updates(profile, event):
            gate = self._confidence.calculate_confidence(
                candidate.dimension, self._gate_view(profile, candidate.dimension, now), now
            )
            if gate.confidence < self._config.min_confidence:
                self._count("gate_rejections")
                logger.info(
                    "engine_confidence_gate_rejected",
                    dimension=candidate.dimension,
                    confidence=gate.confidence,
                    min_confidence=self._config.min_confidence,
                )
                continue
            approved.append(replace(candidate, confidence=gate.confidence))

        if not approved:
            return ScoreUpdateResult(
                user_address=user_address,
                updated_dimensions=[],
                old_scores={},
                new_scores={},
                anomalies=anomalies,
                latency_sec=time.perf_counter() - started,
                confidence=0,
                priority=priority,
                sla_class=None,
            )

        updated = profile.snapshot()
        entries: list[ScoreHistory] = []
        for u in approved:
            entry = ScoreHistory(
                timestamp=now,
                dimension=u.dimension,
                score=u.new_score,
                confidence=u.confidence,
                trigger=f"{event.tx_hash}: {u.reason}",
            )
            entries.append(entry)
            dim = updated.dimensions[u.dimension]
            dim.score = u.new_score
            dim.confidence = u.confidence
            dim.data_points += 1
            dim.last_calculated = now

            analysis = self._trend.analyze_trend(self._trend.history(user_address, u.dimension) + [entry])
            dim.trend = analysis.trend
            dim.trend_strength = analysis.trend_strength
            dim.volatility = analysis.volatility
            dim.momentum = analysis.momentum
            dim.projected_score = analysis.projected_score
        updated.last_updated = now

        self._commit(updated, entries)
        for entry in entries:
            self._trend.append(user_address, entry)
        self._count("updates_applied", len(approved))

        net = sum(u.delta for u in approved)
        sla_class = SlaClass.POSITIVE if net > 0 else SlaClass.NEGATIVE
        update_id = self._schedule(user_address, updated, approved, priority, sla_class)

        latency = time.perf_counter() - started
        logger.info(
            "engine_event_processed",
            updated=[u.dimension for u in approved],
            net_delta=net,
            priority=priority,
            sla_class=sla_class,
            update_id=update_id,
            anomalies=len(anomalies),
            latency_ms=round(latency * 1000, 2),
        )
        return ScoreUpdateResult(
            user_address=user_address,
            updated_dimensions=[u.dimension for u in approved],
            old_scores={u.dimension: u.old_score for u in approved},
            new_scores={u.dimension: u.new_score for u in approved},
            anomalies=anomalies,
            latency_sec=latency,
            confidence=min(u.confidence for u in approved),
            priority=priority,
            sla_class=sla_class,
            update_id=update_id,
            updates=approved,
        )

    def update_score_dimension(
        self,
        user_address: str,
        dimension: Dimension | str,
        impact: float = 1.0,
        risk_score: float = 0.5,
        data_weight: float = 1.0,
        protocol: str | None = None,
        priority_hint: UpdatePriority | str = UpdatePriority.NORMAL,
    ) -> ScoreUpdateResult:
        """Score a synthetic single-dimension event (manual adjustments and backfills)."""
        dim = Dimension.parse(dimension)
        event = CategorizedEvent(
            tx_hash=f"manual-{uuid.uuid4().hex}",
            user_address=user_address,
            impacts={dim: impact},
            risk_score=risk_score,
            data_weight=data_weight,
            protocol=protocol,
            timestamp=self._clock(),
        )
        return self.process_event(user_address, event, priority_hint)

    # --- publication -----------------------------------------------------------

    def publish(self, item: ScheduledUpdate) -> None:
        """
        Deliver a scheduled item's updates to every subscriber.

        A subscriber error fails the whole attempt with PublishError so the
        scheduler retries it; delivery is therefore at-least-once.
        """
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for update in item.updates:
            for callback in subscribers:
                try:
                    callback(item.user_address, update)
                except Exception as e:
                    raise PublishError(
                        f"Subscriber failed for {item.user_address}: {e}",
                        update_id=item.update_id,
                    ) from e
        self._count("published_updates", len(item.updates))

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register callback(user_address, update). Returns an unsubscribe function."""
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # --- queries -----------------------------------------------------------------

    def get_profile(self, user_address: str) -> CreditProfile:
        """Snapshot of the stored profile; a default (unsaved) profile for unknown users."""
        profile = self._store_call("load_profile", lambda: self._store.load_profile(user_address))
        if profile is None:
            return CreditProfile.new(user_address, self._clock())
        return profile.snapshot()

    def get_history(
        self,
        user_address: str,
        dimension: Dimension | str | None = None,
        since: float | None = None,
        until: float | None = None,
    ) -> list[ScoreHistory]:
        dim = Dimension.parse(dimension) if dimension is not None else None
        return self._store_call(
            "load_history",
            lambda: self._store.load_history(user_address, dim, since, until),
        )

    def get_confidence_details(self, user_address: str, dimension: Dimension | str) -> ConfidenceResult:
        return self._confidence.calculate_confidence(
            Dimension.parse(dimension), self.get_profile(user_address), self._clock()
        )

    def get_confidence(self, user_address: str, dimension: Dimension | str) -> int:
        return self.get_confidence_details(user_address, dimension).confidence

    def get_anomalies(self, time_window_sec: float = DEFAULT_ANOMALY_WINDOW_SEC) -> list[AnomalyReport]:
        return self._anomaly.get_recent_anomalies(time_window_sec, now_ts=self._clock())

    def get_profile_analytics(self, user_address: str) -> dict[str, Any]:
        """Overall confidence, data quality, per-dimension confidence and trends, recommendations."""
        now = self._clock()
        profile = self.get_profile(user_address)
        overall = self._confidence.overall_profile_confidence(profile, now)
        dimensions: dict[str, Any] = {}
        for dim in Dimension:
            dimensions[dim.value] = {
                "score": profile.dimensions[dim].score,
                "confidence": overall.dimensions[dim].to_dict(),
                "trend": self._trend.analyze(user_address, dim).to_dict(),
                "historical": [
                    h.to_dict() for h in self._trend.historical_analysis(user_address, dim, now_ts=now)
                ],
            }
        return {
            "user_address": user_address,
            "overall_confidence": overall.overall_confidence,
            "data_quality": overall.data_quality.value,
            "recommendations": overall.recommendations,
            "dimensions": dimensions,
            "behavior": self._anomaly.behavior_summary(user_address),
            "generated_at": now,
        }

    def get_status(self) -> dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        with self._subscribers_lock:
            subscribers = len(self._subscribers)
        return {
            "running": self._running,
            "stopping": self._stopping,
            **stats,
            "anomalies_detected": self._anomaly.total_detected,
            "subscribers": subscribers,
            "scheduler": self._scheduler.get_status(),
            "sla_violations": [v.to_dict() for v in self._scheduler.get_sla_violations()[-20:]],
            "scheduling_failures": [f.to_dict() for f in self._scheduler.get_failures()[-20:]],
        }

    # --- lifecycle ----------------------------------------------------------------

    def start(self) -> None:
        self._stopping = False
        self._scheduler.start()
        self._running = True
        logger.info("engine_started", lock_stripes=len(self._locks))

    def stop(self, drain: bool = False) -> None:
        """
        Reject new events, wait for in-flight events to finish, then stop the
        scheduler (which rejects further schedule() calls and joins its timer).
        """
        self._stopping = True
        with self._locks.all_locks():
            pass
        self._scheduler.stop(drain=drain)
        self._running = False
        logger.info("engine_stopped", drain=drain)

    def close(self) -> None:
        if not self._stopping:
            self.stop()
        self._io.shutdown(wait=False)
        self._store.close()
