"""
Rule-based anomaly detection for per-user event behavior.

Flags suspicious volume, unusual transaction frequency and clusters of
high-risk events, each compared against the user's own history. Reports
are logged for manual review and kept in a bounded review log; nothing is
auto-enforced. Thresholds are configurable.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from backend_credit.analysis_engine.models import CategorizedEvent
from backend_credit.credit_logging import get_logger

logger = get_logger(__name__)

HOUR_SEC = 3600

DEFAULT_WINDOW_SIZE = 100
DEFAULT_LOG_LIMIT = 1000
DEFAULT_VOLUME_RATIO = 10.0
DEFAULT_VOLUME_WINDOW_SEC = 24 * HOUR_SEC
DEFAULT_FREQUENCY_RATIO = 5.0
DEFAULT_FREQUENCY_WINDOW_SEC = HOUR_SEC
DEFAULT_FREQUENCY_MIN_EVENTS = 3
DEFAULT_FRAUD_RISK_CUTOFF = 0.8
DEFAULT_FRAUD_WINDOW_SEC = 30 * 60
DEFAULT_FRAUD_CLUSTER_SIZE = 3
DEFAULT_FRAUD_RISK_BASE = 0.7
DEFAULT_RECENT_WINDOW_SEC = 24 * HOUR_SEC


class AnomalySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = (
    AnomalySeverity.LOW,
    AnomalySeverity.MEDIUM,
    AnomalySeverity.HIGH,
    AnomalySeverity.CRITICAL,
)


class AnomalyType(str, Enum):
    SUSPICIOUS_VOLUME = "suspicious_volume"
    UNUSUAL_PATTERN = "unusual_pattern"
    POTENTIAL_FRAUD = "potential_fraud"


@dataclass(frozen=True)
class AnomalyReport:
    """
    Single anomaly for manual review.

    Tied to the user and the transactions that triggered it so reviewers
    can trace it back to the ledger.
    """

    type: AnomalyType
    severity: AnomalySeverity
    description: str
    """Human-readable explanation (ratio or cluster size)."""
    affected_transactions: tuple[str, ...]
    timestamp: float
    user_address: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "affected_transactions": list(self.affected_transactions),
            "timestamp": self.timestamp,
            "user_address": self.user_address,
        }


@dataclass(frozen=True)
class AnomalyPattern:
    type: AnomalyType
    threshold: float
    time_window_sec: float
    description: str


@dataclass
class AnomalyConfig:
    """
    Configurable thresholds for anomaly rules.

    Ratios compare the recent window against the user's lifetime average;
    the fraud rule counts events at or above fraud_risk_cutoff.
    """

    volume_ratio: float = DEFAULT_VOLUME_RATIO
    volume_window_sec: float = DEFAULT_VOLUME_WINDOW_SEC
    frequency_ratio: float = DEFAULT_FREQUENCY_RATIO
    frequency_window_sec: float = DEFAULT_FREQUENCY_WINDOW_SEC
    # A burst needs at least this many events inside the frequency window
    frequency_min_events: int = DEFAULT_FREQUENCY_MIN_EVENTS
    fraud_risk_cutoff: float = DEFAULT_FRAUD_RISK_CUTOFF
    fraud_window_sec: float = DEFAULT_FRAUD_WINDOW_SEC
    fraud_cluster_size: int = DEFAULT_FRAUD_CLUSTER_SIZE
    # Average risk of a cluster is bucketed against this base
    fraud_risk_base: float = DEFAULT_FRAUD_RISK_BASE
    window_size: int = DEFAULT_WINDOW_SIZE
    log_limit: int = DEFAULT_LOG_LIMIT

    def patterns(self) -> list[AnomalyPattern]:
        return [
            AnomalyPattern(
                AnomalyType.SUSPICIOUS_VOLUME,
                self.volume_ratio,
                self.volume_window_sec,
                "Transaction volume significantly higher than normal",
            ),
            AnomalyPattern(
                AnomalyType.UNUSUAL_PATTERN,
                self.frequency_ratio,
                self.frequency_window_sec,
                "Transaction frequency significantly higher than normal",
            ),
            AnomalyPattern(
                AnomalyType.POTENTIAL_FRAUD,
                self.fraud_risk_cutoff,
                self.fraud_window_sec,
                "Multiple high-risk transactions in short timeframe",
            ),
        ]


@dataclass(frozen=True)
class _WindowEntry:
    tx_hash: str
    timestamp: float
    value: float
    risk: float


@dataclass
class BehaviorWindow:
    """Rolling per-user window plus lifetime aggregates."""

    user_address: str
    entries: deque[_WindowEntry]
    first_seen: float
    last_updated: float
    transaction_count: int = 0
    total_volume: float = 0.0
    total_risk: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def average_volume(self) -> float:
        return self.total_volume / self.transaction_count if self.transaction_count else 0.0

    @property
    def average_risk(self) -> float:
        return self.total_risk / self.transaction_count if self.transaction_count else 0.0


def severity_for_ratio(actual: float, threshold: float) -> AnomalySeverity:
    """Bucket how far actual exceeds threshold: >=5x critical, >=3x high, >=2x medium, else low."""
    ratio = actual / threshold if threshold > 0 else 0.0
    if ratio >= 5:
        return AnomalySeverity.CRITICAL
    if ratio >= 3:
        return AnomalySeverity.HIGH
    if ratio >= 2:
        return AnomalySeverity.MEDIUM
    return AnomalySeverity.LOW


def _check_suspicious_volume(
    window: BehaviorWindow,
    recent: list[_WindowEntry],
    pattern: AnomalyPattern,
    config: AnomalyConfig,
    now_ts: float,
) -> AnomalyReport | None:
    """Recent-window volume against the lifetime average volume per transaction."""
    if not recent:
        return None
    normal = window.average_volume
    if normal <= 0:
        return None
    recent_volume = sum(e.value for e in recent)
    if recent_volume <= normal * pattern.threshold:
        return None
    ratio = recent_volume / normal
    return AnomalyReport(
        type=AnomalyType.SUSPICIOUS_VOLUME,
        severity=severity_for_ratio(ratio, pattern.threshold),
        description=f"Volume {round(ratio)}x higher than normal",
        affected_transactions=tuple(e.tx_hash for e in recent),
        timestamp=now_ts,
        user_address=window.user_address,
    )


def _check_unusual_pattern(
    window: BehaviorWindow,
    recent: list[_WindowEntry],
    pattern: AnomalyPattern,
    config: AnomalyConfig,
    now_ts: float,
) -> AnomalyReport | None:
    """Recent per-hour frequency against lifetime per-hour frequency."""
    if len(recent) < config.frequency_min_events:
        return None
    span = max(now_ts - window.first_seen, pattern.time_window_sec)
    normal = window.transaction_count / (span / HOUR_SEC)
    if normal <= 0:
        return None
    recent_freq = len(recent) / (pattern.time_window_sec / HOUR_SEC)
    if recent_freq <= normal * pattern.threshold:
        return None
    ratio = recent_freq / normal
    return AnomalyReport(
        type=AnomalyType.UNUSUAL_PATTERN,
        severity=severity_for_ratio(ratio, pattern.threshold),
        description=f"Transaction frequency {round(ratio)}x higher than normal",
        affected_transactions=tuple(e.tx_hash for e in recent),
        timestamp=now_ts,
        user_address=window.user_address,
    )


def _check_potential_fraud(
    window: BehaviorWindow,
    recent: list[_WindowEntry],
    pattern: AnomalyPattern,
    config: AnomalyConfig,
    now_ts: float,
) -> AnomalyReport | None:
    """Cluster of events at or above the fraud risk cutoff inside the window."""
    risky = [e for e in recent if e.risk >= pattern.threshold]
    size = config.fraud_cluster_size
    if len(risky) < size:
        return None
    avg_risk = sum(e.risk for e in risky) / len(risky)
    by_risk = severity_for_ratio(avg_risk, config.fraud_risk_base)
    if len(risky) >= size * 2:
        by_size = AnomalySeverity.CRITICAL
    else:
        by_size = AnomalySeverity.HIGH
    severity = max(by_risk, by_size, key=lambda s: s.rank)
    return AnomalyReport(
        type=AnomalyType.POTENTIAL_FRAUD,
        severity=severity,
        description=f"{len(risky)} high-risk transactions detected in short timeframe",
        affected_transactions=tuple(e.tx_hash for e in risky),
        timestamp=now_ts,
        user_address=window.user_address,
    )


_CHECKS: dict[AnomalyType, Callable[..., AnomalyReport | None]] = {
    AnomalyType.SUSPICIOUS_VOLUME: _check_suspicious_volume,
    AnomalyType.UNUSUAL_PATTERN: _check_unusual_pattern,
    AnomalyType.POTENTIAL_FRAUD: _check_potential_fraud,
}


class AnomalyDetector:
    """
    Per-user rolling behavior windows and the anomaly review log.

    Each user's window has its own lock, so events for different users are
    checked in parallel; the review log and counters share one lock.
    """

    def __init__(self, config: AnomalyConfig | None = None) -> None:
        self._config = config or AnomalyConfig()
        self._patterns = self._config.patterns()
        self._windows: dict[str, BehaviorWindow] = {}
        self._windows_lock = threading.Lock()
        self._log: deque[AnomalyReport] = deque(maxlen=self._config.log_limit)
        self._log_lock = threading.Lock()
        self._total_detected = 0

    @property
    def config(self) -> AnomalyConfig:
        return self._config

    @property
    def total_detected(self) -> int:
        with self._log_lock:
            return self._total_detected

    def _window_for(self, user_address: str, now_ts: float) -> BehaviorWindow:
        with self._windows_lock:
            window = self._windows.get(user_address)
            if window is None:
                window = BehaviorWindow(
                    user_address=user_address,
                    entries=deque(maxlen=self._config.window_size),
                    first_seen=now_ts,
                    last_updated=now_ts,
                )
                self._windows[user_address] = window
            return window

    def detect_anomalies(
        self,
        user_address: str,
        event: CategorizedEvent,
        now_ts: float | None = None,
    ) -> list[AnomalyReport]:
        """
        Record the event in the user's window and run every pattern check.

        Args:
            user_address: Owner of the behavior window.
            event: Validated event; its value and risk feed the window.
            now_ts: Reference time for the pattern windows (defaults to time.time()).

        Returns:
            Reports for every triggered pattern; empty when behavior is normal.
        """
        now_ts = now_ts if now_ts is not None else time.time()
        window = self._window_for(user_address, min(now_ts, event.timestamp))
        reports: list[AnomalyReport] = []

        with window.lock:
            window.entries.append(
                _WindowEntry(
                    tx_hash=event.tx_hash,
                    timestamp=event.timestamp,
                    value=event.value_eth,
                    risk=event.risk_score,
                )
            )
            window.transaction_count += 1
            window.total_volume += event.value_eth
            window.total_risk += event.risk_score
            window.last_updated = now_ts

            for pattern in self._patterns:
                check = _CHECKS[pattern.type]
                start = now_ts - pattern.time_window_sec
                recent = [e for e in window.entries if e.timestamp >= start]
                try:
                    report = check(window, recent, pattern, self._config, now_ts)
                    if report is not None:
                        reports.append(report)
                except Exception as e:
                    logger.warning(
                        "anomaly_rule_failed",
                        rule=check.__name__,
                        user_address=user_address,
                        error=str(e),
                    )

        if reports:
            self._record(reports)
        return reports

    def _record(self, reports: list[AnomalyReport]) -> None:
        with self._log_lock:
            self._log.extend(reports)
            self._total_detected += len(reports)
        for report in reports:
            logger.warning(
                "anomaly_detected",
                user_address=report.user_address,
                anomaly_type=report.type,
                severity=report.severity,
                description=report.description,
                affected_transactions=len(report.affected_transactions),
            )

    def get_recent_anomalies(
        self,
        time_window_sec: float = DEFAULT_RECENT_WINDOW_SEC,
        now_ts: float | None = None,
    ) -> list[AnomalyReport]:
        now_ts = now_ts if now_ts is not None else time.time()
        cutoff = now_ts - time_window_sec
        with self._log_lock:
            return [r for r in self._log if r.timestamp >= cutoff]

    def statistics(self, now_ts: float | None = None) -> dict[str, Any]:
        """Counts by type and severity over the review log, plus the last-24h count."""
        now_ts = now_ts if now_ts is not None else time.time()
        by_type = {t.value: 0 for t in AnomalyType}
        by_severity = {s.value: 0 for s in AnomalySeverity}
        with self._log_lock:
            reports = list(self._log)
            total = self._total_detected
        for r in reports:
            by_type[r.type.value] += 1
            by_severity[r.severity.value] += 1
        recent = sum(1 for r in reports if r.timestamp >= now_ts - DEFAULT_RECENT_WINDOW_SEC)
        return {
            "total_detected": total,
            "by_type": by_type,
            "by_severity": by_severity,
            "recent_count": recent,
        }

    def behavior_summary(self, user_address: str) -> dict[str, Any] | None:
        with self._windows_lock:
            window = self._windows.get(user_address)
        if window is None:
            return None
        with window.lock:
            return {
                "user_address": user_address,
                "transaction_count": window.transaction_count,
                "total_volume": window.total_volume,
                "average_volume": window.average_volume,
                "average_risk": window.average_risk,
                "window_size": len(window.entries),
                "first_seen": window.first_seen,
                "last_updated": window.last_updated,
            }

    def clear_user(self, user_address: str) -> bool:
        with self._windows_lock:
            return self._windows.pop(user_address, None) is not None
