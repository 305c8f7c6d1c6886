from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional

from sessionguard.clock import Clock, SystemClock, ensure_utc
from sessionguard.logging import get_logger
from sessionguard.service.alerts import AlertNotifier
from sessionguard.storage.models import ActivityRecord, ClientInfo, RiskLevel, SecurityAlert

logger = get_logger(__name__)

LOGIN = "login"
REGISTRATION = "registration"

RAPID_LOGIN_WINDOW = timedelta(minutes=5)
RAPID_LOGIN_SAMPLE = 3
UNUSUAL_HOUR_SAMPLE = 20
UNUSUAL_HOUR_MIN_HISTORY = 5
UNUSUAL_HOUR_DEVIATION = 6
FAILURE_SAMPLE = 5
FAILURE_THRESHOLD = 3
ALERT_LOG_LIMIT = 100


class ActivityAnalyzer:
    """Per-user activity history with heuristic anomaly detection.

    Each user keeps a ring buffer of recent activity. A successful login is
    compared against the records that came before it; every finding is kept
    in the user's alert log, and medium or high findings are handed to the
    notifier.
    """

    def __init__(
        self,
        *,
        history_limit: int = 50,
        retention: timedelta = timedelta(hours=24),
        enabled: bool = True,
        clock: Optional[Clock] = None,
        notifier: Optional[AlertNotifier] = None,
    ) -> None:
        self.history_limit = history_limit
        self.retention = retention
        self.enabled = enabled
        self.clock: Clock = clock or SystemClock()
        self.notifier = notifier
        self._activity: Dict[str, Deque[ActivityRecord]] = {}
        self._alerts: Dict[str, Deque[SecurityAlert]] = {}
        self._lock = threading.Lock()

    def log_activity(
        self,
        subject_id: str,
        kind: str,
        client: ClientInfo,
        success: bool = True,
        timestamp: Optional[datetime] = None,
    ) -> List[SecurityAlert]:
        if not self.enabled:
            return []
        record = ActivityRecord(
            kind=kind,
            timestamp=ensure_utc(timestamp) if timestamp else self.clock.now(),
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            success=success,
            location=client.location,
        )
        with self._lock:
            buffer = self._activity.setdefault(subject_id, deque(maxlen=self.history_limit))
            prior = list(buffer)
            buffer.append(record)
            alerts = self._analyze(subject_id, record, prior)
            if alerts:
                log = self._alerts.setdefault(subject_id, deque(maxlen=ALERT_LOG_LIMIT))
                log.extend(alerts)

        logger.info(
            "user_activity_logged",
            user_id=subject_id,
            activity=kind,
            ip_address=client.ip_address,
            success=success,
        )
        for alert in alerts:
            logger.warning(
                "security_alert_raised",
                user_id=subject_id,
                alert_kind=alert.kind,
                risk_level=alert.risk_level.value,
            )
            if alert.dispatchable and self.notifier:
                self.notifier.notify(alert)
        return alerts

    def _analyze(
        self, subject_id: str, current: ActivityRecord, prior: List[ActivityRecord]
    ) -> List[SecurityAlert]:
        if current.kind != LOGIN or not current.success:
            return []
        prior_logins = [r for r in prior if r.kind == LOGIN]
        prior_successes = [r for r in prior_logins if r.success]
        context = {
            "ip_address": current.ip_address,
            "user_agent": current.user_agent,
            "location": current.location or "Unknown",
        }
        alerts: List[SecurityAlert] = []

        def raise_alert(kind: str, level: RiskLevel, message: str, **extra: Any) -> None:
            alerts.append(
                SecurityAlert(
                    subject_id=subject_id,
                    kind=kind,
                    risk_level=level,
                    message=message,
                    context={**context, **extra},
                    created_at=current.timestamp,
                )
            )

        known_locations = {r.location for r in prior_successes if r.location}
        if (
            current.location
            and len(known_locations) >= 2
            and current.location not in known_locations
        ):
            raise_alert(
                "new_location",
                RiskLevel.MEDIUM,
                f"Login detected from a new location: {current.location}",
            )

        sample = (prior_successes + [current])[-RAPID_LOGIN_SAMPLE:]
        if len(sample) >= 2 and len({r.ip_address for r in sample}) >= 2:
            if current.timestamp - sample[0].timestamp <= RAPID_LOGIN_WINDOW:
                raise_alert(
                    "rapid_multi_ip",
                    RiskLevel.HIGH,
                    "Multiple logins detected from different IP addresses within 5 minutes",
                    ip_addresses=sorted({r.ip_address for r in sample}),
                )

        history = prior_successes[-UNUSUAL_HOUR_SAMPLE:]
        if len(history) >= UNUSUAL_HOUR_MIN_HISTORY:
            mean_hour = sum(r.timestamp.hour for r in history) / len(history)
            if abs(current.timestamp.hour - mean_hour) > UNUSUAL_HOUR_DEVIATION:
                raise_alert(
                    "unusual_hour",
                    RiskLevel.LOW,
                    f"Login at unusual time: {current.timestamp.hour}:00 UTC",
                )

        recent_attempts = prior_logins[-FAILURE_SAMPLE:]
        failed = sum(1 for r in recent_attempts if not r.success)
        if failed >= FAILURE_THRESHOLD:
            raise_alert(
                "success_after_failures",
                RiskLevel.MEDIUM,
                f"Successful login after {failed} failed attempts",
                failed_attempts=failed,
            )
        return alerts

    def recent_activity(self, subject_id: str) -> List[ActivityRecord]:
        with self._lock:
            return list(self._activity.get(subject_id, ()))

    def recent_alerts(self, subject_id: str) -> List[SecurityAlert]:
        with self._lock:
            return list(self._alerts.get(subject_id, ()))

    def cleanup(self) -> int:
        """Drop activity older than the retention window; returns users forgotten."""
        threshold = self.clock.now() - self.retention
        forgotten = 0
        with self._lock:
            for subject_id in list(self._activity):
                kept = [r for r in self._activity[subject_id] if r.timestamp >= threshold]
                if kept:
                    self._activity[subject_id] = deque(kept, maxlen=self.history_limit)
                else:
                    del self._activity[subject_id]
                    self._alerts.pop(subject_id, None)
                    forgotten += 1
        return forgotten

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "monitored_users": len(self._activity),
                "alerting_users": len(self._alerts),
                "monitoring_enabled": self.enabled,
            }
