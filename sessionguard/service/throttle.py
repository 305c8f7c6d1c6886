from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set, Tuple

from sessionguard.clock import Clock, SystemClock
from sessionguard.logging import get_logger
from sessionguard.service.alerts import AlertNotifier
from sessionguard.storage.models import LoginAttemptRecord, RiskLevel, SecurityAlert

logger = get_logger(__name__)


@dataclass(frozen=True)
class ThrottleStatus:
    blocked: bool
    attempts_left: int
    blocked_until: Optional[datetime] = None

    def retry_after(self, now: datetime) -> int:
        if not self.blocked_until:
            return 0
        return max(1, int((self.blocked_until - now).total_seconds()))


class LoginThrottle:
    """Counts failed logins per (ip, identity) and blocks after a threshold.

    A key is blocked from the failure that reaches ``max_attempts`` until
    ``lockout`` after it. The first failure after the block lapses starts a
    fresh count.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        lockout: timedelta = timedelta(minutes=15),
        retention: timedelta = timedelta(hours=24),
        enabled: bool = True,
        clock: Optional[Clock] = None,
        notifier: Optional[AlertNotifier] = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.lockout = lockout
        self.retention = retention
        self.enabled = enabled
        self.clock: Clock = clock or SystemClock()
        self.notifier = notifier
        self._records: Dict[Tuple[str, str], LoginAttemptRecord] = {}
        self._suspicious_ips: Set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _key(ip: str, identity: str) -> Tuple[str, str]:
        return (ip or "unknown", (identity or "").strip().casefold())

    def _status(self, record: Optional[LoginAttemptRecord], now: datetime) -> ThrottleStatus:
        if not record:
            return ThrottleStatus(blocked=False, attempts_left=self.max_attempts)
        if record.blocked_until and now <= record.blocked_until:
            return ThrottleStatus(blocked=True, attempts_left=0, blocked_until=record.blocked_until)
        if record.blocked_until:
            # Lockout lapsed; the next failure restarts the count
            return ThrottleStatus(blocked=False, attempts_left=self.max_attempts)
        return ThrottleStatus(
            blocked=False, attempts_left=max(0, self.max_attempts - record.count)
        )

    def check(self, ip: str, identity: str) -> ThrottleStatus:
        if not self.enabled:
            return ThrottleStatus(blocked=False, attempts_left=self.max_attempts)
        with self._lock:
            return self._status(self._records.get(self._key(ip, identity)), self.clock.now())

    def record_failure(self, ip: str, identity: str) -> ThrottleStatus:
        if not self.enabled:
            return ThrottleStatus(blocked=False, attempts_left=self.max_attempts)
        key = self._key(ip, identity)
        now = self.clock.now()
        alert: Optional[SecurityAlert] = None
        with self._lock:
            record = self._records.setdefault(key, LoginAttemptRecord())
            if record.blocked_until and now > record.blocked_until:
                record.count = 0
                record.blocked_until = None
                record.alerted = False
            record.count += 1
            record.last_attempt_at = now
            if record.count >= self.max_attempts and not record.blocked_until:
                record.blocked_until = now + self.lockout
                self._suspicious_ips.add(key[0])
                logger.warning(
                    "login_throttle_blocked",
                    ip_address=key[0],
                    email=key[1],
                    attempts=record.count,
                    blocked_until=record.blocked_until.isoformat(),
                )
                if not record.alerted:
                    record.alerted = True
                    alert = SecurityAlert(
                        subject_id=key[1],
                        kind="login_abuse",
                        risk_level=RiskLevel.HIGH,
                        message=f"Multiple failed login attempts detected from IP: {key[0]}",
                        context={"ip_address": key[0], "attempts": record.count},
                        created_at=now,
                    )
            status = self._status(record, now)
        if alert and self.notifier:
            self.notifier.notify(alert)
        return status

    def reset(self, ip: str, identity: str) -> None:
        with self._lock:
            self._records.pop(self._key(ip, identity), None)

    def is_suspicious_ip(self, ip: str) -> bool:
        with self._lock:
            return ip in self._suspicious_ips

    def cleanup(self) -> int:
        """Forget keys idle longer than the retention window."""
        threshold = self.clock.now() - self.retention
        with self._lock:
            stale = [
                key
                for key, record in self._records.items()
                if record.last_attempt_at is None or record.last_attempt_at < threshold
            ]
            for key in stale:
                self._records.pop(key, None)
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "suspicious_ips": len(self._suspicious_ips),
                "active_login_attempts": len(self._records),
                "monitoring_enabled": self.enabled,
            }
