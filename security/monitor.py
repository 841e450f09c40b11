"""
security/monitor.py -- Security event log and alert detector.

SecurityMonitor ingests SecurityEvents from the auth layer, appends them to an
in-memory log and to security-events.log (JSON lines), and evaluates the
detection rules synchronously on every ingested event:

  failed_login      >= 5 from one IP within 5 minutes -> HIGH   BRUTE_FORCE_ATTEMPT
  csrf_attempt      any                                -> HIGH   CSRF_ATTACK
  account_locked    any                                -> MEDIUM ACCOUNT_LOCKOUT
  oauth_suspicious  any                                -> MEDIUM OAUTH_ANOMALY

Alerts are appended to security-alerts.log and logged at WARNING. The monitor
is informational, not a circuit breaker: nothing it does alters the request
that produced the event, and disk errors are logged instead of raised.

The brute-force window trails the timestamp of the event being ingested, so
replaying historical events gives the same answer as live traffic.

Thread safety: FastAPI runs sync endpoints in a threadpool, so record() holds
a lock across append + evaluate + write. Each log line is written with a
single write() call on a file opened in append mode.

One instance is created by the API lifespan and held on app.state.monitor.
Tests construct their own.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from pathlib import Path

from security.models import AlertLevel, AlertType, EventType, SecurityAlert, SecurityEvent

logger = logging.getLogger("todomaster.security")

EVENTS_FILE = "security-events.log"
ALERTS_FILE = "security-alerts.log"

BRUTE_FORCE_THRESHOLD = 5
BRUTE_FORCE_WINDOW = timedelta(minutes=5)

# In-memory cap; the durable log keeps full history.
_MAX_IN_MEMORY = 100_000


def _generate_alert_id() -> str:
    return f"ALERT-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


class SecurityMonitor:
    """Append-only event log with synchronous alert detection.

    Usage:
        monitor = SecurityMonitor("logs")
        monitor.emit(EventType.failed_login, ip="10.0.0.5", email="a@x.com")
        print(monitor.report(window_hours=24))

    log_dir=None keeps everything in memory (used by the CLI when replaying
    logs, and handy in tests).
    """

    def __init__(
        self,
        log_dir: str | Path | None = None,
        brute_force_threshold: int = BRUTE_FORCE_THRESHOLD,
        brute_force_window: timedelta = BRUTE_FORCE_WINDOW,
    ) -> None:
        self.log_dir = Path(log_dir) if log_dir is not None else None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        self.brute_force_threshold = brute_force_threshold
        self.brute_force_window = brute_force_window
        self.events: deque[SecurityEvent] = deque(maxlen=_MAX_IN_MEMORY)
        self.alerts: deque[SecurityAlert] = deque(maxlen=_MAX_IN_MEMORY)
        self._failures_by_ip: dict[str, deque[datetime]] = {}
        self._last_sweep: datetime | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def record(self, event: SecurityEvent) -> list[SecurityAlert]:
        """Append an event, persist it, and return any alerts it triggered."""
        with self._lock:
            self.events.append(event)
            self._write(EVENTS_FILE, event.to_dict())
            alerts = self._evaluate(event)
            for alert in alerts:
                self.alerts.append(alert)
                self._write(ALERTS_FILE, alert.to_dict())
        for alert in alerts:
            logger.warning("SECURITY ALERT [%s] %s: %s", alert.level.value, alert.type.value, alert.message)
        return alerts

    def emit(self, event_type: EventType | str, **details) -> list[SecurityAlert]:
        """Build an event stamped with the current time and record it."""
        return self.record(SecurityEvent(type=EventType(event_type), details=details))

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _evaluate(self, event: SecurityEvent) -> list[SecurityAlert]:
        alerts: list[SecurityAlert] = []

        if event.type is EventType.failed_login and event.ip:
            attempts = self._count_recent_failures(event.ip, event.timestamp)
            if attempts >= self.brute_force_threshold:
                alerts.append(
                    self._alert(
                        AlertLevel.HIGH,
                        AlertType.BRUTE_FORCE_ATTEMPT,
                        f"Multiple failed login attempts from IP: {event.ip}",
                        {"attempts": attempts, "ip": event.ip},
                        event.timestamp,
                    )
                )

        elif event.type is EventType.account_locked:
            alerts.append(
                self._alert(
                    AlertLevel.MEDIUM,
                    AlertType.ACCOUNT_LOCKOUT,
                    f"Account locked due to multiple failed attempts: {event.details.get('email')}",
                    {"email": event.details.get("email"), "ip": event.ip},
                    event.timestamp,
                )
            )

        elif event.type is EventType.csrf_attempt:
            alerts.append(
                self._alert(
                    AlertLevel.HIGH,
                    AlertType.CSRF_ATTACK,
                    "CSRF attack attempt detected",
                    {"ip": event.ip, "user_agent": event.details.get("user_agent")},
                    event.timestamp,
                )
            )

        elif event.type is EventType.oauth_suspicious:
            alerts.append(
                self._alert(
                    AlertLevel.MEDIUM,
                    AlertType.OAUTH_ANOMALY,
                    "Suspicious OAuth activity detected",
                    dict(event.details),
                    event.timestamp,
                )
            )

        return alerts

    def _count_recent_failures(self, ip: str, at: datetime) -> int:
        """Add one failure for ip at `at` and return the count inside the trailing window."""
        if self._last_sweep is None or at - self._last_sweep >= self.brute_force_window:
            self._sweep_failures(at)
        window = self._failures_by_ip.setdefault(ip, deque())
        window.append(at)
        while window and at - window[0] >= self.brute_force_window:
            window.popleft()
        return len(window)

    def _sweep_failures(self, at: datetime) -> None:
        """Forget IPs whose newest failure has left the window. Runs at most once per window."""
        self._last_sweep = at
        stale = [
            ip for ip, window in self._failures_by_ip.items() if not window or at - window[-1] >= self.brute_force_window
        ]
        for ip in stale:
            del self._failures_by_ip[ip]

    def forget_stale_failures(self, now: datetime | None = None) -> int:
        """Drop brute-force counters that have gone quiet. Returns how many IPs are still tracked."""
        with self._lock:
            self._sweep_failures(now or datetime.now(timezone.utc))
            return len(self._failures_by_ip)

    @staticmethod
    def _alert(level, alert_type, message, details, at) -> SecurityAlert:
        return SecurityAlert(
            id=_generate_alert_id(),
            level=level,
            type=alert_type,
            message=message,
            details=details,
            timestamp=at,
        )

    # ------------------------------------------------------------------
    # Durable sink
    # ------------------------------------------------------------------

    def _write(self, filename: str, record: dict) -> None:
        if self.log_dir is None:
            return
        line = json.dumps(record, default=str) + "\n"
        try:
            with (self.log_dir / filename).open("a", encoding="utf-8") as fh:
                fh.write(line)
        except OSError:
            # The request that produced this event must not fail because of it.
            logger.exception("Failed to write security log %s", filename)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def recent_events(self, hours: float = 24, now: datetime | None = None) -> list[SecurityEvent]:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=hours)
        with self._lock:
            return [e for e in self.events if e.timestamp > cutoff]

    def recent_alerts(self, hours: float = 24, now: datetime | None = None) -> list[SecurityAlert]:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=hours)
        with self._lock:
            return [a for a in self.alerts if a.timestamp > cutoff]

    def report(self, window_hours: float = 24, now: datetime | None = None) -> dict:
        """Aggregate counts over the trailing window for operational visibility."""
        now = now or datetime.now(timezone.utc)
        events = self.recent_events(window_hours, now)
        alerts = self.recent_alerts(window_hours, now)
        counts = Counter(e.type.value for e in events)
        return {
            "generated": now.isoformat(),
            "window_hours": window_hours,
            "summary": {
                "total_events": len(events),
                "total_alerts": len(alerts),
                "high_priority_alerts": sum(1 for a in alerts if a.level is AlertLevel.HIGH),
                "medium_priority_alerts": sum(1 for a in alerts if a.level is AlertLevel.MEDIUM),
            },
            "top_events": counts.most_common(10),
            "recent_alerts": [a.to_dict() for a in alerts],
        }

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    @classmethod
    def from_logs(cls, log_dir: str | Path) -> "SecurityMonitor":
        """Rebuild an in-memory view from the durable logs without re-alerting.

        Malformed lines are skipped with a warning. The returned monitor does
        not write anywhere.
        """
        log_dir = Path(log_dir)
        monitor = cls(log_dir=None)
        for record in _read_json_lines(log_dir / EVENTS_FILE):
            try:
                monitor.events.append(SecurityEvent.from_dict(record))
            except (KeyError, ValueError):
                logger.warning("Skipping malformed security event: %r", record)
        for record in _read_json_lines(log_dir / ALERTS_FILE):
            try:
                monitor.alerts.append(SecurityAlert.from_dict(record))
            except (KeyError, ValueError):
                logger.warning("Skipping malformed security alert: %r", record)
        return monitor


def _read_json_lines(path: Path) -> list[dict]:
    if not path.is_file():
        return []
    records: list[dict] = []
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping unparseable line %d in %s", lineno, path)
    return records
