"""Unit tests for security/monitor.py -- event log, detection rules, reports.

Covers:
- Brute force: 5 failures from one IP inside 5 minutes -> exactly one HIGH alert;
  the same 5 spread over more than 5 minutes -> none; other IPs don't count
- csrf_attempt -> HIGH CSRF_ATTACK, account_locked -> MEDIUM ACCOUNT_LOCKOUT,
  oauth_suspicious -> MEDIUM OAUTH_ANOMALY
- Events and alerts land in the JSON-lines logs; from_logs() rebuilds the view
- Control characters in details are stripped before they reach the logs
- report() counts by severity and type within the window
"""

import json
from datetime import datetime, timedelta, timezone

from security.models import AlertLevel, AlertType, EventType, SecurityEvent
from security.monitor import ALERTS_FILE, EVENTS_FILE, SecurityMonitor

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _failure(ip: str, at: datetime) -> SecurityEvent:
    return SecurityEvent(type=EventType.failed_login, details={"ip": ip, "email": "bob@example.com"}, timestamp=at)


def _read_lines(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


class TestBruteForce:
    def test_five_failures_in_window_alert_once(self, monitor):
        alerts = []
        for i in range(5):
            alerts += monitor.record(_failure("10.0.0.5", T0 + timedelta(seconds=30 * i)))
        assert len(alerts) == 1
        assert alerts[0].type is AlertType.BRUTE_FORCE_ATTEMPT
        assert alerts[0].level is AlertLevel.HIGH
        assert alerts[0].details == {"attempts": 5, "ip": "10.0.0.5"}

    def test_spread_out_failures_do_not_alert(self, monitor):
        alerts = []
        for i in range(5):
            alerts += monitor.record(_failure("10.0.0.5", T0 + timedelta(minutes=2 * i)))
        assert alerts == []

    def test_failures_are_counted_per_ip(self, monitor):
        alerts = []
        for i in range(5):
            alerts += monitor.record(_failure(f"10.0.0.{i}", T0))
        assert alerts == []

    def test_quiet_ips_are_forgotten(self):
        monitor = SecurityMonitor()
        for i in range(2000):
            monitor.record(_failure(f"10.{i // 256}.{i % 256}.1", T0))
        assert monitor.forget_stale_failures(now=T0) == 2000

        monitor.record(_failure("192.168.1.1", T0 + timedelta(days=1)))
        assert monitor.forget_stale_failures(now=T0 + timedelta(days=1)) == 1

    def test_forgetting_does_not_reset_an_active_burst(self):
        monitor = SecurityMonitor()
        for i in range(4):
            monitor.record(_failure("10.0.0.5", T0 + timedelta(minutes=i)))
        monitor.forget_stale_failures(now=T0 + timedelta(minutes=4))
        alerts = monitor.record(_failure("10.0.0.5", T0 + timedelta(minutes=4, seconds=30)))
        assert [a.type for a in alerts] == [AlertType.BRUTE_FORCE_ATTEMPT]

    def test_failures_without_ip_are_ignored(self, monitor):
        alerts = []
        for _ in range(6):
            alerts += monitor.emit(EventType.failed_login, email="bob@example.com")
        assert alerts == []


class TestSingleEventRules:
    def test_csrf_attempt(self, monitor):
        (alert,) = monitor.emit(EventType.csrf_attempt, ip="10.0.0.9", user_agent="curl/8", expected_state="a")
        assert alert.type is AlertType.CSRF_ATTACK
        assert alert.level is AlertLevel.HIGH
        assert alert.details == {"ip": "10.0.0.9", "user_agent": "curl/8"}

    def test_account_locked(self, monitor):
        (alert,) = monitor.emit(EventType.account_locked, ip="10.0.0.9", email="bob@example.com")
        assert alert.type is AlertType.ACCOUNT_LOCKOUT
        assert alert.level is AlertLevel.MEDIUM
        assert "bob@example.com" in alert.message

    def test_oauth_suspicious(self, monitor):
        (alert,) = monitor.emit(EventType.oauth_suspicious, provider="google", reason="unverified_email")
        assert alert.type is AlertType.OAUTH_ANOMALY
        assert alert.level is AlertLevel.MEDIUM
        assert alert.details["reason"] == "unverified_email"

    def test_other_events_never_alert(self, monitor):
        assert monitor.emit(EventType.other, ip="10.0.0.9") == []

    def test_alert_ids_are_unique(self, monitor):
        first = monitor.emit(EventType.csrf_attempt, ip="1.1.1.1")[0]
        second = monitor.emit(EventType.csrf_attempt, ip="1.1.1.1")[0]
        assert first.id.startswith("ALERT-")
        assert first.id != second.id


class TestDurableLogs:
    def test_events_and_alerts_are_appended(self, monitor):
        monitor.emit(EventType.failed_login, ip="10.0.0.5")
        monitor.emit(EventType.csrf_attempt, ip="10.0.0.5")

        events = _read_lines(monitor.log_dir / EVENTS_FILE)
        alerts = _read_lines(monitor.log_dir / ALERTS_FILE)
        assert [e["type"] for e in events] == ["failed_login", "csrf_attempt"]
        assert [a["type"] for a in alerts] == ["CSRF_ATTACK"]
        assert alerts[0]["level"] == "HIGH"

    def test_control_characters_are_stripped(self, monitor):
        monitor.emit(EventType.csrf_attempt, ip="10.0.0.5", user_agent="evil\nforged line\r\x00")
        lines = (monitor.log_dir / EVENTS_FILE).read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["details"]["user_agent"] == "evilforged line"

    def test_memory_only_monitor_writes_nothing(self, tmp_path):
        monitor = SecurityMonitor(log_dir=None)
        monitor.emit(EventType.csrf_attempt, ip="10.0.0.5")
        assert len(monitor.events) == 1
        assert list(tmp_path.iterdir()) == []

    def test_from_logs_rebuilds_without_realerting(self, monitor):
        for i in range(5):
            monitor.record(_failure("10.0.0.5", T0 + timedelta(seconds=i)))
        with (monitor.log_dir / EVENTS_FILE).open("a", encoding="utf-8") as fh:
            fh.write("{not json\n")

        replayed = SecurityMonitor.from_logs(monitor.log_dir)
        assert len(replayed.events) == 5
        assert len(replayed.alerts) == 1
        assert replayed.alerts[0].type is AlertType.BRUTE_FORCE_ATTEMPT

    def test_from_logs_missing_directory(self, tmp_path):
        replayed = SecurityMonitor.from_logs(tmp_path / "nowhere")
        assert len(replayed.events) == 0


class TestReport:
    def test_counts_within_window(self, monitor):
        now = datetime.now(timezone.utc)
        monitor.record(_failure("10.0.0.5", now - timedelta(hours=30)))  # outside 24h
        monitor.emit(EventType.failed_login, ip="10.0.0.6")
        monitor.emit(EventType.failed_login, ip="10.0.0.7")
        monitor.emit(EventType.csrf_attempt, ip="10.0.0.8")
        monitor.emit(EventType.account_locked, ip="10.0.0.8", email="bob@example.com")

        report = monitor.report(window_hours=24)
        assert report["window_hours"] == 24
        assert report["summary"] == {
            "total_events": 4,
            "total_alerts": 2,
            "high_priority_alerts": 1,
            "medium_priority_alerts": 1,
        }
        assert report["top_events"][0] == ("failed_login", 2)
        assert {a["type"] for a in report["recent_alerts"]} == {"CSRF_ATTACK", "ACCOUNT_LOCKOUT"}

    def test_empty_report(self):
        report = SecurityMonitor().report()
        assert report["summary"]["total_events"] == 0
        assert report["top_events"] == []
