"""
security/models.py -- Security events and the alerts derived from them.

Pure data containers. Events are what the auth layer observed; alerts are what
the monitor concluded. Both are append-only and serialize to one JSON object
per line in the durable logs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class EventType(str, Enum):
    failed_login = "failed_login"
    account_locked = "account_locked"
    csrf_attempt = "csrf_attempt"
    oauth_suspicious = "oauth_suspicious"
    other = "other"


class AlertLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"


class AlertType(str, Enum):
    BRUTE_FORCE_ATTEMPT = "BRUTE_FORCE_ATTEMPT"
    CSRF_ATTACK = "CSRF_ATTACK"
    ACCOUNT_LOCKOUT = "ACCOUNT_LOCKOUT"
    OAUTH_ANOMALY = "OAUTH_ANOMALY"


_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize(value, max_length: int = 512):
    """Strip control characters from user-controlled strings and cap their length.

    Details end up in log lines; a user agent containing a newline must not be
    able to forge an extra entry.
    """
    if not isinstance(value, str):
        return value
    return _CONTROL_CHARS.sub("", value)[:max_length]


@dataclass
class SecurityEvent:
    """Something the auth layer observed.

    details is free-form: ip, user_agent, email, reason, expected/received
    CSRF state, provider, ... Values are sanitized on construction.
    """

    type: EventType
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        self.type = EventType(self.type)
        self.details = {k: sanitize(v) for k, v in self.details.items()}

    @property
    def ip(self) -> str | None:
        return self.details.get("ip")

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp.isoformat(), "type": self.type.value, "details": self.details}

    @classmethod
    def from_dict(cls, data: dict) -> "SecurityEvent":
        return cls(
            type=EventType(data["type"]),
            details=data.get("details") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class SecurityAlert:
    """A conclusion drawn from one or more events. Created only by the monitor."""

    id: str
    level: AlertLevel
    type: AlertType
    message: str
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "id": self.id,
            "level": self.level.value,
            "type": self.type.value,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SecurityAlert":
        return cls(
            id=data["id"],
            level=AlertLevel(data["level"]),
            type=AlertType(data["type"]),
            message=data.get("message", ""),
            details=data.get("details") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )
