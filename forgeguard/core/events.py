"""Security event model shared by the scoring and response layers."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import time


class Severity(str, Enum):
    """Severity of an event or finding; also used as the threat level."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, Severity):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown severity: {value!r}") from None

    @classmethod
    def highest(cls, *values: "Severity") -> "Severity":
        return max(values, key=lambda s: s.rank, default=cls.LOW)


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class EventType(str, Enum):
    """Catalog of security events emitted by the manufacturing backend."""

    # Authentication
    LOGIN = "user.login"
    LOGOUT = "user.logout"
    LOGIN_FAILED = "user.login.failed"
    LOGOUT_FAILED = "user.logout.failed"
    PERMISSION_CHANGE = "permission.change"
    PERMISSION_CHANGE_FAILED = "permission.change.failed"
    ACCESS_DENIED = "access.denied"
    ACCESS_DENIED_REPEATED = "access.denied.repeated"

    # Shop floor
    STATION_OPERATION = "station.operation"
    STATION_OPERATION_FAILED = "station.operation.failed"
    QUALITY_CHECK = "quality.check"
    QUALITY_CHECK_FAILED = "quality.check.failed"
    QUALITY_CHECK_CRITICAL = "quality.check.critical"
    EQUIPMENT_STATUS = "equipment.status"
    EQUIPMENT_WARNING = "equipment.status.warning"
    EQUIPMENT_ERROR = "equipment.status.error"
    MAINTENANCE_EVENT = "maintenance.event"
    MAINTENANCE_OVERDUE = "maintenance.event.overdue"

    # Data
    DATA_ACCESS = "data.access"
    UNAUTHORIZED_ACCESS = "data.access.unauthorized"
    SENSITIVE_ACCESS = "data.access.sensitive"
    ENCRYPTION_EVENT = "encryption.event"
    ENCRYPTION_FAILED = "encryption.event.failed"
    COMPLIANCE_ACTION = "compliance.action"
    COMPLIANCE_VIOLATION = "compliance.action.violation"

    # System
    CONFIG_CHANGE = "config.change"
    SECURITY_CONFIG_CHANGE = "config.change.security"
    SECURITY_VIOLATION = "security.violation"
    SECURITY_VIOLATION_CRITICAL = "security.violation.critical"
    SYSTEM_ERROR = "system.error"
    SYSTEM_SECURITY_ERROR = "system.error.security"

    # API
    API_ACCESS = "api.access"
    API_UNAUTHORIZED = "api.access.unauthorized"
    API_RATE_LIMITED = "api.access.rate.limited"
    API_SUSPICIOUS = "api.access.suspicious"


def parse_timestamp(value: Any) -> float:
    """Return epoch seconds for a numeric, ISO-8601 or datetime timestamp."""

    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid timestamp: {value!r}") from None
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def _pick(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


@dataclass(frozen=True)
class SecurityEvent:
    """One observed security occurrence. Immutable once created."""

    event_type: EventType
    severity: Severity
    timestamp: float = field(default_factory=time.time)
    source_ip: Optional[str] = None
    user_id: Optional[str] = None
    station_id: Optional[str] = None
    event_id: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> "SecurityEvent":
        """Build an event from a decoded JSON/YAML record.

        Accepts both camelCase (``eventType``, ``sourceIp``) and snake_case
        keys. Raises ``ValueError`` when the record is malformed.
        """
        if not isinstance(record, Mapping):
            raise ValueError("Event record must be a mapping")

        raw_type = _pick(record, "event_type", "eventType", "type")
        if raw_type is None:
            raise ValueError("Event record is missing an event type")
        try:
            event_type = EventType(str(raw_type))
        except ValueError:
            raise ValueError(f"Unknown event type: {raw_type!r}") from None

        raw_severity = _pick(record, "severity")
        if raw_severity is None:
            raise ValueError("Event record is missing a severity")

        raw_ts = _pick(record, "timestamp", "time")
        timestamp = parse_timestamp(raw_ts) if raw_ts is not None else time.time()

        details = record.get("details") or {}
        if not isinstance(details, Mapping):
            details = {"value": details}

        def _text(*keys: str) -> Optional[str]:
            value = _pick(record, *keys)
            return str(value) if value is not None else None

        return cls(
            event_type=event_type,
            severity=Severity.parse(raw_severity),
            timestamp=timestamp,
            source_ip=_text("source_ip", "sourceIp", "src_ip"),
            user_id=_text("user_id", "userId"),
            station_id=_text("station_id", "stationId"),
            event_id=_text("event_id", "eventId", "id"),
            details=dict(details),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "source_ip": self.source_ip,
            "user_id": self.user_id,
            "station_id": self.station_id,
            "details": dict(self.details),
        }
