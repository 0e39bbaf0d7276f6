"""Dataclass models for the SubTronics gateway.

Wire-facing models expose ``as_dict()`` so they can be passed straight to
``orjson.dumps()`` or returned from FastAPI handlers.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Optional

ALARM = "ALARM"
NORMAL = "NORMAL"

UNKNOWN_SERIAL = "Unknown"


@dataclass
class CanonicalRecord:
    """Normalized snapshot of one gas monitor's latest telemetry.

    ``offset`` is not a field: it is a read-only alias of ``sensor_reading``
    kept for dashboard compatibility, and ``as_dict()`` emits both keys.
    """

    device_name: str = "Unknown Device"
    serial_number: str = UNKNOWN_SERIAL
    gas_type: str = "Unknown Gas"
    timestamp: str = ""
    unit: str = "ppm"
    message_type: str = "LOG DATA"
    sender: str = "Device"

    sensor_reading: float = 0.0
    alarm_status: str = NORMAL
    span_high: int = 2000
    span_low: int = 0
    a1_level: int = 250
    a2_level: int = 500
    a3_level: int = 1000
    decimal_point: int = 0

    a1_type: str = "High"
    a1_hysteresis: int = 0
    a1_latching: int = 0
    a1_siren: int = 0
    a1_buzzer: int = 0

    alarm1_led: int = 0
    alarm2_led: int = 0
    alarm3_led: int = 0
    sensor_fault: int = 0

    latitude: str = "0.00"
    longitude: str = "0.00"

    raw_message: dict = field(default_factory=dict)
    processed_at: str = ""
    data_quality: str = "good"

    @property
    def offset(self) -> float:
        return self.sensor_reading

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["offset"] = self.sensor_reading
        return data


@dataclass
class Alert:
    """A threshold breach or fault raised by the rule engine.

    Immutable after creation except for the ``acknowledged*`` fields, which
    the device state store sets exactly once.
    """

    id: str
    type: str
    severity: str
    message: str
    timestamp: str
    device_name: str
    serial_number: str
    threshold: Optional[float] = None
    current_value: Optional[float] = None
    unit: str = "ppm"
    gas_type: Optional[str] = None
    acknowledged: bool = False
    acknowledged_at: Optional[str] = None
    acknowledged_by: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class NormalizationFailure:
    """An inbound payload that could not be turned into a record.

    Failures are logged and dropped; they never reach subscribers.
    """

    code: str = ""
    message: str = ""
    raw_payload: str = ""
    raw_payload_truncated: bool = False
    received_at: str = ""


@dataclass
class AlarmLogEntry:
    """Persisted form of an :class:`Alert`, keyed by ``device_id``."""

    id: str
    device_id: str
    device_name: str
    serial_number: str
    alarm_type: str
    severity: str
    message: str
    timestamp: datetime
    threshold: Optional[float] = None
    current_value: Optional[float] = None
    unit: str = "ppm"
    gas_type: Optional[str] = None
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None

    @classmethod
    def from_alert(cls, alert: Alert, record: CanonicalRecord) -> "AlarmLogEntry":
        return cls(
            id=alert.id,
            device_id=record.serial_number,
            device_name=alert.device_name,
            serial_number=alert.serial_number,
            alarm_type=alert.type,
            severity=alert.severity,
            message=alert.message,
            timestamp=datetime.fromisoformat(alert.timestamp),
            threshold=alert.threshold,
            current_value=alert.current_value,
            unit=alert.unit,
            gas_type=alert.gas_type,
            latitude=record.latitude,
            longitude=record.longitude,
        )

    def as_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["timestamp"] = self.timestamp.isoformat()
        if self.acknowledged_at is not None:
            data["acknowledged_at"] = self.acknowledged_at.isoformat()
        return data


@dataclass
class AlarmLogFilter:
    """Filters accepted by the alarm log query and statistics calls."""

    device_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    alarm_type: Optional[str] = None
    severity: Optional[str] = None
    acknowledged: Optional[bool] = None
    limit: int = 100


@dataclass
class AlarmLogStats:
    """Aggregated alarm log counts."""

    total: int = 0
    acknowledged: int = 0
    unacknowledged: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_severity: dict[str, int] = field(default_factory=dict)
    by_device: dict[str, int] = field(default_factory=dict)


class AckStatus(enum.Enum):
    """Outcome of an acknowledge request."""

    ACKNOWLEDGED = "acknowledged"
    ALREADY_ACKNOWLEDGED = "already_acknowledged"
    NOT_FOUND = "not_found"


@dataclass
class AckResult:
    status: AckStatus
    alert: Optional[Alert] = None

    @property
    def ok(self) -> bool:
        return self.status is AckStatus.ACKNOWLEDGED
