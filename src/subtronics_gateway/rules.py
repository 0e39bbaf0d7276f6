"""Derive alerts from a canonical record.

Rules (evaluated in order, results concatenated)::

    1. sensor_fault == 1                     → sensor_fault   / critical
    2. threshold cascade on sensor_reading (highest breached level only)
         reading >= a3_level                 → alarm_level_3  / critical
         reading >= a2_level                 → alarm_level_2  / high
         reading >= a1_level                 → alarm_level_1  / warning

The cascade compares the reading itself, not the device's LED flags.
"""

from __future__ import annotations

import itertools
import time
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from subtronics_gateway.models import Alert, CanonicalRecord


class ThresholdRule(NamedTuple):
    level_attr: str
    alert_type: str
    severity: str
    id_prefix: str
    label: str


# Highest level first: the first match wins.
THRESHOLD_CASCADE: tuple[ThresholdRule, ...] = (
    ThresholdRule("a3_level", "alarm_level_3", "critical", "alarm3", "A3"),
    ThresholdRule("a2_level", "alarm_level_2", "high", "alarm2", "A2"),
    ThresholdRule("a1_level", "alarm_level_1", "warning", "alarm1", "A1"),
)

_sequence = itertools.count(1)


def evaluate(record: CanonicalRecord, now: Optional[datetime] = None) -> list[Alert]:
    """Return the alerts raised by *record*, possibly none."""
    now = now or datetime.now(timezone.utc)
    timestamp = now.isoformat()
    alerts: list[Alert] = []

    if record.sensor_fault == 1:
        alerts.append(_alert(
            record,
            alert_id=_alert_id("fault", record.serial_number),
            alert_type="sensor_fault",
            severity="critical",
            message="Sensor fault detected",
            timestamp=timestamp,
            threshold=None,
        ))

    rule = breached_level(record)
    if rule is not None:
        level = getattr(record, rule.level_attr)
        alerts.append(_alert(
            record,
            alert_id=_alert_id(rule.id_prefix, record.serial_number),
            alert_type=rule.alert_type,
            severity=rule.severity,
            message=(
                f"Gas concentration above {rule.label} threshold "
                f"({level} {record.unit})"
            ),
            timestamp=timestamp,
            threshold=level,
        ))

    return alerts


def breached_level(record: CanonicalRecord) -> Optional[ThresholdRule]:
    """The highest threshold the reading meets or exceeds, if any."""
    for rule in THRESHOLD_CASCADE:
        if record.sensor_reading >= getattr(record, rule.level_attr):
            return rule
    return None


def _alert_id(prefix: str, serial: str) -> str:
    # Millisecond clock plus a process-wide sequence: unique even for
    # identical readings within the same millisecond.
    return f"{prefix}_{serial}_{time.time_ns() // 1_000_000}-{next(_sequence)}"


def _alert(
    record: CanonicalRecord,
    alert_id: str,
    alert_type: str,
    severity: str,
    message: str,
    timestamp: str,
    threshold: Optional[float],
) -> Alert:
    return Alert(
        id=alert_id,
        type=alert_type,
        severity=severity,
        message=message,
        timestamp=timestamp,
        device_name=record.device_name,
        serial_number=record.serial_number,
        threshold=threshold,
        current_value=record.sensor_reading,
        unit=record.unit,
        gas_type=record.gas_type,
    )
