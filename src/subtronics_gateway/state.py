"""Authoritative per-device state: latest record and alert history.

Each serial number gets its own :class:`threading.Lock`; writers for the same
device are serialized while different devices never contend.  The store is
safe to call from the event loop and from worker threads alike.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Iterable, Optional

from subtronics_gateway.models import AckResult, AckStatus, Alert, CanonicalRecord

logger = logging.getLogger(__name__)


class DeviceStateStore:
    """Owns the current-record map and the alert-history map."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._records: dict[str, CanonicalRecord] = {}
        self._alerts: dict[str, list[Alert]] = {}

    def __len__(self) -> int:
        return len(self._records)

    def device_ids(self) -> list[str]:
        return sorted(self._records)

    # ── records ─────────────────────────────────────────────────────

    def put(self, serial: str, record: CanonicalRecord) -> Optional[CanonicalRecord]:
        """Replace the current record for *serial*; return the previous one."""
        with self._lock(serial):
            previous = self._records.get(serial)
            self._records[serial] = record
        return previous

    def get(self, serial: str) -> Optional[CanonicalRecord]:
        return self._records.get(serial)

    # ── alerts ──────────────────────────────────────────────────────

    def append_alerts(self, serial: str, alerts: Iterable[Alert]) -> None:
        """Append *alerts* to the device's history in order."""
        alerts = list(alerts)
        if not alerts:
            return
        with self._lock(serial):
            self._alerts.setdefault(serial, []).extend(alerts)

    def get_alerts(self, serial: str) -> list[Alert]:
        """Snapshot of the device's alert history, oldest first."""
        with self._lock(serial):
            return list(self._alerts.get(serial, ()))

    def acknowledge(
        self,
        serial: str,
        alert_id: str,
        who: str,
        now: Optional[datetime] = None,
    ) -> AckResult:
        """Mark one alert of *serial* as acknowledged.

        Only the owning device's history is searched.  An alert can be
        acknowledged once; later attempts leave it untouched.
        """
        with self._lock(serial):
            for alert in self._alerts.get(serial, ()):
                if alert.id != alert_id:
                    continue
                if alert.acknowledged:
                    return AckResult(AckStatus.ALREADY_ACKNOWLEDGED, alert)
                alert.acknowledged = True
                alert.acknowledged_at = (now or datetime.now(timezone.utc)).isoformat()
                alert.acknowledged_by = who
                logger.info(
                    "Alert %s acknowledged by %s for device %s", alert_id, who, serial
                )
                return AckResult(AckStatus.ACKNOWLEDGED, alert)
        return AckResult(AckStatus.NOT_FOUND)

    # ── internal ────────────────────────────────────────────────────

    def _lock(self, serial: str) -> threading.Lock:
        lock = self._locks.get(serial)
        if lock is None:
            # setdefault is atomic, so racing creators agree on one lock
            lock = self._locks.setdefault(serial, threading.Lock())
        return lock
