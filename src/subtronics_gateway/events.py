"""Outbound subscriber events and their wire encoding.

Every frame sent to a pub/sub client is a single JSON text message::

    {"event": "device:data",   "payload": {"deviceId", "data", "timestamp"}}
    {"event": "device:alerts", "payload": {"deviceId", "alerts"}}
    {"event": "error",         "payload": {"message"}}
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import orjson

from subtronics_gateway.models import Alert, CanonicalRecord

DEVICE_DATA = "device:data"
DEVICE_ALERTS = "device:alerts"
ERROR = "error"

SUBSCRIBE = "subscribe:device"
UNSUBSCRIBE = "unsubscribe:device"


def data_event(
    device_id: str,
    record: CanonicalRecord,
    timestamp: Optional[str] = None,
) -> dict[str, Any]:
    return {
        "deviceId": device_id,
        "data": record.as_dict(),
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
    }


def alerts_event(device_id: str, alerts: Iterable[Alert]) -> dict[str, Any]:
    return {"deviceId": device_id, "alerts": [a.as_dict() for a in alerts]}


def encode(event: str, payload: Any) -> str:
    """Serialize one frame to JSON text."""
    return orjson.dumps({"event": event, "payload": payload}, default=str).decode()


def decode(frame: str | bytes) -> dict[str, Any]:
    """Parse a client frame; raises ``ValueError`` on anything but an object."""
    message = orjson.loads(frame)
    if not isinstance(message, dict):
        raise ValueError("Frame must be a JSON object")
    return message
