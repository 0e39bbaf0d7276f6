"""Normalize raw SubTronics gas-monitor payloads into canonical records.

Normalization pipeline::

    raw dict / str / bytes
      │
      ├─ JSON parse failure      → NormalizationFailure(code="parse_error")
      ├─ not a JSON object       → NormalizationFailure(code="schema_mismatch")
      └─ object                  → CanonicalRecord

Firmware revisions disagree on field names (``"Device Alias Name"`` vs. the
misspelled ``"Device Alise Name"``, ``"Live Sensor Readings "`` with a
trailing space, readings at the root or under ``"Parameters"``).  Every
logical field is resolved from an ordered table of ``(scope, key)``
candidates; supporting a new firmware variant means adding a table row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

import orjson

from subtronics_gateway.models import (
    ALARM,
    NORMAL,
    UNKNOWN_SERIAL,
    CanonicalRecord,
    NormalizationFailure,
)

logger = logging.getLogger(__name__)

# Maximum bytes of raw payload preserved in a NormalizationFailure.
MAX_RAW_PAYLOAD_BYTES = 4096

ROOT = "root"
PARAMS = "params"

Candidates = tuple[tuple[str, str], ...]

DEVICE_NAME_FIELDS: Candidates = (
    (ROOT, "Device Alias Name"),
    (ROOT, "Device Alise Name"),
)
SERIAL_FIELDS: Candidates = ((ROOT, "OTSM-2 Serial Number"),)
GAS_FIELDS: Candidates = ((ROOT, "Gas"),)
TIMESTAMP_FIELDS: Candidates = (
    (ROOT, "Date Time At Reading"),
    (ROOT, "timestamp"),
)
MESSAGE_TYPE_FIELDS: Candidates = ((ROOT, "Message Type"),)
SENDER_FIELDS: Candidates = ((ROOT, "Sender"),)
READING_FIELDS: Candidates = (
    (PARAMS, "Live Sensor Readings "),
    (PARAMS, "Live Sensor Readings"),
    (ROOT, "Sensor Reading"),
    (PARAMS, "Offset"),
)
UNIT_FIELDS: Candidates = (
    (PARAMS, "Unit of Measurement "),
    (PARAMS, "Unit of Measurement"),
    (ROOT, "Unit of Measurement "),
    (ROOT, "Unit of Measurement"),
)
LATITUDE_FIELDS: Candidates = ((ROOT, "lat"), (PARAMS, "lat"))
LONGITUDE_FIELDS: Candidates = ((ROOT, "long"), (PARAMS, "long"))
A1_TYPE_FIELDS: Candidates = ((PARAMS, "A1Type"),)

# record attribute → (candidates, default)
INTEGER_FIELDS: dict[str, tuple[Candidates, int]] = {
    "span_high": (((PARAMS, "Span High"),), 2000),
    "span_low": (((PARAMS, "Span Low"),), 0),
    "a1_level": (((PARAMS, "Alarm Level A1"),), 250),
    "a2_level": (((PARAMS, "Alarm Level A2"),), 500),
    "a3_level": (((PARAMS, "Alarm Level A3"),), 1000),
    "decimal_point": (((PARAMS, "Decimal Point"),), 0),
    "a1_hysteresis": (((PARAMS, "A1Hysterysis"), (PARAMS, "A1Hysteresis")), 0),
    "a1_latching": (((PARAMS, "A1Latching"),), 0),
    "a1_siren": (((PARAMS, "A1Siren"),), 0),
    "a1_buzzer": (((PARAMS, "A1Buzzer"),), 0),
}

FLAG_FIELDS: dict[str, Candidates] = {
    "alarm1_led": ((PARAMS, "Alarm 1 LED Status"),),
    "alarm2_led": ((PARAMS, "Alarm 2 LED Status"),),
    "alarm3_led": ((PARAMS, "Alarm 3 LED Status"),),
    "sensor_fault": ((PARAMS, "Sensor Fault"), (PARAMS, "SensorFault")),
}

# Numeric unit codes reported by the firmware.  Only ppm deployments exist
# today, so unrecognized codes also resolve to ppm.
UNIT_CODES: dict[int, str] = {1: "ppm"}
DEFAULT_UNIT = "ppm"
DEFAULT_COORDINATE = "0.00"


def normalize(
    raw: Union[dict, str, bytes],
    received_at: Optional[str] = None,
) -> Union[CanonicalRecord, NormalizationFailure]:
    """Normalize one device payload.

    Parameters
    ----------
    raw:
        Parsed JSON object, or the raw JSON text / bytes from the broker.
    received_at:
        Ingestion timestamp (ISO 8601).  Defaults to now; used for
        ``processed_at`` and as the fallback reading time.

    Returns
    -------
    CanonicalRecord
        When the payload is a JSON object.
    NormalizationFailure
        When the payload cannot be parsed or is not an object.
    """
    now = received_at or datetime.now(timezone.utc).isoformat()

    if isinstance(raw, (str, bytes, bytearray)):
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            return _failure("parse_error", str(exc), raw, now)
    else:
        data = raw

    if not isinstance(data, dict):
        return _failure(
            "schema_mismatch",
            f"Expected a JSON object, got {type(data).__name__}",
            raw,
            now,
        )

    params = data.get("Parameters")
    if not isinstance(params, dict):
        params = {}
    scopes = {ROOT: data, PARAMS: params}

    record = CanonicalRecord(
        device_name=_text(_lookup(scopes, DEVICE_NAME_FIELDS), "Unknown Device"),
        serial_number=_text(_lookup(scopes, SERIAL_FIELDS), UNKNOWN_SERIAL),
        gas_type=_text(_lookup(scopes, GAS_FIELDS), "Unknown Gas"),
        timestamp=_text(_lookup(scopes, TIMESTAMP_FIELDS), now),
        unit=_unit(_lookup(scopes, UNIT_FIELDS)),
        message_type=_text(_lookup(scopes, MESSAGE_TYPE_FIELDS), "LOG DATA"),
        sender=_text(_lookup(scopes, SENDER_FIELDS), "Device"),
        sensor_reading=_as_float(_lookup(scopes, READING_FIELDS), 0.0),
        a1_type=_text(_lookup(scopes, A1_TYPE_FIELDS), "High"),
        latitude=_coordinate(_lookup(scopes, LATITUDE_FIELDS)),
        longitude=_coordinate(_lookup(scopes, LONGITUDE_FIELDS)),
        raw_message=data,
        processed_at=now,
        data_quality="good",
    )

    for attr, (candidates, default) in INTEGER_FIELDS.items():
        setattr(record, attr, _as_int(_lookup(scopes, candidates), default))
    for attr, candidates in FLAG_FIELDS.items():
        setattr(record, attr, 1 if _as_int(_lookup(scopes, candidates), 0) == 1 else 0)

    record.alarm_status = derive_alarm_status(record)
    return record


def derive_alarm_status(record: CanonicalRecord) -> str:
    """``ALARM`` when the sensor is faulted or any alarm LED is lit.

    Any ``"Alarm Status"`` sent by the device is deliberately ignored.
    """
    if record.sensor_fault == 1 or 1 in (
        record.alarm1_led,
        record.alarm2_led,
        record.alarm3_led,
    ):
        return ALARM
    return NORMAL


# ── field helpers ───────────────────────────────────────────────────


def _lookup(scopes: dict[str, dict], candidates: Candidates) -> Any:
    """Return the first present candidate value, or ``None``."""
    for scope, key in candidates:
        value = scopes[scope].get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _text(value: Any, default: str) -> str:
    if value is None:
        return default
    return str(value).strip() or default


def _as_float(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        logger.debug("Non-numeric reading %r, using %s", value, default)
        return default


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def _unit(value: Any) -> str:
    if value is None:
        return DEFAULT_UNIT
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        code = int(value)
        return UNIT_CODES.get(code, DEFAULT_UNIT)
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return UNIT_CODES.get(int(text), DEFAULT_UNIT)
    return text or DEFAULT_UNIT


def _coordinate(value: Any) -> str:
    if value is None:
        return DEFAULT_COORDINATE
    return str(value).strip() or DEFAULT_COORDINATE


def _failure(code: str, message: str, raw: Any, now: str) -> NormalizationFailure:
    """Build a :class:`NormalizationFailure` with truncation handling."""
    if isinstance(raw, (bytes, bytearray)):
        raw_str = bytes(raw).decode("utf-8", errors="replace")
    elif isinstance(raw, str):
        raw_str = raw
    else:
        raw_str = orjson.dumps(raw, default=str).decode()
    truncated = len(raw_str.encode("utf-8")) > MAX_RAW_PAYLOAD_BYTES
    if truncated:
        raw_str = raw_str.encode("utf-8")[:MAX_RAW_PAYLOAD_BYTES].decode(
            "utf-8", errors="ignore"
        )

    return NormalizationFailure(
        code=code,
        message=message,
        raw_payload=raw_str,
        raw_payload_truncated=truncated,
        received_at=now,
    )
