"""Ingest pipeline: broker message → record → state → subscribers → alarm log.

Per message::

    normalize ──(failure)──→ log + drop
        │
    filter ──(rejected)──→ drop
        │
    store.put ─→ publish device:data
        │
    rules.evaluate ─→ store.append_alerts ─→ publish device:alerts
        │
    alarm log write (background thread, best effort)

Nothing between ``store.put`` and the last publish awaits, so a subscriber
joining concurrently sees either the old snapshot followed by the live
update, or the new snapshot alone.  Messages are handled in arrival order,
which keeps per-device updates ordered.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import orjson

from subtronics_gateway import rules
from subtronics_gateway.alarm_log import AlarmLogSink
from subtronics_gateway.broadcaster import Broadcaster
from subtronics_gateway.errors import TransportFailure
from subtronics_gateway.filter import DeviceFilter
from subtronics_gateway.models import (
    AckResult,
    AlarmLogEntry,
    CanonicalRecord,
    NormalizationFailure,
)
from subtronics_gateway.normalizer import normalize
from subtronics_gateway.state import DeviceStateStore

logger = logging.getLogger(__name__)

DEFAULT_DATA_TOPIC = "SubTronics/data"


class Publisher(Protocol):
    """Outbound side of the broker connection."""

    @property
    def connected(self) -> bool: ...

    async def publish(self, topic: str, payload: bytes) -> None: ...


class MessageSource(Protocol):
    def messages(self) -> Any: ...


class Gateway:
    """Coordinates the state store, broadcaster and alarm log.

    Parameters
    ----------
    store:
        Authoritative per-device state.
    sink:
        Alarm log; called only from worker threads.
    broadcaster:
        Live fan-out to subscribed clients.
    device_filter:
        Optional ingest filter.
    publisher:
        Broker connection used by :meth:`publish_test_payload`.
    data_topic:
        Topic the test payload is published on.
    """

    def __init__(
        self,
        store: DeviceStateStore,
        sink: AlarmLogSink,
        broadcaster: Broadcaster,
        device_filter: Optional[DeviceFilter] = None,
        publisher: Optional[Publisher] = None,
        data_topic: str = DEFAULT_DATA_TOPIC,
    ) -> None:
        self.store = store
        self.sink = sink
        self.broadcaster = broadcaster
        self.publisher = publisher
        self._filter = device_filter or DeviceFilter()
        self._data_topic = data_topic
        self._pending: set[asyncio.Task] = set()
        self.messages_processed = 0
        self.messages_dropped = 0

    @property
    def mqtt_connected(self) -> bool:
        return bool(self.publisher is not None and self.publisher.connected)

    # ── ingest ──────────────────────────────────────────────────────

    async def handle_message(
        self,
        topic: str,
        payload: bytes | str | dict,
    ) -> Optional[CanonicalRecord]:
        """Process one broker message; returns the stored record, if any."""
        result = normalize(payload)
        if isinstance(result, NormalizationFailure):
            self.messages_dropped += 1
            logger.warning(
                "Dropped message on %s: %s (%s)", topic, result.code, result.message
            )
            return None

        record = self._filter.apply(result)
        if record is None:
            self.messages_dropped += 1
            return None

        serial = record.serial_number
        self.store.put(serial, record)
        recipients = self.broadcaster.publish_data(serial, record)
        logger.debug(
            "Stored reading %s %s for device %s (%d subscribers)",
            record.sensor_reading, record.unit, serial, recipients,
        )

        alerts = rules.evaluate(record)
        if alerts:
            self.store.append_alerts(serial, alerts)
            self.broadcaster.publish_alerts(serial, alerts)
            logger.info(
                "Raised %d alert(s) for device %s: %s",
                len(alerts), serial, ", ".join(a.type for a in alerts),
            )
            self._in_background(
                self.sink.record_many,
                [AlarmLogEntry.from_alert(a, record) for a in alerts],
            )

        self.messages_processed += 1
        return record

    async def run(self, source: MessageSource) -> None:
        """Consume *source* until it stops; one bad message never ends the loop."""
        async for topic, payload in source.messages():
            try:
                await self.handle_message(topic, payload)
            except Exception:
                self.messages_dropped += 1
                logger.exception("Unexpected error handling message on %s", topic)

    # ── queries and commands ────────────────────────────────────────

    async def acknowledge(self, serial: str, alert_id: str, who: str) -> AckResult:
        result = self.store.acknowledge(serial, alert_id, who)
        if result.ok:
            self._in_background(
                self.sink.mark_acknowledged,
                alert_id,
                who,
                datetime.fromisoformat(result.alert.acknowledged_at),
            )
        return result

    async def publish_test_payload(self, device_id: str) -> dict[str, Any]:
        """Publish a sample device payload on the data topic.

        Raises
        ------
        TransportFailure
            When there is no broker connection or the publish fails.
        """
        if self.publisher is None:
            raise TransportFailure("MQTT not connected", connected=False)
        payload = sample_payload(device_id)
        await self.publisher.publish(self._data_topic, orjson.dumps(payload))
        logger.info("Published test payload for device %s", device_id)
        return {"topic": self._data_topic, "data": payload}

    # ── background persistence ──────────────────────────────────────

    def _in_background(self, func, *args) -> None:
        task = asyncio.get_running_loop().create_task(asyncio.to_thread(func, *args))
        self._pending.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Alarm log background write failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for outstanding alarm log writes."""
        if self._pending:
            logger.info("Waiting for %d pending alarm log writes", len(self._pending))
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def sample_payload(device_id: str, rng: Optional[random.Random] = None) -> dict[str, Any]:
    """A representative LOG DATA payload with randomly lit alarm LEDs."""
    rng = rng or random.Random()
    return {
        "Device Alise Name": "Gas Sensor Block1",
        "OTSM-2 Serial Number": device_id,
        "Gas": "Carbon Monoxide (CO)",
        "Date Time At Reading": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
        "Sender": "Device",
        "Message Type": "LOG DATA",
        "lat": "40.7128",
        "long": "-74.0060",
        "Parameters": {
            "Live Sensor Readings ": rng.randint(0, 1200),
            "Unit of Measurement ": 1,
            "Span High": 2000,
            "Span Low": 0,
            "Alarm Level A1": 250,
            "Alarm Level A2": 500,
            "Alarm Level A3": 1000,
            "Decimal Point": 0,
            "A1Type": "High",
            "A1Hysterysis": 0,
            "A1Latching": 0,
            "A1Siren": 0,
            "A1Buzzer": 0,
            "Alarm 1 LED Status": int(rng.random() > 0.8),
            "Alarm 2 LED Status": int(rng.random() > 0.9),
            "Alarm 3 LED Status": int(rng.random() > 0.95),
            "Sensor Fault": int(rng.random() > 0.98),
        },
    }
