"""Tests for the gateway pipeline."""

import asyncio
import random
import time

import orjson
import pytest

from subtronics_gateway import events
from subtronics_gateway.alarm_log import AlarmLogSink
from subtronics_gateway.broadcaster import Broadcaster, Subscriber
from subtronics_gateway.config import IngestConfig
from subtronics_gateway.errors import TransportFailure
from subtronics_gateway.filter import DeviceFilter
from subtronics_gateway.gateway import Gateway, sample_payload
from subtronics_gateway.models import AckStatus, AlarmLogFilter
from subtronics_gateway.normalizer import normalize
from subtronics_gateway.state import DeviceStateStore

E2E_PAYLOAD = {
    "OTSM-2 Serial Number": "OTSM-0114",
    "Parameters": {
        "Live Sensor Readings ": 1200,
        "Alarm Level A1": 250,
        "Alarm Level A2": 500,
        "Alarm Level A3": 1000,
        "Alarm 1 LED Status": 1,
    },
}


class FakePublisher:
    """Records publishes; optionally disconnected or failing."""

    def __init__(self, connected: bool = True, fail: bool = False) -> None:
        self.connected = connected
        self.fail = fail
        self.published: list[tuple[str, bytes]] = []

    async def publish(self, topic: str, payload: bytes) -> None:
        if not self.connected:
            raise TransportFailure("MQTT not connected", connected=False)
        if self.fail:
            raise TransportFailure("broker refused")
        self.published.append((topic, payload))


class FakeSource:
    def __init__(self, messages: list[tuple[str, bytes]]) -> None:
        self._messages = messages

    async def messages(self):
        for message in self._messages:
            yield message


def _gateway(device_filter: DeviceFilter | None = None, publisher=None) -> Gateway:
    store = DeviceStateStore()
    return Gateway(
        store=store,
        sink=AlarmLogSink(None),
        broadcaster=Broadcaster(store),
        device_filter=device_filter,
        publisher=publisher,
    )


def test_end_to_end_scenario() -> None:
    """1200 ppm on OTSM-0114: stored, one A3 alert, data frame before alerts frame."""
    gateway = _gateway()
    sub = Subscriber()
    gateway.broadcaster.subscribe(sub, "OTSM-0114")

    async def scenario() -> None:
        await gateway.handle_message("SubTronics/data", orjson.dumps(E2E_PAYLOAD))
        await gateway.drain()

    asyncio.run(scenario())

    record = gateway.store.get("OTSM-0114")
    assert record.sensor_reading == 1200
    assert record.offset == 1200
    assert record.alarm_status == "ALARM"

    alerts = gateway.store.get_alerts("OTSM-0114")
    assert [(a.type, a.severity) for a in alerts] == [("alarm_level_3", "critical")]

    frames = [orjson.loads(f) for f in sub.drain_nowait()]
    assert [f["event"] for f in frames] == [events.DEVICE_DATA, events.DEVICE_ALERTS]
    assert frames[0]["payload"]["data"]["sensor_reading"] == 1200
    assert frames[1]["payload"]["alerts"][0]["id"] == alerts[0].id

    logged = gateway.sink.query(AlarmLogFilter(device_id="OTSM-0114"))
    assert [e.id for e in logged] == [alerts[0].id]
    assert gateway.messages_processed == 1


def test_quiet_reading_publishes_data_only() -> None:
    gateway = _gateway()
    sub = Subscriber()
    gateway.broadcaster.subscribe(sub, "OTSM-0114")
    payload = {"OTSM-2 Serial Number": "OTSM-0114", "Parameters": {"Live Sensor Readings ": 10}}

    asyncio.run(gateway.handle_message("SubTronics/data", orjson.dumps(payload)))

    frames = [orjson.loads(f) for f in sub.drain_nowait()]
    assert [f["event"] for f in frames] == [events.DEVICE_DATA]
    assert gateway.store.get_alerts("OTSM-0114") == []


def test_malformed_message_is_dropped() -> None:
    """Unparseable payloads never reach state or subscribers."""
    gateway = _gateway()

    result = asyncio.run(gateway.handle_message("SubTronics/data", b"{broken"))

    assert result is None
    assert len(gateway.store) == 0
    assert gateway.messages_dropped == 1


def test_filtered_device_is_dropped() -> None:
    gateway = _gateway(device_filter=DeviceFilter(IngestConfig(drop_serials=["OTSM-0114"])))
    asyncio.run(gateway.handle_message("SubTronics/data", orjson.dumps(E2E_PAYLOAD)))
    assert gateway.store.get("OTSM-0114") is None
    assert gateway.messages_dropped == 1


def test_run_survives_bad_messages() -> None:
    """The consumer loop keeps going after a bad message."""
    gateway = _gateway()
    source = FakeSource([
        ("SubTronics/data", b"not json"),
        ("SubTronics/data", orjson.dumps(E2E_PAYLOAD)),
    ])

    async def consume() -> None:
        await gateway.run(source)
        await gateway.drain()

    asyncio.run(consume())

    assert gateway.messages_dropped == 1
    assert gateway.messages_processed == 1
    assert gateway.store.get("OTSM-0114") is not None


def test_acknowledge_mirrors_into_alarm_log() -> None:
    gateway = _gateway()

    async def scenario():
        await gateway.handle_message("SubTronics/data", orjson.dumps(E2E_PAYLOAD))
        await gateway.drain()
        alert_id = gateway.store.get_alerts("OTSM-0114")[0].id
        first = await gateway.acknowledge("OTSM-0114", alert_id, "alice")
        second = await gateway.acknowledge("OTSM-0114", alert_id, "bob")
        missing = await gateway.acknowledge("OTSM-0114", "nope", "alice")
        await gateway.drain()
        return first, second, missing

    first, second, missing = asyncio.run(scenario())

    assert first.ok
    assert second.status is AckStatus.ALREADY_ACKNOWLEDGED
    assert missing.status is AckStatus.NOT_FOUND
    (entry,) = gateway.sink.query(AlarmLogFilter(acknowledged=True))
    assert entry.acknowledged_by == "alice"


class SlowSink(AlarmLogSink):
    """Alarm log whose writes land well after the message was handled."""

    def record_many(self, entries) -> None:
        time.sleep(0.2)
        super().record_many(entries)


def test_acknowledge_before_alarm_log_write_lands() -> None:
    store = DeviceStateStore()
    gateway = Gateway(store=store, sink=SlowSink(None), broadcaster=Broadcaster(store))

    async def scenario():
        await gateway.handle_message("SubTronics/data", orjson.dumps(E2E_PAYLOAD))
        alert_id = store.get_alerts("OTSM-0114")[0].id
        result = await gateway.acknowledge("OTSM-0114", alert_id, "alice")
        await gateway.drain()
        return result

    assert asyncio.run(scenario()).ok
    (entry,) = gateway.sink.query()
    assert entry.acknowledged is True
    assert entry.acknowledged_by == "alice"


def test_publish_test_payload() -> None:
    publisher = FakePublisher()
    gateway = _gateway(publisher=publisher)

    result = asyncio.run(gateway.publish_test_payload("OTSM-0999"))

    assert result["topic"] == "SubTronics/data"
    (topic, payload) = publisher.published[0]
    assert topic == "SubTronics/data"
    assert orjson.loads(payload)["OTSM-2 Serial Number"] == "OTSM-0999"
    assert gateway.mqtt_connected


def test_publish_without_connection() -> None:
    gateway = _gateway()
    with pytest.raises(TransportFailure) as excinfo:
        asyncio.run(gateway.publish_test_payload("OTSM-0999"))
    assert excinfo.value.connected is False
    assert not gateway.mqtt_connected


def test_sample_payload_normalizes() -> None:
    """The test payload is a valid device message for the given serial."""
    record = normalize(sample_payload("OTSM-0114", rng=random.Random(7)))
    assert record.serial_number == "OTSM-0114"
    assert record.device_name == "Gas Sensor Block1"
    assert 0 <= record.sensor_reading <= 1200
    assert (record.latitude, record.longitude) == ("40.7128", "-74.0060")
