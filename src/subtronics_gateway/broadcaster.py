"""Fan-out of device updates to subscribed clients.

Each :class:`Subscriber` owns an outbox queue of encoded frames which its
transport drains.  Publishing only enqueues, so a slow client never delays
delivery to anyone else.

Membership is tracked per device.  ``subscribe`` adds the member and queues
the device's current record under the same per-device lock that
``publish_*`` holds while computing recipients, so a new subscriber always
sees its snapshot before any later live update and a removed subscriber
never receives a later one.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from typing import Iterable, Optional

from subtronics_gateway import events
from subtronics_gateway.models import Alert, CanonicalRecord
from subtronics_gateway.state import DeviceStateStore

logger = logging.getLogger(__name__)

_ids = itertools.count(1)

DEFAULT_OUTBOX_SIZE = 1000


class Subscriber:
    """One connected client.

    Parameters
    ----------
    name:
        Label used in logs (e.g. the remote address).
    max_queued:
        Frames that may wait in the outbox.  A client that falls this far
        behind is marked ``overflowed``: its backlog is discarded and a
        ``None`` sentinel tells the transport to close the connection.
    """

    def __init__(self, name: Optional[str] = None, max_queued: int = DEFAULT_OUTBOX_SIZE) -> None:
        self.id = next(_ids)
        self.name = name or f"client-{self.id}"
        self.outbox: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=max_queued + 1)
        self.devices: set[str] = set()
        self.overflowed = False
        self._max_queued = max_queued

    def deliver(self, frame: str) -> bool:
        """Queue *frame*; returns ``False`` once the subscriber has overflowed."""
        if self.overflowed:
            return False
        if self.outbox.qsize() < self._max_queued:
            self.outbox.put_nowait(frame)
            return True
        self.overflowed = True
        self.drain_nowait()
        self.outbox.put_nowait(None)
        logger.warning("Client %s fell %d frames behind, disconnecting", self.name, self._max_queued)
        return False

    def drain_nowait(self) -> list[str]:
        """Pop every queued frame (used by tests and on shutdown)."""
        frames = []
        while not self.outbox.empty():
            frames.append(self.outbox.get_nowait())
        return frames

    def __repr__(self) -> str:
        return f"Subscriber({self.name!r})"


class Broadcaster:
    """Device-keyed subscription registry and publisher."""

    def __init__(self, store: DeviceStateStore) -> None:
        self._store = store
        self._members: dict[str, set[Subscriber]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._clients: set[Subscriber] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def connect(self, subscriber: Subscriber) -> None:
        self._clients.add(subscriber)
        logger.info("Client %s connected (total %d)", subscriber.name, len(self._clients))

    def subscribers(self, device_id: str) -> set[Subscriber]:
        with self._lock(device_id):
            return set(self._members.get(device_id, ()))

    # ── membership ──────────────────────────────────────────────────

    def subscribe(self, subscriber: Subscriber, device_id: str) -> bool:
        """Join *device_id*; queues the current record when there is one.

        Returns ``True`` when a snapshot was delivered.
        """
        with self._lock(device_id):
            self._members.setdefault(device_id, set()).add(subscriber)
            subscriber.devices.add(device_id)
            record = self._store.get(device_id)
            if record is not None:
                subscriber.deliver(
                    events.encode(events.DEVICE_DATA, events.data_event(device_id, record))
                )
        logger.info("Client %s subscribed to device %s", subscriber.name, device_id)
        return record is not None

    def unsubscribe(self, subscriber: Subscriber, device_id: str) -> None:
        with self._lock(device_id):
            members = self._members.get(device_id)
            if members is not None:
                members.discard(subscriber)
                if not members:
                    del self._members[device_id]
            subscriber.devices.discard(device_id)
        logger.info("Client %s unsubscribed from device %s", subscriber.name, device_id)

    def remove(self, subscriber: Subscriber) -> None:
        """Drop every membership of a disconnecting client."""
        for device_id in list(subscriber.devices):
            self.unsubscribe(subscriber, device_id)
        self._clients.discard(subscriber)
        logger.info(
            "Client %s disconnected (total %d)", subscriber.name, len(self._clients)
        )

    # ── publishing ──────────────────────────────────────────────────

    def publish_data(self, serial: str, record: CanonicalRecord) -> int:
        """Send a ``device:data`` event; returns the number of recipients."""
        frame = events.encode(events.DEVICE_DATA, events.data_event(serial, record))
        return self._fan_out(serial, frame)

    def publish_alerts(self, serial: str, alerts: Iterable[Alert]) -> int:
        """Send a ``device:alerts`` event; returns the number of recipients."""
        frame = events.encode(events.DEVICE_ALERTS, events.alerts_event(serial, alerts))
        return self._fan_out(serial, frame)

    def _fan_out(self, device_id: str, frame: str) -> int:
        with self._lock(device_id):
            members = list(self._members.get(device_id, ()))
            for subscriber in members:
                subscriber.deliver(frame)
        return len(members)

    def _lock(self, device_id: str) -> threading.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks.setdefault(device_id, threading.Lock())
        return lock
