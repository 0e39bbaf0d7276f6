"""WebSocket server carrying live device updates to browser clients.

Client → server frames::

    {"event": "subscribe:device",   "deviceId": "OTSM-0114"}
    {"event": "unsubscribe:device", "deviceId": "OTSM-0114"}

Server → client frames are described in :mod:`subtronics_gateway.events`.
Each connection gets a sender task draining its :class:`Subscriber` outbox;
closing the socket removes every membership before the next broadcast.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import websockets
import websockets.exceptions

from subtronics_gateway import events
from subtronics_gateway.broadcaster import Broadcaster, Subscriber

logger = logging.getLogger(__name__)


class PubSubServer:
    """Accepts subscriber connections and relays broadcaster frames."""

    def __init__(self, broadcaster: Broadcaster, host: str = "0.0.0.0", port: int = 3003) -> None:
        self._broadcaster = broadcaster
        self._host = host
        self._port = port
        self._server = None

    async def start(self) -> None:
        self._server = await websockets.serve(self.handle, self._host, self._port)
        logger.info("Pub/sub server listening on ws://%s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Pub/sub server closed")

    async def handle(self, websocket) -> None:
        """Serve one client connection until it closes."""
        subscriber = Subscriber(name=_peer(websocket))
        self._broadcaster.connect(subscriber)
        sender = asyncio.create_task(_pump(websocket, subscriber))
        try:
            async for frame in websocket:
                self.on_frame(subscriber, frame)
        except websockets.exceptions.ConnectionClosed as exc:
            logger.debug("Client %s connection closed: %s", subscriber.name, exc)
        finally:
            self._broadcaster.remove(subscriber)
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)

    def on_frame(self, subscriber: Subscriber, frame: str | bytes) -> None:
        """Apply one client request to the broadcaster."""
        try:
            message = events.decode(frame)
        except ValueError as exc:
            _reject(subscriber, f"Invalid frame: {exc}")
            return

        event = message.get("event")
        device_id = message.get("deviceId")
        if event not in (events.SUBSCRIBE, events.UNSUBSCRIBE):
            _reject(subscriber, f"Unknown event: {event!r}")
            return
        if not isinstance(device_id, str) or not device_id:
            _reject(subscriber, "deviceId must be a non-empty string")
            return

        if event == events.SUBSCRIBE:
            self._broadcaster.subscribe(subscriber, device_id)
        else:
            self._broadcaster.unsubscribe(subscriber, device_id)


async def _pump(websocket, subscriber: Subscriber) -> None:
    """Forward queued frames to the socket in order."""
    while True:
        frame = await subscriber.outbox.get()
        if frame is None:
            await websocket.close(code=1013, reason="subscriber too slow")
            return
        try:
            await websocket.send(frame)
        except websockets.exceptions.ConnectionClosed:
            return


def _reject(subscriber: Subscriber, message: str) -> None:
    logger.debug("Rejected frame from %s: %s", subscriber.name, message)
    subscriber.deliver(events.encode(events.ERROR, {"message": message}))


def _peer(websocket) -> Optional[str]:
    address = getattr(websocket, "remote_address", None)
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return None
