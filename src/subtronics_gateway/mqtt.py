"""MQTT broker connection for the device-data feed.

Wraps :mod:`aiomqtt` in an exponential-backoff reconnect state machine::

    INIT → CONNECTING → (success) → CONNECTED → (disconnect) → WAIT_BACKOFF → CONNECTING
                      → (failure) →              WAIT_BACKOFF → CONNECTING
    any  → (shutdown) → SHUTTING_DOWN

Inbound messages are exposed as an async generator via
:meth:`MqttConnection.messages`; :meth:`MqttConnection.publish` reuses the
live session for outbound test payloads.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import ssl
import uuid
from typing import AsyncIterator, Optional
from urllib.parse import urlsplit

import aiomqtt

from subtronics_gateway.config import MqttConfig, strip_credentials
from subtronics_gateway.errors import TransportFailure

logger = logging.getLogger(__name__)

# CONNACK codes meaning the credentials will never be accepted (MQTT 3.1.1
# and 5.0 numbering).
_AUTH_REJECTED = (4, 5, 134, 135)


class ConnectionState(enum.Enum):
    """States in the reconnect state machine."""

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    WAIT_BACKOFF = "WAIT_BACKOFF"
    SHUTTING_DOWN = "SHUTTING_DOWN"


class MqttConnection:
    """Manages the broker session lifecycle.

    Parameters
    ----------
    config:
        Broker URL, credentials, topics and reconnect parameters.
    """

    def __init__(self, config: MqttConfig) -> None:
        url = urlsplit(config.broker_url)
        self._scheme = url.scheme or "mqtt"
        self._host = url.hostname or "localhost"
        self._port = url.port or (8883 if self._scheme == "mqtts" else 1883)
        self._username = config.username or url.username or None
        self._password = config.password or url.password or None
        self._client_id = config.client_id or f"subtronics-gateway-{uuid.uuid4().hex[:8]}"
        self._topics = list(config.topics)
        self._qos = config.qos
        self._keepalive = config.keepalive
        self._timeout = config.connect_timeout
        self._reconnect = config.reconnect
        self._display_url = strip_credentials(config.broker_url)

        self._state = ConnectionState.INIT
        self._shutdown = asyncio.Event()
        self._client: Optional[aiomqtt.Client] = None
        self._attempt = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._client is not None

    def request_shutdown(self) -> None:
        """Signal the connection to close gracefully (no reconnect)."""
        self._set_state(ConnectionState.SHUTTING_DOWN)
        self._shutdown.set()

    async def messages(self) -> AsyncIterator[tuple[str, bytes]]:
        """Async generator yielding ``(topic, payload)`` for every message.

        Handles connection, subscription and automatic reconnection with
        exponential backoff.  Stops when :meth:`request_shutdown` is called
        or the broker rejects the credentials.
        """
        while not self._shutdown.is_set():
            try:
                async for message in self._connect_and_receive():
                    yield message
            except _FatalAuthError as exc:
                logger.error("Broker rejected credentials (%s), not reconnecting", exc)
                break
            except aiomqtt.MqttError as exc:
                if self._shutdown.is_set():
                    break
                logger.warning("MQTT connection error: %s", exc)

            if self._shutdown.is_set():
                break

            await self._backoff()

    async def publish(self, topic: str, payload: bytes, qos: Optional[int] = None) -> None:
        """Publish on the live session.

        Raises
        ------
        TransportFailure
            When the broker is not connected or the publish fails.
        """
        client = self._client
        if client is None or not self.connected:
            raise TransportFailure("MQTT not connected", connected=False)
        try:
            await client.publish(topic, payload, qos=self._qos if qos is None else qos)
        except aiomqtt.MqttError as exc:
            logger.error("Failed to publish to %s: %s", topic, exc)
            raise TransportFailure(f"Failed to publish to {topic}: {exc}") from exc

    # ── internal: connect + receive ─────────────────────────────────

    async def _connect_and_receive(self) -> AsyncIterator[tuple[str, bytes]]:
        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to MQTT broker %s as %s", self._display_url, self._client_id)

        client = aiomqtt.Client(
            hostname=self._host,
            port=self._port,
            username=self._username,
            password=self._password,
            identifier=self._client_id,
            keepalive=self._keepalive,
            timeout=self._timeout,
            clean_session=True,
            tls_context=ssl.create_default_context() if self._scheme == "mqtts" else None,
        )
        try:
            async with client:
                self._client = client
                for topic in self._topics:
                    await client.subscribe(topic, qos=self._qos)
                    logger.info("Subscribed to %s", topic)

                self._set_state(ConnectionState.CONNECTED)
                self._attempt = 0  # reset backoff on success

                async for message in client.messages:
                    if self._shutdown.is_set():
                        break
                    yield message.topic.value, _payload_bytes(message.payload)
        except aiomqtt.MqttCodeError as exc:
            if exc.rc in _AUTH_REJECTED:
                raise _FatalAuthError(str(exc)) from exc
            raise
        finally:
            self._client = None

    # ── backoff ─────────────────────────────────────────────────────

    async def _backoff(self) -> None:
        """Wait with exponential backoff + jitter before reconnecting."""
        self._set_state(ConnectionState.WAIT_BACKOFF)
        self._attempt += 1

        delay = backoff_delay(
            self._attempt,
            initial_ms=self._reconnect.initial_delay_ms,
            max_ms=self._reconnect.max_delay_ms,
            multiplier=self._reconnect.backoff_multiplier,
            jitter_pct=self._reconnect.jitter_pct,
        )
        logger.info("Reconnecting in %.1fs (attempt %d)", delay, self._attempt)

        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass  # backoff elapsed normally

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        self._state = new
        logger.info("MQTT state: %s → %s", old.value, new.value)


def backoff_delay(
    attempt: int,
    initial_ms: int,
    max_ms: int,
    multiplier: int,
    jitter_pct: int,
    rand: float | None = None,
) -> float:
    """Seconds to wait before reconnect *attempt* (1-based)."""
    base = initial_ms / 1000.0
    cap = max_ms / 1000.0
    delay = base
    for _ in range(max(attempt - 1, 0)):
        if delay <= 0 or delay >= cap or multiplier <= 1:
            break
        delay *= multiplier
    delay = min(delay, cap)
    r = random.random() if rand is None else rand
    jitter = delay * (jitter_pct / 100.0) * (2 * r - 1)
    return max(0.1, delay + jitter)


def _payload_bytes(payload: object) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode("utf-8")


class _FatalAuthError(Exception):
    """Raised when the broker rejects authentication; the session is not retried."""
