"""Assembles the gateway and runs every transport in one event loop.

Startup::

    alarm log open ─→ pub/sub server ─→ MQTT consumer task ─→ uvicorn (blocks)

uvicorn owns SIGINT/SIGTERM.  When it returns the broker connection is asked
to stop, the consumer task is cancelled, the socket server is closed and
outstanding alarm log writes are drained before the database is released.
"""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from subtronics_gateway.alarm_log import AlarmLogSink
from subtronics_gateway.api import create_app
from subtronics_gateway.broadcaster import Broadcaster
from subtronics_gateway.config import AppConfig
from subtronics_gateway.filter import DeviceFilter
from subtronics_gateway.gateway import Gateway
from subtronics_gateway.mqtt import MqttConnection
from subtronics_gateway.pubsub import PubSubServer
from subtronics_gateway.state import DeviceStateStore

logger = logging.getLogger(__name__)


def build_gateway(cfg: AppConfig, connection: MqttConnection | None = None) -> Gateway:
    """Wire the core collaborators from configuration."""
    store = DeviceStateStore()
    sink = AlarmLogSink(
        cfg.storage.database_url,
        max_per_device=cfg.storage.fallback_max_per_device,
    )
    sink.open()
    topics = cfg.mqtt.topics or ["SubTronics/data"]
    return Gateway(
        store=store,
        sink=sink,
        broadcaster=Broadcaster(store),
        device_filter=DeviceFilter(cfg.ingest),
        publisher=connection,
        data_topic=topics[0],
    )


async def run_service(cfg: AppConfig) -> None:
    connection = MqttConnection(cfg.mqtt)
    gateway = build_gateway(cfg, connection)
    pubsub = PubSubServer(gateway.broadcaster, cfg.pubsub.host, cfg.pubsub.port)

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(gateway, cfg),
            host=cfg.http.host,
            port=cfg.http.port,
            log_config=None,
            access_log=False,
        )
    )

    await pubsub.start()
    consumer = asyncio.create_task(gateway.run(connection), name="mqtt-consumer")
    logger.info("HTTP API listening on http://%s:%d", cfg.http.host, cfg.http.port)
    try:
        await server.serve()
    finally:
        logger.info("Shutting down")
        connection.request_shutdown()
        consumer.cancel()
        try:
            await consumer
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("MQTT consumer stopped with an error")
        await pubsub.stop()
        await gateway.drain()
        gateway.sink.close()
        logger.info(
            "Gateway stopped (processed %d messages, dropped %d)",
            gateway.messages_processed,
            gateway.messages_dropped,
        )
