"""REST surface of the gateway.

Every route is a pass-through to the :class:`~subtronics_gateway.gateway.Gateway`
collaborators; no business rules live here.  Alarm log routes are plain
``def`` handlers so their blocking database calls run in FastAPI's thread
pool.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from subtronics_gateway import __version__
from subtronics_gateway.config import AppConfig
from subtronics_gateway.errors import TransportFailure
from subtronics_gateway.gateway import Gateway
from subtronics_gateway.models import AckStatus, AlarmLogFilter
from subtronics_gateway.schemas import (
    AcknowledgeRequest,
    AcknowledgeResponse,
    AlarmLogEntrySchema,
    AlarmLogQueryResponse,
    AlarmLogStatsResponse,
    AlertSchema,
    HealthResponse,
    PublishResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def create_app(gateway: Gateway, config: Optional[AppConfig] = None) -> FastAPI:
    config = config or AppConfig()
    app = FastAPI(
        title="SubTronics Gateway",
        description="Live gas-monitor telemetry, alerts and alarm history.",
        version=__version__,
    )
    app.state.gateway = gateway
    app.state.config = config
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.http.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def get_config(request: Request) -> AppConfig:
    return request.app.state.config


def alarm_log_filter(
    device_id: Optional[str] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    alarm_type: Optional[str] = Query(default=None),
    severity: Optional[str] = Query(default=None),
    acknowledged: Optional[bool] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> AlarmLogFilter:
    return AlarmLogFilter(
        device_id=device_id,
        start_date=start_date,
        end_date=end_date,
        alarm_type=alarm_type,
        severity=severity,
        acknowledged=acknowledged,
        limit=limit,
    )


@router.get("/health", response_model=HealthResponse)
def health(gateway: Gateway = Depends(get_gateway)):
    sink = gateway.sink
    return HealthResponse(
        status="healthy",
        mqtt_connected=gateway.mqtt_connected,
        devices_count=len(gateway.store),
        connected_clients=gateway.broadcaster.client_count,
        alarm_log_durable=sink.durable,
        alarm_log_degraded=sink.degraded,
        alarm_log_error=sink.last_error,
        messages_processed=gateway.messages_processed,
        messages_dropped=gateway.messages_dropped,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/config")
def public_config(config: AppConfig = Depends(get_config)) -> dict[str, Any]:
    view = config.public_view()
    view["endpoints"] = {
        "health": "/health",
        "subtronics_telemetry": "/devices/{deviceId}/subtronics/telemetry/latest",
        "subtronics_alerts": "/devices/{deviceId}/subtronics/alerts",
        "acknowledge_alert": "/devices/{deviceId}/subtronics/alerts/{alertId}/acknowledge",
        "alarm_logs": "/alarm-logs",
        "alarm_log_stats": "/alarm-logs/stats",
        "test_publish": "/test/subtronics/{deviceId}",
    }
    return view


@router.get("/devices/{device_id}/subtronics/telemetry/latest")
def latest_telemetry(device_id: str, gateway: Gateway = Depends(get_gateway)) -> dict[str, Any]:
    record = gateway.store.get(device_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No telemetry for device {device_id}")
    return record.as_dict()


@router.get("/devices/{device_id}/subtronics/alerts", response_model=list[AlertSchema])
def device_alerts(device_id: str, gateway: Gateway = Depends(get_gateway)):
    return [AlertSchema(**alert.as_dict()) for alert in gateway.store.get_alerts(device_id)]


@router.post(
    "/devices/{device_id}/subtronics/alerts/{alert_id}/acknowledge",
    response_model=AcknowledgeResponse,
)
async def acknowledge_alert(
    device_id: str,
    alert_id: str,
    body: Optional[AcknowledgeRequest] = None,
    gateway: Gateway = Depends(get_gateway),
):
    who = (body or AcknowledgeRequest()).acknowledged_by
    result = await gateway.acknowledge(device_id, alert_id, who)
    if result.status is AckStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Alert not found")
    if result.status is AckStatus.ALREADY_ACKNOWLEDGED:
        raise HTTPException(status_code=409, detail="Alert already acknowledged")
    return AcknowledgeResponse(success=True, alert=AlertSchema(**result.alert.as_dict()))


@router.get("/alarm-logs", response_model=AlarmLogQueryResponse)
def alarm_logs(
    filters: AlarmLogFilter = Depends(alarm_log_filter),
    gateway: Gateway = Depends(get_gateway),
):
    entries = gateway.sink.query(filters)
    return AlarmLogQueryResponse(
        count=len(entries),
        logs=[AlarmLogEntrySchema(**entry.as_dict()) for entry in entries],
    )


@router.get("/alarm-logs/stats", response_model=AlarmLogStatsResponse)
def alarm_log_stats(
    filters: AlarmLogFilter = Depends(alarm_log_filter),
    gateway: Gateway = Depends(get_gateway),
):
    stats = gateway.sink.aggregate(filters)
    return AlarmLogStatsResponse(
        total=stats.total,
        acknowledged=stats.acknowledged,
        unacknowledged=stats.unacknowledged,
        by_type=stats.by_type,
        by_severity=stats.by_severity,
        by_device=stats.by_device,
    )


@router.post("/test/subtronics/{device_id}", response_model=PublishResponse)
async def publish_test_data(device_id: str, gateway: Gateway = Depends(get_gateway)):
    try:
        published = await gateway.publish_test_payload(device_id)
    except TransportFailure as exc:
        if not exc.connected:
            raise HTTPException(
                status_code=503,
                detail="MQTT not connected, cannot publish test data",
            ) from exc
        raise HTTPException(status_code=502, detail="Failed to publish test data") from exc
    return PublishResponse(message="Test Subtronics data published", **published)
