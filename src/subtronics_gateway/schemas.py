from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    mqtt_connected: bool
    devices_count: int
    connected_clients: int
    alarm_log_durable: bool
    alarm_log_degraded: bool
    alarm_log_error: Optional[str] = None
    messages_processed: int = 0
    messages_dropped: int = 0
    timestamp: str


class AlertSchema(BaseModel):
    id: str
    type: str
    severity: str
    message: str
    timestamp: str
    device_name: str
    serial_number: str
    threshold: Optional[float] = None
    current_value: Optional[float] = None
    unit: str = "ppm"
    gas_type: Optional[str] = None
    acknowledged: bool = False
    acknowledged_at: Optional[str] = None
    acknowledged_by: Optional[str] = None


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str = Field(default="operator", min_length=1)


class AcknowledgeResponse(BaseModel):
    success: bool
    alert: AlertSchema


class AlarmLogEntrySchema(BaseModel):
    id: str
    device_id: str
    device_name: str
    serial_number: str
    alarm_type: str
    severity: str
    message: str
    timestamp: datetime
    threshold: Optional[float] = None
    current_value: Optional[float] = None
    unit: str = "ppm"
    gas_type: Optional[str] = None
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None


class AlarmLogQueryResponse(BaseModel):
    count: int
    logs: List[AlarmLogEntrySchema]


class AlarmLogStatsResponse(BaseModel):
    total: int
    acknowledged: int
    unacknowledged: int
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_severity: Dict[str, int] = Field(default_factory=dict)
    by_device: Dict[str, int] = Field(default_factory=dict)


class PublishResponse(BaseModel):
    message: str
    topic: str
    data: Dict[str, Any]
