"""SubTronics Gateway: MQTT gas-monitor telemetry to REST and live subscribers."""

__version__ = "1.2.0"
