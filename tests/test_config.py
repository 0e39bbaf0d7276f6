"""Tests for config loading, interpolation and validation."""

from pathlib import Path

import jsonschema
import orjson
import pytest

from subtronics_gateway.config import AppConfig, interpolate, load_config, strip_credentials
from subtronics_gateway.errors import ConfigError

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"
SAMPLE = CONFIG_DIR / "config.json"
SCHEMA = CONFIG_DIR / "config.schema.json"

ENV_VARS = ("MQTT_BROKER", "MQTT_USERNAME", "MQTT_PASSWORD", "MQTT_CLIENT_ID",
            "HTTP_PORT", "PUBSUB_PORT", "DATABASE_URL", "GW_TEST_VAR")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "config.json"
    path.write_bytes(orjson.dumps(data))
    return path


def test_sample_config_defaults() -> None:
    """The shipped sample loads with every placeholder defaulted."""
    cfg = load_config(SAMPLE, schema_path=SCHEMA)
    assert cfg.mqtt.broker_url == "mqtt://localhost:1883"
    assert cfg.mqtt.password == ""
    assert cfg.mqtt.topics == ["SubTronics/data"]
    assert cfg.mqtt.reconnect.max_delay_ms == 60000
    assert cfg.http.port == 3002
    assert cfg.pubsub.port == 3003
    assert cfg.storage.database_url == "sqlite:///./data/alarm_logs.db"
    assert cfg.ingest.reject_unknown_serial is False
    assert cfg.logging.file.enabled is False


def test_environment_overrides_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    """Environment values win over defaults; numeric strings become integers."""
    monkeypatch.setenv("MQTT_BROKER", "mqtts://broker.example:8883")
    monkeypatch.setenv("HTTP_PORT", "8080")
    cfg = load_config(SAMPLE, schema_path=SCHEMA)
    assert cfg.mqtt.broker_url == "mqtts://broker.example:8883"
    assert cfg.http.port == 8080


def test_resolution_order(monkeypatch: pytest.MonkeyPatch) -> None:
    """CLI overrides, then environment, then secrets, then the default."""
    value = "${GW_TEST_VAR:-default}"
    assert interpolate(value) == "default"
    assert interpolate(value, secrets={"GW_TEST_VAR": "secret"}) == "secret"
    monkeypatch.setenv("GW_TEST_VAR", "env")
    assert interpolate(value, secrets={"GW_TEST_VAR": "secret"}) == "env"
    assert interpolate(value, overrides={"GW_TEST_VAR": "cli"}) == "cli"


def test_secrets_supply_password() -> None:
    cfg = load_config(SAMPLE, secrets={"MQTT_PASSWORD": "s3cret"}, schema_path=SCHEMA)
    assert cfg.mqtt.password == "s3cret"


def test_missing_required_variable(tmp_path: Path) -> None:
    """``${VAR}`` without a default must resolve."""
    path = _write(tmp_path, {"mqtt": {"password": "${GW_TEST_VAR}"}})
    with pytest.raises(ConfigError, match="GW_TEST_VAR"):
        load_config(path, schema_path=SCHEMA)


def test_schema_rejects_bad_broker_scheme(tmp_path: Path) -> None:
    path = _write(tmp_path, {"mqtt": {"broker_url": "http://broker:1883"}})
    with pytest.raises(jsonschema.ValidationError):
        load_config(path, schema_path=SCHEMA)


def test_schema_rejects_unknown_keys(tmp_path: Path) -> None:
    path = _write(tmp_path, {"mqtt": {"brokerUrl": "mqtt://broker:1883"}})
    with pytest.raises(jsonschema.ValidationError):
        load_config(path, schema_path=SCHEMA)


def test_partial_config_keeps_defaults(tmp_path: Path) -> None:
    """Sections and keys that are absent keep their dataclass defaults."""
    path = _write(tmp_path, {"ingest": {"drop_serials": ["OTSM-0001"]}})
    cfg = load_config(path, schema_path=SCHEMA)
    assert cfg.ingest.drop_serials == ["OTSM-0001"]
    assert cfg.ingest.keep_serials == []
    assert cfg.mqtt.qos == 1
    assert cfg.http.port == 3002


def test_strip_credentials() -> None:
    assert strip_credentials("mqtt://user:pw@broker:1883") == "mqtt://broker:1883"
    assert strip_credentials("mqtt://broker:1883") == "mqtt://broker:1883"


def test_public_view_has_no_secrets() -> None:
    cfg = AppConfig()
    cfg.mqtt.broker_url = "mqtt://user:pw@broker:1883"
    cfg.mqtt.password = "pw"
    view = cfg.public_view()
    assert view["mqtt_broker"] == "mqtt://broker:1883"
    assert "pw" not in orjson.dumps(view).decode()
