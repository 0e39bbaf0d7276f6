"""Tests for the click CLI."""

import logging
from pathlib import Path

import orjson
import pytest
from click.testing import CliRunner

from subtronics_gateway.cli import main

CONFIG = Path(__file__).resolve().parent.parent / "config" / "config.json"


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """The run path installs handlers bound to the runner's streams."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_check_payload_reports_alerts(tmp_path: Path) -> None:
    payload = tmp_path / "payload.json"
    payload.write_bytes(orjson.dumps({
        "OTSM-2 Serial Number": "OTSM-0114",
        "Parameters": {"Live Sensor Readings ": 1200, "Alarm 1 LED Status": 1},
    }))

    result = CliRunner().invoke(main, ["check-payload", str(payload)])

    assert result.exit_code == 0, result.output
    report = orjson.loads(result.stdout)
    assert report["record"]["sensor_reading"] == 1200
    assert report["record"]["alarm_status"] == "ALARM"
    assert [a["type"] for a in report["alerts"]] == ["alarm_level_3"]


def test_check_payload_from_stdin() -> None:
    result = CliRunner().invoke(main, ["check-payload", "-"], input='{"Sensor Reading": 5}')
    assert result.exit_code == 0, result.output
    assert orjson.loads(result.stdout)["alerts"] == []


def test_check_payload_invalid_json() -> None:
    result = CliRunner().invoke(main, ["check-payload", "-"], input="{nope")
    assert result.exit_code == 1
    assert orjson.loads(result.stdout)["code"] == "parse_error"


def test_validate_config() -> None:
    result = CliRunner().invoke(main, ["-c", str(CONFIG), "--validate-config"])
    assert result.exit_code == 0


def test_missing_config_file(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["-c", str(tmp_path / "absent.json")])
    assert result.exit_code == 1


def test_secrets_commands(tmp_path: Path) -> None:
    env = {
        "SUBTRONICS_SECRETS_FILE": str(tmp_path / ".secrets.enc"),
        "SUBTRONICS_KEY_FILE": str(tmp_path / "master.key"),
    }
    runner = CliRunner(env=env)

    assert runner.invoke(main, ["secrets", "init"]).exit_code == 0
    assert runner.invoke(main, ["secrets", "set", "MQTT_PASSWORD", "--value", "hunter2"]).exit_code == 0

    listed = runner.invoke(main, ["secrets", "list"])
    assert listed.stdout.split() == ["MQTT_PASSWORD"]
    assert "hunter2" not in listed.stdout

    rekeyed = runner.invoke(main, ["secrets", "rekey", "--new-key-file", str(tmp_path / "new.key")])
    assert rekeyed.exit_code == 0
    listed = runner.invoke(main, ["secrets", "list", "--key-file", str(tmp_path / "new.key")])
    assert listed.stdout.split() == ["MQTT_PASSWORD"]
