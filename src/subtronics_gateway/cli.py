"""Click CLI for the SubTronics gateway.

Entry point registered in ``pyproject.toml`` as ``subtronics-gateway``.

Subcommands::

    subtronics-gateway                        # run MQTT consumer, REST API and pub/sub server
    subtronics-gateway check-payload FILE|-   # normalize one payload and show its alerts
    subtronics-gateway secrets init           # create encrypted secrets file
    subtronics-gateway secrets set KEY        # store a secret
    subtronics-gateway secrets list           # list secret names
    subtronics-gateway secrets rekey          # re-encrypt with a new key
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import click
import orjson

from subtronics_gateway import __version__, rules
from subtronics_gateway.config import LogFileConfig, load_config, strip_credentials
from subtronics_gateway.models import NormalizationFailure
from subtronics_gateway.normalizer import normalize
from subtronics_gateway.redactor import SecretRedactingFilter, collect_secret_values
from subtronics_gateway.secrets import SecretStore
from subtronics_gateway.service import run_service

logger = logging.getLogger("subtronics_gateway")

DEFAULT_CONFIG = "config/config.json"
DEFAULT_SECRETS_FILE = "/etc/subtronics/.secrets.enc"


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """JSON records on stderr, an optional rotating file, and redaction on both."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    redactor = SecretRedactingFilter(secret_values)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file_config and log_file_config.enabled:
        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                filename=log_file_config.path,
                maxBytes=log_file_config.max_size_bytes,
                backupCount=log_file_config.backup_count,
            )
        )

    for handler in handlers:
        handler.setFormatter(_JsonFormatter())
        # records from child loggers bypass logger-level filters
        handler.addFilter(redactor)
        root.addHandler(handler)


def _secrets_file() -> str:
    return os.environ.get("SUBTRONICS_SECRETS_FILE", DEFAULT_SECRETS_FILE)


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "warning", "error"]),
              help="Log verbosity.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.option("--mqtt-broker", default=None, help="Override broker URL (MQTT_BROKER).")
@click.option("--mqtt-password", default=None, help="Override broker password (MQTT_PASSWORD).")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    log_level: Optional[str],
    validate_only: bool,
    mqtt_broker: Optional[str],
    mqtt_password: Optional[str],
) -> None:
    """SubTronics gateway: MQTT gas-monitor telemetry to REST and live subscribers."""
    if ctx.invoked_subcommand is not None:
        return

    cfg_path = config_path or os.environ.get("SUBTRONICS_CONFIG", DEFAULT_CONFIG)

    overrides: dict[str, str] = {}
    if mqtt_broker:
        overrides["MQTT_BROKER"] = mqtt_broker
    if mqtt_password:
        overrides["MQTT_PASSWORD"] = mqtt_password

    secrets_dict: dict[str, str] = {}
    key_file = os.environ.get("SUBTRONICS_KEY_FILE")
    if key_file:
        store = SecretStore(_secrets_file(), key_file)
        if store.exists():
            try:
                secrets_dict = store.load()
            except (OSError, ValueError) as exc:
                click.echo(f"Secrets error: {exc}", err=True)
                raise SystemExit(1) from exc

    try:
        cfg = load_config(cfg_path, overrides=overrides, secrets=secrets_dict)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    effective_level = (
        log_level
        or os.environ.get("SUBTRONICS_LOG_LEVEL")
        or cfg.logging.level
    )

    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    secret_values.extend(secrets_dict.values())
    _setup_logging(effective_level, secret_values, cfg.logging.file)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting subtronics-gateway %s (instance=%s, broker=%s)",
        __version__,
        cfg.instance_id,
        strip_credentials(cfg.mqtt.broker_url),
    )
    asyncio.run(run_service(cfg))


# ── payload check ───────────────────────────────────────────────────


@main.command("check-payload")
@click.argument("payload", type=click.File("rb"))
def check_payload(payload) -> None:
    """Normalize one device payload (FILE or - for stdin) and show its alerts."""
    result = normalize(payload.read())
    if isinstance(result, NormalizationFailure):
        click.echo(orjson.dumps(asdict(result), option=orjson.OPT_INDENT_2).decode())
        raise SystemExit(1)

    report = {
        "record": result.as_dict(),
        "alerts": [alert.as_dict() for alert in rules.evaluate(result)],
    }
    click.echo(orjson.dumps(report, option=orjson.OPT_INDENT_2).decode())


# ── secrets subcommand group ────────────────────────────────────────


@main.group()
def secrets() -> None:
    """Manage the encrypted secrets file (SUBTRONICS_SECRETS_FILE)."""


@secrets.command("init")
@click.option("--output", default=None, help="Path for the encrypted file.")
@click.option("--key-file", required=True, envvar="SUBTRONICS_KEY_FILE",
              help="Path for the master key (created if missing).")
def secrets_init(output: Optional[str], key_file: str) -> None:
    """Create an empty encrypted secrets file and key."""
    path = output or _secrets_file()
    SecretStore(path, key_file).init()
    click.echo(f"Initialized: {path} (key: {key_file})")


@secrets.command("set")
@click.argument("key")
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
@click.option("--key-file", required=True, envvar="SUBTRONICS_KEY_FILE",
              help="Path to the master key.")
def secrets_set(key: str, value: str, key_file: str) -> None:
    """Store a secret in the encrypted file."""
    SecretStore(_secrets_file(), key_file).set(key, value)
    click.echo(f"Set: {key}")


@secrets.command("list")
@click.option("--key-file", required=True, envvar="SUBTRONICS_KEY_FILE",
              help="Path to the master key.")
def secrets_list(key_file: str) -> None:
    """List stored secret names (values are never shown)."""
    for name in SecretStore(_secrets_file(), key_file).names():
        click.echo(name)


@secrets.command("rekey")
@click.option("--key-file", required=True, envvar="SUBTRONICS_KEY_FILE",
              help="Current master key path.")
@click.option("--new-key-file", required=True, help="New master key path.")
def secrets_rekey(key_file: str, new_key_file: str) -> None:
    """Re-encrypt the secrets store with a new key."""
    SecretStore(_secrets_file(), key_file).rekey(new_key_file)
    click.echo(f"Re-keyed with: {new_key_file}")
