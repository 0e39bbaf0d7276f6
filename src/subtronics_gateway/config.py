"""Gateway configuration: a JSON file with ``${VAR}`` placeholders.

Loading steps::

    read JSON (orjson)
      → substitute placeholders   (--option overrides, then environment,
                                   then encrypted secrets, then ``:-default``)
      → restore integers/booleans for numeric keys
      → validate against config/config.schema.json (jsonschema)
      → typed dataclasses

A placeholder without a default and without a value anywhere is a
:class:`~subtronics_gateway.errors.ConfigError`.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

import jsonschema
import orjson

from subtronics_gateway.errors import ConfigError

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{(?P<name>[A-Za-z_]\w*)(?::-(?P<default>[^}]*))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parents[2] / "config" / "config.schema.json"
@dataclass
class ReconnectConfig:
    """Broker reconnection backoff parameters."""

    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000
    backoff_multiplier: int = 2
    jitter_pct: int = 20


@dataclass
class MqttConfig:
    """Broker connection and subscription settings."""

    broker_url: str = "mqtt://localhost:1883"
    username: str = ""
    password: str = ""
    client_id: str = ""
    topics: list[str] = field(default_factory=lambda: ["SubTronics/data"])
    qos: int = 1
    keepalive: int = 60
    connect_timeout: int = 10
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)


@dataclass
class HttpConfig:
    """REST server settings."""

    host: str = "0.0.0.0"
    port: int = 3002
    allowed_origins: list[str] = field(default_factory=lambda: [
        "http://localhost:3000",
        "http://localhost:3001",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ])


@dataclass
class PubSubConfig:
    """Live-update socket server settings."""

    host: str = "0.0.0.0"
    port: int = 3003


@dataclass
class StorageConfig:
    """Alarm log persistence.

    An empty ``database_url`` keeps the alarm log in memory only.
    """

    database_url: str = "sqlite:///./data/alarm_logs.db"
    fallback_max_per_device: int = 1000


@dataclass
class IngestConfig:
    """Which devices are accepted from the broker."""

    drop_serials: list[str] = field(default_factory=list)
    keep_serials: list[str] = field(default_factory=list)
    reject_unknown_serial: bool = False


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the gateway writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/subtronics-gateway/gateway.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*password*", "*secret*", "*token*", "*key*"]
    )


@dataclass
class AppConfig:
    """Top-level gateway configuration."""

    instance_id: str = "gateway-01"
    mqtt: MqttConfig = field(default_factory=MqttConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    pubsub: PubSubConfig = field(default_factory=PubSubConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def public_view(self) -> dict[str, Any]:
        """Configuration safe to expose to browsers (no credentials)."""
        return {
            "instance_id": self.instance_id,
            "mqtt_broker": strip_credentials(self.mqtt.broker_url),
            "mqtt_topics": list(self.mqtt.topics),
            "pubsub_port": self.pubsub.port,
            "allowed_origins": list(self.http.allowed_origins),
        }


def strip_credentials(url: str) -> str:
    """Remove ``user:password@`` from a URL."""
    parts = urlsplit(url)
    if not parts.username and not parts.password:
        return url
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def interpolate(
    text: str,
    overrides: Mapping[str, str] | None = None,
    secrets: Mapping[str, str] | None = None,
) -> str:
    """Substitute every placeholder in *text*."""
    sources: tuple[Mapping[str, str], ...] = (overrides or {}, os.environ, secrets or {})

    def substitute(match: re.Match) -> str:
        name = match.group("name")
        for source in sources:
            if name in source:
                return source[name]
        if match.group("default") is None:
            raise ConfigError(
                f"${{{name}}} has no value: set it on the command line, "
                f"in the environment or in the secrets file"
            )
        return match.group("default")

    return _PLACEHOLDER.sub(substitute, text)


# Keys whose values must be JSON numbers or booleans; a placeholder such as
# ``"${HTTP_PORT:-3002}"`` always substitutes to a string.
_TYPED_KEYS = frozenset({
    "port", "qos", "keepalive", "connect_timeout", "initial_delay_ms",
    "max_delay_ms", "backoff_multiplier", "jitter_pct", "max_size_bytes",
    "backup_count", "fallback_max_per_device", "enabled", "reject_unknown_serial",
})


def _typed(text: str) -> Any:
    stripped = text.strip()
    if re.fullmatch(r"-?\d+", stripped):
        return int(stripped)
    if stripped.lower() in ("true", "false"):
        return stripped.lower() == "true"
    return text


def _resolve(node: Any, overrides, secrets, key: Optional[str] = None) -> Any:
    if isinstance(node, str):
        text = interpolate(node, overrides, secrets)
        return _typed(text) if key in _TYPED_KEYS else text
    if isinstance(node, dict):
        return {k: _resolve(v, overrides, secrets, k) for k, v in node.items()}
    if isinstance(node, list):
        return [_resolve(item, overrides, secrets) for item in node]
    return node


def _section(cls: type, raw: Optional[dict[str, Any]]) -> Any:
    """Instantiate dataclass *cls* from *raw*; nested sections recurse.

    Missing keys keep the dataclass defaults.
    """
    raw = raw or {}
    defaults = cls()
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in raw:
            continue
        default = getattr(defaults, f.name)
        kwargs[f.name] = (
            _section(type(default), raw[f.name]) if is_dataclass(default) else raw[f.name]
        )
    return cls(**kwargs)


def load_config(
    path: str | Path,
    overrides: Mapping[str, str] | None = None,
    secrets: Mapping[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Read, resolve and validate the config file at *path*.

    ``overrides`` come from command-line options and ``secrets`` from the
    encrypted secrets file.  ``schema_path`` defaults to the schema shipped
    in ``config/``; when that file is absent validation is skipped.

    Raises :class:`ConfigError` for unresolvable placeholders and
    :class:`jsonschema.ValidationError` for schema violations.
    """
    resolved = _resolve(orjson.loads(Path(path).read_bytes()), overrides, secrets)

    schema_file = Path(schema_path) if schema_path else _SCHEMA_PATH
    if schema_file.exists():
        jsonschema.validate(instance=resolved, schema=orjson.loads(schema_file.read_bytes()))
        logger.debug("Config %s is valid against %s", path, schema_file.name)
    else:
        logger.warning("No config schema at %s, loading %s unvalidated", schema_file, path)

    return _section(AppConfig, resolved)
