"""Exception types raised across the gateway.

Normalization failures are *values* (see
:class:`subtronics_gateway.models.NormalizationFailure`), and unknown alert
ids are reported through :class:`subtronics_gateway.models.AckResult`; only
conditions the immediate caller must react to are exceptions.
"""


class GatewayError(Exception):
    """Base class for gateway errors."""


class ConfigError(GatewayError, ValueError):
    """Configuration could not be resolved (e.g. missing ``${VAR}``)."""


class PersistenceFailure(GatewayError):
    """The durable alarm log rejected a read or write."""


class TransportFailure(GatewayError):
    """An outbound broker publish could not be completed."""

    def __init__(self, message: str, connected: bool = True) -> None:
        super().__init__(message)
        self.connected = connected
