"""Ingest filtering by device serial number.

Filter chain (evaluated in order)::

    1. ``reject_unknown_serial`` AND serial is the "Unknown" sentinel  → drop
    2. serial in ``drop_serials``                                      → drop
    3. ``keep_serials`` non-empty AND serial not in list               → drop
    4. Otherwise                                                       → pass

Rule 1 is off by default: payloads without a serial number collapse onto a
single "Unknown" device unless the deployment opts into rejecting them.
"""

from __future__ import annotations

import logging
from typing import Optional

from subtronics_gateway.config import IngestConfig
from subtronics_gateway.models import UNKNOWN_SERIAL, CanonicalRecord

logger = logging.getLogger(__name__)


class DeviceFilter:
    """Stateless filter deciding whether a normalized record is ingested."""

    def __init__(self, config: Optional[IngestConfig] = None) -> None:
        config = config or IngestConfig()
        self._reject_unknown = config.reject_unknown_serial
        self._drop_serials: set[str] = set(config.drop_serials)
        self._keep_serials: set[str] = set(config.keep_serials)

    def __call__(self, record: CanonicalRecord) -> Optional[CanonicalRecord]:
        return self.apply(record)

    def apply(self, record: CanonicalRecord) -> Optional[CanonicalRecord]:
        """Return *record* when it passes, ``None`` when it is filtered."""
        serial = record.serial_number

        if self._reject_unknown and serial == UNKNOWN_SERIAL:
            logger.debug("Filtered payload without serial number (%s)", record.device_name)
            return None

        if serial in self._drop_serials:
            logger.debug("Filtered device %s: in drop_serials", serial)
            return None

        if self._keep_serials and serial not in self._keep_serials:
            logger.debug("Filtered device %s: not in keep_serials", serial)
            return None

        return record
