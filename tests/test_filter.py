"""Tests for the filter module."""

from subtronics_gateway.config import IngestConfig
from subtronics_gateway.filter import DeviceFilter
from subtronics_gateway.models import UNKNOWN_SERIAL, CanonicalRecord


def _record(serial: str = "OTSM-0114") -> CanonicalRecord:
    return CanonicalRecord(serial_number=serial)


def test_default_passes_everything() -> None:
    """Without configuration every record passes, including unknown serials."""
    f = DeviceFilter()
    assert f.apply(_record()) is not None
    assert f.apply(_record(UNKNOWN_SERIAL)) is not None


def test_reject_unknown_serial() -> None:
    f = DeviceFilter(IngestConfig(reject_unknown_serial=True))
    assert f.apply(_record(UNKNOWN_SERIAL)) is None
    assert f.apply(_record("OTSM-0114")) is not None


def test_drop_serial() -> None:
    """Device in drop_serials is filtered out."""
    f = DeviceFilter(IngestConfig(drop_serials=["OTSM-0999"]))
    assert f.apply(_record("OTSM-0999")) is None
    assert f.apply(_record("OTSM-0114")) is not None


def test_keep_serials() -> None:
    """With keep_serials set, only listed devices pass."""
    f = DeviceFilter(IngestConfig(keep_serials=["OTSM-0114"]))
    assert f.apply(_record("OTSM-0114")) is not None
    assert f.apply(_record("OTSM-0200")) is None


def test_drop_wins_over_keep() -> None:
    f = DeviceFilter(IngestConfig(drop_serials=["OTSM-0114"], keep_serials=["OTSM-0114"]))
    assert f(_record("OTSM-0114")) is None
