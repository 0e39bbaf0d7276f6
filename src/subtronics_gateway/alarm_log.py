"""Alarm log sink: durable SQL store with a bounded in-memory fallback.

Durability policy
    * ``open()`` connects to the configured database and creates the
      ``alarm_logs`` table.  If that fails the sink keeps running on the
      in-memory fallback only.
    * A failed durable write is logged and the entries are appended to the
      fallback so they survive for the lifetime of the process.
    * The fallback keeps at most ``max_per_device`` entries per device; the
      oldest are evicted first.
    * An acknowledgement that arrives before its entry has been written is
      held back and applied when the entry is recorded.

Every method blocks on I/O; the gateway calls them through
``asyncio.to_thread`` so live delivery never waits on the database.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, OrderedDict, deque
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from subtronics_gateway.database import AlarmLogRow, init_db, make_engine, make_session_factory
from subtronics_gateway.errors import PersistenceFailure
from subtronics_gateway.models import AlarmLogEntry, AlarmLogFilter, AlarmLogStats

logger = logging.getLogger(__name__)

DEFAULT_MAX_PER_DEVICE = 1000
MAX_EARLY_ACKS = 1000

_ENTRY_COLUMNS = (
    "id", "device_id", "device_name", "serial_number", "alarm_type", "severity",
    "message", "threshold", "current_value", "unit", "gas_type", "timestamp",
    "acknowledged", "acknowledged_at", "acknowledged_by", "latitude", "longitude",
)


class AlarmLogSink:
    """Append-mostly alarm history with filtered queries and statistics.

    Parameters
    ----------
    database_url:
        SQLAlchemy URL of the durable store.  Empty or ``None`` runs the sink
        in memory only.
    max_per_device:
        Cap of the per-device in-memory fallback log.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        max_per_device: int = DEFAULT_MAX_PER_DEVICE,
    ) -> None:
        self._url = database_url or ""
        self._max_per_device = max_per_device
        self._engine = None
        self._session_factory = None
        self._fallback: dict[str, deque[AlarmLogEntry]] = {}
        self._fallback_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._early_acks: OrderedDict[str, tuple[str, datetime]] = OrderedDict()
        self._degraded = False
        self._last_error: Optional[str] = None

    # ── lifecycle ───────────────────────────────────────────────────

    def open(self) -> bool:
        """Connect to the durable store.  Returns ``True`` when it is usable."""
        if not self._url:
            logger.warning("No database_url configured, alarm log is in-memory only")
            return False
        try:
            engine = make_engine(self._url)
            init_db(engine)
        except (SQLAlchemyError, OSError, ImportError) as exc:
            self._mark_failed("Alarm log database unavailable, using in-memory fallback", exc)
            return False
        self._engine = engine
        self._session_factory = make_session_factory(engine)
        self._degraded = False
        logger.info("Alarm log connected to %s", engine.url.render_as_string(hide_password=True))
        return True

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @property
    def durable(self) -> bool:
        return self._session_factory is not None

    @property
    def degraded(self) -> bool:
        """True when durable storage is configured but unavailable or failing."""
        return self._degraded

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    # ── writes ──────────────────────────────────────────────────────

    def record(self, entry: AlarmLogEntry) -> None:
        self.record_many([entry])

    def record_many(self, entries: Iterable[AlarmLogEntry]) -> None:
        """Store *entries*; never raises for storage failures."""
        entries = [_normalized(e) for e in entries]
        if not entries:
            return
        with self._write_lock:
            for entry in entries:
                early = self._early_acks.pop(entry.id, None)
                if early is not None and not entry.acknowledged:
                    entry.acknowledged = True
                    entry.acknowledged_by, entry.acknowledged_at = early
            if self.durable:
                try:
                    self._write_durable(entries)
                    self._degraded = False
                    return
                except PersistenceFailure as exc:
                    self._mark_failed(
                        f"Failed to persist {len(entries)} alarm log entries, kept in memory", exc
                    )
            self._append_fallback(entries)

    def mark_acknowledged(self, alert_id: str, who: str, at: datetime) -> bool:
        """Mirror an acknowledgement into the log.

        Returns ``True`` if the entry was found.  Otherwise the acknowledgement
        is kept and applied by the :meth:`record_many` call that stores it.
        """
        at = _utc(at)
        found = False
        with self._write_lock:
            with self._fallback_lock:
                for log in self._fallback.values():
                    for entry in log:
                        if entry.id == alert_id:
                            entry.acknowledged = True
                            entry.acknowledged_at = at
                            entry.acknowledged_by = who
                            found = True
            if self.durable:
                try:
                    found = self._ack_durable(alert_id, who, at) or found
                except PersistenceFailure as exc:
                    self._mark_failed(f"Failed to mirror acknowledgement of {alert_id}", exc)
            if not found:
                self._early_acks[alert_id] = (who, at)
                while len(self._early_acks) > MAX_EARLY_ACKS:
                    self._early_acks.popitem(last=False)
        return found

    # ── reads ───────────────────────────────────────────────────────

    def query(self, filters: Optional[AlarmLogFilter] = None) -> list[AlarmLogEntry]:
        """Matching entries, newest first, at most ``filters.limit``."""
        filters = filters or AlarmLogFilter()
        merged: dict[str, AlarmLogEntry] = {}
        if self.durable:
            try:
                for entry in self._query_durable(filters):
                    merged[entry.id] = entry
            except PersistenceFailure as exc:
                self._mark_failed("Alarm log query failed, serving in-memory entries", exc)
        for entry in self._query_fallback(filters, filters.limit):
            merged.setdefault(entry.id, entry)
        ordered = sorted(merged.values(), key=lambda e: e.timestamp, reverse=True)
        return ordered[: filters.limit] if filters.limit else ordered

    def aggregate(self, filters: Optional[AlarmLogFilter] = None) -> AlarmLogStats:
        """Counts by type, severity, device and acknowledgement state.

        ``filters.limit`` is ignored: statistics cover every matching entry.
        """
        filters = filters or AlarmLogFilter()
        by_type: Counter = Counter()
        by_severity: Counter = Counter()
        by_device: Counter = Counter()
        acknowledged = 0
        total = 0

        if self.durable:
            try:
                counts = self._aggregate_durable(filters)
                by_type.update(counts["alarm_type"])
                by_severity.update(counts["severity"])
                by_device.update(counts["device_id"])
                acknowledged += counts["acknowledged"].get(True, 0)
                total += sum(counts["alarm_type"].values())
            except PersistenceFailure as exc:
                self._mark_failed("Alarm log statistics failed, using in-memory entries", exc)

        for entry in self._query_fallback(filters, limit=None):
            by_type[entry.alarm_type] += 1
            by_severity[entry.severity] += 1
            by_device[entry.device_id] += 1
            acknowledged += int(entry.acknowledged)
            total += 1

        return AlarmLogStats(
            total=total,
            acknowledged=acknowledged,
            unacknowledged=total - acknowledged,
            by_type=dict(by_type),
            by_severity=dict(by_severity),
            by_device=dict(by_device),
        )

    # ── durable store ───────────────────────────────────────────────

    def _write_durable(self, entries: list[AlarmLogEntry]) -> None:
        session = self._session_factory()
        try:
            for entry in entries:
                session.merge(AlarmLogRow(**{c: getattr(entry, c) for c in _ENTRY_COLUMNS}))
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceFailure(str(exc)) from exc
        finally:
            session.close()

    def _ack_durable(self, alert_id: str, who: str, at: datetime) -> bool:
        session = self._session_factory()
        try:
            row = session.get(AlarmLogRow, alert_id)
            if row is None:
                return False
            row.acknowledged = True
            row.acknowledged_at = at
            row.acknowledged_by = who
            session.commit()
            return True
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceFailure(str(exc)) from exc
        finally:
            session.close()

    def _query_durable(self, filters: AlarmLogFilter) -> list[AlarmLogEntry]:
        stmt = (
            select(AlarmLogRow)
            .where(*_conditions(filters))
            .order_by(AlarmLogRow.timestamp.desc())
        )
        if filters.limit:
            stmt = stmt.limit(filters.limit)
        session = self._session_factory()
        try:
            return [_row_to_entry(row) for row in session.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            raise PersistenceFailure(str(exc)) from exc
        finally:
            session.close()

    def _aggregate_durable(self, filters: AlarmLogFilter) -> dict[str, dict]:
        conditions = _conditions(filters)
        counts: dict[str, dict] = {}
        session = self._session_factory()
        try:
            for name in ("alarm_type", "severity", "device_id", "acknowledged"):
                column = getattr(AlarmLogRow, name)
                stmt = select(column, func.count()).where(*conditions).group_by(column)
                counts[name] = {key: n for key, n in session.execute(stmt)}
        except SQLAlchemyError as exc:
            raise PersistenceFailure(str(exc)) from exc
        finally:
            session.close()
        return counts

    # ── in-memory fallback ──────────────────────────────────────────

    def _append_fallback(self, entries: list[AlarmLogEntry]) -> None:
        with self._fallback_lock:
            for entry in entries:
                log = self._fallback.get(entry.device_id)
                if log is None:
                    log = self._fallback[entry.device_id] = deque(maxlen=self._max_per_device)
                log.append(entry)

    def _query_fallback(
        self,
        filters: AlarmLogFilter,
        limit: Optional[int],
    ) -> list[AlarmLogEntry]:
        with self._fallback_lock:
            if filters.device_id:
                candidates = list(self._fallback.get(filters.device_id, ()))
            else:
                candidates = [e for log in self._fallback.values() for e in log]
        matched = [e for e in candidates if _matches(e, filters)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        return matched[:limit] if limit else matched

    def _mark_failed(self, message: str, exc: Exception) -> None:
        self._degraded = True
        self._last_error = str(exc)
        logger.error("%s: %s", message, exc)


# ── helpers ─────────────────────────────────────────────────────────


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalized(entry: AlarmLogEntry) -> AlarmLogEntry:
    entry.timestamp = _utc(entry.timestamp)
    entry.acknowledged_at = _utc(entry.acknowledged_at)
    return entry


def _conditions(filters: AlarmLogFilter) -> list:
    conditions = []
    if filters.device_id:
        conditions.append(AlarmLogRow.device_id == filters.device_id)
    if filters.start_date is not None:
        conditions.append(AlarmLogRow.timestamp >= _utc(filters.start_date))
    if filters.end_date is not None:
        conditions.append(AlarmLogRow.timestamp <= _utc(filters.end_date))
    if filters.alarm_type:
        conditions.append(AlarmLogRow.alarm_type == filters.alarm_type)
    if filters.severity:
        conditions.append(AlarmLogRow.severity == filters.severity)
    if filters.acknowledged is not None:
        conditions.append(AlarmLogRow.acknowledged == filters.acknowledged)
    return conditions


def _matches(entry: AlarmLogEntry, filters: AlarmLogFilter) -> bool:
    if filters.device_id and entry.device_id != filters.device_id:
        return False
    if filters.start_date is not None and entry.timestamp < _utc(filters.start_date):
        return False
    if filters.end_date is not None and entry.timestamp > _utc(filters.end_date):
        return False
    if filters.alarm_type and entry.alarm_type != filters.alarm_type:
        return False
    if filters.severity and entry.severity != filters.severity:
        return False
    if filters.acknowledged is not None and entry.acknowledged != filters.acknowledged:
        return False
    return True


def _row_to_entry(row: AlarmLogRow) -> AlarmLogEntry:
    values = {c: getattr(row, c) for c in _ENTRY_COLUMNS}
    values["timestamp"] = _utc(values["timestamp"])
    values["acknowledged_at"] = _utc(values["acknowledged_at"])
    return AlarmLogEntry(**values)
