"""SQLAlchemy engine, session factory and the ``alarm_logs`` table.

Any SQLAlchemy URL works; the default is a SQLite file under ``./data``.
"""

from __future__ import annotations

import pathlib

from sqlalchemy import Boolean, Column, DateTime, Float, Index, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.sql import func

DEFAULT_DATABASE_URL = "sqlite:///./data/alarm_logs.db"

Base = declarative_base()


class AlarmLogRow(Base):
    __tablename__ = "alarm_logs"

    id = Column(String, primary_key=True)
    device_id = Column(String, index=True, nullable=False)
    device_name = Column(String, nullable=False)
    serial_number = Column(String, index=True, nullable=False)
    alarm_type = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    threshold = Column(Float, nullable=True)
    current_value = Column(Float, nullable=True)
    unit = Column(String, nullable=False, default="ppm")
    gas_type = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_by = Column(String, nullable=True)
    latitude = Column(String, nullable=True)
    longitude = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_alarm_logs_device_ts", "device_id", "timestamp"),
        Index("ix_alarm_logs_ts", "timestamp"),
        Index("ix_alarm_logs_type_severity", "alarm_type", "severity"),
        Index("ix_alarm_logs_ack_ts", "acknowledged", "timestamp"),
    )


def make_engine(url: str) -> Engine:
    """Create an engine, preparing the directory of a SQLite file URL."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        db_path = url.split("///", 1)[-1]
        if db_path and db_path != ":memory:" and "///" in url:
            pathlib.Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
