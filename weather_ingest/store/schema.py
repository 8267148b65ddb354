"""Esquema SQL del store (weather_data, stations, mqtt_config)."""

from __future__ import annotations

import logging

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    func,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

metadata = MetaData()

# timestamp = ISO canónico "YYYY-MM-DDTHH:MM:SS.mmmZ"; orden lexicográfico == temporal.
weather_data = Table(
    "weather_data",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", String(32), nullable=False, unique=True),
    Column("temperature", Float, nullable=False),
    Column("humidity", Float, nullable=False),
    Column("pressure", Float, nullable=False),
    Column("radiation", Float, nullable=False),
    Column("wind_speed", Float, nullable=False),
    Column("wind_direction", Float, nullable=False),
    Column("rainfall", Float, nullable=False),
    Column("station_id", String(64), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)

stations = Table(
    "stations",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("wmo_number", String(32), nullable=False),
    Column("latitude", Float, nullable=False),
    Column("longitude", Float, nullable=False),
    Column("elevation", Float, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)

mqtt_config = Table(
    "mqtt_config",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("url", String(255), nullable=False),
    Column("port", Integer, nullable=False),
    Column("topic", String(255), nullable=False),
    Column("username", String(255), nullable=True),
    Column("password", String(255), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)


def ensure_schema(engine: Engine) -> None:
    """Crea las tablas que falten. Seguro de llamar varias veces."""
    logger.info("[STORE] Ensuring schema exists")
    metadata.create_all(engine, checkfirst=True)
