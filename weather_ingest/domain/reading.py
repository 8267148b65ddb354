"""Modelo de dominio para lecturas de la estación meteorológica."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any, Optional

# Umbral para distinguir epoch en segundos vs milisegundos.
EPOCH_MS_THRESHOLD = 10_000_000_000

# Rango aceptado para instantes de la estación.
MIN_INSTANT = datetime(2000, 1, 1, tzinfo=timezone.utc)
MAX_INSTANT = datetime(2100, 1, 1, tzinfo=timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Formato canónico ISO-8601 UTC con milisegundos (``...T00:00:00.000Z``).

    El orden lexicográfico de este formato coincide con el orden temporal,
    por eso se usa como clave de negocio en ventana, dedup y store.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return (
        f"{dt.year:04d}-{dt.month:02d}-{dt.day:02d}T"
        f"{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d}.{dt.microsecond // 1000:03d}Z"
    )


def parse_timestamp(value: Any) -> datetime:
    """Convierte epoch (s o ms) o string ISO-8601 a datetime UTC.

    Raises:
        ValueError: si el valor no es interpretable como instante.
    """
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")

    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError("timestamp is not finite")
        seconds = value / 1000.0 if value >= EPOCH_MS_THRESHOLD else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty timestamp")
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    raise ValueError(f"unsupported timestamp type: {type(value).__name__}")


def normalize_timestamp(value: Any) -> str:
    return format_timestamp(parse_timestamp(value))


@dataclass(frozen=True)
class Reading:
    """Observación meteorológica - modelo canónico del pipeline.

    Este es el contrato único que fluye por todo el pipeline:
    MQTT → Decoder → Dedup → Store → Ventana

    ``timestamp`` es la clave natural (string ISO canónico, ver
    :func:`format_timestamp`); ningún campo es nullable.
    """
    timestamp: str
    temperature: float
    humidity: float
    pressure: float
    radiation: float
    wind_speed: float
    wind_direction: float
    rainfall: float

    @property
    def instant(self) -> datetime:
        return parse_timestamp(self.timestamp)

    def to_row(self, station_id: str) -> dict:
        """Convierte a parámetros de inserción en ``weather_data``."""
        row = asdict(self)
        row["station_id"] = station_id
        return row

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Any) -> "Reading":
        """Construye una lectura desde una fila (mapping) del store."""
        return cls(
            timestamp=normalize_timestamp(row["timestamp"]),
            temperature=float(row["temperature"]),
            humidity=float(row["humidity"]),
            pressure=float(row["pressure"]),
            radiation=float(row["radiation"]),
            wind_speed=float(row["wind_speed"]),
            wind_direction=float(row["wind_direction"]),
            rainfall=float(row["rainfall"]),
        )


READING_FIELDS = tuple(f.name for f in fields(Reading))


@dataclass(frozen=True)
class Station:
    """Metadatos de la estación. El core solo usa ``id`` como FK."""
    id: str
    name: str
    wmo_number: str
    latitude: float
    longitude: float
    elevation: float


@dataclass(frozen=True)
class TransportConfig:
    """Configuración del broker MQTT (fila ``mqtt_config``)."""
    url: str
    port: int
    topic: str
    username: Optional[str] = None
    password: Optional[str] = None
    is_active: bool = True
    id: str = "default"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    @property
    def uses_websockets(self) -> bool:
        # 8884 = HiveMQ Cloud, MQTT sobre WebSocket seguro.
        return self.port == 8884

    @property
    def uses_tls(self) -> bool:
        return self.port in (8883, 8884)

    def redacted(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "port": self.port,
            "topic": self.topic,
            "username": self.username,
            "is_active": self.is_active,
        }
