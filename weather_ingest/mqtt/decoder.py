"""Decoder de payloads MQTT de la estación.

Convierte el payload del broker (formato HiveMQ de la AWS) al
:class:`~weather_ingest.domain.reading.Reading` canónico.

Formato esperado:
{
    "Temp": 27.4,
    "Rh": 71.0,
    "pressure": 1009.8,
    "radiation": 512.3,
    "wind.Speed": 3.2,
    "wind.Direction": 140,
    "precipitation": 0.0,
    "timestamp": 1704067200        # epoch s/ms o string ISO-8601
}

Otro formato de payload requiere otro decoder, no cambiar este contrato.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..domain.errors import MalformedPayload
from ..domain.reading import (
    MAX_INSTANT,
    MIN_INSTANT,
    Reading,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


class WeatherPayload(BaseModel):
    """Schema de validación del payload crudo.

    Acepta tanto las claves del broker (``Temp``, ``wind.Speed``...) como los
    nombres canónicos (``temperature``, ``wind_speed``...).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    temperature: float = Field(..., alias="Temp")
    humidity: float = Field(..., alias="Rh")
    pressure: float
    radiation: float
    wind_speed: float = Field(..., alias="wind.Speed")
    wind_direction: float = Field(..., alias="wind.Direction")
    rainfall: float = Field(..., alias="precipitation")
    timestamp: str

    @field_validator(
        "temperature",
        "humidity",
        "pressure",
        "radiation",
        "wind_speed",
        "wind_direction",
        "rainfall",
        mode="before",
    )
    @classmethod
    def validate_numeric(cls, v):
        if v is None or isinstance(v, bool):
            raise ValueError("value is not numeric")
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("value is empty")
        return v

    @field_validator(
        "temperature",
        "humidity",
        "pressure",
        "radiation",
        "wind_speed",
        "wind_direction",
        "rainfall",
    )
    @classmethod
    def validate_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("value is not finite")
        return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def validate_timestamp(cls, v):
        # Strings puramente numéricos se interpretan como epoch.
        if isinstance(v, str) and v.strip().lstrip("-").replace(".", "", 1).isdigit():
            v = float(v)
        try:
            instant = parse_timestamp(v)
        except (ValueError, OverflowError, OSError) as e:
            raise ValueError(f"Invalid timestamp: {e}")
        if not MIN_INSTANT <= instant < MAX_INSTANT:
            raise ValueError(f"Timestamp out of range: {instant.isoformat()}")
        return format_timestamp(instant)

    def to_reading(self) -> Reading:
        return Reading(
            timestamp=self.timestamp,
            temperature=self.temperature,
            humidity=self.humidity,
            pressure=self.pressure,
            radiation=self.radiation,
            wind_speed=self.wind_speed,
            wind_direction=self.wind_direction,
            rainfall=self.rainfall,
        )


def parse_json(payload: Union[bytes, str]) -> Any:
    """Parsea el JSON crudo del broker.

    Raises:
        MalformedPayload: si no es JSON válido.
    """
    try:
        return orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        raise MalformedPayload(f"Invalid JSON: {e}") from e


def decode_payload(raw: Union[bytes, str, dict]) -> Reading:
    """Decodifica un payload crudo a :class:`Reading`.

    Nunca devuelve lecturas parciales: cualquier campo requerido ausente o
    no numérico hace fallar la decodificación completa.

    Raises:
        MalformedPayload: payload inválido; el caller debe descartarlo.
    """
    data = raw if isinstance(raw, dict) else parse_json(raw)
    if not isinstance(data, dict):
        raise MalformedPayload(f"Payload must be an object, got {type(data).__name__}")

    try:
        return WeatherPayload.model_validate(data).to_reading()
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise MalformedPayload(f"Invalid fields: {', '.join(fields)}") from e
